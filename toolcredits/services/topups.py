"""Manual top-ups.

A user reports a bank transfer with a screenshot and gets a ``pending``
transaction. An admin approves it, which credits the package plus the
first-purchase bonus through ``credits.add_credits``, or rejects it.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import NotFoundError, ValidationFailed
from ..models import Transaction, User, TX_PENDING, TX_REJECTED, TX_SUCCESS
from . import credits as ledger

logger = logging.getLogger(__name__)


def _transaction_key(transaction_id) -> uuid.UUID:
    if isinstance(transaction_id, uuid.UUID):
        return transaction_id
    try:
        return uuid.UUID(str(transaction_id))
    except ValueError:
        raise NotFoundError("Transaction", str(transaction_id))


def first_purchase_bonus(credits: int) -> int:
    return credits * settings.first_purchase_bonus_percent // 100


def submit_topup(
    db: Session,
    user: User,
    package_name: str,
    credits: int,
    amount_cents: int,
    currency: str = "mmk",
    screenshot_url: Optional[str] = None,
) -> Transaction:
    if not package_name or credits <= 0 or amount_cents <= 0:
        raise ValidationFailed("Missing required fields")

    has_purchase = db.execute(
        select(Transaction.id).where(Transaction.user_id == user.id, Transaction.status == TX_SUCCESS).limit(1)
    ).first()
    tx = Transaction(
        user_id=user.id,
        credits=credits,
        amount_cents=amount_cents,
        currency=currency,
        package_name=package_name,
        status=TX_PENDING,
        is_first_purchase=has_purchase is None,
        screenshot_url=screenshot_url,
    )
    db.add(tx)
    db.commit()
    db.refresh(tx)
    logger.info(f"Top-up {tx.id} submitted by {user.id}: {credits} credits")
    return tx


def list_transactions(db: Session, user_id=None, status: Optional[str] = None, limit: int = 50) -> List[Transaction]:
    query = select(Transaction).order_by(Transaction.created_at.desc()).limit(max(1, min(limit, 200)))
    if user_id is not None:
        query = query.where(Transaction.user_id == user_id)
    if status:
        query = query.where(Transaction.status == status)
    return list(db.execute(query).scalars())


def _claim_pending(db: Session, tx_id: uuid.UUID, status: str, **values) -> Transaction:
    claimed = db.execute(
        update(Transaction)
        .where(Transaction.id == tx_id, Transaction.status == TX_PENDING)
        .values(status=status, **values)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        tx = db.get(Transaction, tx_id)
        if tx is None:
            raise NotFoundError("Transaction", str(tx_id))
        raise ValidationFailed("Transaction already processed", status=tx.status)
    return db.get(Transaction, tx_id)


def approve_transaction(db: Session, transaction_id) -> Dict[str, Any]:
    """Mark a pending top-up successful and credit it, bonus included."""
    tx_id = _transaction_key(transaction_id)
    tx = db.get(Transaction, tx_id)
    if tx is None:
        raise NotFoundError("Transaction", str(tx_id))
    bonus = first_purchase_bonus(tx.credits) if tx.is_first_purchase else 0

    _claim_pending(db, tx_id, TX_SUCCESS, bonus_credits=bonus)
    total = tx.credits + bonus
    try:
        # commits the status change together with the balance
        new_balance = ledger.add_credits(
            db, tx.user_id, total, description=f"Top-up approved: {tx.package_name}", credit_type="purchased"
        )
    except Exception:
        db.rollback()
        raise
    logger.info(f"Top-up {tx_id} approved: {total} credits to {tx.user_id} (bonus {bonus})")
    return {"success": True, "credits_added": total, "bonus_credits": bonus, "new_balance": new_balance}


def reject_transaction(db: Session, transaction_id, reason: Optional[str] = None) -> Dict[str, Any]:
    tx_id = _transaction_key(transaction_id)
    _claim_pending(db, tx_id, TX_REJECTED)
    db.commit()
    logger.info(f"Top-up {tx_id} rejected" + (f": {reason}" if reason else ""))
    return {"success": True, "status": TX_REJECTED, "reason": reason}
