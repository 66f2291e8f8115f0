"""Credit ledger.

Balances change only through single conditional UPDATE statements so
concurrent requests cannot drive a balance below zero. Each change appends a
``credit_audit_log`` row in the same transaction. The ``apply_*`` helpers do not
commit, which lets callers (webhook processing, job finalization) fold a
balance change into their own transaction.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    InsufficientCreditsError, NotFoundError, ProfileNotFoundError, ValidationFailed,
)
from ..models import (
    AppSetting, CreditAuditLog, CreditTransfer, Profile, PromoCode, PromoCodeUse, User,
)
from .realtime import publish_balance

logger = logging.getLogger(__name__)

# Raw provider cost per tool run, before profit margin
BASE_API_COSTS = {
    "image_generation": 2,
    "video_generation": 7,
    "video_with_speech": 10,
    "text_to_speech": 2,
    "speech_to_text": 5,
    "ai_chat": 1,
    "face_swap": 15,
    "upscale": 1,
    "bg_remove": 1,
    "live_camera": 15,
    "video_export": 4,
    "youtube_to_text": 10,
    "character_animation": 15,
    "doc_slide_gen": 24,
    "caption_per_minute": 6,
    "ad_generator": 6,
    "live_camera_chat": 1,
    "social_media_agent": 18,
    "photoshoot": 6,
}


def _require_positive(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationFailed("Amount must be a positive integer", amount=amount)


def current_balance(db: Session, user_id) -> Optional[int]:
    return db.execute(
        select(Profile.credit_balance).where(Profile.user_id == user_id)
    ).scalar_one_or_none()


def _audit(db: Session, user_id, amount: int, credit_type: str, description: str) -> None:
    db.add(CreditAuditLog(user_id=user_id, amount=amount, credit_type=credit_type, description=description))


def get_balance(db: Session, user_id) -> int:
    balance = current_balance(db, user_id)
    return settings.signup_credits if balance is None else balance


def create_profile(db: Session, user: User, initial_credits: int = None) -> Profile:
    credits = settings.signup_credits if initial_credits is None else initial_credits
    profile = Profile(user_id=user.id, credit_balance=credits)
    db.add(profile)
    if credits:
        _audit(db, user.id, credits, "signup_bonus", "Welcome credits")
    return profile


def apply_deduction(db: Session, user_id, amount: int, action: str, credit_type: str = "deduction") -> int:
    """Atomically take ``amount`` credits. Does not commit."""
    _require_positive(amount)
    result = db.execute(
        update(Profile)
        .where(Profile.user_id == user_id, Profile.credit_balance >= amount)
        .values(credit_balance=Profile.credit_balance - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        available = current_balance(db, user_id)
        if available is None:
            raise ProfileNotFoundError(str(user_id))
        raise InsufficientCreditsError(required=amount, available=available, user_id=str(user_id))
    _audit(db, user_id, -amount, credit_type, action)
    return current_balance(db, user_id)


def apply_credit(db: Session, user_id, amount: int, credit_type: str, description: str = "") -> int:
    """Atomically add ``amount`` credits. Does not commit."""
    _require_positive(amount)
    result = db.execute(
        update(Profile)
        .where(Profile.user_id == user_id)
        .values(credit_balance=Profile.credit_balance + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ProfileNotFoundError(str(user_id))
    _audit(db, user_id, amount, credit_type, description)
    return current_balance(db, user_id)


def deduct_credits(db: Session, user_id, amount: int, action: str) -> Dict[str, Any]:
    try:
        new_balance = apply_deduction(db, user_id, amount, action)
        db.commit()
    except Exception:
        db.rollback()
        raise
    publish_balance(user_id, new_balance)
    logger.info(f"Deducted {amount} credits from {user_id} for '{action}', balance {new_balance}")
    return {
        "success": True,
        "new_balance": new_balance,
        "low_balance": new_balance <= settings.low_credit_threshold,
    }


def add_credits_via_service(db: Session, user_id, amount: int, credit_type: str, description: str = "") -> int:
    try:
        new_balance = apply_credit(db, user_id, amount, credit_type, description)
        db.commit()
    except Exception:
        db.rollback()
        raise
    publish_balance(user_id, new_balance)
    logger.info(f"Added {amount} credits ({credit_type}) to {user_id}, balance {new_balance}")
    return new_balance


def add_credits(db: Session, user_id, amount: int, description: str = "Admin grant",
                credit_type: str = "admin_grant") -> int:
    """Admin top-up.

    Reads the balance, adds in Python and writes the sum back. Unlike the
    service path this is a read-modify-write, so a deduction committed between
    the read and the write is overwritten.
    """
    _require_positive(amount)
    profile = db.execute(select(Profile).where(Profile.user_id == user_id)).scalar_one_or_none()
    if not profile:
        raise ProfileNotFoundError(str(user_id))
    profile.credit_balance = (profile.credit_balance or 0) + amount
    _audit(db, user_id, amount, credit_type, description)
    db.commit()
    db.refresh(profile)
    publish_balance(user_id, profile.credit_balance)
    return profile.credit_balance


def transfer_credits(db: Session, sender_id, receiver_id, amount: int) -> Dict[str, Any]:
    _require_positive(amount)
    if str(sender_id) == str(receiver_id):
        raise ValidationFailed("Cannot transfer credits to yourself")
    try:
        receiver_key = receiver_id if isinstance(receiver_id, uuid.UUID) else uuid.UUID(str(receiver_id))
    except ValueError:
        raise ValidationFailed("Invalid receiver id", receiver_id=str(receiver_id))
    receiver = db.get(User, receiver_key)
    if receiver is None or current_balance(db, receiver_key) is None:
        raise NotFoundError("Receiver", str(receiver_id))
    receiver_name = db.execute(
        select(Profile.full_name).where(Profile.user_id == receiver_key)
    ).scalar_one_or_none() or receiver.email

    try:
        sender_balance = apply_deduction(db, sender_id, amount, f"Transfer to {receiver_name}", credit_type="transfer_out")
        receiver_balance = apply_credit(db, receiver_key, amount, "transfer_in", f"Transfer from {sender_id}")
        db.add(CreditTransfer(
            sender_id=sender_id,
            receiver_id=receiver_key,
            amount=amount,
            sender_balance_after=sender_balance,
            receiver_balance_after=receiver_balance,
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    publish_balance(sender_id, sender_balance)
    publish_balance(receiver_key, receiver_balance)
    logger.info(f"Transferred {amount} credits from {sender_id} to {receiver_key}")
    return {"success": True, "receiver_name": receiver_name, "new_balance": sender_balance}


def redeem_promo_code(db: Session, user_id, code: str) -> Dict[str, Any]:
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationFailed("Promo code is required")

    promo = db.execute(
        select(PromoCode).where(PromoCode.code == normalized, PromoCode.is_active.is_(True))
    ).scalar_one_or_none()
    if not promo:
        raise ValidationFailed("Invalid or inactive promo code", code=normalized)

    if promo.expires_at is not None:
        expires_at = promo.expires_at if promo.expires_at.tzinfo else promo.expires_at.replace(tzinfo=timezone.utc)
        if expires_at < datetime.now(timezone.utc):
            raise ValidationFailed("Promo code has expired", code=normalized)

    already_used = db.execute(
        select(PromoCodeUse.id).where(PromoCodeUse.promo_code_id == promo.id, PromoCodeUse.user_id == user_id)
    ).first()
    if already_used:
        raise ValidationFailed("Promo code already used", code=normalized)

    try:
        claimed = db.execute(
            update(PromoCode)
            .where(
                PromoCode.id == promo.id,
                (PromoCode.max_uses.is_(None)) | (PromoCode.uses_count < PromoCode.max_uses),
            )
            .values(uses_count=PromoCode.uses_count + 1)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise ValidationFailed("Promo code usage limit reached", code=normalized)

        db.add(PromoCodeUse(promo_code_id=promo.id, user_id=user_id, credits_awarded=promo.bonus_credits))
        new_balance = None
        if promo.bonus_credits > 0:
            new_balance = apply_credit(db, user_id, promo.bonus_credits, "promo_bonus", f"Promo code {normalized}")
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationFailed("Promo code already used", code=normalized)
    except Exception:
        db.rollback()
        raise

    if new_balance is not None:
        publish_balance(user_id, new_balance)
    return {"success": True, "bonus_credits": promo.bonus_credits, "new_balance": get_balance(db, user_id)}


def profit_margin(db: Session) -> int:
    value = db.execute(select(AppSetting.value).where(AppSetting.key == "profit_margin")).scalar_one_or_none()
    try:
        return int(value) if value else settings.default_profit_margin
    except ValueError:
        logger.warning(f"Ignoring non-numeric profit_margin setting: {value!r}")
        return settings.default_profit_margin


def credit_costs(db: Session) -> Dict[str, int]:
    margin = profit_margin(db)
    # integer ceil of base * (1 + margin/100)
    return {key: -(-base * (100 + margin) // 100) for key, base in BASE_API_COSTS.items()}
