from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_admin
from ..db import get_db
from ..models import CreditAuditLog, User
from ..schemas import (
    AdminAddRequest, AuditEntry, CreditBalance, CreditCosts, DeductRequest, DeductResult,
    PromoRedeemRequest, ReferralRequest, RejectRequest, TopupRequest, TransactionOut, TransferRequest,
)
from ..services import credits as ledger
from ..services import rewards, topups
from ..services.realtime import stream_balance_events

router = APIRouter()

@router.get('/balance', response_model=CreditBalance)
def balance(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"credits": ledger.get_balance(db, user.id)}

@router.post('/deduct', response_model=DeductResult)
def deduct(payload: DeductRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ledger.deduct_credits(db, user.id, payload.amount, payload.action)

@router.post('/transfer')
def transfer(payload: TransferRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ledger.transfer_credits(db, user.id, payload.receiver_id, payload.amount)

@router.post('/promo/redeem')
def redeem_promo(payload: PromoRedeemRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ledger.redeem_promo_code(db, user.id, payload.code)

@router.post('/ad-reward')
def ad_reward(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return rewards.award_ad_credits(db, user)

@router.post('/referral')
def referral(payload: ReferralRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return rewards.process_referral(db, user, payload.referral_code, payload.new_user_id)

@router.get('/history', response_model=List[AuditEntry])
def history(limit: int = 50, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = db.execute(
        select(CreditAuditLog)
        .where(CreditAuditLog.user_id == user.id)
        .order_by(CreditAuditLog.created_at.desc())
        .limit(max(1, min(limit, 200)))
    ).scalars()
    return list(rows)

@router.post('/topups', response_model=TransactionOut)
def submit_topup(payload: TopupRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return topups.submit_topup(db, user, payload.package_name, payload.credits, payload.amount_cents,
                               payload.currency, payload.screenshot_url)

@router.get('/topups', response_model=List[TransactionOut])
def my_transactions(limit: int = 50, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return topups.list_transactions(db, user_id=user.id, limit=limit)

@router.get('/costs', response_model=CreditCosts)
def costs(db: Session = Depends(get_db)):
    return {"profit_margin": ledger.profit_margin(db), "costs": ledger.credit_costs(db)}

@router.get('/stream')
def stream(request: Request, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    initial = ledger.get_balance(db, user.id)
    return StreamingResponse(stream_balance_events(user.id, initial, request), media_type="text/event-stream")

@router.post('/admin/{user_id}/add')
def admin_add(user_id: UUID, payload: AdminAddRequest, admin: User = Depends(require_admin),
              db: Session = Depends(get_db)):
    new_balance = ledger.add_credits(db, user_id, payload.amount, description=payload.description)
    return {"credits": new_balance}

@router.get('/admin/transactions', response_model=List[TransactionOut])
def admin_transactions(status: Optional[str] = "pending", limit: int = 50, admin: User = Depends(require_admin),
                       db: Session = Depends(get_db)):
    return topups.list_transactions(db, status=status, limit=limit)

@router.post('/admin/transactions/{transaction_id}/approve')
def admin_approve(transaction_id: UUID, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return topups.approve_transaction(db, transaction_id)

@router.post('/admin/transactions/{transaction_id}/reject')
def admin_reject(transaction_id: UUID, payload: Optional[RejectRequest] = None, admin: User = Depends(require_admin),
                 db: Session = Depends(get_db)):
    return topups.reject_transaction(db, transaction_id, payload.reason if payload else None)
