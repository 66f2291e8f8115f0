import logging
import uuid
from datetime import datetime, time, timezone
from typing import Any, Dict

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import PermissionDenied, ValidationFailed
from ..models import AdCreditLog, ReferralCode, ReferralUse, User
from . import credits as ledger
from .realtime import publish_balance

logger = logging.getLogger(__name__)


def _start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.min, tzinfo=timezone.utc)


def ad_credits_today(db: Session, user_id, now: datetime = None) -> int:
    since = _start_of_day(now or datetime.now(timezone.utc))
    total = db.execute(
        select(func.coalesce(func.sum(AdCreditLog.credits_earned), 0))
        .where(AdCreditLog.user_id == user_id, AdCreditLog.created_at >= since)
    ).scalar_one()
    return int(total)


def award_ad_credits(db: Session, user: User, source: str = "adsterra", now: datetime = None) -> Dict[str, Any]:
    today_total = ad_credits_today(db, user.id, now)
    limit = settings.ad_daily_limit
    if today_total >= limit:
        raise ValidationFailed("Daily limit reached", daily_total=today_total, limit=limit)

    reward = settings.ad_reward_credits
    try:
        new_balance = ledger.apply_credit(db, user.id, reward, "ad_reward", f"{source} ad view reward")
        db.add(AdCreditLog(user_id=user.id, credits_earned=reward, source=source,
                           created_at=now or datetime.now(timezone.utc)))
        db.commit()
    except Exception:
        db.rollback()
        raise
    publish_balance(user.id, new_balance)
    logger.info(f"Added {reward} ad credits to user {user.id}")
    return {"success": True, "credits_added": reward, "daily_total": today_total + reward, "limit": limit}


def process_referral(db: Session, caller: User, referral_code: str, new_user_id: str) -> Dict[str, Any]:
    if not referral_code or not new_user_id:
        raise ValidationFailed("Missing parameters")
    if str(caller.id) != str(new_user_id):
        raise PermissionDenied("User mismatch")

    ref = db.execute(select(ReferralCode).where(ReferralCode.code == referral_code)).scalar_one_or_none()
    if ref is None:
        raise ValidationFailed("Invalid referral code")
    if ref.user_id == caller.id:
        raise ValidationFailed("Cannot use own referral code")

    existing = db.execute(
        select(ReferralUse.id).where(ReferralUse.code_id == ref.id, ReferralUse.used_by_user_id == caller.id)
    ).first()
    if existing:
        raise ValidationFailed("Already used this referral")

    reward = settings.referral_reward_credits
    referrer_id: uuid.UUID = ref.user_id
    try:
        db.add(ReferralUse(code_id=ref.id, used_by_user_id=caller.id, credits_awarded=reward))
        db.flush()
        new_user_balance = ledger.apply_credit(
            db, caller.id, reward, "referral_bonus", f"Referral signup bonus from {referral_code}"
        )
        referrer_balance = ledger.apply_credit(
            db, referrer_id, reward, "referral_reward", f"Referral reward: new user signed up with {referral_code}"
        )
        db.execute(
            update(ReferralCode)
            .where(ReferralCode.id == ref.id)
            .values(uses_count=ReferralCode.uses_count + 1, credits_earned=ReferralCode.credits_earned + reward)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationFailed("Already used this referral")
    except Exception:
        db.rollback()
        raise

    publish_balance(caller.id, new_user_balance)
    publish_balance(referrer_id, referrer_balance)
    logger.info(f"Referral processed: {referral_code}, new_user: {caller.id}, referrer: {referrer_id}")
    return {"success": True, "credits_awarded": reward}
