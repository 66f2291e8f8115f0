import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import Session

from toolcredits.db import SessionLocal
from toolcredits.exceptions import (
    InsufficientCreditsError, NotFoundError, ProfileNotFoundError, ValidationFailed,
)
from toolcredits.models import AppSetting, CreditAuditLog, CreditTransfer, PromoCode, User
from toolcredits.services import credits as ledger


def _audit_rows(db: Session, user_id):
    return db.query(CreditAuditLog).filter(CreditAuditLog.user_id == user_id).order_by(
        CreditAuditLog.created_at.asc()
    ).all()


class TestDeduct:

    def test_deduct_reduces_balance_and_writes_audit(self, db_session: Session, test_user, fake_redis):
        result = ledger.deduct_credits(db_session, test_user.id, 30, "image_generation")

        assert result == {"success": True, "new_balance": 70, "low_balance": False}
        assert ledger.get_balance(db_session, test_user.id) == 70
        amounts = [(row.amount, row.credit_type) for row in _audit_rows(db_session, test_user.id)]
        assert (-30, "deduction") in amounts
        fake_redis.publish.assert_called_once()
        channel, _ = fake_redis.publish.call_args.args
        assert channel == f"profile-credits-{test_user.id}"

    def test_low_balance_flag(self, db_session: Session, user_factory):
        user = user_factory(credits=8)
        result = ledger.deduct_credits(db_session, user.id, 3, "ai_chat")
        assert result["new_balance"] == 5
        assert result["low_balance"] is True

    def test_insufficient_credits_leaves_balance_untouched(self, db_session: Session, user_factory):
        user = user_factory(credits=5)
        with pytest.raises(InsufficientCreditsError) as exc_info:
            ledger.deduct_credits(db_session, user.id, 6, "video_generation")

        assert exc_info.value.details["required"] == 6
        assert exc_info.value.details["balance"] == 5
        assert ledger.get_balance(db_session, user.id) == 5
        assert all(row.amount > 0 for row in _audit_rows(db_session, user.id))

    @pytest.mark.parametrize("amount", [0, -5, True, 2.5])
    def test_rejects_non_positive_amounts(self, db_session: Session, test_user, amount):
        with pytest.raises(ValidationFailed):
            ledger.deduct_credits(db_session, test_user.id, amount, "ai_chat")
        assert ledger.get_balance(db_session, test_user.id) == 100

    def test_missing_profile(self, db_session: Session):
        user = User(email=f"noprofile_{uuid.uuid4().hex[:8]}@example.com")
        db_session.add(user)
        db_session.commit()

        with pytest.raises(ProfileNotFoundError):
            ledger.deduct_credits(db_session, user.id, 1, "ai_chat")
        # unknown profiles read as the signup default
        assert ledger.get_balance(db_session, user.id) == 10

    def test_concurrent_deducts_never_go_negative(self, user_factory):
        user = user_factory(credits=50)
        user_id = user.id

        def attempt(_):
            db = SessionLocal()
            try:
                ledger.deduct_credits(db, user_id, 10, "concurrent")
                return True
            except InsufficientCreditsError:
                return False
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(12)))

        db = SessionLocal()
        try:
            assert outcomes.count(True) == 5
            assert ledger.get_balance(db, user_id) == 0
            assert sum(row.amount for row in _audit_rows(db, user_id)) == 0
        finally:
            db.close()


class TestTransfer:

    def test_transfer_moves_credits_between_users(self, db_session: Session, user_factory):
        sender = user_factory(credits=40)
        receiver = user_factory(credits=0, full_name="Receiver Name")

        result = ledger.transfer_credits(db_session, sender.id, str(receiver.id), 15)

        assert result == {"success": True, "receiver_name": "Receiver Name", "new_balance": 25}
        assert ledger.get_balance(db_session, receiver.id) == 15
        transfer = db_session.query(CreditTransfer).filter(CreditTransfer.sender_id == sender.id).one()
        assert transfer.sender_balance_after == 25
        assert transfer.receiver_balance_after == 15
        types = {row.credit_type for row in _audit_rows(db_session, sender.id)}
        assert "transfer_out" in types
        assert "transfer_in" in {row.credit_type for row in _audit_rows(db_session, receiver.id)}

    def test_transfer_more_than_balance_changes_nothing(self, db_session: Session, user_factory):
        sender = user_factory(credits=10)
        receiver = user_factory(credits=3)

        with pytest.raises(InsufficientCreditsError):
            ledger.transfer_credits(db_session, sender.id, receiver.id, 11)

        assert ledger.get_balance(db_session, sender.id) == 10
        assert ledger.get_balance(db_session, receiver.id) == 3

    def test_transfer_to_self_rejected(self, db_session: Session, test_user):
        with pytest.raises(ValidationFailed):
            ledger.transfer_credits(db_session, test_user.id, str(test_user.id), 5)

    def test_transfer_to_unknown_receiver(self, db_session: Session, test_user):
        with pytest.raises(NotFoundError):
            ledger.transfer_credits(db_session, test_user.id, str(uuid.uuid4()), 5)
        with pytest.raises(ValidationFailed):
            ledger.transfer_credits(db_session, test_user.id, "not-a-uuid", 5)


class TestPromoCodes:

    def _promo(self, db: Session, **kwargs) -> PromoCode:
        promo = PromoCode(code=f"PROMO{uuid.uuid4().hex[:6]}".upper(), bonus_credits=25, **kwargs)
        db.add(promo)
        db.commit()
        return promo

    def test_redeem_once(self, db_session: Session, test_user):
        promo = self._promo(db_session)

        result = ledger.redeem_promo_code(db_session, test_user.id, f"  {promo.code.lower()} ")
        assert result == {"success": True, "bonus_credits": 25, "new_balance": 125}

        with pytest.raises(ValidationFailed, match="already used"):
            ledger.redeem_promo_code(db_session, test_user.id, promo.code)
        assert ledger.get_balance(db_session, test_user.id) == 125

    def test_expired_code(self, db_session: Session, test_user):
        promo = self._promo(db_session, expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        with pytest.raises(ValidationFailed, match="expired"):
            ledger.redeem_promo_code(db_session, test_user.id, promo.code)

    def test_usage_limit(self, db_session: Session, user_factory):
        promo = self._promo(db_session, max_uses=1)
        first, second = user_factory(credits=0), user_factory(credits=0)

        ledger.redeem_promo_code(db_session, first.id, promo.code)
        with pytest.raises(ValidationFailed, match="limit"):
            ledger.redeem_promo_code(db_session, second.id, promo.code)
        assert ledger.get_balance(db_session, second.id) == 0

    def test_inactive_or_unknown_code(self, db_session: Session, test_user):
        promo = self._promo(db_session, is_active=False)
        with pytest.raises(ValidationFailed, match="Invalid"):
            ledger.redeem_promo_code(db_session, test_user.id, promo.code)
        with pytest.raises(ValidationFailed, match="Invalid"):
            ledger.redeem_promo_code(db_session, test_user.id, "NOPE")


class TestAdminAndCosts:

    def test_admin_grant(self, db_session: Session, test_user):
        assert ledger.add_credits(db_session, test_user.id, 50, description="support refund") == 150
        row = db_session.query(CreditAuditLog).filter(
            CreditAuditLog.user_id == test_user.id, CreditAuditLog.credit_type == "admin_grant"
        ).one()
        assert (row.amount, row.description) == (50, "support refund")

    def test_service_credit_path(self, db_session: Session, test_user):
        assert ledger.add_credits_via_service(db_session, test_user.id, 7, "purchased", "Stripe: Starter") == 107

    def test_default_cost_table(self, db_session: Session):
        costs = ledger.credit_costs(db_session)
        assert set(costs) == set(ledger.BASE_API_COSTS)
        assert costs["ai_chat"] == 2
        assert costs["image_generation"] == 3
        assert costs["video_generation"] == 10
        assert costs["video_with_speech"] == 14

    def test_profit_margin_setting(self, db_session: Session):
        row = AppSetting(key="profit_margin", value="100")
        db_session.add(row)
        db_session.commit()
        try:
            assert ledger.profit_margin(db_session) == 100
            assert ledger.credit_costs(db_session)["face_swap"] == 30
        finally:
            db_session.delete(row)
            db_session.commit()
