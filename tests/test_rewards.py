import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from toolcredits.exceptions import PermissionDenied, ValidationFailed
from toolcredits.models import AdCreditLog, ReferralCode
from toolcredits.services import credits as ledger
from toolcredits.services.rewards import ad_credits_today, award_ad_credits, process_referral


def referral_code_for(db: Session, user) -> ReferralCode:
    code = ReferralCode(user_id=user.id, code=f"REF-{uuid.uuid4().hex[:8]}")
    db.add(code)
    db.commit()
    return code


class TestAdRewards:

    def test_two_views_then_daily_limit(self, db_session: Session, test_user):
        first = award_ad_credits(db_session, test_user)
        second = award_ad_credits(db_session, test_user)

        assert first == {"success": True, "credits_added": 5, "daily_total": 5, "limit": 10}
        assert second["daily_total"] == 10
        with pytest.raises(ValidationFailed) as exc_info:
            award_ad_credits(db_session, test_user)
        assert exc_info.value.details == {"daily_total": 10, "limit": 10}
        assert ledger.get_balance(db_session, test_user.id) == 110

    def test_limit_resets_on_new_day(self, db_session: Session, test_user):
        yesterday = datetime.now(timezone.utc) - timedelta(days=1)
        award_ad_credits(db_session, test_user, now=yesterday)
        award_ad_credits(db_session, test_user, now=yesterday)

        assert ad_credits_today(db_session, test_user.id) == 0
        assert award_ad_credits(db_session, test_user)["daily_total"] == 5
        assert db_session.query(AdCreditLog).filter(AdCreditLog.user_id == test_user.id).count() == 3

    def test_ad_reward_route(self, test_client: TestClient, test_user, headers_for):
        response = test_client.post("/credits/ad-reward", headers=headers_for(test_user))
        assert response.status_code == 200
        assert response.json()["credits_added"] == 5


class TestReferrals:

    def test_both_sides_rewarded_once(self, db_session: Session, user_factory):
        referrer, newcomer = user_factory(credits=10), user_factory(credits=10)
        code = referral_code_for(db_session, referrer)

        assert process_referral(db_session, newcomer, code.code, str(newcomer.id)) == {
            "success": True, "credits_awarded": 5,
        }
        assert ledger.get_balance(db_session, referrer.id) == 15
        assert ledger.get_balance(db_session, newcomer.id) == 15
        db_session.refresh(code)
        assert (code.uses_count, code.credits_earned) == (1, 5)

        with pytest.raises(ValidationFailed, match="Already used"):
            process_referral(db_session, newcomer, code.code, str(newcomer.id))
        assert ledger.get_balance(db_session, referrer.id) == 15

    def test_own_code_rejected(self, db_session: Session, test_user):
        code = referral_code_for(db_session, test_user)
        with pytest.raises(ValidationFailed, match="own referral"):
            process_referral(db_session, test_user, code.code, str(test_user.id))

    def test_unknown_code_rejected(self, db_session: Session, test_user):
        with pytest.raises(ValidationFailed, match="Invalid referral code"):
            process_referral(db_session, test_user, "REF-NOPE", str(test_user.id))

    def test_caller_must_be_the_new_user(self, db_session: Session, user_factory):
        referrer, newcomer, stranger = user_factory(), user_factory(), user_factory()
        code = referral_code_for(db_session, referrer)
        with pytest.raises(PermissionDenied):
            process_referral(db_session, stranger, code.code, str(newcomer.id))

    def test_referral_route(self, test_client: TestClient, db_session: Session, user_factory, headers_for):
        referrer, newcomer = user_factory(), user_factory()
        code = referral_code_for(db_session, referrer)

        response = test_client.post(
            "/credits/referral",
            json={"referral_code": code.code, "new_user_id": str(newcomer.id)},
            headers=headers_for(newcomer),
        )
        assert response.status_code == 200

        response = test_client.post(
            "/credits/referral",
            json={"referral_code": code.code, "new_user_id": str(referrer.id)},
            headers=headers_for(newcomer),
        )
        assert response.status_code == 403
        assert response.json()["error"] == "User mismatch"
