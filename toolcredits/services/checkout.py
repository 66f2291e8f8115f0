import logging
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import ConfigurationError, ExternalServiceError, ValidationFailed
from ..models import Transaction, User, TX_PENDING
from .app_settings import get_app_setting

logger = logging.getLogger(__name__)


def stripe_secret_key(db: Session) -> Optional[str]:
    key = get_app_setting(db, "stripe_secret_key", settings.stripe_secret_key)
    # anything shorter is a placeholder left in the admin panel
    if not key or len(key) < 10:
        return None
    return key


def stripe_webhook_secret(db: Session) -> Optional[str]:
    return get_app_setting(db, "stripe_webhook_secret", settings.stripe_webhook_secret)


def create_checkout_session(
    db: Session,
    user: User,
    package_name: str,
    credits: int,
    amount_in_cents: int,
    currency: str = "usd",
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Dict[str, Any]:
    if not package_name or credits <= 0 or amount_in_cents <= 0:
        raise ValidationFailed("Missing required fields")

    api_key = stripe_secret_key(db)
    if not api_key:
        raise ConfigurationError("stripe_secret_key", "Stripe is not configured yet")

    try:
        session = stripe.checkout.Session.create(
            api_key=api_key,
            mode="payment",
            payment_method_types=["card"],
            success_url=success_url or settings.checkout_success_url,
            cancel_url=cancel_url or settings.checkout_cancel_url,
            line_items=[{
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": f"{package_name} - {credits} Credits"},
                    "unit_amount": amount_in_cents,
                },
                "quantity": 1,
            }],
            metadata={"user_id": str(user.id), "credits": str(credits), "package_name": package_name},
            client_reference_id=str(user.id),
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout error: {e}")
        raise ExternalServiceError("stripe", getattr(e, "user_message", None) or str(e), getattr(e, "http_status", None))

    db.add(Transaction(
        user_id=user.id,
        credits=credits,
        amount_cents=amount_in_cents,
        currency=currency,
        package_name=f"{package_name} (Stripe)",
        status=TX_PENDING,
        stripe_session_id=session.id,
    ))
    db.commit()
    logger.info(f"Checkout session {session.id} created for {user.id}: {credits} credits")
    return {"success": True, "url": session.url, "sessionId": session.id}
