import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, Header
from sqlalchemy.orm import Session

from toolcredits.auth import get_current_user
from toolcredits.config import settings
from toolcredits.db import get_db
from toolcredits.exceptions import NotFoundError, WebhookValidationError
from toolcredits.models import StripeEventLog, User
from toolcredits.schemas import CheckoutRequest
from toolcredits.services.checkout import create_checkout_session, stripe_webhook_secret
from toolcredits.services.stripe_events import StripeEventProcessor

router = APIRouter()
logger = logging.getLogger(__name__)

@router.post("/checkout")
def checkout(payload: CheckoutRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return create_checkout_session(
        db,
        user,
        package_name=payload.packageName,
        credits=payload.credits,
        amount_in_cents=payload.amountInCents,
        currency=payload.currency,
        success_url=payload.successUrl,
        cancel_url=payload.cancelUrl,
    )

@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_signature: str = Header(None, alias="stripe-signature")
):
    """Stripe webhook handler with database-level idempotency."""
    body = await request.body()
    secret = stripe_webhook_secret(db)

    if secret:
        if not stripe_signature:
            raise WebhookValidationError("stripe", "Missing Stripe signature")
        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, stripe_signature, secret, tolerance=settings.stripe_webhook_tolerance
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            logger.error(f"Invalid signature in webhook: {e}")
            raise WebhookValidationError("stripe", "Invalid signature")
    else:
        logger.warning("Stripe webhook secret not configured, processing unsigned event")

    try:
        event = json.loads(body)
    except ValueError as e:
        logger.error(f"Invalid payload in webhook: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    logger.info(f"Received Stripe webhook: {event.get('id')} ({event.get('type')})")

    processor = StripeEventProcessor(db)
    try:
        success, message = await processor.process_event(event)
    except Exception as e:
        logger.error(f"Unexpected error processing webhook {event.get('id')}: {e}")
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    if not success:
        # 400 tells Stripe not to bother retrying a malformed event
        status_code = 400 if "Invalid" in message else 500
        logger.error(f"Webhook processing failed: {message}")
        raise HTTPException(status_code=status_code, detail=message)

    logger.info(f"Webhook processed successfully: {event.get('id')}")
    return {"status": "success", "received": True, "message": message}

@router.get("/events/{event_id}/status")
async def get_event_status(
    event_id: str,
    db: Session = Depends(get_db)
):
    """Get processing status of a Stripe event."""
    event_log = db.query(StripeEventLog).filter(
        StripeEventLog.stripe_event_id == event_id
    ).first()

    if not event_log:
        raise NotFoundError("Event", event_id)

    return {
        "event_id": event_id,
        "event_type": event_log.event_type,
        "processed": event_log.processed,
        "processing_attempts": event_log.processing_attempts,
        "error_message": event_log.error_message,
        "dead_letter": event_log.dead_letter,
        "processed_at": event_log.processed_at,
        "created_at": event_log.created_at,
        "next_retry_at": event_log.next_retry_at,
    }
