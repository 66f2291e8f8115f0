from typing import Dict, Any, List, Optional, Tuple
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from toolcredits.models import StripeEventLog, Transaction, User, TX_FAILED, TX_PENDING, TX_SUCCESS
from toolcredits.services import credits as ledger
from toolcredits.services.realtime import publish_balance

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


class StripeEventProcessor:
    """Process Stripe webhook events with guaranteed idempotency and transactional safety."""

    def __init__(self, db: Session):
        self.db = db
        self._balance_updates: List[Tuple[uuid.UUID, int]] = []

    def _record_event(self, event_id: str, event_type: str, event_data: Dict[str, Any]) -> Optional[StripeEventLog]:
        """Insert the event log row, or return the existing one. None means already processed."""
        try:
            event_log = StripeEventLog(
                stripe_event_id=event_id,
                event_type=event_type,
                event_data=event_data,
                processed=False,
                processing_attempts=0,
            )
            self.db.add(event_log)
            self.db.commit()
            return event_log
        except IntegrityError:
            self.db.rollback()
            existing = self.db.execute(
                select(StripeEventLog).where(StripeEventLog.stripe_event_id == event_id)
            ).scalar_one()
            if existing.processed:
                return None
            logger.info(f"Retrying failed event {event_id}")
            return existing

    async def process_event(self, event_data: Dict[str, Any]) -> Tuple[bool, str]:
        """
        Process Stripe webhook event with insert-first idempotency.

        Returns:
            (success, message)
        """
        event_id = event_data.get("id")
        event_type = event_data.get("type")

        if not event_id or not event_type:
            return False, "Invalid event data - missing id or type"

        event_log = self._record_event(event_id, event_type, event_data)
        if event_log is None:
            logger.info(f"Event {event_id} already processed successfully")
            return True, "Event already processed"

        # Count the attempt before doing any work so failures are visible
        event_log.processing_attempts = (event_log.processing_attempts or 0) + 1
        if event_log.processing_attempts > 1:
            backoff_seconds = min(60 * (2 ** (event_log.processing_attempts - 2)), 3600)
            event_log.next_retry_at = datetime.now(timezone.utc) + timedelta(seconds=backoff_seconds)
            logger.info(f"Event {event_id} retry #{event_log.processing_attempts}")
        self.db.commit()
        attempts = event_log.processing_attempts

        try:
            obj = (event_data.get("data") or {}).get("object") or {}
            if event_type == "checkout.session.completed":
                await self._handle_checkout_completed(obj)
            elif event_type == "checkout.session.expired":
                await self._handle_checkout_expired(obj)
            elif event_type == "payment_intent.succeeded":
                await self._handle_payment_succeeded(obj)
            elif event_type == "payment_intent.payment_failed":
                await self._handle_payment_failed(obj)
            else:
                # Marked processed so Stripe stops redelivering it
                logger.info(f"Unhandled event type: {event_type}")

            claimed = self.db.execute(
                update(StripeEventLog)
                .where(StripeEventLog.id == event_log.id, StripeEventLog.processed.is_(False))
                .values(processed=True, processed_at=datetime.now(timezone.utc), error_message=None)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                self.db.rollback()
                return True, "Event already processed"
            self.db.commit()

        except Exception as e:
            self.db.rollback()
            try:
                event_log.error_message = str(e)
                if attempts >= MAX_ATTEMPTS:
                    event_log.dead_letter = True
                    logger.error(f"Event {event_id} marked as dead letter after {MAX_ATTEMPTS} attempts")
                self.db.commit()
            except Exception as commit_error:
                logger.error(f"Failed to update error info for event {event_id}: {commit_error}")
                self.db.rollback()

            logger.error(f"Failed to process event {event_id}: {e}")
            if attempts >= MAX_ATTEMPTS:
                return False, f"Event processing failed after {MAX_ATTEMPTS} attempts: {str(e)}"
            return False, f"Event processing failed: {str(e)}"

        for user_id, balance in self._balance_updates:
            publish_balance(user_id, balance)
        self._balance_updates.clear()
        logger.info(f"Successfully processed Stripe event {event_id} ({event_type})")
        return True, "Event processed successfully"

    def _find_transaction(self, session_id: Optional[str], user_id: Optional[uuid.UUID]) -> Optional[Transaction]:
        if session_id:
            tx = self.db.execute(
                select(Transaction).where(Transaction.stripe_session_id == session_id)
            ).scalar_one_or_none()
            if tx:
                return tx
        if user_id:
            # most recent pending purchase when the session id was not stored
            return self.db.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id, Transaction.status == TX_PENDING)
                .order_by(Transaction.created_at.desc())
            ).scalars().first()
        return None

    async def _handle_checkout_completed(self, session_data: Dict[str, Any]):
        """Handle successful checkout session completion."""
        metadata = session_data.get("metadata") or {}
        user_id = metadata.get("user_id") or session_data.get("client_reference_id")
        credits = int(metadata.get("credits") or 0)
        package_name = metadata.get("package_name") or "Stripe Purchase"
        session_id = session_data.get("id")

        if not user_id or credits <= 0:
            raise ValueError(f"Missing user_id or credits in checkout session: {session_id}")

        user_uuid = uuid.UUID(str(user_id))
        if not self.db.get(User, user_uuid):
            raise ValueError(f"User {user_id} not found")

        new_balance = ledger.apply_credit(
            self.db, user_uuid, credits, "purchased", f"Stripe: {package_name}"
        )
        if new_balance is not None:
            self._balance_updates.append((user_uuid, new_balance))

        tx = self._find_transaction(session_id, user_uuid)
        if tx is not None:
            tx.status = TX_SUCCESS
        else:
            logger.warning(f"No pending transaction found for checkout {session_id}")

        logger.info(f"Added {credits} credits to user {user_id} from checkout {session_id}")

    async def _handle_checkout_expired(self, session_data: Dict[str, Any]):
        session_id = session_data.get("id")
        tx = self._find_transaction(session_id, None)
        if tx is not None and tx.status == TX_PENDING:
            tx.status = TX_FAILED
        logger.info(f"Checkout session expired: {session_id}")

    async def _handle_payment_succeeded(self, payment_intent_data: Dict[str, Any]):
        """Credits are granted on checkout completion; this is informational."""
        logger.info(f"Payment succeeded: {payment_intent_data.get('id')}, amount: {payment_intent_data.get('amount')}")

    async def _handle_payment_failed(self, payment_intent_data: Dict[str, Any]):
        payment_intent_id = payment_intent_data.get("id")
        failure_reason = (payment_intent_data.get("last_payment_error") or {}).get("message", "Unknown")
        logger.warning(f"Payment failed: {payment_intent_id}, reason: {failure_reason}")

        session_id = (payment_intent_data.get("metadata") or {}).get("checkout_session_id")
        tx = self._find_transaction(session_id, None) if session_id else None
        if tx is not None and tx.status == TX_PENDING:
            tx.status = TX_FAILED
