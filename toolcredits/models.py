import uuid
from sqlalchemy import (
    Column, String, DateTime, Integer, Boolean, ForeignKey, Text, JSON, Index, CheckConstraint, UniqueConstraint, Uuid,
)
from sqlalchemy.sql import func
from .db import Base

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
ACTIVE_JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING)

TX_PENDING = "pending"
TX_SUCCESS = "success"
TX_FAILED = "failed"
TX_REJECTED = "rejected"


class User(Base):
    __tablename__ = "users"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = Column(String(20), nullable=False, default="user")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Profile(Base):
    __tablename__ = "profiles"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), unique=True, nullable=False)
    full_name = Column(String(255))
    credit_balance = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_profiles_credit_balance_non_negative"),
    )


class Transaction(Base):
    """A credit purchase attempt.

    Stripe purchases are finalized by the payment webhook, manual top-ups by an
    admin approving or rejecting them.
    """
    __tablename__ = "transactions"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    credits = Column(Integer, nullable=False)
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(10), nullable=False, default="usd")
    package_name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=TX_PENDING)
    stripe_session_id = Column(String(255), unique=True)
    is_first_purchase = Column(Boolean, nullable=False, default=False)
    bonus_credits = Column(Integer, nullable=False, default=0)
    screenshot_url = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class GenerationJob(Base):
    __tablename__ = "generation_jobs"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    tool_type = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=JOB_PENDING)
    credits_cost = Column(Integer, nullable=False, default=0)
    credits_deducted = Column(Boolean, nullable=False, default=False)
    external_job_id = Column(String(255))
    input_params = Column(JSON, default=dict)
    output_url = Column(Text)
    thumbnail_url = Column(Text)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_generation_jobs_status_created", "status", "created_at"),
    )

    @property
    def owner_is_admin(self) -> bool:
        return (self.input_params or {}).get("isAdmin") is True


class CreditAuditLog(Base):
    """Append-only: one row per balance change."""
    __tablename__ = "credit_audit_log"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # +/- credits
    credit_type = Column(String(50), nullable=False)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class UserOutput(Base):
    __tablename__ = "user_outputs"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    tool_id = Column(String(64), nullable=False)
    tool_name = Column(String(255))
    output_type = Column(String(20), nullable=False)
    content = Column(Text)
    file_url = Column(Text)
    thumbnail_url = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AppSetting(Base):
    __tablename__ = "app_settings"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    key = Column(String(120), unique=True, nullable=False)
    value = Column(Text)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CreditTransfer(Base):
    __tablename__ = "credit_transfers"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sender_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    receiver_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    sender_balance_after = Column(Integer, nullable=False)
    receiver_balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PromoCode(Base):
    __tablename__ = "promo_codes"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String(64), unique=True, nullable=False)
    bonus_credits = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True))
    max_uses = Column(Integer)
    uses_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PromoCodeUse(Base):
    __tablename__ = "promo_code_uses"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    promo_code_id = Column(Uuid(as_uuid=True), ForeignKey("promo_codes.id"), nullable=False)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    credits_awarded = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("promo_code_id", "user_id", name="uq_promo_code_uses_code_user"),
    )


class ReferralCode(Base):
    __tablename__ = "referral_codes"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    code = Column(String(64), unique=True, nullable=False)
    uses_count = Column(Integer, nullable=False, default=0)
    credits_earned = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ReferralUse(Base):
    __tablename__ = "referral_uses"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code_id = Column(Uuid(as_uuid=True), ForeignKey("referral_codes.id"), nullable=False)
    used_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    credits_awarded = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("code_id", "used_by_user_id", name="uq_referral_uses_code_user"),
    )


class AdCreditLog(Base):
    __tablename__ = "ad_credit_logs"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    credits_earned = Column(Integer, nullable=False)
    source = Column(String(64), nullable=False, default="adsterra")
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class StripeEventLog(Base):
    """Track processed Stripe webhook events for idempotency."""
    __tablename__ = "stripe_event_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSON)
    processed = Column(Boolean, default=False, nullable=False)
    processing_attempts = Column(Integer, default=0)
    error_message = Column(Text)
    processed_at = Column(DateTime(timezone=True))
    next_retry_at = Column(DateTime(timezone=True))
    dead_letter = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_stripe_event_processed", "processed", "created_at"),
        Index("ix_stripe_event_type", "event_type"),
    )
