from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

class UserCreate(BaseModel):
    email: EmailStr
    full_name: Optional[str] = None

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: EmailStr
    role: str

class CreditBalance(BaseModel):
    credits: int

class DeductRequest(BaseModel):
    amount: int = Field(gt=0)
    action: str = Field(min_length=1, max_length=255)

class DeductResult(BaseModel):
    success: bool
    new_balance: int
    low_balance: bool

class TransferRequest(BaseModel):
    receiver_id: str
    amount: int = Field(gt=0)

class PromoRedeemRequest(BaseModel):
    code: str

class ReferralRequest(BaseModel):
    referral_code: str
    new_user_id: str

class AdminAddRequest(BaseModel):
    amount: int = Field(gt=0)
    description: str = "Admin grant"

class TopupRequest(BaseModel):
    package_name: str = Field(min_length=1, max_length=255)
    credits: int = Field(gt=0)
    amount_cents: int = Field(gt=0)
    currency: str = "mmk"
    screenshot_url: Optional[str] = None

class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    credits: int
    bonus_credits: int = 0
    amount_cents: int
    currency: str
    package_name: str
    status: str
    is_first_purchase: bool = False
    screenshot_url: Optional[str] = None
    created_at: Optional[datetime] = None

class RejectRequest(BaseModel):
    reason: Optional[str] = None

class AuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount: int
    credit_type: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None

class CreditCosts(BaseModel):
    profit_margin: int
    costs: Dict[str, int]

class CheckoutRequest(BaseModel):
    packageName: str
    credits: int = Field(gt=0)
    amountInCents: int = Field(gt=0)
    currency: str = "usd"
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None

class VideoMultiStartRequest(BaseModel):
    videoUrl: Optional[str] = None
    autoSubtitles: bool = False
    subtitleLanguage: str = "my"
    creditCost: int = 10

class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tool_type: str
    status: str
    credits_cost: int
    credits_deducted: bool
    external_job_id: Optional[str] = None
    output_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
