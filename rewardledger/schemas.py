from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, IPvAnyAddress, constr

UserRole = Literal["business_owner", "employee", "customer"]
DepositMethod = Literal["manual", "stripe", "bank_transfer", "moonshot"]
CashoutStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
FaucetClaimStatus = Literal["pending", "paid", "failed"]
AdType = Literal["banner", "video", "rectangle", "interstitial"]

# ---------- Auth / users ----------
class LoginIn(BaseModel):
    email: EmailStr
    password: str

class RegisterIn(BaseModel):
    email: EmailStr
    password: constr(min_length=8)
    display_name: Optional[constr(strip_whitespace=True, min_length=1)] = None
    role: UserRole = "employee"
    referral_code: Optional[constr(strip_whitespace=True, min_length=1)] = None

class UserOut(BaseModel):
    id: int
    email: EmailStr
    display_name: Optional[str] = None
    role: UserRole
    referral_code: Optional[str] = None
    referral_count: int = 0
    created_at: datetime

    class Config:
        from_attributes = True

class RoleUpdate(BaseModel):
    role: UserRole

# ---------- Treasury ----------
class DepositIn(BaseModel):
    amount: Decimal = Field(..., gt=0)
    token_price: Optional[Decimal] = Field(None, gt=0)  # defaults to the current quote
    method: DepositMethod = "manual"
    notes: Optional[str] = None
    external_transaction_id: Optional[str] = None

class DepositOut(BaseModel):
    id: int
    deposited_by: str
    deposit_amount: Decimal
    tokens_purchased: Decimal
    token_price: Decimal
    price_source: str
    deposit_method: str
    status: str
    external_transaction_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

class AdjustmentIn(BaseModel):
    token_delta: Decimal = Decimal("0")
    cash_delta: Decimal = Decimal("0")
    description: constr(strip_whitespace=True, min_length=3)

class PriceIn(BaseModel):
    price_usd: Decimal = Field(..., gt=0)
    source: str = "manual"

class ReserveTransactionOut(BaseModel):
    id: int
    transaction_type: str
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    token_amount: Decimal
    cash_value: Decimal
    balance_after: Decimal
    token_reserve_after: Decimal
    description: str
    created_at: datetime

    class Config:
        from_attributes = True

# ---------- Rewards ----------
class RewardOut(BaseModel):
    id: int
    reward_type: str
    token_amount: Decimal
    cash_value: Decimal
    status: str
    earned_date: datetime
    redeemed_date: Optional[datetime] = None
    reference_id: Optional[str] = None

    class Config:
        from_attributes = True

class DeviceInfoIn(BaseModel):
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None

class CheckinIn(BaseModel):
    device: Optional[DeviceInfoIn] = None

class CheckinHistoryItem(BaseModel):
    date: date
    reward: Decimal
    streak_count: int

class JobCompletionIn(BaseModel):
    user_id: int
    job_id: constr(strip_whitespace=True, min_length=1)
    job_value_usd: Decimal = Field(..., ge=0)
    performance_rating: Optional[int] = Field(None, ge=1, le=5)

class BookingIn(BaseModel):
    user_id: int
    booking_id: constr(strip_whitespace=True, min_length=1)
    job_value_usd: Decimal = Field(..., gt=0)

# ---------- Cashouts ----------
class BankDetailsIn(BaseModel):
    account_number: str
    routing_number: str
    account_holder_name: str
    bank_name: str

class CashoutIn(BaseModel):
    token_amount: Decimal = Field(..., gt=0)
    bank_details: BankDetailsIn

class CashoutOut(BaseModel):
    id: int
    token_amount: Decimal
    cash_amount: Decimal
    conversion_rate: Decimal
    price_source: str
    status: CashoutStatus
    external_transaction_id: Optional[str] = None
    processed_date: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

class CashoutStatusUpdate(BaseModel):
    status: Literal["processing", "completed", "failed"]
    failure_reason: Optional[str] = None

# ---------- Faucet ----------
class FaucetClaimIn(BaseModel):
    currency: constr(strip_whitespace=True, to_upper=True, min_length=3, max_length=5)
    ad_session_id: Optional[str] = None
    device_fingerprint: Optional[str] = None

class FaucetClaimOut(BaseModel):
    id: int
    currency: str
    reward_amount: Decimal
    cash_value: Decimal
    status: FaucetClaimStatus
    risk_score: int
    payout_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

class FaucetWalletIn(BaseModel):
    currency: constr(strip_whitespace=True, to_upper=True, min_length=3, max_length=5)
    payout_address: str

class FaucetClaimStatusUpdate(BaseModel):
    status: Literal["paid", "failed"]
    payout_reference: Optional[str] = None
    failure_reason: Optional[str] = None

class FaucetConfigIn(BaseModel):
    reward_amount: Decimal = Field(..., gt=0)
    claim_interval: int = Field(3600, gt=0)
    is_enabled: bool = True

# ---------- Advertising ----------
class ImpressionIn(BaseModel):
    placement_id: str
    network: str
    session_id: Optional[str] = None
    is_fallback: bool = False

class ClickIn(BaseModel):
    impression_id: Optional[int] = None
    placement_id: str
    network: str
    session_id: Optional[str] = None

class CompletionIn(BaseModel):
    impression_id: int
    session_id: constr(strip_whitespace=True, min_length=1)
    completion_type: Literal["view", "click", "conversion"] = "view"

# ---------- Anti-abuse ----------
class SuspiciousIpIn(BaseModel):
    ip_address: IPvAnyAddress
