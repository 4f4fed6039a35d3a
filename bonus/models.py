from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionKind(str, Enum):
    BOOKING = "booking"
    REFERRAL = "referral"
    MANUAL = "manual"
    SPENT = "spent"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# (old status, new status) -> sign applied to the transaction amount.
# Pairs missing from this table are invalid transitions.
STATUS_TRANSITIONS: dict[tuple[TransactionStatus, TransactionStatus], int] = {
    (TransactionStatus.PENDING, TransactionStatus.COMPLETED): 1,
    (TransactionStatus.PENDING, TransactionStatus.CANCELLED): 0,
    (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED): -1,
    (TransactionStatus.COMPLETED, TransactionStatus.COMPLETED): 0,
}

# Initial statuses accepted at creation time and the sign they apply.
CREATE_STATUSES: dict[TransactionStatus, int] = {
    TransactionStatus.PENDING: 0,
    TransactionStatus.COMPLETED: 1,
}


def transition_delta(old: TransactionStatus, new: TransactionStatus, amount: int) -> Optional[int]:
    """Balance delta for a status change, or None when the change is not allowed."""
    sign = STATUS_TRANSITIONS.get((old, new))
    if sign is None:
        return None
    return sign * amount


class BonusSettings(BaseModel):
    id: str = "default"
    booking_reward_amount: int
    referrer_reward_amount: int
    referral_reward_amount: int
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UpdateSettingsRequest(BaseModel):
    booking_reward_amount: Optional[int] = Field(default=None, ge=0)
    referrer_reward_amount: Optional[int] = Field(default=None, ge=0)
    referral_reward_amount: Optional[int] = Field(default=None, ge=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "booking_reward_amount": 300,
            "referrer_reward_amount": 2000,
            "referral_reward_amount": 2000,
        }
    })


class BonusTransaction(BaseModel):
    id: UUID
    user_id: str
    amount: int
    kind: TransactionKind
    status: TransactionStatus
    description: Optional[str] = None
    appointment_id: Optional[str] = None
    referred_user_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_transition(self, new_status: TransactionStatus) -> bool:
        return (self.status, new_status) in STATUS_TRANSITIONS


class UserSummary(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ReferredUser(BaseModel):
    user: UserSummary
    created_at: datetime


class ReferralResult(BaseModel):
    referrer: BonusTransaction
    referred: BonusTransaction


class AppointmentResult(BaseModel):
    appointment_id: str
    transactions: list[BonusTransaction]


class BalanceDiscrepancy(BaseModel):
    user_id: str
    cached_balance: int
    computed_balance: int
    repaired: bool = False

    @property
    def difference(self) -> int:
        return self.cached_balance - self.computed_balance


class RegisterUserRequest(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    referral_code: Optional[str] = Field(default=None, description="Code of the inviting user")


class RegisteredUser(UserSummary):
    referral_code: str
    referred_by_id: Optional[str] = None
    bonus_balance: int = 0
    created_at: datetime


class BookingBonusRequest(BaseModel):
    user_id: str
    appointment_id: str


class ReferralBonusRequest(BaseModel):
    referrer_id: str
    referred_id: str


class SpendBonusRequest(BaseModel):
    user_id: str
    amount: int = Field(..., description="Points to redeem; the sign is ignored")
    appointment_id: str


class ManualAdjustmentRequest(BaseModel):
    user_id: str
    amount: int
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount": -150,
            "description": "Support correction",
        }
    })


class UpdateStatusRequest(BaseModel):
    status: TransactionStatus


class UserBalance(BaseModel):
    user_id: str
    bonus_balance: int
