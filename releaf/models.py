from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# DECIMAL(18,2)
MAX_AMOUNT = Decimal("9999999999999999.99")


def to_amount(value: Decimal) -> Decimal:
    """Round to cents. Amounts wider than 18 digits raise ValueError."""
    try:
        amount = Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError("Amount is too large")
    if abs(amount) > MAX_AMOUNT:
        raise ValueError("Amount is too large")
    return amount


class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class TreeStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class TransactionType(str, Enum):
    REWARD = "reward"
    DEDUCTION = "deduction"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


DEBIT_TYPES = (TransactionType.DEDUCTION, TransactionType.TRANSFER)

# pending -> approved | rejected, approved -> completed
WITHDRAWAL_TRANSITIONS = {
    WithdrawalStatus.PENDING: (WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED),
    WithdrawalStatus.APPROVED: (WithdrawalStatus.COMPLETED,),
}


class Caller(BaseModel):
    """Identity of whoever is invoking an operation."""

    user_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

class User(BaseModel):
    id: int
    email: str
    name: str
    role: Role = Role.MEMBER
    withdrawal_address: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TreeRecord(BaseModel):
    id: int
    user_id: int
    planted_date: date
    location: str
    latitude: Optional[Decimal] = None
    longitude: Optional[Decimal] = None
    tree_type: str
    photo: Optional[str] = None
    status: TreeStatus = TreeStatus.PENDING
    tokens_allocated: Decimal = ZERO
    verified_by: Optional[int] = None
    verified_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TokenTransaction(BaseModel):
    id: int
    user_id: int
    tree_id: Optional[int] = None
    amount: Decimal
    type: TransactionType
    status: TransactionStatus
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    transaction_hash: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_process(self) -> bool:
        return self.status == TransactionStatus.PENDING


class TokenTransactionDetail(TokenTransaction):
    """Ledger row joined with its owner and, when set, its tree."""

    user_name: Optional[str] = None
    user_email: Optional[str] = None
    tree_location: Optional[str] = None


class WithdrawalRequest(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    withdrawal_address: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    transaction_hash: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_transition_to(self, target: WithdrawalStatus) -> bool:
        return target in WITHDRAWAL_TRANSITIONS.get(self.status, ())


class WithdrawalRequestDetail(WithdrawalRequest):
    user_name: Optional[str] = None
    user_email: Optional[str] = None


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------

class Balance(BaseModel):
    user_id: int
    total_earned: Decimal = ZERO
    total_spent: Decimal = ZERO
    balance: Decimal = ZERO
    pending_rewards: int = 0


class UserBalanceSummary(Balance):
    name: str
    email: str


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

def _required_text(value: str, field_name: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{field_name} is required")
    return value


class AllocationRequest(BaseModel):
    user_id: int
    amount: Decimal = Field(..., ge=0)
    type: TransactionType
    tree_id: Optional[int] = None
    notes: Optional[str] = None
    auto_approve: bool = False

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": 2,
            "amount": "10.00",
            "type": "reward",
            "tree_id": 1,
            "notes": "Verified planting",
            "auto_approve": True,
        }
    })

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        return to_amount(v)


class BulkAllocationRequest(BaseModel):
    allocations: list[AllocationRequest] = Field(..., min_length=1)


class BulkAllocationResponse(BaseModel):
    transactions: list[TokenTransaction]


class TransactionStatusUpdate(BaseModel):
    status: TransactionStatus

    @field_validator("status")
    @classmethod
    def not_pending(cls, v: TransactionStatus) -> TransactionStatus:
        if v == TransactionStatus.PENDING:
            raise ValueError("status must be 'completed' or 'cancelled'")
        return v


class WithdrawalCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    withdrawal_address: str
    notes: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        v = to_amount(v)
        if v <= 0:
            raise ValueError("Amount must be greater than 0")
        return v

    @field_validator("withdrawal_address")
    @classmethod
    def address_required(cls, v: str) -> str:
        return _required_text(v, "Withdrawal address")


class WithdrawalStatusUpdate(BaseModel):
    status: WithdrawalStatus
    notes: Optional[str] = None
    transaction_hash: Optional[str] = None

    @field_validator("status")
    @classmethod
    def not_pending(cls, v: WithdrawalStatus) -> WithdrawalStatus:
        if v == WithdrawalStatus.PENDING:
            raise ValueError("Invalid status")
        return v


class AddressUpdate(BaseModel):
    withdrawal_address: str

    @field_validator("withdrawal_address")
    @classmethod
    def address_required(cls, v: str) -> str:
        return _required_text(v, "Withdrawal address")


class AddressResponse(BaseModel):
    withdrawal_address: Optional[str] = None
    message: Optional[str] = None


class TreeCreate(BaseModel):
    planted_date: date
    location: str
    tree_type: str
    latitude: Optional[Decimal] = Field(None, ge=-90, le=90)
    longitude: Optional[Decimal] = Field(None, ge=-180, le=180)
    photo: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("location", "tree_type")
    @classmethod
    def text_required(cls, v: str, info) -> str:
        return _required_text(v, info.field_name)


class TreeStatusUpdate(BaseModel):
    status: TreeStatus
    notes: Optional[str] = None
