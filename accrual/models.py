from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from .config import AMOUNT_QUANTUM


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize_amount(value: Decimal) -> Decimal:
    return Decimal(value).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


class SettlementStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SettlementKind(str, Enum):
    CHECKPOINT_CLAIM = "checkpoint_claim"
    SESSION_CLOSE = "session_close"


class User(BaseModel):
    id: UUID
    username: str
    address: Optional[str] = Field(default=None, description="Account id on the settlement network")
    level: int = Field(default=1, ge=1)
    referred_by: Optional[UUID] = None
    bonus_balance: Decimal = Decimal("0")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AccrualSession(BaseModel):
    id: UUID
    user_id: UUID
    start_time: datetime
    end_time: Optional[datetime] = None
    rate: Decimal = Field(..., description="Value units per hour, fixed for the session")
    is_active: bool = True
    total_earned: Decimal = Decimal("0")
    checkpoints_claimed: int = 0
    progress: int = Field(default=0, ge=0, le=100)

    model_config = ConfigDict(from_attributes=True)


class SettlementRecord(BaseModel):
    id: UUID
    user_id: UUID
    session_id: Optional[UUID] = None
    kind: SettlementKind
    amount: Decimal
    asset_code: str
    recipient: Optional[str] = None
    status: SettlementStatus = SettlementStatus.PENDING
    tx_ref: Optional[str] = None
    external_reference: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    redeemed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def needs_retry(self) -> bool:
        return self.status == SettlementStatus.FAILED

    @property
    def needs_reference(self) -> bool:
        return (
            self.status == SettlementStatus.PENDING
            and self.tx_ref is not None
            and self.external_reference is None
        )


class Wallet(BaseModel):
    user_id: UUID
    asset_code: str
    balance: Decimal = Decimal("0")
    last_updated: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class NetworkStats(BaseModel):
    active_sessions: int = 0
    total_supply: Decimal = Decimal("0")
    base_rate: Decimal
    updated_at: Optional[datetime] = None


class ClaimableUnit(BaseModel):
    id: str
    asset_code: str
    amount: Decimal
    recipient: str
    created_at: Optional[datetime] = None


class SessionResponse(BaseModel):
    session: AccrualSession
    created: bool = False
    settlement: Optional[SettlementRecord] = None
    message: str


class StatusResponse(BaseModel):
    is_active: bool
    session: Optional[AccrualSession] = None
    progress: int = 0
    current_earned: Decimal = Decimal("0")
    rate: Optional[Decimal] = None
    next_reward_in: Optional[int] = Field(default=None, description="Seconds until the next checkpoint")
    claimable_checkpoints: int = 0


class ClaimResponse(BaseModel):
    session_id: UUID
    amount: Decimal
    total_earned: Decimal
    checkpoints_claimed: int
    settled: bool
    settlement: Optional[SettlementRecord] = None
    message: str


class SettlementHistoryResponse(BaseModel):
    user_id: UUID
    records: list[SettlementRecord]
    total_count: int


class RedeemResponse(BaseModel):
    user_id: UUID
    redeemed: list[str]
    wallet: Optional[Wallet] = None
