"""Request model: one user-submitted operation against a managed position."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlmodel import SQLModel, Field


class RequestKind(str, Enum):
    CREATE = "create"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    CLOSE = "close"

    @property
    def carries_funds(self) -> bool:
        """Create and Deposit escrow funds at submission; Withdraw and Close do not."""
        return self in (RequestKind.CREATE, RequestKind.DEPOSIT)


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return not self.is_terminal


class Request(SQLModel, table=True):
    __tablename__ = "request"

    id: int | None = Field(default=None, primary_key=True)
    user: str = Field(index=True)
    kind: RequestKind
    status: RequestStatus = Field(default=RequestStatus.PENDING, index=True)
    asset: str
    amount: Decimal = Field(default=Decimal(0), max_digits=20, decimal_places=8)
    position_id: int | None = None  # None until a Create completes
    vault_identifier: str = ""  # Create only
    strategy_identifier: str = ""  # Create only
    message: str = ""
    in_queue: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processing_started_at: datetime | None = None
    lease_expires_at: datetime | None = None
