"""Pydantic schemas for the user request API."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator

from vaultbridge.models.request import RequestKind, RequestStatus


class RequestCreate(BaseModel):
    kind: RequestKind
    asset: str = Field(min_length=1, max_length=200)
    amount: Decimal = Decimal(0)
    value: Decimal = Decimal(0)  # native value attached; must equal amount for the native asset
    position_id: int | None = Field(default=None, ge=0)
    vault_identifier: str = ""
    strategy_identifier: str = ""

    @field_validator("asset", "vault_identifier", "strategy_identifier")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("amount", "value")
    @classmethod
    def _non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _check_kind(self):
        if self.kind == RequestKind.CREATE:
            if not self.vault_identifier or not self.strategy_identifier:
                raise ValueError("create requires vault_identifier and strategy_identifier")
        elif self.position_id is None:
            raise ValueError(f"{self.kind.value} requires position_id")
        if self.kind != RequestKind.CLOSE and self.amount <= 0:
            raise ValueError("amount must be greater than 0")
        return self


class RequestRead(BaseModel):
    id: int
    user: str
    kind: RequestKind
    status: RequestStatus
    asset: str
    amount: Decimal
    position_id: int | None
    vault_identifier: str
    strategy_identifier: str
    message: str
    in_queue: bool
    created_at: datetime
    updated_at: datetime
    processing_started_at: datetime | None = None

    model_config = {"from_attributes": True}


class QueueStatusRead(BaseModel):
    total_pending: int
    user_pending: int
    user_position: int | None
    estimated_wait_seconds: float | None


class BalanceRead(BaseModel):
    holder: str
    asset: str
    available: Decimal
    pending: Decimal
