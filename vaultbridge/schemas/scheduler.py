"""Pydantic schemas for the operator API."""

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from vaultbridge.utils.constants import (
    MAX_BATCH_SIZE,
    MAX_DELAY_SECONDS,
    MAX_PARALLEL_SLOTS,
    MIN_DELAY_SECONDS,
    VALID_PRIORITIES,
)


class ThresholdUpdate(BaseModel):
    thresholds: dict[int, float]
    default_delay: float | None = Field(default=None, ge=MIN_DELAY_SECONDS, le=MAX_DELAY_SECONDS)

    @field_validator("thresholds")
    @classmethod
    def _validate_thresholds(cls, value: dict[int, float]) -> dict[int, float]:
        if not value:
            raise ValueError("must contain at least one threshold")
        return value


class DefaultDelayUpdate(BaseModel):
    default_delay: float = Field(ge=MIN_DELAY_SECONDS, le=MAX_DELAY_SECONDS)


class MaxParallelUpdate(BaseModel):
    max_parallel: int = Field(ge=1, le=MAX_PARALLEL_SLOTS)


class BatchSizeUpdate(BaseModel):
    batch_size: int = Field(ge=1, le=MAX_BATCH_SIZE)


class PriorityUpdate(BaseModel):
    priority: str
    compute_budget: int | None = Field(default=None, gt=0)

    @field_validator("priority")
    @classmethod
    def _validate_priority(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in VALID_PRIORITIES:
            raise ValueError(f"must be one of {sorted(VALID_PRIORITIES)}")
        return value


class ArmRequest(BaseModel):
    delay: float | None = Field(default=None, ge=0, le=MAX_DELAY_SECONDS)


class FeeTopUp(BaseModel):
    amount: Decimal = Field(gt=0)


class ForceFailRequest(BaseModel):
    message: str = Field(default="Force-failed by operator", min_length=1, max_length=500)


class AssetConfigUpdate(BaseModel):
    vault_type: str = Field(min_length=1)
    is_native: bool = False
    min_amount: Decimal = Field(default=Decimal(0), ge=0)
    is_supported: bool = True


class AccountCredit(BaseModel):
    holder: str = Field(min_length=1)
    asset: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
