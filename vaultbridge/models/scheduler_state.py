"""SchedulerState model: persisted cadence state of the processing loop."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class SchedulerState(SQLModel, table=True):
    __tablename__ = "scheduler_state"

    id: int = Field(default=1, primary_key=True)  # single row
    thresholds: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))  # "threshold" -> delay seconds
    default_delay: float = 60.0
    batch_size: int = 5
    max_parallel: int = 3
    priority: str = "medium"
    compute_budget: int = 6000
    paused: bool = False
    halted_reason: str | None = None
    fee_balance: Decimal = Field(default=Decimal(0), max_digits=20, decimal_places=8)
    round: int = 0
    last_pending_count: int = 0
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
