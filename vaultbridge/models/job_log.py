"""JobLog model: one row per processing invocation or maintenance event."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class JobLog(SQLModel, table=True):
    __tablename__ = "job_log"

    id: int | None = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    job: str = Field(index=True)  # "process", "reconcile", "sweep", "schedule"
    status: str  # "success", "error", "warning", "skipped"
    slot: int | None = None
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    ledger_update_failures: int = 0
    pending_count: int | None = None
    next_delay: float | None = None
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
