"""Ownership models: the two mirrors of who controls which position.

OwnershipFlag lives with the request ledger; PositionOwner is the worker-side
copy. They are written by separate commits and may briefly disagree.
"""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class OwnershipFlag(SQLModel, table=True):
    __tablename__ = "ownership_flag"

    user: str = Field(primary_key=True)
    position_id: int = Field(primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PositionOwner(SQLModel, table=True):
    __tablename__ = "position_owner"

    position_id: int = Field(primary_key=True)
    owner: str = Field(index=True)
    registered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
