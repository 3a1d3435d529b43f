"""Balance models: escrowed and spendable funds on the request ledger."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field


class EscrowBalance(SQLModel, table=True):
    """Funds locked by a user's Pending requests, per asset."""

    __tablename__ = "escrow_balance"

    user: str = Field(primary_key=True)
    asset: str = Field(primary_key=True)
    amount: Decimal = Field(default=Decimal(0), max_digits=20, decimal_places=8)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AccountBalance(SQLModel, table=True):
    """Spendable funds of a holder (user or bridge account), per asset."""

    __tablename__ = "account_balance"

    holder: str = Field(primary_key=True)
    asset: str = Field(primary_key=True)
    amount: Decimal = Field(default=Decimal(0), max_digits=20, decimal_places=8)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
