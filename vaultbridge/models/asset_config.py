"""AssetConfig model: which assets the request ledger accepts."""

from decimal import Decimal

from sqlmodel import SQLModel, Field


class AssetConfig(SQLModel, table=True):
    __tablename__ = "asset_config"

    asset: str = Field(primary_key=True)
    is_supported: bool = True
    is_native: bool = False
    min_amount: Decimal = Field(default=Decimal(0), max_digits=20, decimal_places=8)
    vault_type: str  # concrete kind of the funds once pulled across the bridge
