"""Application configuration via environment variables."""

from decimal import Decimal
from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'vaultbridge.db'}"
    encryption_key: str = ""  # Fernet key; generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]

    # Auth
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 1440  # 24 hours

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    # Ledgers
    bridge_address: str = "0x00000000000000000000000200000000000000c0"
    native_asset: str = "0xFFfFfFfFfFfFfFfFfFfFfFfFfFfFfFfFfFfFfFfF"
    native_vault_type: str = "A.1654653399040a61.FlowToken.Vault"
    position_service_host: str = "mock"  # "mock" or empty keeps positions in memory
    position_service_api_key: str = ""
    position_service_timeout: float = 15.0
    allow_third_party_deposits: bool = True
    processing_lease_seconds: int = 600

    # Adaptive scheduling
    scheduler_autostart: bool = True
    batch_size: int = 5
    default_delay_seconds: float = 60.0
    thresholds: dict[int, float] = {50: 5.0, 20: 15.0, 10: 30.0, 5: 45.0}
    max_parallel: int = 3
    priority: str = "medium"
    compute_budget: int = 6000
    initial_fee_balance: Decimal = Decimal("10")
    base_fee: Decimal = Decimal("0.0001")
    fee_per_compute_unit: Decimal = Decimal("0.0000001")

    # Background maintenance
    reconcile_interval_minutes: int = 15
    sweep_interval_minutes: int = 5

    model_config = {"env_prefix": "VB_", "env_file": ".env"}


settings = Settings()
