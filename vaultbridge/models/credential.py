"""Credential model: encrypted API key for the managed-position service."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Credential(SQLModel, table=True):
    __tablename__ = "credential"

    id: int | None = Field(default=None, primary_key=True)
    name: str = "default"
    position_service_host: str = "mock"
    api_key_encrypted: str = ""  # Fernet-encrypted
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
