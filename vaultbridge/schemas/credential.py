"""Pydantic schemas for Credential API."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


def _validate_host(value: str) -> str:
    host = value.strip()
    if host == "mock":
        return host
    if not host:
        raise ValueError("must not be empty")
    if not (host.startswith("http://") or host.startswith("https://")):
        raise ValueError("must be 'mock' or start with http:// or https://")
    return host.rstrip("/")


class CredentialCreate(BaseModel):
    name: str = Field(default="default", min_length=1, max_length=120)
    position_service_host: str = "mock"
    api_key: str = ""  # encrypted before storage

    @field_validator("name")
    @classmethod
    def _trim_name(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("position_service_host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        return _validate_host(value)

    @field_validator("api_key")
    @classmethod
    def _strip_key(cls, value: str) -> str:
        return value.strip()


class CredentialUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    position_service_host: str | None = None
    api_key: str | None = None  # If provided, re-encrypts
    is_active: bool | None = None

    @field_validator("name")
    @classmethod
    def _trim_optional_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("position_service_host")
    @classmethod
    def _check_optional_host(cls, value: str | None) -> str | None:
        return None if value is None else _validate_host(value)


class CredentialRead(BaseModel):
    id: int
    name: str
    position_service_host: str
    api_key_hint: str = ""
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}
