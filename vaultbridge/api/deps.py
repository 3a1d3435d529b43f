"""Shared API dependencies."""

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session, select

from vaultbridge.database import get_session
from vaultbridge.errors import (
    AuthorizationError,
    InvalidStatusError,
    RequestNotFoundError,
    SchedulingFailure,
    ValidationError,
    VaultBridgeError,
)
from vaultbridge.models.user import User
from vaultbridge.services.auth import decode_access_token
from vaultbridge.services.request_ledger import RequestLedger

bearer_scheme = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> User:
    """Validate the operator JWT and return the operator."""
    username = decode_access_token(credentials.credentials)
    if username is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    user = session.exec(select(User).where(User.username == username)).first()
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return user


def get_caller(x_caller_address: str = Header(...)) -> str:
    """Requester identity, authenticated by the gateway in front of this service."""
    caller = x_caller_address.strip()
    if not caller:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller address")
    return caller


def get_ledger() -> RequestLedger:
    from vaultbridge.engine.worker import get_worker

    return get_worker().ledger


def http_error(exc: VaultBridgeError) -> HTTPException:
    """Map a protocol error onto an HTTP error."""
    if isinstance(exc, RequestNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, AuthorizationError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, (InvalidStatusError, SchedulingFailure)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))
