"""Database models."""

from vaultbridge.models.request import Request, RequestKind, RequestStatus
from vaultbridge.models.balance import EscrowBalance, AccountBalance
from vaultbridge.models.ownership import OwnershipFlag, PositionOwner
from vaultbridge.models.asset_config import AssetConfig
from vaultbridge.models.scheduler_state import SchedulerState
from vaultbridge.models.job_log import JobLog
from vaultbridge.models.credential import Credential
from vaultbridge.models.user import User

__all__ = [
    "Request",
    "RequestKind",
    "RequestStatus",
    "EscrowBalance",
    "AccountBalance",
    "OwnershipFlag",
    "PositionOwner",
    "AssetConfig",
    "SchedulerState",
    "JobLog",
    "Credential",
    "User",
]
