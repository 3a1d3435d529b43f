"""Request ledger: submitted requests, escrow, balances and the ledger-side ownership map.

Every public method opens its own session and commits on its own, so the
ledger behaves as an independently-committing store from the worker's point
of view. Privileged transitions are gated on the caller being the bridge
account; there is no locking beyond the status checks themselves.

Funds flow:
    create_request        user account  -> escrow
    start_processing      escrow        -> bridge custody   (Create/Deposit)
    complete (failure)    bridge custody -> user account    (Create/Deposit)
    cancel_request        escrow        -> user account
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func
from sqlmodel import Session, select

from vaultbridge.config import settings
from vaultbridge.errors import (
    AuthorizationError,
    InsufficientCustodyError,
    InsufficientFundsError,
    InvalidStatusError,
    RequestNotFoundError,
    RequestNotPendingError,
    ValidationError,
)
from vaultbridge.models.asset_config import AssetConfig
from vaultbridge.models.balance import AccountBalance, EscrowBalance
from vaultbridge.models.ownership import OwnershipFlag
from vaultbridge.models.request import Request, RequestKind, RequestStatus
from vaultbridge.utils.constants import AMOUNT_QUANTUM, CANCELLED_MESSAGE, ZERO

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueueStatus:
    total_pending: int
    user_pending: int
    user_position: int | None  # 0-indexed place of the user's first queued request
    estimated_wait_seconds: float | None


class RequestLedger:
    """SQL-backed request ledger."""

    def __init__(
        self,
        engine,
        bridge_address: str | None = None,
        native_asset: str | None = None,
        lease_seconds: int | None = None,
    ):
        self.engine = engine
        self.bridge_address = bridge_address or settings.bridge_address
        self.native_asset = native_asset or settings.native_asset
        self.lease_seconds = (
            lease_seconds if lease_seconds is not None else settings.processing_lease_seconds
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_bridge(self, caller: str):
        if caller != self.bridge_address:
            raise AuthorizationError(f"{caller} is not the authorized bridge account")

    @staticmethod
    def _get(session: Session, request_id: int) -> Request:
        request = session.get(Request, request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    @staticmethod
    def _adjust_account(
        session: Session,
        holder: str,
        asset: str,
        delta: Decimal,
        error_cls: type[Exception] = InsufficientFundsError,
    ):
        row = session.get(AccountBalance, (holder, asset))
        if row is None:
            row = AccountBalance(holder=holder, asset=asset, amount=ZERO)
        new_amount = Decimal(row.amount) + delta
        if new_amount < 0:
            raise error_cls(
                f"{holder} holds {row.amount} of {asset}, needs {-delta}"
            )
        row.amount = new_amount
        row.updated_at = _now()
        session.add(row)

    @staticmethod
    def _adjust_escrow(session: Session, user: str, asset: str, delta: Decimal):
        row = session.get(EscrowBalance, (user, asset))
        if row is None:
            row = EscrowBalance(user=user, asset=asset, amount=ZERO)
        new_amount = Decimal(row.amount) + delta
        if new_amount < 0:
            raise InsufficientFundsError(
                f"Escrow for {user}/{asset} is {row.amount}, cannot deduct {-delta}"
            )
        row.amount = new_amount
        row.updated_at = _now()
        session.add(row)

    @staticmethod
    def _owns(session: Session, user: str, position_id: int) -> bool:
        return session.get(OwnershipFlag, (user, position_id)) is not None

    def _finalize(
        self,
        session: Session,
        request: Request,
        success: bool,
        position_id: int | None,
        message: str,
    ):
        """Move a Processing request to its terminal status."""
        if success:
            if request.kind == RequestKind.CREATE:
                if position_id is None:
                    raise ValidationError("Completing a Create requires the new position id")
                request.position_id = position_id
                if not self._owns(session, request.user, position_id):
                    session.add(OwnershipFlag(user=request.user, position_id=position_id))
            elif request.kind == RequestKind.CLOSE and request.position_id is not None:
                flag = session.get(OwnershipFlag, (request.user, request.position_id))
                if flag is not None:
                    session.delete(flag)
            request.status = RequestStatus.COMPLETED
        else:
            if request.kind.carries_funds:
                amount = Decimal(request.amount)
                self._adjust_account(
                    session, self.bridge_address, request.asset, -amount,
                    error_cls=InsufficientCustodyError,
                )
                self._adjust_account(session, request.user, request.asset, amount)
            request.status = RequestStatus.FAILED

        request.message = message
        request.in_queue = False
        request.lease_expires_at = None
        request.updated_at = _now()
        session.add(request)

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    def create_request(
        self,
        caller: str,
        kind: RequestKind | str,
        asset: str,
        amount: Decimal | str | int,
        value: Decimal | str | int = ZERO,
        position_id: int | None = None,
        vault_identifier: str = "",
        strategy_identifier: str = "",
    ) -> Request:
        """Submit a request; escrows funds for Create/Deposit in the same commit."""
        kind = RequestKind(kind)
        amount = Decimal(amount)
        value = Decimal(value)
        if amount != amount.quantize(AMOUNT_QUANTUM) or value != value.quantize(AMOUNT_QUANTUM):
            raise ValidationError(f"Amounts are limited to {AMOUNT_QUANTUM} precision")

        with Session(self.engine) as session:
            config = session.get(AssetConfig, asset)
            if config is None or not config.is_supported:
                raise ValidationError(f"Asset {asset} is not supported")

            if kind == RequestKind.CLOSE:
                amount = ZERO
            elif amount <= 0:
                raise ValidationError("Amount must be greater than 0")

            if kind.carries_funds:
                if amount < Decimal(config.min_amount):
                    raise ValidationError(
                        f"Amount {amount} is below the minimum {config.min_amount} for {asset}"
                    )
                if config.is_native and value != amount:
                    raise ValidationError(
                        f"Attached value {value} must equal amount {amount} for the native asset"
                    )
                if not config.is_native and value != 0:
                    raise ValidationError("Value may only be attached for the native asset")
            elif value != 0:
                raise ValidationError(f"{kind.value} requests must not attach value")

            if kind == RequestKind.CREATE:
                if not vault_identifier or not strategy_identifier:
                    raise ValidationError("Create requires vault and strategy identifiers")
                position_id = None
            else:
                if position_id is None:
                    raise ValidationError(f"{kind.value} requires a position id")
                if kind in (RequestKind.WITHDRAW, RequestKind.CLOSE) and not self._owns(
                    session, caller, position_id
                ):
                    raise AuthorizationError(f"{caller} does not own position {position_id}")

            if kind.carries_funds:
                self._adjust_account(session, caller, asset, -amount)
                self._adjust_escrow(session, caller, asset, amount)

            request = Request(
                user=caller,
                kind=kind,
                asset=asset,
                amount=amount,
                position_id=position_id,
                vault_identifier=vault_identifier,
                strategy_identifier=strategy_identifier,
            )
            session.add(request)
            session.commit()
            session.refresh(request)

        logger.info(
            f"[request_{request.id}] Created {kind.value} by {caller}: "
            f"amount={amount} asset={asset} position={position_id}"
        )
        return request

    def cancel_request(self, caller: str, request_id: int) -> Request:
        """Cancel a Pending request and refund its escrow to the requester."""
        with Session(self.engine) as session:
            request = self._get(session, request_id)
            if request.user != caller:
                raise AuthorizationError(f"{caller} did not submit request {request_id}")
            if request.status != RequestStatus.PENDING:
                raise RequestNotPendingError(request_id, request.status.value)

            if request.kind.carries_funds:
                amount = Decimal(request.amount)
                self._adjust_escrow(session, request.user, request.asset, -amount)
                self._adjust_account(session, request.user, request.asset, amount)

            request.status = RequestStatus.FAILED
            request.message = CANCELLED_MESSAGE
            request.in_queue = False
            request.updated_at = _now()
            session.add(request)
            session.commit()
            session.refresh(request)

        logger.info(f"[request_{request_id}] Cancelled by {caller}")
        return request

    # ------------------------------------------------------------------
    # Bridge-only transitions
    # ------------------------------------------------------------------

    def start_processing(self, caller: str, request_id: int) -> Request:
        """Pending -> Processing; deducts escrow into bridge custody.

        Fails with RequestNotPendingError on any other status, so a second call
        never deducts twice.
        """
        self._require_bridge(caller)
        with Session(self.engine) as session:
            request = self._get(session, request_id)
            if request.status != RequestStatus.PENDING:
                raise RequestNotPendingError(request_id, request.status.value)

            if request.kind.carries_funds:
                amount = Decimal(request.amount)
                self._adjust_escrow(session, request.user, request.asset, -amount)
                self._adjust_account(session, self.bridge_address, request.asset, amount)

            now = _now()
            request.status = RequestStatus.PROCESSING
            request.processing_started_at = now
            request.lease_expires_at = now + timedelta(seconds=self.lease_seconds)
            request.updated_at = now
            session.add(request)
            session.commit()
            session.refresh(request)

        logger.debug(f"[request_{request_id}] Processing started")
        return request

    def complete_processing(
        self,
        caller: str,
        request_id: int,
        success: bool,
        position_id: int | None = None,
        message: str = "",
    ) -> Request:
        """Processing -> Completed/Failed; refunds on failure, updates ownership on success."""
        self._require_bridge(caller)
        with Session(self.engine) as session:
            request = self._get(session, request_id)
            if request.status != RequestStatus.PROCESSING:
                raise InvalidStatusError(request_id, request.status.value, "Processing")
            self._finalize(session, request, success, position_id, message)
            session.commit()
            session.refresh(request)

        logger.info(
            f"[request_{request_id}] {'Completed' if success else 'Failed'}: {message}"
        )
        return request

    def force_fail(self, caller: str, request_id: int, message: str = "") -> Request:
        """Administrative recovery for a request stuck in Processing."""
        self._require_bridge(caller)
        with Session(self.engine) as session:
            request = self._get(session, request_id)
            if request.status != RequestStatus.PROCESSING:
                raise InvalidStatusError(request_id, request.status.value, "Processing")
            self._finalize(
                session, request, False, None, message or "Force-failed by operator"
            )
            session.commit()
            session.refresh(request)

        logger.warning(f"[request_{request_id}] Force-failed: {request.message}")
        return request

    def hold_for_review(self, caller: str, request_id: int, message: str) -> Request:
        """Park a Processing request until an operator acts.

        It leaves the pending queue and the lease sweeper's view; operators
        find it through get_held_requests.
        """
        self._require_bridge(caller)
        with Session(self.engine) as session:
            request = self._get(session, request_id)
            if request.status != RequestStatus.PROCESSING:
                raise InvalidStatusError(request_id, request.status.value, "Processing")
            request.lease_expires_at = None
            request.in_queue = False
            request.message = message
            request.updated_at = _now()
            session.add(request)
            session.commit()
            session.refresh(request)
        logger.warning(f"[request_{request_id}] Held for operator review: {message}")
        return request

    def get_held_requests(self) -> list[Request]:
        """Processing requests without a lease, i.e. waiting for an operator."""
        with Session(self.engine) as session:
            stmt = (
                select(Request)
                .where(Request.status == RequestStatus.PROCESSING)
                .where(Request.lease_expires_at == None)  # noqa: E711
                .order_by(Request.id)
            )
            return list(session.exec(stmt).all())

    def debit_custody(self, caller: str, asset: str, amount: Decimal) -> str:
        """Take funds out of bridge custody; returns the asset's vault type."""
        self._require_bridge(caller)
        with Session(self.engine) as session:
            config = session.get(AssetConfig, asset)
            if config is None:
                raise ValidationError(f"Asset {asset} is not configured")
            self._adjust_account(
                session, self.bridge_address, asset, -Decimal(amount),
                error_cls=InsufficientCustodyError,
            )
            vault_type = config.vault_type
            session.commit()
        return vault_type

    def credit_custody(self, caller: str, asset: str, amount: Decimal):
        """Put funds back into bridge custody."""
        self._require_bridge(caller)
        with Session(self.engine) as session:
            self._adjust_account(session, self.bridge_address, asset, Decimal(amount))
            session.commit()

    def deliver(self, caller: str, recipient: str, asset: str, amount: Decimal):
        """Credit funds arriving from the position side straight to a recipient."""
        self._require_bridge(caller)
        if Decimal(amount) < 0:
            raise ValidationError("Delivered amount must not be negative")
        with Session(self.engine) as session:
            self._adjust_account(session, recipient, asset, Decimal(amount))
            session.commit()
        logger.info(f"Delivered {amount} {asset} to {recipient}")

    def clear_ownership_flag(self, caller: str, user: str, position_id: int) -> bool:
        """Drop a ledger-side ownership flag (reconciliation repair)."""
        self._require_bridge(caller)
        with Session(self.engine) as session:
            flag = session.get(OwnershipFlag, (user, position_id))
            if flag is None:
                return False
            session.delete(flag)
            session.commit()
        return True

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_asset_config(
        self,
        asset: str,
        vault_type: str,
        is_native: bool = False,
        min_amount: Decimal | str | int = ZERO,
        is_supported: bool = True,
    ) -> AssetConfig:
        with Session(self.engine) as session:
            config = session.get(AssetConfig, asset) or AssetConfig(asset=asset, vault_type=vault_type)
            config.vault_type = vault_type
            config.is_native = is_native
            config.min_amount = Decimal(min_amount)
            config.is_supported = is_supported
            session.add(config)
            session.commit()
            session.refresh(config)
        logger.info(f"Asset {asset} configured: vault_type={vault_type} supported={is_supported}")
        return config

    def get_asset_config(self, asset: str) -> AssetConfig | None:
        with Session(self.engine) as session:
            return session.get(AssetConfig, asset)

    def list_asset_configs(self) -> list[AssetConfig]:
        with Session(self.engine) as session:
            return list(session.exec(select(AssetConfig)).all())

    def ensure_native_asset(self, vault_type: str | None = None):
        """Register the native asset on first start."""
        if self.get_asset_config(self.native_asset) is None:
            self.set_asset_config(
                self.native_asset,
                vault_type=vault_type or settings.native_vault_type,
                is_native=True,
            )

    def credit_account(self, holder: str, asset: str, amount: Decimal | str | int) -> Decimal:
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Credit amount must be greater than 0")
        with Session(self.engine) as session:
            self._adjust_account(session, holder, asset, amount)
            session.commit()
        return self.get_account_balance(holder, asset)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_request(self, request_id: int) -> Request:
        with Session(self.engine) as session:
            return self._get(session, request_id)

    def get_pending_requests(self, start: int = 0, count: int = 10) -> list[Request]:
        """One page of the pending queue in id order."""
        with Session(self.engine) as session:
            stmt = (
                select(Request)
                .where(Request.in_queue == True)  # noqa: E712
                .order_by(Request.id)
                .offset(max(start, 0))
                .limit(max(count, 0))
            )
            return list(session.exec(stmt).all())

    def get_pending_request_count(self) -> int:
        with Session(self.engine) as session:
            stmt = select(func.count()).select_from(Request).where(Request.in_queue == True)  # noqa: E712
            return int(session.exec(stmt).one())

    def get_user_requests(self, user: str, limit: int = 100, offset: int = 0) -> list[Request]:
        with Session(self.engine) as session:
            stmt = (
                select(Request)
                .where(Request.user == user)
                .order_by(Request.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(session.exec(stmt).all())

    def list_requests(
        self, status: RequestStatus | None = None, limit: int = 100, offset: int = 0
    ) -> list[Request]:
        with Session(self.engine) as session:
            stmt = select(Request).order_by(Request.id.desc())
            if status is not None:
                stmt = stmt.where(Request.status == status)
            return list(session.exec(stmt.offset(offset).limit(limit)).all())

    def get_expired_leases(self, now: datetime | None = None) -> list[Request]:
        """Processing requests whose lease ran out."""
        now = now or _now()
        with Session(self.engine) as session:
            stmt = (
                select(Request)
                .where(Request.status == RequestStatus.PROCESSING)
                .where(Request.lease_expires_at < now)
                .order_by(Request.id)
            )
            return list(session.exec(stmt).all())

    def get_user_pending_balance(self, user: str, asset: str) -> Decimal:
        with Session(self.engine) as session:
            row = session.get(EscrowBalance, (user, asset))
            return Decimal(row.amount) if row else ZERO

    def get_account_balance(self, holder: str, asset: str) -> Decimal:
        with Session(self.engine) as session:
            row = session.get(AccountBalance, (holder, asset))
            return Decimal(row.amount) if row else ZERO

    def get_position_ids_for_user(self, user: str) -> list[int]:
        with Session(self.engine) as session:
            stmt = (
                select(OwnershipFlag.position_id)
                .where(OwnershipFlag.user == user)
                .order_by(OwnershipFlag.position_id)
            )
            return list(session.exec(stmt).all())

    def does_user_own_position(self, user: str, position_id: int) -> bool:
        with Session(self.engine) as session:
            return self._owns(session, user, position_id)

    def get_ownership_flags(self) -> dict[int, str]:
        """position_id -> user for every flag."""
        with Session(self.engine) as session:
            flags = session.exec(select(OwnershipFlag)).all()
            return {flag.position_id: flag.user for flag in flags}

    def get_queue_status(
        self,
        user: str,
        batch_size: int | None = None,
        delay_seconds: float | None = None,
    ) -> QueueStatus:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Request.id, Request.user)
                .where(Request.in_queue == True)  # noqa: E712
                .order_by(Request.id)
            ).all()

        user_position = next((i for i, (_, u) in enumerate(rows) if u == user), None)
        estimated = None
        if user_position is not None and batch_size and delay_seconds is not None:
            estimated = (user_position // batch_size + 1) * delay_seconds
        return QueueStatus(
            total_pending=len(rows),
            user_pending=sum(1 for _, u in rows if u == user),
            user_position=user_position,
            estimated_wait_seconds=estimated,
        )
