"""Request worker: drives pending requests through the two-phase commit.

This is what the processing loop calls on each firing. Per request:
validate → lock (start_processing) → handler (bridge + position service) →
finalize (complete_processing). Requests in a batch run strictly one after
another; one request failing never aborts the batch.

Withdraw and Close lock before the handler runs. Create and Deposit lock
inside the handler, right before funds are pulled across the bridge. A
request that fails while still Pending is locked anyway so the failure can be
finalized with a refund.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlmodel import Session, select

from vaultbridge.config import settings
from vaultbridge.errors import CrossLedgerCallFailure, LedgerUpdateFailure, RequestNotPendingError
from vaultbridge.models.credential import Credential
from vaultbridge.models.job_log import JobLog
from vaultbridge.models.request import Request, RequestKind, RequestStatus
from vaultbridge.services.bridge_account import BridgeAccount, CallResult
from vaultbridge.services.encryption import decrypt
from vaultbridge.services.ownership_index import OwnershipIndex
from vaultbridge.services.position_client import Funds, PositionLedgerClient
from vaultbridge.services.request_ledger import RequestLedger

logger = logging.getLogger(__name__)


def _notify(message: str):
    """Send a Telegram notification (fire-and-forget)."""
    try:
        from vaultbridge.services.telegram_bot import get_bot
        bot = get_bot()
        if bot and bot._loop:
            asyncio.run_coroutine_threadsafe(bot.send_notification(message), bot._loop)
    except Exception as e:
        logger.debug(f"Notification not sent: {e}")


@dataclass
class ProcessResult:
    success: bool
    message: str
    position_id: int | None = None
    amount: Decimal | None = None


@dataclass
class RequestOutcome:
    request_id: int
    kind: str
    success: bool
    message: str
    position_id: int | None = None
    ledger_update_failed: bool = False
    skipped: bool = False
    error: Exception | None = None


@dataclass
class BatchResult:
    start: int
    count: int
    outcomes: list[RequestOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success and not o.ledger_update_failed)

    @property
    def ledger_update_failures(self) -> int:
        return sum(1 for o in self.outcomes if o.ledger_update_failed)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded - self.ledger_update_failures - self.skipped

    def summary(self) -> dict:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "ledger_update_failures": self.ledger_update_failures,
        }


@dataclass
class _Attempt:
    """Progress of one request through the protocol."""

    request: Request
    locked: bool = False
    lock_error: CallResult | None = None
    contended: bool = False  # someone else already moved it past Pending
    effect_applied: bool = False  # the position side has changed


class Worker:
    def __init__(
        self,
        ledger: RequestLedger,
        bridge: BridgeAccount,
        positions: PositionLedgerClient,
        ownership: OwnershipIndex,
        allow_third_party_deposits: bool | None = None,
        log_engine=None,
    ):
        self.ledger = ledger
        self.bridge = bridge
        self.positions = positions
        self.ownership = ownership
        self.allow_third_party_deposits = (
            settings.allow_third_party_deposits
            if allow_third_party_deposits is None
            else allow_third_party_deposits
        )
        self.log_engine = log_engine or ledger.engine
        self._handlers = {
            RequestKind.CREATE: self._handle_create,
            RequestKind.DEPOSIT: self._handle_deposit,
            RequestKind.WITHDRAW: self._handle_withdraw,
            RequestKind.CLOSE: self._handle_close,
        }

    async def process_requests(self, start: int = 0, count: int | None = None, slot: int | None = None) -> BatchResult:
        """Process one page of the pending queue."""
        count = count or settings.batch_size
        batch = BatchResult(start=start, count=count)
        requests = self.bridge.view("get_pending_requests", start=start, count=count)

        if not requests:
            logger.info(f"[worker] Empty batch (start={start}, count={count})")
            self._log_batch(batch, slot, "success", "No pending requests")
            return batch

        logger.info(f"[worker] Processing {len(requests)} requests (start={start})")
        for request in requests:
            try:
                outcome = await self._process_one(request)
            except Exception as e:
                # The request stays Processing if it was locked; the lease sweeper recovers it
                logger.error(f"[request_{request.id}] Unexpected error: {e}", exc_info=True)
                outcome = RequestOutcome(
                    request_id=request.id,
                    kind=request.kind.value,
                    success=False,
                    message=f"Unexpected error: {e}",
                )
            batch.outcomes.append(outcome)

        s = batch.summary()
        logger.info(
            f"[worker] Batch done: total={s['total']} succeeded={s['succeeded']} "
            f"failed={s['failed']} skipped={s['skipped']} "
            f"ledger_update_failures={s['ledger_update_failures']}"
        )
        status = "error" if batch.ledger_update_failures else "success"
        self._log_batch(batch, slot, status)
        return batch

    async def _process_one(self, request: Request) -> RequestOutcome:
        tag = f"[request_{request.id}]"
        attempt = _Attempt(request=request)

        if request.status != RequestStatus.PENDING:
            logger.info(f"{tag} Skipping: status is {request.status.value}, not pending")
            return RequestOutcome(
                request_id=request.id,
                kind=request.kind.value,
                success=False,
                message=f"Not pending ({request.status.value})",
                skipped=True,
            )

        error = self._validate(request)
        if error:
            logger.warning(f"{tag} Invalid request: {error}")
            return await self._finish(attempt, ProcessResult(False, error))

        if request.kind in (RequestKind.WITHDRAW, RequestKind.CLOSE):
            if not await self._lock(attempt):
                if attempt.contended:
                    return self._skipped(attempt)
                return await self._finish(
                    attempt,
                    ProcessResult(False, f"Failed to start processing: {attempt.lock_error.error}"),
                )

        result = await self._handlers[request.kind](attempt)
        if attempt.contended:
            return self._skipped(attempt)
        return await self._finish(attempt, result)

    @staticmethod
    def _validate(request: Request) -> str | None:
        if request.kind != RequestKind.CLOSE and Decimal(request.amount) <= 0:
            return "Amount must be greater than 0"
        if request.kind != RequestKind.CREATE and request.position_id is None:
            return f"{request.kind.value} requires a position id"
        if request.kind == RequestKind.CREATE and not (
            request.vault_identifier and request.strategy_identifier
        ):
            return "Create requires vault and strategy identifiers"
        return None

    async def _lock(self, attempt: _Attempt) -> bool:
        """start_processing for the request; records why it failed."""
        result = await self.bridge.call("start_processing", request_id=attempt.request.id)
        if result.success:
            attempt.locked = True
            return True
        attempt.lock_error = result
        attempt.contended = isinstance(result.exception, RequestNotPendingError)
        logger.warning(f"[request_{attempt.request.id}] start_processing failed: {result.error}")
        return False

    def _skipped(self, attempt: _Attempt) -> RequestOutcome:
        request = attempt.request
        logger.info(f"[request_{request.id}] Already taken by another invocation, skipping")
        return RequestOutcome(
            request_id=request.id,
            kind=request.kind.value,
            success=False,
            message="Not pending",
            skipped=True,
        )

    async def _finish(self, attempt: _Attempt, result: ProcessResult) -> RequestOutcome:
        """complete_processing with the handler's result."""
        request = attempt.request
        tag = f"[request_{request.id}]"

        if not attempt.locked and attempt.lock_error is None:
            # Failed before the handler locked it: lock now so it can be finalized
            if not await self._lock(attempt) and attempt.contended:
                return self._skipped(attempt)

        outcome = RequestOutcome(
            request_id=request.id,
            kind=request.kind.value,
            success=result.success,
            message=result.message,
            position_id=result.position_id,
        )

        if attempt.effect_applied and not result.success:
            # Funds left the bridge and did not come back; a refund from custody would be wrong
            return await self._escalate(attempt, outcome, result.message)

        completed = await self.bridge.call(
            "complete_processing",
            request_id=request.id,
            success=result.success,
            position_id=result.position_id,
            message=result.message,
        )

        if completed.success:
            level = logging.INFO if result.success else logging.WARNING
            logger.log(level, f"{tag} {request.kind.value} {'ok' if result.success else 'failed'}: {result.message}")
            return outcome

        if attempt.effect_applied:
            return await self._escalate(attempt, outcome, completed.error)

        logger.error(f"{tag} complete_processing failed: {completed.error}")
        outcome.success = False
        outcome.message = f"{result.message}; complete_processing failed: {completed.error}"
        return outcome

    async def _escalate(self, attempt: _Attempt, outcome: RequestOutcome, detail: str) -> RequestOutcome:
        """Ledger update failure: the position side changed but the request ledger cannot follow."""
        request = attempt.request
        error = LedgerUpdateFailure(request.id, detail)
        logger.critical(
            f"[request_{request.id}] {error} after {request.kind.value} took effect "
            f"on the position side. Manual reconciliation required."
        )
        _notify(f"[request_{request.id}] LEDGER UPDATE FAILURE ({request.kind.value}): {detail}")

        held = await self.bridge.call(
            "hold_for_review",
            request_id=request.id,
            message=f"Ledger update failure: {detail}",
        )
        if not held.success:
            logger.error(f"[request_{request.id}] Could not hold for review: {held.error}")

        outcome.ledger_update_failed = True
        outcome.error = error
        outcome.message = f"Ledger update failure: {detail}"
        return outcome

    async def _return_funds(
        self, attempt: _Attempt, funds: Funds, reason: str, cause: Exception | None = None
    ) -> ProcessResult:
        """Push pulled funds back across the bridge, then report failure."""
        tag = f"[request_{attempt.request.id}]"
        if cause is not None and not isinstance(cause, CrossLedgerCallFailure):
            logger.error(f"{tag} Unexpected error with funds in transit: {cause}", exc_info=cause)
        try:
            await self.bridge.deposit(funds)
        except CrossLedgerCallFailure as e:
            logger.critical(f"{tag} Could not return {funds.amount} {funds.asset} to custody: {e}")
            _notify(f"[request_{attempt.request.id}] Funds stranded in transit: {e}")
            attempt.effect_applied = True
            return ProcessResult(False, f"{reason}; returning funds failed: {e}")
        logger.info(f"{tag} Returned {funds.amount} to custody: {reason}")
        return ProcessResult(False, reason)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_create(self, attempt: _Attempt) -> ProcessResult:
        request = attempt.request
        if not await self._lock(attempt):
            return ProcessResult(False, f"Failed to start processing: {attempt.lock_error.error}")

        try:
            funds = await self.bridge.withdraw(request.amount, request.asset)
        except CrossLedgerCallFailure as e:
            return ProcessResult(False, f"Failed to pull funds: {e}")

        if funds.kind != request.vault_identifier:
            return await self._return_funds(
                attempt, funds,
                f"Vault type mismatch: requested {request.vault_identifier}, funds are {funds.kind}",
            )

        try:
            strategies = await self.positions.get_supported_strategies()
        except Exception as e:
            return await self._return_funds(attempt, funds, f"Could not resolve strategy: {e}", e)
        if request.strategy_identifier not in strategies:
            return await self._return_funds(
                attempt, funds, f"Unsupported strategy: {request.strategy_identifier}"
            )

        before: set[int] | None = None
        if not self.positions.create_returns_id:
            try:
                before = set(await self.positions.get_owned_position_ids())
            except Exception as e:
                return await self._return_funds(attempt, funds, f"Could not list positions: {e}", e)

        try:
            position_id = await self.positions.create_position(request.strategy_identifier, funds)
        except Exception as e:
            return await self._return_funds(attempt, funds, f"Position creation failed: {e}", e)
        attempt.effect_applied = True

        if position_id is None:
            position_id = await self._discover_new_position(before or set())
            if position_id is None:
                logger.critical(
                    f"[request_{request.id}] Position created but its id could not be determined"
                )
                return ProcessResult(False, "Position created but its id could not be determined")

        self.ownership.register(request.user, position_id)
        return ProcessResult(
            True, f"Created position {position_id}", position_id=position_id, amount=funds.amount
        )

    async def _discover_new_position(self, before: set[int]) -> int | None:
        try:
            after = set(await self.positions.get_owned_position_ids())
        except CrossLedgerCallFailure as e:
            logger.error(f"Listing positions after create failed: {e}")
            return None
        new_ids = after - before
        if len(new_ids) != 1:
            logger.error(f"Expected exactly one new position id, found {sorted(new_ids)}")
            return None
        return new_ids.pop()

    async def _handle_deposit(self, attempt: _Attempt) -> ProcessResult:
        request = attempt.request
        owner = self.ownership.owner_of(request.position_id)
        if owner is None:
            return ProcessResult(False, f"Position {request.position_id} does not exist")
        if owner != request.user and not self.allow_third_party_deposits:
            return ProcessResult(False, f"{request.user} does not own position {request.position_id}")

        if not await self._lock(attempt):
            return ProcessResult(False, f"Failed to start processing: {attempt.lock_error.error}")

        try:
            funds = await self.bridge.withdraw(request.amount, request.asset)
        except CrossLedgerCallFailure as e:
            return ProcessResult(False, f"Failed to pull funds: {e}")

        try:
            await self.positions.deposit_to_position(request.position_id, funds)
        except Exception as e:
            return await self._return_funds(attempt, funds, f"Deposit failed: {e}", e)
        attempt.effect_applied = True

        return ProcessResult(
            True,
            f"Deposited {funds.amount} to position {request.position_id}",
            position_id=request.position_id,
            amount=funds.amount,
        )

    async def _handle_withdraw(self, attempt: _Attempt) -> ProcessResult:
        request = attempt.request
        position_id = request.position_id
        if not self.ownership.is_owner(request.user, position_id):
            return ProcessResult(False, f"{request.user} does not own position {position_id}", position_id)

        try:
            actual = await self.positions.withdraw_from_position(position_id, Decimal(request.amount))
        except CrossLedgerCallFailure as e:
            return ProcessResult(False, f"Withdraw failed: {e}", position_id)
        attempt.effect_applied = True

        try:
            funds = self.bridge.wrap(request.asset, actual)
            await self.bridge.transfer_to(request.user, funds)
        except CrossLedgerCallFailure as e:
            return await self._undo_withdraw(attempt, actual, e)

        return ProcessResult(
            True, f"Withdrew {actual} from position {position_id}", position_id, actual
        )

    async def _undo_withdraw(self, attempt: _Attempt, actual: Decimal, error: Exception) -> ProcessResult:
        """Put undeliverable withdrawn funds back into the position."""
        request = attempt.request
        try:
            funds = Funds(asset=request.asset, amount=actual, kind="")
            await self.positions.deposit_to_position(request.position_id, funds)
        except CrossLedgerCallFailure as e:
            logger.critical(
                f"[request_{request.id}] Withdrew {actual} but could neither deliver ({error}) "
                f"nor re-deposit it ({e})"
            )
            _notify(f"[request_{request.id}] Withdrawn funds stranded: {e}")
            return ProcessResult(False, f"Delivery failed: {error}; re-deposit failed: {e}", request.position_id)
        attempt.effect_applied = False
        return ProcessResult(
            False, f"Delivery failed, funds returned to position: {error}", request.position_id
        )

    async def _handle_close(self, attempt: _Attempt) -> ProcessResult:
        request = attempt.request
        position_id = request.position_id
        if not self.ownership.is_owner(request.user, position_id):
            return ProcessResult(False, f"{request.user} does not own position {position_id}", position_id)

        try:
            returned = await self.positions.close_position(position_id)
        except CrossLedgerCallFailure as e:
            return ProcessResult(False, f"Close failed: {e}", position_id)
        attempt.effect_applied = True

        try:
            funds = self.bridge.wrap(request.asset, returned)
            await self.bridge.transfer_to(request.user, funds)
        except CrossLedgerCallFailure as e:
            logger.critical(
                f"[request_{request.id}] Position {position_id} closed but {returned} "
                f"could not be delivered: {e}"
            )
            _notify(f"[request_{request.id}] Close proceeds stranded: {e}")
            return ProcessResult(False, f"Position closed but delivery failed: {e}", position_id)

        self.ownership.unregister(position_id)
        return ProcessResult(
            True, f"Closed position {position_id}, returned {returned}", position_id, returned
        )

    def _log_batch(self, batch: BatchResult, slot: int | None, status: str, message: str | None = None):
        """Write a JobLog entry for the invocation."""
        details = None
        if batch.outcomes:
            details = {
                "outcomes": [
                    {
                        "request_id": o.request_id,
                        "kind": o.kind,
                        "success": o.success,
                        "message": o.message,
                        "position_id": o.position_id,
                        "ledger_update_failed": o.ledger_update_failed,
                        "skipped": o.skipped,
                    }
                    for o in batch.outcomes
                ]
            }
        with Session(self.log_engine) as session:
            session.add(JobLog(
                job="process",
                status=status,
                slot=slot,
                total=batch.total,
                succeeded=batch.succeeded,
                failed=batch.failed,
                ledger_update_failures=batch.ledger_update_failures,
                message=message,
                details=details,
            ))
            session.commit()


_worker: Worker | None = None


def build_position_client(session_engine=None) -> PositionLedgerClient:
    """Position service client from the active credential, falling back to settings."""
    from vaultbridge.database import engine

    with Session(session_engine or engine) as session:
        cred = session.exec(
            select(Credential).where(Credential.is_active == True)  # noqa: E712
        ).first()

    if cred is None:
        return PositionLedgerClient(
            host=settings.position_service_host,
            api_key=settings.position_service_api_key,
            timeout=settings.position_service_timeout,
        )
    api_key = decrypt(cred.api_key_encrypted) if cred.api_key_encrypted else ""
    return PositionLedgerClient(
        host=cred.position_service_host,
        api_key=api_key,
        timeout=settings.position_service_timeout,
    )


def get_worker() -> Worker:
    """The process-wide worker; the bridge account is held only here."""
    global _worker
    if _worker is None:
        from vaultbridge.database import engine

        ledger = RequestLedger(engine)
        _worker = Worker(
            ledger=ledger,
            bridge=BridgeAccount(ledger),
            positions=build_position_client(engine),
            ownership=OwnershipIndex(engine),
        )
    return _worker


async def shutdown_worker():
    global _worker
    if _worker is not None:
        await _worker.positions.close()
        _worker = None
