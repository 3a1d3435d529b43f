"""System API: health, loop control, job logs, recovery and ledger administration."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from vaultbridge.api.deps import get_current_user, http_error
from vaultbridge.database import get_session
from vaultbridge.errors import SchedulingFailure, VaultBridgeError
from vaultbridge.models.job_log import JobLog
from vaultbridge.models.request import RequestStatus
from vaultbridge.schemas.request import RequestRead
from vaultbridge.schemas.scheduler import (
    AccountCredit,
    ArmRequest,
    AssetConfigUpdate,
    BatchSizeUpdate,
    DefaultDelayUpdate,
    FeeTopUp,
    ForceFailRequest,
    MaxParallelUpdate,
    PriorityUpdate,
    ThresholdUpdate,
)

router = APIRouter(prefix="/api/system", tags=["system"])
operator = [Depends(get_current_user)]


def _loop():
    from vaultbridge.engine.scheduler import get_loop
    return get_loop()


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=operator)
def scheduler_status():
    """APScheduler jobs plus the processing loop's persisted state."""
    from vaultbridge.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.post("/pause", dependencies=operator)
def pause():
    _loop().pause()
    return {"status": "ok", "paused": True}


@router.post("/unpause", dependencies=operator)
def unpause():
    """Clears the paused flag only; the chain stays stopped until armed."""
    _loop().unpause()
    return {"status": "ok", "paused": False}


@router.post("/arm", dependencies=operator)
def arm(body: ArmRequest):
    try:
        schedule_id = _loop().arm(delay=body.delay)
    except SchedulingFailure as e:
        raise http_error(e)
    return {"status": "ok", "schedule_id": schedule_id, "already_armed": schedule_id is None}


@router.put("/thresholds", dependencies=operator)
def set_thresholds(body: ThresholdUpdate):
    try:
        _loop().set_threshold_to_delay(body.thresholds, default_delay=body.default_delay)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _loop().status()


@router.put("/default-delay", dependencies=operator)
def set_default_delay(body: DefaultDelayUpdate):
    try:
        _loop().set_default_delay(body.default_delay)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _loop().status()


@router.put("/max-parallel", dependencies=operator)
def set_max_parallel(body: MaxParallelUpdate):
    _loop().set_max_parallel_transactions(body.max_parallel)
    return _loop().status()


@router.put("/batch-size", dependencies=operator)
def set_batch_size(body: BatchSizeUpdate):
    _loop().set_batch_size(body.batch_size)
    return _loop().status()


@router.put("/priority", dependencies=operator)
def set_priority(body: PriorityUpdate):
    _loop().set_priority(body.priority, body.compute_budget)
    return _loop().status()


@router.post("/fees/top-up", dependencies=operator)
def top_up_fees(body: FeeTopUp):
    balance = _loop().top_up_fees(body.amount)
    return {"status": "ok", "fee_balance": str(balance)}


@router.post("/trigger", dependencies=operator)
async def trigger(start: int = 0):
    """Process one page now, outside the scheduled chain."""
    loop = _loop()
    batch = await loop.worker.process_requests(start=start, count=loop.get_state().batch_size)
    return {"status": "ok", **batch.summary()}


@router.get("/logs", dependencies=operator)
def job_logs(
    job: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(JobLog).order_by(JobLog.timestamp.desc())
    if job is not None:
        stmt = stmt.where(JobLog.job == job)
    if status is not None:
        stmt = stmt.where(JobLog.status == status)
    return session.exec(stmt.offset(offset).limit(limit)).all()


@router.get("/requests", response_model=list[RequestRead], dependencies=operator)
def list_requests(status: RequestStatus | None = None, limit: int = 100, offset: int = 0):
    return _loop().worker.ledger.list_requests(status=status, limit=limit, offset=offset)


@router.get("/requests/held", response_model=list[RequestRead], dependencies=operator)
def held_requests():
    """Requests parked after a ledger update failure."""
    return _loop().worker.ledger.get_held_requests()


@router.post("/requests/{request_id}/force-fail", response_model=RequestRead, dependencies=operator)
async def force_fail(request_id: int, body: ForceFailRequest):
    result = await _loop().worker.bridge.call("force_fail", request_id=request_id, message=body.message)
    if not result.success:
        if isinstance(result.exception, VaultBridgeError):
            raise http_error(result.exception)
        raise HTTPException(status_code=500, detail=result.error)
    return result.result


@router.post("/reconcile", dependencies=operator)
async def reconcile_now():
    from vaultbridge.engine.reconcile import run_reconcile

    report = await run_reconcile()
    return {
        "added": report.added,
        "removed": report.removed,
        "cleared_flags": report.cleared_flags,
        "divergent": report.divergent,
        "unflagged": report.unflagged,
        "orphaned": report.orphaned,
        "error": report.error,
    }


@router.post("/sweep", dependencies=operator)
async def sweep_now():
    from vaultbridge.engine.sweeper import run_sweep

    report = await run_sweep()
    return {"force_failed": report.failed, "stuck": report.stuck}


@router.get("/assets", dependencies=operator)
def list_assets():
    return _loop().worker.ledger.list_asset_configs()


@router.put("/assets/{asset}", dependencies=operator)
def configure_asset(asset: str, body: AssetConfigUpdate):
    return _loop().worker.ledger.set_asset_config(
        asset,
        vault_type=body.vault_type,
        is_native=body.is_native,
        min_amount=body.min_amount,
        is_supported=body.is_supported,
    )


@router.post("/accounts/credit", dependencies=operator)
def credit_account(body: AccountCredit):
    try:
        balance = _loop().worker.ledger.credit_account(body.holder, body.asset, body.amount)
    except VaultBridgeError as e:
        raise http_error(e)
    return {"holder": body.holder, "asset": body.asset, "balance": str(balance)}
