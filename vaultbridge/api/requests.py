"""User request API.

The caller identity comes from the X-Caller-Address header, set by the
authenticating gateway. Settlement is asynchronous: clients submit, then
poll the request until it is completed or failed.
"""

from fastapi import APIRouter, Depends

from vaultbridge.api.deps import get_caller, get_ledger, http_error
from vaultbridge.engine.cadence import compute_delay
from vaultbridge.engine.scheduler import load_state
from vaultbridge.errors import VaultBridgeError
from vaultbridge.schemas.request import BalanceRead, QueueStatusRead, RequestCreate, RequestRead
from vaultbridge.services.request_ledger import RequestLedger

router = APIRouter(prefix="/api/requests", tags=["requests"])


@router.post("", response_model=RequestRead, status_code=201)
def create_request(
    data: RequestCreate,
    caller: str = Depends(get_caller),
    ledger: RequestLedger = Depends(get_ledger),
):
    try:
        return ledger.create_request(
            caller,
            data.kind,
            data.asset,
            data.amount,
            value=data.value,
            position_id=data.position_id,
            vault_identifier=data.vault_identifier,
            strategy_identifier=data.strategy_identifier,
        )
    except VaultBridgeError as e:
        raise http_error(e)


@router.get("", response_model=list[RequestRead])
def list_my_requests(
    limit: int = 100,
    offset: int = 0,
    caller: str = Depends(get_caller),
    ledger: RequestLedger = Depends(get_ledger),
):
    return ledger.get_user_requests(caller, limit=min(limit, 500), offset=offset)


@router.get("/queue", response_model=QueueStatusRead)
def queue_status(caller: str = Depends(get_caller), ledger: RequestLedger = Depends(get_ledger)):
    """Where the caller stands in the pending queue, with a rough wait estimate."""
    state = load_state(ledger.engine)
    pending = ledger.get_pending_request_count()
    delay = compute_delay(pending, state.thresholds, state.default_delay)
    return ledger.get_queue_status(caller, batch_size=state.batch_size, delay_seconds=delay)


@router.get("/balances/{asset}", response_model=BalanceRead)
def balance(asset: str, caller: str = Depends(get_caller), ledger: RequestLedger = Depends(get_ledger)):
    return BalanceRead(
        holder=caller,
        asset=asset,
        available=ledger.get_account_balance(caller, asset),
        pending=ledger.get_user_pending_balance(caller, asset),
    )


@router.get("/positions", response_model=list[int])
def my_positions(caller: str = Depends(get_caller), ledger: RequestLedger = Depends(get_ledger)):
    return ledger.get_position_ids_for_user(caller)


@router.get("/positions/{position_id}")
def owns_position(position_id: int, caller: str = Depends(get_caller), ledger: RequestLedger = Depends(get_ledger)):
    return {"position_id": position_id, "owned": ledger.does_user_own_position(caller, position_id)}


@router.get("/{request_id}", response_model=RequestRead)
def get_request(request_id: int, ledger: RequestLedger = Depends(get_ledger)):
    try:
        return ledger.get_request(request_id)
    except VaultBridgeError as e:
        raise http_error(e)


@router.post("/{request_id}/cancel", response_model=RequestRead)
def cancel_request(
    request_id: int,
    caller: str = Depends(get_caller),
    ledger: RequestLedger = Depends(get_ledger),
):
    try:
        return ledger.cancel_request(caller, request_id)
    except VaultBridgeError as e:
        raise http_error(e)
