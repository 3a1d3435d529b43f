"""Tests for the request worker: per-kind handlers, failure paths and batch behaviour."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlmodel import Session, select

from conftest import ALICE, BOB, BRIDGE, NATIVE, STARTING_BALANCE, STRATEGY, submit_create
from vaultbridge.errors import CrossLedgerCallFailure, LedgerUpdateFailure
from vaultbridge.models.job_log import JobLog
from vaultbridge.models.request import RequestStatus
from vaultbridge.services.position_client import Funds, PositionLedgerClient


async def _create_position(worker, ledger, user=ALICE, amount="10") -> int:
    request = submit_create(ledger, user=user, amount=amount)
    batch = await worker.process_requests(0, 10)
    assert batch.succeeded == 1
    return ledger.get_request(request.id).position_id


# ---------------------------------------------------------------------------
# 1. Batches
# ---------------------------------------------------------------------------

class TestBatch:
    @pytest.mark.asyncio
    async def test_empty_queue_is_a_no_op(self, worker, engine):
        batch = await worker.process_requests(0, 5)
        assert batch.summary() == {"total": 0, "succeeded": 0, "failed": 0, "skipped": 0, "ledger_update_failures": 0}

        with Session(engine) as session:
            logs = session.exec(select(JobLog).where(JobLog.job == "process")).all()
        assert len(logs) == 1
        assert logs[0].total == 0
        assert logs[0].message == "No pending requests"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_the_batch(self, worker, ledger):
        bad = ledger.create_request(ALICE, "deposit", NATIVE, "5", value="5", position_id=999)
        good = submit_create(ledger, amount="5")

        batch = await worker.process_requests(0, 10)

        assert batch.total == 2
        assert batch.succeeded == 1
        assert batch.failed == 1
        assert ledger.get_request(bad.id).status == RequestStatus.FAILED
        assert ledger.get_request(good.id).status == RequestStatus.COMPLETED
        assert ledger.get_pending_request_count() == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, worker, ledger, monkeypatch):
        first = submit_create(ledger, amount="5")
        second = submit_create(ledger, amount="5")
        monkeypatch.setattr(worker, "_validate", MagicMock(side_effect=[RuntimeError("bug"), None]))

        batch = await worker.process_requests(0, 10)

        assert batch.total == 2
        assert batch.outcomes[0].request_id == first.id
        assert "Unexpected error" in batch.outcomes[0].message
        assert batch.failed == 1
        # crashed before locking, so it is still queued for the next round
        assert ledger.get_request(first.id).status == RequestStatus.PENDING
        assert ledger.get_request(second.id).status == RequestStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_respects_pagination_window(self, worker, ledger):
        ids = [submit_create(ledger, amount="1").id for _ in range(4)]
        batch = await worker.process_requests(start=2, count=2)
        assert [o.request_id for o in batch.outcomes] == ids[2:]


# ---------------------------------------------------------------------------
# 2. Create
# ---------------------------------------------------------------------------

class TestCreate:
    @pytest.mark.asyncio
    async def test_create_registers_both_mirrors(self, worker, ledger, ownership, positions):
        assert ownership.positions_for(ALICE) == []
        request = submit_create(ledger, amount="10")

        batch = await worker.process_requests(0, 5)

        done = ledger.get_request(request.id)
        assert batch.succeeded == 1
        assert done.status == RequestStatus.COMPLETED
        assert done.in_queue is False
        assert ownership.positions_for(ALICE) == [done.position_id]
        assert ledger.does_user_own_position(ALICE, done.position_id)
        assert await positions.get_owned_position_ids() == [done.position_id]
        assert ledger.get_user_pending_balance(ALICE, NATIVE) == 0
        assert ledger.get_account_balance(BRIDGE, NATIVE) == 0

    @pytest.mark.asyncio
    async def test_injected_create_failure_refunds(self, worker, ledger, ownership, positions):
        escrow_before = ledger.get_user_pending_balance(ALICE, NATIVE)
        request = submit_create(ledger, amount="10")
        positions.create_position = AsyncMock(side_effect=CrossLedgerCallFailure("create", "boom"))

        batch = await worker.process_requests(0, 5)

        done = ledger.get_request(request.id)
        assert batch.failed == 1
        assert done.status == RequestStatus.FAILED
        assert "boom" in done.message
        assert ledger.get_user_pending_balance(ALICE, NATIVE) == escrow_before
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE
        assert ledger.get_account_balance(BRIDGE, NATIVE) == 0
        assert ownership.all_entries() == {}
        assert ledger.get_pending_request_count() == 0

    @pytest.mark.asyncio
    async def test_vault_type_mismatch_returns_funds(self, worker, ledger, positions):
        request = submit_create(ledger, amount="10", vault="A.0000000000000001.Other.Vault")
        positions.create_position = AsyncMock()

        await worker.process_requests(0, 5)

        done = ledger.get_request(request.id)
        assert done.status == RequestStatus.FAILED
        assert "mismatch" in done.message
        positions.create_position.assert_not_called()
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE

    @pytest.mark.asyncio
    async def test_unexpected_error_after_pull_returns_funds(self, worker, ledger, ownership, positions):
        request = submit_create(ledger, amount="10")
        positions.get_supported_strategies = AsyncMock(side_effect=RuntimeError("bug"))

        batch = await worker.process_requests(0, 5)

        done = ledger.get_request(request.id)
        assert batch.failed == 1
        assert done.status == RequestStatus.FAILED
        assert "bug" in done.message
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE
        assert ledger.get_account_balance(BRIDGE, NATIVE) == 0
        assert ownership.all_entries() == {}

    @pytest.mark.asyncio
    async def test_unreadable_create_reply_returns_funds(self, worker, ledger, ownership):
        def handler(request: httpx.Request):
            if request.url.path == "/strategies":
                return httpx.Response(200, json={"strategies": [STRATEGY]})
            return httpx.Response(200, text="created")

        worker.positions = PositionLedgerClient(
            host="https://positions.example", transport=httpx.MockTransport(handler)
        )
        request = submit_create(ledger, amount="10")

        await worker.process_requests(0, 5)
        await worker.positions.close()

        done = ledger.get_request(request.id)
        assert done.status == RequestStatus.FAILED
        assert "not JSON" in done.message
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE
        assert ledger.get_account_balance(BRIDGE, NATIVE) == 0
        assert ledger.get_pending_request_count() == 0
        assert ownership.all_entries() == {}

    @pytest.mark.asyncio
    async def test_unknown_strategy_fails_closed(self, worker, ledger):
        request = submit_create(ledger, amount="10", strategy="A.0.Nope.Strategy")
        await worker.process_requests(0, 5)
        done = ledger.get_request(request.id)
        assert done.status == RequestStatus.FAILED
        assert "Unsupported strategy" in done.message
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE

    @pytest.mark.asyncio
    async def test_position_id_discovered_when_not_returned(self, worker, ledger, ownership, positions):
        positions.create_returns_id = False
        await positions.create_position("s", Funds(NATIVE, Decimal("1"), "v"))  # pre-existing id 1
        request = submit_create(ledger, amount="10")

        await worker.process_requests(0, 5)

        done = ledger.get_request(request.id)
        assert done.status == RequestStatus.COMPLETED
        assert done.position_id == 2
        assert ownership.owner_of(2) == ALICE


# ---------------------------------------------------------------------------
# 3. Deposit
# ---------------------------------------------------------------------------

class TestDeposit:
    @pytest.mark.asyncio
    async def test_deposit_adds_to_position(self, worker, ledger, positions, ownership):
        position_id = await _create_position(worker, ledger, amount="10")
        request = ledger.create_request(ALICE, "deposit", NATIVE, "5", value="5", position_id=position_id)

        await worker.process_requests(0, 5)

        assert ledger.get_request(request.id).status == RequestStatus.COMPLETED
        assert (await positions.get_position(position_id))["balance"] == Decimal("15")
        assert ownership.positions_for(ALICE) == [position_id]

    @pytest.mark.asyncio
    async def test_deposit_to_missing_position_is_finalized_failed(self, worker, ledger):
        request = ledger.create_request(ALICE, "deposit", NATIVE, "5", value="5", position_id=42)

        await worker.process_requests(0, 5)

        done = ledger.get_request(request.id)
        assert done.status == RequestStatus.FAILED
        assert "does not exist" in done.message
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE

    @pytest.mark.asyncio
    async def test_third_party_deposit_allowed_by_default(self, worker, ledger, positions):
        position_id = await _create_position(worker, ledger, user=ALICE)
        request = ledger.create_request(BOB, "deposit", NATIVE, "5", value="5", position_id=position_id)
        await worker.process_requests(0, 5)
        assert ledger.get_request(request.id).status == RequestStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_third_party_deposit_can_be_disabled(self, worker, ledger):
        worker.allow_third_party_deposits = False
        position_id = await _create_position(worker, ledger, user=ALICE)
        request = ledger.create_request(BOB, "deposit", NATIVE, "5", value="5", position_id=position_id)

        await worker.process_requests(0, 5)

        assert ledger.get_request(request.id).status == RequestStatus.FAILED
        assert ledger.get_account_balance(BOB, NATIVE) == STARTING_BALANCE

    @pytest.mark.asyncio
    async def test_failed_deposit_returns_funds(self, worker, ledger, positions):
        position_id = await _create_position(worker, ledger)
        request = ledger.create_request(ALICE, "deposit", NATIVE, "5", value="5", position_id=position_id)
        positions.deposit_to_position = AsyncMock(side_effect=CrossLedgerCallFailure("deposit", "down"))

        await worker.process_requests(0, 5)

        assert ledger.get_request(request.id).status == RequestStatus.FAILED
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE - 10
        assert ledger.get_account_balance(BRIDGE, NATIVE) == 0

    @pytest.mark.asyncio
    async def test_unexpected_deposit_error_returns_funds(self, worker, ledger, positions):
        position_id = await _create_position(worker, ledger)
        request = ledger.create_request(ALICE, "deposit", NATIVE, "5", value="5", position_id=position_id)
        positions.deposit_to_position = AsyncMock(side_effect=KeyError("amount"))

        await worker.process_requests(0, 5)

        assert ledger.get_request(request.id).status == RequestStatus.FAILED
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE - 10
        assert ledger.get_account_balance(BRIDGE, NATIVE) == 0


# ---------------------------------------------------------------------------
# 4. Withdraw and Close
# ---------------------------------------------------------------------------

class TestWithdrawAndClose:
    @pytest.mark.asyncio
    async def test_withdraw_delivers_to_requester(self, worker, ledger, positions):
        position_id = await _create_position(worker, ledger, amount="10")
        request = ledger.create_request(ALICE, "withdraw", NATIVE, "4", position_id=position_id)

        batch = await worker.process_requests(0, 5)

        assert batch.succeeded == 1
        assert ledger.get_request(request.id).status == RequestStatus.COMPLETED
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE - 10 + 4
        assert (await positions.get_position(position_id))["balance"] == Decimal("6")

    @pytest.mark.asyncio
    async def test_withdraw_reports_capped_amount(self, worker, ledger):
        position_id = await _create_position(worker, ledger, amount="10")
        ledger.create_request(ALICE, "withdraw", NATIVE, "50", position_id=position_id)

        batch = await worker.process_requests(0, 5)

        assert "Withdrew 10" in batch.outcomes[0].message
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE

    @pytest.mark.asyncio
    async def test_withdraw_fails_closed_without_worker_ownership(self, worker, ledger, ownership, positions):
        position_id = await _create_position(worker, ledger)
        ownership.unregister(position_id)
        request = ledger.create_request(ALICE, "withdraw", NATIVE, "4", position_id=position_id)

        await worker.process_requests(0, 5)

        assert ledger.get_request(request.id).status == RequestStatus.FAILED
        assert (await positions.get_position(position_id))["balance"] == Decimal("10")

    @pytest.mark.asyncio
    async def test_undeliverable_withdraw_is_put_back(self, worker, ledger, positions, bridge):
        position_id = await _create_position(worker, ledger, amount="10")
        request = ledger.create_request(ALICE, "withdraw", NATIVE, "4", position_id=position_id)
        bridge.transfer_to = AsyncMock(side_effect=CrossLedgerCallFailure("transfer", "rejected"))

        batch = await worker.process_requests(0, 5)

        assert ledger.get_request(request.id).status == RequestStatus.FAILED
        assert batch.ledger_update_failures == 0
        assert (await positions.get_position(position_id))["balance"] == Decimal("10")

    @pytest.mark.asyncio
    async def test_close_drains_and_deregisters(self, worker, ledger, ownership, positions):
        position_id = await _create_position(worker, ledger, amount="10")
        request = ledger.create_request(ALICE, "close", NATIVE, "0", position_id=position_id)

        await worker.process_requests(0, 5)

        assert ledger.get_request(request.id).status == RequestStatus.COMPLETED
        assert ledger.get_account_balance(ALICE, NATIVE) == STARTING_BALANCE
        assert ownership.positions_for(ALICE) == []
        assert not ledger.does_user_own_position(ALICE, position_id)
        assert await positions.get_owned_position_ids() == []

    @pytest.mark.asyncio
    async def test_close_service_failure_keeps_ownership(self, worker, ledger, ownership, positions):
        position_id = await _create_position(worker, ledger)
        request = ledger.create_request(ALICE, "close", NATIVE, "0", position_id=position_id)
        positions.close_position = AsyncMock(side_effect=CrossLedgerCallFailure("close", "down"))

        await worker.process_requests(0, 5)

        assert ledger.get_request(request.id).status == RequestStatus.FAILED
        assert ownership.owner_of(position_id) == ALICE
        assert ledger.does_user_own_position(ALICE, position_id)


# ---------------------------------------------------------------------------
# 5. Idempotency and ledger update failures
# ---------------------------------------------------------------------------

class TestProtocolEdges:
    @pytest.mark.asyncio
    async def test_request_taken_by_another_invocation_is_skipped(self, worker, ledger, bridge):
        request = submit_create(ledger, amount="10")
        stale_page = ledger.get_pending_requests(0, 5)
        ledger.start_processing(BRIDGE, request.id)  # another slot got there first
        bridge.view = MagicMock(return_value=stale_page)

        batch = await worker.process_requests(0, 5)

        assert batch.outcomes[0].skipped is True
        assert batch.skipped == 1
        assert batch.failed == 0
        assert ledger.get_request(request.id).status == RequestStatus.PROCESSING
        assert ledger.get_account_balance(BRIDGE, NATIVE) == Decimal("10")

    @pytest.mark.asyncio
    async def test_processing_request_in_page_is_skipped(self, worker, ledger):
        request = submit_create(ledger, amount="10")
        ledger.start_processing(BRIDGE, request.id)

        batch = await worker.process_requests(0, 5)

        assert batch.outcomes[0].skipped is True
        assert ledger.get_request(request.id).status == RequestStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_finalize_failure_after_effect_is_escalated(self, worker, ledger, ownership, monkeypatch):
        request = submit_create(ledger, amount="10")
        monkeypatch.setattr(ledger, "complete_processing", MagicMock(side_effect=RuntimeError("db down")))

        batch = await worker.process_requests(0, 5)

        outcome = batch.outcomes[0]
        assert outcome.ledger_update_failed is True
        assert isinstance(outcome.error, LedgerUpdateFailure)
        assert outcome.error.request_id == request.id
        assert batch.ledger_update_failures == 1
        assert batch.succeeded == 0
        held = ledger.get_request(request.id)
        assert held.status == RequestStatus.PROCESSING
        assert held.lease_expires_at is None
        assert held.in_queue is False
        assert "Ledger update failure" in held.message
        # the position exists; the worker mirror already knows about it
        assert len(ownership.all_entries()) == 1

    @pytest.mark.asyncio
    async def test_held_request_does_not_block_the_queue(self, worker, ledger, monkeypatch):
        held = submit_create(ledger, amount="10")
        monkeypatch.setattr(ledger, "complete_processing", MagicMock(side_effect=RuntimeError("db down")))
        await worker.process_requests(0, 1)
        monkeypatch.undo()

        fresh = submit_create(ledger, amount="5")
        assert ledger.get_pending_request_count() == 1

        batch = await worker.process_requests(0, 1)

        assert [o.request_id for o in batch.outcomes] == [fresh.id]
        assert ledger.get_request(fresh.id).status == RequestStatus.COMPLETED
        assert [r.id for r in ledger.get_held_requests()] == [held.id]

    @pytest.mark.asyncio
    async def test_finalize_failure_before_effect_is_plain_failure(self, worker, ledger, monkeypatch):
        ledger.create_request(ALICE, "deposit", NATIVE, "5", value="5", position_id=42)
        monkeypatch.setattr(ledger, "complete_processing", MagicMock(side_effect=RuntimeError("db down")))

        batch = await worker.process_requests(0, 5)

        assert batch.ledger_update_failures == 0
        assert batch.failed == 1
        assert "complete_processing failed" in batch.outcomes[0].message

    @pytest.mark.asyncio
    async def test_batch_is_logged(self, worker, ledger, engine):
        submit_create(ledger, amount="1")
        await worker.process_requests(0, 5, slot=2)
        with Session(engine) as session:
            log = session.exec(select(JobLog).where(JobLog.job == "process")).one()
        assert log.slot == 2
        assert log.succeeded == 1
        assert log.details["outcomes"][0]["success"] is True
