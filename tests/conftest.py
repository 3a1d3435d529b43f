"""Shared fixtures: an in-memory database and the worker's collaborators wired to it."""

from decimal import Decimal

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from vaultbridge.config import settings
from vaultbridge.database import create_db_and_tables
from vaultbridge.engine.worker import Worker
from vaultbridge.services.bridge_account import BridgeAccount
from vaultbridge.services.ownership_index import OwnershipIndex
from vaultbridge.services.position_client import MOCK_STRATEGIES, PositionLedgerClient
from vaultbridge.services.request_ledger import RequestLedger

BRIDGE = settings.bridge_address
NATIVE = settings.native_asset
VAULT = settings.native_vault_type
STRATEGY = MOCK_STRATEGIES[0]
ALICE = "0x00000000000000000000000000000000000a11ce"
BOB = "0x0000000000000000000000000000000000000b0b"
STARTING_BALANCE = Decimal("100")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(engine):
    ledger = RequestLedger(engine, bridge_address=BRIDGE, native_asset=NATIVE, lease_seconds=600)
    ledger.ensure_native_asset(VAULT)
    ledger.credit_account(ALICE, NATIVE, STARTING_BALANCE)
    ledger.credit_account(BOB, NATIVE, STARTING_BALANCE)
    return ledger


@pytest.fixture
def bridge(ledger):
    return BridgeAccount(ledger)


@pytest.fixture
def positions():
    return PositionLedgerClient(host="mock")


@pytest.fixture
def ownership(engine):
    return OwnershipIndex(engine)


@pytest.fixture
def worker(ledger, bridge, positions, ownership):
    return Worker(
        ledger=ledger,
        bridge=bridge,
        positions=positions,
        ownership=ownership,
        allow_third_party_deposits=True,
    )


def submit_create(ledger, user=ALICE, amount="10", vault=VAULT, strategy=STRATEGY):
    return ledger.create_request(
        user, "create", NATIVE, amount, value=amount,
        vault_identifier=vault, strategy_identifier=strategy,
    )
