"""Tests for API schema validation."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from vaultbridge.schemas.credential import CredentialCreate, CredentialUpdate
from vaultbridge.schemas.request import RequestCreate
from vaultbridge.schemas.scheduler import FeeTopUp, MaxParallelUpdate, PriorityUpdate, ThresholdUpdate


class TestRequestCreate:
    def test_create_needs_identifiers(self):
        with pytest.raises(ValidationError):
            RequestCreate(kind="create", asset="0xa", amount="1")

    def test_deposit_needs_position(self):
        with pytest.raises(ValidationError):
            RequestCreate(kind="deposit", asset="0xa", amount="1")

    def test_close_allows_zero_amount(self):
        schema = RequestCreate(kind="close", asset="0xa", position_id=3)
        assert schema.amount == 0

    def test_withdraw_needs_positive_amount(self):
        with pytest.raises(ValidationError):
            RequestCreate(kind="withdraw", asset="0xa", amount="0", position_id=3)

    def test_negative_value_rejected(self):
        with pytest.raises(ValidationError):
            RequestCreate(kind="deposit", asset="0xa", amount="1", value="-1", position_id=3)

    def test_identifiers_trimmed(self):
        schema = RequestCreate(
            kind="create", asset=" 0xa ", amount="2.5",
            vault_identifier=" V ", strategy_identifier=" S ",
        )
        assert schema.asset == "0xa"
        assert schema.vault_identifier == "V"
        assert schema.amount == Decimal("2.5")


class TestOperatorSchemas:
    def test_threshold_table_required(self):
        with pytest.raises(ValidationError):
            ThresholdUpdate(thresholds={})

    def test_max_parallel_bounds(self):
        with pytest.raises(ValidationError):
            MaxParallelUpdate(max_parallel=0)
        assert MaxParallelUpdate(max_parallel=4).max_parallel == 4

    def test_priority_normalized(self):
        assert PriorityUpdate(priority=" HIGH ").priority == "high"
        with pytest.raises(ValidationError):
            PriorityUpdate(priority="urgent")

    def test_top_up_positive(self):
        with pytest.raises(ValidationError):
            FeeTopUp(amount="0")


class TestCredentialSchemas:
    def test_mock_host_allowed(self):
        assert CredentialCreate(position_service_host="mock").position_service_host == "mock"

    def test_host_trailing_slash_stripped(self):
        cred = CredentialCreate(position_service_host="https://positions.example/")
        assert cred.position_service_host == "https://positions.example"

    def test_bad_host_rejected(self):
        with pytest.raises(ValidationError):
            CredentialCreate(position_service_host="ftp://x")
        with pytest.raises(ValidationError):
            CredentialUpdate(position_service_host="nope")
