"""Managed-position service client.

Wraps the position service's HTTP API with httpx. Transport errors and
unusable responses (non-2xx status or a malformed body) surface as
CrossLedgerCallFailure so the worker can run its return-funds-and-fail
path. With host "mock" (or empty) positions are kept in memory instead.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from vaultbridge.errors import CrossLedgerCallFailure

logger = logging.getLogger(__name__)

# Raised while reading fields out of an unexpected response body
MALFORMED_PAYLOAD = (KeyError, TypeError, AttributeError, ValueError, InvalidOperation)

MOCK_STRATEGIES = (
    "A.0000000000000007.YieldStrategies.TracerStrategy",
    "A.0000000000000007.YieldStrategies.StableStrategy",
)


@dataclass
class Funds:
    """Funds in flight between the two ledgers."""

    asset: str
    amount: Decimal
    kind: str  # concrete vault type of the funds


class PositionLedgerClient:
    """Client for create/deposit/withdraw/close on managed positions."""

    def __init__(
        self,
        host: str,
        api_key: str = "",
        timeout: float = 15.0,
        create_returns_id: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = (host or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        # Older service versions answer POST /positions without the new id
        self.create_returns_id = create_returns_id
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._mock_mode = self.host in ("", "mock")
        self._mock_positions: dict[int, dict] = {}
        self._mock_next_id = 1

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.host,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, payload: dict | None = None):
        client = self._ensure_client()
        try:
            resp = await client.request(method, path, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:200] if e.response is not None else str(e)
            raise CrossLedgerCallFailure(f"{method} {path}", f"HTTP {e.response.status_code}: {detail}")
        except httpx.HTTPError as e:
            raise CrossLedgerCallFailure(f"{method} {path}", str(e) or type(e).__name__)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            raise CrossLedgerCallFailure(f"{method} {path}", f"response is not JSON: {resp.text[:200]!r}")

    @staticmethod
    def _malformed(operation: str, data) -> CrossLedgerCallFailure:
        return CrossLedgerCallFailure(operation, f"unexpected response: {str(data)[:200]!r}")

    async def get_supported_strategies(self) -> list[str]:
        if self._mock_mode:
            return list(MOCK_STRATEGIES)
        data = await self._request("GET", "/strategies")
        try:
            return [str(s) for s in data.get("strategies", [])]
        except MALFORMED_PAYLOAD:
            raise self._malformed("get strategies", data)

    async def create_position(self, strategy: str, funds: Funds) -> int | None:
        """Open a position funded with `funds`; returns the new id when the service reports it."""
        if self._mock_mode:
            position_id = self._mock_next_id
            self._mock_next_id += 1
            self._mock_positions[position_id] = {
                "balance": funds.amount,
                "strategy": strategy,
                "vault_type": funds.kind,
            }
            logger.info(f"MOCK position {position_id} created: {funds.amount} via {strategy}")
            return position_id if self.create_returns_id else None

        data = await self._request(
            "POST",
            "/positions",
            {
                "strategy": strategy,
                "vault_type": funds.kind,
                "asset": funds.asset,
                "amount": str(funds.amount),
            },
        )
        try:
            position_id = (data or {}).get("id")
            return int(position_id) if position_id is not None else None
        except MALFORMED_PAYLOAD:
            raise self._malformed("create position", data)

    async def deposit_to_position(self, position_id: int, funds: Funds):
        if self._mock_mode:
            position = self._mock_position(position_id, "deposit")
            position["balance"] += funds.amount
            return
        await self._request(
            "POST",
            f"/positions/{position_id}/deposit",
            {"asset": funds.asset, "amount": str(funds.amount)},
        )

    async def withdraw_from_position(self, position_id: int, amount: Decimal) -> Decimal:
        """Withdraw up to `amount`; the service may cap it at the position balance."""
        if self._mock_mode:
            position = self._mock_position(position_id, "withdraw")
            actual = min(Decimal(amount), position["balance"])
            position["balance"] -= actual
            return actual
        data = await self._request(
            "POST", f"/positions/{position_id}/withdraw", {"amount": str(amount)}
        )
        return self._amount("withdraw", data)

    async def close_position(self, position_id: int) -> Decimal:
        """Drain and destroy a position; returns everything it held."""
        if self._mock_mode:
            position = self._mock_position(position_id, "close")
            del self._mock_positions[position_id]
            return position["balance"]
        data = await self._request("POST", f"/positions/{position_id}/close")
        return self._amount("close", data)

    def _amount(self, operation: str, data) -> Decimal:
        try:
            amount = Decimal(str(data["amount"]))
        except MALFORMED_PAYLOAD:
            raise self._malformed(operation, data)
        if not amount.is_finite() or amount < 0:
            raise self._malformed(operation, data)
        return amount

    async def get_owned_position_ids(self) -> list[int]:
        if self._mock_mode:
            return sorted(self._mock_positions)
        data = await self._request("GET", "/positions")
        try:
            return sorted(int(pid) for pid in data.get("ids", []))
        except MALFORMED_PAYLOAD:
            raise self._malformed("list positions", data)

    async def get_position(self, position_id: int) -> dict | None:
        if self._mock_mode:
            position = self._mock_positions.get(position_id)
            return {"id": position_id, **position} if position else None
        try:
            return await self._request("GET", f"/positions/{position_id}")
        except CrossLedgerCallFailure as e:
            if "HTTP 404" in e.detail:
                return None
            raise

    async def test_connection(self) -> dict:
        if self._mock_mode:
            return {"status": "mock", "message": "position service in mock mode"}
        try:
            strategies = await self.get_supported_strategies()
            return {"status": "ok", "strategies": strategies}
        except CrossLedgerCallFailure as e:
            return {"status": "error", "message": str(e)}

    def _mock_position(self, position_id: int, operation: str) -> dict:
        position = self._mock_positions.get(position_id)
        if position is None:
            raise CrossLedgerCallFailure(operation, f"position {position_id} does not exist")
        return position

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
