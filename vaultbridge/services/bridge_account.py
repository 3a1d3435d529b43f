"""Bridge account: the only identity allowed to drive privileged ledger transitions.

The worker holds the single instance. Ledger calls go through `call`, which
never raises and reports failures in a CallResult, the same way order
placement reports failures in its result object.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from vaultbridge.errors import CrossLedgerCallFailure, VaultBridgeError
from vaultbridge.services.position_client import Funds
from vaultbridge.services.request_ledger import RequestLedger
from vaultbridge.utils.constants import ZERO

logger = logging.getLogger(__name__)

_READ_PREFIXES = ("get_", "does_", "list_")


@dataclass
class CallResult:
    success: bool
    result: Any = None
    error: str | None = None
    exception: Exception | None = None


class BridgeAccount:
    def __init__(self, ledger: RequestLedger, address: str | None = None):
        self.ledger = ledger
        self.address = address or ledger.bridge_address

    async def call(
        self, method: str, *, value: Decimal = ZERO, compute_budget: int | None = None, **kwargs
    ) -> CallResult:
        """Invoke a ledger method as the bridge account.

        In-process ledger calls are not metered; `compute_budget` only shows up
        in the debug log.
        """
        fn = getattr(self.ledger, method, None)
        logger.debug(f"Bridge call {method} (compute_budget={compute_budget})")
        if method.startswith("_") or not callable(fn):
            return CallResult(success=False, error=f"Unknown ledger method: {method}")
        if value:
            kwargs["value"] = value

        try:
            result = fn(self.address, **kwargs)
        except VaultBridgeError as e:
            logger.warning(f"Bridge call {method} rejected: {e}")
            return CallResult(success=False, error=str(e), exception=e)
        except Exception as e:
            logger.error(f"Bridge call {method} failed: {e}", exc_info=True)
            return CallResult(success=False, error=str(e), exception=e)
        return CallResult(success=True, result=result)

    def view(self, method: str, **kwargs):
        """Read-only ledger query."""
        if not method.startswith(_READ_PREFIXES):
            raise ValueError(f"{method} is not a read-only ledger method")
        return getattr(self.ledger, method)(**kwargs)

    def wrap(self, asset: str, amount: Decimal) -> Funds:
        """Describe funds of `asset` coming off the position side."""
        config = self.ledger.get_asset_config(asset)
        if config is None:
            raise CrossLedgerCallFailure("wrap", f"asset {asset} is not configured")
        return Funds(asset=asset, amount=Decimal(amount), kind=config.vault_type)

    async def withdraw(self, amount: Decimal, asset: str) -> Funds:
        """Pull funds out of bridge custody so they can cross to the position side."""
        result = await self.call("debit_custody", asset=asset, amount=Decimal(amount))
        if not result.success:
            raise CrossLedgerCallFailure("withdraw", result.error)
        return Funds(asset=asset, amount=Decimal(amount), kind=result.result)

    async def deposit(self, funds: Funds):
        """Push in-flight funds back into bridge custody."""
        result = await self.call("credit_custody", asset=funds.asset, amount=funds.amount)
        if not result.success:
            raise CrossLedgerCallFailure("deposit", result.error)

    async def transfer_to(self, recipient: str, funds: Funds):
        """Deliver in-flight funds to `recipient` in a single call."""
        result = await self.call(
            "deliver", recipient=recipient, asset=funds.asset, amount=funds.amount
        )
        if not result.success:
            raise CrossLedgerCallFailure("transfer", result.error)
