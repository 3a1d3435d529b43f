"""Shared constants."""

from decimal import Decimal

ZERO = Decimal(0)

# Scheduling priorities and their fee multipliers
PRIORITY_MULTIPLIERS: dict[str, Decimal] = {
    "high": Decimal("10"),
    "medium": Decimal("5"),
    "low": Decimal("2"),
}
VALID_PRIORITIES = list(PRIORITY_MULTIPLIERS)

# Cadence bounds (seconds)
MIN_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 3600.0

MAX_BATCH_SIZE = 100
MAX_PARALLEL_SLOTS = 16

# Message stored on a request cancelled by its owner
CANCELLED_MESSAGE = "Cancelled by user"

# Amounts are fixed-point with 8 decimal places, as on the request ledger's chain
AMOUNT_QUANTUM = Decimal("0.00000001")
