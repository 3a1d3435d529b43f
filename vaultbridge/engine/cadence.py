"""Backlog-driven cadence: how long to wait and how many invocations to run next."""

import math
from collections.abc import Mapping

from vaultbridge.utils.constants import MAX_DELAY_SECONDS, MIN_DELAY_SECONDS


def normalize_thresholds(table: Mapping) -> list[tuple[int, float]]:
    """Validate a threshold -> delay table and sort it by threshold, descending.

    Delays must not grow as the threshold grows, so a bigger backlog never
    polls more slowly than a smaller one.
    """
    pairs = sorted(
        ((int(threshold), float(delay)) for threshold, delay in table.items()),
        reverse=True,
    )
    for threshold, delay in pairs:
        if threshold < 0:
            raise ValueError(f"Threshold must be >= 0, got {threshold}")
        if not MIN_DELAY_SECONDS <= delay <= MAX_DELAY_SECONDS:
            raise ValueError(
                f"Delay for threshold {threshold} must be between "
                f"{MIN_DELAY_SECONDS} and {MAX_DELAY_SECONDS} seconds, got {delay}"
            )
    for (high, high_delay), (low, low_delay) in zip(pairs, pairs[1:]):
        if high_delay > low_delay:
            raise ValueError(
                f"Delay must not increase with backlog: {high} -> {high_delay}s "
                f"is slower than {low} -> {low_delay}s"
            )
    return pairs


def compute_delay(pending_count: int, thresholds: Mapping, default_delay: float) -> float:
    """Delay for the greatest threshold <= pending_count, else the default."""
    for threshold, delay in normalize_thresholds(thresholds):
        if pending_count >= threshold:
            return delay
    return float(default_delay)


def compute_fanout(pending_count: int, batch_size: int, max_parallel: int) -> int:
    """Number of invocations for the next round.

    Always at least one so the chain keeps running on an empty queue.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    needed = math.ceil(max(pending_count, 0) / batch_size)
    return max(1, min(needed, max_parallel))
