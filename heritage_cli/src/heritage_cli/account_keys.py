"""
Account public key pool management.

The online-wallet watches a pool of account xpubs. When the pool of unused
ones runs low, new ones are derived by the key-provider right after the
highest index the online-wallet knows about.
"""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from heritage_cli.models import AccountKeyStatus

# Default number of unused account xpubs to keep available
DEFAULT_POOL_SIZE = 20


def plan_derivation(
    known: Iterable[AccountKeyStatus], target_unused: int = DEFAULT_POOL_SIZE
) -> tuple[int, int]:
    """
    Index range to derive so that `target_unused` unused account keys exist.

    Returns:
        (start, end) with end exclusive. The range is empty when the pool is
        already full, in which case nothing should be derived.
    """
    if target_unused < 0:
        raise ValueError("target_unused cannot be negative")

    unused_count = 0
    last_seen: int | None = None
    for status in known:
        if not status.used:
            unused_count += 1
        if last_seen is None or status.index > last_seen:
            last_seen = status.index

    start = 0 if last_seen is None else last_seen + 1
    deficit = max(0, target_unused - unused_count)
    logger.debug(
        f"Account keys: {unused_count} unused, last index {last_seen}, deriving {deficit}"
    )
    return start, start + deficit
