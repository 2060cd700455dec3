"""
Aggregation of heritage-backend claim records into one row per claim.
"""

from __future__ import annotations

import time
from collections.abc import Iterable

from heritage_cli.models import AggregatedInheritance, InheritanceRecord


def is_mature(record: InheritanceRecord, now: int) -> bool:
    return record.maturity <= now


def _merge(acc: AggregatedInheritance, record: InheritanceRecord) -> AggregatedInheritance:
    if acc.next_heir_maturity is None:
        next_heir = record.next_heir_maturity
    elif record.next_heir_maturity is None:
        next_heir = acc.next_heir_maturity
    else:
        next_heir = min(acc.next_heir_maturity, record.next_heir_maturity)

    return AggregatedInheritance(
        claim_id=acc.claim_id,
        total_value=acc.total_value + record.value,
        maturity=max(acc.maturity, record.maturity),
        next_heir_maturity=next_heir,
    )


def _as_row(record: InheritanceRecord) -> AggregatedInheritance:
    return AggregatedInheritance(
        claim_id=record.claim_id,
        total_value=record.value,
        maturity=record.maturity,
        next_heir_maturity=record.next_heir_maturity,
    )


def aggregate(
    records: Iterable[InheritanceRecord],
    include_immature: bool,
    now: int | None = None,
    details: bool = False,
) -> list[AggregatedInheritance]:
    """
    Merge claim records sharing a claim id.

    Within a claim: values are summed, the maturity is the latest one and the
    next heir maturity is the earliest defined one. Rows come out in the order
    their claim id was first seen.

    Args:
        records: Records as reported by the heritage backend (one per UTXO)
        include_immature: Keep records whose maturity is still in the future
        now: Reference unix timestamp, defaults to the current time
        details: Skip aggregation and return one row per record. Claim ids
            are then duplicated across rows.
    """
    if now is None:
        now = int(time.time())

    kept = [r for r in records if include_immature or is_mature(r, now)]

    if details:
        return [_as_row(r) for r in kept]

    by_claim: dict[str, AggregatedInheritance] = {}
    for record in kept:
        current = by_claim.get(record.claim_id)
        by_claim[record.claim_id] = _as_row(record) if current is None else _merge(current, record)
    return list(by_claim.values())
