"""
Tests for inheritance aggregation.
"""

from __future__ import annotations

import itertools

from heritage_cli.inheritance import aggregate
from heritage_cli.models import AggregatedInheritance, InheritanceRecord

NOW = 1_700_000_000


def record(claim_id: str, value: int, maturity: int, next_heir: int | None = None):
    return InheritanceRecord(claim_id, value, maturity, next_heir)


class TestAggregate:
    """Tests for merging records per claim id."""

    def test_merge_same_claim(self):
        records = [record("H1", 1000, 100, 500), record("H1", 2000, 200, 300)]
        assert aggregate(records, include_immature=True, now=NOW) == [
            AggregatedInheritance("H1", 3000, 200, 300)
        ]

    def test_next_heir_ignores_undefined(self):
        records = [record("H1", 1, 100, None), record("H1", 1, 100, 400)]
        assert aggregate(records, True, now=NOW)[0].next_heir_maturity == 400

    def test_next_heir_all_undefined(self):
        records = [record("H1", 1, 100), record("H1", 1, 100)]
        assert aggregate(records, True, now=NOW)[0].next_heir_maturity is None

    def test_first_seen_order(self):
        records = [record("B", 1, 1), record("A", 1, 1), record("B", 1, 1)]
        assert [r.claim_id for r in aggregate(records, True, now=NOW)] == ["B", "A"]

    def test_immature_filtered(self):
        records = [record("H1", 1000, NOW + 10), record("H2", 500, NOW)]
        rows = aggregate(records, include_immature=False, now=NOW)
        assert [r.claim_id for r in rows] == ["H2"]

    def test_immature_included(self):
        records = [record("H1", 1000, NOW + 10)]
        assert len(aggregate(records, include_immature=True, now=NOW)) == 1

    def test_value_conservation(self):
        records = [record(c, v, 1) for c, v in [("A", 3), ("B", 5), ("A", 7), ("C", 11)]]
        rows = aggregate(records, True, now=NOW)
        assert sum(r.total_value for r in rows) == sum(r.value for r in records)

    def test_permutation_invariant_up_to_order(self):
        records = [
            record("A", 3, 10, 50),
            record("B", 5, 20, None),
            record("A", 7, 30, 40),
            record("B", 1, 5, 60),
        ]
        expected = {r.claim_id: r for r in aggregate(records, True, now=NOW)}
        for perm in itertools.permutations(records):
            rows = {r.claim_id: r for r in aggregate(list(perm), True, now=NOW)}
            assert rows == expected

    def test_empty(self):
        assert aggregate([], True, now=NOW) == []


class TestDetails:
    """Tests for the per-record mode."""

    def test_one_row_per_record(self):
        records = [record("H1", 1000, 100), record("H1", 2000, 200)]
        rows = aggregate(records, include_immature=True, now=NOW, details=True)
        assert [r.total_value for r in rows] == [1000, 2000]
        assert [r.claim_id for r in rows] == ["H1", "H1"]

    def test_details_still_filters_immature(self):
        records = [record("H1", 1000, NOW + 1), record("H1", 2000, NOW - 1)]
        rows = aggregate(records, include_immature=False, now=NOW, details=True)
        assert [r.total_value for r in rows] == [2000]
