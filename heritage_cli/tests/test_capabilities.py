"""
Tests for capability resolution.
"""

from __future__ import annotations

import pytest

from heritage_cli import capabilities
from heritage_cli import operations as ops
from heritage_cli.capabilities import CapabilityRequirement, resolve


def _sample(cls: type[ops.Operation]) -> ops.Operation:
    required = {
        ops.Rename: {"new_name": "x"},
        ops.SignPsbt: {"psbt": "cHNidP8="},
        ops.BroadcastPsbt: {"psbt": "cHNidP8="},
        ops.SendBitcoins: {"recipients": (("tb1qaddr", 1000),)},
        ops.SpendInheritance: {"claim_id": "h1", "recipient": "tb1qaddr"},
    }
    return cls(**required.get(cls, {}))


class TestExhaustiveness:
    """Every operation has a rule."""

    def test_all_operations_have_a_rule(self):
        for cls in ops.all_operation_types():
            assert isinstance(resolve(_sample(cls)), CapabilityRequirement)

    def test_missing_rule_is_detected(self, monkeypatch):
        monkeypatch.delitem(capabilities.RULES, ops.Sync)
        with pytest.raises(RuntimeError, match="Sync"):
            capabilities.check_rules_are_exhaustive()

    def test_unknown_operation_at_resolution(self, monkeypatch):
        monkeypatch.delitem(capabilities.RULES, ops.Balance)
        with pytest.raises(RuntimeError, match="Balance"):
            resolve(ops.Balance())


class TestInvariants:
    """Structural properties of the resolved requirements."""

    def test_raw_provider_implies_observer(self):
        for cls in ops.all_operation_types():
            for op in _variants(cls):
                req = resolve(op)
                if req.needs_raw_chain_provider:
                    assert req.needs_chain_observer, type(op).__name__

    def test_resolution_is_deterministic(self):
        op = ops.SendBitcoins(recipients=(("tb1qaddr", 1000),), sign=True)
        assert resolve(op) == resolve(op)


def _variants(cls: type[ops.Operation]) -> list[ops.Operation]:
    base = _sample(cls)
    if cls in (ops.SendBitcoins, ops.SpendInheritance):
        return [
            base,
            ops.SendBitcoins(recipients=(("a", 1),), sign=True)
            if cls is ops.SendBitcoins
            else ops.SpendInheritance(claim_id="h", recipient="a", sign=True),
            ops.SendBitcoins(recipients=(("a", 1),), sign=True, broadcast=True)
            if cls is ops.SendBitcoins
            else ops.SpendInheritance(claim_id="h", recipient="a", sign=True, broadcast=True),
        ]
    if cls is ops.SignPsbt:
        return [base, ops.SignPsbt(psbt="p", broadcast=True)]
    if cls is ops.Rename:
        return [base, ops.Rename(new_name="x", local_only=True)]
    return [base]


class TestRules:
    """Specific requirements."""

    @pytest.mark.parametrize(
        "op",
        [
            ops.Remove(),
            ops.ShowFingerprint(),
            ops.ListRegisteredLedgerPolicies(),
            ops.Rename(new_name="x", local_only=True),
        ],
    )
    def test_nothing(self, op):
        assert resolve(op) == CapabilityRequirement()

    def test_listing_addresses_never_needs_keys(self):
        req = resolve(ops.ListAddresses())
        assert req.needs_chain_observer
        assert not req.needs_key_backend
        assert not req.needs_raw_chain_provider

    def test_send_without_sign(self):
        req = resolve(ops.SendBitcoins(recipients=(("a", 1),)))
        assert req == CapabilityRequirement(needs_chain_observer=True)

    def test_send_sign_and_broadcast(self):
        op = ops.SendBitcoins(recipients=(("a", 1),), sign=True, broadcast=True)
        assert resolve(op) == CapabilityRequirement(True, True, True)

    def test_sign_psbt_alone_is_offline(self):
        req = resolve(ops.SignPsbt(psbt="p"))
        assert req == CapabilityRequirement(needs_key_backend=True)

    def test_sign_psbt_with_broadcast(self):
        req = resolve(ops.SignPsbt(psbt="p", broadcast=True))
        assert req == CapabilityRequirement(True, True, True)

    def test_sync_needs_network(self):
        req = resolve(ops.Sync())
        assert req.needs_chain_observer and req.needs_raw_chain_provider
        assert not req.needs_key_backend

    def test_remote_rename_needs_observer(self):
        assert resolve(ops.Rename(new_name="x")).needs_chain_observer

    def test_creation_needs_both(self):
        req = resolve(ops.CreateWallet())
        assert req.needs_key_backend and req.needs_chain_observer
