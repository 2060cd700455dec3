"""
Capability resolution: which backends an operation needs to be live.

The mapping is explicit and exhaustive. Adding an Operation subclass without a
rule here fails at import time rather than silently defaulting.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from heritage_cli import operations as ops


@dataclass(frozen=True)
class CapabilityRequirement:
    needs_key_backend: bool = False
    needs_chain_observer: bool = False
    needs_raw_chain_provider: bool = False


NOTHING = CapabilityRequirement()
KEY = CapabilityRequirement(needs_key_backend=True)
OBSERVER = CapabilityRequirement(needs_chain_observer=True)
KEY_AND_OBSERVER = CapabilityRequirement(needs_key_backend=True, needs_chain_observer=True)
NETWORK = CapabilityRequirement(needs_chain_observer=True, needs_raw_chain_provider=True)


def _send(op: ops.SendBitcoins | ops.SpendInheritance) -> CapabilityRequirement:
    return CapabilityRequirement(
        needs_key_backend=op.sign,
        needs_chain_observer=True,
        needs_raw_chain_provider=op.broadcast,
    )


def _sign(op: ops.SignPsbt) -> CapabilityRequirement:
    return CapabilityRequirement(
        needs_key_backend=True,
        needs_chain_observer=op.broadcast,
        needs_raw_chain_provider=op.broadcast,
    )


def _rename(op: ops.Rename) -> CapabilityRequirement:
    return NOTHING if op.local_only else OBSERVER


RULES: dict[type[ops.Operation], Callable[..., CapabilityRequirement]] = {
    ops.CreateWallet: lambda op: KEY_AND_OBSERVER,
    ops.CreateHeirWallet: lambda op: KEY_AND_OBSERVER,
    ops.Rename: _rename,
    ops.Remove: lambda op: NOTHING,
    ops.ShowFingerprint: lambda op: NOTHING,
    ops.ShowMnemonic: lambda op: KEY,
    ops.DeriveHeirConfig: lambda op: KEY,
    ops.Sync: lambda op: NETWORK,
    ops.SignPsbt: _sign,
    ops.BroadcastPsbt: lambda op: NETWORK,
    ops.BackupDescriptors: lambda op: OBSERVER,
    ops.NewAddress: lambda op: OBSERVER,
    ops.ListAddresses: lambda op: OBSERVER,
    ops.ListTransactions: lambda op: OBSERVER,
    ops.ListUtxos: lambda op: OBSERVER,
    ops.Balance: lambda op: OBSERVER,
    ops.BlockInclusionObjective: lambda op: OBSERVER,
    ops.SendBitcoins: _send,
    ops.ListLedgerPolicies: lambda op: OBSERVER,
    ops.ListRegisteredLedgerPolicies: lambda op: NOTHING,
    ops.RegisterLedgerPolicies: lambda op: KEY,
    ops.AutoRegisterLedgerPolicies: lambda op: KEY_AND_OBSERVER,
    ops.GenerateAccountXpubs: lambda op: KEY,
    ops.ListAccountXpubs: lambda op: OBSERVER,
    ops.AddAccountXpubs: lambda op: OBSERVER,
    ops.AutoAddAccountXpubs: lambda op: KEY_AND_OBSERVER,
    ops.ListInheritances: lambda op: OBSERVER,
    ops.SpendInheritance: _send,
}


def check_rules_are_exhaustive() -> None:
    missing = ops.all_operation_types() - set(RULES)
    if missing:
        names = ", ".join(sorted(cls.__name__ for cls in missing))
        raise RuntimeError(f"No capability rule for operation(s): {names}")


def resolve(operation: ops.Operation) -> CapabilityRequirement:
    """Minimal set of backends the operation needs. Pure, no I/O."""
    try:
        rule = RULES[type(operation)]
    except KeyError:
        raise RuntimeError(f"No capability rule for {type(operation).__name__}") from None
    return rule(operation)


check_rules_are_exhaustive()
