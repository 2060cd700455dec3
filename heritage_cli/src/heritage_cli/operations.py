"""
Operations: one immutable value per user-requested action.

The command layer parses its arguments into one of these and hands it to the
capability resolver, the bootstrapper and finally the executor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from heritage_cli.models import Fingerprint


@dataclass(frozen=True)
class Operation:
    """Base class of every operation."""


# Creation


@dataclass(frozen=True)
class CreateWallet(Operation):
    online_wallet: Literal["none", "service", "local"] = "service"
    key_provider: Literal["none", "local", "ledger"] = "ledger"
    seed: str | None = None
    word_count: int | None = None
    no_password: bool = False
    backup: tuple[dict, ...] | None = None
    existing_service_wallet_name: str | None = None
    existing_service_wallet_fingerprint: Fingerprint | None = None
    existing_service_wallet_id: str | None = None
    no_auto_feed_xpubs: bool = False
    block_inclusion_objective: int = 6


@dataclass(frozen=True)
class CreateHeirWallet(Operation):
    heritage_provider: Literal["none", "service", "local"] = "service"
    key_provider: Literal["none", "local", "ledger"] = "local"
    fingerprint: Fingerprint | None = None
    seed: str | None = None
    word_count: int | None = None
    with_password: bool = False
    backup: tuple[dict, ...] | None = None


# Shared by wallets and heir-wallets


@dataclass(frozen=True)
class Rename(Operation):
    new_name: str
    local_only: bool = False


@dataclass(frozen=True)
class Remove(Operation):
    skip_confirmation: bool = False


@dataclass(frozen=True)
class ShowFingerprint(Operation):
    pass


@dataclass(frozen=True)
class ShowMnemonic(Operation):
    pass


@dataclass(frozen=True)
class DeriveHeirConfig(Operation):
    kind: Literal["xpub", "single-pub"] = "xpub"


@dataclass(frozen=True)
class Sync(Operation):
    pass


@dataclass(frozen=True)
class SignPsbt(Operation):
    psbt: str
    broadcast: bool = False
    skip_confirmation: bool = False


@dataclass(frozen=True)
class BroadcastPsbt(Operation):
    psbt: str


# Wallet only


@dataclass(frozen=True)
class BackupDescriptors(Operation):
    file: Path | None = None
    overwrite: bool = False


@dataclass(frozen=True)
class NewAddress(Operation):
    pass


@dataclass(frozen=True)
class ListAddresses(Operation):
    pass


@dataclass(frozen=True)
class ListTransactions(Operation):
    pass


@dataclass(frozen=True)
class ListUtxos(Operation):
    pass


@dataclass(frozen=True)
class Balance(Operation):
    pass


@dataclass(frozen=True)
class BlockInclusionObjective(Operation):
    set_value: int | None = None


@dataclass(frozen=True)
class SendBitcoins(Operation):
    recipients: tuple[tuple[str, int | None], ...]
    fee_rate: float | None = None
    fee_absolute: int | None = None
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    include_only: bool = False
    disable_rbf: bool = False
    sign: bool = False
    broadcast: bool = False
    skip_confirmation: bool = False


@dataclass(frozen=True)
class ListLedgerPolicies(Operation):
    pass


@dataclass(frozen=True)
class ListRegisteredLedgerPolicies(Operation):
    pass


@dataclass(frozen=True)
class RegisterLedgerPolicies(Operation):
    policies: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AutoRegisterLedgerPolicies(Operation):
    pass


@dataclass(frozen=True)
class GenerateAccountXpubs(Operation):
    start: int = 0
    end: int = 20


@dataclass(frozen=True)
class ListAccountXpubs(Operation):
    used: bool = True
    unused: bool = True


@dataclass(frozen=True)
class AddAccountXpubs(Operation):
    account_xpubs: tuple[str, ...] = ()


@dataclass(frozen=True)
class AutoAddAccountXpubs(Operation):
    count: int = 20


# Heir-wallet only


@dataclass(frozen=True)
class ListInheritances(Operation):
    immatures: bool = False
    details: bool = False


@dataclass(frozen=True)
class SpendInheritance(Operation):
    claim_id: str
    recipient: str
    sign: bool = False
    broadcast: bool = False
    skip_confirmation: bool = False


def all_operation_types() -> set[type[Operation]]:
    """Every concrete operation class, discovered from the class hierarchy."""
    found: set[type[Operation]] = set()
    pending = list(Operation.__subclasses__())
    while pending:
        cls = pending.pop()
        found.add(cls)
        pending.extend(cls.__subclasses__())
    return found
