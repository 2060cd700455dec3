"""
Core data models shared by the orchestration layer and the backends.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Network(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def coin_type(self) -> int:
        """BIP44 coin type: 0 for mainnet, 1 for every test network."""
        return 0 if self is Network.MAINNET else 1


class EntityKind(str, Enum):
    WALLET = "wallet"
    HEIR_WALLET = "heir-wallet"
    HEIR = "heir"


# Fingerprints are kept as 8 lowercase hex chars everywhere
Fingerprint = str


def normalize_fingerprint(value: str) -> Fingerprint:
    value = value.strip().lower()
    if len(value) != 8 or any(c not in "0123456789abcdef" for c in value):
        raise ValueError(f"Invalid fingerprint: {value!r} (expected 8 hex characters)")
    return value


@dataclass(frozen=True)
class OutPoint:
    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class InheritanceRecord:
    """Claimable-fund record as reported by a heritage backend (one per UTXO)."""

    claim_id: str
    value: int
    maturity: int
    next_heir_maturity: int | None = None


@dataclass
class AggregatedInheritance:
    claim_id: str
    total_value: int
    maturity: int
    next_heir_maturity: int | None = None


@dataclass(frozen=True)
class AccountKeyStatus:
    index: int
    used: bool


@dataclass
class AccountXPub:
    """
    Account-level extended public key with its key origin.

    Serialized as ``[fingerprint/86'/coin'/index']xpub...``.
    """

    index: int
    value: str

    @classmethod
    def parse(cls, text: str) -> AccountXPub:
        text = text.strip()
        if not text.startswith("[") or "]" not in text:
            raise ValueError(f"Invalid account xpub (missing key origin): {text}")
        origin = text[1 : text.index("]")]
        parts = origin.split("/")
        if len(parts) != 4:
            raise ValueError(f"Invalid account xpub origin: {origin}")
        normalize_fingerprint(parts[0])
        account = parts[3].rstrip("'h")
        if not account.isdigit():
            raise ValueError(f"Invalid account index in {origin}")
        return cls(index=int(account), value=text)

    def __str__(self) -> str:
        return self.value


@dataclass
class AccountXPubWithStatus:
    xpub: AccountXPub
    used: bool

    def status(self) -> AccountKeyStatus:
        return AccountKeyStatus(index=self.xpub.index, used=self.used)


@dataclass
class HeirConfig:
    """Public material handed to a wallet owner to declare an heir."""

    kind: Literal["xpub", "single-pub"]
    fingerprint: Fingerprint
    value: str


@dataclass
class Utxo:
    txid: str
    vout: int
    value: int
    address: str
    confirmations: int = 0
    height: int | None = None

    @property
    def outpoint(self) -> OutPoint:
        return OutPoint(self.txid, self.vout)


@dataclass
class TransactionSummary:
    """Backend-provided summary of an unsigned transaction."""

    txid: str
    fee: int
    inputs: list[dict]
    outputs: list[dict]
    owned_fingerprints: list[Fingerprint] | None = None


@dataclass
class WalletStatus:
    balance: int
    block_inclusion_objective: int
    last_sync_ts: int | None = None
    fee_rate: float | None = None


# Ranged key expression of a Heritage descriptor: [fp/86'/coin'/account']xpub/0/*
_KEY_EXPR = re.compile(
    r"\[(?P<fp>[0-9a-fA-F]{8})(?P<path>(?:/\d+['h]?)*)\](?P<xpub>[1-9A-HJ-NP-Za-km-z]{100,})"
    r"/(?:0|<0;1>)/\*"
)


@dataclass
class LedgerPolicy:
    """A BIP388 wallet policy built from one descriptor backup entry."""

    account_id: int
    name: str
    descriptor_template: str
    keys: list[str]

    @classmethod
    def from_descriptor(cls, descriptor: str) -> LedgerPolicy:
        descriptor = descriptor.split("#", 1)[0].strip()
        keys: list[str] = []
        account_id: int | None = None

        def placeholder(match: re.Match[str]) -> str:
            nonlocal account_id
            key = f"[{match['fp'].lower()}{match['path']}]{match['xpub']}"
            if key not in keys:
                keys.append(key)
            if account_id is None:
                steps = match["path"].strip("/").split("/")
                if len(steps) != 3:
                    raise ValueError(f"Unexpected key origin in {key}")
                account_id = int(steps[2].rstrip("'h"))
            return f"@{keys.index(key)}/**"

        template = _KEY_EXPR.sub(placeholder, descriptor)
        if account_id is None:
            raise ValueError("No ranged account key found in descriptor")
        return cls(account_id, f"Heritage #{account_id}", template, keys)

    @classmethod
    def from_descriptor_backup(cls, backup: dict) -> LedgerPolicy:
        return cls.from_descriptor(backup["external_descriptor"])

    def descriptor(self) -> str:
        def expand(match: re.Match[str]) -> str:
            return f"{self.keys[int(match[1])]}/<0;1>/*"

        return re.sub(r"@(\d+)/\*\*", expand, self.descriptor_template)


# Canonical transaction request (sent as-is to the service)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Recipient(_Frozen):
    address: str
    amount: int = Field(..., gt=0, description="Amount in sats")


class Recipients(_Frozen):
    kind: Literal["recipients"] = "recipients"
    recipients: list[Recipient] = Field(..., min_length=1)


class DrainAll(_Frozen):
    kind: Literal["drain_to"] = "drain_to"
    drain_to: str


class DefaultFee(_Frozen):
    kind: Literal["default"] = "default"


class AbsoluteFee(_Frozen):
    kind: Literal["absolute"] = "absolute"
    amount: int = Field(..., ge=0)


class FeeRate(_Frozen):
    kind: Literal["rate"] = "rate"
    rate: float

    @field_validator("rate")
    @classmethod
    def validate_rate(cls, v: float) -> float:
        if not math.isfinite(v) or v < 1.0:
            raise ValueError("fee rate must be a finite number >= 1.0 sat/vB")
        return v


class Unconstrained(_Frozen):
    kind: Literal["unconstrained"] = "unconstrained"


class Include(_Frozen):
    kind: Literal["include"] = "include"
    include: frozenset[str]


class Exclude(_Frozen):
    kind: Literal["exclude"] = "exclude"
    exclude: frozenset[str]


class UseOnly(_Frozen):
    kind: Literal["use_only"] = "use_only"
    use_only: frozenset[str]


class IncludeExclude(_Frozen):
    kind: Literal["include_exclude"] = "include_exclude"
    include: frozenset[str]
    exclude: frozenset[str]


SpendingConfig = Annotated[Recipients | DrainAll, Field(discriminator="kind")]
FeePolicy = Annotated[DefaultFee | AbsoluteFee | FeeRate, Field(discriminator="kind")]
UtxoSelection = Annotated[
    Unconstrained | Include | Exclude | UseOnly | IncludeExclude, Field(discriminator="kind")
]


class TransactionRequest(_Frozen):
    spending_config: SpendingConfig
    fee_policy: FeePolicy = Field(default_factory=DefaultFee)
    utxo_selection: UtxoSelection = Field(default_factory=Unconstrained)
    disable_rbf: bool | None = None

    def to_api(self) -> dict:
        """Wire form expected by the Heritage service (None fields dropped)."""
        data: dict = {}
        sc = self.spending_config
        if isinstance(sc, Recipients):
            data["spending_config"] = [
                {"address": r.address, "amount": r.amount} for r in sc.recipients
            ]
        else:
            data["spending_config"] = {"drain_to": sc.drain_to}
        fp = self.fee_policy
        if isinstance(fp, AbsoluteFee):
            data["fee_policy"] = {"Absolute": fp.amount}
        elif isinstance(fp, FeeRate):
            data["fee_policy"] = {"Rate": fp.rate}
        us = self.utxo_selection
        if isinstance(us, Include):
            data["utxo_selection"] = {"Include": sorted(us.include)}
        elif isinstance(us, Exclude):
            data["utxo_selection"] = {"Exclude": sorted(us.exclude)}
        elif isinstance(us, UseOnly):
            data["utxo_selection"] = {"UseOnly": sorted(us.use_only)}
        elif isinstance(us, IncludeExclude):
            data["utxo_selection"] = {
                "IncludeExclude": {
                    "include": sorted(us.include),
                    "exclude": sorted(us.exclude),
                }
            }
        if self.disable_rbf:
            data["disable_rbf"] = True
        return data
