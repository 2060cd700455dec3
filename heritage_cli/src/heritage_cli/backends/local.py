"""
Local online-wallet and heritage-provider.

The wallet state (descriptor backups, account xpubs, UTXO cache, addresses)
lives in the database under ``localwallet:<id>``. Synchronization scans the
descriptors through a raw chain provider. PSBT construction and address
derivation are delegated to the installed PSBT engine.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from loguru import logger

from heritage_cli.backends.base import (
    ChainObserver,
    DescriptorEngine,
    HeritageProvider,
    RawChainProvider,
)
from heritage_cli.errors import (
    CapabilityMismatchError,
    InputValidationError,
    MissingEngine,
    UnreachableProvider,
)
from heritage_cli.models import (
    AccountXPub,
    AccountXPubWithStatus,
    Fingerprint,
    InheritanceRecord,
    LedgerPolicy,
    Network,
    TransactionRequest,
    TransactionSummary,
    Utxo,
    WalletStatus,
)

if TYPE_CHECKING:
    from heritage_cli.store import Database

# Derivation indices scanned on each descriptor during a sync
SCAN_RANGE = 1000

DEFAULT_BLOCK_INCLUSION_OBJECTIVE = 6


def state_key(wallet_id: str) -> str:
    return f"localwallet:{wallet_id}"


def new_state(
    backup: list[dict[str, Any]] | None, block_inclusion_objective: int
) -> dict[str, Any]:
    return {
        "descriptors": list(backup or []),
        "account_xpubs": [],
        "addresses": [],
        "transactions": [],
        "utxos": [],
        "balance": 0,
        "block_inclusion_objective": block_inclusion_objective,
        "last_sync_ts": None,
        "fee_rate": None,
    }


class _LocalWallet:
    """State handling shared by the local observer and heritage-provider."""

    def __init__(self, wallet_id: str):
        self.wallet_id = wallet_id
        self.db: Database | None = None
        self.network: Network | None = None
        self.engine: DescriptorEngine | None = None
        self.raw: RawChainProvider | None = None
        self._state: dict[str, Any] | None = None

    def init_local(
        self,
        db: Database,
        network: Network,
        engine: DescriptorEngine | None = None,
        raw: RawChainProvider | None = None,
    ) -> None:
        self.db = db
        self.network = network
        self.engine = engine
        self.raw = raw

    @property
    def state(self) -> dict[str, Any]:
        if self._state is None:
            if self.db is None:
                raise CapabilityMismatchError("Local wallet state not loaded")
            stored = self.db.get_item(state_key(self.wallet_id))
            if stored is None:
                stored = new_state(None, DEFAULT_BLOCK_INCLUSION_OBJECTIVE)
            self._state = stored
        return self._state

    def _save(self) -> None:
        assert self.db is not None
        self.db.set_item(state_key(self.wallet_id), self.state)

    def forget(self, db: Database) -> None:
        db.delete_item(state_key(self.wallet_id))

    def _require_engine(self, what: str) -> DescriptorEngine:
        if self.engine is None:
            raise MissingEngine(what)
        return self.engine

    def _require_raw(self) -> RawChainProvider:
        if self.raw is None:
            raise UnreachableProvider("No blockchain provider connected")
        return self.raw

    def _scan_objects(self) -> list[dict[str, Any]]:
        objects = []
        for backup in self.state["descriptors"]:
            for key in ("external_descriptor", "change_descriptor"):
                if backup.get(key):
                    objects.append({"desc": backup[key], "range": [0, SCAN_RANGE - 1]})
        return objects

    async def _sync(self) -> None:
        raw = self._require_raw()
        utxos = await raw.scan_descriptors(self._scan_objects())
        state = self.state
        state["utxos"] = [asdict(u) for u in utxos]
        state["balance"] = sum(u.value for u in utxos)
        state["fee_rate"] = await raw.estimate_fee(state["block_inclusion_objective"])
        state["last_sync_ts"] = int(time.time())
        self._save()
        logger.info(f"Local wallet synchronized: {len(utxos)} UTXOs, {state['balance']} sats")

    async def _broadcast(self, psbt: str) -> str:
        engine = self._require_engine("finalize a PSBT")
        raw = self._require_raw()
        tx_hex = await engine.extract_transaction(psbt)
        txid = await raw.broadcast_transaction(tx_hex)
        self.state["transactions"].append({"txid": txid, "timestamp": int(time.time())})
        self._save()
        return txid


class LocalObserver(_LocalWallet, ChainObserver):
    kind = "local"

    def __init__(self, wallet_id: str, fingerprint: Fingerprint | None = None):
        super().__init__(wallet_id)
        self.fingerprint = fingerprint

    @classmethod
    def create(
        cls,
        db: Database,
        backup: list[dict[str, Any]] | None,
        block_inclusion_objective: int = DEFAULT_BLOCK_INCLUSION_OBJECTIVE,
        fingerprint: Fingerprint | None = None,
    ) -> LocalObserver:
        observer = cls(uuid.uuid4().hex, fingerprint)
        observer._state = new_state(backup, block_inclusion_objective)
        observer.db = db
        observer._save()
        return observer

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LocalObserver:
        return cls(wallet_id=data["wallet_id"], fingerprint=data.get("fingerprint"))

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "wallet_id": self.wallet_id, "fingerprint": self.fingerprint}

    def bound_fingerprint(self) -> Fingerprint | None:
        return self.fingerprint

    async def sync(self) -> None:
        await self._sync()

    async def get_address(self) -> str:
        engine = self._require_engine("derive addresses")
        descriptors = self.state["descriptors"]
        if not descriptors:
            raise CapabilityMismatchError("The wallet has no descriptor to derive addresses from")
        index = len(self.state["addresses"])
        address = await engine.derive_address(
            descriptors[-1]["external_descriptor"], index, self.network or Network.MAINNET
        )
        self.state["addresses"].append({"index": index, "address": address})
        self._save()
        return address

    async def list_addresses(self) -> list[dict[str, Any]]:
        return list(self.state["addresses"])

    async def list_transactions(self) -> list[dict[str, Any]]:
        return list(self.state["transactions"])

    async def list_utxos(self) -> list[Utxo]:
        return [Utxo(**u) for u in self.state["utxos"]]

    async def get_wallet_status(self) -> WalletStatus:
        state = self.state
        return WalletStatus(
            balance=state["balance"],
            block_inclusion_objective=state["block_inclusion_objective"],
            last_sync_ts=state["last_sync_ts"],
            fee_rate=state["fee_rate"],
        )

    async def set_block_inclusion_objective(self, value: int) -> WalletStatus:
        if value < 1:
            raise InputValidationError("Block inclusion objective must be at least 1")
        self.state["block_inclusion_objective"] = value
        self._save()
        return await self.get_wallet_status()

    async def create_psbt(self, request: TransactionRequest) -> tuple[str, TransactionSummary]:
        engine = self._require_engine("build transactions for a local wallet")
        return await engine.create_psbt(self.state, request, self.network or Network.MAINNET)

    async def broadcast(self, psbt: str) -> str:
        return await self._broadcast(psbt)

    async def backup_descriptors(self) -> list[dict[str, Any]]:
        return list(self.state["descriptors"])

    def _used_account_ids(self) -> set[int]:
        used = set()
        for backup in self.state["descriptors"]:
            try:
                used.add(LedgerPolicy.from_descriptor_backup(backup).account_id)
            except (KeyError, ValueError):
                continue
        return used

    async def list_account_xpubs(self) -> list[AccountXPubWithStatus]:
        used = self._used_account_ids()
        xpubs = [AccountXPub.parse(v) for v in self.state["account_xpubs"]]
        return [AccountXPubWithStatus(xpub=x, used=x.index in used) for x in xpubs]

    async def feed_account_xpubs(self, xpubs: list[AccountXPub]) -> None:
        known = {x.index: x.value for x in map(AccountXPub.parse, self.state["account_xpubs"])}
        added = 0
        for xpub in xpubs:
            existing = known.get(xpub.index)
            if existing == xpub.value:
                continue
            if existing is not None:
                raise InputValidationError(
                    f"Account #{xpub.index} already has a different account xpub"
                )
            known[xpub.index] = xpub.value
            added += 1
        self.state["account_xpubs"] = [known[i] for i in sorted(known)]
        self._save()
        logger.debug(f"{added} account xpubs added to the local wallet")


class LocalHeritageProvider(_LocalWallet, HeritageProvider):
    """Inheritances found by scanning the owner's descriptors ourselves."""

    kind = "local"

    def __init__(self, wallet_id: str, fingerprint: Fingerprint):
        super().__init__(wallet_id)
        self.fingerprint = fingerprint

    @classmethod
    def create(
        cls, db: Database, fingerprint: Fingerprint, backup: list[dict[str, Any]] | None
    ) -> LocalHeritageProvider:
        provider = cls(uuid.uuid4().hex, fingerprint)
        provider._state = new_state(backup, DEFAULT_BLOCK_INCLUSION_OBJECTIVE)
        provider.db = db
        provider._save()
        return provider

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LocalHeritageProvider:
        return cls(wallet_id=data["wallet_id"], fingerprint=data["fingerprint"])

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "wallet_id": self.wallet_id, "fingerprint": self.fingerprint}

    async def list_heritages(self) -> list[InheritanceRecord]:
        engine = self._require_engine("list inheritances of a local heir-wallet")
        return await engine.list_heritages(self.state, self.fingerprint)

    async def create_psbt(self, claim_id: str, recipient: str) -> tuple[str, TransactionSummary]:
        engine = self._require_engine("build inheritance claims locally")
        return await engine.create_claim_psbt(
            self.state, claim_id, recipient, self.network or Network.MAINNET
        )

    async def sync(self) -> None:
        await self._sync()

    async def broadcast(self, psbt: str) -> str:
        return await self._broadcast(psbt)
