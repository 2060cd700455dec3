"""
Named entities kept in the database: wallets, heir-wallets and heirs.

An entity record only stores how to rebuild its backends. Building an entity
never touches the network, a device or the user.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from heritage_cli.backends import (
    ChainObserver,
    HeritageProvider,
    KeyBackend,
    LocalHeritageProvider,
    LocalObserver,
    NoHeritageProvider,
    NoKey,
    NoObserver,
    heritage_provider_from_dict,
    key_backend_from_dict,
    observer_from_dict,
)
from heritage_cli.errors import CapabilityMismatchError
from heritage_cli.models import EntityKind, Fingerprint, HeirConfig

if TYPE_CHECKING:
    from heritage_cli.store import Database


@dataclass
class Wallet:
    name: str
    key_backend: KeyBackend = field(default_factory=NoKey)
    observer: ChainObserver = field(default_factory=NoObserver)

    kind: ClassVar[EntityKind] = EntityKind.WALLET

    def fingerprint(self) -> Fingerprint:
        """Key-provider fingerprint, else the one the online-wallet is bound to."""
        if not self.key_backend.is_none():
            return self.key_backend.fingerprint()
        bound = self.observer.bound_fingerprint()
        if bound is None:
            raise CapabilityMismatchError(f"Wallet {self.name} has no known fingerprint")
        return bound

    def to_record(self) -> dict[str, Any]:
        return {
            "key_provider": self.key_backend.to_dict(),
            "online_wallet": self.observer.to_dict(),
        }

    @classmethod
    def from_record(cls, name: str, record: dict[str, Any]) -> Wallet:
        return cls(
            name=name,
            key_backend=key_backend_from_dict(record["key_provider"]),
            observer=observer_from_dict(record["online_wallet"]),
        )

    @classmethod
    def load(cls, db: Database, name: str) -> Wallet:
        return cls.from_record(name, db.load(cls.kind, name))

    def create(self, db: Database) -> None:
        db.create(self.kind, self.name, self.to_record())

    def save(self, db: Database) -> None:
        db.save(self.kind, self.name, self.to_record())

    def delete(self, db: Database) -> None:
        db.delete(self.kind, self.name)
        if isinstance(self.observer, LocalObserver):
            self.observer.forget(db)


@dataclass
class HeirWallet:
    name: str
    stored_fingerprint: Fingerprint
    key_backend: KeyBackend = field(default_factory=NoKey)
    heritage_provider: HeritageProvider = field(default_factory=NoHeritageProvider)

    kind: ClassVar[EntityKind] = EntityKind.HEIR_WALLET

    def fingerprint(self) -> Fingerprint:
        return self.stored_fingerprint

    def to_record(self) -> dict[str, Any]:
        return {
            "fingerprint": self.stored_fingerprint,
            "key_provider": self.key_backend.to_dict(),
            "heritage_provider": self.heritage_provider.to_dict(),
        }

    @classmethod
    def from_record(cls, name: str, record: dict[str, Any]) -> HeirWallet:
        return cls(
            name=name,
            stored_fingerprint=record["fingerprint"],
            key_backend=key_backend_from_dict(record["key_provider"]),
            heritage_provider=heritage_provider_from_dict(record["heritage_provider"]),
        )

    @classmethod
    def load(cls, db: Database, name: str) -> HeirWallet:
        return cls.from_record(name, db.load(cls.kind, name))

    def create(self, db: Database) -> None:
        db.create(self.kind, self.name, self.to_record())

    def save(self, db: Database) -> None:
        db.save(self.kind, self.name, self.to_record())

    def delete(self, db: Database) -> None:
        db.delete(self.kind, self.name)
        if isinstance(self.heritage_provider, LocalHeritageProvider):
            self.heritage_provider.forget(db)


@dataclass
class Heir:
    """Somebody who may inherit: only their public heir configuration is kept."""

    name: str
    heir_config: HeirConfig

    kind: ClassVar[EntityKind] = EntityKind.HEIR

    def fingerprint(self) -> Fingerprint:
        return self.heir_config.fingerprint

    def to_record(self) -> dict[str, Any]:
        return {
            "heir_config": {
                "kind": self.heir_config.kind,
                "fingerprint": self.heir_config.fingerprint,
                "value": self.heir_config.value,
            }
        }

    @classmethod
    def from_record(cls, name: str, record: dict[str, Any]) -> Heir:
        return cls(name=name, heir_config=HeirConfig(**record["heir_config"]))

    @classmethod
    def load(cls, db: Database, name: str) -> Heir:
        return cls.from_record(name, db.load(cls.kind, name))

    def create(self, db: Database) -> None:
        db.create(self.kind, self.name, self.to_record())

    def save(self, db: Database) -> None:
        db.save(self.kind, self.name, self.to_record())

    def delete(self, db: Database) -> None:
        db.delete(self.kind, self.name)


Entity = Wallet | HeirWallet | Heir

ENTITY_TYPES: dict[EntityKind, type[Wallet] | type[HeirWallet] | type[Heir]] = {
    EntityKind.WALLET: Wallet,
    EntityKind.HEIR_WALLET: HeirWallet,
    EntityKind.HEIR: Heir,
}
