"""
Base backend interfaces.

Each backend role is a closed set of variants:

- KeyBackend: NoKey, LocalKey, HardwareKey
- ChainObserver (wallets): NoObserver, ServiceObserver, LocalObserver
- HeritageProvider (heir-wallets): NoHeritageProvider, ServiceHeritageProvider,
  LocalHeritageProvider
- RawChainProvider: ElectrumProvider, BitcoinCoreProvider

Variants are constructed from their stored record without any I/O. Expensive
or interactive setup (password prompt, device session, service client, chain
connection) happens in the separate ``init`` step driven by the bootstrapper.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, ClassVar

from heritage_cli.errors import CapabilityMismatchError, IncorrectOnlineWallet
from heritage_cli.models import (
    AccountXPub,
    AccountXPubWithStatus,
    Fingerprint,
    HeirConfig,
    InheritanceRecord,
    TransactionRequest,
    TransactionSummary,
    Utxo,
    WalletStatus,
)

if TYPE_CHECKING:
    from heritage_cli.backends.bip32 import HDKey
    from heritage_cli.models import Network

SecretPrompt = Callable[[bool], str]


class KeyBackend(ABC):
    """Holds or reaches the secret keys of an entity."""

    kind: ClassVar[str]

    def is_none(self) -> bool:
        return False

    @abstractmethod
    def fingerprint(self) -> Fingerprint:
        """Master key fingerprint"""

    async def init(self, prompt_secret: SecretPrompt) -> None:
        """Make the backend ready to sign or derive. May prompt or open a device."""

    @abstractmethod
    async def sign_psbt(self, psbt: str) -> tuple[str, int]:
        """Sign every input we can, returns (psbt, number of inputs signed)"""

    @abstractmethod
    async def derive_account_xpubs(self, start: int, end: int) -> list[AccountXPub]:
        """Derive the account xpubs of indices [start, end)"""

    @abstractmethod
    async def derive_heir_config(self, kind: str) -> HeirConfig:
        """Heir configuration exposing this key to a wallet owner"""

    @abstractmethod
    async def backup_mnemonic(self) -> dict[str, Any]:
        """Mnemonic and its metadata, for backup purposes"""

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        """Stored record"""


class NoKey(KeyBackend):
    """Watch-only entity: no key material at all."""

    kind = "none"

    def is_none(self) -> bool:
        return True

    def fingerprint(self) -> Fingerprint:
        raise CapabilityMismatchError("No key-provider: this entity has no fingerprint of its own")

    async def sign_psbt(self, psbt: str) -> tuple[str, int]:
        raise CapabilityMismatchError("No key-provider: this entity cannot sign")

    async def derive_account_xpubs(self, start: int, end: int) -> list[AccountXPub]:
        raise CapabilityMismatchError("No key-provider: cannot derive account xpubs")

    async def derive_heir_config(self, kind: str) -> HeirConfig:
        raise CapabilityMismatchError("No key-provider: cannot derive an heir configuration")

    async def backup_mnemonic(self) -> dict[str, Any]:
        raise CapabilityMismatchError("No key-provider: there is no mnemonic to back up")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}


class RawChainProvider(ABC):
    """Direct access to the Bitcoin network (Electrum or Bitcoin Core)."""

    kind: ClassVar[str]

    @abstractmethod
    async def connect(self) -> None:
        """Check that the endpoint answers and serves the expected network"""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Current chain tip height"""

    @abstractmethod
    async def estimate_fee(self, target_blocks: int) -> float:
        """Fee rate estimate in sat/vB"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast a raw transaction, returns its txid"""

    @abstractmethod
    async def scan_descriptors(self, descriptors: list[dict[str, Any]]) -> list[Utxo]:
        """UTXOs currently paying to the given ranged descriptors"""

    async def close(self) -> None:
        """Close backend connection"""
        pass


class DescriptorEngine(ABC):
    """
    PSBT and descriptor engine for local wallets and local-seed signing.

    Address derivation, PSBT construction, signing and finalization are not
    implemented by this package. An engine can be installed through the
    ``HERITAGE_PSBT_ENGINE`` setting.
    """

    @abstractmethod
    async def derive_address(self, descriptor: str, index: int, network: Network) -> str:
        pass

    @abstractmethod
    async def create_psbt(
        self, state: dict[str, Any], request: TransactionRequest, network: Network
    ) -> tuple[str, TransactionSummary]:
        pass

    @abstractmethod
    async def create_claim_psbt(
        self, state: dict[str, Any], claim_id: str, recipient: str, network: Network
    ) -> tuple[str, TransactionSummary]:
        pass

    @abstractmethod
    async def list_heritages(
        self, state: dict[str, Any], fingerprint: Fingerprint
    ) -> list[InheritanceRecord]:
        pass

    @abstractmethod
    async def sign_psbt(self, psbt: str, master: HDKey, network: Network) -> tuple[str, int]:
        pass

    @abstractmethod
    async def extract_transaction(self, psbt: str) -> str:
        """Finalize the PSBT and return the raw transaction hex"""


class ChainObserver(ABC):
    """Watches the wallet on-chain and builds its transactions."""

    kind: ClassVar[str]

    def is_none(self) -> bool:
        return False

    def bound_fingerprint(self) -> Fingerprint | None:
        return None

    @abstractmethod
    async def sync(self) -> None:
        pass

    @abstractmethod
    async def get_address(self) -> str:
        pass

    @abstractmethod
    async def list_addresses(self) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def list_transactions(self) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def list_utxos(self) -> list[Utxo]:
        pass

    @abstractmethod
    async def get_wallet_status(self) -> WalletStatus:
        pass

    @abstractmethod
    async def set_block_inclusion_objective(self, value: int) -> WalletStatus:
        pass

    @abstractmethod
    async def create_psbt(self, request: TransactionRequest) -> tuple[str, TransactionSummary]:
        pass

    @abstractmethod
    async def broadcast(self, psbt: str) -> str:
        """Extract and broadcast, returns the txid"""

    @abstractmethod
    async def backup_descriptors(self) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def list_account_xpubs(self) -> list[AccountXPubWithStatus]:
        pass

    @abstractmethod
    async def feed_account_xpubs(self, xpubs: list[AccountXPub]) -> None:
        pass

    async def rename(self, new_name: str) -> None:
        """Rename the remote counterpart, if any"""

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        pass


class NoObserver(ChainObserver):
    """Sign-only wallet: cannot sync, generate addresses or build transactions."""

    kind = "none"

    def is_none(self) -> bool:
        return True

    def _unsupported(self) -> IncorrectOnlineWallet:
        return IncorrectOnlineWallet("service or local")

    async def sync(self) -> None:
        raise self._unsupported()

    async def get_address(self) -> str:
        raise self._unsupported()

    async def list_addresses(self) -> list[dict[str, Any]]:
        raise self._unsupported()

    async def list_transactions(self) -> list[dict[str, Any]]:
        raise self._unsupported()

    async def list_utxos(self) -> list[Utxo]:
        raise self._unsupported()

    async def get_wallet_status(self) -> WalletStatus:
        raise self._unsupported()

    async def set_block_inclusion_objective(self, value: int) -> WalletStatus:
        raise self._unsupported()

    async def create_psbt(self, request: TransactionRequest) -> tuple[str, TransactionSummary]:
        raise self._unsupported()

    async def broadcast(self, psbt: str) -> str:
        raise self._unsupported()

    async def backup_descriptors(self) -> list[dict[str, Any]]:
        raise self._unsupported()

    async def list_account_xpubs(self) -> list[AccountXPubWithStatus]:
        raise self._unsupported()

    async def feed_account_xpubs(self, xpubs: list[AccountXPub]) -> None:
        raise self._unsupported()

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}


class HeritageProvider(ABC):
    """Heir-side counterpart of the chain observer: lists and spends inheritances."""

    kind: ClassVar[str]

    def is_none(self) -> bool:
        return False

    @abstractmethod
    async def list_heritages(self) -> list[InheritanceRecord]:
        pass

    @abstractmethod
    async def create_psbt(self, claim_id: str, recipient: str) -> tuple[str, TransactionSummary]:
        pass

    @abstractmethod
    async def sync(self) -> None:
        pass

    @abstractmethod
    async def broadcast(self, psbt: str) -> str:
        pass

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        pass


class NoHeritageProvider(HeritageProvider):
    kind = "none"

    def is_none(self) -> bool:
        return True

    async def list_heritages(self) -> list[InheritanceRecord]:
        raise CapabilityMismatchError("No heritage-provider: cannot list inheritances")

    async def create_psbt(self, claim_id: str, recipient: str) -> tuple[str, TransactionSummary]:
        raise CapabilityMismatchError("No heritage-provider: cannot spend inheritances")

    async def sync(self) -> None:
        raise CapabilityMismatchError("No heritage-provider: nothing to synchronize")

    async def broadcast(self, psbt: str) -> str:
        raise CapabilityMismatchError("No heritage-provider: cannot broadcast")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}
