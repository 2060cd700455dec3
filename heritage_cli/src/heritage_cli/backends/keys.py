"""
Local key-provider: a BIP39 seed stored in the database.

The optional password is the BIP39 passphrase. It is never stored; the stored
fingerprint is used to check it when the key is initialized.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from heritage_cli.backends.base import DescriptorEngine, KeyBackend, SecretPrompt
from heritage_cli.backends.bip32 import (
    HDKey,
    derive_account_xpub,
    derive_heir_config,
    generate_mnemonic,
    mnemonic_to_seed,
    validate_mnemonic,
)
from heritage_cli.errors import (
    CapabilityMismatchError,
    IncorrectPassword,
    InputValidationError,
    MissingEngine,
)
from heritage_cli.models import AccountXPub, Fingerprint, HeirConfig, Network


class LocalKey(KeyBackend):
    kind = "local"

    def __init__(
        self,
        mnemonic: str,
        fingerprint: Fingerprint,
        network: Network,
        with_password: bool = False,
    ):
        self.mnemonic = mnemonic
        self._fingerprint = fingerprint
        self.network = network
        self.with_password = with_password
        self.engine: DescriptorEngine | None = None
        self._master: HDKey | None = None

    @classmethod
    def restore(cls, mnemonic: str, password: str | None, network: Network) -> LocalKey:
        try:
            mnemonic = validate_mnemonic(mnemonic)
        except ValueError as e:
            logger.error(f"invalid mnemonic {e}")
            raise InputValidationError(f"invalid mnemonic {e}") from e
        master = HDKey.from_seed(mnemonic_to_seed(mnemonic, password or ""))
        key = cls(mnemonic, master.fingerprint(), network, with_password=password is not None)
        key._master = master
        return key

    @classmethod
    def generate(cls, word_count: int, password: str | None, network: Network) -> LocalKey:
        return cls.restore(generate_mnemonic(word_count), password, network)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LocalKey:
        return cls(
            mnemonic=data["mnemonic"],
            fingerprint=data["fingerprint"],
            network=Network(data["network"]),
            with_password=data.get("with_password", False),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "mnemonic": self.mnemonic,
            "fingerprint": self._fingerprint,
            "network": self.network.value,
            "with_password": self.with_password,
        }

    def require_password(self) -> bool:
        return self.with_password

    def fingerprint(self) -> Fingerprint:
        return self._fingerprint

    async def init(self, prompt_secret: SecretPrompt) -> None:
        password = prompt_secret(False) if self.require_password() else None
        self.init_local_key(password)

    def init_local_key(self, password: str | None) -> None:
        master = HDKey.from_seed(mnemonic_to_seed(self.mnemonic, password or ""))
        if master.fingerprint() != self._fingerprint:
            raise IncorrectPassword()
        self._master = master

    @property
    def master(self) -> HDKey:
        if self._master is None:
            raise CapabilityMismatchError("Local key is not initialized")
        return self._master

    async def sign_psbt(self, psbt: str) -> tuple[str, int]:
        if self.engine is None:
            raise MissingEngine("sign with a local seed")
        return await self.engine.sign_psbt(psbt, self.master, self.network)

    async def derive_account_xpubs(self, start: int, end: int) -> list[AccountXPub]:
        master = self.master
        return [derive_account_xpub(master, self.network, i) for i in range(start, end)]

    async def derive_heir_config(self, kind: str) -> HeirConfig:
        return derive_heir_config(self.master, self.network, kind)

    async def backup_mnemonic(self) -> dict[str, Any]:
        return {
            "mnemonic": self.mnemonic.split(),
            "fingerprint": self._fingerprint,
            "with_password": self.with_password,
        }
