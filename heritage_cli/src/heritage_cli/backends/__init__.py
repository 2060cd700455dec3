"""
Backend implementations.

Available backends:
- Key providers: NoKey, LocalKey (BIP39 seed), HardwareKey (Ledger over HWI)
- Online wallets: NoObserver, ServiceObserver (Heritage service), LocalObserver
- Heritage providers: NoHeritageProvider, ServiceHeritageProvider, LocalHeritageProvider
- Blockchain providers: ElectrumProvider, BitcoinCoreProvider

The ``*_from_dict`` helpers rebuild a backend from its stored record without
any I/O.
"""

from __future__ import annotations

from typing import Any

from heritage_cli.backends.base import (
    ChainObserver,
    DescriptorEngine,
    HeritageProvider,
    KeyBackend,
    NoHeritageProvider,
    NoKey,
    NoObserver,
    RawChainProvider,
    SecretPrompt,
)
from heritage_cli.backends.bitcoin_core import BitcoinCoreProvider
from heritage_cli.backends.electrum import ElectrumProvider
from heritage_cli.backends.hwi import HardwareKey, HwiClient
from heritage_cli.backends.keys import LocalKey
from heritage_cli.backends.local import LocalHeritageProvider, LocalObserver
from heritage_cli.backends.service import (
    HeritageServiceClient,
    ServiceHeritageProvider,
    ServiceObserver,
)


def key_backend_from_dict(data: dict[str, Any]) -> KeyBackend:
    kind = data.get("kind")
    if kind == NoKey.kind:
        return NoKey()
    if kind == LocalKey.kind:
        return LocalKey.from_dict(data)
    if kind == HardwareKey.kind:
        return HardwareKey.from_dict(data)
    raise ValueError(f"Unknown key-provider kind: {kind!r}")


def observer_from_dict(data: dict[str, Any]) -> ChainObserver:
    kind = data.get("kind")
    if kind == NoObserver.kind:
        return NoObserver()
    if kind == ServiceObserver.kind:
        return ServiceObserver.from_dict(data)
    if kind == LocalObserver.kind:
        return LocalObserver.from_dict(data)
    raise ValueError(f"Unknown online-wallet kind: {kind!r}")


def heritage_provider_from_dict(data: dict[str, Any]) -> HeritageProvider:
    kind = data.get("kind")
    if kind == NoHeritageProvider.kind:
        return NoHeritageProvider()
    if kind == ServiceHeritageProvider.kind:
        return ServiceHeritageProvider.from_dict(data)
    if kind == LocalHeritageProvider.kind:
        return LocalHeritageProvider.from_dict(data)
    raise ValueError(f"Unknown heritage-provider kind: {kind!r}")


__all__ = [
    "BitcoinCoreProvider",
    "ChainObserver",
    "DescriptorEngine",
    "ElectrumProvider",
    "HardwareKey",
    "HeritageProvider",
    "HeritageServiceClient",
    "HwiClient",
    "KeyBackend",
    "LocalHeritageProvider",
    "LocalKey",
    "LocalObserver",
    "NoHeritageProvider",
    "NoKey",
    "NoObserver",
    "RawChainProvider",
    "SecretPrompt",
    "ServiceHeritageProvider",
    "ServiceObserver",
    "heritage_provider_from_dict",
    "key_backend_from_dict",
    "observer_from_dict",
]
