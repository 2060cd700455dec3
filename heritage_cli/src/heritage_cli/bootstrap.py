"""
Provider bootstrapping.

Given the capability requirement of an operation, bring up exactly the
backends it needs: the key-provider (which may prompt for a password or open
a hardware session), the online-wallet or heritage-provider and, for local
ones, a connection to the blockchain provider. Nothing else is initialized, so
an operation that does not sign never asks for a password and one that does
not touch the network never opens a connection.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

from heritage_cli.account_keys import DEFAULT_POOL_SIZE, plan_derivation
from heritage_cli.backends import (
    BitcoinCoreProvider,
    ChainObserver,
    DescriptorEngine,
    ElectrumProvider,
    HardwareKey,
    HeritageProvider,
    HeritageServiceClient,
    HwiClient,
    KeyBackend,
    LocalHeritageProvider,
    LocalKey,
    LocalObserver,
    NoHeritageProvider,
    NoKey,
    NoObserver,
    RawChainProvider,
    SecretPrompt,
    ServiceHeritageProvider,
    ServiceObserver,
)
from heritage_cli.backends.bitcoin_core import read_cookie
from heritage_cli.backends.service import Tokens
from heritage_cli.capabilities import CapabilityRequirement
from heritage_cli.config import (
    BitcoinCoreConfig,
    BlockchainProviderArgs,
    CookieAuth,
    ElectrumConfig,
    ServiceConfig,
    Settings,
    resolve_provider_config,
)
from heritage_cli.entities import Entity, Heir, HeirWallet, Wallet
from heritage_cli.errors import (
    CapabilityMismatchError,
    InputValidationError,
)
from heritage_cli.models import EntityKind, Fingerprint, Network
from heritage_cli.operations import CreateHeirWallet, CreateWallet

if TYPE_CHECKING:
    from heritage_cli.store import Database


def load_engine(path: str | None) -> DescriptorEngine | None:
    """Instantiate the PSBT engine named by a ``package.module:Class`` path."""
    if not path:
        return None
    module_name, _, class_name = path.partition(":")
    if not class_name:
        raise InputValidationError(f"Invalid PSBT engine path {path!r} (expected module:Class)")
    try:
        engine_class = getattr(importlib.import_module(module_name), class_name)
    except (ImportError, AttributeError) as e:
        raise InputValidationError(f"Cannot load PSBT engine {path!r}: {e}") from e
    engine = engine_class()
    if not isinstance(engine, DescriptorEngine):
        raise InputValidationError(f"{path} is not a DescriptorEngine")
    logger.debug(f"Loaded PSBT engine {path}")
    return engine


@dataclass
class AppContext:
    """Everything an operation may need, passed explicitly to each one."""

    db: Database
    network: Network
    settings: Settings
    service_config: ServiceConfig
    provider_args: BlockchainProviderArgs = field(default_factory=BlockchainProviderArgs)
    confirm: Callable[[str], bool] = lambda prompt: False
    show: Callable[[Any], None] = lambda value: None
    engine: DescriptorEngine | None = None
    _service_client: HeritageServiceClient | None = field(default=None, repr=False)
    _raw_providers: list[RawChainProvider] = field(default_factory=list, repr=False)

    def hwi(self) -> HwiClient:
        return HwiClient(
            self.network,
            executable=self.settings.heritage_hwi_path,
            timeout=self.settings.heritage_hwi_timeout,
        )

    def service_client(self) -> HeritageServiceClient:
        """Client carrying the cached session, if any. Never logs in."""
        if self._service_client is None:
            self._service_client = HeritageServiceClient(
                self.service_config, tokens=Tokens.load(self.db)
            )
        return self._service_client

    async def raw_chain_provider(self) -> RawChainProvider:
        """Build and connect the configured blockchain provider."""
        config = resolve_provider_config(self.provider_args, self.db, self.network)
        provider = make_raw_provider(config, self.network, self.engine)
        self._raw_providers.append(provider)
        await provider.connect()
        return provider

    async def aclose(self) -> None:
        if self._service_client is not None:
            self._service_client.persist_tokens(self.db)
            await self._service_client.close()
            self._service_client = None
        for provider in self._raw_providers:
            await provider.close()
        self._raw_providers.clear()


def make_raw_provider(
    config: ElectrumConfig | BitcoinCoreConfig,
    network: Network,
    engine: DescriptorEngine | None = None,
) -> RawChainProvider:
    if isinstance(config, ElectrumConfig):
        return ElectrumProvider(config.url, network, engine=engine)
    if isinstance(config, BitcoinCoreConfig):
        if isinstance(config.auth, CookieAuth):
            user, password = read_cookie(config.auth.file)
        else:
            user, password = config.auth.username, config.auth.password
        return BitcoinCoreProvider(config.url, user, password, network=network)
    raise TypeError(f"Unknown blockchain provider config: {config!r}")


# Initialization of stored backends


async def init_key_backend(
    key_backend: KeyBackend, prompt_secret: SecretPrompt, ctx: AppContext
) -> None:
    if isinstance(key_backend, NoKey):
        return
    if isinstance(key_backend, LocalKey):
        key_backend.engine = ctx.engine
        await key_backend.init(prompt_secret)
        return
    if isinstance(key_backend, HardwareKey):
        key_backend.init_ledger_client(ctx.hwi())
        await key_backend.init(prompt_secret)
        return
    raise TypeError(f"Unknown key-provider: {type(key_backend).__name__}")


async def init_observer(
    observer: ChainObserver, requirement: CapabilityRequirement, ctx: AppContext
) -> None:
    if isinstance(observer, NoObserver):
        return
    if isinstance(observer, ServiceObserver):
        observer.init_service_client(ctx.service_client())
        return
    if isinstance(observer, LocalObserver):
        raw = await ctx.raw_chain_provider() if requirement.needs_raw_chain_provider else None
        observer.init_local(ctx.db, ctx.network, ctx.engine, raw)
        return
    raise TypeError(f"Unknown online-wallet: {type(observer).__name__}")


async def init_heritage_provider(
    provider: HeritageProvider, requirement: CapabilityRequirement, ctx: AppContext
) -> None:
    if isinstance(provider, NoHeritageProvider):
        return
    if isinstance(provider, ServiceHeritageProvider):
        provider.init_service_client(ctx.service_client())
        return
    if isinstance(provider, LocalHeritageProvider):
        raw = await ctx.raw_chain_provider() if requirement.needs_raw_chain_provider else None
        provider.init_local(ctx.db, ctx.network, ctx.engine, raw)
        return
    raise TypeError(f"Unknown heritage-provider: {type(provider).__name__}")


async def bootstrap(
    requirement: CapabilityRequirement,
    entity: Entity,
    prompt_secret: SecretPrompt,
    ctx: AppContext,
) -> Entity:
    """
    Initialize the backends of a stored entity that the requirement marks as needed.

    Raises:
        IncorrectPassword, SecretPromptError: From the local key-provider
        DeviceUnavailable: If the hardware wallet does not answer
        UnreachableProvider: If the blockchain provider cannot be reached
    """
    if isinstance(entity, Heir):
        return entity

    if requirement.needs_key_backend:
        await init_key_backend(entity.key_backend, prompt_secret, ctx)

    if isinstance(entity, Wallet):
        if requirement.needs_chain_observer:
            await init_observer(entity.observer, requirement, ctx)
    elif isinstance(entity, HeirWallet):
        if requirement.needs_chain_observer:
            await init_heritage_provider(entity.heritage_provider, requirement, ctx)
    else:
        raise TypeError(f"Unknown entity: {type(entity).__name__}")

    logger.debug(f"Bootstrapped {entity.kind.value} {entity.name} with {requirement}")
    return entity


# Creation of new entities


async def new_key_backend(
    key_provider: str,
    seed: str | None,
    word_count: int | None,
    with_password: bool,
    prompt_secret: SecretPrompt,
    ctx: AppContext,
) -> KeyBackend:
    if key_provider == "none":
        if seed is not None or word_count is not None:
            raise InputValidationError("--seed and --word-count need a local key-provider")
        return NoKey()
    if key_provider == "local":
        if seed is not None and word_count is not None:
            raise InputValidationError("--seed and --word-count cannot be used together")
        password = prompt_secret(True) if with_password else None
        if seed is not None:
            key: LocalKey = LocalKey.restore(seed, password, ctx.network)
        else:
            key = LocalKey.generate(word_count or 24, password, ctx.network)
        key.engine = ctx.engine
        return key
    if key_provider == "ledger":
        return await HardwareKey.new(ctx.hwi())
    raise InputValidationError(f"Unknown key-provider: {key_provider}")


async def auto_add_account_xpubs(
    key_backend: KeyBackend, observer: ChainObserver, target_unused: int = DEFAULT_POOL_SIZE
) -> int:
    """Top up the online-wallet's pool of unused account xpubs. Returns how many were added."""
    known = [x.status() for x in await observer.list_account_xpubs()]
    start, end = plan_derivation(known, target_unused)
    if start == end:
        logger.debug("Account xpub pool already full")
        return 0
    xpubs = await key_backend.derive_account_xpubs(start, end)
    await observer.feed_account_xpubs(xpubs)
    logger.info(f"Added account xpubs #{start} to #{end - 1}")
    return len(xpubs)


async def create_wallet(
    name: str, op: CreateWallet, prompt_secret: SecretPrompt, ctx: AppContext
) -> Wallet:
    ctx.db.verify_name_is_free(EntityKind.WALLET, name)

    key_backend = await new_key_backend(
        op.key_provider, op.seed, op.word_count, not op.no_password, prompt_secret, ctx
    )
    key_fingerprint = None if key_backend.is_none() else key_backend.fingerprint()
    backup = list(op.backup) if op.backup is not None else None

    binds_existing = (
        op.existing_service_wallet_name is not None
        or op.existing_service_wallet_fingerprint is not None
        or op.existing_service_wallet_id is not None
    )
    if binds_existing and op.online_wallet != "service":
        raise InputValidationError("Existing service wallet options need a service online-wallet")

    observer: ChainObserver
    if op.online_wallet == "none":
        if key_backend.is_none():
            raise InputValidationError("A wallet needs a key-provider or an online-wallet")
        observer = NoObserver()
    elif op.online_wallet == "service":
        client = ctx.service_client()
        if binds_existing:
            observer = await ServiceObserver.bind(
                client,
                name=op.existing_service_wallet_name,
                fingerprint=op.existing_service_wallet_fingerprint,
                wallet_id=op.existing_service_wallet_id,
            )
        else:
            observer = await ServiceObserver.create(
                client, name, backup, op.block_inclusion_objective
            )
    elif op.online_wallet == "local":
        observer = LocalObserver.create(
            ctx.db, backup, op.block_inclusion_objective, fingerprint=key_fingerprint
        )
        observer.init_local(ctx.db, ctx.network, ctx.engine)
    else:
        raise InputValidationError(f"Unknown online-wallet: {op.online_wallet}")

    bound = observer.bound_fingerprint()
    if key_fingerprint is not None and bound is not None and bound != key_fingerprint:
        raise CapabilityMismatchError(
            f"Key-provider fingerprint {key_fingerprint} does not match the "
            f"online-wallet fingerprint {bound}"
        )

    wallet = Wallet(name=name, key_backend=key_backend, observer=observer)

    if not op.no_auto_feed_xpubs and not key_backend.is_none() and not observer.is_none():
        await auto_add_account_xpubs(key_backend, observer)

    wallet.create(ctx.db)
    logger.info(f"Wallet {name} created")
    return wallet


def resolve_heir_fingerprint(
    explicit: Fingerprint | None, key_backend: KeyBackend
) -> Fingerprint:
    """
    Fingerprint of a new heir-wallet.

    An explicit fingerprint always wins over the key-provider's one.
    """
    if explicit is not None:
        if not key_backend.is_none() and key_backend.fingerprint() != explicit:
            logger.warning(
                f"Using fingerprint {explicit} although the key-provider "
                f"fingerprint is {key_backend.fingerprint()}"
            )
        return explicit
    if key_backend.is_none():
        raise InputValidationError("--fingerprint is required when the key-provider is none")
    return key_backend.fingerprint()


async def create_heir_wallet(
    name: str, op: CreateHeirWallet, prompt_secret: SecretPrompt, ctx: AppContext
) -> HeirWallet:
    ctx.db.verify_name_is_free(EntityKind.HEIR_WALLET, name)

    key_backend = await new_key_backend(
        op.key_provider, op.seed, op.word_count, op.with_password, prompt_secret, ctx
    )
    fingerprint = resolve_heir_fingerprint(op.fingerprint, key_backend)

    provider: HeritageProvider
    if op.heritage_provider == "none":
        if key_backend.is_none():
            raise InputValidationError(
                "An heir-wallet needs a key-provider or a heritage-provider"
            )
        provider = NoHeritageProvider()
    elif op.heritage_provider == "service":
        provider = ServiceHeritageProvider(fingerprint)
        provider.init_service_client(ctx.service_client())
    elif op.heritage_provider == "local":
        backup = list(op.backup) if op.backup is not None else None
        provider = LocalHeritageProvider.create(ctx.db, fingerprint, backup)
    else:
        raise InputValidationError(f"Unknown heritage-provider: {op.heritage_provider}")

    heir_wallet = HeirWallet(
        name=name,
        stored_fingerprint=fingerprint,
        key_backend=key_backend,
        heritage_provider=provider,
    )
    heir_wallet.create(ctx.db)
    logger.info(f"Heir wallet {name} created")
    return heir_wallet
