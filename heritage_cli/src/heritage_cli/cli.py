"""
Heritage wallet CLI - Bitcoin wallets with built-in inheritance.

    heritage-cli [global options] <group> [--name NAME] <command>

Groups: wallet, heir-wallet, heir, service. Standalone commands:
blockchain-provider, fingerprints.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any

import typer
from loguru import logger

from heritage_cli import display, executor, prompts
from heritage_cli import operations as ops
from heritage_cli.addresses import parse_amount, parse_outpoint, parse_recipient
from heritage_cli.backends.service import DeviceAuthorization, Tokens
from heritage_cli.bootstrap import AppContext, load_engine
from heritage_cli.config import (
    BlockchainProviderArgs,
    ServiceConfig,
    Settings,
    get_settings,
    parse_provider_args,
    resolve_provider_config,
    resolve_service_config,
    store_provider_config,
    store_service_config,
)
from heritage_cli.entities import Heir
from heritage_cli.errors import HeritageCliError, InputValidationError, UserCancelledError
from heritage_cli.fingerprints import collect
from heritage_cli.models import EntityKind, HeirConfig, Network, normalize_fingerprint
from heritage_cli.store import Database

app = typer.Typer(
    name="heritage-cli",
    help="Bitcoin wallet with built-in inheritance",
    add_completion=False,
    no_args_is_help=True,
)
wallet_app = typer.Typer(help="Manage wallets", no_args_is_help=True)
heir_wallet_app = typer.Typer(help="Manage heir-wallets", no_args_is_help=True)
heir_app = typer.Typer(help="Manage heirs", no_args_is_help=True)
service_app = typer.Typer(help="Interact with the Heritage service", no_args_is_help=True)
ledger_policies_app = typer.Typer(help="Ledger wallet policies", no_args_is_help=True)
account_xpubs_app = typer.Typer(help="Account extended public keys", no_args_is_help=True)

app.add_typer(wallet_app, name="wallet")
app.add_typer(heir_wallet_app, name="heir-wallet")
app.add_typer(heir_app, name="heir")
app.add_typer(service_app, name="service")
wallet_app.add_typer(ledger_policies_app, name="ledger-policies")
wallet_app.add_typer(account_xpubs_app, name="account-xpubs")


def setup_logging(level: str = "WARNING") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


@dataclass
class GlobalOptions:
    settings: Settings
    network: Network
    datadir: Path
    provider_args: BlockchainProviderArgs
    service_api_url: str | None = None
    auth_url: str | None = None
    auth_client_id: str | None = None
    names: dict[EntityKind, str | None] = field(default_factory=dict)

    def database(self) -> Database:
        return Database(self.datadir, self.network)

    def entity_name(self, kind: EntityKind, db: Database) -> str:
        return self.names.get(kind) or db.get_default_name(kind)

    def service_config(self, db: Database) -> ServiceConfig:
        return resolve_service_config(
            db, self.service_api_url, self.auth_url, self.auth_client_id
        )

    def app_context(self, db: Database) -> AppContext:
        return AppContext(
            db=db,
            network=self.network,
            settings=self.settings,
            service_config=self.service_config(db),
            provider_args=self.provider_args,
            confirm=prompts.confirm,
            show=display.show,
            engine=load_engine(self.settings.heritage_psbt_engine),
        )


@contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except UserCancelledError as e:
        typer.echo(str(e))
        raise typer.Exit(0)
    except HeritageCliError as e:
        logger.error(str(e))
        raise typer.Exit(1)


def _options(ctx: typer.Context) -> GlobalOptions:
    return ctx.ensure_object(GlobalOptions)


async def _execute(
    options: GlobalOptions, db: Database, kind: EntityKind, name: str, op: ops.Operation
) -> Any:
    app_ctx = options.app_context(db)
    try:
        return await executor.run(op, kind, name, app_ctx, prompts.prompt_secret)
    finally:
        await app_ctx.aclose()


def _run(ctx: typer.Context, kind: EntityKind, op: ops.Operation) -> None:
    options = _options(ctx)
    with _errors():
        db = options.database()
        name = options.entity_name(kind, db)
        result = asyncio.run(_execute(options, db, kind, name, op))
    display.show(result)


def _fingerprint(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return normalize_fingerprint(value)
    except ValueError as e:
        raise InputValidationError(str(e)) from e


def _read_backup(path: Path | None) -> tuple[dict, ...] | None:
    if path is None:
        return None
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise InputValidationError(f"Cannot read descriptors backup {path}: {e}") from e
    if not isinstance(data, list):
        raise InputValidationError(f"{path} does not contain a descriptors backup list")
    return tuple(data)


@app.callback()
def main_callback(
    ctx: typer.Context,
    network: Annotated[
        Network | None,
        typer.Option(
            "--network", "-n", case_sensitive=False, help="Bitcoin network [env: BITCOIN_NETWORK]"
        ),
    ] = None,
    datadir: Annotated[
        Path | None,
        typer.Option("--datadir", "-d", help="Data directory [env: HERITAGE_DATADIR]"),
    ] = None,
    log_level: Annotated[
        str | None, typer.Option("--log-level", "-l", help="Log level [env: HERITAGE_LOG_LEVEL]")
    ] = None,
    electrum_url: Annotated[
        str | None, typer.Option(help="Electrum server, e.g. ssl://electrum.example.com:50002")
    ] = None,
    bitcoincore_url: Annotated[
        str | None, typer.Option(help="Bitcoin Core RPC URL, e.g. http://127.0.0.1:8332")
    ] = None,
    auth_cookie: Annotated[
        Path | None, typer.Option(help="Bitcoin Core cookie file")
    ] = None,
    username: Annotated[str | None, typer.Option(help="Bitcoin Core RPC username")] = None,
    password: Annotated[str | None, typer.Option(help="Bitcoin Core RPC password")] = None,
    service_api_url: Annotated[
        str | None, typer.Option(help="Heritage service API URL")
    ] = None,
    auth_url: Annotated[str | None, typer.Option(help="Heritage authentication URL")] = None,
    auth_client_id: Annotated[
        str | None, typer.Option(help="Heritage authentication client id")
    ] = None,
) -> None:
    """Bitcoin wallet with built-in inheritance."""
    settings = get_settings()
    setup_logging(log_level or settings.heritage_log_level)

    with _errors():
        provider_args = parse_provider_args(
            electrum_url=electrum_url,
            bitcoincore_url=bitcoincore_url,
            auth_cookie=auth_cookie,
            username=username,
            password=password,
        )

    ctx.obj = GlobalOptions(
        settings=settings,
        network=network or settings.bitcoin_network,
        datadir=datadir or settings.heritage_datadir,
        provider_args=provider_args,
        service_api_url=service_api_url or settings.heritage_service_api_url,
        auth_url=auth_url or settings.heritage_auth_url,
        auth_client_id=auth_client_id or settings.heritage_auth_client_id,
    )


NameOption = Annotated[
    str | None, typer.Option("--name", help="Entity name (defaults to the default name)")
]


@wallet_app.callback()
def wallet_callback(ctx: typer.Context, name: NameOption = None) -> None:
    """Manage wallets."""
    _options(ctx).names[EntityKind.WALLET] = name


@heir_wallet_app.callback()
def heir_wallet_callback(ctx: typer.Context, name: NameOption = None) -> None:
    """Manage heir-wallets."""
    _options(ctx).names[EntityKind.HEIR_WALLET] = name


@heir_app.callback()
def heir_callback(ctx: typer.Context, name: NameOption = None) -> None:
    """Manage heirs."""
    _options(ctx).names[EntityKind.HEIR] = name


# Commands shared by the three entity groups


def _list_names(ctx: typer.Context, kind: EntityKind) -> None:
    with _errors():
        names = _options(ctx).database().list_names(kind)
    display.show(names)


def _default_name(ctx: typer.Context, kind: EntityKind, new_default: str | None) -> None:
    with _errors():
        db = _options(ctx).database()
        if new_default is not None:
            db.load(kind, new_default)
            db.set_default_name(kind, new_default)
        name = db.get_default_name(kind)
    display.show(name)


SetDefaultOption = Annotated[str | None, typer.Option("--set", help="New default name")]
NewNameArgument = Annotated[str, typer.Argument(help="New name")]
IUnderstandOption = Annotated[
    bool, typer.Option("--i-understand-what-i-am-doing", help="Skip the confirmations")
]
PsbtArgument = Annotated[str, typer.Argument(help="PSBT in base64")]
SkipConfirmationOption = Annotated[
    bool, typer.Option("--skip-confirmation", "-y", help="Do not ask for confirmations")
]
HeirConfigKindOption = Annotated[
    str, typer.Option("--kind", help="Heir configuration kind: xpub | single-pub")
]


def _check_heir_config_kind(kind: str) -> None:
    if kind not in ("xpub", "single-pub"):
        logger.error(f"Unknown heir config kind: {kind}")
        raise typer.Exit(1)


def _show_mnemonic(ctx: typer.Context, kind: EntityKind, understood: bool) -> None:
    if not understood:
        logger.error(
            "Displaying the mnemonic exposes your funds: "
            "add --i-understand-what-i-am-doing to proceed"
        )
        raise typer.Exit(1)
    _run(ctx, kind, ops.ShowMnemonic())


# wallet


@wallet_app.command("list")
def wallet_list(ctx: typer.Context) -> None:
    """List the wallets."""
    _list_names(ctx, EntityKind.WALLET)


@wallet_app.command("default-name")
def wallet_default_name(ctx: typer.Context, set_: SetDefaultOption = None) -> None:
    """Show or set the default wallet name."""
    _default_name(ctx, EntityKind.WALLET, set_)


@wallet_app.command("create")
def wallet_create(
    ctx: typer.Context,
    online_wallet: Annotated[
        str, typer.Option("--online-wallet", "-o", help="none | service | local")
    ] = "service",
    key_provider: Annotated[
        str, typer.Option("--key-provider", "-k", help="none | local | ledger")
    ] = "ledger",
    seed: Annotated[
        str | None, typer.Option(help="Restore a local key-provider from this mnemonic")
    ] = None,
    word_count: Annotated[
        int | None, typer.Option(help="Words of a new local mnemonic: 12, 18 or 24")
    ] = None,
    no_password: Annotated[
        bool, typer.Option("--no-password", help="Do not protect the local seed with a password")
    ] = False,
    backup_file: Annotated[
        Path | None, typer.Option(help="Restore from a descriptors backup file")
    ] = None,
    existing_service_wallet_name: Annotated[
        str | None, typer.Option(help="Bind to the service wallet with this name")
    ] = None,
    existing_service_wallet_fingerprint: Annotated[
        str | None, typer.Option(help="Bind to the service wallet with this fingerprint")
    ] = None,
    existing_service_wallet_id: Annotated[
        str | None, typer.Option(help="Bind to the service wallet with this id")
    ] = None,
    no_auto_feed_xpubs: Annotated[
        bool, typer.Option("--no-auto-feed-xpubs", help="Do not feed account xpubs")
    ] = False,
    block_inclusion_objective: Annotated[
        int, typer.Option(help="Target number of blocks for fee estimation")
    ] = 6,
) -> None:
    """Create a new wallet."""
    with _errors():
        op = ops.CreateWallet(
            online_wallet=online_wallet,  # type: ignore[arg-type]
            key_provider=key_provider,  # type: ignore[arg-type]
            seed=seed,
            word_count=word_count,
            no_password=no_password,
            backup=_read_backup(backup_file),
            existing_service_wallet_name=existing_service_wallet_name,
            existing_service_wallet_fingerprint=_fingerprint(existing_service_wallet_fingerprint),
            existing_service_wallet_id=existing_service_wallet_id,
            no_auto_feed_xpubs=no_auto_feed_xpubs,
            block_inclusion_objective=block_inclusion_objective,
        )
    _run(ctx, EntityKind.WALLET, op)


@wallet_app.command("rename")
def wallet_rename(
    ctx: typer.Context,
    new_name: NewNameArgument,
    local_only: Annotated[
        bool, typer.Option("--local-only", help="Do not rename the service-side wallet")
    ] = False,
) -> None:
    """Rename the wallet."""
    _run(ctx, EntityKind.WALLET, ops.Rename(new_name=new_name, local_only=local_only))


@wallet_app.command("backup")
def wallet_backup(
    ctx: typer.Context,
    file: Annotated[Path | None, typer.Option("--file", "-f", help="Write to this file")] = None,
    overwrite: Annotated[bool, typer.Option(help="Overwrite an existing file")] = False,
) -> None:
    """Backup the wallet descriptors."""
    _run(ctx, EntityKind.WALLET, ops.BackupDescriptors(file=file, overwrite=overwrite))


@wallet_app.command("remove")
def wallet_remove(ctx: typer.Context, skip_confirmation: IUnderstandOption = False) -> None:
    """Remove the wallet from the local database."""
    _run(ctx, EntityKind.WALLET, ops.Remove(skip_confirmation=skip_confirmation))


@wallet_app.command("new-address")
def wallet_new_address(ctx: typer.Context) -> None:
    """Get a new receiving address."""
    _run(ctx, EntityKind.WALLET, ops.NewAddress())


@wallet_app.command("addresses")
def wallet_addresses(ctx: typer.Context) -> None:
    """List the generated addresses."""
    _run(ctx, EntityKind.WALLET, ops.ListAddresses())


@wallet_app.command("transactions")
def wallet_transactions(ctx: typer.Context) -> None:
    """List the wallet transactions."""
    _run(ctx, EntityKind.WALLET, ops.ListTransactions())


@wallet_app.command("utxos")
def wallet_utxos(ctx: typer.Context) -> None:
    """List the wallet UTXOs."""
    _run(ctx, EntityKind.WALLET, ops.ListUtxos())


@wallet_app.command("sync")
def wallet_sync(ctx: typer.Context) -> None:
    """Synchronize the wallet with the blockchain."""
    _run(ctx, EntityKind.WALLET, ops.Sync())


@wallet_app.command("balance")
def wallet_balance(ctx: typer.Context) -> None:
    """Show the wallet balance."""
    _run(ctx, EntityKind.WALLET, ops.Balance())


@wallet_app.command("block-inclusion-objective")
def wallet_block_inclusion_objective(
    ctx: typer.Context,
    set_: Annotated[int | None, typer.Option("--set", help="New objective, in blocks")] = None,
) -> None:
    """Show or set the block inclusion objective used for fee estimation."""
    _run(ctx, EntityKind.WALLET, ops.BlockInclusionObjective(set_value=set_))


@wallet_app.command("fingerprint")
def wallet_fingerprint(ctx: typer.Context) -> None:
    """Show the wallet fingerprint."""
    _run(ctx, EntityKind.WALLET, ops.ShowFingerprint())


@wallet_app.command("mnemonic")
def wallet_mnemonic(ctx: typer.Context, understood: IUnderstandOption = False) -> None:
    """Show the mnemonic of a local key-provider."""
    _show_mnemonic(ctx, EntityKind.WALLET, understood)


@wallet_app.command("heir-config")
def wallet_heir_config(ctx: typer.Context, kind: HeirConfigKindOption = "xpub") -> None:
    """Derive an heir configuration from the wallet key."""
    _check_heir_config_kind(kind)
    _run(ctx, EntityKind.WALLET, ops.DeriveHeirConfig(kind=kind))  # type: ignore[arg-type]


@wallet_app.command("send-bitcoins")
def wallet_send_bitcoins(
    ctx: typer.Context,
    recipient: Annotated[
        list[str],
        typer.Option("--recipient", "-r", help="<ADDRESS>:<AMOUNT>, AMOUNT being 'all' or 1.5mbtc"),
    ],
    fee_rate: Annotated[float | None, typer.Option(help="Fee rate in sat/vB")] = None,
    fee_absolute: Annotated[
        str | None, typer.Option(help="Absolute fee with unit, e.g. 1000sat")
    ] = None,
    include: Annotated[
        list[str] | None, typer.Option(help="Outpoint <TXID>:<VOUT> that must be spent")
    ] = None,
    exclude: Annotated[
        list[str] | None, typer.Option(help="Outpoint <TXID>:<VOUT> that must not be spent")
    ] = None,
    include_only: Annotated[
        bool, typer.Option("--include-only", help="Spend only the included outpoints")
    ] = False,
    disable_rbf: Annotated[bool, typer.Option("--disable-rbf", help="Opt out of RBF")] = False,
    sign: Annotated[bool, typer.Option("--sign", help="Sign the transaction")] = False,
    broadcast: Annotated[
        bool, typer.Option("--broadcast", help="Broadcast the transaction (requires --sign)")
    ] = False,
    skip_confirmation: SkipConfirmationOption = False,
) -> None:
    """Create a transaction sending bitcoins."""
    with _errors():
        op = ops.SendBitcoins(
            recipients=tuple(parse_recipient(r) for r in recipient),
            fee_rate=fee_rate,
            fee_absolute=parse_amount(fee_absolute) if fee_absolute is not None else None,
            include=tuple(str(parse_outpoint(o)) for o in include or []),
            exclude=tuple(str(parse_outpoint(o)) for o in exclude or []),
            include_only=include_only,
            disable_rbf=disable_rbf,
            sign=sign,
            broadcast=broadcast,
            skip_confirmation=skip_confirmation,
        )
    _run(ctx, EntityKind.WALLET, op)


@wallet_app.command("sign-psbt")
def wallet_sign_psbt(
    ctx: typer.Context,
    psbt: PsbtArgument,
    broadcast: Annotated[bool, typer.Option("--broadcast", help="Broadcast once signed")] = False,
    skip_confirmation: SkipConfirmationOption = False,
) -> None:
    """Sign a PSBT with the wallet key-provider."""
    op = ops.SignPsbt(psbt=psbt, broadcast=broadcast, skip_confirmation=skip_confirmation)
    _run(ctx, EntityKind.WALLET, op)


@wallet_app.command("broadcast-psbt")
def wallet_broadcast_psbt(ctx: typer.Context, psbt: PsbtArgument) -> None:
    """Broadcast a signed PSBT through the online-wallet."""
    _run(ctx, EntityKind.WALLET, ops.BroadcastPsbt(psbt=psbt))


@ledger_policies_app.command("list")
def ledger_policies_list(ctx: typer.Context) -> None:
    """List the Ledger policies of the wallet descriptors."""
    _run(ctx, EntityKind.WALLET, ops.ListLedgerPolicies())


@ledger_policies_app.command("list-registered")
def ledger_policies_list_registered(ctx: typer.Context) -> None:
    """List the policies registered on the Ledger device."""
    _run(ctx, EntityKind.WALLET, ops.ListRegisteredLedgerPolicies())


@ledger_policies_app.command("register")
def ledger_policies_register(
    ctx: typer.Context,
    policies: Annotated[list[str], typer.Argument(help="Policies, as shown by 'list'")],
) -> None:
    """Register policies on the Ledger device."""
    _run(ctx, EntityKind.WALLET, ops.RegisterLedgerPolicies(policies=tuple(policies)))


@ledger_policies_app.command("auto-register")
def ledger_policies_auto_register(ctx: typer.Context) -> None:
    """Register every wallet policy the Ledger device does not know yet."""
    _run(ctx, EntityKind.WALLET, ops.AutoRegisterLedgerPolicies())


@account_xpubs_app.command("generate")
def account_xpubs_generate(
    ctx: typer.Context,
    start: Annotated[int, typer.Argument(help="First account index")] = 0,
    end: Annotated[int, typer.Argument(help="Last account index (excluded)")] = 20,
) -> None:
    """Derive account xpubs with the key-provider."""
    _run(ctx, EntityKind.WALLET, ops.GenerateAccountXpubs(start=start, end=end))


@account_xpubs_app.command("list-added")
def account_xpubs_list_added(
    ctx: typer.Context,
    used: Annotated[bool, typer.Option("--used", help="Only used ones")] = False,
    unused: Annotated[bool, typer.Option("--unused", help="Only unused ones")] = False,
) -> None:
    """List the account xpubs known by the online-wallet."""
    both = not used and not unused
    op = ops.ListAccountXpubs(used=used or both, unused=unused or both)
    _run(ctx, EntityKind.WALLET, op)


@account_xpubs_app.command("add")
def account_xpubs_add(
    ctx: typer.Context,
    account_xpubs: Annotated[list[str], typer.Argument(help="[fp/86'/0'/N']xpub...")],
) -> None:
    """Add account xpubs to the online-wallet."""
    _run(ctx, EntityKind.WALLET, ops.AddAccountXpubs(account_xpubs=tuple(account_xpubs)))


@account_xpubs_app.command("auto-add")
def account_xpubs_auto_add(
    ctx: typer.Context,
    count: Annotated[int, typer.Option(help="Number of unused account xpubs to keep")] = 20,
) -> None:
    """Derive and add account xpubs until enough unused ones are available."""
    _run(ctx, EntityKind.WALLET, ops.AutoAddAccountXpubs(count=count))


# heir-wallet


@heir_wallet_app.command("list")
def heir_wallet_list(ctx: typer.Context) -> None:
    """List the heir-wallets."""
    _list_names(ctx, EntityKind.HEIR_WALLET)


@heir_wallet_app.command("default-name")
def heir_wallet_default_name(ctx: typer.Context, set_: SetDefaultOption = None) -> None:
    """Show or set the default heir-wallet name."""
    _default_name(ctx, EntityKind.HEIR_WALLET, set_)


@heir_wallet_app.command("create")
def heir_wallet_create(
    ctx: typer.Context,
    heritage_provider: Annotated[
        str, typer.Option("--heritage-provider", "-p", help="none | service | local")
    ] = "service",
    key_provider: Annotated[
        str, typer.Option("--key-provider", "-k", help="none | local | ledger")
    ] = "local",
    fingerprint: Annotated[
        str | None, typer.Option(help="Heir fingerprint (wins over the key-provider one)")
    ] = None,
    seed: Annotated[str | None, typer.Option(help="Restore from this mnemonic")] = None,
    word_count: Annotated[int | None, typer.Option(help="Words of a new mnemonic")] = None,
    with_password: Annotated[
        bool, typer.Option("--with-password", help="Protect the local seed with a password")
    ] = False,
    backup_file: Annotated[
        Path | None, typer.Option(help="Owner descriptors backup, for a local heritage-provider")
    ] = None,
) -> None:
    """Create a new heir-wallet."""
    with _errors():
        op = ops.CreateHeirWallet(
            heritage_provider=heritage_provider,  # type: ignore[arg-type]
            key_provider=key_provider,  # type: ignore[arg-type]
            fingerprint=_fingerprint(fingerprint),
            seed=seed,
            word_count=word_count,
            with_password=with_password,
            backup=_read_backup(backup_file),
        )
    _run(ctx, EntityKind.HEIR_WALLET, op)


@heir_wallet_app.command("rename")
def heir_wallet_rename(ctx: typer.Context, new_name: NewNameArgument) -> None:
    """Rename the heir-wallet."""
    _run(ctx, EntityKind.HEIR_WALLET, ops.Rename(new_name=new_name, local_only=True))


@heir_wallet_app.command("remove")
def heir_wallet_remove(ctx: typer.Context, skip_confirmation: IUnderstandOption = False) -> None:
    """Remove the heir-wallet from the local database."""
    _run(ctx, EntityKind.HEIR_WALLET, ops.Remove(skip_confirmation=skip_confirmation))


@heir_wallet_app.command("fingerprint")
def heir_wallet_fingerprint(ctx: typer.Context) -> None:
    """Show the heir-wallet fingerprint."""
    _run(ctx, EntityKind.HEIR_WALLET, ops.ShowFingerprint())


@heir_wallet_app.command("mnemonic")
def heir_wallet_mnemonic(ctx: typer.Context, understood: IUnderstandOption = False) -> None:
    """Show the mnemonic of a local key-provider."""
    _show_mnemonic(ctx, EntityKind.HEIR_WALLET, understood)


@heir_wallet_app.command("heir-config")
def heir_wallet_heir_config(ctx: typer.Context, kind: HeirConfigKindOption = "xpub") -> None:
    """Derive the heir configuration to hand over to a wallet owner."""
    _check_heir_config_kind(kind)
    _run(ctx, EntityKind.HEIR_WALLET, ops.DeriveHeirConfig(kind=kind))  # type: ignore[arg-type]


@heir_wallet_app.command("sync")
def heir_wallet_sync(ctx: typer.Context) -> None:
    """Synchronize a local heritage-provider."""
    _run(ctx, EntityKind.HEIR_WALLET, ops.Sync())


@heir_wallet_app.command("list-inheritances")
def heir_wallet_list_inheritances(
    ctx: typer.Context,
    immatures: Annotated[bool, typer.Option("--immatures", help="Include immature ones")] = False,
    details: Annotated[
        bool, typer.Option("--details", help="One line per UTXO instead of per heritage")
    ] = False,
) -> None:
    """List the inheritances this heir can claim."""
    _run(ctx, EntityKind.HEIR_WALLET, ops.ListInheritances(immatures=immatures, details=details))


@heir_wallet_app.command("spend-inheritance")
def heir_wallet_spend_inheritance(
    ctx: typer.Context,
    heritage_id: Annotated[str, typer.Option("--id", help="Heritage id to spend")],
    drain_to: Annotated[str, typer.Option("--drain-to", help="Address receiving the funds")],
    sign: Annotated[bool, typer.Option("--sign", help="Sign the transaction")] = False,
    broadcast: Annotated[
        bool, typer.Option("--broadcast", help="Broadcast the transaction (requires --sign)")
    ] = False,
    skip_confirmation: SkipConfirmationOption = False,
) -> None:
    """Create a transaction claiming an inheritance."""
    op = ops.SpendInheritance(
        claim_id=heritage_id,
        recipient=drain_to,
        sign=sign,
        broadcast=broadcast,
        skip_confirmation=skip_confirmation,
    )
    _run(ctx, EntityKind.HEIR_WALLET, op)


@heir_wallet_app.command("sign-psbt")
def heir_wallet_sign_psbt(
    ctx: typer.Context,
    psbt: PsbtArgument,
    broadcast: Annotated[bool, typer.Option("--broadcast", help="Broadcast once signed")] = False,
    skip_confirmation: SkipConfirmationOption = False,
) -> None:
    """Sign a PSBT with the heir-wallet key-provider."""
    op = ops.SignPsbt(psbt=psbt, broadcast=broadcast, skip_confirmation=skip_confirmation)
    _run(ctx, EntityKind.HEIR_WALLET, op)


@heir_wallet_app.command("broadcast-psbt")
def heir_wallet_broadcast_psbt(ctx: typer.Context, psbt: PsbtArgument) -> None:
    """Broadcast a signed PSBT through the heritage-provider."""
    _run(ctx, EntityKind.HEIR_WALLET, ops.BroadcastPsbt(psbt=psbt))


# heir


def _parse_heir_config(text: str) -> HeirConfig:
    try:
        data = json.loads(text)
        kind = data["kind"]
        if kind not in ("xpub", "single-pub"):
            raise ValueError(f"unknown kind {kind!r}")
        return HeirConfig(
            kind=kind,
            fingerprint=normalize_fingerprint(data["fingerprint"]),
            value=str(data["value"]),
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise InputValidationError(f"Invalid heir config: {e}") from e


@heir_app.command("list")
def heir_list(ctx: typer.Context) -> None:
    """List the heirs."""
    _list_names(ctx, EntityKind.HEIR)


@heir_app.command("default-name")
def heir_default_name(ctx: typer.Context, set_: SetDefaultOption = None) -> None:
    """Show or set the default heir name."""
    _default_name(ctx, EntityKind.HEIR, set_)


@heir_app.command("create")
def heir_create(
    ctx: typer.Context,
    heir_config: Annotated[
        str, typer.Option("--heir-config", help="Heir configuration JSON, as shown by heir-config")
    ],
) -> None:
    """Declare a new heir."""
    options = _options(ctx)
    with _errors():
        db = options.database()
        name = options.entity_name(EntityKind.HEIR, db)
        Heir(name=name, heir_config=_parse_heir_config(heir_config)).create(db)
    display.show("Heir created")


@heir_app.command("rename")
def heir_rename(ctx: typer.Context, new_name: NewNameArgument) -> None:
    """Rename the heir."""
    _run(ctx, EntityKind.HEIR, ops.Rename(new_name=new_name, local_only=True))


@heir_app.command("remove")
def heir_remove(ctx: typer.Context, skip_confirmation: IUnderstandOption = False) -> None:
    """Remove the heir."""
    _run(ctx, EntityKind.HEIR, ops.Remove(skip_confirmation=skip_confirmation))


@heir_app.command("show")
def heir_show(ctx: typer.Context) -> None:
    """Show the heir configuration."""
    options = _options(ctx)
    with _errors():
        db = options.database()
        heir = Heir.load(db, options.entity_name(EntityKind.HEIR, db))
    display.show(heir.heir_config)


# service


def _print_device_code(device: DeviceAuthorization) -> None:
    typer.echo("Open the following URL in your browser to approve this device:")
    typer.echo(f"  {device.verification_uri_complete}")
    typer.echo(f"and check that the code shown is: {device.human_user_code}")


async def _login(options: GlobalOptions, db: Database) -> None:
    app_ctx = options.app_context(db)
    try:
        await app_ctx.service_client().login(_print_device_code)
    finally:
        await app_ctx.aclose()


async def _list_service_wallets(options: GlobalOptions, db: Database) -> list[dict[str, Any]]:
    app_ctx = options.app_context(db)
    try:
        return await app_ctx.service_client().list_wallets()
    finally:
        await app_ctx.aclose()


@service_app.command("login")
def service_login(ctx: typer.Context) -> None:
    """Connect to the Heritage service (device authorization flow)."""
    options = _options(ctx)
    with _errors():
        asyncio.run(_login(options, options.database()))
    display.show("Login successful")


@service_app.command("logout")
def service_logout(ctx: typer.Context) -> None:
    """Forget the Heritage service session."""
    with _errors():
        Tokens.clear(_options(ctx).database())
    display.show("Logged out")


@service_app.command("config")
def service_config(
    ctx: typer.Context,
    set_: Annotated[
        bool, typer.Option("--set", help="Store the current configuration as default")
    ] = False,
) -> None:
    """Show or store the Heritage service configuration."""
    options = _options(ctx)
    with _errors():
        db = options.database()
        config = options.service_config(db)
        if set_:
            store_service_config(db, config)
    display.show(config.model_dump(mode="json"))


@service_app.command("list-wallets")
def service_list_wallets(ctx: typer.Context) -> None:
    """List the wallets of the Heritage service account."""
    options = _options(ctx)
    with _errors():
        wallets = asyncio.run(_list_service_wallets(options, options.database()))
    display.show(wallets)


# Standalone commands


@app.command("blockchain-provider")
def blockchain_provider(
    ctx: typer.Context,
    set_: Annotated[
        bool, typer.Option("--set", help="Store the current provider as default")
    ] = False,
) -> None:
    """Show or store the blockchain provider configuration."""
    options = _options(ctx)
    with _errors():
        db = options.database()
        config = resolve_provider_config(options.provider_args, db, options.network)
        if set_:
            store_provider_config(db, config)
    display.show(config.model_dump(mode="json"))


@app.command("fingerprints")
def fingerprints(ctx: typer.Context) -> None:
    """Show which wallets, heirs and heir-wallets own each fingerprint."""
    options = _options(ctx)
    with _errors():
        index = asyncio.run(collect(options.database()))
    display.show(index)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
