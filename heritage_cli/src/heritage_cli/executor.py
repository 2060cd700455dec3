"""
Operation execution.

``run`` resolves the capabilities of an operation, loads the target entity,
bootstraps just the backends it needs and dispatches to the operation handler.
Handlers return plain structured values for the display layer.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from pathlib import Path
from typing import Any

from loguru import logger

from heritage_cli import capabilities
from heritage_cli import operations as ops
from heritage_cli import tx_request
from heritage_cli.addresses import require_network
from heritage_cli.backends import HardwareKey, LocalKey, SecretPrompt
from heritage_cli.bootstrap import (
    AppContext,
    auto_add_account_xpubs,
    bootstrap,
    create_heir_wallet,
    create_wallet,
)
from heritage_cli.entities import ENTITY_TYPES, Entity, Heir, HeirWallet, Wallet
from heritage_cli.errors import (
    CapabilityMismatchError,
    IncorrectKeyProvider,
    InputValidationError,
    UserCancelledError,
)
from heritage_cli.fingerprints import collect
from heritage_cli.inheritance import aggregate
from heritage_cli.models import AccountXPub, EntityKind, LedgerPolicy, TransactionRequest
from heritage_cli.spendflow import check_flags, sign_and_broadcast

Handler = Callable[[Any, Any, AppContext, SecretPrompt], Awaitable[Any]]

ENTITY_LABELS = {
    EntityKind.WALLET: ("Wallet", "wallet"),
    EntityKind.HEIR_WALLET: ("Heir wallet", "heir-wallet"),
    EntityKind.HEIR: ("Heir", "heir"),
}


def _wallet(entity: Entity) -> Wallet:
    if not isinstance(entity, Wallet):
        raise CapabilityMismatchError(f"{entity.kind.value} {entity.name} is not a wallet")
    return entity


def _heir_wallet(entity: Entity) -> HeirWallet:
    if not isinstance(entity, HeirWallet):
        raise CapabilityMismatchError(f"{entity.kind.value} {entity.name} is not an heir-wallet")
    return entity


def _with_keys(entity: Entity) -> Wallet | HeirWallet:
    if isinstance(entity, Heir):
        raise CapabilityMismatchError("An heir has no key-provider")
    return entity


def _ledger(entity: Entity) -> HardwareKey:
    key_backend = _with_keys(entity).key_backend
    if not isinstance(key_backend, HardwareKey):
        raise IncorrectKeyProvider("ledger")
    return key_backend


def _ask_all(ctx: AppContext, questions: list[str], cancel_message: str) -> None:
    for question in questions:
        if not ctx.confirm(question):
            raise UserCancelledError(cancel_message)


# Shared by every entity kind


async def rename(op: ops.Rename, entity: Entity, ctx: AppContext, _: SecretPrompt) -> str:
    ctx.db.verify_name_is_free(entity.kind, op.new_name)
    if isinstance(entity, Wallet) and not op.local_only:
        await entity.observer.rename(op.new_name)
    ctx.db.rename(entity.kind, entity.name, op.new_name)
    return f"{ENTITY_LABELS[entity.kind][0]} renamed"


async def remove(op: ops.Remove, entity: Entity, ctx: AppContext, _: SecretPrompt) -> str:
    title, label = ENTITY_LABELS[entity.kind]
    if not op.skip_confirmation:
        questions = []
        if isinstance(entity, Wallet):
            has_seed = isinstance(entity.key_backend, LocalKey)
            has_descriptors = not entity.observer.is_none()
            if has_seed:
                questions.append("Did you backup the mnemonic of this wallet?")
            if has_descriptors:
                questions.append("Did you backup the descriptors of this wallet?")
            if has_seed and has_descriptors:
                questions.append(
                    "You need BOTH the mnemonic and the descriptors backup to restore "
                    "this wallet. Do you have both?"
                )
        elif isinstance(entity, HeirWallet) and not entity.key_backend.is_none():
            questions.append("Did you backup the mnemonic of this heir-wallet?")
        questions.append(f"FINAL CONFIRMATION. Do you really want to delete {label} {entity.name}?")
        _ask_all(ctx, questions, f"Delete {label} cancelled")

    entity.delete(ctx.db)
    return f"{title} deleted"


async def show_fingerprint(
    op: ops.ShowFingerprint, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> str:
    return entity.fingerprint()


async def show_mnemonic(
    op: ops.ShowMnemonic, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> dict[str, Any]:
    return await _with_keys(entity).key_backend.backup_mnemonic()


async def derive_heir_config(
    op: ops.DeriveHeirConfig, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> dict[str, Any]:
    return asdict(await _with_keys(entity).key_backend.derive_heir_config(op.kind))


async def sync(op: ops.Sync, entity: Entity, ctx: AppContext, _: SecretPrompt) -> str:
    if isinstance(entity, Wallet):
        await entity.observer.sync()
    else:
        await _heir_wallet(entity).heritage_provider.sync()
    return "Synchronization done"


def _broadcaster(entity: Wallet | HeirWallet) -> Callable[[str], Awaitable[str]]:
    if isinstance(entity, Wallet):
        return entity.observer.broadcast
    return entity.heritage_provider.broadcast


async def sign_psbt(
    op: ops.SignPsbt, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> dict[str, Any]:
    target = _with_keys(entity)
    result = await sign_and_broadcast(
        op.psbt,
        None,
        target.key_backend,
        _broadcaster(target),
        sign=True,
        broadcast=op.broadcast,
        skip_confirmation=op.skip_confirmation,
        confirm=ctx.confirm,
        show=ctx.show,
    )
    return result.to_dict()


async def broadcast_psbt(
    op: ops.BroadcastPsbt, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> str:
    return await _broadcaster(_with_keys(entity))(op.psbt)


# Wallet only


async def backup_descriptors(
    op: ops.BackupDescriptors, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> Any:
    backup = await _wallet(entity).observer.backup_descriptors()
    if op.file is None:
        return backup
    path = Path(op.file)
    try:
        with open(path, "w" if op.overwrite else "x", encoding="utf-8") as f:
            json.dump(backup, f, indent=2)
    except FileExistsError as e:
        raise InputValidationError(f"{path} already exists (use --overwrite)") from e
    logger.info(f"Descriptors backup written to {path}")
    return "Backup created"


async def new_address(op: ops.NewAddress, entity: Entity, ctx: AppContext, _: SecretPrompt) -> str:
    return await _wallet(entity).observer.get_address()


async def list_addresses(
    op: ops.ListAddresses, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> list[dict[str, Any]]:
    return await _wallet(entity).observer.list_addresses()


async def list_transactions(
    op: ops.ListTransactions, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> list[dict[str, Any]]:
    return await _wallet(entity).observer.list_transactions()


async def list_utxos(
    op: ops.ListUtxos, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> list[dict[str, Any]]:
    return [asdict(u) for u in await _wallet(entity).observer.list_utxos()]


async def balance(op: ops.Balance, entity: Entity, ctx: AppContext, _: SecretPrompt) -> dict:
    return asdict(await _wallet(entity).observer.get_wallet_status())


async def block_inclusion_objective(
    op: ops.BlockInclusionObjective, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> int:
    observer = _wallet(entity).observer
    if op.set_value is not None:
        status = await observer.set_block_inclusion_objective(op.set_value)
    else:
        status = await observer.get_wallet_status()
    return status.block_inclusion_objective


def _transaction_request(op: ops.SendBitcoins, ctx: AppContext) -> TransactionRequest:
    return tx_request.build(
        op.recipients,
        fee_rate=op.fee_rate,
        fee_absolute=op.fee_absolute,
        include=op.include,
        exclude=op.exclude,
        include_only=op.include_only,
        disable_rbf=op.disable_rbf,
        network=ctx.network,
    )


async def send_bitcoins(
    op: ops.SendBitcoins, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> dict[str, Any]:
    wallet = _wallet(entity)
    psbt, summary = await wallet.observer.create_psbt(_transaction_request(op, ctx))
    result = await sign_and_broadcast(
        psbt,
        summary,
        wallet.key_backend,
        wallet.observer.broadcast,
        sign=op.sign,
        broadcast=op.broadcast,
        skip_confirmation=op.skip_confirmation,
        confirm=ctx.confirm,
        show=ctx.show,
        fingerprint_index=await collect(ctx.db),
    )
    return result.to_dict()


async def list_ledger_policies(
    op: ops.ListLedgerPolicies, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> list[dict[str, Any]]:
    policies = []
    for i, backup in enumerate(await _wallet(entity).observer.backup_descriptors()):
        try:
            policies.append(asdict(LedgerPolicy.from_descriptor_backup(backup)))
        except (KeyError, ValueError) as e:
            logger.warning(f"Cannot convert Descriptor Backup #{i} into a LedgerPolicy: {e}")
    return policies


async def list_registered_ledger_policies(
    op: ops.ListRegisteredLedgerPolicies, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> list[dict[str, Any]]:
    return _ledger(entity).list_registered_policies()


def _parse_policy(text: str) -> LedgerPolicy:
    try:
        data = json.loads(text)
        return LedgerPolicy(
            account_id=int(data["account_id"]),
            name=data["name"],
            descriptor_template=data["descriptor_template"],
            keys=list(data["keys"]),
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise InputValidationError(f"Invalid ledger policy {text!r}: {e}") from e


def _on_register(policy: LedgerPolicy) -> None:
    logger.info(f"Registering {policy.name}: please approve on your Ledger device")


async def register_ledger_policies(
    op: ops.RegisterLedgerPolicies, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> str:
    policies = [_parse_policy(p) for p in op.policies]
    ledger = _ledger(entity)
    count = await ledger.register_policies(policies, _on_register)
    entity.save(ctx.db)
    return f"{count} policies registered"


async def auto_register_ledger_policies(
    op: ops.AutoRegisterLedgerPolicies, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> str:
    wallet = _wallet(entity)
    ledger = _ledger(wallet)
    registered = ledger.registered_account_ids()
    policies = []
    for i, backup in enumerate(await wallet.observer.backup_descriptors()):
        try:
            policy = LedgerPolicy.from_descriptor_backup(backup)
        except (KeyError, ValueError):
            logger.warning(f"Cannot convert Descriptor Backup #{i} into a LedgerPolicy")
            continue
        if policy.account_id not in registered:
            policies.append(policy)
    count = await ledger.register_policies(policies, _on_register)
    wallet.save(ctx.db)
    return f"{count} new policies registered"


async def generate_account_xpubs(
    op: ops.GenerateAccountXpubs, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> list[str]:
    xpubs = await _wallet(entity).key_backend.derive_account_xpubs(op.start, op.end)
    return [x.value for x in xpubs]


async def list_account_xpubs(
    op: ops.ListAccountXpubs, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> list[dict[str, Any]]:
    entries = await _wallet(entity).observer.list_account_xpubs()
    return [
        {"account_xpub": e.xpub.value, "used": e.used}
        for e in entries
        if (e.used and op.used) or (not e.used and op.unused)
    ]


def _parse_account_xpubs(values: tuple[str, ...]) -> list[AccountXPub]:
    try:
        xpubs = [AccountXPub.parse(x) for x in values]
    except ValueError as e:
        raise InputValidationError(str(e)) from e
    if not xpubs:
        raise InputValidationError("At least one account xpub is required")
    return xpubs


async def add_account_xpubs(
    op: ops.AddAccountXpubs, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> str:
    xpubs = _parse_account_xpubs(op.account_xpubs)
    await _wallet(entity).observer.feed_account_xpubs(xpubs)
    return f"{len(xpubs)} account xpubs added"


async def auto_add_account_xpubs_handler(
    op: ops.AutoAddAccountXpubs, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> str:
    wallet = _wallet(entity)
    count = await auto_add_account_xpubs(wallet.key_backend, wallet.observer, op.count)
    return f"{count} account xpubs added"


# Heir-wallet only


async def list_inheritances(
    op: ops.ListInheritances, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> list[dict[str, Any]]:
    records = await _heir_wallet(entity).heritage_provider.list_heritages()
    if op.details:
        logger.warning("Details mode: the same heritage id may appear on several lines")
    rows = aggregate(records, include_immature=op.immatures, details=op.details)
    return [asdict(row) for row in rows]


async def spend_inheritance(
    op: ops.SpendInheritance, entity: Entity, ctx: AppContext, _: SecretPrompt
) -> dict[str, Any]:
    heir_wallet = _heir_wallet(entity)
    provider = heir_wallet.heritage_provider
    psbt, summary = await provider.create_psbt(op.claim_id, op.recipient)
    result = await sign_and_broadcast(
        psbt,
        summary,
        heir_wallet.key_backend,
        provider.broadcast,
        sign=op.sign,
        broadcast=op.broadcast,
        skip_confirmation=op.skip_confirmation,
        confirm=ctx.confirm,
        show=ctx.show,
        fingerprint_index=await collect(ctx.db),
    )
    return result.to_dict()


HANDLERS: dict[type[ops.Operation], Handler] = {
    ops.Rename: rename,
    ops.Remove: remove,
    ops.ShowFingerprint: show_fingerprint,
    ops.ShowMnemonic: show_mnemonic,
    ops.DeriveHeirConfig: derive_heir_config,
    ops.Sync: sync,
    ops.SignPsbt: sign_psbt,
    ops.BroadcastPsbt: broadcast_psbt,
    ops.BackupDescriptors: backup_descriptors,
    ops.NewAddress: new_address,
    ops.ListAddresses: list_addresses,
    ops.ListTransactions: list_transactions,
    ops.ListUtxos: list_utxos,
    ops.Balance: balance,
    ops.BlockInclusionObjective: block_inclusion_objective,
    ops.SendBitcoins: send_bitcoins,
    ops.ListLedgerPolicies: list_ledger_policies,
    ops.ListRegisteredLedgerPolicies: list_registered_ledger_policies,
    ops.RegisterLedgerPolicies: register_ledger_policies,
    ops.AutoRegisterLedgerPolicies: auto_register_ledger_policies,
    ops.GenerateAccountXpubs: generate_account_xpubs,
    ops.ListAccountXpubs: list_account_xpubs,
    ops.AddAccountXpubs: add_account_xpubs,
    ops.AutoAddAccountXpubs: auto_add_account_xpubs_handler,
    ops.ListInheritances: list_inheritances,
    ops.SpendInheritance: spend_inheritance,
}

CREATION_OPERATIONS = {ops.CreateWallet, ops.CreateHeirWallet}


def check_handlers_are_exhaustive() -> None:
    missing = ops.all_operation_types() - set(HANDLERS) - CREATION_OPERATIONS
    if missing:
        names = ", ".join(sorted(cls.__name__ for cls in missing))
        raise RuntimeError(f"No handler for operation(s): {names}")


check_handlers_are_exhaustive()


def validate(op: ops.Operation, ctx: AppContext) -> None:
    """Input checks that must fail before any backend is touched."""
    if isinstance(op, ops.SendBitcoins):
        check_flags(op.sign, op.broadcast)
        _transaction_request(op, ctx)
    elif isinstance(op, ops.SpendInheritance):
        check_flags(op.sign, op.broadcast)
        require_network(op.recipient, ctx.network)
    elif isinstance(op, ops.GenerateAccountXpubs):
        if op.start < 0 or op.end <= op.start:
            raise InputValidationError("Account range must satisfy 0 <= start < end")
    elif isinstance(op, ops.AddAccountXpubs):
        _parse_account_xpubs(op.account_xpubs)
    elif isinstance(op, ops.RegisterLedgerPolicies):
        for policy in op.policies:
            _parse_policy(policy)
    elif isinstance(op, ops.BlockInclusionObjective):
        if op.set_value is not None and op.set_value < 1:
            raise InputValidationError("Block inclusion objective must be at least 1")
    elif isinstance(op, ops.AutoAddAccountXpubs):
        if op.count < 0:
            raise InputValidationError("--count cannot be negative")


async def run(
    op: ops.Operation,
    kind: EntityKind,
    name: str,
    ctx: AppContext,
    prompt_secret: SecretPrompt,
) -> Any:
    """
    Execute one operation against the named entity.

    Raises:
        HeritageCliError: Any error of the taxonomy. UserCancelledError means
            the user declined and nothing was changed.
    """
    validate(op, ctx)
    requirement = capabilities.resolve(op)
    logger.debug(f"{type(op).__name__} on {kind.value} {name}: {requirement}")

    if isinstance(op, ops.CreateWallet):
        await create_wallet(name, op, prompt_secret, ctx)
        return "Wallet created"
    if isinstance(op, ops.CreateHeirWallet):
        await create_heir_wallet(name, op, prompt_secret, ctx)
        return "Heir wallet created"

    entity = ENTITY_TYPES[kind].load(ctx.db, name)
    await bootstrap(requirement, entity, prompt_secret, ctx)
    return await HANDLERS[type(op)](op, entity, ctx, prompt_secret)
