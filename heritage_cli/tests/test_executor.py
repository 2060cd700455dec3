"""
Tests for operation execution.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from heritage_cli import operations as ops
from heritage_cli.backends import (
    HardwareKey,
    LocalKey,
    LocalObserver,
    NoKey,
    NoObserver,
    ServiceObserver,
)
from heritage_cli.backends.local import LocalHeritageProvider, state_key
from heritage_cli.bootstrap import AppContext
from heritage_cli.entities import Heir, HeirWallet, Wallet
from heritage_cli.errors import (
    CapabilityMismatchError,
    EntityNotFoundError,
    IncorrectKeyProvider,
    InputValidationError,
    NameConflictError,
    UserCancelledError,
)
from heritage_cli.executor import run
from heritage_cli.models import EntityKind, HeirConfig, InheritanceRecord, Network

TESTNET_ADDRESS = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"

BACKUP = [
    {
        "external_descriptor": "tr([73c5da0a/86'/1'/0']tpubA/0/*)",
        "change_descriptor": "tr([73c5da0a/86'/1'/0']tpubA/1/*)",
    }
]


def local_wallet(db, mnemonic: str, name: str = "main") -> Wallet:
    key = LocalKey.restore(mnemonic, None, Network.TESTNET)
    observer = LocalObserver.create(db, BACKUP, fingerprint=key.fingerprint())
    wallet = Wallet(name, LocalKey.from_dict(key.to_dict()), observer)
    wallet.create(db)
    return wallet


def heir(db, name: str = "bob") -> Heir:
    entity = Heir(name, HeirConfig("xpub", "aaaa0000", "[aaaa0000/86'/1'/0']tpub"))
    entity.create(db)
    return entity


class TestRemove:
    """Tests for removing entities."""

    @pytest.mark.asyncio
    async def test_wallet_full_confirmation_sequence(self, db, make_ctx, no_prompt, test_mnemonic):
        wallet = local_wallet(db, test_mnemonic)
        ctx = make_ctx([True, True, True, True])
        result = await run(ops.Remove(), EntityKind.WALLET, "main", ctx, no_prompt)
        assert result == "Wallet deleted"
        assert ctx.questions == [
            "Did you backup the mnemonic of this wallet?",
            "Did you backup the descriptors of this wallet?",
            "You need BOTH the mnemonic and the descriptors backup to restore "
            "this wallet. Do you have both?",
            "FINAL CONFIRMATION. Do you really want to delete wallet main?",
        ]
        assert db.list_names(EntityKind.WALLET) == []
        assert db.get_item(state_key(wallet.observer.wallet_id)) is None

    @pytest.mark.asyncio
    async def test_wallet_declined_at_first_question(self, db, make_ctx, no_prompt, test_mnemonic):
        local_wallet(db, test_mnemonic)
        ctx = make_ctx([False])
        with pytest.raises(UserCancelledError, match="Delete wallet cancelled"):
            await run(ops.Remove(), EntityKind.WALLET, "main", ctx, no_prompt)
        assert len(ctx.questions) == 1
        assert db.list_names(EntityKind.WALLET) == ["main"]

    @pytest.mark.asyncio
    async def test_wallet_declined_at_final_question(self, db, make_ctx, no_prompt, test_mnemonic):
        local_wallet(db, test_mnemonic)
        ctx = make_ctx([True, True, True, False])
        with pytest.raises(UserCancelledError):
            await run(ops.Remove(), EntityKind.WALLET, "main", ctx, no_prompt)
        assert db.list_names(EntityKind.WALLET) == ["main"]

    @pytest.mark.asyncio
    async def test_ledger_wallet_without_observer(self, db, make_ctx, no_prompt):
        Wallet("hw", HardwareKey("aaaa0000", Network.TESTNET), NoObserver()).create(db)
        ctx = make_ctx([True])
        await run(ops.Remove(), EntityKind.WALLET, "hw", ctx, no_prompt)
        assert ctx.questions == ["FINAL CONFIRMATION. Do you really want to delete wallet hw?"]

    @pytest.mark.asyncio
    async def test_heir_wallet_with_seed(self, db, make_ctx, no_prompt, test_mnemonic):
        key = LocalKey.restore(test_mnemonic, None, Network.TESTNET)
        HeirWallet("mine", "73c5da0a", key).create(db)
        ctx = make_ctx([True, True])
        result = await run(ops.Remove(), EntityKind.HEIR_WALLET, "mine", ctx, no_prompt)
        assert result == "Heir wallet deleted"
        assert ctx.questions[0] == "Did you backup the mnemonic of this heir-wallet?"

    @pytest.mark.asyncio
    async def test_skip_confirmation(self, db, make_ctx, no_prompt):
        heir(db)
        ctx = make_ctx()
        result = await run(
            ops.Remove(skip_confirmation=True), EntityKind.HEIR, "bob", ctx, no_prompt
        )
        assert result == "Heir deleted"
        assert ctx.questions == []

    @pytest.mark.asyncio
    async def test_unknown(self, make_ctx, no_prompt):
        with pytest.raises(EntityNotFoundError):
            await run(ops.Remove(), EntityKind.HEIR, "nobody", make_ctx(), no_prompt)


class TestRename:
    """Tests for renaming entities."""

    @pytest.mark.asyncio
    async def test_rename_heir(self, db, make_ctx, no_prompt):
        heir(db)
        result = await run(ops.Rename("carol"), EntityKind.HEIR, "bob", make_ctx(), no_prompt)
        assert result == "Heir renamed"
        assert db.list_names(EntityKind.HEIR) == ["carol"]

    @pytest.mark.asyncio
    async def test_rename_to_taken_name(self, db, make_ctx, no_prompt):
        heir(db, "bob")
        heir(db, "carol")
        with pytest.raises(NameConflictError):
            await run(ops.Rename("carol"), EntityKind.HEIR, "bob", make_ctx(), no_prompt)

    @pytest.mark.asyncio
    async def test_local_only_skips_service(self, db, make_ctx, no_prompt):
        Wallet("w", NoKey(), ServiceObserver("w1", "aaaa0000")).create(db)
        with patch.object(ServiceObserver, "rename", AsyncMock()) as remote:
            op = ops.Rename("x", local_only=True)
            await run(op, EntityKind.WALLET, "w", make_ctx(), no_prompt)
        remote.assert_not_called()
        assert db.list_names(EntityKind.WALLET) == ["x"]

    @pytest.mark.asyncio
    async def test_rename_follows_service(self, db, make_ctx, no_prompt):
        Wallet("w", NoKey(), ServiceObserver("w1", "aaaa0000")).create(db)
        with patch.object(ServiceObserver, "rename", AsyncMock()) as remote:
            await run(ops.Rename("x"), EntityKind.WALLET, "w", make_ctx(), no_prompt)
        remote.assert_awaited_once_with("x")


class TestWalletOperations:
    """Tests for wallet operations on a local wallet."""

    @pytest.mark.asyncio
    async def test_fingerprint_never_prompts(self, db, make_ctx, no_prompt, test_mnemonic):
        local_wallet(db, test_mnemonic)
        result = await run(ops.ShowFingerprint(), EntityKind.WALLET, "main", make_ctx(), no_prompt)
        assert result == "73c5da0a"

    @pytest.mark.asyncio
    async def test_mnemonic(self, db, make_ctx, no_prompt, test_mnemonic):
        local_wallet(db, test_mnemonic)
        result = await run(ops.ShowMnemonic(), EntityKind.WALLET, "main", make_ctx(), no_prompt)
        assert " ".join(result["mnemonic"]) == test_mnemonic

    @pytest.mark.asyncio
    async def test_backup_to_file(self, db, make_ctx, no_prompt, test_mnemonic, tmp_path):
        local_wallet(db, test_mnemonic)
        path = tmp_path / "backup.json"
        op = ops.BackupDescriptors(file=path)
        assert await run(op, EntityKind.WALLET, "main", make_ctx(), no_prompt) == "Backup created"
        assert json.loads(path.read_text()) == BACKUP

        with pytest.raises(InputValidationError, match="already exists"):
            await run(op, EntityKind.WALLET, "main", make_ctx(), no_prompt)

        overwrite = ops.BackupDescriptors(file=path, overwrite=True)
        assert await run(overwrite, EntityKind.WALLET, "main", make_ctx(), no_prompt)

    @pytest.mark.asyncio
    async def test_backup_to_stdout(self, db, make_ctx, no_prompt, test_mnemonic):
        local_wallet(db, test_mnemonic)
        op = ops.BackupDescriptors()
        result = await run(op, EntityKind.WALLET, "main", make_ctx(), no_prompt)
        assert result == BACKUP

    @pytest.mark.asyncio
    async def test_block_inclusion_objective(self, db, make_ctx, no_prompt, test_mnemonic):
        local_wallet(db, test_mnemonic)
        op = ops.BlockInclusionObjective(set_value=3)
        assert await run(op, EntityKind.WALLET, "main", make_ctx(), no_prompt) == 3
        op = ops.BlockInclusionObjective()
        assert await run(op, EntityKind.WALLET, "main", make_ctx(), no_prompt) == 3

    @pytest.mark.asyncio
    async def test_sync(self, db, make_ctx, no_prompt, test_mnemonic, raw_provider):
        local_wallet(db, test_mnemonic)
        with patch.object(
            AppContext, "raw_chain_provider", AsyncMock(return_value=raw_provider)
        ):
            result = await run(ops.Sync(), EntityKind.WALLET, "main", make_ctx(), no_prompt)
        assert result == "Synchronization done"
        balance = await run(ops.Balance(), EntityKind.WALLET, "main", make_ctx(), no_prompt)
        assert balance["balance"] == 10000

    @pytest.mark.asyncio
    async def test_send_sign_and_broadcast(
        self, db, make_ctx, no_prompt, test_mnemonic, engine, raw_provider
    ):
        local_wallet(db, test_mnemonic)
        op = ops.SendBitcoins(
            recipients=((TESTNET_ADDRESS, 1000),),
            fee_rate=2.0,
            sign=True,
            broadcast=True,
            skip_confirmation=True,
        )
        with patch.object(
            AppContext, "raw_chain_provider", AsyncMock(return_value=raw_provider)
        ):
            result = await run(op, EntityKind.WALLET, "main", make_ctx(engine=engine), no_prompt)
        assert engine.signed == ["psbt-unsigned"]
        assert raw_provider.broadcasted == ["hex(psbt-unsigned-signed)"]
        assert result["txid"] == "txid-1"

    @pytest.mark.asyncio
    async def test_send_unsigned_does_not_connect(
        self, db, make_ctx, no_prompt, test_mnemonic, engine
    ):
        local_wallet(db, test_mnemonic)
        op = ops.SendBitcoins(recipients=((TESTNET_ADDRESS, 1000),))
        with patch.object(AppContext, "raw_chain_provider", AsyncMock()) as raw:
            result = await run(op, EntityKind.WALLET, "main", make_ctx(engine=engine), no_prompt)
        raw.assert_not_called()
        assert result["psbt"] == "psbt-unsigned"
        assert engine.signed == []

    @pytest.mark.asyncio
    async def test_invalid_send_fails_before_loading(self, make_ctx, no_prompt):
        op = ops.SendBitcoins(recipients=((TESTNET_ADDRESS, 1000),), broadcast=True)
        with pytest.raises(InputValidationError):
            await run(op, EntityKind.WALLET, "does-not-exist", make_ctx(), no_prompt)

    @pytest.mark.asyncio
    async def test_wrong_network_recipient(self, make_ctx, no_prompt):
        op = ops.SendBitcoins(
            recipients=(("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", 1000),)
        )
        with pytest.raises(InputValidationError):
            await run(op, EntityKind.WALLET, "does-not-exist", make_ctx(), no_prompt)

    @pytest.mark.asyncio
    async def test_account_xpubs(self, db, make_ctx, no_prompt, test_mnemonic):
        local_wallet(db, test_mnemonic)
        op = ops.AutoAddAccountXpubs(count=3)
        ctx = make_ctx()
        assert await run(op, EntityKind.WALLET, "main", ctx, no_prompt) == "3 account xpubs added"
        listed = await run(
            ops.ListAccountXpubs(used=False), EntityKind.WALLET, "main", ctx, no_prompt
        )
        assert len(listed) == 3
        assert not any(entry["used"] for entry in listed)

    @pytest.mark.asyncio
    async def test_invalid_account_range(self, make_ctx, no_prompt):
        op = ops.GenerateAccountXpubs(start=5, end=5)
        with pytest.raises(InputValidationError):
            await run(op, EntityKind.WALLET, "main", make_ctx(), no_prompt)

    @pytest.mark.asyncio
    async def test_ledger_only_operation(self, db, make_ctx, no_prompt, test_mnemonic):
        local_wallet(db, test_mnemonic)
        op = ops.ListRegisteredLedgerPolicies()
        with pytest.raises(IncorrectKeyProvider):
            await run(op, EntityKind.WALLET, "main", make_ctx(), no_prompt)

    @pytest.mark.asyncio
    async def test_mnemonic_of_heir(self, db, make_ctx, no_prompt):
        heir(db)
        with pytest.raises(CapabilityMismatchError):
            await run(ops.ShowMnemonic(), EntityKind.HEIR, "bob", make_ctx(), no_prompt)


class TestHeirWalletOperations:
    """Tests for heir-wallet operations."""

    @pytest.fixture
    def heir_wallet(self, db, test_mnemonic) -> HeirWallet:
        key = LocalKey.restore(test_mnemonic, None, Network.TESTNET)
        provider = LocalHeritageProvider.create(db, key.fingerprint(), None)
        entity = HeirWallet("mine", key.fingerprint(), LocalKey.from_dict(key.to_dict()), provider)
        entity.create(db)
        return entity

    @pytest.mark.asyncio
    async def test_list_inheritances(self, heir_wallet, make_ctx, no_prompt, engine):
        engine.heritages = [
            InheritanceRecord("H1", 1000, 1, None),
            InheritanceRecord("H1", 500, 2, None),
            InheritanceRecord("H2", 700, 9_999_999_999, None),
        ]
        op = ops.ListInheritances()
        rows = await run(op, EntityKind.HEIR_WALLET, "mine", make_ctx(engine=engine), no_prompt)
        assert [(r["claim_id"], r["total_value"]) for r in rows] == [("H1", 1500)]

    @pytest.mark.asyncio
    async def test_spend_inheritance(self, heir_wallet, make_ctx, no_prompt, engine):
        op = ops.SpendInheritance(claim_id="H1", recipient=TESTNET_ADDRESS, sign=True)
        ctx = make_ctx([True], engine=engine)
        result = await run(op, EntityKind.HEIR_WALLET, "mine", ctx, no_prompt)
        assert result["psbt"] == f"claim-H1-{TESTNET_ADDRESS}-signed"
        assert ctx.questions == ["Do you want to sign this transaction?"]

    @pytest.mark.asyncio
    async def test_spend_inheritance_wrong_network(self, heir_wallet, make_ctx, no_prompt):
        op = ops.SpendInheritance(
            claim_id="H1", recipient="bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
        )
        with pytest.raises(InputValidationError):
            await run(op, EntityKind.HEIR_WALLET, "mine", make_ctx(), no_prompt)

    @pytest.mark.asyncio
    async def test_wallet_operation_on_heir_wallet(self, heir_wallet, make_ctx, no_prompt):
        with pytest.raises(CapabilityMismatchError):
            await run(ops.NewAddress(), EntityKind.HEIR_WALLET, "mine", make_ctx(), no_prompt)
