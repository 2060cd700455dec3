"""
Tests for the command line interface.
"""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from heritage_cli.cli import app

HEIR_CONFIG = json.dumps(
    {"kind": "xpub", "fingerprint": "AAAA0000", "value": "[aaaa0000/86'/1'/0']tpubHeir"}
)


@pytest.fixture
def cli(datadir, monkeypatch):
    """Invoke the CLI on a throw-away testnet database."""
    monkeypatch.delenv("HERITAGE_PSBT_ENGINE", raising=False)
    runner = CliRunner()

    def invoke(*args: str, input: str | None = None):
        return runner.invoke(
            app, ["--network", "testnet", "--datadir", str(datadir), *args], input=input
        )

    return invoke


@pytest.fixture
def local_wallet(cli, test_mnemonic):
    result = cli(
        "wallet",
        "--name",
        "main",
        "create",
        "--online-wallet",
        "none",
        "--key-provider",
        "local",
        "--seed",
        test_mnemonic,
        "--no-password",
    )
    assert result.exit_code == 0, result.output
    assert "Wallet created" in result.output
    return "main"


class TestHeirCommands:
    """Tests for the heir group."""

    def test_create_and_show(self, cli):
        result = cli("heir", "--name", "bob", "create", "--heir-config", HEIR_CONFIG)
        assert result.exit_code == 0, result.output
        assert "Heir created" in result.output

        result = cli("heir", "--name", "bob", "show")
        assert result.exit_code == 0
        assert '"fingerprint": "aaaa0000"' in result.output

        result = cli("heir", "list")
        assert json.loads(result.output) == ["bob"]

    def test_invalid_config(self, cli):
        result = cli("heir", "--name", "bob", "create", "--heir-config", '{"kind": "xpub"}')
        assert result.exit_code == 1

    def test_duplicate(self, cli):
        cli("heir", "--name", "bob", "create", "--heir-config", HEIR_CONFIG)
        result = cli("heir", "--name", "bob", "create", "--heir-config", HEIR_CONFIG)
        assert result.exit_code == 1

    def test_default_name_must_exist(self, cli):
        result = cli("heir", "default-name", "--set", "nobody")
        assert result.exit_code == 1

    def test_default_name(self, cli):
        cli("heir", "--name", "bob", "create", "--heir-config", HEIR_CONFIG)
        result = cli("heir", "default-name", "--set", "bob")
        assert result.exit_code == 0
        result = cli("heir", "show")
        assert result.exit_code == 0
        assert "tpubHeir" in result.output

    def test_remove_without_confirmation(self, cli):
        cli("heir", "--name", "bob", "create", "--heir-config", HEIR_CONFIG)
        result = cli("heir", "--name", "bob", "remove", "--i-understand-what-i-am-doing")
        assert result.exit_code == 0
        assert "Heir deleted" in result.output


class TestWalletCommands:
    """Tests for the wallet group."""

    def test_fingerprint(self, cli, local_wallet):
        result = cli("wallet", "--name", local_wallet, "fingerprint")
        assert result.exit_code == 0
        assert "73c5da0a" in result.output

    def test_list(self, cli, local_wallet):
        result = cli("wallet", "list")
        assert json.loads(result.output) == ["main"]

    def test_mnemonic_needs_acknowledgement(self, cli, local_wallet):
        result = cli("wallet", "--name", local_wallet, "mnemonic")
        assert result.exit_code == 1
        assert "abandon" not in result.output

    def test_mnemonic(self, cli, local_wallet):
        result = cli(
            "wallet", "--name", local_wallet, "mnemonic", "--i-understand-what-i-am-doing"
        )
        assert result.exit_code == 0
        assert "abandon" in result.output

    def test_remove_declined(self, cli, local_wallet):
        result = cli("wallet", "--name", local_wallet, "remove", input="no\n")
        assert result.exit_code == 0
        assert "Delete wallet cancelled" in result.output
        assert json.loads(cli("wallet", "list").output) == ["main"]

    def test_remove_confirmed(self, cli, local_wallet):
        result = cli("wallet", "--name", local_wallet, "remove", input="yes\nyes\n")
        assert result.exit_code == 0
        assert "Wallet deleted" in result.output
        assert json.loads(cli("wallet", "list").output) == []

    def test_rename_then_fingerprint(self, cli, local_wallet):
        result = cli("wallet", "--name", local_wallet, "rename", "savings", "--local-only")
        assert result.exit_code == 0
        assert "Wallet renamed" in result.output
        assert cli("wallet", "--name", "savings", "fingerprint").exit_code == 0

    def test_unknown_wallet(self, cli):
        result = cli("wallet", "--name", "ghost", "fingerprint")
        assert result.exit_code == 1

    def test_broadcast_requires_sign(self, cli, local_wallet):
        result = cli(
            "wallet",
            "--name",
            local_wallet,
            "send-bitcoins",
            "-r",
            "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx:1000sat",
            "--broadcast",
        )
        assert result.exit_code == 1

    def test_sign_only_wallet_cannot_send(self, cli, local_wallet):
        result = cli(
            "wallet",
            "--name",
            local_wallet,
            "send-bitcoins",
            "-r",
            "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx:1000sat",
        )
        assert result.exit_code == 1

    def test_fingerprints_index(self, cli, local_wallet):
        cli("heir", "--name", "bob", "create", "--heir-config", HEIR_CONFIG)
        result = cli("fingerprints")
        assert result.exit_code == 0
        assert json.loads(result.output) == {
            "aaaa0000": ["heir:bob"],
            "73c5da0a": ["wallet:main"],
        }


class TestHeirWalletCommands:
    """Tests for the heir-wallet group."""

    def test_invalid_fingerprint(self, cli):
        result = cli(
            "heir-wallet",
            "--name",
            "mine",
            "create",
            "--heritage-provider",
            "local",
            "--key-provider",
            "none",
            "--fingerprint",
            "xyz",
        )
        assert result.exit_code == 1

    def test_watch_only(self, cli):
        result = cli(
            "heir-wallet",
            "--name",
            "mine",
            "create",
            "--heritage-provider",
            "local",
            "--key-provider",
            "none",
            "--fingerprint",
            "BBBB0000",
        )
        assert result.exit_code == 0, result.output
        result = cli("heir-wallet", "--name", "mine", "fingerprint")
        assert "bbbb0000" in result.output


class TestProviderCommands:
    """Tests for blockchain provider and service configuration."""

    def test_default_provider(self, cli):
        result = cli("blockchain-provider")
        assert result.exit_code == 0
        assert json.loads(result.output)["kind"] == "electrum"

    def test_store_provider(self, cli):
        result = cli("--electrum-url", "tcp://127.0.0.1:50001", "blockchain-provider", "--set")
        assert result.exit_code == 0
        result = cli("blockchain-provider")
        assert json.loads(result.output)["url"] == "tcp://127.0.0.1:50001"

    def test_conflicting_provider_flags(self, cli):
        result = cli(
            "--electrum-url", "tcp://a", "--bitcoincore-url", "http://b", "blockchain-provider"
        )
        assert result.exit_code == 1

    def test_service_config(self, cli):
        result = cli("--service-api-url", "https://api.example/v1", "service", "config", "--set")
        assert result.exit_code == 0
        result = cli("service", "config")
        assert json.loads(result.output)["service_api_url"] == "https://api.example/v1"

    def test_logout_without_session(self, cli):
        result = cli("service", "logout")
        assert result.exit_code == 0
        assert "Logged out" in result.output
