"""
Tests for result display and interactive prompts.
"""

from __future__ import annotations

import json
from unittest.mock import patch

import click
import pytest

from heritage_cli import display, prompts
from heritage_cli.errors import PasswordMismatch, PromptFailed
from heritage_cli.models import HeirConfig, Network
from heritage_cli.spendflow import SpendResult


class TestToJson:
    """Tests for display.to_json."""

    def test_dataclass(self):
        data = json.loads(display.to_json(HeirConfig("xpub", "aaaa0000", "tpub")))
        assert data == {"kind": "xpub", "fingerprint": "aaaa0000", "value": "tpub"}

    def test_spend_result(self):
        data = json.loads(display.to_json([SpendResult(psbt="p", txid="t")]))
        assert data == [{"psbt": "p", "txid": "t"}]

    def test_sets_and_enums(self):
        data = json.loads(display.to_json({"o": frozenset({"b", "a"}), "n": Network.TESTNET}))
        assert data == {"o": ["a", "b"], "n": "testnet"}

    def test_unsupported(self):
        with pytest.raises(TypeError):
            display.to_json(object())


def test_show_string(capsys):
    display.show("Wallet created")
    display.show(None)
    assert capsys.readouterr().out == "Wallet created\n"


class TestPrompts:
    """Tests for the interactive prompts."""

    @pytest.mark.parametrize("answer,expected", [("yes", True), ("YES ", True), ("y", False)])
    def test_confirm(self, answer, expected):
        with patch("heritage_cli.prompts.typer.prompt", return_value=answer):
            assert prompts.confirm("Sure?") is expected

    def test_confirm_aborted(self):
        with patch("heritage_cli.prompts.typer.prompt", side_effect=click.Abort()):
            with pytest.raises(PromptFailed):
                prompts.confirm("Sure?")

    def test_password_double_check(self):
        with patch("heritage_cli.prompts.typer.prompt", side_effect=["pw", "pw"]) as prompt:
            assert prompts.prompt_secret(True) == "pw"
        assert prompt.call_count == 2

    def test_password_mismatch(self):
        with patch("heritage_cli.prompts.typer.prompt", side_effect=["pw", "other"]):
            with pytest.raises(PasswordMismatch):
                prompts.prompt_secret(True)

    def test_password_single(self):
        with patch("heritage_cli.prompts.typer.prompt", side_effect=["pw"]) as prompt:
            assert prompts.prompt_secret(False) == "pw"
        assert prompt.call_count == 1
