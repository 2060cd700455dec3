"""
Tests for the sign-then-broadcast pipeline.
"""

from __future__ import annotations

import pytest

from heritage_cli.errors import InputValidationError
from heritage_cli.models import TransactionSummary
from heritage_cli.spendflow import SpendResult, sign_and_broadcast


class RecordingKey:
    def __init__(self, signed_inputs: int = 2):
        self.signed_inputs = signed_inputs
        self.calls: list[str] = []

    async def sign_psbt(self, psbt: str) -> tuple[str, int]:
        self.calls.append(psbt)
        return f"{psbt}+sig", self.signed_inputs


class Broadcaster:
    def __init__(self):
        self.calls: list[str] = []

    async def __call__(self, psbt: str) -> str:
        self.calls.append(psbt)
        return "txid"


def scripted(*answers: bool):
    asked: list[str] = []
    pending = list(answers)

    def confirm(prompt: str) -> bool:
        asked.append(prompt)
        return pending.pop(0)

    confirm.asked = asked  # type: ignore[attr-defined]
    return confirm


SUMMARY = TransactionSummary(
    txid="t", fee=100, inputs=[], outputs=[], owned_fingerprints=["aaaa0000"]
)


async def run(sign=True, broadcast=True, skip=False, confirm=None, key=None, broadcaster=None):
    shown: list[SpendResult] = []
    result = await sign_and_broadcast(
        "psbt",
        SUMMARY,
        key or RecordingKey(),
        broadcaster or Broadcaster(),
        sign=sign,
        broadcast=broadcast,
        skip_confirmation=skip,
        confirm=confirm or scripted(),
        show=shown.append,
        fingerprint_index={"aaaa0000": ["wallet:main"]},
    )
    return result, shown


class TestSignAndBroadcast:
    """Tests for sign_and_broadcast."""

    @pytest.mark.asyncio
    async def test_broadcast_requires_sign(self):
        with pytest.raises(InputValidationError):
            await run(sign=False, broadcast=True)

    @pytest.mark.asyncio
    async def test_no_sign(self):
        key = RecordingKey()
        result, shown = await run(sign=False, broadcast=False, key=key)
        assert result.psbt == "psbt"
        assert result.owners == {"aaaa0000": ["wallet:main"]}
        assert key.calls == []
        assert shown == []

    @pytest.mark.asyncio
    async def test_confirmed_all_the_way(self):
        confirm = scripted(True, True)
        broadcaster = Broadcaster()
        result, shown = await run(confirm=confirm, broadcaster=broadcaster)
        assert result.txid == "txid"
        assert result.signed_inputs == 2
        assert broadcaster.calls == ["psbt+sig"]
        assert len(confirm.asked) == 2
        assert len(shown) == 1

    @pytest.mark.asyncio
    async def test_declined_signature(self):
        key = RecordingKey()
        result, _ = await run(confirm=scripted(False), key=key)
        assert key.calls == []
        assert result.psbt == "psbt"
        assert result.txid is None

    @pytest.mark.asyncio
    async def test_declined_broadcast_returns_signed_psbt(self):
        broadcaster = Broadcaster()
        result, _ = await run(confirm=scripted(True, False), broadcaster=broadcaster)
        assert result.psbt == "psbt+sig"
        assert result.txid is None
        assert broadcaster.calls == []

    @pytest.mark.asyncio
    async def test_skip_confirmation(self):
        confirm = scripted()
        result, shown = await run(skip=True, confirm=confirm)
        assert result.txid == "txid"
        assert confirm.asked == []
        assert shown == []

    @pytest.mark.asyncio
    async def test_nothing_signed_still_returns(self):
        result, _ = await run(broadcast=False, skip=True, key=RecordingKey(signed_inputs=0))
        assert result.signed_inputs == 0


def test_result_dict():
    result = SpendResult(psbt="p", summary=SUMMARY, signed_inputs=1, txid="t")
    data = result.to_dict()
    assert data["psbt"] == "p"
    assert data["summary"]["fee"] == 100
    assert data["txid"] == "t"
    assert "owners" not in data
