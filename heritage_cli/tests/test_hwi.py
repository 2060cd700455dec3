"""
Tests for the Ledger key-provider (HWI subprocess mocked).
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from heritage_cli.backends.hwi import HardwareKey, HwiClient
from heritage_cli.errors import BackendError, DeviceUnavailable, IncorrectKeyProvider
from heritage_cli.models import LedgerPolicy, Network

LEDGER_FP = "f00dbabe"


def fake_process(result, stderr: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(json.dumps(result).encode(), stderr))
    proc.kill = MagicMock()
    proc.wait = AsyncMock()
    return proc


def patch_exec(*results):
    procs = [fake_process(r) for r in results]
    return patch(
        "heritage_cli.backends.hwi.asyncio.create_subprocess_exec",
        AsyncMock(side_effect=procs),
    )


class TestHwiClient:
    """Tests for the HWI subprocess wrapper."""

    @pytest.mark.asyncio
    async def test_command_line(self):
        client = HwiClient(Network.TESTNET, executable="/usr/bin/hwi")
        with patch_exec({"xpub": "tpub..."}) as exec_mock:
            result = await client.call(["getxpub", "m/86'/1'/0'"], fingerprint=LEDGER_FP)
        assert result == {"xpub": "tpub..."}
        args = exec_mock.call_args.args
        assert args[:5] == ("/usr/bin/hwi", "--chain", "test", "--fingerprint", LEDGER_FP)
        assert args[5:] == ("getxpub", "m/86'/1'/0'")

    @pytest.mark.asyncio
    async def test_not_installed(self):
        client = HwiClient(Network.TESTNET)
        with patch(
            "heritage_cli.backends.hwi.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError()),
        ):
            with pytest.raises(DeviceUnavailable, match="not installed"):
                await client.enumerate()

    @pytest.mark.asyncio
    async def test_device_error(self):
        client = HwiClient(Network.TESTNET)
        with patch_exec({"error": "No device path found", "code": -3}):
            with pytest.raises(DeviceUnavailable):
                await client.call(["getxpub", "m"])

    @pytest.mark.asyncio
    async def test_other_error(self):
        client = HwiClient(Network.TESTNET)
        with patch_exec({"error": "Bad argument", "code": -7}):
            with pytest.raises(BackendError, match="Bad argument"):
                await client.call(["getxpub", "m"])

    @pytest.mark.asyncio
    async def test_unparsable_output(self):
        client = HwiClient(Network.TESTNET)
        proc = MagicMock()
        proc.communicate = AsyncMock(return_value=(b"Traceback...", b"boom"))
        with patch(
            "heritage_cli.backends.hwi.asyncio.create_subprocess_exec",
            AsyncMock(return_value=proc),
        ):
            with pytest.raises(BackendError, match="boom"):
                await client.enumerate()


class TestHardwareKey:
    """Tests for the Ledger key-provider."""

    @pytest.mark.asyncio
    async def test_new_picks_ledger(self):
        client = HwiClient(Network.TESTNET)
        devices = [
            {"type": "trezor", "fingerprint": "11111111"},
            {"type": "ledger", "fingerprint": LEDGER_FP},
        ]
        with patch_exec(devices):
            key = await HardwareKey.new(client)
        assert key.fingerprint() == LEDGER_FP
        assert key.to_dict()["kind"] == "ledger"

    @pytest.mark.asyncio
    async def test_new_without_ledger(self):
        with patch_exec([]):
            with pytest.raises(DeviceUnavailable):
                await HardwareKey.new(HwiClient(Network.TESTNET))

    @pytest.mark.asyncio
    async def test_init_requires_matching_device(self):
        key = HardwareKey(LEDGER_FP, Network.TESTNET)
        key.init_ledger_client(HwiClient(Network.TESTNET))
        with patch_exec([{"type": "ledger", "fingerprint": "22222222"}]):
            with pytest.raises(DeviceUnavailable, match=LEDGER_FP):
                await key.init(lambda double_check: "")

    @pytest.mark.asyncio
    async def test_init_never_prompts(self):
        key = HardwareKey(LEDGER_FP, Network.TESTNET)
        key.init_ledger_client(HwiClient(Network.TESTNET))

        def prompt(double_check: bool) -> str:
            raise AssertionError("no password for a hardware wallet")

        with patch_exec([{"type": "ledger", "fingerprint": LEDGER_FP}]):
            await key.init(prompt)

    @pytest.mark.asyncio
    async def test_account_xpubs_with_origin(self):
        key = HardwareKey(LEDGER_FP, Network.TESTNET)
        key.init_ledger_client(HwiClient(Network.TESTNET))
        with patch_exec({"xpub": "tpubA"}, {"xpub": "tpubB"}):
            xpubs = await key.derive_account_xpubs(3, 5)
        assert [x.value for x in xpubs] == [
            f"[{LEDGER_FP}/86'/1'/3']tpubA",
            f"[{LEDGER_FP}/86'/1'/4']tpubB",
        ]

    @pytest.mark.asyncio
    async def test_no_mnemonic(self):
        key = HardwareKey(LEDGER_FP, Network.TESTNET)
        with pytest.raises(IncorrectKeyProvider):
            await key.backup_mnemonic()

    @pytest.mark.asyncio
    async def test_register_policies(self):
        key = HardwareKey(LEDGER_FP, Network.TESTNET)
        key.init_ledger_client(HwiClient(Network.TESTNET))
        policy = LedgerPolicy(2, "Heritage #2", "tr(@0/**)", [f"[{LEDGER_FP}/86'/1'/2']tpubX"])
        seen = []
        with patch_exec({"hmac": "ab" * 32}):
            count = await key.register_policies([policy], seen.append)
        assert count == 1
        assert seen == [policy]
        assert key.registered_account_ids() == {2}
        assert key.list_registered_policies()[0]["hmac"] == "ab" * 32

    @pytest.mark.asyncio
    async def test_session_not_opened(self):
        key = HardwareKey(LEDGER_FP, Network.TESTNET)
        with pytest.raises(DeviceUnavailable):
            await key.sign_psbt("cHNidP8=")
