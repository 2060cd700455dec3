"""
Hardware key-provider (Ledger) driven through the HWI command-line tool.

HWI is run as a subprocess for every device call and answers in JSON. The
device wire protocol is entirely HWI's business.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Sequence
from typing import Any

from bip_utils.base58 import Base58Decoder
from loguru import logger

from heritage_cli.backends.base import KeyBackend, SecretPrompt
from heritage_cli.backends.bip32 import HEIR_ACCOUNT, account_path
from heritage_cli.errors import BackendError, DeviceUnavailable, IncorrectKeyProvider
from heritage_cli.models import AccountXPub, Fingerprint, HeirConfig, LedgerPolicy, Network

DEFAULT_HWI_TIMEOUT = 30.0

HWI_CHAINS = {
    Network.MAINNET: "main",
    Network.TESTNET: "test",
    Network.SIGNET: "signet",
    Network.REGTEST: "regtest",
}

# HWI error codes meaning "no usable device answered"
DEVICE_ERROR_CODES = {-1, -3, -4, -11, -14}


class HwiClient:
    """Thin async wrapper around the ``hwi`` executable."""

    def __init__(
        self,
        network: Network,
        executable: str = "hwi",
        timeout: float = DEFAULT_HWI_TIMEOUT,
    ):
        self.network = network
        self.executable = executable
        self.timeout = timeout

    async def call(self, args: Sequence[str], fingerprint: Fingerprint | None = None) -> Any:
        cmd = [self.executable, "--chain", HWI_CHAINS[self.network]]
        if fingerprint is not None:
            cmd += ["--fingerprint", fingerprint]
        cmd += list(args)
        logger.debug(f"Running hwi {args[0] if args else ''}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise DeviceUnavailable(f"{self.executable} not installed or not in PATH") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise DeviceUnavailable(
                f"No answer from the hardware wallet after {self.timeout}s"
            ) from e

        try:
            result = json.loads(stdout.decode() or "null")
        except json.JSONDecodeError as e:
            raise BackendError(f"Unexpected hwi output: {stderr.decode().strip()}") from e

        if isinstance(result, dict) and "error" in result:
            code = result.get("code")
            if code in DEVICE_ERROR_CODES:
                raise DeviceUnavailable(result["error"])
            raise BackendError(f"hwi error {code}: {result['error']}")
        return result

    async def enumerate(self) -> list[dict[str, Any]]:
        return await self.call(["enumerate"])


def _xonly_from_xpub(xpub: str) -> str:
    payload = Base58Decoder.CheckDecode(xpub)
    return payload[-32:].hex()


class HardwareKey(KeyBackend):
    """Ledger device, identified by its master fingerprint."""

    kind = "ledger"

    def __init__(
        self,
        fingerprint: Fingerprint,
        network: Network,
        registered_policies: list[dict[str, Any]] | None = None,
    ):
        self._fingerprint = fingerprint
        self.network = network
        self.registered_policies = registered_policies or []
        self.hwi: HwiClient | None = None

    @classmethod
    async def new(cls, hwi: HwiClient) -> HardwareKey:
        """Bind to the first Ledger device found."""
        devices = await hwi.enumerate()
        for device in devices:
            if device.get("type") == "ledger" and not device.get("error"):
                key = cls(device["fingerprint"], hwi.network)
                key.hwi = hwi
                logger.info(f"Using Ledger device {key.fingerprint()}")
                return key
        raise DeviceUnavailable("No Ledger device found")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HardwareKey:
        return cls(
            fingerprint=data["fingerprint"],
            network=Network(data["network"]),
            registered_policies=data.get("registered_policies", []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "fingerprint": self._fingerprint,
            "network": self.network.value,
            "registered_policies": self.registered_policies,
        }

    def fingerprint(self) -> Fingerprint:
        return self._fingerprint

    async def init(self, prompt_secret: SecretPrompt) -> None:
        """Open a session: the device with our fingerprint must answer."""
        if self.hwi is None:
            raise DeviceUnavailable("Hardware wallet interface not configured")
        devices = await self.hwi.enumerate()
        if not any(d.get("fingerprint") == self._fingerprint for d in devices):
            raise DeviceUnavailable(
                f"No device with fingerprint {self._fingerprint} found. "
                "Is the Ledger plugged in and the Bitcoin app opened?"
            )

    def init_ledger_client(self, hwi: HwiClient) -> None:
        self.hwi = hwi

    async def _call(self, *args: str) -> Any:
        if self.hwi is None:
            raise DeviceUnavailable("Hardware wallet session not opened")
        return await self.hwi.call(args, fingerprint=self._fingerprint)

    async def _origin_xpub(self, path: str) -> str:
        result = await self._call("getxpub", path)
        origin = path.replace("m", self._fingerprint, 1)
        return f"[{origin}]{result['xpub']}"

    async def sign_psbt(self, psbt: str) -> tuple[str, int]:
        result = await self._call("signtx", psbt)
        signed_psbt = result["psbt"]
        # HWI only tells whether something was signed
        return signed_psbt, 1 if result.get("signed", signed_psbt != psbt) else 0

    async def derive_account_xpubs(self, start: int, end: int) -> list[AccountXPub]:
        xpubs = []
        for index in range(start, end):
            value = await self._origin_xpub(account_path(self.network, index))
            xpubs.append(AccountXPub(index=index, value=value))
        return xpubs

    async def derive_heir_config(self, kind: str) -> HeirConfig:
        base = account_path(self.network, HEIR_ACCOUNT)
        if kind == "xpub":
            value = await self._origin_xpub(base)
            return HeirConfig(kind="xpub", fingerprint=self._fingerprint, value=value)
        if kind == "single-pub":
            path = base + "/0/0"
            result = await self._call("getxpub", path)
            origin = path.replace("m", self._fingerprint, 1)
            value = f"[{origin}]{_xonly_from_xpub(result['xpub'])}"
            return HeirConfig(kind="single-pub", fingerprint=self._fingerprint, value=value)
        raise ValueError(f"Unknown heir config kind: {kind}")

    async def backup_mnemonic(self) -> dict[str, Any]:
        raise IncorrectKeyProvider("local")

    def list_registered_policies(self) -> list[dict[str, Any]]:
        return list(self.registered_policies)

    def registered_account_ids(self) -> set[int]:
        return {p["account_id"] for p in self.registered_policies}

    async def register_policies(
        self,
        policies: Sequence[LedgerPolicy],
        on_register: Callable[[LedgerPolicy], None] | None = None,
    ) -> int:
        """Register each policy on the device, recording the returned HMACs."""
        count = 0
        for policy in policies:
            if on_register is not None:
                on_register(policy)
            result = await self._call(
                "register", "--desc", policy.descriptor(), "--name", policy.name
            )
            self.registered_policies.append(
                {
                    "account_id": policy.account_id,
                    "name": policy.name,
                    "descriptor_template": policy.descriptor_template,
                    "hmac": result.get("hmac"),
                }
            )
            count += 1
        return count
