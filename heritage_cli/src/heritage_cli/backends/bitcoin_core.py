"""
Raw chain access through a Bitcoin Core node.

The node's own wallet is never loaded. Local heritage wallets are synced by
running scantxoutset over their descriptors.
"""

from __future__ import annotations

import asyncio
import random
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from heritage_cli.backends.base import RawChainProvider
from heritage_cli.errors import BackendError, UnreachableProvider
from heritage_cli.models import Network, Utxo

RPC_TIMEOUT = 30.0
# A full UTXO set scan on mainnet regularly exceeds a minute
SCAN_TIMEOUT = 300.0

SCAN_ATTEMPTS = 30
SCAN_BACKOFF = 0.5
SCAN_POLL_SECONDS = 10.0

# sat/vB
FALLBACK_FEE_RATE = 10.0

SATS_PER_BTC = 100_000_000

CORE_CHAINS = {
    Network.MAINNET: "main",
    Network.TESTNET: "test",
    Network.SIGNET: "signet",
    Network.REGTEST: "regtest",
}


class RPCError(BackendError):
    def __init__(self, code: Any, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code


def read_cookie(file: Path) -> tuple[str, str]:
    """Bitcoin Core cookie file: ``__cookie__:<password>``"""
    try:
        content = Path(file).read_text().strip()
    except OSError as e:
        raise UnreachableProvider(f"Cannot read Bitcoin Core cookie file {file}: {e}") from e
    user, sep, password = content.partition(":")
    if not sep:
        raise UnreachableProvider(f"Malformed Bitcoin Core cookie file {file}")
    return user, password


def _scan_busy(error: RPCError) -> bool:
    return error.code == -8 or "already in progress" in str(error)


class BitcoinCoreProvider(RawChainProvider):
    """JSON-RPC client for a Bitcoin Core node, wallet disabled."""

    kind = "bitcoincore"

    def __init__(
        self,
        rpc_url: str,
        rpc_user: str,
        rpc_password: str,
        network: Network = Network.MAINNET,
        scan_timeout: float = SCAN_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.network = network
        self.scan_timeout = scan_timeout
        credentials = (rpc_user, rpc_password)
        self.client = httpx.AsyncClient(
            timeout=RPC_TIMEOUT, auth=credentials, transport=transport
        )
        # scantxoutset gets its own client with a longer timeout
        self._scan_client = httpx.AsyncClient(
            timeout=scan_timeout, auth=credentials, transport=transport
        )
        self._next_id = 0

    async def _call(
        self, method: str, *params: Any, client: httpx.AsyncClient | None = None
    ) -> Any:
        """
        Send one JSON-RPC request and return its ``result``.

        Raises:
            RPCError: The node answered with an error object
            UnreachableProvider: Transport failure or rejected credentials
        """
        self._next_id += 1
        request = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": list(params)}

        try:
            response = await (client or self.client).post(self.rpc_url, json=request)
        except httpx.TimeoutException as e:
            logger.error(f"{method} timed out on {self.rpc_url}")
            raise UnreachableProvider(f"Bitcoin Core RPC timed out: {method}") from e
        except httpx.HTTPError as e:
            logger.error(f"{method} could not reach {self.rpc_url}: {e}")
            raise UnreachableProvider(f"Bitcoin Core unreachable at {self.rpc_url}: {e}") from e

        if response.status_code == 401:
            raise UnreachableProvider("Bitcoin Core rejected the RPC credentials")

        try:
            body = response.json()
        except ValueError as e:
            raise BackendError(
                f"Unexpected Bitcoin Core answer (HTTP {response.status_code})"
            ) from e

        error = body.get("error")
        if error:
            raise RPCError(error.get("code", "unknown"), error.get("message", ""))
        return body.get("result")

    async def connect(self) -> None:
        info = await self._call("getblockchaininfo")
        expected = CORE_CHAINS[self.network]
        if info.get("chain") != expected:
            raise UnreachableProvider(
                f"Bitcoin Core serves chain {info.get('chain')!r}, expected {expected!r}"
            )
        logger.debug(f"Bitcoin Core reachable, tip at {info.get('blocks')}")

    async def _wait_for_scan_slot(self, attempt: int) -> bool:
        """Sleep while a foreign scan runs. False when the slot is free."""
        status = await self._call("scantxoutset", "status")
        if status is None:
            return False
        logger.debug(
            f"Node busy scanning ({status.get('progress', 0):.0f}%), "
            f"try {attempt + 1} of {SCAN_ATTEMPTS}"
        )
        await asyncio.sleep(SCAN_POLL_SECONDS)
        return True

    async def _run_scan(self, descriptors: list[dict[str, Any]]) -> dict[str, Any] | None:
        """
        Run scantxoutset once the node has no other scan going.

        Core refuses concurrent scans, so a busy node is polled and then
        retried with jittered backoff. None when no slot was obtained.
        """
        for attempt in range(SCAN_ATTEMPTS):
            last = attempt == SCAN_ATTEMPTS - 1
            try:
                if not last and await self._wait_for_scan_slot(attempt):
                    continue
                logger.debug(f"scantxoutset over {len(descriptors)} descriptor(s)")
                return await self._call(
                    "scantxoutset", "start", descriptors, client=self._scan_client
                )
            except RPCError as e:
                if not _scan_busy(e):
                    logger.error(f"scantxoutset refused: {e}")
                    raise
                if last:
                    break
                pause = SCAN_BACKOFF * 2**attempt + random.uniform(0, 0.5)
                logger.debug(f"Scan slot taken, next try in {pause:.2f}s")
                await asyncio.sleep(pause)

        logger.warning(f"No scan slot on Bitcoin Core after {SCAN_ATTEMPTS} tries")
        return None

    async def scan_descriptors(self, descriptors: list[dict[str, Any]]) -> list[Utxo]:
        """
        Look up unspent outputs of ranged descriptors.

        Each entry is ``{"desc": "tr(...)/0/*)", "range": [0, 999]}``.
        """
        if not descriptors:
            return []

        tip = await self.get_block_height()
        result = await self._run_scan(descriptors)
        if result is None:
            raise UnreachableProvider("Bitcoin Core UTXO scan did not complete")

        utxos = []
        for entry in result.get("unspents", []):
            height = entry.get("height") or None
            utxos.append(
                Utxo(
                    txid=entry["txid"],
                    vout=entry["vout"],
                    value=round(entry["amount"] * SATS_PER_BTC),
                    address=entry.get("desc", "").split("#")[0],
                    confirmations=tip - height + 1 if height else 0,
                    height=height,
                )
            )
        logger.info(f"{len(utxos)} unspent output(s) matched the wallet descriptors")
        return utxos

    async def broadcast_transaction(self, tx_hex: str) -> str:
        txid = await self._call("sendrawtransaction", tx_hex)
        logger.info(f"Bitcoin Core accepted transaction {txid}")
        return txid

    async def estimate_fee(self, target_blocks: int) -> float:
        estimate = await self._call("estimatesmartfee", target_blocks)
        if not estimate or "feerate" not in estimate:
            logger.warning(
                f"Node has no fee estimate for {target_blocks} blocks, "
                f"falling back to {FALLBACK_FEE_RATE} sat/vB"
            )
            return FALLBACK_FEE_RATE
        # feerate is BTC/kvB
        rate = max(1.0, estimate["feerate"] * SATS_PER_BTC / 1000)
        logger.debug(f"Fee rate for {target_blocks} blocks: {rate} sat/vB")
        return rate

    async def get_block_height(self) -> int:
        info = await self._call("getblockchaininfo")
        return info.get("blocks", 0)

    async def close(self) -> None:
        await self.client.aclose()
        await self._scan_client.aclose()
