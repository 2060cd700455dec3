"""
Electrum server blockchain provider.

Newline-delimited JSON-RPC over a plain TCP or TLS stream. Electrum servers
index script hashes, not descriptors: a descriptor scan derives addresses
through the PSBT engine and queries each of them until a gap of unused
addresses is reached.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import ssl
from typing import Any
from urllib.parse import urlparse

from loguru import logger

from heritage_cli.addresses import script_pubkey
from heritage_cli.backends.base import DescriptorEngine, RawChainProvider
from heritage_cli.errors import BackendError, MissingEngine, UnreachableProvider
from heritage_cli.models import Network, Utxo

DEFAULT_TIMEOUT = 30.0
PROTOCOL_VERSION = "1.4"
CLIENT_NAME = "heritage-cli"

# Fallback fee rate when the server cannot estimate (sat/vB)
FALLBACK_FEE_RATE = 10.0

# Consecutive addresses without history ending a descriptor scan
STOP_GAP = 20

GENESIS_HASHES = {
    Network.MAINNET: "000000000019d6689c085ae165831e934ff763ae46a2a6c172b3f1b60a8ce26f",
    Network.TESTNET: "000000000933ea01ad0ee984209779baaec3ced90fa3f408719526f8d77f4943",
    Network.SIGNET: "00000008819873e925422c1ff0f99f7cc9bbb232af63a077a480a3633bee1ef6",
    Network.REGTEST: "0f9188f13cb7b2c71f2a335e3a4fc328bf5beb436012afca590b1a11466e2206",
}

DEFAULT_PORTS = {"ssl": 50002, "tcp": 50001}


def parse_electrum_url(url: str) -> tuple[str, int, bool]:
    """``ssl://host:port`` or ``tcp://host:port`` -> (host, port, use_ssl)"""
    parsed = urlparse(url if "://" in url else f"ssl://{url}")
    if parsed.scheme not in DEFAULT_PORTS or not parsed.hostname:
        raise UnreachableProvider(f"Invalid Electrum URL {url!r} (expected ssl://host:port)")
    return parsed.hostname, parsed.port or DEFAULT_PORTS[parsed.scheme], parsed.scheme == "ssl"


def electrum_scripthash(script: bytes) -> str:
    """Electrum index key: SHA256 of the output script, byte-reversed, hex."""
    return hashlib.sha256(script).digest()[::-1].hex()


class ElectrumProvider(RawChainProvider):
    kind = "electrum"

    def __init__(
        self,
        url: str,
        network: Network,
        timeout: float = DEFAULT_TIMEOUT,
        engine: DescriptorEngine | None = None,
    ):
        self.url = url
        self.network = network
        self.timeout = timeout
        self.engine = engine
        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None
        self._request_id = 0

    async def _open(self) -> None:
        host, port, use_ssl = parse_electrum_url(self.url)
        ssl_context = ssl.create_default_context() if use_ssl else None
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=ssl_context), timeout=self.timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.error(f"Cannot connect to Electrum server {self.url}: {e}")
            raise UnreachableProvider(f"Electrum server unreachable at {self.url}: {e}") from e

    async def _call(self, method: str, params: list | None = None) -> Any:
        if self.reader is None or self.writer is None:
            raise UnreachableProvider("Electrum connection not opened")

        self._request_id += 1
        request_id = self._request_id
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}

        try:
            self.writer.write(json.dumps(payload).encode() + b"\n")
            await self.writer.drain()
            while True:
                line = await asyncio.wait_for(self.reader.readuntil(b"\n"), timeout=self.timeout)
                message = json.loads(line)
                if not isinstance(message, dict):
                    raise BackendError(
                        f"Malformed answer from Electrum server: expected an object, "
                        f"got {type(message).__name__}"
                    )
                # Skip subscription notifications
                if message.get("id") == request_id:
                    break
        except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
            logger.error(f"Electrum call failed: {method} - {e}")
            raise UnreachableProvider(f"Electrum server {self.url} stopped answering") from e
        except asyncio.LimitOverrunError as e:
            raise BackendError(f"Electrum answer to {method} exceeds the stream limit") from e
        except json.JSONDecodeError as e:
            raise BackendError(f"Malformed answer from Electrum server: {e}") from e

        if message.get("error"):
            error = message["error"]
            text = error.get("message", error) if isinstance(error, dict) else error
            raise BackendError(f"Electrum error on {method}: {text}")
        return message.get("result")

    async def connect(self) -> None:
        await self._open()
        await self._call("server.version", [CLIENT_NAME, PROTOCOL_VERSION])
        features = await self._call("server.features")
        genesis = features.get("genesis_hash")
        if genesis != GENESIS_HASHES[self.network]:
            await self.close()
            raise UnreachableProvider(
                f"Electrum server {self.url} does not serve {self.network.value}"
            )
        logger.debug(f"Connected to Electrum server {self.url}")

    async def get_block_height(self) -> int:
        header = await self._call("blockchain.headers.subscribe")
        return header["height"]

    async def estimate_fee(self, target_blocks: int) -> float:
        btc_per_kb = await self._call("blockchain.estimatefee", [target_blocks])
        if btc_per_kb is None or btc_per_kb < 0:
            logger.warning("Fee estimation unavailable, using fallback")
            return FALLBACK_FEE_RATE
        # BTC/kB to sat/vB
        return max(1.0, btc_per_kb * 100_000_000 / 1000)

    async def broadcast_transaction(self, tx_hex: str) -> str:
        txid = await self._call("blockchain.transaction.broadcast", [tx_hex])
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def scan_descriptors(self, descriptors: list[dict[str, Any]]) -> list[Utxo]:
        """
        UTXOs of ranged descriptors, one script hash at a time.

        Each descriptor is walked from the start of its range and abandoned
        after STOP_GAP consecutive addresses that never received a payment.
        """
        if not descriptors:
            return []
        if self.engine is None:
            raise MissingEngine("derive addresses to scan through Electrum")

        tip = await self.get_block_height()
        utxos: list[Utxo] = []
        for entry in descriptors:
            first, last = entry["range"]
            utxos.extend(await self._scan_descriptor(entry["desc"], first, last, tip))
        logger.info(f"Electrum scan found {len(utxos)} UTXOs")
        return utxos

    async def _scan_descriptor(
        self, descriptor: str, first: int, last: int, tip: int
    ) -> list[Utxo]:
        assert self.engine is not None
        found = []
        unused = 0
        for index in range(first, last + 1):
            address = await self.engine.derive_address(descriptor, index, self.network)
            scripthash = electrum_scripthash(script_pubkey(address, self.network))
            if not await self._call("blockchain.scripthash.get_history", [scripthash]):
                unused += 1
                if unused >= STOP_GAP:
                    break
                continue
            unused = 0
            for unspent in await self._call("blockchain.scripthash.listunspent", [scripthash]):
                # 0 and -1 mark mempool outputs
                height = unspent.get("height", 0)
                height = height if height > 0 else None
                found.append(
                    Utxo(
                        txid=unspent["tx_hash"],
                        vout=unspent["tx_pos"],
                        value=unspent["value"],
                        address=address,
                        confirmations=tip - height + 1 if height else 0,
                        height=height,
                    )
                )
        logger.debug(f"Descriptor {descriptor[:24]}... holds {len(found)} UTXOs")
        return found

    async def close(self) -> None:
        if self.writer is None:
            return
        writer, self.writer, self.reader = self.writer, None, None
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing Electrum connection: {e}")
