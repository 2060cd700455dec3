"""
Pytest configuration and fixtures for heritage-cli tests.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from heritage_cli.backends import DescriptorEngine, RawChainProvider
from heritage_cli.bootstrap import AppContext
from heritage_cli.config import ServiceConfig, Settings
from heritage_cli.models import InheritanceRecord, Network, TransactionSummary, Utxo
from heritage_cli.store import Database


@pytest.fixture
def test_mnemonic() -> str:
    """Test mnemonic (BIP39 test vector)"""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def test_fingerprint() -> str:
    """Master fingerprint of the test mnemonic without passphrase"""
    return "73c5da0a"


@pytest.fixture
def datadir(tmp_path: Path) -> Path:
    return tmp_path / "heritage"


@pytest.fixture
def db(datadir: Path) -> Database:
    return Database(datadir, Network.TESTNET)


@pytest.fixture
def settings(datadir: Path) -> Settings:
    return Settings(bitcoin_network=Network.TESTNET, heritage_datadir=datadir)


@pytest.fixture
def make_ctx(db: Database, settings: Settings):
    """Factory of AppContext with scripted confirmations."""

    def factory(answers: list[bool] | None = None, **kwargs) -> AppContext:
        questions: list[str] = []
        pending = list(answers or [])

        def confirm(prompt: str) -> bool:
            questions.append(prompt)
            return pending.pop(0) if pending else False

        ctx = AppContext(
            db=db,
            network=Network.TESTNET,
            settings=settings,
            service_config=ServiceConfig(),
            confirm=confirm,
            **kwargs,
        )
        ctx.questions = questions  # type: ignore[attr-defined]
        return ctx

    return factory


@pytest.fixture
def no_prompt():
    """Secret prompt that fails the test if it is ever called."""

    def prompt(double_check: bool) -> str:
        raise AssertionError("password prompt should not be reached")

    return prompt


class FakeEngine(DescriptorEngine):
    """Deterministic PSBT engine recording what it is asked."""

    def __init__(self):
        self.signed: list[str] = []
        self.heritages: list[InheritanceRecord] = []

    async def derive_address(self, descriptor: str, index: int, network: Network) -> str:
        return f"addr-{index}"

    async def create_psbt(self, state, request, network):
        return "psbt-unsigned", TransactionSummary(txid="t1", fee=100, inputs=[], outputs=[])

    async def create_claim_psbt(self, state, claim_id, recipient, network):
        summary = TransactionSummary(txid=f"claim-{claim_id}", fee=100, inputs=[], outputs=[])
        return f"claim-{claim_id}-{recipient}", summary

    async def list_heritages(self, state, fingerprint):
        return list(self.heritages)

    async def sign_psbt(self, psbt, master, network):
        self.signed.append(psbt)
        return f"{psbt}-signed", 1

    async def extract_transaction(self, psbt: str) -> str:
        return f"hex({psbt})"


class FakeRawProvider(RawChainProvider):
    """Blockchain provider with canned answers."""

    kind = "fake"

    def __init__(self, utxos: list[Utxo] | None = None):
        self.utxos = utxos or []
        self.scanned: list[list] = []
        self.broadcasted: list[str] = []
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.connected = True

    async def get_block_height(self) -> int:
        return 100

    async def estimate_fee(self, target_blocks: int) -> float:
        return 5.0

    async def broadcast_transaction(self, tx_hex: str) -> str:
        self.broadcasted.append(tx_hex)
        return "txid-1"

    async def scan_descriptors(self, descriptors):
        self.scanned.append(descriptors)
        return list(self.utxos)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def raw_provider() -> FakeRawProvider:
    return FakeRawProvider(
        [
            Utxo(txid="aa" * 32, vout=0, value=7000, address="addr-0", confirmations=3),
            Utxo(txid="bb" * 32, vout=1, value=3000, address="addr-1", confirmations=1),
        ]
    )
