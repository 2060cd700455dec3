"""
BIP32 HD key derivation for the local key-provider.
Implements the BIP86 (Taproot) account layout used by Heritage wallets.
"""

from __future__ import annotations

import hashlib
import hmac

from bip_utils import Bip39MnemonicGenerator, Bip39MnemonicValidator, Bip39WordsNum
from bip_utils.base58 import Base58Encoder
from bip_utils.utils.crypto import Hash160
from coincurve import PrivateKey, PublicKey

from heritage_cli.models import AccountXPub, Fingerprint, HeirConfig, Network

# Order of the secp256k1 group
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

HARDENED = 0x80000000

# Account used to derive heir configurations ("heir" in ASCII)
HEIR_ACCOUNT = 1751476594

XPUB_VERSIONS = {
    Network.MAINNET: bytes.fromhex("0488B21E"),
    Network.TESTNET: bytes.fromhex("043587CF"),
    Network.SIGNET: bytes.fromhex("043587CF"),
    Network.REGTEST: bytes.fromhex("043587CF"),
}

WORD_COUNTS = {
    12: Bip39WordsNum.WORDS_NUM_12,
    18: Bip39WordsNum.WORDS_NUM_18,
    24: Bip39WordsNum.WORDS_NUM_24,
}


def parse_path(path: str) -> list[int]:
    """Child indexes of ``m/86'/1'/0'``. Both ' and h mark hardened steps."""
    head, *steps = path.split("/")
    if head != "m":
        raise ValueError(f"Derivation path {path!r} is not rooted at m")
    indexes = []
    for step in filter(None, steps):
        if step[-1] in "'h":
            indexes.append(int(step[:-1]) + HARDENED)
        else:
            indexes.append(int(step))
    return indexes


class HDKey:
    """Extended private key with BIP32 derivation and xpub export."""

    def __init__(
        self,
        secret: PrivateKey,
        chain_code: bytes,
        depth: int = 0,
        parent: bytes = bytes(4),
        index: int = 0,
    ):
        self._secret = secret
        self.chain_code = chain_code
        self.depth = depth
        self.parent = parent
        self.index = index

    @property
    def private_key(self) -> PrivateKey:
        return self._secret

    @property
    def public_key(self) -> PublicKey:
        return self._secret.public_key

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(digest[:32]), digest[32:])

    def derive(self, path: str) -> HDKey:
        key = self
        for index in parse_path(path):
            key = key.child(index)
        return key

    def child(self, index: int) -> HDKey:
        if index & HARDENED:
            material = b"\x00" + self._secret.secret
        else:
            material = self.public_key_bytes()
        digest = hmac.new(
            self.chain_code, material + index.to_bytes(4, "big"), hashlib.sha512
        ).digest()

        tweak = int.from_bytes(digest[:32], "big")
        scalar = (int.from_bytes(self._secret.secret, "big") + tweak) % CURVE_ORDER
        if tweak >= CURVE_ORDER or scalar == 0:
            raise ValueError(f"Index {index} yields no valid child key")

        return HDKey(
            PrivateKey(scalar.to_bytes(32, "big")),
            digest[32:],
            depth=self.depth + 1,
            parent=self.fingerprint_bytes(),
            index=index,
        )

    def public_key_bytes(self) -> bytes:
        return self.public_key.format(compressed=True)

    def fingerprint_bytes(self) -> bytes:
        return Hash160.QuickDigest(self.public_key_bytes())[:4]

    def fingerprint(self) -> Fingerprint:
        return self.fingerprint_bytes().hex()

    def to_xpub(self, network: Network) -> str:
        payload = b"".join(
            (
                XPUB_VERSIONS[network],
                bytes([self.depth]),
                self.parent,
                self.index.to_bytes(4, "big"),
                self.chain_code,
                self.public_key_bytes(),
            )
        )
        return Base58Encoder.CheckEncode(payload)


def generate_mnemonic(word_count: int = 24) -> str:
    """Fresh BIP39 mnemonic of 12, 18 or 24 words."""
    if word_count not in WORD_COUNTS:
        raise ValueError("word_count must be 12, 18 or 24")
    return Bip39MnemonicGenerator().FromWordsNumber(WORD_COUNTS[word_count]).ToStr()


def validate_mnemonic(mnemonic: str) -> str:
    """Normalize and validate a BIP39 mnemonic, raising ValueError if invalid."""
    mnemonic = " ".join(mnemonic.split()).lower()
    if not Bip39MnemonicValidator().IsValid(mnemonic):
        raise ValueError("invalid mnemonic (unknown word or bad checksum)")
    return mnemonic


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """BIP39 seed: PBKDF2-HMAC-SHA512 over the mnemonic, salted with the passphrase."""
    return hashlib.pbkdf2_hmac(
        "sha512",
        mnemonic.encode(),
        b"mnemonic" + passphrase.encode(),
        2048,
        dklen=64,
    )


def account_path(network: Network, account: int) -> str:
    return f"m/86'/{network.coin_type}'/{account}'"


def derive_account_xpub(master: HDKey, network: Network, account: int) -> AccountXPub:
    key = master.derive(account_path(network, account))
    origin = f"{master.fingerprint()}/86'/{network.coin_type}'/{account}'"
    return AccountXPub(index=account, value=f"[{origin}]{key.to_xpub(network)}")


def derive_heir_config(master: HDKey, network: Network, kind: str) -> HeirConfig:
    """
    Heir configuration from the dedicated heir account.

    "xpub" exposes the account xpub, "single-pub" the x-only key at /0/0.
    """
    fingerprint = master.fingerprint()
    base = account_path(network, HEIR_ACCOUNT)
    origin = f"{fingerprint}/86'/{network.coin_type}'/{HEIR_ACCOUNT}'"
    if kind == "xpub":
        key = master.derive(base)
        value = f"[{origin}]{key.to_xpub(network)}"
        return HeirConfig(kind="xpub", fingerprint=fingerprint, value=value)
    if kind == "single-pub":
        key = master.derive(base + "/0/0")
        xonly = key.public_key_bytes()[1:].hex()
        value = f"[{origin}/0/0]{xonly}"
        return HeirConfig(kind="single-pub", fingerprint=fingerprint, value=value)
    raise ValueError(f"Unknown heir config kind: {kind}")
