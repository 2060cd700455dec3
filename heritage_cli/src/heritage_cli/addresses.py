"""
Bitcoin address and amount parsing utilities.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from bip_utils.base58 import Base58ChecksumError, Base58Decoder
from bip_utils.bech32 import Bech32ChecksumError, SegwitBech32Decoder

from heritage_cli.errors import InputValidationError, InvalidAddressNetwork
from heritage_cli.models import Network, OutPoint

SATS_PER_BTC = 100_000_000

# Bech32 human readable parts
SEGWIT_HRP = {
    Network.MAINNET: "bc",
    Network.TESTNET: "tb",
    Network.SIGNET: "tb",
    Network.REGTEST: "bcrt",
}

# Base58 version bytes (P2PKH, P2SH)
BASE58_VERSIONS = {
    Network.MAINNET: (0x00, 0x05),
    Network.TESTNET: (0x6F, 0xC4),
    Network.SIGNET: (0x6F, 0xC4),
    Network.REGTEST: (0x6F, 0xC4),
}

# Unit suffix -> sats per unit
DENOMINATIONS = {
    "btc": Decimal(SATS_PER_BTC),
    "mbtc": Decimal(100_000),
    "ubtc": Decimal(100),
    "bits": Decimal(100),
    "bit": Decimal(100),
    "sat": Decimal(1),
    "sats": Decimal(1),
    "satoshi": Decimal(1),
    "satoshis": Decimal(1),
}


def require_network(address: str, network: Network) -> str:
    """
    Check that an address is well-formed and belongs to the given network.

    Returns:
        The address, unchanged

    Raises:
        InvalidAddressNetwork: If the address is malformed or for another network
    """
    hrp = SEGWIT_HRP[network]
    if address.lower().startswith(hrp + "1"):
        try:
            SegwitBech32Decoder.Decode(hrp, address)
        except (Bech32ChecksumError, ValueError) as e:
            raise InvalidAddressNetwork(f"Invalid address {address}: {e}") from e
        return address

    try:
        payload = Base58Decoder.CheckDecode(address)
    except (Base58ChecksumError, ValueError) as e:
        raise InvalidAddressNetwork(
            f"Address {address} is not a valid {network.value} address"
        ) from e

    if len(payload) != 21 or payload[0] not in BASE58_VERSIONS[network]:
        raise InvalidAddressNetwork(f"Address {address} is not a valid {network.value} address")
    return address


def parse_amount(value: str) -> int:
    """
    Parse a quantity with unit into sats (e.g. 1.0btc, 100mbtc, 0.5 mBTC, 123sat).
    """
    text = value.strip().lower().replace(" ", "")
    number = text
    unit = ""
    for i, c in enumerate(text):
        if c.isalpha():
            number, unit = text[:i], text[i:]
            break

    if not unit:
        raise InputValidationError(f"Amount {value!r} is missing a unit (btc, mbtc, sat...)")
    if unit not in DENOMINATIONS:
        raise InputValidationError(f"Unknown denomination {unit!r} in amount {value!r}")

    try:
        sats = Decimal(number) * DENOMINATIONS[unit]
    except InvalidOperation as e:
        raise InputValidationError(f"Invalid amount: {value!r}") from e

    if sats != sats.to_integral_value():
        raise InputValidationError(f"Amount {value!r} is not a whole number of sats")
    if sats < 0:
        raise InputValidationError(f"Amount {value!r} is negative")
    return int(sats)


def parse_recipient(value: str) -> tuple[str, int | None]:
    """
    Parse ``<ADDRESS>:<AMOUNT>``; an amount of ``all`` yields None (drain).
    """
    parts = value.split(":")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InputValidationError("invalid recipient. Must be <ADDRESS>:<AMOUNT>")

    address, amount = parts
    if amount.strip().lower() == "all":
        return address, None

    sats = parse_amount(amount)
    if sats == 0:
        raise InputValidationError(f"Recipient {address} has a zero amount")
    return address, sats


def parse_outpoint(value: str) -> OutPoint:
    txid, sep, vout = value.rpartition(":")
    if not sep or len(txid) != 64 or not vout.isdigit():
        raise InputValidationError(f"Invalid outpoint {value!r}. Must be <TXID>:<VOUT>")
    try:
        bytes.fromhex(txid)
    except ValueError as e:
        raise InputValidationError(f"Invalid txid in outpoint {value!r}") from e
    return OutPoint(txid.lower(), int(vout))


def format_amount(sats: int) -> str:
    """Human readable amount, picking the unit by magnitude."""
    if sats >= SATS_PER_BTC // 10:
        return f"{Decimal(sats) / SATS_PER_BTC:.8f} BTC"
    if sats >= 10_000:
        return f"{Decimal(sats) / 100_000:.5f} mBTC"
    return f"{sats} sat"


def script_pubkey(address: str, network: Network) -> bytes:
    """Output script paying to an address of the given network."""
    require_network(address, network)
    hrp = SEGWIT_HRP[network]
    if address.lower().startswith(hrp + "1"):
        witness_version, program = SegwitBech32Decoder.Decode(hrp, address)
        opcode = 0x50 + witness_version if witness_version else 0x00
        return bytes([opcode, len(program)]) + program

    payload = Base58Decoder.CheckDecode(address)
    p2pkh, _ = BASE58_VERSIONS[network]
    if payload[0] == p2pkh:
        return b"\x76\xa9\x14" + payload[1:] + b"\x88\xac"
    return b"\xa9\x14" + payload[1:] + b"\x87"
