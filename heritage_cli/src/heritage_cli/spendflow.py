"""
Sign-then-broadcast pipeline shared by send-bitcoins, spend-inheritance and
sign-psbt.

Every confirmation is asked before the step it guards. Declining a step stops
the pipeline there and returns what was obtained so far.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from loguru import logger

from heritage_cli.addresses import format_amount
from heritage_cli.backends import KeyBackend
from heritage_cli.errors import InputValidationError
from heritage_cli.fingerprints import FingerprintIndex, annotate
from heritage_cli.models import TransactionSummary

Broadcaster = Callable[[str], Awaitable[str]]


@dataclass
class SpendResult:
    psbt: str
    summary: TransactionSummary | None = None
    owners: dict[str, list[str]] = field(default_factory=dict)
    signed_inputs: int | None = None
    txid: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"psbt": self.psbt}
        if self.summary is not None:
            data["summary"] = {
                "txid": self.summary.txid,
                "fee": self.summary.fee,
                "inputs": self.summary.inputs,
                "outputs": self.summary.outputs,
            }
        if self.owners:
            data["owners"] = self.owners
        if self.signed_inputs is not None:
            data["signed_inputs"] = self.signed_inputs
        if self.txid is not None:
            data["txid"] = self.txid
        return data


def check_flags(sign: bool, broadcast: bool) -> None:
    if broadcast and not sign:
        raise InputValidationError("--broadcast requires --sign")


async def sign_and_broadcast(
    psbt: str,
    summary: TransactionSummary | None,
    key_backend: KeyBackend,
    broadcaster: Broadcaster,
    sign: bool,
    broadcast: bool,
    skip_confirmation: bool,
    confirm: Callable[[str], bool],
    show: Callable[[SpendResult], None],
    fingerprint_index: FingerprintIndex | None = None,
) -> SpendResult:
    """
    Optionally sign then broadcast a PSBT, confirming each step first.

    Args:
        summary: Backend summary of the transaction, shown before signing
        broadcaster: Coroutine function broadcasting a signed PSBT
        show: Displays the pending transaction before a confirmation
        fingerprint_index: Used to name the owners of the spent keys
    """
    check_flags(sign, broadcast)

    result = SpendResult(psbt=psbt, summary=summary)
    if summary is not None and summary.owned_fingerprints and fingerprint_index is not None:
        result.owners = annotate(summary.owned_fingerprints, fingerprint_index)

    if not sign:
        return result

    if not skip_confirmation:
        show(result)
        if summary is not None:
            logger.info(f"Transaction fee: {format_amount(summary.fee)}")
        if not confirm("Do you want to sign this transaction?"):
            logger.warning("Signing cancelled, returning the unsigned PSBT")
            return result

    result.psbt, result.signed_inputs = await key_backend.sign_psbt(result.psbt)
    logger.info(f"Signed {result.signed_inputs} input(s)")
    if result.signed_inputs == 0:
        logger.warning("No input could be signed with this key-provider")

    if not broadcast:
        return result

    if not skip_confirmation and not confirm("Do you want to broadcast this transaction?"):
        logger.warning("Broadcast cancelled, returning the signed PSBT")
        return result

    result.txid = await broadcaster(result.psbt)
    return result
