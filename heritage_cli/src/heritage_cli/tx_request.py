"""
Normalization of send-bitcoins flags into a canonical TransactionRequest.

Pure validation: no backend is touched, and every error is raised before the
request is handed to an online-wallet.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

from loguru import logger

from heritage_cli.addresses import require_network
from heritage_cli.errors import (
    AmbiguousDrainTarget,
    ConflictingFeePolicy,
    FeeRateTooLow,
    InputValidationError,
)
from heritage_cli.models import (
    AbsoluteFee,
    DefaultFee,
    DrainAll,
    Exclude,
    FeeRate,
    Include,
    IncludeExclude,
    Network,
    Recipient,
    Recipients,
    TransactionRequest,
    Unconstrained,
    UseOnly,
)

MIN_FEE_RATE = 1.0


def _dedup(outpoints: Iterable[str]) -> frozenset[str]:
    return frozenset(str(o).lower() for o in outpoints)


def build_spending_config(recipients: Sequence[tuple[str, int | None]]) -> Recipients | DrainAll:
    if not recipients:
        raise InputValidationError("At least one recipient is required")

    if all(amount is not None for _, amount in recipients):
        return Recipients(
            recipients=[Recipient(address=addr, amount=amount) for addr, amount in recipients]
        )
    if len(recipients) == 1:
        return DrainAll(drain_to=recipients[0][0])

    logger.error("Exactly one recipient is allowed when using amount 'all'")
    raise AmbiguousDrainTarget()


def build_fee_policy(
    fee_rate: float | None, fee_absolute: int | None
) -> DefaultFee | AbsoluteFee | FeeRate:
    if fee_rate is not None and fee_absolute is not None:
        raise ConflictingFeePolicy()
    if fee_absolute is not None:
        if fee_absolute < 0:
            raise InputValidationError("Absolute fee cannot be negative")
        return AbsoluteFee(amount=fee_absolute)
    if fee_rate is not None:
        if not math.isfinite(fee_rate) or fee_rate < MIN_FEE_RATE:
            raise FeeRateTooLow(fee_rate)
        return FeeRate(rate=fee_rate)
    return DefaultFee()


def build_utxo_selection(
    include: Iterable[str], exclude: Iterable[str], include_only: bool
) -> Unconstrained | Include | Exclude | UseOnly | IncludeExclude:
    include_set = _dedup(include)
    exclude_set = _dedup(exclude)

    if include_only and not include_set:
        raise InputValidationError("--include-only requires at least one --include outpoint")
    if include_only and exclude_set:
        raise InputValidationError("--include-only cannot be combined with --exclude")

    if include_set and exclude_set:
        return IncludeExclude(include=include_set, exclude=exclude_set)
    if include_set:
        if include_only:
            return UseOnly(use_only=include_set)
        return Include(include=include_set)
    if exclude_set:
        return Exclude(exclude=exclude_set)
    return Unconstrained()


def build(
    recipients: Sequence[tuple[str, int | None]],
    fee_rate: float | None = None,
    fee_absolute: int | None = None,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
    include_only: bool = False,
    disable_rbf: bool = False,
    network: Network | None = None,
) -> TransactionRequest:
    """
    Build the canonical transaction request from send-bitcoins flags.

    Args:
        recipients: (address, amount in sats) pairs, amount None meaning "drain all"
        fee_rate: Forced fee rate in sat/vB (>= 1.0)
        fee_absolute: Forced absolute fee in sats
        include: Outpoints that must be spent
        exclude: Outpoints that must not be spent
        include_only: Spend only the included outpoints
        disable_rbf: Opt out of replace-by-fee
        network: If given, every recipient address is checked against it

    Raises:
        InputValidationError: On any malformed or contradictory combination
    """
    if network is not None:
        for address, _ in recipients:
            require_network(address, network)

    request = TransactionRequest(
        spending_config=build_spending_config(recipients),
        fee_policy=build_fee_policy(fee_rate, fee_absolute),
        utxo_selection=build_utxo_selection(include, exclude, include_only),
        disable_rbf=True if disable_rbf else None,
    )
    logger.debug(f"Built transaction request: {request}")
    return request
