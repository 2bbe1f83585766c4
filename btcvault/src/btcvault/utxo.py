"""
UTXO selection for funding a peg-in.

Two policies are available and may pick different inputs for the same wallet:

- ITERATIVE (authoritative): add UTXOs largest first, re-estimating the fee
  for the current input count after each addition.
- MAX_FEE: a single pass against the conservative maximum fee, which always
  assumes a change output plus the safety margin.

Change at or below the dust threshold is never returned as an output. It is
folded into the fee, so for every successful selection
sum(selected) == amount + fee + change.
"""

from __future__ import annotations

from enum import Enum

from loguru import logger

from btcvault.constants import DUST_THRESHOLD
from btcvault.errors import InsufficientFunds
from btcvault.fees import change_output_fee, get_max_pegin_fee, selection_fee
from btcvault.models import UTXO, FundingSelection
from btcvault.transaction import script_type

SPENDABLE_SCRIPT_TYPES = frozenset({"p2wpkh", "p2wsh", "p2tr", "p2sh"})


class SelectionMode(str, Enum):
    ITERATIVE = "iterative"
    MAX_FEE = "max_fee"


def is_spendable(utxo: UTXO) -> bool:
    """Confirmed output with a well-formed segwit (or wrapped segwit) script."""
    if not utxo.confirmed or utxo.value <= 0:
        return False
    try:
        script = utxo.script
    except ValueError:
        return False
    return script_type(script) in SPENDABLE_SCRIPT_TYPES


def _prepare(available: list[UTXO], pegin_amount: int, fee_rate: float) -> list[UTXO]:
    if pegin_amount <= 0:
        raise ValueError(f"Peg-in amount must be positive, got {pegin_amount}")
    if fee_rate <= 0:
        raise ValueError(f"Fee rate must be positive, got {fee_rate}")

    valid = [u for u in available if is_spendable(u)]
    if len(valid) != len(available):
        logger.debug(f"Ignoring {len(available) - len(valid)} unspendable UTXOs")
    if not valid:
        raise InsufficientFunds(required=pegin_amount, available=0, largest_utxo=0)

    # stable sort keeps wallet order among equal values
    return sorted(valid, key=lambda u: u.value, reverse=True)


def _finish(
    selected: list[UTXO], pegin_amount: int, fee: int, dust_threshold: int
) -> FundingSelection:
    total = sum(u.value for u in selected)
    change = total - pegin_amount - fee
    if change <= dust_threshold:
        fee += change
        change = 0
    selection = FundingSelection(selected=list(selected), fee=fee, change=change)
    logger.debug(
        f"Selected {len(selected)} UTXOs totalling {total} sats: "
        f"amount={pegin_amount}, fee={fee}, change={change}"
    )
    return selection


def select_utxos_for_pegin(
    available: list[UTXO],
    pegin_amount: int,
    fee_rate: float,
    dust_threshold: int = DUST_THRESHOLD,
) -> FundingSelection:
    """
    Select UTXOs with iterative fee refinement.

    Args:
        available: Wallet UTXOs (unconfirmed and non-segwit ones are skipped)
        pegin_amount: Amount locked in the vault output (sats)
        fee_rate: Fee rate in sat/vB
        dust_threshold: Change at or below this is folded into the fee

    Returns:
        FundingSelection with sum(selected) == pegin_amount + fee + change

    Raises:
        InsufficientFunds: If no prefix of the sorted UTXOs covers amount + fee
    """
    candidates = _prepare(available, pegin_amount, fee_rate)

    selected: list[UTXO] = []
    total = 0
    fee = 0
    for utxo in candidates:
        selected.append(utxo)
        total += utxo.value

        fee = selection_fee(len(selected), fee_rate)
        if total < pegin_amount + fee:
            continue

        if total - pegin_amount - fee > dust_threshold:
            with_change = fee + change_output_fee(fee_rate)
            # leftover too small to pay for its own output goes to the fee
            fee = with_change if total >= pegin_amount + with_change else total - pegin_amount
        return _finish(selected, pegin_amount, fee, dust_threshold)

    raise InsufficientFunds(
        required=pegin_amount + fee,
        available=total,
        largest_utxo=candidates[0].value,
    )


def select_utxos_max_fee(
    available: list[UTXO],
    pegin_amount: int,
    fee_rate: float,
    dust_threshold: int = DUST_THRESHOLD,
) -> FundingSelection:
    """Single-pass selection against the conservative maximum fee."""
    candidates = _prepare(available, pegin_amount, fee_rate)

    selected: list[UTXO] = []
    total = 0
    fee = 0
    for utxo in candidates:
        selected.append(utxo)
        total += utxo.value
        fee = get_max_pegin_fee(fee_rate, num_inputs=len(selected))
        if total >= pegin_amount + fee:
            return _finish(selected, pegin_amount, fee, dust_threshold)

    raise InsufficientFunds(
        required=pegin_amount + fee,
        available=total,
        largest_utxo=candidates[0].value,
    )


def select_utxos(
    available: list[UTXO],
    pegin_amount: int,
    fee_rate: float,
    mode: SelectionMode | str = SelectionMode.ITERATIVE,
    dust_threshold: int = DUST_THRESHOLD,
) -> FundingSelection:
    if SelectionMode(mode) == SelectionMode.MAX_FEE:
        return select_utxos_max_fee(available, pegin_amount, fee_rate, dust_threshold)
    return select_utxos_for_pegin(available, pegin_amount, fee_rate, dust_threshold)
