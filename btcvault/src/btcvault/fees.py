"""
Fee estimation for peg-in transactions.

Sizes are conservative virtual-byte figures for P2TR inputs and the largest
non-legacy output, so estimates never undershoot the signed transaction.
"""

from __future__ import annotations

import math

from btcvault.constants import (
    DUST_THRESHOLD,
    FEE_SAFETY_MARGIN,
    LOW_RATE_ESTIMATION_ACCURACY_BUFFER,
    MAX_NON_LEGACY_OUTPUT_SIZE,
    P2TR_INPUT_SIZE,
    TX_BUFFER_SIZE_OVERHEAD,
    WALLET_RELAY_FEE_RATE_THRESHOLD,
)


def _check_rate(fee_rate: float) -> None:
    if fee_rate <= 0 or math.isnan(fee_rate) or math.isinf(fee_rate):
        raise ValueError(f"Fee rate must be a positive number, got {fee_rate}")


def estimate_vsize(num_inputs: int, num_outputs: int) -> int:
    """Virtual size of a transaction with P2TR-sized inputs and outputs."""
    if num_inputs < 0 or num_outputs < 0:
        raise ValueError("Input and output counts must be non-negative")
    return (
        num_inputs * P2TR_INPUT_SIZE
        + num_outputs * MAX_NON_LEGACY_OUTPUT_SIZE
        + TX_BUFFER_SIZE_OVERHEAD
    )


def calculate_fee(num_inputs: int, num_outputs: int, fee_rate: float) -> int:
    """Fee in sats for the given shape, rounded up."""
    _check_rate(fee_rate)
    return math.ceil(estimate_vsize(num_inputs, num_outputs) * fee_rate)


def rate_based_tx_buffer_fee(fee_rate: float) -> int:
    """
    Extra sats added at very low fee rates.

    Wallets round sizes differently and at 1-2 sat/vB a few vbytes of
    difference can push the transaction under the relay minimum.
    """
    if fee_rate <= WALLET_RELAY_FEE_RATE_THRESHOLD:
        return LOW_RATE_ESTIMATION_ACCURACY_BUFFER
    return 0


def change_output_fee(fee_rate: float) -> int:
    _check_rate(fee_rate)
    return math.ceil(MAX_NON_LEGACY_OUTPUT_SIZE * fee_rate)


def selection_fee(num_inputs: int, fee_rate: float) -> int:
    """Fee for num_inputs inputs and the vault output, before any change output."""
    return calculate_fee(num_inputs, 1, fee_rate) + rate_based_tx_buffer_fee(fee_rate)


def apply_safety_margin(fee: int) -> int:
    return math.ceil(fee * FEE_SAFETY_MARGIN)


def estimate_pegin_fee(pegin_amount: int, deposit_value: int, fee_rate: float) -> int:
    """
    Fee for a single-input peg-in, with the safety margin applied.

    A change output is only paid for when the change it leaves stays above
    dust; otherwise the leftover goes to miners and the base fee is used.

    Example: pegging in 1_000_000 sats from a 1_500_000 sat UTXO at 10 sat/vB
    pays for 155 vB (input, vault output, change output, overhead) plus 10%.
    """
    base_fee = calculate_fee(1, 1, fee_rate)
    fee = base_fee

    change = deposit_value - pegin_amount - base_fee
    if change > DUST_THRESHOLD:
        fee = base_fee + change_output_fee(fee_rate)
        change = deposit_value - pegin_amount - fee
        if change <= DUST_THRESHOLD:
            fee = base_fee

    return apply_safety_margin(fee)


def get_max_pegin_fee(fee_rate: float, num_inputs: int = 1) -> int:
    """Upper bound on the peg-in fee, assuming a change output exists."""
    if num_inputs < 1:
        raise ValueError("A peg-in needs at least one input")
    return apply_safety_margin(calculate_fee(num_inputs, 2, fee_rate))


def should_add_change_output(change_amount: int, dust_threshold: int = DUST_THRESHOLD) -> bool:
    return change_amount > dust_threshold


def get_dust_threshold() -> int:
    return DUST_THRESHOLD
