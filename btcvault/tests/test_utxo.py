"""
Tests for btcvault.utxo
"""

from __future__ import annotations

import pytest
from conftest import make_utxo

from btcvault.errors import InsufficientFunds
from btcvault.models import FundingSelection
from btcvault.utxo import (
    SelectionMode,
    is_spendable,
    select_utxos,
    select_utxos_for_pegin,
    select_utxos_max_fee,
)

P2PKH_SCRIPT = "76a914" + "11" * 20 + "88ac"
P2WPKH_SCRIPT = "0014" + "22" * 20


def _assert_balanced(selection: FundingSelection, amount: int) -> None:
    assert selection.total_value == amount + selection.fee + selection.change
    assert selection.change == 0 or selection.change > 546


class TestSpendable:
    """Tests for UTXO filtering."""

    def test_confirmed_taproot(self) -> None:
        assert is_spendable(make_utxo(1_000))

    def test_unconfirmed(self) -> None:
        assert not is_spendable(make_utxo(1_000, confirmed=False))

    def test_zero_value(self) -> None:
        assert not is_spendable(make_utxo(0))

    def test_legacy_script(self) -> None:
        assert not is_spendable(make_utxo(1_000, script=P2PKH_SCRIPT))

    def test_segwit_v0(self) -> None:
        assert is_spendable(make_utxo(1_000, script=P2WPKH_SCRIPT))

    def test_malformed_script(self) -> None:
        assert not is_spendable(make_utxo(1_000, script="zz"))


class TestIterativeSelection:
    """Tests for iterative (authoritative) selection."""

    def test_single_utxo_with_change(self) -> None:
        """Largest UTXO covers amount, base fee and a change output."""
        utxos = [make_utxo(30_000, 1), make_utxo(50_000, 2)]
        selection = select_utxos_for_pegin(utxos, 40_000, 5)

        assert [u.value for u in selection.selected] == [50_000]
        assert selection.fee == 560 + 215
        assert selection.change == 9_225
        _assert_balanced(selection, 40_000)

    def test_two_utxos(self) -> None:
        utxos = [make_utxo(20_000, 1), make_utxo(30_000, 2)]
        selection = select_utxos_for_pegin(utxos, 45_000, 5)

        assert [u.value for u in selection.selected] == [30_000, 20_000]
        assert selection.fee == 850 + 215
        assert selection.change == 3_935
        _assert_balanced(selection, 45_000)

    def test_dust_change_folded_into_fee(self) -> None:
        """Leftover below dust is paid to miners, not returned."""
        selection = select_utxos_for_pegin([make_utxo(40_860)], 40_000, 5)

        assert selection.change == 0
        assert selection.fee == 860
        _assert_balanced(selection, 40_000)

    def test_change_output_cost_pushes_change_to_dust(self) -> None:
        selection = select_utxos_for_pegin([make_utxo(41_160)], 40_000, 5)

        assert selection.change == 0
        assert selection.fee == 1_160
        _assert_balanced(selection, 40_000)

    def test_low_rate_buffer_applied(self) -> None:
        selection = select_utxos_for_pegin([make_utxo(100_000)], 50_000, 1)
        assert selection.fee == 112 + 30 + 43
        _assert_balanced(selection, 50_000)

    def test_skips_unspendable(self) -> None:
        utxos = [
            make_utxo(500_000, 1, confirmed=False),
            make_utxo(400_000, 2, script=P2PKH_SCRIPT),
            make_utxo(60_000, 3),
        ]
        selection = select_utxos_for_pegin(utxos, 40_000, 5)
        assert [u.value for u in selection.selected] == [60_000]

    def test_stable_order_for_equal_values(self) -> None:
        utxos = [make_utxo(30_000, i) for i in range(3)]
        selection = select_utxos_for_pegin(utxos, 50_000, 1)
        assert [u.txid for u in selection.selected] == [utxos[0].txid, utxos[1].txid]

    def test_leftover_below_change_cost_folds_into_fee(self) -> None:
        # 1-input base fee at 20 sat/vB is 2240; 700 left over is above dust
        # but cannot pay the 860 sats a change output would cost
        selection = select_utxos_for_pegin([make_utxo(40_000 + 2_240 + 700)], 40_000, 20)

        assert len(selection.selected) == 1
        assert selection.fee == 2_940
        assert selection.change == 0
        _assert_balanced(selection, 40_000)

    def test_leftover_covering_change_cost_keeps_change(self) -> None:
        selection = select_utxos_for_pegin([make_utxo(40_000 + 2_240 + 2_000)], 40_000, 20)

        assert selection.fee == 2_240 + 860
        assert selection.change == 1_140
        _assert_balanced(selection, 40_000)

    def test_insufficient_funds(self) -> None:
        utxos = [make_utxo(1_000, 1), make_utxo(500, 2)]
        with pytest.raises(InsufficientFunds) as exc_info:
            select_utxos_for_pegin(utxos, 10_000, 1)

        err = exc_info.value
        assert err.available == 1_500
        assert err.largest_utxo == 1_000
        assert err.required == 10_000 + 170 + 30
        assert err.shortfall == 8_700

    def test_no_spendable_utxos(self) -> None:
        with pytest.raises(InsufficientFunds) as exc_info:
            select_utxos_for_pegin([make_utxo(90_000, confirmed=False)], 10_000, 1)
        assert exc_info.value.available == 0
        assert exc_info.value.shortfall == 10_000

    def test_empty_wallet(self) -> None:
        with pytest.raises(InsufficientFunds):
            select_utxos_for_pegin([], 10_000, 1)

    @pytest.mark.parametrize(("amount", "rate"), [(0, 1), (-5, 1), (1_000, 0)])
    def test_invalid_arguments(self, amount: int, rate: float) -> None:
        with pytest.raises(ValueError):
            select_utxos_for_pegin([make_utxo(10_000)], amount, rate)

    def test_fee_monotonic_in_rate(self) -> None:
        utxos = [make_utxo(v, i) for i, v in enumerate([70_000, 40_000, 25_000, 9_000])]
        fees = [select_utxos_for_pegin(utxos, 100_000, rate).fee for rate in (1, 3, 5, 8, 13)]
        assert fees == sorted(fees)

    def test_balanced_across_amounts(self) -> None:
        utxos = [make_utxo(v, i) for i, v in enumerate([70_000, 40_000, 25_000, 9_000, 3_000])]
        for amount in range(5_000, 140_000, 7_919):
            _assert_balanced(select_utxos_for_pegin(utxos, amount, 3), amount)


class TestMaxFeeSelection:
    """Tests for single-pass max-fee selection."""

    def test_uses_conservative_fee(self) -> None:
        utxos = [make_utxo(30_000, 1), make_utxo(50_000, 2)]
        selection = select_utxos_max_fee(utxos, 40_000, 5)

        assert [u.value for u in selection.selected] == [50_000]
        assert selection.fee == 853
        assert selection.change == 9_147
        _assert_balanced(selection, 40_000)

    def test_never_cheaper_than_iterative(self) -> None:
        utxos = [make_utxo(v, i) for i, v in enumerate([70_000, 40_000, 25_000])]
        iterative = select_utxos_for_pegin(utxos, 60_000, 4)
        max_fee = select_utxos_max_fee(utxos, 60_000, 4)
        assert max_fee.fee >= iterative.fee

    def test_insufficient_funds(self) -> None:
        with pytest.raises(InsufficientFunds):
            select_utxos_max_fee([make_utxo(40_500)], 40_000, 5)


class TestDispatch:
    """Tests for select_utxos mode dispatch."""

    def test_default_is_iterative(self) -> None:
        utxos = [make_utxo(50_000)]
        assert select_utxos(utxos, 40_000, 5) == select_utxos_for_pegin(utxos, 40_000, 5)

    def test_max_fee_by_name(self) -> None:
        utxos = [make_utxo(50_000)]
        assert select_utxos(utxos, 40_000, 5, mode="max_fee") == select_utxos_max_fee(
            utxos, 40_000, 5
        )
        assert SelectionMode("max_fee") == SelectionMode.MAX_FEE
