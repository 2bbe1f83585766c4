"""
Tests for btcvault.transaction
"""

from __future__ import annotations

import pytest

from btcvault.errors import InvalidTransaction
from btcvault.transaction import (
    Transaction,
    TxIn,
    TxOut,
    address_to_scriptpubkey,
    read_varint,
    script_type,
    scriptpubkey_to_address,
    varint,
)

P2WPKH_ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
P2WPKH_SCRIPT = "0014751e76e8199196d454941c45d1b3a323f1433bd6"
P2PKH_ADDRESS = "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2"
P2PKH_SCRIPT = "76a91477bff20c60e522dfaa3350c39b030a5d004e839a88ac"
P2SH_SCRIPT = "a914" + "c3" * 20 + "87"
P2TR_ADDRESS = "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr"
P2TR_SCRIPT = "5120a60869f0dbcf1dc659c9cecbaf8050135ea9e8cdc487053f1dc6880949dc684c"


def _sample_tx(with_witness: bool = False) -> Transaction:
    return Transaction(
        version=2,
        inputs=[
            TxIn(
                txid="aa" * 32,
                vout=3,
                sequence=0xFFFFFFFD,
                witness=[b"\x01" * 64] if with_witness else [],
            ),
            TxIn(txid="bb" * 32, vout=0),
        ],
        outputs=[
            TxOut(50_000, bytes.fromhex(P2TR_SCRIPT)),
            TxOut(1_234, bytes.fromhex(P2WPKH_SCRIPT)),
        ],
        locktime=800_000,
    )


class TestVarint:
    """Tests for compact size encoding."""

    @pytest.mark.parametrize(
        ("value", "encoded"),
        [
            (0, "00"),
            (0xFC, "fc"),
            (0xFD, "fdfd00"),
            (0xFFFF, "fdffff"),
            (0x10000, "fe00000100"),
            (0x100000000, "ff0000000001000000"),
        ],
    )
    def test_encode_decode(self, value: int, encoded: str) -> None:
        assert varint(value).hex() == encoded
        assert read_varint(bytes.fromhex(encoded), 0) == (value, len(encoded) // 2)


class TestTransactionCodec:
    """Tests for transaction serialization and parsing."""

    def test_legacy_round_trip(self) -> None:
        tx = _sample_tx()
        parsed = Transaction.from_hex(tx.to_hex())

        assert parsed == tx
        assert parsed.to_hex() == tx.to_hex()
        assert not parsed.has_witness

    def test_segwit_round_trip(self) -> None:
        tx = _sample_tx(with_witness=True)
        raw = tx.to_hex()

        assert raw[8:12] == "0001"
        parsed = Transaction.from_hex(raw)
        assert parsed.inputs[0].witness == [b"\x01" * 64]
        assert parsed.inputs[1].witness == []
        assert parsed.to_hex() == raw

    def test_txid_ignores_witness(self) -> None:
        """txid commits to the non-witness serialization only."""
        unsigned = _sample_tx()
        signed = _sample_tx(with_witness=True)

        assert unsigned.txid == signed.txid
        assert unsigned.wtxid != signed.wtxid
        assert len(signed.txid) == 64

    def test_vsize(self) -> None:
        unsigned = _sample_tx()
        signed = _sample_tx(with_witness=True)

        assert unsigned.vsize() == len(unsigned.serialize())
        assert unsigned.vsize() < signed.vsize() < len(signed.serialize())

    def test_zero_input_round_trip(self) -> None:
        """Zero-input skeletons use the extended layout and parse back unambiguously."""
        tx = Transaction(outputs=[TxOut(100_000, bytes.fromhex(P2TR_SCRIPT))])
        raw = tx.to_hex()

        assert raw.startswith("02000000" + "0001" + "00" + "01")
        parsed = Transaction.from_hex(raw)
        assert parsed.inputs == []
        assert parsed.outputs == tx.outputs
        assert parsed.version == 2

    def test_copy_is_independent(self) -> None:
        tx = _sample_tx(with_witness=True)
        clone = tx.copy()
        clone.inputs[0].witness.clear()
        clone.outputs.append(TxOut(1, b"\x51"))

        assert tx.inputs[0].witness == [b"\x01" * 64]
        assert len(tx.outputs) == 2

    def test_invalid_hex(self) -> None:
        with pytest.raises(InvalidTransaction):
            Transaction.from_hex("not hex")

    def test_truncated(self) -> None:
        with pytest.raises(InvalidTransaction):
            Transaction.from_hex(_sample_tx().to_hex()[:-10])

    def test_trailing_data(self) -> None:
        with pytest.raises(InvalidTransaction):
            Transaction.from_hex(_sample_tx().to_hex() + "00")

    def test_invalid_transaction_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            Transaction.from_hex("")


class TestScripts:
    """Tests for script classification and address conversion."""

    @pytest.mark.parametrize(
        ("script", "kind"),
        [
            (P2PKH_SCRIPT, "p2pkh"),
            (P2SH_SCRIPT, "p2sh"),
            (P2WPKH_SCRIPT, "p2wpkh"),
            ("0020" + "11" * 32, "p2wsh"),
            (P2TR_SCRIPT, "p2tr"),
            ("6a0401020304", "unknown"),
        ],
    )
    def test_script_type(self, script: str, kind: str) -> None:
        assert script_type(bytes.fromhex(script)) == kind

    @pytest.mark.parametrize(
        ("address", "script"),
        [
            (P2WPKH_ADDRESS, P2WPKH_SCRIPT),
            (P2WPKH_ADDRESS.upper(), P2WPKH_SCRIPT),
            (P2TR_ADDRESS, P2TR_SCRIPT),
            (P2PKH_ADDRESS, P2PKH_SCRIPT),
        ],
    )
    def test_address_to_scriptpubkey(self, address: str, script: str) -> None:
        assert address_to_scriptpubkey(address).hex() == script

    @pytest.mark.parametrize(
        ("address", "script"),
        [
            (P2WPKH_ADDRESS, P2WPKH_SCRIPT),
            (P2TR_ADDRESS, P2TR_SCRIPT),
            (P2PKH_ADDRESS, P2PKH_SCRIPT),
        ],
    )
    def test_scriptpubkey_to_address(self, address: str, script: str) -> None:
        assert scriptpubkey_to_address(bytes.fromhex(script)) == address

    def test_testnet_taproot_prefix(self) -> None:
        address = scriptpubkey_to_address(bytes.fromhex(P2TR_SCRIPT), "testnet")
        assert address.startswith("tb1p")
        assert address_to_scriptpubkey(address).hex() == P2TR_SCRIPT

    def test_regtest_prefix(self) -> None:
        address = scriptpubkey_to_address(bytes.fromhex(P2WPKH_SCRIPT), "regtest")
        assert address.startswith("bcrt1q")

    def test_bad_checksum(self) -> None:
        with pytest.raises(ValueError):
            address_to_scriptpubkey(P2WPKH_ADDRESS[:-1] + "x")

    def test_unsupported_script(self) -> None:
        with pytest.raises(ValueError, match="Unsupported scriptPubKey"):
            scriptpubkey_to_address(bytes.fromhex("6a0401020304"))

    @pytest.mark.parametrize("network", ["mainnet", "testnet"])
    def test_p2sh_round_trip(self, network: str) -> None:
        address = scriptpubkey_to_address(bytes.fromhex(P2SH_SCRIPT), network)
        assert address[0] == ("3" if network == "mainnet" else "2")
        assert address_to_scriptpubkey(address).hex() == P2SH_SCRIPT
