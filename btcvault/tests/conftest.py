"""
Test configuration for btcvault tests.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import pytest
from loguru import logger

from btcvault.constants import SIGHASH_ALL, SIGHASH_DEFAULT
from btcvault.crypto import sign_schnorr, x_only_pubkey_from_secret
from btcvault.models import UTXO, ParticipantKeySet
from btcvault.psbt import Psbt
from btcvault.sighash import taproot_sighash
from btcvault.taproot import build_payout_connector, tapleaf_hash
from btcvault.transaction import Transaction, TxIn, TxOut

# Test keys (not for production use!)
DEPOSITOR_SECRET = bytes.fromhex("11" * 32)
VAULT_PROVIDER_SECRET = bytes.fromhex("22" * 32)
LIQUIDATOR_SECRETS = [bytes.fromhex(b * 32) for b in ("33", "44", "55")]
CLAIMER_SECRETS = [bytes.fromhex(b * 32) for b in ("66", "77")]
OTHER_SECRET = bytes.fromhex("99" * 32)

DEPOSITOR_XONLY = x_only_pubkey_from_secret(DEPOSITOR_SECRET)
VAULT_PROVIDER_XONLY = x_only_pubkey_from_secret(VAULT_PROVIDER_SECRET)
LIQUIDATOR_XONLY = [x_only_pubkey_from_secret(s) for s in LIQUIDATOR_SECRETS]
CLAIMER_XONLY = [x_only_pubkey_from_secret(s) for s in CLAIMER_SECRETS]

P2WPKH_SCRIPT = bytes([0x00, 0x14]) + b"\x22" * 20
P2TR_SCRIPT_HEX = "5120" + "ab" * 32
VAULT_VALUE = 100_000
CLAIM_VALUE = 10_000
SKELETON_VAULT_SCRIPT = bytes.fromhex("5120" + "cd" * 32)


def make_utxo(
    value: int, index: int = 0, confirmed: bool = True, script: str = P2TR_SCRIPT_HEX
) -> UTXO:
    return UTXO(
        txid=f"{index:064x}",
        vout=index % 4,
        value=value,
        scriptpubkey=script,
        confirmed=confirmed,
    )


def make_keys(liquidators: list[bytes] | None = None) -> ParticipantKeySet:
    return ParticipantKeySet(
        depositor=DEPOSITOR_XONLY.hex(),
        vault_provider=VAULT_PROVIDER_XONLY.hex(),
        liquidators=[k.hex() for k in (liquidators or LIQUIDATOR_XONLY)],
    )


@dataclass
class PayoutFixture:
    """A peg-in, one claim transaction and the payout spending both."""

    keys: ParticipantKeySet
    pegin_tx: Transaction
    claim_tx: Transaction
    payout_tx: Transaction

    @property
    def pegin_hex(self) -> str:
        return self.pegin_tx.to_hex()

    @property
    def claim_hex(self) -> str:
        return self.claim_tx.to_hex()

    @property
    def payout_hex(self) -> str:
        return self.payout_tx.to_hex()


def make_pegin_tx(keys: ParticipantKeySet) -> Transaction:
    connector = build_payout_connector(keys, "mainnet")
    return Transaction(
        inputs=[TxIn(txid="aa" * 32, vout=1, witness=[b"\x01" * 64])],
        outputs=[
            TxOut(VAULT_VALUE, connector.scriptpubkey),
            TxOut(25_000, P2WPKH_SCRIPT),
        ],
    )


def make_payout_fixture(keys: ParticipantKeySet, claimer_index: int = 0) -> PayoutFixture:
    pegin_tx = make_pegin_tx(keys)
    claimer = CLAIMER_XONLY[claimer_index]
    claim_tx = Transaction(
        inputs=[TxIn(txid=pegin_tx.txid, vout=1, witness=[b"\x02" * 64])],
        outputs=[
            TxOut(CLAIM_VALUE, bytes([0x51, 0x20]) + claimer),
            TxOut(14_000, P2WPKH_SCRIPT),
        ],
    )
    payout_tx = Transaction(
        inputs=[
            TxIn(txid=pegin_tx.txid, vout=0),
            TxIn(txid=claim_tx.txid, vout=0),
        ],
        outputs=[TxOut(VAULT_VALUE + CLAIM_VALUE - 1_000, bytes([0x51, 0x20]) + claimer)],
    )
    return PayoutFixture(keys=keys, pegin_tx=pegin_tx, claim_tx=claim_tx, payout_tx=payout_tx)


def psbt_sighash(psbt: Psbt, hash_type: int = SIGHASH_DEFAULT, script_path: bool = True) -> bytes:
    """Sighash for input 0 as a wallet would compute it from the PSBT alone."""
    prevouts = [inp.witness_utxo for inp in psbt.inputs]
    assert all(p is not None for p in prevouts)
    leaf_hash = None
    if script_path:
        (script, leaf_version), = psbt.inputs[0].tap_leaf_scripts.values()
        leaf_hash = tapleaf_hash(script, leaf_version)
    return taproot_sighash(
        psbt.tx,
        0,
        [p.scriptpubkey for p in prevouts],  # type: ignore[union-attr]
        [p.value for p in prevouts],  # type: ignore[union-attr]
        hash_type=hash_type,
        leaf_hash=leaf_hash,
    )


class LocalWallet:
    """
    In-process stand-in for a browser wallet's signPsbt.

    Modes:
        script_sig: unfinalized PSBT with a tap script sig for input 0
        finalized: PSBT with input 0 finalized as [sig, script, control block]
        raw_tx: fully signed raw transaction hex
        sighash_suffix: 65-byte signature (trailing SIGHASH_ALL byte)
        sighash_all: script-path signature over the SIGHASH_ALL message
        key_path: signature over the key-path message
        wrong_key: script-path signature from an unrelated key
    """

    def __init__(self, mode: str = "script_sig", secret: bytes = DEPOSITOR_SECRET):
        self.mode = mode
        self.secret = secret
        self.requests: list[str] = []

    async def sign_psbt(self, psbt_str: str) -> str:
        self.requests.append(psbt_str)
        psbt = Psbt.from_string(psbt_str)
        first = psbt.inputs[0]
        (control_block, (script, leaf_version)), = first.tap_leaf_scripts.items()
        leaf_hash = tapleaf_hash(script, leaf_version)
        xonly = x_only_pubkey_from_secret(self.secret)

        secret = OTHER_SECRET if self.mode == "wrong_key" else self.secret
        if self.mode == "key_path":
            signature = sign_schnorr(secret, psbt_sighash(psbt, script_path=False))
        elif self.mode == "sighash_all":
            signature = sign_schnorr(secret, psbt_sighash(psbt, SIGHASH_ALL)) + bytes(
                [SIGHASH_ALL]
            )
        else:
            signature = sign_schnorr(secret, psbt_sighash(psbt))
        if self.mode == "sighash_suffix":
            signature += bytes([SIGHASH_ALL])

        if self.mode == "finalized":
            first.final_script_witness = [signature, b"\x00" * 64, script, control_block]
            return psbt.to_base64()
        if self.mode == "raw_tx":
            first.final_script_witness = [signature, b"\x00" * 64, script, control_block]
            for other in psbt.inputs[1:]:
                other.final_script_witness = [b"\x03" * 64]
            return psbt.extract_transaction().to_hex()

        first.tap_script_sigs[(xonly, leaf_hash)] = signature
        return psbt.to_base64()


@pytest.fixture
def keys() -> ParticipantKeySet:
    return make_keys()


@pytest.fixture
def payout_fixture(keys: ParticipantKeySet) -> PayoutFixture:
    return make_payout_fixture(keys)


@pytest.fixture
def log_records() -> Iterator[list[dict[str, Any]]]:
    """Capture loguru records emitted during a test."""
    records: list[dict[str, Any]] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


class FakeConstructor:
    """Skeleton constructor with a slow, optionally failing initialization."""

    def __init__(self, fail_times: int = 0, vault_value: int | None = None):
        self.init_calls = 0
        self.create_calls: list[tuple[Any, ...]] = []
        self.fail_times = fail_times
        self.vault_value = vault_value

    async def initialize(self) -> None:
        self.init_calls += 1
        await asyncio.sleep(0.01)
        if self.init_calls <= self.fail_times:
            raise RuntimeError("module load failed")

    def create_pegin(
        self,
        depositor_pubkey: str,
        claimer_pubkey: str,
        challenger_pubkeys: list[str],
        amount: int,
        network: str,
    ) -> dict[str, Any]:
        self.create_calls.append(
            (depositor_pubkey, claimer_pubkey, challenger_pubkeys, amount, network)
        )
        tx = Transaction(outputs=[TxOut(amount, SKELETON_VAULT_SCRIPT)])
        return {
            "tx_hex": tx.to_hex(),
            "txid": tx.txid,
            "vault_scriptpubkey": SKELETON_VAULT_SCRIPT.hex(),
            "vault_value": self.vault_value if self.vault_value is not None else amount,
        }
