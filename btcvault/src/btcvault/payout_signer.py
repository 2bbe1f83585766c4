"""
Depositor co-signing of payout transactions.

A payout transaction spends the peg-in vault output (input 0) through the
payout leaf, plus outputs of the claimer's claim transaction. The depositor
signs input 0 via the script path. The flow is:

1. Re-derive the payout leaf and control block from the key set.
2. Resolve every input's previous output from the peg-in or claim transaction.
3. Expose input 0's leaf script, control block and internal key in a PSBT.
   No merkle root field is written: some wallets change signing behaviour
   when it is present.
4. Ask the wallet to sign (one request, one response).
5. Extract the 64-byte Schnorr signature from whichever form the wallet
   returned.
6. Verify it against the BIP-341 script-path sighash and diagnose mismatches.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from btcvault.constants import (
    SCHNORR_SIGNATURE_SIZE,
    SIGHASH_ALL,
    SIGHASH_DEFAULT,
    TAPSCRIPT_LEAF_VERSION,
)
from btcvault.crypto import taproot_tweak_pubkey, verify_schnorr
from btcvault.errors import (
    CollaboratorError,
    InvalidTransaction,
    PsbtError,
    SignatureExtractionFailure,
    SignatureVerificationMismatch,
)
from btcvault.models import NetworkType, ParticipantKeySet
from btcvault.psbt import Psbt, is_psbt_string
from btcvault.sighash import taproot_sighash
from btcvault.taproot import PayoutConnector, build_payout_connector
from btcvault.transaction import Transaction, TxOut

WalletSignPsbt = Callable[[str], Awaitable[str]]


class SignatureDiagnosis(str, Enum):
    VALID = "valid"
    SCRIPT_PATH_SIGHASH_ALL = "script_path_sighash_all"
    KEY_PATH = "key_path"
    KEY_PATH_SIGHASH_ALL = "key_path_sighash_all"
    TWEAKED_KEY = "tweaked_key"
    UNKNOWN = "unknown"

    @property
    def is_key_path(self) -> bool:
        return self in (SignatureDiagnosis.KEY_PATH, SignatureDiagnosis.KEY_PATH_SIGHASH_ALL)


@dataclass
class PayoutPsbt:
    """PSBT for a payout transaction with the data needed to check the signature."""

    psbt: Psbt
    connector: PayoutConnector
    prevouts: list[TxOut]

    @property
    def tx(self) -> Transaction:
        return self.psbt.tx

    def sighash(self, hash_type: int = SIGHASH_DEFAULT, script_path: bool = True) -> bytes:
        return taproot_sighash(
            self.tx,
            0,
            [p.scriptpubkey for p in self.prevouts],
            [p.value for p in self.prevouts],
            hash_type=hash_type,
            leaf_hash=self.connector.leaf_hash if script_path else None,
        )


def resolve_payout_prevouts(
    payout_tx: Transaction, pegin_tx: Transaction, claim_tx: Transaction
) -> list[TxOut]:
    """Map every payout input to the peg-in or claim output it spends."""
    known = {pegin_tx.txid: pegin_tx, claim_tx.txid: claim_tx}
    prevouts: list[TxOut] = []
    for index, tx_in in enumerate(payout_tx.inputs):
        prev_tx = known.get(tx_in.txid)
        if prev_tx is None:
            raise InvalidTransaction(
                f"Input {index} references unknown transaction {tx_in.txid}; expected "
                f"peg-in {pegin_tx.txid} or claim {claim_tx.txid}"
            )
        if tx_in.vout >= len(prev_tx.outputs):
            raise InvalidTransaction(
                f"Previous output not found for input {index} ({tx_in.txid}:{tx_in.vout})"
            )
        prevouts.append(prev_tx.outputs[tx_in.vout])
    return prevouts


def build_payout_psbt(
    payout_tx_hex: str,
    pegin_tx_hex: str,
    claim_tx_hex: str,
    keys: ParticipantKeySet,
    network: NetworkType | str,
) -> PayoutPsbt:
    """
    Build the PSBT the depositor's wallet signs.

    Raises:
        InvalidTransaction: If an input spends neither the peg-in nor the
            claim transaction, or input 0 does not spend the payout leaf's
            Taproot output.
    """
    connector = build_payout_connector(keys, network)
    control_block = connector.control_block.serialize()
    logger.bind(
        event="control_block",
        control_block=control_block.hex(),
        internal_key=connector.internal_key.hex(),
        output_key=connector.output_key.hex(),
        parity=connector.output_key_parity,
    ).debug(f"Control block {control_block.hex()}")

    payout_tx = Transaction.from_hex(payout_tx_hex)
    pegin_tx = Transaction.from_hex(pegin_tx_hex)
    claim_tx = Transaction.from_hex(claim_tx_hex)

    if not payout_tx.inputs:
        raise InvalidTransaction("Payout transaction has no inputs")
    if payout_tx.inputs[0].txid != pegin_tx.txid:
        raise InvalidTransaction(
            f"Payout input 0 spends {payout_tx.inputs[0].txid}, expected peg-in {pegin_tx.txid}"
        )

    prevouts = resolve_payout_prevouts(payout_tx, pegin_tx, claim_tx)
    if prevouts[0].scriptpubkey != connector.scriptpubkey:
        raise InvalidTransaction(
            "Peg-in output script does not match the payout leaf; the key set or "
            f"liquidator order differs (expected {connector.scriptpubkey.hex()}, "
            f"got {prevouts[0].scriptpubkey.hex()})"
        )

    unsigned = payout_tx.copy()
    for tx_in in unsigned.inputs:
        tx_in.script_sig = b""
        tx_in.witness = []

    psbt = Psbt.from_transaction(unsigned)
    for index, prevout in enumerate(prevouts):
        psbt.inputs[index].witness_utxo = prevout

    depositor_input = psbt.inputs[0]
    depositor_input.tap_leaf_scripts[control_block] = (connector.script, TAPSCRIPT_LEAF_VERSION)
    depositor_input.tap_internal_key = connector.internal_key

    payout_psbt = PayoutPsbt(psbt=psbt, connector=connector, prevouts=prevouts)
    logger.bind(
        event="payout_psbt_built",
        payout_txid=unsigned.txid,
        inputs=len(unsigned.inputs),
        prevout_scripts=[p.scriptpubkey.hex() for p in prevouts],
        prevout_amounts=[p.value for p in prevouts],
        sequences=[i.sequence for i in unsigned.inputs],
    ).debug(f"Payout PSBT built for {unsigned.txid} with {len(unsigned.inputs)} inputs")
    return payout_psbt


def normalize_schnorr_signature(signature: bytes) -> bytes:
    """
    Reduce a wallet signature to 64 bytes.

    A trailing sighash byte is accepted only as 0x00 or 0x01.
    """
    if len(signature) == SCHNORR_SIGNATURE_SIZE:
        return bytes(signature)
    if len(signature) == SCHNORR_SIGNATURE_SIZE + 1:
        flag = signature[-1]
        if flag not in (SIGHASH_DEFAULT, SIGHASH_ALL):
            raise SignatureExtractionFailure(f"Unexpected sighash flag: {flag:#04x}")
        return bytes(signature[:SCHNORR_SIGNATURE_SIZE])
    raise SignatureExtractionFailure(f"Unexpected Schnorr signature length: {len(signature)}")


def _signature_from_psbt(psbt: Psbt, depositor: bytes, leaf_hash: bytes | None) -> bytes:
    if not psbt.inputs:
        raise SignatureExtractionFailure("No inputs found in signed PSBT")
    first = psbt.inputs[0]

    by_key = {lh: sig for (xonly, lh), sig in first.tap_script_sigs.items() if xonly == depositor}
    if by_key:
        if leaf_hash is not None and leaf_hash in by_key:
            return by_key[leaf_hash]
        logger.warning("Depositor script signature is keyed by an unexpected leaf hash")
        return next(iter(by_key.values()))

    if first.final_script_witness:
        return first.final_script_witness[0]

    raise SignatureExtractionFailure(
        "Signed PSBT has no depositor script-path signature and input 0 is not finalized"
    )


def extract_payout_signature(
    signed: str, depositor_pubkey: bytes, leaf_hash: bytes | None = None
) -> bytes:
    """
    Extract the depositor's signature for input 0 from a wallet response.

    Accepts an unfinalized PSBT (signature in the tap script sig slot keyed by
    the depositor key), a finalized PSBT, or a fully signed raw transaction.
    """
    stripped = signed.strip()
    try:
        if is_psbt_string(stripped):
            raw_sig = _signature_from_psbt(Psbt.from_string(stripped), depositor_pubkey, leaf_hash)
        else:
            tx = Transaction.from_hex(stripped)
            if not tx.inputs or not tx.inputs[0].witness:
                raise SignatureExtractionFailure("No witness data in signed transaction")
            raw_sig = tx.inputs[0].witness[0]
    except (PsbtError, InvalidTransaction) as e:
        raise SignatureExtractionFailure(f"Unrecognized wallet response: {e}") from e

    signature = normalize_schnorr_signature(raw_sig)
    logger.bind(
        event="signature_extracted",
        raw_length=len(raw_sig),
        signature=signature.hex(),
    ).debug(f"Extracted depositor signature ({len(raw_sig)} bytes from wallet)")
    return signature


def diagnose_signature(
    payout: PayoutPsbt, depositor_pubkey: bytes, signature: bytes
) -> SignatureDiagnosis:
    """Find which message/key combination, if any, the signature verifies under."""
    if verify_schnorr(payout.sighash(SIGHASH_DEFAULT), depositor_pubkey, signature):
        return SignatureDiagnosis.VALID

    candidates = [
        (SignatureDiagnosis.SCRIPT_PATH_SIGHASH_ALL, payout.sighash(SIGHASH_ALL), depositor_pubkey),
        (
            SignatureDiagnosis.KEY_PATH,
            payout.sighash(SIGHASH_DEFAULT, script_path=False),
            depositor_pubkey,
        ),
        (
            SignatureDiagnosis.KEY_PATH_SIGHASH_ALL,
            payout.sighash(SIGHASH_ALL, script_path=False),
            depositor_pubkey,
        ),
    ]
    tweaked_key, _ = taproot_tweak_pubkey(depositor_pubkey, None)
    candidates.append(
        (SignatureDiagnosis.TWEAKED_KEY, payout.sighash(SIGHASH_DEFAULT), tweaked_key)
    )
    candidates.append(
        (
            SignatureDiagnosis.TWEAKED_KEY,
            payout.sighash(SIGHASH_DEFAULT, script_path=False),
            tweaked_key,
        )
    )

    for diagnosis, message, pubkey in candidates:
        if verify_schnorr(message, pubkey, signature):
            return diagnosis
    return SignatureDiagnosis.UNKNOWN


def verify_payout_signature(
    payout: PayoutPsbt,
    depositor_pubkey: bytes,
    signature: bytes,
    strict: bool = False,
) -> SignatureDiagnosis:
    """
    Check the signature against the script-path SIGHASH_DEFAULT message.

    A mismatch is logged as a warning-level signature_mismatch event. It is
    raised as SignatureVerificationMismatch when strict is set, or when the
    wallet signed the key-path message, since such a signature can never
    satisfy the payout leaf.
    """
    sighash = payout.sighash(SIGHASH_DEFAULT)
    logger.bind(
        event="sighash_computed",
        sighash=sighash.hex(),
        leaf_hash=payout.connector.leaf_hash.hex(),
    ).debug(f"Script-path sighash {sighash.hex()}")

    diagnosis = diagnose_signature(payout, depositor_pubkey, signature)
    if diagnosis == SignatureDiagnosis.VALID:
        logger.bind(event="signature_verified", sighash=sighash.hex()).debug(
            "Depositor payout signature verified"
        )
        return diagnosis

    logger.bind(
        event="signature_mismatch",
        diagnosis=diagnosis.value,
        sighash=sighash.hex(),
        depositor=depositor_pubkey.hex(),
        signature=signature.hex(),
        payout_txid=payout.tx.txid,
    ).warning(f"Payout signature does not verify against script-path sighash ({diagnosis.value})")

    if strict or diagnosis.is_key_path:
        raise SignatureVerificationMismatch(
            f"Wallet signature failed script-path verification ({diagnosis.value})",
            diagnosis=diagnosis.value,
        )
    return diagnosis


async def sign_payout_transaction(
    payout_tx_hex: str,
    pegin_tx_hex: str,
    claim_tx_hex: str,
    keys: ParticipantKeySet,
    network: NetworkType | str,
    wallet_sign_psbt: WalletSignPsbt,
    strict_verification: bool = False,
) -> str:
    """
    Produce the depositor's 64-byte Schnorr signature for one payout transaction.

    Returns:
        Signature hex (128 chars)
    """
    payout = build_payout_psbt(payout_tx_hex, pegin_tx_hex, claim_tx_hex, keys, network)

    try:
        signed = await wallet_sign_psbt(payout.psbt.to_hex())
    except Exception as e:
        raise CollaboratorError("wallet_sign", e) from e

    signature = extract_payout_signature(signed, keys.depositor_bytes, payout.connector.leaf_hash)
    verify_payout_signature(payout, keys.depositor_bytes, signature, strict=strict_verification)
    return signature.hex()
