"""
Peg-in funding: extend the zero-input skeleton with wallet inputs and change.
"""

from __future__ import annotations

from loguru import logger

from btcvault.constants import DUST_THRESHOLD
from btcvault.errors import InvalidTransaction, PsbtError
from btcvault.models import (
    UTXO,
    FundingSelection,
    NetworkType,
    PeginTransactionSkeleton,
    UnsignedPeginTransaction,
)
from btcvault.psbt import Psbt, is_psbt_string
from btcvault.transaction import (
    Transaction,
    TxIn,
    TxOut,
    address_to_scriptpubkey,
    get_bech32_hrp,
    script_type,
)


def parse_unfunded_pegin_tx(unfunded_tx_hex: str) -> Transaction:
    """
    Parse and validate the skeleton emitted by the skeleton constructor.

    The skeleton must have no inputs and exactly one (vault) output.
    """
    tx = Transaction.from_hex(unfunded_tx_hex)
    if tx.inputs:
        raise InvalidTransaction(f"Expected 0 inputs in peg-in skeleton, got {len(tx.inputs)}")
    if len(tx.outputs) != 1:
        raise InvalidTransaction(
            f"Expected 1 output in peg-in skeleton, got {len(tx.outputs)}"
        )
    return tx


def change_address_to_scriptpubkey(change_address: str, network: NetworkType | str) -> bytes:
    """Resolve a change address, rejecting addresses for another network."""
    network = NetworkType(network)
    lowered = change_address.lower()
    if lowered.startswith(("bc1", "tb1", "bcrt1")):
        hrp = lowered[: lowered.rindex("1")]
        if hrp != get_bech32_hrp(network):
            raise ValueError(f"Change address {change_address} is not a {network.value} address")
    return address_to_scriptpubkey(change_address)


def build_pegin_transaction(
    unfunded_tx_hex: str,
    selected_utxos: list[UTXO],
    change_address: str,
    change_amount: int,
    network: NetworkType | str,
    dust_threshold: int = DUST_THRESHOLD,
) -> str:
    """
    Build the unsigned peg-in transaction.

    Version and locktime come from the skeleton. Inputs follow the order of
    selected_utxos, the vault output stays at index 0 and a change output is
    appended when change_amount is positive.

    Returns:
        Unsigned transaction hex
    """
    if not selected_utxos:
        raise ValueError("At least one UTXO is required to fund a peg-in")
    if change_amount < 0:
        raise ValueError(f"Change amount cannot be negative: {change_amount}")
    if 0 < change_amount <= dust_threshold:
        raise ValueError(
            f"Change of {change_amount} sats is dust; fold it into the fee instead"
        )

    skeleton = parse_unfunded_pegin_tx(unfunded_tx_hex)
    vault_output = skeleton.outputs[0]

    tx = Transaction(version=skeleton.version, locktime=skeleton.locktime)
    for utxo in selected_utxos:
        tx.inputs.append(TxIn(txid=utxo.txid, vout=utxo.vout))
    tx.outputs.append(TxOut(vault_output.value, vault_output.scriptpubkey))

    if change_amount > 0:
        change_script = change_address_to_scriptpubkey(change_address, network)
        tx.outputs.append(TxOut(change_amount, change_script))

    logger.debug(
        f"Funded peg-in {tx.txid}: {len(tx.inputs)} inputs, vault={vault_output.value}, "
        f"change={change_amount}"
    )
    return tx.to_hex()


def fund_pegin(
    skeleton: PeginTransactionSkeleton,
    selection: FundingSelection,
    change_address: str,
    network: NetworkType | str,
    dust_threshold: int = DUST_THRESHOLD,
) -> UnsignedPeginTransaction:
    """Fund a skeleton with a selection and capture the expected txid."""
    tx_hex = build_pegin_transaction(
        skeleton.tx_hex,
        selection.selected,
        change_address,
        selection.change,
        network,
        dust_threshold=dust_threshold,
    )
    return UnsignedPeginTransaction(
        tx_hex=tx_hex,
        txid=Transaction.from_hex(tx_hex).txid,
        selected_utxos=list(selection.selected),
        fee=selection.fee,
        change=selection.change,
        vault_scriptpubkey=skeleton.vault_scriptpubkey,
        vault_value=skeleton.vault_value,
    )


def build_pegin_psbt(
    funded_tx_hex: str,
    prevouts: list[UTXO],
    tap_internal_key: bytes | None = None,
) -> Psbt:
    """
    Wrap the funded transaction in a PSBT for the wallet.

    Every input carries its witness UTXO. P2TR inputs also carry the
    depositor's x-only key as the internal key when one is given.
    """
    tx = Transaction.from_hex(funded_tx_hex)
    if len(prevouts) != len(tx.inputs):
        raise ValueError(f"Expected {len(tx.inputs)} prevouts, got {len(prevouts)}")

    psbt = Psbt.from_transaction(tx)
    for index, (tx_in, utxo) in enumerate(zip(tx.inputs, prevouts)):
        if (tx_in.txid, tx_in.vout) != (utxo.txid, utxo.vout):
            raise ValueError(f"Prevout {utxo.outpoint} does not match input {index}")
        psbt.inputs[index].witness_utxo = TxOut(utxo.value, utxo.script)
        if tap_internal_key is not None and script_type(utxo.script) == "p2tr":
            psbt.inputs[index].tap_internal_key = tap_internal_key
    return psbt


def finalize_signed_pegin(signed: str) -> str:
    """
    Turn the wallet's response into a broadcastable transaction hex.

    Wallets may return a raw signed transaction, a finalized PSBT, or a PSBT
    with only signature fields set. Key-path P2TR and P2WPKH inputs are
    finalized here when the wallet left them unfinalized.
    """
    if not is_psbt_string(signed):
        return Transaction.from_hex(signed).to_hex()

    psbt = Psbt.from_string(signed)
    for index, inp in enumerate(psbt.inputs):
        if inp.is_finalized:
            continue
        if inp.tap_key_sig is not None:
            inp.final_script_witness = [inp.tap_key_sig]
        elif len(inp.partial_sigs) == 1 and inp.witness_utxo is not None and (
            script_type(inp.witness_utxo.scriptpubkey) == "p2wpkh"
        ):
            pubkey, sig = next(iter(inp.partial_sigs.items()))
            inp.final_script_witness = [sig, pubkey]
        else:
            raise PsbtError(f"Input {index} is not signed")
    return psbt.extract_transaction().to_hex()
