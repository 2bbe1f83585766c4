"""
Peg-in and payout orchestration.

These services connect the pure building blocks to the network relay, the
vault provider and the depositor's wallet. Each collaborator failure is
re-raised as CollaboratorError naming the step that failed. No state is kept
between calls, so any failed flow can be retried from the start. Callers
must not run two flows for the same peg-in concurrently.
"""

from __future__ import annotations

import httpx
from loguru import logger

from btcvault.backends.base import BitcoinBackend
from btcvault.broadcast import Broadcaster
from btcvault.config import VaultSettings
from btcvault.crypto import process_public_key_to_x_only
from btcvault.errors import CollaboratorError, MissingCounterpartyData
from btcvault.funding import build_pegin_psbt, finalize_signed_pegin, fund_pegin
from btcvault.models import ParticipantKeySet, SignatureMap, UnsignedPeginTransaction
from btcvault.payout_signer import WalletSignPsbt, sign_payout_transaction
from btcvault.rpc import JsonRpcError, VaultProviderClient
from btcvault.skeleton import SkeletonBuilder
from btcvault.transaction import Transaction
from btcvault.utxo import select_utxos


class PeginService:
    """Prepare, sign and broadcast peg-in transactions."""

    def __init__(
        self,
        backend: BitcoinBackend,
        skeleton_builder: SkeletonBuilder,
        settings: VaultSettings | None = None,
    ):
        self.backend = backend
        self.skeleton_builder = skeleton_builder
        self.settings = settings or VaultSettings()
        self.broadcaster = Broadcaster(backend)

    async def prepare_pegin(
        self,
        depositor_pubkey: str,
        vault_provider_pubkey: str,
        liquidator_pubkeys: list[str],
        pegin_amount: int,
        funding_address: str,
        change_address: str,
        fee_rate: float | None = None,
    ) -> UnsignedPeginTransaction:
        """
        Build an unsigned, funded peg-in transaction.

        Args:
            depositor_pubkey: Depositor's public key (x-only or compressed hex)
            vault_provider_pubkey: Vault provider's public key
            liquidator_pubkeys: Liquidator public keys
            pegin_amount: Amount locked in the vault output (sats)
            funding_address: Address whose confirmed UTXOs fund the peg-in
            change_address: Address receiving change
            fee_rate: sat/vB; estimated from the relay when omitted
        """
        network = self.settings.network
        depositor = process_public_key_to_x_only(depositor_pubkey)
        vault_provider = process_public_key_to_x_only(vault_provider_pubkey)
        liquidators = [process_public_key_to_x_only(k) for k in liquidator_pubkeys]

        try:
            utxos = await self.backend.get_utxos(funding_address)
        except (httpx.HTTPError, ValueError) as e:
            raise CollaboratorError("fetch_utxos", e) from e

        if fee_rate is None:
            try:
                fee_rate = await self.backend.estimate_fee_rate(self.settings.fee_target_blocks)
            except httpx.HTTPError as e:
                raise CollaboratorError("fee_rate", e) from e

        skeleton = await self.skeleton_builder.create_pegin(
            depositor, vault_provider, liquidators, pegin_amount, network
        )

        selection = select_utxos(
            utxos,
            pegin_amount,
            fee_rate,
            mode=self.settings.selection_mode,
            dust_threshold=self.settings.dust_threshold,
        )
        unsigned = fund_pegin(
            skeleton,
            selection,
            change_address,
            network,
            dust_threshold=self.settings.dust_threshold,
        )
        logger.info(
            f"Prepared peg-in {unsigned.txid}: {pegin_amount} sats, fee {unsigned.fee} sats "
            f"at {fee_rate} sat/vB, {len(unsigned.selected_utxos)} inputs"
        )
        return unsigned

    async def sign_and_broadcast(
        self,
        funded_tx_hex: str,
        wallet_sign_psbt: WalletSignPsbt,
        depositor_pubkey: str | None = None,
    ) -> str:
        """
        Have the wallet sign the funded peg-in and broadcast it.

        Previous outputs are looked up on the relay so this also works for a
        transaction loaded back from storage.

        Returns:
            Broadcast txid
        """
        tx = Transaction.from_hex(funded_tx_hex)

        prevouts = []
        for tx_in in tx.inputs:
            try:
                prevouts.append(await self.backend.get_utxo_info(tx_in.txid, tx_in.vout))
            except (httpx.HTTPError, ValueError) as e:
                raise CollaboratorError("fetch_prevouts", e) from e

        internal_key = (
            bytes.fromhex(process_public_key_to_x_only(depositor_pubkey))
            if depositor_pubkey
            else None
        )
        psbt = build_pegin_psbt(funded_tx_hex, prevouts, tap_internal_key=internal_key)

        try:
            signed = await wallet_sign_psbt(psbt.to_hex())
        except Exception as e:
            raise CollaboratorError("wallet_sign", e) from e

        signed_tx_hex = finalize_signed_pegin(signed)
        try:
            return await self.broadcaster.broadcast(signed_tx_hex)
        except Exception as e:
            raise CollaboratorError("broadcast", e) from e


class PayoutSignatureService:
    """Sign every claimer's payout transaction and submit the batch."""

    def __init__(self, rpc: VaultProviderClient, settings: VaultSettings | None = None):
        self.rpc = rpc
        self.settings = settings or VaultSettings()

    async def resolve_liquidator_order(
        self, pegin_txid: str, liquidator_pubkeys: list[str]
    ) -> list[str]:
        """
        Canonical liquidator order for the payout leaf.

        The vault provider's claim graph is authoritative. Without it, the keys
        are sorted (the provider sorts them when building the script) if that
        fallback is enabled; otherwise MissingCounterpartyData is raised.
        """
        graph_error: Exception | None = None
        try:
            order = await self.rpc.get_liquidator_order(pegin_txid)
        except (JsonRpcError, httpx.HTTPError) as e:
            graph_error = e
            order = None

        known = [process_public_key_to_x_only(k) for k in liquidator_pubkeys]
        if order:
            canonical = [process_public_key_to_x_only(k) for k in order]
            if known and set(canonical) != set(known):
                logger.warning(
                    f"Vault provider liquidator set differs from the expected keys for "
                    f"{pegin_txid}; using the provider's order"
                )
            return canonical

        if not self.settings.allow_sorted_liquidator_fallback:
            raise MissingCounterpartyData(
                f"Vault provider did not supply a liquidator order for {pegin_txid} and "
                "the sorted fallback is disabled"
            ) from graph_error
        if not known:
            raise MissingCounterpartyData(f"No liquidator public keys known for {pegin_txid}")

        reason = f"graph unavailable: {graph_error}" if graph_error else "graph has no order"
        logger.warning(f"Using sorted liquidator order for {pegin_txid} ({reason})")
        return sorted(known)

    async def sign_and_submit(
        self,
        pegin_txid: str,
        pegin_tx_hex: str,
        depositor_pubkey: str,
        vault_provider_pubkey: str,
        liquidator_pubkeys: list[str],
        wallet_sign_psbt: WalletSignPsbt,
    ) -> SignatureMap:
        """
        Co-sign every payout transaction prepared by the vault provider.

        Returns:
            The submitted signatures keyed by x-only claimer key
        """
        try:
            claimer_sets = await self.rpc.request_claim_and_payout_transactions(
                pegin_txid, process_public_key_to_x_only(depositor_pubkey)
            )
        except (JsonRpcError, httpx.HTTPError) as e:
            raise CollaboratorError("request_transactions", e) from e
        if not claimer_sets:
            raise MissingCounterpartyData(
                f"Vault provider returned no claimer transactions for {pegin_txid}"
            )

        liquidators = await self.resolve_liquidator_order(pegin_txid, liquidator_pubkeys)
        keys = ParticipantKeySet(
            depositor=depositor_pubkey,
            vault_provider=vault_provider_pubkey,
            liquidators=liquidators,
        )

        signatures = SignatureMap()
        for index, claimer in enumerate(claimer_sets, start=1):
            logger.info(
                f"Signing payout {index}/{len(claimer_sets)} for claimer {claimer.claimer_pubkey}"
            )
            signature = await sign_payout_transaction(
                claimer.payout_tx_hex,
                pegin_tx_hex,
                claimer.claim_tx_hex,
                keys,
                self.settings.network,
                wallet_sign_psbt,
                strict_verification=self.settings.strict_signature_verification,
            )
            signatures.add(claimer.claimer_pubkey, bytes.fromhex(signature))

        try:
            await self.rpc.submit_payout_signatures(pegin_txid, keys.depositor, signatures)
        except (JsonRpcError, httpx.HTTPError) as e:
            raise CollaboratorError("submit_signatures", e) from e
        return signatures
