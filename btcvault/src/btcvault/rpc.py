"""
Vault provider JSON-RPC client.

The vault provider runs a jsonrpsee server that takes a single positional
parameter object, so every call sends params as [params].
"""

from __future__ import annotations

import json
from enum import Enum, IntEnum
from typing import Any

import httpx
from loguru import logger

from btcvault.config import VaultSettings
from btcvault.crypto import strip_hex_prefix
from btcvault.errors import VaultError
from btcvault.models import ClaimerTransactionSet, SignatureMap

DEFAULT_RPC_TIMEOUT = 30.0


class RpcErrorCode(IntEnum):
    DATABASE_ERROR = -32005
    PRESIGN_ERROR = -32006
    JSON_SERIALIZATION_ERROR = -32007
    TX_GRAPH_ERROR = -32008
    INVALID_GRAPH = -32009
    VALIDATION_ERROR = -32010
    NOT_FOUND = -32011
    INTERNAL_ERROR = -32603


class DaemonStatus(str, Enum):
    """Peg-in progress as tracked by the vault provider."""

    PENDING_CHALLENGER_SIGNATURES = "PendingChallengerSignatures"
    PENDING_DEPOSITOR_SIGNATURES = "PendingDepositorSignatures"
    ACKNOWLEDGED = "Acknowledged"
    ACTIVATED = "Activated"
    CLAIM_POSTED = "ClaimPosted"
    CHALLENGE_PERIOD = "ChallengePeriod"
    PEGGED_OUT = "PeggedOut"


class JsonRpcError(VaultError):
    """Error object returned by the vault provider."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.data = data
        super().__init__(f"RPC error {code}: {message}")

    @property
    def error_code(self) -> RpcErrorCode | None:
        try:
            return RpcErrorCode(self.code)
        except ValueError:
            return None


class VaultProviderClient:
    """
    Client for a vault provider's RPC endpoint.

    No retries are attempted; every call is safe for the caller to repeat.
    """

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    @classmethod
    def from_settings(cls, settings: VaultSettings) -> VaultProviderClient:
        """Client for the vault provider configured in settings."""
        if not settings.vault_provider_url:
            raise ValueError("No vault provider URL configured (BTCVAULT_VAULT_PROVIDER_URL)")
        return cls(settings.vault_provider_url, timeout=settings.rpc_timeout_sec)

    async def _rpc_call(self, method: str, params: dict[str, Any]) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": [params],
        }

        try:
            response = await self.client.post(self.url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Vault provider RPC call failed: {method} - {e}")
            raise

        if data.get("error"):
            error_info = data["error"]
            raise JsonRpcError(
                error_info.get("code", 0),
                error_info.get("message", str(error_info)),
                error_info.get("data"),
            )
        return data.get("result")

    async def request_claim_and_payout_transactions(
        self, pegin_txid: str, depositor_pubkey: str
    ) -> list[ClaimerTransactionSet]:
        """Fetch the claim/payout transaction pair prepared for each claimer."""
        result = await self._rpc_call(
            "vaultProvider_requestClaimAndPayoutTransactions",
            {"pegin_tx_id": strip_hex_prefix(pegin_txid), "depositor_pk": depositor_pubkey},
        )
        txs = (result or {}).get("txs", [])
        sets = [
            ClaimerTransactionSet(
                claimer_pubkey=entry["claimer_pubkey"],
                claim_tx_hex=entry["claim_tx"]["tx_hex"],
                payout_tx_hex=entry["payout_tx"]["tx_hex"],
            )
            for entry in txs
        ]
        logger.debug(f"Vault provider returned {len(sets)} claimer transaction sets")
        return sets

    async def get_pegin_claim_tx_graph(self, pegin_txid: str) -> dict[str, Any]:
        """Fetch and decode the peg-in's claim transaction graph."""
        result = await self._rpc_call(
            "vaultProvider_getPeginClaimTxGraph",
            {"pegin_tx_id": strip_hex_prefix(pegin_txid)},
        )
        graph_json = (result or {}).get("graph_json")
        if not graph_json:
            return {}
        try:
            graph = json.loads(graph_json)
        except json.JSONDecodeError as e:
            raise JsonRpcError(
                RpcErrorCode.INVALID_GRAPH, f"Claim tx graph is not valid JSON: {e}"
            ) from e
        return graph if isinstance(graph, dict) else {}

    async def get_liquidator_order(self, pegin_txid: str) -> list[str] | None:
        """Canonical liquidator key order from the claim graph, if the provider exposes it."""
        graph = await self.get_pegin_claim_tx_graph(pegin_txid)
        keys = graph.get("liquidator_pubkeys")
        if not isinstance(keys, list) or not keys:
            return None
        return [strip_hex_prefix(str(k)) for k in keys]

    async def submit_payout_signatures(
        self, pegin_txid: str, depositor_pubkey: str, signatures: SignatureMap
    ) -> None:
        await self._rpc_call(
            "vaultProvider_submitPayoutSignatures",
            {
                "pegin_tx_id": strip_hex_prefix(pegin_txid),
                "depositor_pk": depositor_pubkey,
                "signatures": signatures.to_rpc(),
            },
        )
        logger.info(f"Submitted {len(signatures)} payout signatures for {pegin_txid}")

    async def get_pegin_status(self, pegin_txid: str) -> DaemonStatus | str:
        result = await self._rpc_call(
            "vaultProvider_getPeginStatus",
            {"pegin_tx_id": strip_hex_prefix(pegin_txid)},
        )
        status = (result or {}).get("status", "")
        try:
            return DaemonStatus(status)
        except ValueError:
            logger.warning(f"Unknown vault provider status: {status}")
            return status

    async def close(self) -> None:
        await self.client.aclose()
