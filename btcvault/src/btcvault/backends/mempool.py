"""
Mempool.space (esplora-style) REST backend.

No node or API key is required, at the cost of trusting a third party for
UTXO and fee data. Self-hosted mempool instances expose the same API.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
from loguru import logger

from btcvault.backends.base import BitcoinBackend
from btcvault.errors import BroadcastError
from btcvault.models import UTXO, NetworkType, get_default_mempool_url


class MempoolBackend(BitcoinBackend):
    """
    Backend for the mempool.space REST API.

    Endpoints used:
    - GET  /address/{address}/utxo
    - GET  /v1/validate-address/{address}
    - GET  /tx/{txid}
    - GET  /tx/{txid}/hex
    - GET  /v1/fees/recommended
    - POST /tx
    """

    def __init__(
        self,
        base_url: str | None = None,
        network: NetworkType | str = NetworkType.MAINNET,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.network = NetworkType(network)
        self.base_url = (base_url or get_default_mempool_url(self.network)).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _get(self, endpoint: str) -> httpx.Response:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = await self.client.get(url)
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.error(f"Mempool API call failed: {endpoint} - {e}")
            raise

    async def _get_json(self, endpoint: str) -> Any:
        return (await self._get(endpoint)).json()

    async def get_utxos(self, address: str) -> list[UTXO]:
        utxos = await self._get_json(f"address/{address}/utxo")
        address_info = await self._get_json(f"v1/validate-address/{address}")
        if not address_info.get("isvalid"):
            raise ValueError(f"Invalid Bitcoin address: {address}")
        scriptpubkey = address_info["scriptPubKey"]

        result = [
            UTXO(
                txid=u["txid"],
                vout=u["vout"],
                value=u["value"],
                scriptpubkey=scriptpubkey,
                confirmed=bool(u.get("status", {}).get("confirmed", False)),
                address=address,
            )
            for u in utxos
        ]
        result.sort(key=lambda u: u.value, reverse=True)
        logger.debug(f"Found {len(result)} UTXOs for {address}")
        return result

    async def get_utxo_info(self, txid: str, vout: int) -> UTXO:
        tx_info = await self._get_json(f"tx/{txid}")
        outputs = tx_info.get("vout", [])
        if vout >= len(outputs):
            raise ValueError(
                f"Invalid vout {vout} for transaction {txid} (has {len(outputs)} outputs)"
            )
        output = outputs[vout]
        return UTXO(
            txid=txid,
            vout=vout,
            value=output["value"],
            scriptpubkey=output["scriptpubkey"],
            confirmed=bool(tx_info.get("status", {}).get("confirmed", False)),
            address=output.get("scriptpubkey_address", ""),
        )

    async def get_transaction_hex(self, txid: str) -> str:
        return (await self._get(f"tx/{txid}/hex")).text.strip()

    async def estimate_fee_rate(self, target_blocks: int = 3) -> float:
        fees = await self._get_json("v1/fees/recommended")
        if target_blocks <= 1:
            key = "fastestFee"
        elif target_blocks <= 3:
            key = "halfHourFee"
        elif target_blocks <= 6:
            key = "hourFee"
        else:
            key = "economyFee"
        rate = float(fees.get(key) or fees.get("minimumFee") or 1)
        logger.debug(f"Fee rate for {target_blocks} blocks: {rate} sat/vB ({key})")
        return rate

    async def broadcast_transaction(self, tx_hex: str) -> str:
        url = f"{self.base_url}/tx"
        response = await self.client.post(
            url, content=tx_hex, headers={"Content-Type": "text/plain"}
        )
        if response.is_error:
            text = response.text
            try:
                message = json.loads(text).get("message") or text
            except (ValueError, AttributeError):
                message = text
            logger.error(f"Broadcast rejected ({response.status_code}): {message}")
            raise BroadcastError(
                message or f"Failed to broadcast transaction: {response.reason_phrase}",
                status_code=response.status_code,
            )
        return response.text.strip()

    async def close(self) -> None:
        await self.client.aclose()
