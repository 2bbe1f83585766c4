"""
Signed transaction broadcast.
"""

from __future__ import annotations

from loguru import logger

from btcvault.backends.base import BitcoinBackend
from btcvault.transaction import Transaction


class Broadcaster:
    """
    Submit signed transactions through a relay backend.

    Relay errors propagate unchanged; retrying is left to the caller.
    """

    def __init__(self, backend: BitcoinBackend):
        self.backend = backend

    async def broadcast(self, signed_tx_hex: str) -> str:
        tx = Transaction.from_hex(signed_tx_hex)
        expected_txid = tx.txid
        logger.info(f"Broadcasting transaction {expected_txid}")

        txid = await self.backend.broadcast_transaction(signed_tx_hex)

        if txid and txid != expected_txid:
            logger.warning(f"Relay returned txid {txid}, expected {expected_txid}")
        logger.info(f"Transaction broadcast: {txid or expected_txid}")
        return txid or expected_txid
