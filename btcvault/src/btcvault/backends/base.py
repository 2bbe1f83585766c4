"""
Base network relay interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from btcvault.models import UTXO


class BitcoinBackend(ABC):
    """
    Read access to the Bitcoin network plus transaction relay.

    Implementations do not retry; callers decide whether a failed request is
    worth repeating.
    """

    @abstractmethod
    async def get_utxos(self, address: str) -> list[UTXO]:
        """Get UTXOs (confirmed and unconfirmed) for an address"""

    @abstractmethod
    async def get_utxo_info(self, txid: str, vout: int) -> UTXO:
        """Get value and scriptPubKey of a specific output"""

    @abstractmethod
    async def get_transaction_hex(self, txid: str) -> str:
        """Get raw transaction hex"""

    @abstractmethod
    async def estimate_fee_rate(self, target_blocks: int = 3) -> float:
        """Estimate fee in sat/vbyte for target confirmation blocks"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    async def close(self) -> None:
        """Release network resources"""
