"""
Tests for signed transaction broadcast.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from btcvault.broadcast import Broadcaster
from btcvault.errors import BroadcastError, InvalidTransaction
from btcvault.transaction import Transaction, TxIn, TxOut


def _signed_tx() -> Transaction:
    return Transaction(
        inputs=[TxIn(txid="aa" * 32, vout=0, witness=[b"\x01" * 64])],
        outputs=[TxOut(90_000, bytes.fromhex("5120" + "ab" * 32))],
    )


class TestBroadcaster:
    """Tests for Broadcaster."""

    @pytest.fixture
    def mock_backend(self):
        """Create a mock relay backend."""
        backend = MagicMock()
        backend.broadcast_transaction = AsyncMock(return_value=_signed_tx().txid)
        return backend

    @pytest.mark.asyncio
    async def test_broadcast(self, mock_backend) -> None:
        tx = _signed_tx()
        txid = await Broadcaster(mock_backend).broadcast(tx.to_hex())

        assert txid == tx.txid
        mock_backend.broadcast_transaction.assert_awaited_once_with(tx.to_hex())

    @pytest.mark.asyncio
    async def test_txid_mismatch_uses_relay_txid(self, mock_backend, log_records) -> None:
        mock_backend.broadcast_transaction.return_value = "ff" * 32

        txid = await Broadcaster(mock_backend).broadcast(_signed_tx().to_hex())

        assert txid == "ff" * 32
        assert any(r["level"].name == "WARNING" for r in log_records)

    @pytest.mark.asyncio
    async def test_empty_relay_response_falls_back(self, mock_backend) -> None:
        mock_backend.broadcast_transaction.return_value = ""
        assert await Broadcaster(mock_backend).broadcast(_signed_tx().to_hex()) == (
            _signed_tx().txid
        )

    @pytest.mark.asyncio
    async def test_relay_error_propagates(self, mock_backend) -> None:
        mock_backend.broadcast_transaction.side_effect = BroadcastError("txn-mempool-conflict", 400)

        with pytest.raises(BroadcastError, match="txn-mempool-conflict"):
            await Broadcaster(mock_backend).broadcast(_signed_tx().to_hex())
        assert mock_backend.broadcast_transaction.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_hex_not_sent(self, mock_backend) -> None:
        with pytest.raises(InvalidTransaction):
            await Broadcaster(mock_backend).broadcast("zz")
        mock_backend.broadcast_transaction.assert_not_awaited()
