"""
Bitcoin network relay backends.

Available backends:
- MempoolBackend: mempool.space / esplora-style REST API
"""

from btcvault.backends.base import BitcoinBackend
from btcvault.backends.mempool import MempoolBackend

__all__ = [
    "BitcoinBackend",
    "MempoolBackend",
]
