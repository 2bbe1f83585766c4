"""
Access to the external peg-in skeleton constructor.

The constructor is a native module that needs a one-time asynchronous
initialization before it can build transactions. SkeletonBuilder performs
that initialization lazily, exactly once, even when several flows ask for it
concurrently. A failed initialization is retried by the next caller.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from loguru import logger

from btcvault.errors import CollaboratorError, InvalidTransaction
from btcvault.funding import parse_unfunded_pegin_tx
from btcvault.models import NetworkType, PeginTransactionSkeleton


class SkeletonConstructor(Protocol):
    async def initialize(self) -> None: ...

    def create_pegin(
        self,
        depositor_pubkey: str,
        claimer_pubkey: str,
        challenger_pubkeys: list[str],
        amount: int,
        network: str,
    ) -> dict[str, Any]: ...


class SkeletonBuilder:
    def __init__(self, constructor: SkeletonConstructor):
        self.constructor = constructor
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return
        async with self._lock:
            if self._initialized:
                return
            logger.debug("Initializing peg-in skeleton constructor")
            await self.constructor.initialize()
            self._initialized = True

    async def create_pegin(
        self,
        depositor_pubkey: str,
        claimer_pubkey: str,
        challenger_pubkeys: list[str],
        amount: int,
        network: NetworkType | str,
    ) -> PeginTransactionSkeleton:
        """
        Build the zero-input peg-in skeleton.

        The returned transaction is checked to have no inputs and a single
        output matching the reported vault script and value.
        """
        try:
            await self.initialize()
            result = self.constructor.create_pegin(
                depositor_pubkey,
                claimer_pubkey,
                list(challenger_pubkeys),
                amount,
                NetworkType(network).value,
            )
        except Exception as e:
            raise CollaboratorError("create_skeleton", e) from e

        skeleton = PeginTransactionSkeleton(
            tx_hex=result["tx_hex"],
            txid=result["txid"],
            vault_scriptpubkey=result["vault_scriptpubkey"],
            vault_value=int(result["vault_value"]),
        )

        vault_output = parse_unfunded_pegin_tx(skeleton.tx_hex).outputs[0]
        if (
            vault_output.scriptpubkey.hex() != skeleton.vault_scriptpubkey.lower()
            or vault_output.value != skeleton.vault_value
        ):
            raise InvalidTransaction("Skeleton vault output does not match reported script/value")
        return skeleton
