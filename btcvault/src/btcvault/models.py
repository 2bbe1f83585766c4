"""
Data models shared by the peg-in and payout flows.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from btcvault.constants import SCHNORR_SIGNATURE_SIZE, X_ONLY_PUBKEY_SIZE
from btcvault.crypto import process_public_key_to_x_only, strip_hex_prefix, to_x_only
from btcvault.errors import InvalidKeyFormat


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


DEFAULT_MEMPOOL_URLS: dict[NetworkType, str] = {
    NetworkType.MAINNET: "https://mempool.space/api",
    NetworkType.TESTNET: "https://mempool.space/testnet/api",
    NetworkType.SIGNET: "https://mempool.space/signet/api",
    NetworkType.REGTEST: "http://127.0.0.1:8999/api",
}


def get_default_mempool_url(network: NetworkType | str) -> str:
    return DEFAULT_MEMPOOL_URLS[NetworkType(network)]


@dataclass(frozen=True)
class UTXO:
    """Snapshot of a spendable output as reported by the relay."""

    txid: str
    vout: int
    value: int
    scriptpubkey: str
    confirmed: bool = True
    address: str = ""

    @property
    def script(self) -> bytes:
        return bytes.fromhex(self.scriptpubkey)

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class FundingSelection:
    """Inputs chosen to fund a peg-in, with the resulting fee and change."""

    selected: list[UTXO]
    fee: int
    change: int

    @property
    def total_value(self) -> int:
        return sum(u.value for u in self.selected)


@dataclass(frozen=True)
class PeginTransactionSkeleton:
    """Zero-input, single-output peg-in transaction from the skeleton constructor."""

    tx_hex: str
    txid: str
    vault_scriptpubkey: str
    vault_value: int


@dataclass
class UnsignedPeginTransaction:
    """
    Funded peg-in transaction ready for wallet signing.

    txid is the expected ID: it stays valid for segwit/taproot inputs but is
    re-checked once the signed transaction is broadcast.
    """

    tx_hex: str
    txid: str
    selected_utxos: list[UTXO]
    fee: int
    change: int
    vault_scriptpubkey: str = ""
    vault_value: int = 0


def _normalize_key(value: str | bytes) -> str:
    if isinstance(value, (bytes, bytearray)):
        return to_x_only(bytes(value)).hex()
    return process_public_key_to_x_only(value)


class _KeyedModel(BaseModel):
    """Base for models holding public keys; bad keys raise InvalidKeyFormat."""

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            for error in e.errors():
                cause = error.get("ctx", {}).get("error")
                if isinstance(cause, InvalidKeyFormat):
                    raise InvalidKeyFormat(str(cause)) from e
            raise


class ParticipantKeySet(_KeyedModel):
    """
    Keys committed to by the payout leaf.

    All keys are stored as lowercase 32-byte x-only hex. Liquidator order is
    significant and must match the vault provider's canonical order.
    """

    model_config = ConfigDict(frozen=True)

    depositor: str
    vault_provider: str
    liquidators: list[str] = Field(..., min_length=1)

    @field_validator("depositor", "vault_provider", mode="before")
    @classmethod
    def normalize_key(cls, v: str | bytes) -> str:
        return _normalize_key(v)

    @field_validator("liquidators", mode="before")
    @classmethod
    def normalize_liquidators(cls, v: list[str | bytes]) -> list[str]:
        return [_normalize_key(k) for k in v]

    @model_validator(mode="after")
    def check_distinct(self) -> ParticipantKeySet:
        if len(set(self.liquidators)) != len(self.liquidators):
            raise ValueError("Duplicate liquidator public keys")
        return self

    @property
    def depositor_bytes(self) -> bytes:
        return bytes.fromhex(self.depositor)

    @property
    def vault_provider_bytes(self) -> bytes:
        return bytes.fromhex(self.vault_provider)

    @property
    def liquidator_bytes(self) -> list[bytes]:
        return [bytes.fromhex(k) for k in self.liquidators]


class ClaimerTransactionSet(_KeyedModel):
    """Claim and payout transactions the vault provider prepared for one claimer."""

    claimer_pubkey: str
    claim_tx_hex: str
    payout_tx_hex: str

    @field_validator("claimer_pubkey", mode="before")
    @classmethod
    def normalize_claimer(cls, v: str) -> str:
        return process_public_key_to_x_only(v)

    @field_validator("claim_tx_hex", "payout_tx_hex", mode="before")
    @classmethod
    def strip_prefix(cls, v: str) -> str:
        return strip_hex_prefix(v)


class SignatureMap(Mapping[bytes, bytes]):
    """
    Depositor payout signatures keyed by 32-byte x-only claimer key.

    Compressed claimer keys are reduced to x-only on insertion so a claimer
    can never appear twice under different encodings.
    """

    def __init__(self) -> None:
        self._entries: dict[bytes, bytes] = {}

    def add(self, claimer_pubkey: bytes | str, signature: bytes) -> None:
        key = self._key(claimer_pubkey)
        if len(signature) != SCHNORR_SIGNATURE_SIZE:
            raise ValueError(
                f"Signature must be {SCHNORR_SIGNATURE_SIZE} bytes, got {len(signature)}"
            )
        if key in self._entries:
            raise ValueError(f"Duplicate signature for claimer {key.hex()}")
        self._entries[key] = bytes(signature)

    @staticmethod
    def _key(claimer_pubkey: bytes | str) -> bytes:
        if isinstance(claimer_pubkey, str):
            return bytes.fromhex(process_public_key_to_x_only(claimer_pubkey))
        key = to_x_only(claimer_pubkey)
        if len(key) != X_ONLY_PUBKEY_SIZE:
            raise InvalidKeyFormat(f"Invalid claimer key length: {len(key)}")
        return key

    def __getitem__(self, claimer_pubkey: bytes) -> bytes:
        return self._entries[self._key(claimer_pubkey)]

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def to_rpc(self) -> dict[str, str]:
        """Hex-encoded form submitted to the vault provider."""
        return {key.hex(): sig.hex() for key, sig in self._entries.items()}

