"""
Exception hierarchy for vault peg-in and payout flows.
"""

from __future__ import annotations


class VaultError(Exception):
    """Base class for all vault errors."""


class InsufficientFunds(VaultError):
    """No UTXO subset covers the peg-in amount plus its fee."""

    def __init__(self, required: int, available: int, largest_utxo: int) -> None:
        self.required = required
        self.available = available
        self.shortfall = max(required - available, 0)
        self.largest_utxo = largest_utxo
        super().__init__(
            f"Insufficient funds: need {required} sats, have {available} sats "
            f"(short by {self.shortfall} sats, largest UTXO {largest_utxo} sats)"
        )


class InvalidKeyFormat(VaultError, ValueError):
    """Public key is not a valid 32-byte x-only or 33-byte compressed key."""


class InvalidTransaction(VaultError, ValueError):
    """Transaction hex could not be parsed or has an unexpected shape."""


class PsbtError(VaultError, ValueError):
    """Malformed or incomplete PSBT."""


class MissingCounterpartyData(VaultError):
    """Vault provider did not supply data that cannot be derived locally."""


class SignatureExtractionFailure(VaultError):
    """Wallet response carries no recognizable depositor signature."""


class SignatureVerificationMismatch(VaultError):
    """Extracted signature does not verify against the script-path sighash."""

    def __init__(self, message: str, diagnosis: str = "unknown") -> None:
        self.diagnosis = diagnosis
        super().__init__(message)


class CollaboratorError(VaultError):
    """An external collaborator (relay, wallet, vault provider) failed."""

    def __init__(self, step: str, cause: BaseException) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"{step} failed: {cause}")


class BroadcastError(VaultError):
    """Relay rejected the transaction."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
