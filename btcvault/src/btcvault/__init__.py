"""
btcvault - Depositor-side tooling for BTC vault peg-ins

Provides peg-in funding, payout leaf construction and payout co-signing.
"""

__version__ = "0.1.0"

from btcvault.constants import DUST_THRESHOLD, NUMS_INTERNAL_KEY
from btcvault.errors import (
    BroadcastError,
    CollaboratorError,
    InsufficientFunds,
    InvalidKeyFormat,
    InvalidTransaction,
    MissingCounterpartyData,
    PsbtError,
    SignatureExtractionFailure,
    SignatureVerificationMismatch,
    VaultError,
)
from btcvault.fees import estimate_pegin_fee, get_max_pegin_fee
from btcvault.funding import build_pegin_transaction, fund_pegin
from btcvault.models import (
    UTXO,
    ClaimerTransactionSet,
    FundingSelection,
    NetworkType,
    ParticipantKeySet,
    SignatureMap,
)
from btcvault.payout_signer import sign_payout_transaction
from btcvault.state_machine import ContractStatus, LocalStatus, PeginAction, derive_pegin_state
from btcvault.taproot import build_payout_connector, build_payout_script
from btcvault.utxo import select_utxos, select_utxos_for_pegin

__all__ = [
    "BroadcastError",
    "ClaimerTransactionSet",
    "CollaboratorError",
    "ContractStatus",
    "DUST_THRESHOLD",
    "FundingSelection",
    "InsufficientFunds",
    "InvalidKeyFormat",
    "InvalidTransaction",
    "LocalStatus",
    "MissingCounterpartyData",
    "NUMS_INTERNAL_KEY",
    "NetworkType",
    "ParticipantKeySet",
    "PeginAction",
    "PsbtError",
    "SignatureExtractionFailure",
    "SignatureMap",
    "SignatureVerificationMismatch",
    "UTXO",
    "VaultError",
    "build_payout_connector",
    "build_payout_script",
    "build_pegin_transaction",
    "derive_pegin_state",
    "estimate_pegin_fee",
    "fund_pegin",
    "get_max_pegin_fee",
    "select_utxos",
    "select_utxos_for_pegin",
    "sign_payout_transaction",
]
