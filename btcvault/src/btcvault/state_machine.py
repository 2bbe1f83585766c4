"""
Peg-in lifecycle state machine.

The on-chain contract status is authoritative. Local statuses are overlays
recorded by this client between signing something and seeing its effect on
chain; they are cleared once the contract status catches up.

    PENDING -> VERIFIED -> AVAILABLE -> IN_POSITION

EXPIRED is entered from any other status through an external liquidation
or redemption that this client does not initiate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class ContractStatus(IntEnum):
    PENDING = 0
    VERIFIED = 1
    AVAILABLE = 2
    IN_POSITION = 3
    EXPIRED = 4


class LocalStatus(str, Enum):
    PENDING = "pending"
    PAYOUT_SIGNED = "payout_signed"
    BROADCASTING = "broadcasting"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"


class PeginAction(str, Enum):
    SIGN_PAYOUT_TRANSACTIONS = "SIGN_PAYOUT_TRANSACTIONS"
    SIGN_AND_BROADCAST_TO_BITCOIN = "SIGN_AND_BROADCAST_TO_BITCOIN"
    REDEEM = "REDEEM"
    NONE = "NONE"


class DisplayVariant(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class PeginState:
    contract_status: ContractStatus | int
    local_status: LocalStatus | None
    display_label: str
    display_variant: DisplayVariant
    available_actions: tuple[PeginAction, ...] = field(default=(PeginAction.NONE,))
    message: str | None = None

    @property
    def next_action(self) -> PeginAction:
        """The single permitted action (NONE when nothing may be done)."""
        return self.available_actions[0]


def _coerce_status(contract_status: ContractStatus | int) -> ContractStatus | int:
    try:
        return ContractStatus(contract_status)
    except ValueError:
        return contract_status


def derive_pegin_state(
    contract_status: ContractStatus | int,
    local_status: LocalStatus | str | None = None,
    transactions_ready: bool = False,
) -> PeginState:
    """
    Map on-chain status and local overlay to a display state and next action.

    Args:
        contract_status: Status read from the vault contract
        local_status: Locally cached overlay, if any
        transactions_ready: Vault provider has prepared claim/payout transactions
    """
    status = _coerce_status(contract_status)
    local = LocalStatus(local_status) if local_status is not None else None

    def state(
        label: str,
        variant: DisplayVariant,
        action: PeginAction = PeginAction.NONE,
        message: str | None = None,
    ) -> PeginState:
        return PeginState(status, local, label, variant, (action,), message)

    if status == ContractStatus.PENDING:
        if local == LocalStatus.PAYOUT_SIGNED:
            return state(
                "Processing",
                DisplayVariant.PENDING,
                message=(
                    "Payout signatures submitted. Waiting for vault provider to collect "
                    "acknowledgements and update on-chain status..."
                ),
            )
        if not transactions_ready:
            return state(
                "Pending",
                DisplayVariant.PENDING,
                message="Waiting for vault provider to prepare Claim and Payout transactions...",
            )
        return state("Ready to Sign", DisplayVariant.PENDING, PeginAction.SIGN_PAYOUT_TRANSACTIONS)

    if status == ContractStatus.VERIFIED:
        if local == LocalStatus.BROADCASTING:
            return state(
                "Broadcasting",
                DisplayVariant.PENDING,
                message="Signing and broadcasting Bitcoin transaction...",
            )
        if local == LocalStatus.CONFIRMING:
            return state(
                "Confirming",
                DisplayVariant.PENDING,
                message="Bitcoin transaction broadcasted. Waiting for network confirmations...",
            )
        return state("Verified", DisplayVariant.PENDING, PeginAction.SIGN_AND_BROADCAST_TO_BITCOIN)

    if status == ContractStatus.AVAILABLE:
        return state("Available", DisplayVariant.ACTIVE, PeginAction.REDEEM)

    if status == ContractStatus.IN_POSITION:
        return state(
            "In Position",
            DisplayVariant.ACTIVE,
            message="Vault is currently being used as collateral in a lending position",
        )

    if status == ContractStatus.EXPIRED:
        return state(
            "Expired",
            DisplayVariant.INACTIVE,
            message="Vault has been redeemed or liquidated",
        )

    return state("Unknown", DisplayVariant.INACTIVE)


def can_perform_action(state: PeginState, action: PeginAction) -> bool:
    return action != PeginAction.NONE and action in state.available_actions


PRIMARY_ACTION_LABELS = {
    PeginAction.SIGN_PAYOUT_TRANSACTIONS: "Sign Payout Transactions",
    PeginAction.SIGN_AND_BROADCAST_TO_BITCOIN: "Sign & Broadcast to Bitcoin",
    PeginAction.REDEEM: "Redeem",
}


def get_primary_action_button(state: PeginState) -> tuple[str, PeginAction] | None:
    """(label, action) for the primary button, or None when no action is allowed."""
    for action, label in PRIMARY_ACTION_LABELS.items():
        if action in state.available_actions:
            return label, action
    return None


def get_in_flight_local_status(action: PeginAction) -> LocalStatus | None:
    """Overlay to record while an action is being carried out."""
    if action == PeginAction.SIGN_AND_BROADCAST_TO_BITCOIN:
        return LocalStatus.BROADCASTING
    return None


def get_next_local_status(action: PeginAction) -> LocalStatus | None:
    """Overlay to record once an action completed locally."""
    if action == PeginAction.SIGN_PAYOUT_TRANSACTIONS:
        return LocalStatus.PAYOUT_SIGNED
    if action == PeginAction.SIGN_AND_BROADCAST_TO_BITCOIN:
        return LocalStatus.CONFIRMING
    return None


def should_clear_local_status(
    contract_status: ContractStatus | int, local_status: LocalStatus | str
) -> bool:
    """True once the on-chain status has moved past what the overlay describes."""
    local = LocalStatus(local_status)
    if contract_status == ContractStatus.VERIFIED and local == LocalStatus.PAYOUT_SIGNED:
        return True
    return contract_status >= ContractStatus.AVAILABLE


def is_valid_transition(current: ContractStatus, new: ContractStatus) -> bool:
    """Forward-only transitions. EXPIRED is terminal and reachable from any other state."""
    if current == ContractStatus.EXPIRED:
        return False
    if new == ContractStatus.EXPIRED:
        return True
    return new == current + 1
