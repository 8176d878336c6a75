"""Campaign state machines: pure logic, no DB dependency.

A campaign carries three independent lifecycles: the business status, the
escrow (money) status and the proof verification status. Each has its own
transition table keyed by (current_state, action) and the set of actors
allowed to trigger it.
"""

from enum import StrEnum

from marketplace.core.errors import StateConflictError


class CampaignStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


class EscrowStatus(StrEnum):
    NONE = "none"
    PAYMENT_PENDING = "payment_pending"
    HELD = "held"
    RELEASED = "released"


class VerificationStatus(StrEnum):
    NOT_STARTED = "not_started"
    PROOF_SUBMITTED = "proof_submitted"
    UNDER_REVIEW = "under_review"
    VERIFIED = "verified"
    REJECTED = "rejected"


class ProofStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CampaignAction(StrEnum):
    ACTIVATE = "activate"
    COMPLETE = "complete"


class EscrowAction(StrEnum):
    REQUEST_PAYMENT = "request_payment"
    CONFIRM_PAYMENT = "confirm_payment"
    CANCEL_PAYMENT = "cancel_payment"
    RELEASE = "release"


class VerificationAction(StrEnum):
    SUBMIT_PROOF = "submit_proof"
    START_REVIEW = "start_review"
    APPROVE = "approve"
    REJECT = "reject"


class Actor(StrEnum):
    ADVERTISER = "advertiser"
    CREATOR = "creator"
    ADMIN = "admin"
    SYSTEM = "system"


class InvalidTransitionError(StateConflictError):
    """Raised when a campaign transition is not allowed."""

    def __init__(self, machine: str, current: str, action: str, actor: str | None = None):
        self.machine = machine
        self.current = current
        self.action = action
        self.actor = actor
        msg = f"Invalid {machine} transition: {current} + {action}"
        if actor:
            msg += f" by {actor}"
        super().__init__(msg)


_REVIEWERS = frozenset({Actor.ADVERTISER, Actor.ADMIN})
_PARTIES = frozenset({Actor.ADVERTISER, Actor.CREATOR, Actor.ADMIN})

CAMPAIGN_TRANSITIONS: dict[
    tuple[CampaignStatus, CampaignAction], tuple[CampaignStatus, frozenset[Actor]]
] = {
    (CampaignStatus.PENDING, CampaignAction.ACTIVATE): (CampaignStatus.ACTIVE, _PARTIES),
    # Completion only happens as a side effect of proof approval or escrow release
    (CampaignStatus.PENDING, CampaignAction.COMPLETE): (
        CampaignStatus.COMPLETED,
        frozenset({Actor.SYSTEM}),
    ),
    (CampaignStatus.ACTIVE, CampaignAction.COMPLETE): (
        CampaignStatus.COMPLETED,
        frozenset({Actor.SYSTEM}),
    ),
}

ESCROW_TRANSITIONS: dict[
    tuple[EscrowStatus, EscrowAction], tuple[EscrowStatus, frozenset[Actor]]
] = {
    (EscrowStatus.NONE, EscrowAction.REQUEST_PAYMENT): (
        EscrowStatus.PAYMENT_PENDING,
        frozenset({Actor.ADVERTISER, Actor.ADMIN}),
    ),
    (EscrowStatus.PAYMENT_PENDING, EscrowAction.CONFIRM_PAYMENT): (
        EscrowStatus.HELD,
        frozenset({Actor.SYSTEM}),
    ),
    (EscrowStatus.PAYMENT_PENDING, EscrowAction.CANCEL_PAYMENT): (
        EscrowStatus.NONE,
        frozenset({Actor.SYSTEM}),
    ),
    (EscrowStatus.PAYMENT_PENDING, EscrowAction.RELEASE): (EscrowStatus.RELEASED, _REVIEWERS),
    (EscrowStatus.HELD, EscrowAction.RELEASE): (EscrowStatus.RELEASED, _REVIEWERS),
}

VERIFICATION_TRANSITIONS: dict[
    tuple[VerificationStatus, VerificationAction],
    tuple[VerificationStatus, frozenset[Actor]],
] = {
    (VerificationStatus.NOT_STARTED, VerificationAction.SUBMIT_PROOF): (
        VerificationStatus.PROOF_SUBMITTED,
        frozenset({Actor.CREATOR}),
    ),
    # Several proofs may be attached before anyone reviews
    (VerificationStatus.PROOF_SUBMITTED, VerificationAction.SUBMIT_PROOF): (
        VerificationStatus.PROOF_SUBMITTED,
        frozenset({Actor.CREATOR}),
    ),
    # Resubmission after rejection creates a new proof row
    (VerificationStatus.REJECTED, VerificationAction.SUBMIT_PROOF): (
        VerificationStatus.PROOF_SUBMITTED,
        frozenset({Actor.CREATOR}),
    ),
    (VerificationStatus.PROOF_SUBMITTED, VerificationAction.START_REVIEW): (
        VerificationStatus.UNDER_REVIEW,
        _REVIEWERS,
    ),
    (VerificationStatus.PROOF_SUBMITTED, VerificationAction.APPROVE): (
        VerificationStatus.VERIFIED,
        _REVIEWERS,
    ),
    (VerificationStatus.UNDER_REVIEW, VerificationAction.APPROVE): (
        VerificationStatus.VERIFIED,
        _REVIEWERS,
    ),
    (VerificationStatus.PROOF_SUBMITTED, VerificationAction.REJECT): (
        VerificationStatus.REJECTED,
        _REVIEWERS,
    ),
    (VerificationStatus.UNDER_REVIEW, VerificationAction.REJECT): (
        VerificationStatus.REJECTED,
        _REVIEWERS,
    ),
    # Another pending proof may still be reviewed after one was rejected
    (VerificationStatus.REJECTED, VerificationAction.APPROVE): (
        VerificationStatus.VERIFIED,
        _REVIEWERS,
    ),
    (VerificationStatus.REJECTED, VerificationAction.REJECT): (
        VerificationStatus.REJECTED,
        _REVIEWERS,
    ),
}

RELEASABLE_ESCROW_STATUSES: frozenset[EscrowStatus] = frozenset({
    EscrowStatus.PAYMENT_PENDING,
    EscrowStatus.HELD,
})

TERMINAL_CAMPAIGN_STATUSES: frozenset[CampaignStatus] = frozenset({CampaignStatus.COMPLETED})


def _validate(table: dict, machine: str, state_cls, action_cls, current: str, action: str, actor: str):
    try:
        current_state = state_cls(current)
        action_enum = action_cls(action)
        actor_enum = Actor(actor)
    except ValueError:
        raise InvalidTransitionError(machine, current, action, actor)

    key = (current_state, action_enum)
    if key not in table:
        raise InvalidTransitionError(machine, current, action, actor)

    new_state, allowed_actors = table[key]
    if actor_enum not in allowed_actors:
        raise InvalidTransitionError(machine, current, action, actor)
    return new_state


def validate_campaign_transition(current: str, action: str, actor: str) -> CampaignStatus:
    """Validate and return the new business status.

    Raises InvalidTransitionError if the transition is not allowed.
    """
    return _validate(
        CAMPAIGN_TRANSITIONS, "campaign", CampaignStatus, CampaignAction, current, action, actor
    )


def validate_escrow_transition(current: str, action: str, actor: str) -> EscrowStatus:
    """Validate and return the new escrow status."""
    return _validate(
        ESCROW_TRANSITIONS, "escrow", EscrowStatus, EscrowAction, current, action, actor
    )


def validate_verification_transition(current: str, action: str, actor: str) -> VerificationStatus:
    """Validate and return the new verification status."""
    return _validate(
        VERIFICATION_TRANSITIONS,
        "verification",
        VerificationStatus,
        VerificationAction,
        current,
        action,
        actor,
    )


def _actions_for(table: dict, state_cls, current: str, actor: Actor) -> list[str]:
    try:
        current_state = state_cls(current)
    except ValueError:
        return []
    return [
        action.value
        for (state, action), (_, allowed) in table.items()
        if state == current_state and actor in allowed
    ]


def get_available_actions(
    status: str, escrow_status: str, verification_status: str, actor: str,
) -> list[str]:
    """Return the action names the actor may trigger on a campaign right now."""
    try:
        actor_enum = Actor(actor)
    except ValueError:
        return []

    actions: list[str] = []
    if status not in TERMINAL_CAMPAIGN_STATUSES:
        actions += _actions_for(CAMPAIGN_TRANSITIONS, CampaignStatus, status, actor_enum)
    actions += _actions_for(ESCROW_TRANSITIONS, EscrowStatus, escrow_status, actor_enum)
    actions += _actions_for(
        VERIFICATION_TRANSITIONS, VerificationStatus, verification_status, actor_enum
    )
    # Keep first occurrence order while dropping duplicates
    return list(dict.fromkeys(actions))
