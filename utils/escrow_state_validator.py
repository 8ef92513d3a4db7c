"""
Escrow State Transition Validator
================================

Holds the escrow lifecycle table and decides, for an intent against the
escrow's current effective status, whether it may proceed, is a duplicate of
a transition that already happened, or is invalid.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Set, Tuple

from models import EscrowStatus, EscrowTxKind
from utils.exceptions import AlreadyAdvancedError, BadInputError, ForbiddenError, TerminalStateError

logger = logging.getLogger(__name__)


class OrderRole:
    """Role of a principal relative to one order"""
    BUYER = "buyer"
    SELLER = "seller"
    ARBITRATOR = "arbitrator"
    NONE = "none"


@dataclass(frozen=True)
class TransitionRule:
    from_status: EscrowStatus
    to_statuses: FrozenSet[EscrowStatus]
    roles: FrozenSet[str]


class EscrowStateValidator:
    """
    Validates escrow state transitions to ensure lifecycle integrity.

    Locked -> ReleasePending -> Complete
    Locked -> Disputed -> Complete | Refunded
    Locked -> Complete via seller timeout claim
    Complete and Refunded are terminal.
    """

    VALID_TRANSITIONS: Dict[EscrowStatus, Set[EscrowStatus]] = {
        EscrowStatus.LOCKED: {
            EscrowStatus.RELEASE_PENDING,
            EscrowStatus.DISPUTED,
            EscrowStatus.COMPLETE,
        },
        EscrowStatus.RELEASE_PENDING: {
            EscrowStatus.COMPLETE,
        },
        EscrowStatus.DISPUTED: {
            EscrowStatus.COMPLETE,
            EscrowStatus.REFUNDED,
        },
        # Terminal states, no transitions allowed
        EscrowStatus.COMPLETE: set(),
        EscrowStatus.REFUNDED: set(),
    }

    TERMINAL_STATES: Set[EscrowStatus] = {
        EscrowStatus.COMPLETE,
        EscrowStatus.REFUNDED,
    }

    # How far along the lifecycle a status is; used to tell duplicates from invalid intents
    STAGE: Dict[EscrowStatus, int] = {
        EscrowStatus.LOCKED: 0,
        EscrowStatus.RELEASE_PENDING: 1,
        EscrowStatus.DISPUTED: 1,
        EscrowStatus.COMPLETE: 2,
        EscrowStatus.REFUNDED: 2,
    }

    RULES: Dict[EscrowTxKind, TransitionRule] = {
        EscrowTxKind.CONFIRM_DELIVERY: TransitionRule(
            EscrowStatus.LOCKED, frozenset({EscrowStatus.RELEASE_PENDING}), frozenset({OrderRole.BUYER})
        ),
        EscrowTxKind.DISPUTE: TransitionRule(
            EscrowStatus.LOCKED, frozenset({EscrowStatus.DISPUTED}), frozenset({OrderRole.BUYER, OrderRole.SELLER})
        ),
        EscrowTxKind.RELEASE: TransitionRule(
            EscrowStatus.RELEASE_PENDING, frozenset({EscrowStatus.COMPLETE}), frozenset({OrderRole.SELLER})
        ),
        EscrowTxKind.TIMEOUT_CLAIM: TransitionRule(
            EscrowStatus.LOCKED, frozenset({EscrowStatus.COMPLETE}), frozenset({OrderRole.SELLER})
        ),
        EscrowTxKind.RESOLVE: TransitionRule(
            EscrowStatus.DISPUTED,
            frozenset({EscrowStatus.COMPLETE, EscrowStatus.REFUNDED}),
            frozenset({OrderRole.ARBITRATOR}),
        ),
    }

    @classmethod
    def is_terminal_state(cls, status: EscrowStatus) -> bool:
        return status in cls.TERMINAL_STATES

    @classmethod
    def validate_transition(
        cls,
        from_status: EscrowStatus,
        to_status: EscrowStatus,
        escrow_ref: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """Return (is_valid, reason) for a raw status change"""
        ref = f"Escrow {escrow_ref}" if escrow_ref else "Escrow"
        if from_status == to_status:
            return True, "No status change required"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())
        if to_status in valid_next_states:
            return True, "Valid state transition"

        logger.error(
            f"❌ INVALID_TRANSITION: {ref} {from_status.value} -> {to_status.value} "
            f"Valid options: {sorted(s.value for s in valid_next_states)}"
        )
        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @classmethod
    def authorize(cls, kind: EscrowTxKind, role: str):
        rule = cls.RULES[kind]
        if role not in rule.roles:
            allowed = " or ".join(sorted(rule.roles))
            raise ForbiddenError(f"Only the {allowed} may perform {kind.value}")

    @classmethod
    def check_intent(cls, kind: EscrowTxKind, effective_status: EscrowStatus, details: Optional[dict] = None) -> TransitionRule:
        """
        Decide whether an intent may proceed from the escrow's effective status.

        Raises TERMINAL on a finished escrow, ALREADY_ADVANCED when the escrow
        has already moved past the intent's starting state, BAD_INPUT otherwise.
        """
        rule = cls.RULES[kind]
        details = dict(details or {})
        details.setdefault("status", effective_status.value)

        if cls.is_terminal_state(effective_status):
            raise TerminalStateError(f"Escrow is already {effective_status.value}", details=details)

        if effective_status == rule.from_status:
            return rule

        if cls.STAGE[effective_status] > cls.STAGE[rule.from_status]:
            raise AlreadyAdvancedError(
                f"Escrow already moved to {effective_status.value}", details=details
            )

        raise BadInputError(
            f"{kind.value} requires status {rule.from_status.value}, escrow is {effective_status.value}",
            details=details,
        )
