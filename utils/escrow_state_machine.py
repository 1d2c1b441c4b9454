#!/usr/bin/env python3
"""
Escrow State Machine
Transition table and guards for the trade lifecycle
"""

import logging
from typing import AbstractSet, Dict, FrozenSet, Optional, Set

from models import TradeStatus
from services.escrow_errors import ConflictingState

logger = logging.getLogger(__name__)


# Statuses in which no deposit can exist yet
PRE_DEPOSIT_STATUSES: FrozenSet[str] = frozenset({
    TradeStatus.DRAFT.value,
    TradeStatus.AWAITING_DETAILS.value,
    TradeStatus.AWAITING_DEPOSIT.value,
})

# Statuses holding confirmed funds that can be released or refunded
SETTLEABLE_STATUSES: FrozenSet[str] = frozenset({
    TradeStatus.DEPOSITED.value,
    TradeStatus.IN_SETTLEMENT_REVIEW.value,
    TradeStatus.DISPUTED.value,
})

TERMINAL_STATUSES: FrozenSet[str] = frozenset({
    TradeStatus.COMPLETED.value,
    TradeStatus.REFUNDED.value,
    TradeStatus.CANCELLED.value,
})


class EscrowStateValidator:
    """Validates trade state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {TradeStatus.DRAFT.value},
        # Terms flow; draft is also the reset target
        TradeStatus.DRAFT.value: {
            TradeStatus.AWAITING_DETAILS.value,
            TradeStatus.DISPUTED.value,
            TradeStatus.CANCELLED.value,
        },
        TradeStatus.AWAITING_DETAILS.value: {
            TradeStatus.AWAITING_DEPOSIT.value,
            TradeStatus.DRAFT.value,
            TradeStatus.DISPUTED.value,
            TradeStatus.CANCELLED.value,
        },
        # Leaving awaiting_deposit upwards needs reconciliation (or admin override)
        TradeStatus.AWAITING_DEPOSIT.value: {
            TradeStatus.DEPOSITED.value,
            TradeStatus.DRAFT.value,
            TradeStatus.DISPUTED.value,
            TradeStatus.CANCELLED.value,
        },
        TradeStatus.DEPOSITED.value: {
            TradeStatus.IN_SETTLEMENT_REVIEW.value,
            TradeStatus.DISPUTED.value,
            TradeStatus.COMPLETED.value,
            TradeStatus.REFUNDED.value,
        },
        TradeStatus.IN_SETTLEMENT_REVIEW.value: {
            TradeStatus.COMPLETED.value,
            TradeStatus.REFUNDED.value,
            TradeStatus.DEPOSITED.value,  # Request rejected
            TradeStatus.DISPUTED.value,
        },
        TradeStatus.DISPUTED.value: {
            TradeStatus.COMPLETED.value,
            TradeStatus.REFUNDED.value,
            TradeStatus.CANCELLED.value,  # Admin decision, only without deposit
        },
        # Terminal states (no transitions allowed)
        TradeStatus.COMPLETED.value: set(),
        TradeStatus.REFUNDED.value: set(),
        TradeStatus.CANCELLED.value: set(),
    }

    # Transitions only an administrator may force outside the normal flow
    ADMIN_ONLY_TRANSITIONS: Set[tuple] = {
        (TradeStatus.AWAITING_DEPOSIT.value, TradeStatus.DEPOSITED.value),
        (TradeStatus.DEPOSITED.value, TradeStatus.COMPLETED.value),
        (TradeStatus.DEPOSITED.value, TradeStatus.REFUNDED.value),
        (TradeStatus.DISPUTED.value, TradeStatus.CANCELLED.value),
    }

    @classmethod
    def is_valid_transition(
        cls, current_status: Optional[str], new_status: str, is_admin: bool = False
    ) -> bool:
        """Check if state transition is valid with admin context support"""
        if (current_status, new_status) in cls.ADMIN_ONLY_TRANSITIONS and not is_admin:
            return False
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return status in TERMINAL_STATUSES

    @classmethod
    def ensure_transition(
        cls, trade_id: str, current_status: str, new_status: str, is_admin: bool = False
    ) -> None:
        """Raise ConflictingState unless current -> new is allowed"""
        if not cls.is_valid_transition(current_status, new_status, is_admin=is_admin):
            logger.warning(
                f"INVALID_TRANSITION: trade={trade_id} {current_status} -> {new_status} admin={is_admin}"
            )
            raise ConflictingState(
                f"Invalid transition {current_status} -> {new_status} for trade {trade_id}",
                current_status=current_status,
                user_message=f"❌ This action is not possible while the trade is {current_status.replace('_', ' ')}.",
            )

    @classmethod
    def ensure_not_terminal(cls, trade_id: str, status: str) -> None:
        if cls.is_terminal_state(status):
            raise ConflictingState(
                f"Trade {trade_id} is already {status}",
                current_status=status,
                user_message=f"❌ This trade is already {status}.",
            )

    @classmethod
    def ensure_status(cls, trade_id: str, status: str, allowed: AbstractSet[str]) -> None:
        if status not in allowed:
            raise ConflictingState(
                f"Trade {trade_id} is {status}, expected one of {sorted(allowed)}",
                current_status=status,
                user_message=f"❌ This action is not possible while the trade is {status.replace('_', ' ')}.",
            )
