"""Conversation lifecycle rules shared by every repository backend.

The machine is intentionally loose: any state can be set by hand, and any
message activity re-opens the conversation, so a manual CLOSED or WAITING is
overridden by the next inbound or outbound message.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .models import ConversationState

INITIAL_STATE: ConversationState = "OPEN"
CONVERSATION_STATES: frozenset[str] = frozenset({"OPEN", "WAITING", "CLOSED"})


class InvalidConversationStateError(ValueError):
    """Raised when a state outside OPEN/WAITING/CLOSED is requested."""


@dataclass(frozen=True)
class ConversationTransition:
    state: ConversationState
    assigned_to_id: str | None
    last_message_at: datetime


def apply_message_activity(
    current: ConversationTransition,
    *,
    occurred_at: datetime,
) -> ConversationTransition:
    # An outbound send is stamped when dispatch started, so it can land after a newer inbound.
    return ConversationTransition(
        state="OPEN",
        assigned_to_id=current.assigned_to_id,
        last_message_at=max(current.last_message_at, occurred_at),
    )


def apply_assign(current: ConversationTransition, *, user_id: str) -> ConversationTransition:
    return ConversationTransition(
        state="OPEN",
        assigned_to_id=user_id,
        last_message_at=current.last_message_at,
    )


def apply_unassign(current: ConversationTransition) -> ConversationTransition:
    return ConversationTransition(
        state=current.state,
        assigned_to_id=None,
        last_message_at=current.last_message_at,
    )


def apply_set_state(current: ConversationTransition, *, state: str) -> ConversationTransition:
    if state not in CONVERSATION_STATES:
        raise InvalidConversationStateError(f"unknown conversation state: {state}")
    return ConversationTransition(
        state=state,  # type: ignore[arg-type]
        assigned_to_id=current.assigned_to_id,
        last_message_at=current.last_message_at,
    )
