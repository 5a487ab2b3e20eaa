"""State machines for timers, invoices and payouts with transition validation."""

from __future__ import annotations

from enum import Enum

from billing_engine.errors import InvalidStateError


class TimerState(str, Enum):
    """Timer states. ``idle`` means the user has no open entry."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class TimerAction(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    TRIM = "trim"
    ADJUST = "adjust"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TimerStateMachine:
    """State machine for a time entry.

    Allowed actions:
    - idle: start → running
    - running: pause → paused, stop → stopped
    - paused: resume → running, stop → stopped
    - stopped: trim, adjust (stay stopped)
    """

    VALID_TRANSITIONS: dict[str, dict[str, str]] = {
        TimerState.IDLE: {TimerAction.START: TimerState.RUNNING},
        TimerState.RUNNING: {
            TimerAction.PAUSE: TimerState.PAUSED,
            TimerAction.STOP: TimerState.STOPPED,
        },
        TimerState.PAUSED: {
            TimerAction.RESUME: TimerState.RUNNING,
            TimerAction.STOP: TimerState.STOPPED,
        },
        TimerState.STOPPED: {
            TimerAction.TRIM: TimerState.STOPPED,
            TimerAction.ADJUST: TimerState.STOPPED,
        },
    }

    @classmethod
    def can_apply(cls, state: str, action: str) -> bool:
        """Check if an action is legal in this state."""
        return action in cls.VALID_TRANSITIONS.get(state, {})

    @classmethod
    def next_state(cls, state: str, action: str) -> str:
        """Return the state after ``action``, raising InvalidStateError if illegal."""
        if not cls.can_apply(state, action):
            raise InvalidStateError(
                f"Cannot {TimerAction(action).value} a {TimerState(state).value} timer",
                current_state=TimerState(state).value,
            )
        return cls.VALID_TRANSITIONS[state][action]

    @classmethod
    def get_allowed_actions(cls, state: str) -> list[str]:
        return [TimerAction(a).value for a in cls.VALID_TRANSITIONS.get(state, {})]


class InvoiceStateMachine:
    """State machine for invoice status transitions.

    Allowed transitions:
    - draft → sent, cancelled
    - sent → paid, overdue, cancelled
    - overdue → paid, cancelled
    - paid, cancelled: terminal
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        InvoiceStatus.DRAFT: [InvoiceStatus.SENT, InvoiceStatus.CANCELLED],
        InvoiceStatus.SENT: [
            InvoiceStatus.PAID,
            InvoiceStatus.OVERDUE,
            InvoiceStatus.CANCELLED,
        ],
        InvoiceStatus.OVERDUE: [InvoiceStatus.PAID, InvoiceStatus.CANCELLED],
        InvoiceStatus.PAID: [],
        InvoiceStatus.CANCELLED: [],
    }

    # Statuses from which delivery may be (re)attempted
    SENDABLE = {InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.OVERDUE}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Raise InvalidStateError unless ``from_status → to_status`` is allowed."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateError(
                f"Invoice cannot move from '{InvoiceStatus(from_status).value}' "
                f"to '{InvoiceStatus(to_status).value}'",
                current_state=InvoiceStatus(from_status).value,
            )

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)

    @classmethod
    def can_send(cls, status: str) -> bool:
        return status in cls.SENDABLE


class PayoutStateMachine:
    """pending → completed | failed; both outcomes are terminal."""

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayoutStatus.PENDING: [PayoutStatus.COMPLETED, PayoutStatus.FAILED],
        PayoutStatus.COMPLETED: [],
        PayoutStatus.FAILED: [],
    }

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        if to_status not in cls.VALID_TRANSITIONS.get(from_status, []):
            raise InvalidStateError(
                f"Payout is already {PayoutStatus(from_status).value}; "
                f"cannot mark it {PayoutStatus(to_status).value}",
                current_state=PayoutStatus(from_status).value,
            )
