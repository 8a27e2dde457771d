from enum import Enum


class TakeoverState(str, Enum):
    AUTOMATED = "automated"
    SUSPENDED = "suspended"


VALID_TRANSITIONS = {
    TakeoverState.AUTOMATED: [TakeoverState.SUSPENDED],
    # Re-suspending overwrites the expiry.
    TakeoverState.SUSPENDED: [TakeoverState.AUTOMATED, TakeoverState.SUSPENDED],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: TakeoverState, to_state: TakeoverState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: TakeoverState, to_state: TakeoverState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: TakeoverState, to_state: TakeoverState) -> TakeoverState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def suspend(current_state: TakeoverState) -> TakeoverState:
    """An operator takes the conversation over."""
    return transition(current_state, TakeoverState.SUSPENDED)


def resume(current_state: TakeoverState) -> TakeoverState:
    """Hand the conversation back to the bot. Idempotent."""
    if current_state == TakeoverState.AUTOMATED:
        return current_state
    return transition(current_state, TakeoverState.AUTOMATED)


def expire(current_state: TakeoverState) -> TakeoverState:
    """Suspension ran out; same edge as resume."""
    return resume(current_state)
