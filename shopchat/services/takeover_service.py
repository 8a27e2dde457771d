import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from shopchat.logging_config import get_logger
from shopchat.models import CoordinatorState, TakeoverRecord
from shopchat.services.state_machine import TakeoverState, expire, resume, suspend

logger = get_logger("takeover_service")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TakeoverGate:
    """Per-conversation switch that suspends automated replies until a deadline.

    A key is SUSPENDED exactly while it has a record in the table. The table is
    only written through `_apply`, with the state returned by the state
    machine. Expiry is lazy: an overdue record is expired the first time the
    key is looked at again, so no timer is needed.
    """

    def __init__(self, state: CoordinatorState, now_func: Callable[[], datetime] = _utcnow):
        self._records = state.takeovers
        self._now = now_func
        self._lock = threading.Lock()

    def _apply(self, key: str, new_state: TakeoverState, until: Optional[datetime] = None) -> TakeoverState:
        if new_state == TakeoverState.SUSPENDED:
            self._records[key] = TakeoverRecord(key=key, until=until)
        else:
            self._records.pop(key, None)
        return new_state

    def _state(self, key: str, now: datetime) -> TakeoverState:
        record = self._records.get(key)
        if record is None:
            return TakeoverState.AUTOMATED
        if record.is_active(now):
            return TakeoverState.SUSPENDED
        logger.info(
            "Takeover expired",
            extra={"context": {"conversation_key": key, "until": record.until.isoformat()}},
        )
        return self._apply(key, expire(TakeoverState.SUSPENDED))

    def is_suspended(self, key: str) -> bool:
        with self._lock:
            return self._state(key, self._now()) == TakeoverState.SUSPENDED

    def status(self, key: str) -> tuple[TakeoverState, Optional[datetime]]:
        with self._lock:
            state = self._state(key, self._now())
            record = self._records.get(key)
        if state == TakeoverState.SUSPENDED and record is not None:
            return state, record.until
        return state, None

    def suspend(self, key: str, duration_minutes: float) -> datetime:
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be > 0")
        with self._lock:
            now = self._now()
            until = now + timedelta(minutes=duration_minutes)
            self._apply(key, suspend(self._state(key, now)), until)
        logger.info(
            "Takeover started",
            extra={"context": {"conversation_key": key, "until": until.isoformat()}},
        )
        return until

    def resume(self, key: str) -> bool:
        """Clear any suspension. Returns True if one was active."""
        with self._lock:
            previous = self._state(key, self._now())
            self._apply(key, resume(previous))
        active = previous == TakeoverState.SUSPENDED
        if active:
            logger.info("Takeover resumed", extra={"context": {"conversation_key": key}})
        return active

    def sweep(self) -> int:
        """Expire every overdue record. Returns how many were removed."""
        with self._lock:
            now = self._now()
            overdue = [key for key, record in self._records.items() if not record.is_active(now)]
            for key in overdue:
                self._apply(key, expire(TakeoverState.SUSPENDED))
        return len(overdue)
