from dataclasses import dataclass, field, replace
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from erpgate.core.clock import Clock, system_clock

logger = structlog.get_logger(__name__)

# Type alias for notification callback - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]  # (name, old_state, new_state)

# Global notification callback - set by application on startup
_notification_callback: Optional[StateChangeCallback] = None


def set_notification_callback(callback: Optional[StateChangeCallback]) -> None:
    """Set the global notification callback for circuit breaker state changes."""
    global _notification_callback
    _notification_callback = callback


def _notify_state_change(name: str, old_state: str, new_state: str) -> None:
    if _notification_callback:
        try:
            _notification_callback(name, old_state, new_state)
        except Exception as e:
            logger.error("Circuit breaker notification failed", circuit=name, error=str(e))


class CircuitState(str, Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 60.0  # seconds spent OPEN before probing
    monitoring_period: float = 120.0  # trailing failure window in seconds


@dataclass(frozen=True)
class BreakerState:
    """Serializable breaker state. Times are clock seconds."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    recent_failures: Tuple[float, ...] = ()
    opened_at: Optional[float] = None
    last_failure_at: Optional[float] = None
    trips: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "recent_failures": list(self.recent_failures),
            "opened_at": self.opened_at,
            "last_failure_at": self.last_failure_at,
            "trips": self.trips,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BreakerState":
        return cls(
            state=CircuitState(data.get("state", "closed")),
            failure_count=data.get("failure_count", 0),
            success_count=data.get("success_count", 0),
            recent_failures=tuple(data.get("recent_failures", ())),
            opened_at=data.get("opened_at"),
            last_failure_at=data.get("last_failure_at"),
            trips=data.get("trips", 0),
        )


def _open(state: BreakerState, now: float) -> BreakerState:
    return replace(
        state,
        state=CircuitState.OPEN,
        opened_at=now,
        success_count=0,
        trips=state.trips + 1,
    )


def observe(state: BreakerState, config: BreakerConfig, now: float) -> BreakerState:
    """Lazy OPEN -> HALF_OPEN once the timeout has elapsed."""
    if state.state == CircuitState.OPEN and state.opened_at is not None:
        if now - state.opened_at >= config.timeout:
            return replace(state, state=CircuitState.HALF_OPEN, success_count=0)
    return state


def on_success(state: BreakerState, config: BreakerConfig, now: float) -> BreakerState:
    new = replace(state, success_count=state.success_count + 1, failure_count=0)
    if new.state == CircuitState.HALF_OPEN and new.success_count >= config.success_threshold:
        return replace(
            new,
            state=CircuitState.CLOSED,
            failure_count=0,
            success_count=0,
            recent_failures=(),
        )
    # A success while CLOSED leaves the failure window alone; only time prunes it
    return new


def on_failure(state: BreakerState, config: BreakerConfig, now: float) -> BreakerState:
    cutoff = now - config.monitoring_period
    recent = tuple(t for t in state.recent_failures + (now,) if t > cutoff)
    new = replace(
        state,
        failure_count=state.failure_count + 1,
        last_failure_at=now,
        recent_failures=recent,
    )
    if new.state == CircuitState.HALF_OPEN:
        return _open(new, now)
    if new.state == CircuitState.CLOSED and len(recent) >= config.failure_threshold:
        return _open(new, now)
    return new


@dataclass
class CircuitBreaker:
    """
    Breaker owned by a single client instance.

    State lives in this process only; replicas of the service do not share it.
    """

    name: str
    config: BreakerConfig = field(default_factory=BreakerConfig)
    clock: Clock = field(default=system_clock)

    _state: BreakerState = field(default_factory=BreakerState, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    @property
    def state(self) -> CircuitState:
        """Return current state. Use allow_request() for state transitions."""
        return self._state.state

    @property
    def snapshot(self) -> BreakerState:
        return self._state

    @property
    def trips(self) -> int:
        return self._state.trips

    def restore(self, state: BreakerState) -> None:
        with self._lock:
            self._state = state

    def _apply(self, new: BreakerState) -> None:
        """Must be called while holding self._lock."""
        old = self._state
        self._state = new
        if old.state == new.state:
            return

        log = logger.warning if new.state == CircuitState.OPEN else logger.info
        log(
            "Circuit breaker state change",
            circuit=self.name,
            previous_state=old.state.value,
            new_state=new.state.value,
            recent_failures=len(new.recent_failures),
            failure_threshold=self.config.failure_threshold,
            trips=new.trips,
        )
        _notify_state_change(self.name, old.state.value, new.state.value)

    def allow_request(self) -> bool:
        with self._lock:
            self._apply(observe(self._state, self.config, self.clock.now()))
            return self._state.state != CircuitState.OPEN

    def retry_after(self) -> float:
        """Seconds until an OPEN breaker will let a probe through."""
        opened_at = self._state.opened_at
        if self._state.state != CircuitState.OPEN or opened_at is None:
            return 0.0
        return max(0.0, self.config.timeout - (self.clock.now() - opened_at))

    def record_success(self) -> None:
        with self._lock:
            self._apply(on_success(self._state, self.config, self.clock.now()))

    def record_failure(self) -> None:
        with self._lock:
            self._apply(on_failure(self._state, self.config, self.clock.now()))

    def status(self) -> Dict[str, Any]:
        """Read-only snapshot for health endpoints."""
        now = self.clock.now()
        current = self._state
        return {
            "name": self.name,
            "state": current.state.value,
            "failure_count": current.failure_count,
            "success_count": current.success_count,
            "recent_failures": len(current.recent_failures),
            "trips": current.trips,
            "seconds_since_last_failure": (
                round(now - current.last_failure_at, 3) if current.last_failure_at is not None else None
            ),
            "seconds_since_opened": (
                round(now - current.opened_at, 3)
                if current.state == CircuitState.OPEN and current.opened_at is not None
                else None
            ),
        }
