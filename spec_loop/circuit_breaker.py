"""
No-progress circuit breaker for Spec Loop.

Stops the loop from burning agent invocations when iterations stop changing
anything, and lets it try again after a cooldown:

    CLOSED --(threshold x no progress)--> OPEN --(cooldown elapsed)--> HALF_OPEN
       ^                                                                  |
       +------------------------(progress)--------------------------------+

Every transition is flushed to <sessions>/.circuit_breaker.json before the
call returns.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from spec_loop.errors import StorageError
from spec_loop.models import CircuitBreakerState, CircuitState, model_to_json, parse_iso
from spec_loop.utils.fs import FileSystemError, file_exists, read_file, safe_write

if TYPE_CHECKING:
    from spec_loop.logger import LoopLogger

BREAKER_FILENAME = ".circuit_breaker.json"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class BreakerDecision:
    """Result of CircuitBreaker.check()."""
    allowed: bool
    state: CircuitState
    remaining_seconds: int = 0
    reason: str = ""

    @property
    def remaining_minutes(self) -> int:
        return -(-self.remaining_seconds // 60)


class CircuitBreaker:
    """
    Persisted failure counter and cooldown timer.

    Whether an iteration made progress is decided by the caller; the breaker
    only counts consecutive no-progress records.
    """

    def __init__(
        self,
        path: Path,
        threshold: int = 3,
        cooldown_minutes: int = 30,
        clock: Optional[Clock] = None,
        logger: Optional[LoopLogger] = None,
    ) -> None:
        self.path = Path(path)
        self.threshold = threshold
        self.cooldown_minutes = cooldown_minutes
        self._clock = clock or utc_now
        self._logger = logger
        self._state = self._load()

    @classmethod
    def for_session_dir(
        cls,
        session_dir: Path,
        threshold: int = 3,
        cooldown_minutes: int = 30,
        clock: Optional[Clock] = None,
        logger: Optional[LoopLogger] = None,
    ) -> CircuitBreaker:
        return cls(
            Path(session_dir) / BREAKER_FILENAME,
            threshold=threshold,
            cooldown_minutes=cooldown_minutes,
            clock=clock,
            logger=logger,
        )

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _load(self) -> CircuitBreakerState:
        """
        Read the persisted state.

        Missing or unparseable files start a fresh CLOSED breaker.
        """
        if not file_exists(self.path):
            return CircuitBreakerState()

        try:
            content = read_file(self.path)
        except FileSystemError as e:
            raise StorageError(f"Failed to read circuit breaker state: {e}", path=str(self.path))

        try:
            return CircuitBreakerState.from_dict(json.loads(content))
        except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError) as e:
            self._log("breaker_state_corrupted", {
                "path": str(self.path),
                "error": str(e),
            }, level="warn")
            return CircuitBreakerState()

    def _save(self) -> None:
        try:
            safe_write(self.path, model_to_json(self._state.to_dict(), indent=2))
        except FileSystemError as e:
            raise StorageError(f"Failed to write circuit breaker state: {e}", path=str(self.path))

    # Read-only views

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def failures(self) -> int:
        return self._state.consecutive_failures

    @property
    def opened_at(self) -> str:
        return self._state.opened_at

    @property
    def last_progress_marker(self) -> str:
        return self._state.last_progress_marker

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(**vars(self._state))

    # Transitions

    def check(self) -> BreakerDecision:
        """
        Decide whether the next iteration may run.

        CLOSED and HALF_OPEN always allow. OPEN allows (moving to HALF_OPEN)
        once the cooldown has elapsed; an OPEN breaker with a missing or
        unparseable opened_at is treated as corrupt and reset to CLOSED.
        """
        current = self._state.state
        if current != CircuitState.OPEN:
            return BreakerDecision(allowed=True, state=current)

        opened = parse_iso(self._state.opened_at)
        if opened is None:
            self._log("breaker_self_heal", {
                "opened_at": self._state.opened_at,
                "failures": self._state.consecutive_failures,
            }, level="warn")
            self._state.state = CircuitState.CLOSED
            self._state.consecutive_failures = 0
            self._state.opened_at = ""
            self._save()
            return BreakerDecision(
                allowed=True,
                state=CircuitState.CLOSED,
                reason="invalid or missing opened_at, reset",
            )

        elapsed = max(0, int((self._clock() - opened).total_seconds()))
        cooldown = self.cooldown_minutes * 60
        if elapsed >= cooldown:
            self._state.state = CircuitState.HALF_OPEN
            self._save()
            self._log("breaker_half_open", {"elapsed_seconds": elapsed})
            return BreakerDecision(
                allowed=True,
                state=CircuitState.HALF_OPEN,
                reason="cooldown elapsed, allowing one attempt",
            )

        remaining = cooldown - elapsed
        self._log("breaker_denied", {"remaining_seconds": remaining}, level="warn")
        return BreakerDecision(
            allowed=False,
            state=CircuitState.OPEN,
            remaining_seconds=remaining,
            reason="cooldown in progress",
        )

    def record(self, progress: bool, marker: str = "") -> CircuitState:
        """
        Record one iteration's result.

        Progress resets the counter and closes the breaker from any state.
        No progress increments the counter and opens the breaker when it
        reaches the threshold.

        Args:
            progress: Whether the iteration changed anything.
            marker: Progress fingerprint after the iteration; stored when given.

        Returns:
            The state after recording.
        """
        previous = self._state.state
        if progress:
            self._state.consecutive_failures = 0
            self._state.state = CircuitState.CLOSED
            self._state.opened_at = ""
        else:
            self._state.consecutive_failures += 1
            if self._state.consecutive_failures >= self.threshold:
                if previous != CircuitState.OPEN:
                    self._state.opened_at = format_iso(self._clock())
                self._state.state = CircuitState.OPEN
        if marker:
            self._state.last_progress_marker = marker
        self._save()

        if self._state.state == CircuitState.OPEN and previous != CircuitState.OPEN:
            self._log("breaker_opened", {
                "failures": self._state.consecutive_failures,
                "threshold": self.threshold,
            }, level="warn")
        elif self._state.state != previous:
            self._log("breaker_closed", {"previous": previous.value})

        return self._state.state

    def made_progress(self, marker: str) -> bool:
        """
        Progress policy: marker differs from the last recorded one.

        With no recorded marker yet, any iteration counts as progress.
        """
        last = self._state.last_progress_marker
        return not last or marker != last
