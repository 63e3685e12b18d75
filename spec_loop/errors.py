"""
Error taxonomy for Spec Loop.

This module provides:
- SpecLoopError base class for everything the loop raises on purpose
- AgentErrorType enum for classifying external agent failures
- Exceptions for storage, protocol and domain failures

Corrupt persisted state is never represented here: the stores recover from it
locally (reset breaker, ignore stale checkpoint) instead of raising.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Optional


class SpecLoopError(Exception):
    """Base exception for Spec Loop failures that abort a run."""
    pass


class StorageError(SpecLoopError):
    """Raised when a state file cannot be read or written."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class TaskTrackerError(StorageError):
    """Raised when a task record cannot be read or rewritten."""
    pass


class AgentErrorType(Enum):
    """
    Classification of external agent failures.
    """
    CLI_NOT_FOUND = auto()      # Agent binary not installed / not on PATH
    CLI_CRASH = auto()          # Agent exited with a non-zero status
    STREAM_ERROR = auto()       # Could not read the event stream
    UNKNOWN = auto()


class AgentInvocationError(SpecLoopError):
    """Raised when the external agent cannot be run to completion."""

    def __init__(
        self,
        message: str,
        error_type: AgentErrorType = AgentErrorType.UNKNOWN,
        returncode: int = -1,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.returncode = returncode


class ProtocolViolationError(SpecLoopError):
    """
    Raised when the agent output breaks the status-token contract.

    Examples: no BUILD_STATUS line at all, or a BUILD_STATUS value the loop
    does not know.
    """

    def __init__(self, message: str, phase: str = "", token: str = "") -> None:
        super().__init__(message)
        self.phase = phase
        self.token = token


class FixAttemptsExhaustedError(SpecLoopError):
    """Raised when review still fails after every allowed fix attempt."""

    def __init__(self, attempts: int, must_fix: int = 0, should_fix: int = 0) -> None:
        super().__init__(
            f"Review still failing after {attempts} fix attempts "
            f"({must_fix} must-fix, {should_fix} should-fix)"
        )
        self.attempts = attempts
        self.must_fix = must_fix
        self.should_fix = should_fix


class PreflightError(SpecLoopError):
    """Raised when the environment is not ready for a run."""
    pass
