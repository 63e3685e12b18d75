"""
Resume checkpoint persistence for Spec Loop.

This module handles:
- Saving the single "where was I" checkpoint to <sessions>/.session_state.json
- Loading it back, ignoring checkpoints that are unparseable or stale
- Best-effort clearing on terminal exits
- An in-memory variant for tests and dry runs
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from spec_loop.errors import StorageError
from spec_loop.models import Phase, ResumeCheckpoint, model_to_json, now_iso
from spec_loop.utils.fs import FileSystemError, file_exists, read_file, remove_file, safe_write

if TYPE_CHECKING:
    from spec_loop.logger import LoopLogger

CHECKPOINT_FILENAME = ".session_state.json"


class ResumeCoordinator:
    """
    File-backed resume checkpoint, one per sessions directory.

    A checkpoint is written before risky work in a phase and read on the
    next `run --resume`.
    """

    def __init__(self, session_dir: Path, logger: Optional[LoopLogger] = None) -> None:
        self.path = Path(session_dir) / CHECKPOINT_FILENAME
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _write(self, checkpoint: ResumeCheckpoint) -> None:
        try:
            safe_write(self.path, model_to_json(checkpoint.to_dict(), indent=2))
        except FileSystemError as e:
            raise StorageError(f"Failed to write resume checkpoint: {e}", path=str(self.path))

    def _read(self) -> Optional[ResumeCheckpoint]:
        if not file_exists(self.path):
            return None
        try:
            return ResumeCheckpoint.from_dict(json.loads(read_file(self.path)))
        except FileSystemError as e:
            self._log("checkpoint_unreadable", {"error": str(e)}, level="warn")
            return None
        except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError) as e:
            self._log("checkpoint_corrupted", {"error": str(e)}, level="warn")
            return None

    def save(
        self,
        spec_dir: Path,
        loop_index: int,
        session_path: Path,
        phase: Phase,
        before_marker: str,
        task: Optional[Path] = None,
    ) -> ResumeCheckpoint:
        """
        Overwrite the checkpoint.

        Raises:
            StorageError: If the checkpoint cannot be written.
        """
        checkpoint = ResumeCheckpoint(
            spec_dir=str(spec_dir),
            loop_index=loop_index,
            session_path=str(session_path),
            phase=phase,
            before_marker=before_marker,
            saved_at=now_iso(),
            task=str(task) if task else None,
        )
        self._write(checkpoint)
        self._log("checkpoint_saved", {
            "loop_index": loop_index,
            "phase": phase.value,
            "before_marker": before_marker,
        }, level="debug")
        return checkpoint

    def load(self) -> Optional[ResumeCheckpoint]:
        """
        Load the checkpoint.

        Returns:
            The checkpoint, or None if it is absent, unparseable, or points at
            a spec directory that no longer exists.
        """
        checkpoint = self._read()
        if checkpoint is None:
            return None
        if not Path(checkpoint.spec_dir).is_dir():
            self._log("checkpoint_stale", {"spec_dir": checkpoint.spec_dir}, level="warn")
            return None
        return checkpoint

    def clear(self) -> None:
        """Delete the checkpoint. Failures are logged, never raised."""
        try:
            if remove_file(self.path):
                self._log("checkpoint_cleared", level="debug")
        except FileSystemError as e:
            self._log("checkpoint_clear_failed", {"error": str(e)}, level="warn")


class InMemoryResumeCoordinator(ResumeCoordinator):
    """ResumeCoordinator that never touches the file system."""

    def __init__(self, logger: Optional[LoopLogger] = None) -> None:
        self.path = Path(CHECKPOINT_FILENAME)
        self._logger = logger
        self._checkpoint: Optional[ResumeCheckpoint] = None

    def _write(self, checkpoint: ResumeCheckpoint) -> None:
        self._checkpoint = checkpoint

    def _read(self) -> Optional[ResumeCheckpoint]:
        return self._checkpoint

    def clear(self) -> None:
        self._checkpoint = None
