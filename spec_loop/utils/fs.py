"""
File system helpers for Spec Loop state files.

All persisted state (session records, breaker state, resume checkpoint) is
rewritten as a whole document, so writes go through a temp file and an
atomic rename. Run logs are append-only and use append_text().
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """
    Create a directory (and parents) if it does not exist.

    Raises:
        FileSystemError: If the directory cannot be created.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Replace a file's content atomically.

    The temp file lives in the target directory so the final os.replace()
    never crosses a filesystem boundary.

    Args:
        path: Destination file.
        content: Full new content.
        encoding: Character encoding. Defaults to utf-8.

    Raises:
        FileSystemError: If the write or rename fails.
    """
    path = Path(path)
    ensure_dir(path.parent)

    try:
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding=encoding, newline="") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            if path.exists():
                os.chmod(temp_path, path.stat().st_mode & 0o7777)
            os.replace(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


def append_text(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Append text to a file, creating it if needed.

    Raises:
        FileSystemError: If the file cannot be opened or written.
    """
    path = Path(path)
    ensure_dir(path.parent)
    try:
        with path.open("a", encoding=encoding) as f:
            f.write(content)
    except OSError as e:
        raise FileSystemError(f"Failed to append to {path}: {e}")


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a text file.

    Raises:
        FileSystemError: If the file is missing, not a file, or undecodable.
    """
    path = Path(path)

    if not path.is_file():
        raise FileSystemError(f"File not found: {path}")

    try:
        return path.read_text(encoding=encoding)
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to decode file {path} with encoding {encoding}: {e}")
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def file_exists(path: str | Path) -> bool:
    """True if path exists and is a regular file."""
    return Path(path).is_file()


def list_files(directory: str | Path, pattern: str = "*") -> list[Path]:
    """
    Files in a directory matching a glob, sorted by name.

    A missing directory yields an empty list.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob(pattern) if p.is_file())


def list_dirs(directory: str | Path) -> list[Path]:
    """
    Immediate subdirectories, sorted by name.

    A missing directory yields an empty list.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_dir())


def remove_file(path: str | Path) -> bool:
    """
    Remove a file if it exists.

    Returns:
        True if the file was removed, False if it did not exist.

    Raises:
        FileSystemError: If removal fails.
    """
    path = Path(path)
    if not path.exists():
        return False
    try:
        path.unlink()
        return True
    except OSError as e:
        raise FileSystemError(f"Failed to remove file {path}: {e}")
