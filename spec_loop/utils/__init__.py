"""Utility modules for Spec Loop."""

from spec_loop.utils.fs import (
    FileSystemError,
    append_text,
    ensure_dir,
    file_exists,
    list_dirs,
    list_files,
    read_file,
    remove_file,
    safe_write,
)
from spec_loop.utils.text import (
    format_cost,
    format_duration,
    has_promise,
    human_time,
    parse_kv,
    session_stamp,
    short_sha,
    slugify,
)

__all__ = [
    "FileSystemError",
    "append_text",
    "ensure_dir",
    "file_exists",
    "format_cost",
    "format_duration",
    "has_promise",
    "human_time",
    "list_dirs",
    "list_files",
    "parse_kv",
    "read_file",
    "remove_file",
    "safe_write",
    "session_stamp",
    "short_sha",
    "slugify",
]
