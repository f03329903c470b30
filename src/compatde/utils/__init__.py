"""Shared helpers."""

from compatde.utils.fileio import (
    atomic_write_json,
    atomic_write_text,
    atomic_write_yaml,
    safe_file_stem,
    to_builtin,
)

__all__ = [
    "atomic_write_json",
    "atomic_write_text",
    "atomic_write_yaml",
    "safe_file_stem",
    "to_builtin",
]
