"""
Result-file writing.

Summaries are written next to a run's tables, so a crashed or interrupted run
must not leave a truncated JSON/YAML file behind: content goes to a temporary
file in the destination directory and is moved into place with os.replace().
"""

from __future__ import annotations

import json
import math
import os
import re
import tempfile
from pathlib import Path
from typing import Any

import numpy as np
import yaml


def to_builtin(obj: Any) -> Any:
    """
    Convert analysis output to plain JSON/YAML values.

    numpy scalars and arrays become Python numbers and lists, paths become
    strings, and non-finite floats (an infinite prior df, NaN statistics of
    untestable genes) become None so the output stays strict JSON.
    """
    if isinstance(obj, dict):
        return {str(k): to_builtin(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_builtin(v) for v in obj]
    if isinstance(obj, np.ndarray):
        return to_builtin(obj.tolist())
    if isinstance(obj, np.generic):
        obj = obj.item()
    if isinstance(obj, float) and not math.isfinite(obj):
        return None
    if isinstance(obj, os.PathLike):
        return os.fspath(obj)
    return obj


def atomic_write_text(path: str | os.PathLike, content: str) -> Path:
    """Replace *path* with *content*; the old file survives any failure."""
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return path


def atomic_write_json(path: str | os.PathLike, data: Any, *, indent: int = 2) -> Path:
    return atomic_write_text(path, json.dumps(to_builtin(data), indent=indent, allow_nan=False) + "\n")


def atomic_write_yaml(path: str | os.PathLike, data: Any) -> Path:
    return atomic_write_text(path, yaml.safe_dump(to_builtin(data), sort_keys=False))


def safe_file_stem(name: str, fallback: str = "unnamed") -> str:
    """
    File name stem for a contrast or comparison name.

    Runs of characters other than word characters, '.' and '-' become a
    single '_' (so '/' and spaces never reach the path), and leading or
    trailing '.'/'_' are stripped so the stem cannot be '..' or hidden.

    Example:
        >>> safe_file_stem("(A.P + B.P)/2 - A.U")
        'A.P_B.P_2_-_A.U'
    """
    stem = re.sub(r"[^\w.\-]+", "_", str(name)).strip("._")
    return stem or fallback
