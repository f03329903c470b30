"""argparse ``type=`` callables for filter thresholds, FDR cut-offs and counts."""

from __future__ import annotations

import argparse
from typing import Callable


def _bounded(cast: Callable[[str], float], name: str, accept: Callable[[float], bool],
             requirement: str) -> Callable[[str], float]:
    def convert(value: str):
        number = cast(value)
        if not accept(number):
            raise argparse.ArgumentTypeError(f"{value} is invalid: must be {requirement}")
        return number

    # argparse reports a failing cast as "invalid <name> value"
    convert.__name__ = name
    return convert


_positive_int = _bounded(int, "positive integer", lambda v: v > 0, "a positive integer")
_positive_float = _bounded(float, "positive number", lambda v: v > 0, "> 0")
_non_negative_float = _bounded(float, "non-negative number", lambda v: v >= 0, ">= 0")
_probability = _bounded(float, "probability", lambda v: 0 < v < 1, "in the open interval (0, 1)")
