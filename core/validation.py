"""Input validators shared by the simulation and power modules."""

from __future__ import annotations

import math


def validate_probability(value: float, name: str, allow_zero: bool = True, allow_one: bool = True) -> None:
    """Validate a probability-like value in [0,1] with optional strictness."""
    if value is None or not (value == value):  # NaN check
        raise ValueError(f"{name} must be a real number in [0,1]")
    if (not allow_zero and value <= 0.0) or (allow_zero and value < 0.0):
        raise ValueError(f"{name} must be >= 0{'' if allow_zero else ' (strict)'}, got {value}")
    if (not allow_one and value >= 1.0) or (allow_one and value > 1.0):
        raise ValueError(f"{name} must be <= 1{'' if allow_one else ' (strict)'}, got {value}")


def validate_positive(value: float, name: str, allow_zero: bool = False) -> None:
    """Validate that value is finite and positive (or non-negative if allow_zero)."""
    if value is None or not math.isfinite(value):
        raise ValueError(f"{name} must be a finite number, got {value}")
    if value < 0.0 or (not allow_zero and value == 0.0):
        raise ValueError(f"{name} must be {'non-negative' if allow_zero else 'positive'}, got {value}")


def validate_finite(value: float, name: str) -> None:
    if value is None or not math.isfinite(value):
        raise ValueError(f"{name} must be a finite number, got {value}")


def validate_count(value: int, name: str, minimum: int = 1) -> None:
    """Validate an integer count such as patients per arm or timepoints."""
    if isinstance(value, bool) or int(value) != value:
        raise ValueError(f"{name} must be an integer, got {value}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
