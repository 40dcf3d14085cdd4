from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import numpy as np

from .errors import ConfigurationError


class Discretization(str, Enum):
    """Scheme used to advance the state over one step."""

    EULER = "euler"
    EXACT = "exact"

    @classmethod
    def parse(cls, value: "Discretization | str") -> "Discretization":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported discretization: {value!r}") from exc


def freeze(array: np.ndarray) -> np.ndarray:
    """Return ``array`` flagged read-only so cached values cannot be mutated."""

    array.setflags(write=False)
    return array


def as_state_vector(x: float | Sequence[float] | np.ndarray, size: int) -> np.ndarray:
    arr = np.atleast_1d(np.asarray(x, dtype=float))
    if arr.ndim != 1 or arr.shape[0] != size:
        raise ConfigurationError(f"State vector must have shape ({size},), got {arr.shape}")
    return arr


def check_time(t: Any, name: str = "t") -> float:
    try:
        value = float(t)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a real number, got {t!r}") from exc
    if not math.isfinite(value):
        raise ConfigurationError(f"{name} must be finite, got {value}")
    return value


def check_step(dt: Any) -> float:
    if dt is None:
        raise ConfigurationError("dt is required for the exact discretization")
    value = check_time(dt, "dt")
    if value <= 0.0:
        raise ConfigurationError(f"dt must be positive, got {value}")
    return value


@dataclass(frozen=True, slots=True)
class Moments:
    """First and second moments of one step, plus the factorised covariance.

    For the Euler scheme the moments are instantaneous rates at a single time;
    for the exact scheme they are totals over an interval.
    """

    drift: np.ndarray
    covariance: np.ndarray
    diffusion: np.ndarray

    @property
    def size(self) -> int:
        return int(self.covariance.shape[0])


__all__ = ["Discretization", "Moments", "freeze", "as_state_vector", "check_time", "check_step"]
