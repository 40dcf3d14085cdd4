"""Euler discretization: instantaneous drift and diffusion at a single time."""

from __future__ import annotations

import numpy as np

from .base import DiscretizationStrategy
from .types import Discretization, as_state_vector, check_step


class EulerDiscretization(DiscretizationStrategy):
    """Drift is evaluated fresh on every call and may depend on the state.

    The diffusion is the root of the repaired instantaneous covariance and is
    cached per grid time ``t``.
    """

    kind = Discretization.EULER
    tables = ("covariance", "diffusion")

    def drift(self, t: float, x: np.ndarray, dt: float | None = None) -> np.ndarray:
        return self._instantaneous_drift(t, x)

    def covariance(self, t: float, x: np.ndarray | None = None, dt: float | None = None) -> np.ndarray:
        return self._instantaneous(self.cache, "covariance", t)

    def diffusion(self, t: float, x: np.ndarray | None = None, dt: float | None = None) -> np.ndarray:
        return self._instantaneous(self.cache, "diffusion", t)

    def expectation(self, t0: float, x0: np.ndarray, dt: float) -> np.ndarray:
        dt = check_step(dt)
        x0 = as_state_vector(x0, self.size)
        return x0 + self.drift(t0, x0) * dt

    def std_deviation(self, t0: float, x0: np.ndarray, dt: float) -> np.ndarray:
        return self.diffusion(t0, x0) * np.sqrt(check_step(dt))

__all__ = ["EulerDiscretization"]
