from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, ClassVar, Mapping, Sequence

import numpy as np

from .cache import KeyPolicy, MomentCache
from .dynamics import FactorDynamics
from .errors import ConfigurationError, ConsistencyError, NumericalError
from .repair import MatrixRepairer, validate_matrix
from .types import Discretization, Moments, as_state_vector, check_step, check_time, freeze

logger = logging.getLogger("xasset.engine.base")


class DiscretizationStrategy(ABC):
    """Abstract base class for the pluggable discretization schemes.

    Each strategy owns its own :class:`MomentCache`. Keys carry the provider's
    parameter version, so moments computed under older parameters are never
    served; :meth:`flush_cache` releases them.
    """

    kind: ClassVar[Discretization]
    tables: ClassVar[tuple[str, ...]]

    def __init__(
        self,
        dynamics: FactorDynamics,
        repairer: MatrixRepairer | None = None,
        *,
        cache_enabled: bool = True,
        key_policy: KeyPolicy | str = KeyPolicy.EXACT,
        key_decimals: int = 12,
    ) -> None:
        self.dynamics = dynamics
        self.repairer = repairer or MatrixRepairer()
        self.size = int(dynamics.size)
        self.cache = MomentCache(
            self.tables,
            enabled=cache_enabled,
            key_policy=key_policy,
            decimals=key_decimals,
            name=self.kind.value,
        )

    @abstractmethod
    def drift(self, t: float, x: np.ndarray, dt: float | None = None) -> np.ndarray:
        """Drift rate (Euler) or total mean increment (exact)."""

    @abstractmethod
    def covariance(self, t: float, x: np.ndarray, dt: float | None = None) -> np.ndarray:
        """Repaired covariance the diffusion is a root of."""

    @abstractmethod
    def diffusion(self, t: float, x: np.ndarray, dt: float | None = None) -> np.ndarray:
        """Square root of :meth:`covariance`."""

    @abstractmethod
    def expectation(self, t0: float, x0: np.ndarray, dt: float) -> np.ndarray:
        """Mean of the state at ``t0 + dt`` given ``x0``."""

    @abstractmethod
    def std_deviation(self, t0: float, x0: np.ndarray, dt: float) -> np.ndarray:
        """Matrix mapping standard normal draws to the increment over ``dt``."""

    def moments(self, t: float, x: np.ndarray, dt: float | None = None) -> Moments:
        return Moments(
            drift=self.drift(t, x, dt),
            covariance=self.covariance(t, x, dt),
            diffusion=self.diffusion(t, x, dt),
        )

    def evolve(self, t0: float, x0: np.ndarray, dt: float, dw: np.ndarray) -> np.ndarray:
        dt = check_step(dt)
        dw = as_state_vector(dw, self.size)
        return self.expectation(t0, x0, dt) + self.std_deviation(t0, x0, dt) @ dw

    def flush_cache(self) -> None:
        self.cache.clear()

    def _instantaneous_drift(self, t: float, x: np.ndarray) -> np.ndarray:
        t = check_time(t)
        x = as_state_vector(x, self.size)
        return self._checked_vector(self.dynamics.drift(t, x), "drift")

    def _instantaneous(self, cache: MomentCache, table: str, t: float) -> np.ndarray:
        t = check_time(t)
        version = self.dynamics.version
        key = cache.make_key(t, version=version)
        return cache.fetch(table, key, self._versioned(version, lambda: self._instantaneous_moments(t)))

    def _instantaneous_moments(self, t: float) -> dict[str, np.ndarray]:
        logger.debug("%s instantaneous moments at t=%r", self.kind.value, t)
        covariance, root = self._factorise((t,), self.dynamics.covariance(t))
        return {"covariance": covariance, "diffusion": root}

    def _factorise(self, times: Sequence[float], covariance: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        # every time at which the correlation can take a distinct value
        for t in times:
            validate_matrix(
                self.dynamics.correlation(t),
                correlation=True,
                symmetry_tolerance=self.repairer.symmetry_tolerance,
            )
        return self.repairer.sqrt(covariance)

    def _versioned(self, version: int, compute: Callable[[], Mapping[str, np.ndarray]]) -> Callable[[], Mapping[str, np.ndarray]]:
        def run() -> Mapping[str, np.ndarray]:
            values = compute()
            current = self.dynamics.version
            if current != version:
                raise ConsistencyError(
                    f"provider parameters changed from version {version} to {current} "
                    "while moments were being computed"
                )
            return {name: freeze(np.array(value, dtype=float)) for name, value in values.items()}

        return run

    def _checked_vector(self, values: np.ndarray, what: str) -> np.ndarray:
        arr = np.asarray(values, dtype=float).reshape(-1)
        if arr.shape != (self.size,):
            raise ConfigurationError(f"{what} has shape {arr.shape}, expected ({self.size},)")
        if not np.all(np.isfinite(arr)):
            raise NumericalError(f"{what} contains NaN or infinite entries")
        return arr


__all__ = ["DiscretizationStrategy"]
