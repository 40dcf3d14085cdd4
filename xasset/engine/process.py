"""Uniform stochastic-process contract over the discretization strategies."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from ..core.config import Settings, settings as default_settings
from .base import DiscretizationStrategy
from .dynamics import FactorDynamics
from .errors import ConfigurationError
from .euler import EulerDiscretization
from .exact import ExactDiscretization
from .repair import MatrixRepairer, SalvagingPolicy, get_salvaging
from .types import Discretization, Moments

logger = logging.getLogger("xasset.engine.process")


class StateProcess:
    """Joint state process of the cross-asset model's risk factors.

    The Monte Carlo orchestrator owns the time grid and the normal draws and
    advances each path as

        Euler:  x + drift(t, x) * dt + diffusion(t, x) @ z * sqrt(dt)
        exact:  x + drift(t, x, dt) + diffusion(t, x, dt) @ z

    ``flush_cache`` must be called by the owning model whenever the
    provider's parameters change.
    """

    def __init__(
        self,
        dynamics: FactorDynamics,
        discretization: Discretization | str | None = None,
        salvaging: SalvagingPolicy | str | None = None,
        *,
        config: Settings | None = None,
    ) -> None:
        cfg = config or default_settings
        size = getattr(dynamics, "size", None)
        if not isinstance(size, (int, np.integer)) or size <= 0:
            raise ConfigurationError(f"dynamics must expose a positive factor count, got {size!r}")

        self.dynamics = dynamics
        self._size = int(size)
        self._discretization = Discretization.parse(discretization or cfg.discretization)

        if isinstance(salvaging, SalvagingPolicy):
            policy = salvaging
        else:
            policy = get_salvaging(
                salvaging or cfg.salvaging,
                max_iterations=cfg.higham_max_iterations,
                tolerance=cfg.higham_tolerance,
            )
        self.repairer = MatrixRepairer(
            policy,
            psd_tolerance=cfg.psd_tolerance,
            symmetry_tolerance=cfg.symmetry_tolerance,
            max_relative_perturbation=cfg.max_relative_perturbation,
        )
        self._strategy = self._build_strategy(cfg)
        logger.info(
            "state process ready: %d factors, %s discretization, %s salvaging",
            self._size,
            self._discretization.value,
            policy.name,
        )

    def _build_strategy(self, cfg: Settings) -> DiscretizationStrategy:
        options = dict(
            cache_enabled=cfg.cache_enabled,
            key_policy=cfg.cache_key_policy,
            key_decimals=cfg.cache_key_decimals,
        )
        if self._discretization is Discretization.EXACT:
            return ExactDiscretization(
                self.dynamics,
                self.repairer,
                epsabs=cfg.quadrature_epsabs,
                epsrel=cfg.quadrature_epsrel,
                **options,
            )
        return EulerDiscretization(self.dynamics, self.repairer, **options)

    @property
    def discretization(self) -> Discretization:
        return self._discretization

    @property
    def strategy(self) -> DiscretizationStrategy:
        return self._strategy

    def size(self) -> int:
        return self._size

    def initial_values(self) -> np.ndarray:
        values = np.asarray(self.dynamics.initial_values(), dtype=float).reshape(-1)
        if values.shape != (self._size,):
            raise ConfigurationError(f"initial values have shape {values.shape}, expected ({self._size},)")
        return values

    def drift(self, t: float, x: Sequence[float] | np.ndarray, dt: float | None = None) -> np.ndarray:
        """Drift rate at ``(t, x)``; in exact mode with ``dt``, the mean increment over ``[t, t + dt]``."""
        return self._strategy.drift(t, x, dt)

    def diffusion(self, t: float, x: Sequence[float] | np.ndarray, dt: float | None = None) -> np.ndarray:
        """Root of the covariance rate at ``t``; in exact mode with ``dt``, of the covariance over ``[t, t + dt]``."""
        return self._strategy.diffusion(t, x, dt)

    def covariance(self, t: float, x: Sequence[float] | np.ndarray, dt: float | None = None) -> np.ndarray:
        return self._strategy.covariance(t, x, dt)

    def moments(self, t: float, x: Sequence[float] | np.ndarray, dt: float | None = None) -> Moments:
        return self._strategy.moments(t, x, dt)

    def expectation(self, t0: float, x0: Sequence[float] | np.ndarray, dt: float) -> np.ndarray:
        return self._strategy.expectation(t0, x0, dt)

    def std_deviation(self, t0: float, x0: Sequence[float] | np.ndarray, dt: float) -> np.ndarray:
        return self._strategy.std_deviation(t0, x0, dt)

    def evolve(
        self,
        t0: float,
        x0: Sequence[float] | np.ndarray,
        dt: float,
        dw: Sequence[float] | np.ndarray,
    ) -> np.ndarray:
        return self._strategy.evolve(t0, x0, dt, dw)

    def flush_cache(self) -> None:
        self._strategy.flush_cache()


__all__ = ["StateProcess"]
