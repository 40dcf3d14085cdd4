"""Exact discretization for dynamics with state-independent coefficients.

Over ``[t0, t0 + dt]`` the increment of a Gaussian factor vector is normal with

    mean        m_i  = ∫ mu_i(s) ds
    covariance  C_ij = ∫ sigma_i(s) sigma_j(s) rho_ij(s) ds

so a step of any length carries no discretization bias. Providers with a
known kernel family supply the integrals in closed form through
``integrated_drift`` / ``integrated_covariance``; otherwise the kernel is
integrated with adaptive Gauss-Kronrod quadrature, split at the provider's
breakpoints.
"""

from __future__ import annotations

import logging
from typing import Callable

import numpy as np
from scipy.integrate import quad_vec

from .base import DiscretizationStrategy
from .cache import KeyPolicy, MomentCache
from .dynamics import FactorDynamics
from .errors import ConfigurationError, NumericalError
from .repair import MatrixRepairer
from .types import Discretization, as_state_vector, check_step, check_time

logger = logging.getLogger("xasset.engine.exact")


class ExactDiscretization(DiscretizationStrategy):
    """Closed-form moments over an interval, cached per ``(t0, dt)``.

    Drift, covariance and diffusion live in three tables of one cache: a miss
    on any of them computes and stores all three, so requesting drift and
    diffusion separately still integrates the kernel once per key.

    Called without ``dt``, ``drift``/``covariance``/``diffusion`` return the
    instantaneous values at ``t``, cached per ``t`` in ``instant_cache``.
    """

    kind = Discretization.EXACT
    tables = ("drift", "covariance", "diffusion")

    def __init__(
        self,
        dynamics: FactorDynamics,
        repairer: MatrixRepairer | None = None,
        *,
        cache_enabled: bool = True,
        key_policy: KeyPolicy | str = KeyPolicy.EXACT,
        key_decimals: int = 12,
        epsabs: float = 1e-14,
        epsrel: float = 1e-10,
    ) -> None:
        if not getattr(dynamics, "state_independent", False):
            raise ConfigurationError(
                "exact discretization requires state-independent (Gaussian) dynamics; "
                "use the Euler scheme for state-dependent coefficients"
            )
        super().__init__(
            dynamics,
            repairer,
            cache_enabled=cache_enabled,
            key_policy=key_policy,
            key_decimals=key_decimals,
        )
        self.instant_cache = MomentCache(
            ("covariance", "diffusion"),
            enabled=cache_enabled,
            key_policy=key_policy,
            decimals=key_decimals,
            name="exact-instantaneous",
        )
        self.epsabs = float(epsabs)
        self.epsrel = float(epsrel)

    # Interval moments never read the state; it is accepted for interface symmetry.
    def drift(self, t: float, x: np.ndarray | None = None, dt: float | None = None) -> np.ndarray:
        if dt is None:
            return self._instantaneous_drift(t, self.dynamics.initial_values() if x is None else x)
        return self._lookup("drift", t, dt)

    def covariance(self, t: float, x: np.ndarray | None = None, dt: float | None = None) -> np.ndarray:
        if dt is None:
            return self._instantaneous(self.instant_cache, "covariance", t)
        return self._lookup("covariance", t, dt)

    def diffusion(self, t: float, x: np.ndarray | None = None, dt: float | None = None) -> np.ndarray:
        if dt is None:
            return self._instantaneous(self.instant_cache, "diffusion", t)
        return self._lookup("diffusion", t, dt)

    def expectation(self, t0: float, x0: np.ndarray, dt: float) -> np.ndarray:
        x0 = as_state_vector(x0, self.size)
        return x0 + self._lookup("drift", t0, dt)

    def std_deviation(self, t0: float, x0: np.ndarray, dt: float) -> np.ndarray:
        return self._lookup("diffusion", t0, dt)

    def flush_cache(self) -> None:
        self.cache.clear()
        self.instant_cache.clear()

    def _lookup(self, table: str, t0: float, dt: float | None) -> np.ndarray:
        t0 = check_time(t0, "t0")
        dt = check_step(dt)
        version = self.dynamics.version
        key = self.cache.make_key(t0, dt, version=version)
        return self.cache.fetch(table, key, self._versioned(version, lambda: self._compute(t0, dt)))

    def _compute(self, t0: float, dt: float) -> dict[str, np.ndarray]:
        logger.debug("exact moments over [%r, %r + %r]", t0, t0, dt)
        drift = self._checked_vector(self.integrated_drift(t0, dt), "integrated drift")
        raw = self.integrated_covariance(t0, dt)
        if raw.shape != (self.size, self.size):
            raise ConfigurationError(
                f"integrated covariance has shape {raw.shape}, expected ({self.size}, {self.size})"
            )
        if not np.all(np.isfinite(raw)):
            raise NumericalError(f"integrated covariance over [{t0}, {t0 + dt}] is not finite")
        covariance, root = self._factorise((t0, *self._interior(t0, dt), t0 + dt), raw)
        return {"drift": drift, "covariance": covariance, "diffusion": root}

    def _interior(self, t0: float, dt: float) -> list[float]:
        end = t0 + dt
        return [float(p) for p in self.dynamics.breakpoints() if t0 < p < end]

    def integrated_drift(self, t0: float, dt: float) -> np.ndarray:
        closed = self.dynamics.integrated_drift(t0, dt)
        if closed is not None:
            return np.asarray(closed, dtype=float)
        x0 = self.dynamics.initial_values()
        return self._integrate(lambda s: self.dynamics.drift(s, x0), t0, dt, (self.size,))

    def integrated_covariance(self, t0: float, dt: float) -> np.ndarray:
        closed = self.dynamics.integrated_covariance(t0, dt)
        if closed is not None:
            return np.asarray(closed, dtype=float)
        return self._integrate(self.dynamics.covariance, t0, dt, (self.size, self.size))

    def _integrate(
        self,
        kernel: Callable[[float], np.ndarray],
        t0: float,
        dt: float,
        shape: tuple[int, ...],
    ) -> np.ndarray:
        end = t0 + dt
        for edge in (t0, end):
            if not np.all(np.isfinite(np.asarray(kernel(edge), dtype=float))):
                raise NumericalError(f"kernel is not finite at t={edge}")
        points = self._interior(t0, dt)
        try:
            value, error = quad_vec(
                lambda s: np.asarray(kernel(s), dtype=float).reshape(-1),
                t0,
                end,
                epsabs=self.epsabs,
                epsrel=self.epsrel,
                points=points or None,
            )
        except (ValueError, FloatingPointError) as exc:
            raise NumericalError(f"quadrature over [{t0}, {end}] failed: {exc}") from exc
        value = np.asarray(value, dtype=float)
        if value.size != int(np.prod(shape)):
            raise ConfigurationError(f"kernel returned {value.size} values, expected shape {shape}")
        if not np.all(np.isfinite(value)) or not np.isfinite(error):
            raise NumericalError(f"quadrature over [{t0}, {end}] produced non-finite values")
        return value.reshape(shape)


__all__ = ["ExactDiscretization"]
