"""Factor dynamics providers consumed by the state process.

A provider is a read-only capability: it answers volatility, correlation and
drift queries per factor and time, and carries a monotonic ``version`` that
changes whenever its parameters do. The state process never reaches back into
a concrete model; it only talks to this interface.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Callable, Sequence

import numpy as np

from .errors import ConfigurationError

ArrayFn = Callable[[float], np.ndarray]


class FactorDynamics(ABC):
    """Abstract source of per-factor volatility and pairwise correlation."""

    #: Exact moments are only valid when no coefficient depends on the state.
    state_independent: bool = True

    def __init__(self, factor_names: Sequence[str] | None = None) -> None:
        self._version = 0
        self._version_lock = threading.Lock()
        self.factor_names: tuple[str, ...] = tuple(factor_names or ())

    @property
    def version(self) -> int:
        return self._version

    def _bump_version(self) -> int:
        with self._version_lock:
            self._version += 1
            return self._version

    @property
    @abstractmethod
    def size(self) -> int:
        """Total number of risk factors."""

    def initial_values(self) -> np.ndarray:
        return np.zeros(self.size, dtype=float)

    @abstractmethod
    def drift(self, t: float, x: np.ndarray) -> np.ndarray:
        """Instantaneous drift at ``(t, x)``."""

    @abstractmethod
    def volatility(self, t: float) -> np.ndarray:
        """Instantaneous volatility per factor at ``t``."""

    @abstractmethod
    def correlation(self, t: float) -> np.ndarray:
        """Instantaneous correlation matrix at ``t``."""

    def covariance(self, t: float) -> np.ndarray:
        vol = np.asarray(self.volatility(t), dtype=float)
        return np.outer(vol, vol) * np.asarray(self.correlation(t), dtype=float)

    def integrated_drift(self, t0: float, dt: float) -> np.ndarray | None:
        """Closed-form ``∫ mu(s) ds`` over ``[t0, t0 + dt]``, or ``None`` if unavailable."""
        return None

    def integrated_covariance(self, t0: float, dt: float) -> np.ndarray | None:
        """Closed-form ``∫ sigma_i sigma_j rho_ij ds`` over ``[t0, t0 + dt]``, or ``None``."""
        return None

    def breakpoints(self) -> Sequence[float]:
        """Times at which coefficients jump; used to split numerical quadrature."""
        return ()


def _as_matrix(value: np.ndarray | Sequence[Sequence[float]], size: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (size, size):
        raise ConfigurationError(f"{name} must have shape ({size}, {size}), got {arr.shape}")
    return arr


class PiecewiseConstantDynamics(FactorDynamics):
    """Volatilities piecewise constant on a shared step grid, constant correlation.

    ``sigmas[i, k]`` is the volatility of factor ``i`` on the k-th piece, where
    the pieces are ``[0, times[0])``, ``[times[0], times[1])`` ... and the last
    piece extends to infinity. With no ``times`` the volatilities are constant.
    """

    def __init__(
        self,
        sigmas: np.ndarray | Sequence[float] | Sequence[Sequence[float]],
        correlation: np.ndarray | Sequence[Sequence[float]] | None = None,
        *,
        times: Sequence[float] = (),
        drift: Sequence[float] | None = None,
        initial_values: Sequence[float] | None = None,
        factor_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__(factor_names)
        self._times = np.asarray(times, dtype=float).reshape(-1)
        if self._times.size and (np.any(np.diff(self._times) <= 0) or self._times[0] <= 0):
            raise ConfigurationError("times must be positive and strictly increasing")
        self._sigmas = self._check_sigmas(sigmas)
        n = self._sigmas.shape[0]
        if n == 0:
            raise ConfigurationError("at least one risk factor is required")
        if self.factor_names and len(self.factor_names) != n:
            raise ConfigurationError("factor_names length does not match factor count")
        self._correlation = np.eye(n) if correlation is None else _as_matrix(correlation, n, "correlation")
        self._drift = self._check_vector(drift, n, "drift")
        self._initial = self._check_vector(initial_values, n, "initial_values")

    def _check_sigmas(self, sigmas) -> np.ndarray:
        arr = np.asarray(sigmas, dtype=float)
        if arr.ndim == 1:
            arr = arr[:, None]
        if arr.ndim != 2:
            raise ConfigurationError("sigmas must be a vector or a (factors, pieces) matrix")
        if arr.shape[1] == 1 and self._times.size:
            arr = np.repeat(arr, self._times.size + 1, axis=1)
        if arr.shape[1] != self._times.size + 1:
            raise ConfigurationError(
                f"sigmas need {self._times.size + 1} pieces per factor, got {arr.shape[1]}"
            )
        if not np.all(np.isfinite(arr)) or np.any(arr < 0):
            raise ConfigurationError("sigmas must be finite and non-negative")
        return arr

    @staticmethod
    def _check_vector(values, size: int, name: str) -> np.ndarray:
        if values is None:
            return np.zeros(size, dtype=float)
        arr = np.asarray(values, dtype=float).reshape(-1)
        if arr.shape != (size,):
            raise ConfigurationError(f"{name} must have shape ({size},), got {arr.shape}")
        return arr

    @property
    def size(self) -> int:
        return int(self._sigmas.shape[0])

    @property
    def times(self) -> np.ndarray:
        return self._times.copy()

    def update(
        self,
        *,
        sigmas=None,
        correlation=None,
        drift: Sequence[float] | None = None,
    ) -> int:
        """Replace parameters in place and return the new version."""

        n = self.size
        new_sigmas = self._sigmas if sigmas is None else self._check_sigmas(sigmas)
        if new_sigmas.shape[0] != n:
            raise ConfigurationError("the factor count cannot change after construction")
        new_corr = self._correlation if correlation is None else _as_matrix(correlation, n, "correlation")
        new_drift = self._drift if drift is None else self._check_vector(drift, n, "drift")
        self._sigmas, self._correlation, self._drift = new_sigmas, new_corr, new_drift
        return self._bump_version()

    def _piece(self, t: float) -> int:
        return int(np.searchsorted(self._times, t, side="right"))

    def initial_values(self) -> np.ndarray:
        return self._initial.copy()

    def drift(self, t: float, x: np.ndarray) -> np.ndarray:
        return self._drift.copy()

    def sigma(self, t: float) -> np.ndarray:
        return self._sigmas[:, self._piece(t)].copy()

    volatility = sigma

    def correlation(self, t: float) -> np.ndarray:
        return self._correlation.copy()

    def variance(self, t: float) -> np.ndarray:
        """Per-factor ``∫_0^t sigma(s)^2 ds``."""
        if t <= 0.0:
            return np.zeros(self.size, dtype=float)
        return np.diag(self._integrate_outer(0.0, t)).copy()

    def breakpoints(self) -> Sequence[float]:
        return tuple(float(v) for v in self._times)

    def integrated_drift(self, t0: float, dt: float) -> np.ndarray:
        return self._drift * dt

    def integrated_covariance(self, t0: float, dt: float) -> np.ndarray:
        return self._integrate_outer(t0, t0 + dt) * self._correlation

    def _integrate_outer(self, start: float, end: float) -> np.ndarray:
        total = np.zeros((self.size, self.size), dtype=float)
        inner = self._times[(self._times > start) & (self._times < end)]
        edges = np.concatenate(([start], inner, [end]))
        for lo, hi in zip(edges[:-1], edges[1:]):
            vol = self._sigmas[:, self._piece(lo)]
            total += np.outer(vol, vol) * (hi - lo)
        return total


class FunctionalDynamics(FactorDynamics):
    """Dynamics assembled from plain callables, mainly for synthetic setups.

    ``correlation`` may be a constant matrix or a callable of time. Pass
    ``state_independent=False`` when ``drift_fn`` depends on the state; the
    exact discretization then refuses the provider.
    """

    def __init__(
        self,
        size: int,
        volatility_fn: ArrayFn,
        correlation: np.ndarray | ArrayFn | None = None,
        *,
        drift_fn: Callable[[float, np.ndarray], np.ndarray] | None = None,
        initial_values: Sequence[float] | None = None,
        state_independent: bool = True,
        breakpoints: Sequence[float] = (),
        factor_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__(factor_names)
        if int(size) != size or size <= 0:
            raise ConfigurationError(f"size must be a positive integer, got {size!r}")
        self._size = int(size)
        self.state_independent = state_independent
        self._breakpoints = tuple(float(b) for b in breakpoints)
        self._initial = (
            np.zeros(self._size) if initial_values is None else np.asarray(initial_values, dtype=float)
        )
        if self._initial.shape != (self._size,):
            raise ConfigurationError(f"initial_values must have shape ({self._size},)")
        self._set(volatility_fn, correlation, drift_fn)

    def _set(self, volatility_fn, correlation, drift_fn) -> None:
        self._volatility_fn = volatility_fn
        if correlation is None:
            correlation = np.eye(self._size)
        if callable(correlation):
            self._correlation_fn = correlation
        else:
            matrix = _as_matrix(correlation, self._size, "correlation")
            self._correlation_fn = lambda t: matrix
        self._drift_fn = drift_fn or (lambda t, x: np.zeros(self._size))

    def update(self, *, volatility_fn=None, correlation=None, drift_fn=None) -> int:
        self._set(
            volatility_fn or self._volatility_fn,
            correlation if correlation is not None else self._correlation_fn,
            drift_fn or self._drift_fn,
        )
        return self._bump_version()

    @property
    def size(self) -> int:
        return self._size

    def initial_values(self) -> np.ndarray:
        return self._initial.copy()

    def drift(self, t: float, x: np.ndarray) -> np.ndarray:
        return np.asarray(self._drift_fn(t, x), dtype=float).reshape(self._size)

    def volatility(self, t: float) -> np.ndarray:
        return np.asarray(self._volatility_fn(t), dtype=float).reshape(self._size)

    def correlation(self, t: float) -> np.ndarray:
        return _as_matrix(self._correlation_fn(t), self._size, "correlation")

    def breakpoints(self) -> Sequence[float]:
        return self._breakpoints


__all__ = ["FactorDynamics", "PiecewiseConstantDynamics", "FunctionalDynamics"]
