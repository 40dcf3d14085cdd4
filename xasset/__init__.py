"""Cross-asset state process: drift and diffusion for Monte Carlo risk factors."""

from .engine import (
    ConfigurationError,
    ConsistencyError,
    Discretization,
    FactorDynamics,
    NumericalError,
    StateProcess,
    StateProcessError,
)

__all__ = [
    "ConfigurationError",
    "ConsistencyError",
    "Discretization",
    "FactorDynamics",
    "NumericalError",
    "StateProcess",
    "StateProcessError",
]
