"""Discretization strategies and the state process built on them."""

from .errors import ConfigurationError, ConsistencyError, NumericalError, StateProcessError
from .types import Discretization, Moments
from .dynamics import FactorDynamics, FunctionalDynamics, PiecewiseConstantDynamics
from .repair import (
    HighamSalvaging,
    MatrixRepairer,
    NoSalvaging,
    SalvagingPolicy,
    SpectralSalvaging,
    get_salvaging,
    pseudo_sqrt,
)
from .cache import KeyPolicy, MomentCache
from .base import DiscretizationStrategy
from .euler import EulerDiscretization
from .exact import ExactDiscretization
from .process import StateProcess

__all__ = [
    "ConfigurationError",
    "ConsistencyError",
    "NumericalError",
    "StateProcessError",
    "Discretization",
    "Moments",
    "FactorDynamics",
    "FunctionalDynamics",
    "PiecewiseConstantDynamics",
    "HighamSalvaging",
    "MatrixRepairer",
    "NoSalvaging",
    "SalvagingPolicy",
    "SpectralSalvaging",
    "get_salvaging",
    "pseudo_sqrt",
    "KeyPolicy",
    "MomentCache",
    "DiscretizationStrategy",
    "EulerDiscretization",
    "ExactDiscretization",
    "StateProcess",
]
