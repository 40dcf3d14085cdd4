"""Exceptions raised by the state process and its collaborators."""

from __future__ import annotations


class StateProcessError(Exception):
    """Base class for all state process failures."""


class ConfigurationError(StateProcessError, ValueError):
    """Malformed factor count, matrix shape or time arguments."""


class NumericalError(StateProcessError, ArithmeticError):
    """Salvaging missed its tolerance or a moment evaluated to NaN/Inf."""


class ConsistencyError(StateProcessError, RuntimeError):
    """Moments were computed under provider parameters that are no longer active."""


__all__ = ["StateProcessError", "ConfigurationError", "NumericalError", "ConsistencyError"]
