"""
errors.py — error kinds raised by the release core.

All errors propagate to the caller; nothing here is retried internally, since a
run is fully determined by its parameters and tolerances.
"""

from __future__ import annotations

from typing import Optional

import numpy as np


class ReleaseModelError(Exception):
    """Base class for every error raised by :mod:`release_model`."""


class InvalidLength(ReleaseModelError, ValueError):
    """A state vector or profile does not match the layer count."""

    def __init__(self, expected: int, got: int, what: str = "state vector") -> None:
        self.expected = expected
        self.got = got
        super().__init__(f"{what} has length {got}, expected {expected}")


class InvalidParameter(ReleaseModelError, ValueError):
    """A parameter, option or output-time grid was rejected before integration."""


class IntegrationFailure(ReleaseModelError, RuntimeError):
    """
    The stiff solver could not reach the requested output times.

    Carries the last successfully reached time and state so the caller can
    inspect (or restart from) the partial run.
    """

    def __init__(self, message: str, t_last: float, y_last: Optional[np.ndarray]) -> None:
        self.message = message
        self.t_last = float(t_last)
        self.y_last = None if y_last is None else np.array(y_last, dtype=float)
        super().__init__(f"{message} (last reached t={self.t_last:g})")


class ConservationViolation(UserWarning):
    """Mass-conservation drift above the configured threshold (diagnostic only)."""
