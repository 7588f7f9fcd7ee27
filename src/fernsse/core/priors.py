"""Priors over non-negative rate parameters."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np


@dataclass(frozen=True)
class ExponentialPrior:
    """
    Independent exponential prior on every rate, with one shared rate.

    The log density factorizes over parameters and is ``-inf`` whenever a
    component is negative.
    """

    rate: float

    def __post_init__(self) -> None:
        if not np.isfinite(self.rate) or self.rate <= 0:
            raise ValueError(f"Exponential prior rate must be positive, got {self.rate}")

    @property
    def mean(self) -> float:
        return 1.0 / self.rate

    def log_density(self, x: Sequence[float]) -> float:
        x = np.asarray(x, dtype=float)
        if np.any(x < 0):
            return -np.inf
        return float(x.size * np.log(self.rate) - self.rate * x.sum())

    __call__ = log_density

    @classmethod
    def from_mle(
        cls,
        parameters: Mapping[str, float] | Sequence[float],
        multiplier: float = 2.0,
    ) -> "ExponentialPrior":
        """
        Weakly informative prior scaled to a fitted model.

        The prior mean is ``multiplier`` times the largest MLE component,
        i.e. ``rate = 1 / (multiplier * max(mle))``.
        """
        values = parameters.values() if isinstance(parameters, Mapping) else parameters
        largest = float(np.max(np.asarray(list(values), dtype=float)))
        if not largest > 0:
            raise ValueError("Cannot scale a prior from an MLE with no positive component")
        return cls(rate=1.0 / (multiplier * largest))
