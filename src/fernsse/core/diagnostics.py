"""
Convergence diagnostics for multiple MCMC chains.

Diagnostics only read chain traces. They never change the sampler; a
failed check is advisory and left to the user to act on (typically by
running longer chains). Effective sample size and R-hat come from
arviz (bulk ESS and rank-normalized split R-hat).
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Sequence

import arviz as az
import numpy as np
import pandas as pd

from fernsse.core.mcmc import POSTERIOR_COLUMN, STEP_COLUMN

logger = logging.getLogger(__name__)

MIN_DRAWS = 4


class ConvergenceWarning(UserWarning):
    """Chains look too short or have not mixed."""


def _stack_chains(chains: Sequence[Sequence[float]]) -> np.ndarray:
    """(chain, draw) array, truncating every chain to the shortest."""
    arrays = [np.asarray(c, dtype=float) for c in chains]
    n = min(a.size for a in arrays)
    return np.vstack([a[:n] for a in arrays])


def _is_fixed(draws: np.ndarray) -> bool:
    return draws.size == 0 or np.ptp(draws) == 0


def effective_sample_size(x: Sequence[float] | Sequence[Sequence[float]]) -> float:
    """
    Bulk effective sample size.

    ``x`` is one chain or a sequence of chains; chains are truncated to
    the shortest. Returns NaN for a constant sample or fewer than four
    draws per chain.
    """
    if np.ndim(x[0]) == 0:
        draws = np.asarray(x, dtype=float)[np.newaxis, :]
    else:
        draws = _stack_chains(x)
    if draws.shape[1] < MIN_DRAWS or _is_fixed(draws):
        return float("nan")
    return float(az.ess(draws, method="bulk"))


def gelman_rubin(chains: Sequence[Sequence[float]]) -> float:
    """
    Potential scale reduction factor (rank-normalized split R-hat).

    Chains are truncated to the shortest length.
    """
    if len(chains) < 2:
        raise ValueError("Gelman-Rubin needs at least two chains")
    draws = _stack_chains(chains)
    if draws.shape[1] < MIN_DRAWS:
        raise ValueError(f"Gelman-Rubin needs at least {MIN_DRAWS} samples per chain")
    if _is_fixed(draws):
        return 1.0
    return float(az.rhat(draws, method="rank"))


@dataclass
class ConvergenceReport:
    """
    Per-parameter convergence summary across chains.

    Attributes:
        ess: Bulk effective sample size across chains (NaN for fixed columns)
        rhat: Split R-hat (NaN with a single chain or a fixed column)
        n_chains: Chains included
        n_samples: Retained samples per chain after burn-in
        min_ess: Threshold used for ESS
        max_rhat: Threshold used for R-hat
        issues: Human-readable list of failed checks
    """

    ess: dict[str, float]
    rhat: dict[str, float]
    n_chains: int
    n_samples: list[int]
    min_ess: float
    max_rhat: float
    issues: list[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return not self.issues

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"ess": pd.Series(self.ess), "rhat": pd.Series(self.rhat)}
        ).rename_axis("parameter")

    def to_dict(self) -> dict:
        return {
            "ess": self.ess,
            "rhat": self.rhat,
            "n_chains": self.n_chains,
            "n_samples": self.n_samples,
            "min_ess": self.min_ess,
            "max_rhat": self.max_rhat,
            "converged": self.converged,
            "issues": self.issues,
        }


def diagnose_chains(
    traces: Sequence[pd.DataFrame],
    burn_in: int = 0,
    parameters: Sequence[str] | None = None,
    min_ess: float = 200.0,
    max_rhat: float = 1.1,
) -> ConvergenceReport:
    """
    Compute ESS and R-hat for every parameter.

    Args:
        traces: One trace per chain
        burn_in: Rows with step index below this are dropped
        parameters: Columns to check (default: every parameter column)
        min_ess: ESS across all chains below this is flagged
        max_rhat: R-hat above this is flagged

    Returns:
        ConvergenceReport; problems also raise a :class:`ConvergenceWarning`
    """
    if not traces:
        raise ValueError("No chains to diagnose")
    kept = [t.loc[t[STEP_COLUMN] >= burn_in] for t in traces]
    if parameters is None:
        parameters = [c for c in kept[0].columns if c not in (STEP_COLUMN, POSTERIOR_COLUMN)]

    ess: dict[str, float] = {name: float("nan") for name in parameters}
    rhat: dict[str, float] = {name: float("nan") for name in parameters}
    issues: list[str] = []
    n_samples = [len(t) for t in kept]

    posterior: dict[str, np.ndarray] = {}
    if min(n_samples) < MIN_DRAWS:
        issues.append(f"Too few samples after burn-in ({min(n_samples)} in the shortest chain)")
    else:
        for name in parameters:
            draws = _stack_chains([t[name] for t in kept])
            if not _is_fixed(draws):
                posterior[name] = draws

    if posterior:
        idata = az.from_dict(posterior=posterior)
        ess_data = az.ess(idata, method="bulk")
        rhat_data = az.rhat(idata, method="rank") if len(kept) > 1 else None
        for name in posterior:
            ess[name] = float(ess_data[name].item())
            if rhat_data is not None:
                rhat[name] = float(rhat_data[name].item())
            if ess[name] < min_ess:
                issues.append(f"{name}: ESS {ess[name]:.1f} < {min_ess:g}")
            if rhat[name] > max_rhat:
                issues.append(f"{name}: R-hat {rhat[name]:.3f} > {max_rhat:g}")

    report = ConvergenceReport(
        ess=ess,
        rhat=rhat,
        n_chains=len(traces),
        n_samples=n_samples,
        min_ess=min_ess,
        max_rhat=max_rhat,
        issues=issues,
    )
    if issues:
        message = "Convergence checks failed; consider longer chains: " + "; ".join(issues)
        logger.warning(message)
        warnings.warn(message, ConvergenceWarning)
    else:
        logger.info("All %d parameters passed ESS and R-hat checks", len(parameters))
    return report
