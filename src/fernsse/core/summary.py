"""
Posterior summaries from pooled MCMC chains.

Retained samples of all chains are pooled after burn-in and treated as
exchangeable draws from the posterior.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

import arviz as az
import numpy as np
import pandas as pd

from fernsse.core.mcmc import POSTERIOR_COLUMN, STEP_COLUMN

logger = logging.getLogger(__name__)

CHAIN_COLUMN = "chain"


def pool_chains(traces: Sequence[pd.DataFrame], burn_in: int = 0) -> pd.DataFrame:
    """
    Concatenate chain traces, dropping rows with step index below ``burn_in``.

    A ``chain`` column (1-based) records where each row came from.
    """
    if not traces:
        raise ValueError("No chains to pool")
    kept = []
    for chain_id, trace in enumerate(traces, start=1):
        rows = trace.loc[trace[STEP_COLUMN] >= burn_in].copy()
        rows.insert(0, CHAIN_COLUMN, chain_id)
        kept.append(rows)
    pool = pd.concat(kept, ignore_index=True)
    if pool.empty:
        raise ValueError(f"No samples left after a burn-in of {burn_in} steps")
    logger.info("Pooled %d samples from %d chains", len(pool), len(traces))
    return pool


def posterior_probability(pool: pd.DataFrame, a: str, b: str) -> float:
    """Fraction of pooled samples with ``a > b``."""
    for name in (a, b):
        if name not in pool.columns:
            raise KeyError(f"Parameter {name!r} not in posterior samples")
    if pool.empty:
        raise ValueError("Empty posterior sample")
    return int((pool[a] > pool[b]).sum()) / len(pool)


def hpd_interval(values: Iterable[float], mass: float = 0.95) -> tuple[float, float]:
    """Highest posterior density interval (shortest interval holding ``mass``)."""
    if not 0 < mass <= 1:
        raise ValueError("mass must be in (0, 1]")
    x = np.asarray(list(values), dtype=float)
    if x.size == 0:
        raise ValueError("No samples")
    if mass == 1:
        return float(x.min()), float(x.max())
    lo, hi = az.hdi(x, hdi_prob=mass)
    return float(lo), float(hi)


def add_net_diversification(pool: pd.DataFrame, k: int) -> pd.DataFrame:
    """Add ``div{i} = lambda{i} - mu{i}`` for each state with both columns."""
    out = pool.copy()
    for i in range(1, k + 1):
        lam, mu = f"lambda{i}", f"mu{i}"
        if lam in out.columns and mu in out.columns:
            out[f"div{i}"] = out[lam] - out[mu]
    return out


def parse_comparison(text: str) -> tuple[str, str]:
    """Parse ``"q24:q42"`` or ``"q24 > q42"`` into a pair."""
    for sep in (">", ":"):
        if sep in text:
            a, b = (part.strip() for part in text.split(sep, 1))
            if a and b:
                return a, b
    raise ValueError(f"Comparison must look like 'a:b' or 'a > b', got {text!r}")


@dataclass
class PosteriorSummary:
    """
    Marginal summaries and pairwise comparisons.

    Attributes:
        table: One row per parameter (mean, median, quantile bounds, HPD bounds)
        comparisons: ``"a > b"`` -> posterior probability
        n_samples: Pooled sample count
        n_chains: Chains pooled
    """

    table: pd.DataFrame
    comparisons: dict[str, float] = field(default_factory=dict)
    n_samples: int = 0
    n_chains: int = 0

    def to_dict(self) -> dict:
        return {
            "n_samples": self.n_samples,
            "n_chains": self.n_chains,
            "parameters": self.table.to_dict(orient="records"),
            "comparisons": self.comparisons,
        }

    def to_json(self, path: str | Path) -> None:
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


def summarize_posterior(
    pool: pd.DataFrame,
    comparisons: Sequence[tuple[str, str]] = (),
    quantiles: tuple[float, float, float] = (0.025, 0.5, 0.975),
    hpd_mass: float = 0.95,
) -> PosteriorSummary:
    """
    Summarize every parameter column of a pooled posterior sample.

    Args:
        pool: Output of :func:`pool_chains` (optionally expanded)
        comparisons: Pairs ``(a, b)`` for which P(a > b) is reported
        quantiles: Lower, middle and upper quantiles
        hpd_mass: Probability mass of the HPD interval
    """
    skip = {STEP_COLUMN, POSTERIOR_COLUMN, CHAIN_COLUMN}
    parameters = [c for c in pool.columns if c not in skip]
    q_lo, q_mid, q_hi = quantiles

    rows = []
    for name in parameters:
        values = pool[name].to_numpy(dtype=float)
        hpd_lo, hpd_hi = hpd_interval(values, hpd_mass)
        rows.append({
            "parameter": name,
            "mean": float(values.mean()),
            "median": float(np.quantile(values, q_mid)),
            "lower": float(np.quantile(values, q_lo)),
            "upper": float(np.quantile(values, q_hi)),
            "hpd_lower": hpd_lo,
            "hpd_upper": hpd_hi,
        })
    table = pd.DataFrame(
        rows,
        columns=["parameter", "mean", "median", "lower", "upper", "hpd_lower", "hpd_upper"],
    )

    probs = {f"{a} > {b}": posterior_probability(pool, a, b) for a, b in comparisons}
    n_chains = int(pool[CHAIN_COLUMN].nunique()) if CHAIN_COLUMN in pool.columns else 1
    return PosteriorSummary(
        table=table,
        comparisons=probs,
        n_samples=len(pool),
        n_chains=n_chains,
    )
