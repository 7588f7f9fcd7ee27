"""
Metropolis-Hastings sampling over rate parameters.

Every step perturbs all parameters at once with independent uniform
windows, ``x' = x + U(-w/2, w/2)``. Proposals that leave the bounds are
reflected back inside (the proposal stays symmetric) or rejected.

A run is split into a short calibration chain, whose 5%-95% spread sets
the window widths, followed by several independent production chains.
Production chains append their retained rows to a CSV trace as they go,
so an interrupted chain leaves a valid trace that can be resumed.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

import numpy as np
import pandas as pd

from fernsse.core.constraints import ConstrainedModel

logger = logging.getLogger(__name__)

STEP_COLUMN = "i"
POSTERIOR_COLUMN = "p"


class SamplerError(RuntimeError):
    """A chain became numerically unstable or stopped mixing."""


class CalibrationError(SamplerError):
    """Proposal widths could not be calibrated."""


def metropolis_accept(log_ratio: float, rng: np.random.Generator) -> bool:
    """Accept with probability ``min(1, exp(log_ratio))``."""
    if np.isnan(log_ratio):
        return False
    if log_ratio >= 0:
        return True
    return bool(np.log(rng.random()) < log_ratio)


@dataclass
class ChainResult:
    """
    Output of one MCMC chain.

    Attributes:
        chain_id: Index of the chain
        seed: Seed of the chain's random generator (None if not recorded)
        trace: Retained rows (step, parameters, log-posterior)
        acceptance_rate: Fraction of accepted proposals in this run
        n_steps: Number of steps requested
        trace_path: CSV trace file, if written
        failed: Whether the chain was stopped by a sampler error
        error: Error message for failed chains
    """

    chain_id: int
    seed: int | None
    trace: pd.DataFrame
    acceptance_rate: float
    n_steps: int
    trace_path: Path | None = None
    failed: bool = False
    error: str | None = None

    @property
    def samples(self) -> pd.DataFrame:
        """Parameter columns only."""
        return self.trace.drop(columns=[STEP_COLUMN, POSTERIOR_COLUMN])


class MetropolisSampler:
    """
    Metropolis-Hastings sampler with uniform sliding-window proposals.

    Usage:
        sampler = MetropolisSampler(model, model.get_parameter_names(),
                                    widths=w, prior=prior)
        chain = sampler.run(x0, 10000, rng=np.random.default_rng(1),
                            retain_every=5, trace_path="chain_1.csv")
    """

    def __init__(
        self,
        log_likelihood: Callable[[np.ndarray], float],
        parameter_names: Sequence[str],
        widths: float | Sequence[float],
        prior: Callable[[np.ndarray], float] | None = None,
        lower: float | Sequence[float] = 0.0,
        upper: float | Sequence[float] = np.inf,
        boundary: str = "reflect",
        acceptance_bounds: tuple[float, float] = (0.01, 0.99),
    ):
        """
        Args:
            log_likelihood: Function of a parameter vector
            parameter_names: Names matching the vector order
            widths: Proposal window width per parameter (or one for all)
            prior: Log prior density of a parameter vector (flat if None)
            lower: Lower bounds
            upper: Upper bounds
            boundary: "reflect" or "reject" for out-of-bounds proposals
            acceptance_bounds: Acceptance rates outside this range fail a chain
        """
        if boundary not in ("reflect", "reject"):
            raise ValueError(f"boundary must be 'reflect' or 'reject', got {boundary}")
        n = len(parameter_names)
        self.log_likelihood = log_likelihood
        self.parameter_names = list(parameter_names)
        self.prior = prior
        self.lower = np.broadcast_to(np.asarray(lower, dtype=float), (n,)).copy()
        self.upper = np.broadcast_to(np.asarray(upper, dtype=float), (n,)).copy()
        self.boundary = boundary
        self.acceptance_bounds = acceptance_bounds
        self.widths = self._check_widths(widths, n)

    @staticmethod
    def _check_widths(widths, n: int) -> np.ndarray:
        w = np.broadcast_to(np.asarray(widths, dtype=float), (n,)).copy()
        if not np.all(np.isfinite(w)) or np.any(w <= 0):
            raise CalibrationError(f"Proposal widths must be finite and positive, got {w.tolist()}")
        return w

    def with_widths(self, widths: float | Sequence[float]) -> "MetropolisSampler":
        """Copy of this sampler with new proposal widths."""
        return MetropolisSampler(
            self.log_likelihood,
            self.parameter_names,
            widths,
            prior=self.prior,
            lower=self.lower,
            upper=self.upper,
            boundary=self.boundary,
            acceptance_bounds=self.acceptance_bounds,
        )

    def log_posterior(self, x: np.ndarray) -> float:
        if self.prior is not None:
            lp = self.prior(x)
            if lp == -np.inf:
                return -np.inf
        else:
            lp = 0.0
        return float(self.log_likelihood(x)) + float(lp)

    def propose(self, x: np.ndarray, rng: np.random.Generator) -> np.ndarray | None:
        """Draw a proposal; None if it must be rejected outright."""
        y = x + rng.uniform(-0.5, 0.5, size=x.shape) * self.widths
        below = y < self.lower
        above = y > self.upper
        if not (below.any() or above.any()):
            return y
        if self.boundary == "reject":
            return None
        y = np.where(below, 2 * self.lower - y, y)
        y = np.where(above, 2 * self.upper - y, y)
        if np.any(y < self.lower) or np.any(y > self.upper):
            # Window wider than the feasible interval.
            return None
        return y

    def step(
        self,
        x: np.ndarray,
        lp: float,
        rng: np.random.Generator,
    ) -> tuple[np.ndarray, float, bool]:
        """One Metropolis-Hastings transition."""
        y = self.propose(x, rng)
        if y is None:
            return x, lp, False
        lp_new = self.log_posterior(y)
        if np.isnan(lp_new):
            raise SamplerError(f"Log-posterior is NaN at {dict(zip(self.parameter_names, y))}")
        if metropolis_accept(lp_new - lp, rng):
            return y, lp_new, True
        return x, lp, False

    def run(
        self,
        x0: Sequence[float],
        n_steps: int,
        rng: np.random.Generator | None = None,
        retain_every: int = 1,
        trace_path: str | Path | None = None,
        resume: bool = False,
        chain_id: int = 0,
        seed: int | None = None,
        check_acceptance: bool = True,
    ) -> ChainResult:
        """
        Run a chain of ``n_steps`` steps.

        Steps are numbered from 1; a row is retained when the step number
        is a multiple of ``retain_every``. With ``trace_path`` each retained
        row is appended to the CSV file and flushed immediately.

        The trace holds the sampled (free) parameters only; use
        :func:`expand_trace` to add the columns a constrained model ties or
        fixes.

        With ``resume=True`` and an existing trace, the chain restarts from
        the last retained row and continues numbering from there. Without an
        explicit ``rng`` the generator is seeded from ``seed``, and a resumed
        chain uses ``SeedSequence([seed, restart_step])`` so its draws differ
        from the interrupted run.

        Raises:
            SamplerError: NaN log-posterior, non-finite start, or an
                acceptance rate outside ``acceptance_bounds``
        """
        if n_steps < 1:
            raise ValueError("n_steps must be positive")
        if retain_every < 1:
            raise ValueError("retain_every must be positive")

        names = self.parameter_names
        x = np.asarray(x0, dtype=float).copy()
        if x.shape != (len(names),):
            raise ValueError(f"Expected {len(names)} starting values, got {x.shape}")

        rows: list[list[float]] = []
        start = 1
        trace_path = Path(trace_path) if trace_path is not None else None
        if trace_path is not None and resume and trace_path.exists() and trace_path.stat().st_size:
            previous = read_trace(trace_path)
            if list(previous.columns) != [STEP_COLUMN, *names, POSTERIOR_COLUMN]:
                raise ValueError(f"Trace {trace_path} does not match parameters {names}")
            if len(previous):
                rows = previous.to_numpy(dtype=float).tolist()
                last = previous.iloc[-1]
                start = int(last[STEP_COLUMN]) + 1
                x = last[names].to_numpy(dtype=float)
                logger.info("Chain %d resuming from step %d", chain_id, start)
        elif trace_path is not None and trace_path.exists():
            trace_path.unlink()

        if rng is None:
            if seed is not None and start > 1:
                # Resumed chains draw from a stream keyed on the restart step.
                rng = np.random.default_rng(np.random.SeedSequence([seed, start]))
            else:
                rng = np.random.default_rng(seed)

        lp = self.log_posterior(x)
        if not np.isfinite(lp):
            raise SamplerError(f"Starting point has log-posterior {lp}")

        n_accepted = 0
        n_proposed = 0
        handle = None
        writer = None
        if trace_path is not None:
            trace_path.parent.mkdir(parents=True, exist_ok=True)
            new_file = not trace_path.exists() or trace_path.stat().st_size == 0
            handle = open(trace_path, "a", newline="")
            writer = csv.writer(handle)
            if new_file:
                writer.writerow([STEP_COLUMN, *names, POSTERIOR_COLUMN])
                handle.flush()

        try:
            for i in range(start, n_steps + 1):
                x, lp, accepted = self.step(x, lp, rng)
                n_proposed += 1
                n_accepted += accepted
                if i % retain_every == 0:
                    row = [i, *x.tolist(), lp]
                    rows.append(row)
                    if writer is not None:
                        writer.writerow(row)
                        handle.flush()
        finally:
            if handle is not None:
                handle.close()

        acceptance = n_accepted / n_proposed if n_proposed else float("nan")
        trace = pd.DataFrame(rows, columns=[STEP_COLUMN, *names, POSTERIOR_COLUMN])
        if len(trace):
            trace[STEP_COLUMN] = trace[STEP_COLUMN].astype(int)
        logger.info(
            "Chain %d finished %d steps (acceptance %.3f)", chain_id, n_proposed, acceptance
        )

        result = ChainResult(
            chain_id=chain_id,
            seed=seed,
            trace=trace,
            acceptance_rate=acceptance,
            n_steps=n_steps,
            trace_path=trace_path,
        )
        if check_acceptance and n_proposed:
            low, high = self.acceptance_bounds
            if not low <= acceptance <= high:
                raise SamplerError(
                    f"Chain {chain_id} acceptance rate {acceptance:.3f} outside [{low}, {high}]"
                )
        return result


def read_trace(path: str | Path) -> pd.DataFrame:
    """Read a CSV chain trace written by :meth:`MetropolisSampler.run`."""
    trace = pd.read_csv(path)
    if STEP_COLUMN not in trace.columns or POSTERIOR_COLUMN not in trace.columns:
        raise ValueError(f"{path} is not a chain trace (needs '{STEP_COLUMN}' and '{POSTERIOR_COLUMN}')")
    return trace


def calibrate_widths(
    sampler: MetropolisSampler,
    x0: Sequence[float],
    n_steps: int = 100,
    rng: np.random.Generator | None = None,
    quantiles: tuple[float, float] = (0.05, 0.95),
) -> np.ndarray:
    """
    Estimate proposal widths from a short calibration chain.

    The chain is run with the sampler's current widths and every step is
    retained; the new width of each parameter is the spread between the
    given quantiles of its samples.

    Raises:
        CalibrationError: Degenerate acceptance or a collapsed width
    """
    try:
        chain = sampler.run(x0, n_steps, rng=rng, retain_every=1)
    except CalibrationError:
        raise
    except SamplerError as e:
        raise CalibrationError(f"Calibration run failed: {e}") from e

    samples = chain.samples.to_numpy()
    lo, hi = np.quantile(samples, quantiles, axis=0)
    widths = hi - lo
    collapsed = [n for n, w in zip(sampler.parameter_names, widths) if not w > 0]
    if collapsed:
        raise CalibrationError(
            f"Proposal widths collapsed to zero for {collapsed} "
            f"(acceptance {chain.acceptance_rate:.3f} over {n_steps} steps)"
        )
    logger.info(
        "Calibrated widths: %s",
        ", ".join(f"{n}={w:.4g}" for n, w in zip(sampler.parameter_names, widths)),
    )
    return widths


def draw_seeds(n_chains: int, entropy: int | None = None) -> list[int]:
    """Independent 32-bit seeds for ``n_chains`` chains."""
    seq = np.random.SeedSequence(entropy)
    return [int(s.generate_state(1)[0]) for s in seq.spawn(n_chains)]


def run_chains(
    sampler: MetropolisSampler,
    x0: Sequence[float],
    n_chains: int = 4,
    n_steps: int = 10000,
    seeds: Sequence[int] | None = None,
    output_dir: str | Path | None = None,
    retain_every: int = 5,
    prefix: str = "chain",
    resume: bool = False,
) -> list[ChainResult]:
    """
    Run independent production chains one after another.

    Each chain gets its own generator seeded from ``seeds`` (drawn and
    recorded when not given). A chain that raises :class:`SamplerError`
    is logged and returned with ``failed=True``; the remaining chains
    still run.
    """
    if seeds is None:
        seeds = draw_seeds(n_chains)
    if len(seeds) != n_chains:
        raise ValueError(f"Got {len(seeds)} seeds for {n_chains} chains")

    out = Path(output_dir) if output_dir is not None else None
    results: list[ChainResult] = []
    for chain_id, seed in enumerate(seeds, start=1):
        path = out / f"{prefix}_{chain_id}.csv" if out is not None else None
        logger.info("Starting chain %d/%d (seed %d)", chain_id, n_chains, seed)
        try:
            result = sampler.run(
                x0,
                n_steps,
                retain_every=retain_every,
                trace_path=path,
                resume=resume,
                chain_id=chain_id,
                seed=seed,
            )
        except SamplerError as e:
            logger.error("Chain %d failed: %s", chain_id, e)
            trace = read_trace(path) if path is not None and path.exists() else pd.DataFrame(
                columns=[STEP_COLUMN, *sampler.parameter_names, POSTERIOR_COLUMN]
            )
            result = ChainResult(
                chain_id=chain_id,
                seed=seed,
                trace=trace,
                acceptance_rate=float("nan"),
                n_steps=n_steps,
                trace_path=path,
                failed=True,
                error=str(e),
            )
        results.append(result)
    return results


def expand_trace(trace: pd.DataFrame, model: ConstrainedModel) -> pd.DataFrame:
    """
    Add the constrained parameters to a trace of free parameters.

    Aliased columns are copied from their source column and fixed columns
    hold their constant, so every row lists the full parameter vector.
    """
    free = model.get_parameter_names()
    full_names = model.full_parameter_names()
    expanded = [
        model.expand_full(dict(zip(free, row)))
        for row in trace[free].to_numpy(dtype=float)
    ]
    out = pd.DataFrame(expanded, columns=full_names, index=trace.index)
    out.insert(0, STEP_COLUMN, trace[STEP_COLUMN])
    out[POSTERIOR_COLUMN] = trace[POSTERIOR_COLUMN]
    return out
