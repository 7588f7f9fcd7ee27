"""
Recipe: Spore Chlorophylly x Growth Habit MuSSE Analysis

Question: "Do green-spored and epiphytic ferns diversify at different rates,
and in which direction does habit evolve?"

Workflow:
1. Load the tree and trait table, match species, force the tree ultrametric.
2. Encode the two binary traits as four MuSSE states.
3. Build the constrained MuSSE likelihood and find the MLE; compare it
   with a relaxed constraint set (likelihood ratio test, AICc).
4. Scale an exponential prior to the MLE.
5. Calibrate proposal widths, then run the production chains.
6. Check convergence and summarize the pooled posterior.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from fernsse.config import AnalysisConfig
from fernsse.core.constraints import ConstrainedModel, constrain
from fernsse.core.data import MatchedData, load_matched_data
from fernsse.core.diagnostics import ConvergenceReport, diagnose_chains
from fernsse.core.mcmc import (
    ChainResult,
    MetropolisSampler,
    SamplerError,
    calibrate_widths,
    draw_seeds,
    expand_trace,
    run_chains,
)
from fernsse.core.musse import MuSSEModel, musse_parameter_names
from fernsse.core.priors import ExponentialPrior
from fernsse.core.states import TraitStateSpace, sampling_fractions, validate_sampling_fractions
from fernsse.core.summary import (
    PosteriorSummary,
    add_net_diversification,
    pool_chains,
    summarize_posterior,
)
from fernsse.core.tree_inference import (
    MLEResult,
    TreeLikelihoodModel,
    TreeMLEOptimizer,
    likelihood_ratio_test,
    model_selection,
)

logger = logging.getLogger(__name__)

N_STATES = 4

SPORE_HABIT_STATES = TraitStateSpace(
    trait_names=("spore", "habit"),
    level_names=(("nongreen", "green"), ("terrestrial", "epiphytic")),
)


@dataclass
class AnalysisResult:
    """
    Everything produced by one run.

    Attributes:
        config: Configuration actually used (seeds filled in)
        data: Matched tree and traits
        sampling_fractions: Per-state sampling fractions
        mle: Maximum likelihood fit over the free parameters
        model_comparison: Fit of the alternative constraint set and its
            comparison with ``mle`` (None when not requested)
        prior: Exponential prior scaled to the MLE
        widths: Calibrated proposal widths
        chains: Production chains (failed ones included)
        diagnostics: Convergence report over the surviving chains
        summary: Posterior summary over the surviving chains
    """

    config: AnalysisConfig
    data: MatchedData
    sampling_fractions: np.ndarray
    mle: MLEResult
    prior: ExponentialPrior
    widths: np.ndarray
    model_comparison: dict | None = None
    chains: list[ChainResult] = field(default_factory=list)
    diagnostics: ConvergenceReport | None = None
    summary: PosteriorSummary | None = None

    @property
    def failed_chains(self) -> list[int]:
        return [c.chain_id for c in self.chains if c.failed]


def resolve_sampling_fractions(config: AnalysisConfig, data: MatchedData) -> np.ndarray:
    """Sampling fractions from the config, from richness estimates, or all ones."""
    if config.sampling_fractions is not None:
        return validate_sampling_fractions(config.sampling_fractions, N_STATES)
    if config.estimated_richness is not None:
        return sampling_fractions(data.state_counts(N_STATES), config.estimated_richness)
    logger.warning("No sampling fractions given; assuming complete sampling")
    return np.ones(N_STATES)


def build_model(
    config: AnalysisConfig,
    data: MatchedData,
    fractions: np.ndarray,
) -> TreeLikelihoodModel:
    """MuSSE likelihood with the configured constraints applied."""
    model = MuSSEModel(
        data.tree,
        data.states,
        k=N_STATES,
        sampling_fractions=fractions,
        condition_surv=config.condition_surv,
        root=config.root,
        root_p=config.root_p,
    )
    if not config.constraints:
        return model
    return constrain(model, *config.constraints)


def compare_constraint_sets(
    config: AnalysisConfig,
    data: MatchedData,
    fractions: np.ndarray,
    null_fit: MLEResult,
    null_full: dict[str, float],
) -> dict | None:
    """
    Fit ``config.alternative_constraints`` and compare it with ``null_fit``.

    The alternative starts from the constrained MLE, so a relaxation of the
    constraints can only match or improve its likelihood. The likelihood
    ratio test is reported when the alternative has more free parameters.
    """
    if config.alternative_constraints is None:
        return None
    alt_config = config.replace(constraints=list(config.alternative_constraints))
    alt_model = build_model(alt_config, data, fractions)
    start = {name: null_full[name] for name in alt_model.get_parameter_names()}
    logger.info(
        "Fitting alternative constraint set (%d free parameters)",
        len(start),
    )
    alt_fit = TreeMLEOptimizer(alt_model, maxiter=config.optimizer_maxiter).fit(start)

    fits = {"constrained": null_fit, "alternative": alt_fit}
    criterion = "AICc" if all(np.isfinite(f.aicc) for f in fits.values()) else "AIC"
    best, deltas = model_selection(fits, criterion)
    comparison = {
        "constraints": list(config.alternative_constraints),
        "alternative": alt_fit.to_dict(),
        "criterion": criterion,
        "preferred": best,
        "delta": deltas,
        "lrt": None,
    }
    if alt_fit.n_parameters > null_fit.n_parameters:
        lrt = likelihood_ratio_test(null_fit, alt_fit)
        comparison["lrt"] = lrt.to_dict()
        logger.info("Constrained vs alternative: %r", lrt)
    else:
        logger.info("Alternative constraint set is not a relaxation; skipping the LRT")
    logger.info("%s prefers the %s model", criterion, best)
    return comparison


def _check_comparisons(config: AnalysisConfig) -> None:
    known = set(musse_parameter_names(N_STATES))
    known.update(f"div{i}" for i in range(1, N_STATES + 1))
    for a, b in config.comparisons:
        for name in (a, b):
            if name not in known:
                raise ValueError(f"Unknown parameter {name!r} in comparison {a} > {b}")


def _write_json(payload: dict, path: Path) -> None:
    with open(path, "w") as f:
        json.dump(payload, f, indent=2, default=float)


def run_analysis(config: AnalysisConfig, resume: bool = False) -> AnalysisResult:
    """
    Run the full analysis described by ``config``.

    Outputs written to ``config.output_dir``: ``config.json``,
    ``matched_tree.nwk``, ``mle.json``, ``chain_{n}.csv``,
    ``diagnostics.json`` and ``summary.json``. Chain traces hold the free
    parameters; with constraints, ``chain_{n}_full.csv`` repeats each
    surviving trace with every MuSSE parameter.

    Args:
        config: Analysis settings
        resume: Continue existing chain traces instead of overwriting them

    Raises:
        DataMismatchError: Tree and trait table share fewer than two species
        CalibrationError: Proposal widths could not be calibrated
        SamplerError: Every production chain failed
    """
    _check_comparisons(config)
    out = config.output_path
    out.mkdir(parents=True, exist_ok=True)

    seeds = list(config.random_seeds) or draw_seeds(config.chain_count)
    calibration_seed = config.calibration_seed
    if calibration_seed is None:
        calibration_seed = draw_seeds(1)[0]
    config = config.replace(random_seeds=seeds, calibration_seed=calibration_seed)
    config.to_json(out / "config.json")
    logger.info("Chain seeds: %s (calibration seed %d)", seeds, calibration_seed)

    # Data
    data = load_matched_data(
        config.tree_path,
        config.trait_path,
        columns=config.state_columns,
        ultrametric_method=config.ultrametric_method,
        sheet_name=config.sheet_name,
    )
    (out / "matched_tree.nwk").write_text(data.tree.to_newick() + "\n")
    counts = data.state_counts(N_STATES)
    for state, count in zip(SPORE_HABIT_STATES.states, counts):
        logger.info("State %d (%s): %d tips", state, SPORE_HABIT_STATES.label(state), count)
    fractions = resolve_sampling_fractions(config, data)

    # Maximum likelihood
    model = build_model(config, data, fractions)
    names = model.get_parameter_names()
    logger.info("Fitting %d free parameters: %s", len(names), ", ".join(names))
    mle = TreeMLEOptimizer(model, maxiter=config.optimizer_maxiter).fit(compute_se=True)
    full_mle = model.expand_full(mle.parameters) if isinstance(model, ConstrainedModel) else mle.parameters
    comparison = compare_constraint_sets(config, data, fractions, mle, full_mle)
    _write_json(
        {
            **mle.to_dict(),
            "full_parameters": full_mle,
            "constraints": list(config.constraints),
            "sampling_fractions": fractions.tolist(),
            "state_counts": counts.tolist(),
            "state_labels": {str(s): label for s, label in SPORE_HABIT_STATES.labels().items()},
            "model_comparison": comparison,
        },
        out / "mle.json",
    )

    # Prior and sampler
    prior = ExponentialPrior.from_mle(mle.parameters)
    logger.info("Exponential prior rate %.4g (mean %.4g)", prior.rate, prior.mean)
    sampler = MetropolisSampler(model, names, widths=config.calibration_width, prior=prior)
    x0 = mle.vector(names)

    widths = calibrate_widths(
        sampler,
        x0,
        n_steps=config.calibration_steps,
        rng=np.random.default_rng(calibration_seed),
    )
    sampler = sampler.with_widths(widths)

    chains = run_chains(
        sampler,
        x0,
        n_chains=config.chain_count,
        n_steps=config.production_steps,
        seeds=seeds,
        output_dir=out,
        retain_every=config.retention_interval,
        resume=resume,
    )
    result = AnalysisResult(
        config=config,
        data=data,
        sampling_fractions=fractions,
        mle=mle,
        model_comparison=comparison,
        prior=prior,
        widths=widths,
        chains=chains,
    )
    survivors = [c for c in chains if not c.failed]
    if not survivors:
        raise SamplerError(f"All {len(chains)} production chains failed")
    if result.failed_chains:
        logger.warning("Excluding failed chains %s from the posterior", result.failed_chains)

    # Posterior
    traces = [c.trace for c in survivors]
    result.diagnostics = diagnose_chains(
        traces,
        burn_in=config.burn_in,
        min_ess=config.min_ess,
        max_rhat=config.max_rhat,
    )
    diagnostics = result.diagnostics.to_dict()
    diagnostics["failed_chains"] = {c.chain_id: c.error for c in chains if c.failed}
    diagnostics["acceptance_rates"] = {c.chain_id: c.acceptance_rate for c in survivors}
    _write_json(diagnostics, out / "diagnostics.json")

    if isinstance(model, ConstrainedModel):
        traces = [expand_trace(t, model) for t in traces]
        for chain, trace in zip(survivors, traces):
            trace.to_csv(out / f"chain_{chain.chain_id}_full.csv", index=False)
    pool = add_net_diversification(pool_chains(traces, burn_in=config.burn_in), N_STATES)
    result.summary = summarize_posterior(pool, comparisons=[tuple(c) for c in config.comparisons])
    result.summary.to_json(out / "summary.json")

    for comparison, prob in result.summary.comparisons.items():
        logger.info("P(%s) = %.3f", comparison, prob)
    return result
