"""Core components: trees, trait data, the MuSSE likelihood, inference and sampling."""

from fernsse.core.trees import TreeStructure, TreeNode, load_tree, force_ultrametric
from fernsse.core.data import (
    DataMismatchError,
    MatchedData,
    load_traits,
    match_tree_and_traits,
    load_matched_data,
)
from fernsse.core.states import (
    TraitStateSpace,
    encode_states,
    decode_states,
    sampling_fractions,
    validate_sampling_fractions,
)
from fernsse.core.pruning import MuSSEPruning, MuSSERates, PruningResult
from fernsse.core.musse import (
    MuSSEModel,
    musse_parameter_names,
    starting_point_bd,
    starting_point_musse,
)
from fernsse.core.constraints import Constraint, ConstrainedModel, constrain
from fernsse.core.tree_inference import (
    OptimizationWarning,
    TreeLikelihoodModel,
    TreeMLEOptimizer,
    MLEResult,
    LRTResult,
    likelihood_ratio_test,
    model_selection,
)
from fernsse.core.priors import ExponentialPrior
from fernsse.core.mcmc import (
    SamplerError,
    CalibrationError,
    ChainResult,
    MetropolisSampler,
    calibrate_widths,
    run_chains,
    read_trace,
    expand_trace,
)
from fernsse.core.diagnostics import (
    ConvergenceWarning,
    ConvergenceReport,
    effective_sample_size,
    gelman_rubin,
    diagnose_chains,
)
from fernsse.core.summary import (
    PosteriorSummary,
    pool_chains,
    posterior_probability,
    hpd_interval,
    summarize_posterior,
)

__all__ = [
    "TreeStructure",
    "TreeNode",
    "load_tree",
    "force_ultrametric",
    "DataMismatchError",
    "MatchedData",
    "load_traits",
    "match_tree_and_traits",
    "load_matched_data",
    "TraitStateSpace",
    "encode_states",
    "decode_states",
    "sampling_fractions",
    "validate_sampling_fractions",
    "MuSSEPruning",
    "MuSSERates",
    "PruningResult",
    "MuSSEModel",
    "musse_parameter_names",
    "starting_point_bd",
    "starting_point_musse",
    "Constraint",
    "ConstrainedModel",
    "constrain",
    "OptimizationWarning",
    "TreeLikelihoodModel",
    "TreeMLEOptimizer",
    "MLEResult",
    "LRTResult",
    "likelihood_ratio_test",
    "model_selection",
    "ExponentialPrior",
    "SamplerError",
    "CalibrationError",
    "ChainResult",
    "MetropolisSampler",
    "calibrate_widths",
    "run_chains",
    "read_trace",
    "expand_trace",
    "ConvergenceWarning",
    "ConvergenceReport",
    "effective_sample_size",
    "gelman_rubin",
    "diagnose_chains",
    "PosteriorSummary",
    "pool_chains",
    "posterior_probability",
    "hpd_interval",
    "summarize_posterior",
]
