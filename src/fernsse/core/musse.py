"""
MuSSE likelihood model and starting-point heuristics.

Parameters of a k-state model, in order:

    lambda1..lambdak, mu1..muk, q12, q13, ..., q1k, q21, q23, ..., qk(k-1)

Transition names use ``q{i}.{j}`` when k >= 10 so they stay unambiguous.
"""

from typing import Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np

from .pruning import MuSSEPruning, MuSSERates, PruningResult
from .tree_inference import TreeLikelihoodModel, TreeMLEOptimizer
from .trees import TreeStructure

logger = logging.getLogger(__name__)


def musse_parameter_names(k: int) -> List[str]:
    """Ordered parameter names for a k-state model."""
    sep = "." if k >= 10 else ""
    names = [f"lambda{i}" for i in range(1, k + 1)]
    names += [f"mu{i}" for i in range(1, k + 1)]
    names += [
        f"q{i}{sep}{j}"
        for i in range(1, k + 1)
        for j in range(1, k + 1)
        if i != j
    ]
    return names


def rates_from_vector(x: Sequence[float], k: int) -> MuSSERates:
    """Unpack a full parameter vector into speciation/extinction/transition rates."""
    x = np.asarray(x, dtype=float)
    expected = 2 * k + k * (k - 1)
    if x.shape != (expected,):
        raise ValueError(f"Expected {expected} parameters for k={k}, got {x.shape}")
    q = np.zeros((k, k))
    off_diagonal = ~np.eye(k, dtype=bool)
    q[off_diagonal] = x[2 * k:]
    return MuSSERates(speciation=x[:k], extinction=x[k:2 * k], transitions=q)


class MuSSEModel(TreeLikelihoodModel):
    """
    Multi-state speciation-extinction likelihood for one tree.

    Usage:
        model = MuSSEModel(tree, states, k=4, sampling_fractions=[0.5, 0.4, 0.6, 0.3])
        model(model.starting_point())
    """

    def __init__(
        self,
        tree: TreeStructure,
        states: Sequence[float],
        k: int = 4,
        sampling_fractions: Optional[Sequence[float]] = None,
        condition_surv: bool = True,
        root: str = "obs",
        root_p: Optional[Sequence[float]] = None,
        method: str = "LSODA",
        rtol: float = 1e-8,
        atol: float = 1e-10,
        initial_parameters: Optional[Dict[str, float]] = None,
    ):
        if k < 1:
            raise ValueError("k must be at least 1")
        self.tree = tree
        self.k = k
        self.pruning = MuSSEPruning(
            tree,
            states,
            n_states=k,
            sampling_fractions=sampling_fractions,
            condition_surv=condition_surv,
            root=root,
            root_p=root_p,
            method=method,
            rtol=rtol,
            atol=atol,
        )
        self._names = musse_parameter_names(k)
        self._initial = initial_parameters

    def get_parameter_names(self) -> List[str]:
        return list(self._names)

    def get_parameter_bounds(self) -> Dict[str, Tuple[float, float]]:
        return {name: (0.0, None) for name in self._names}

    def get_initial_parameters(self) -> Dict[str, float]:
        if self._initial is None:
            self._initial = dict(zip(self._names, starting_point_musse(self.tree, self.k)))
        return dict(self._initial)

    def starting_point(self) -> np.ndarray:
        initial = self.get_initial_parameters()
        return np.array([initial[name] for name in self._names])

    @property
    def n_observations(self) -> int:
        return self.tree.n_tips

    def compute(self, parameters: Dict[str, float]) -> PruningResult:
        """Full pruning result (root conditionals included)."""
        x = [parameters[name] for name in self._names]
        return self.pruning.compute_likelihood(rates_from_vector(x, self.k))

    def log_likelihood(self, parameters: Dict[str, float]) -> float:
        return self.compute(parameters).log_likelihood

    def __repr__(self) -> str:
        return f"MuSSEModel(k={self.k}, {self.tree.n_tips} tips)"


def yule_rate(tree: TreeStructure) -> float:
    """Pure-birth MLE: (n - 2) / total branch length."""
    total = tree.total_length()
    if tree.n_tips < 3 or total <= 0:
        raise ValueError("Need at least three tips and positive branch lengths")
    return (tree.n_tips - 2) / total


def starting_point_bd(tree: TreeStructure, yule: bool = False) -> Tuple[float, float]:
    """
    Constant-rate birth-death starting values.

    The Yule rate is used directly when ``yule=True``; otherwise it seeds a
    one-state MuSSE (i.e. birth-death) maximum-likelihood fit.

    Returns:
        (lambda, mu)
    """
    lam = yule_rate(tree)
    if yule:
        return lam, 0.0

    states = np.ones(tree.n_tips)
    bd = MuSSEModel(tree, states, k=1, initial_parameters={"lambda1": lam, "mu1": 0.0})
    fit = TreeMLEOptimizer(bd, maxiter=200).fit()
    if not np.isfinite(fit.log_likelihood):
        logger.warning("Birth-death starting fit failed; using Yule rate %.4g", lam)
        return lam, 0.0
    return fit.parameters["lambda1"], fit.parameters["mu1"]


def starting_point_musse(
    tree: TreeStructure,
    k: int,
    q_div: float = 5.0,
    yule: bool = False,
) -> np.ndarray:
    """
    Heuristic starting vector for a k-state MuSSE fit.

    Every state gets the birth-death rates; every transition rate is the
    net diversification rate divided by ``q_div`` (speciation rate when
    net diversification is not positive).
    """
    lam, mu = starting_point_bd(tree, yule=yule)
    r = lam - mu if lam > mu else lam
    q = r / q_div
    logger.info(
        "Starting point: lambda=%.4g, mu=%.4g, q=%.4g", lam, mu, q
    )
    return np.concatenate([
        np.full(k, lam),
        np.full(k, mu),
        np.full(k * (k - 1), q),
    ])
