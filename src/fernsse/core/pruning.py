"""
MuSSE pruning algorithm for fernsse.

Computes the likelihood of a tree and its tip states under the
multi-state speciation-extinction model. Along every branch the
extinction probabilities E and the branch likelihoods D are integrated
backwards in time (present towards the root):

    dE_i/dt = mu_i - (lambda_i + mu_i + sum_j q_ij) E_i
              + lambda_i E_i^2 + sum_{j != i} q_ij E_j
    dD_i/dt = -(lambda_i + mu_i + sum_j q_ij) D_i
              + 2 lambda_i E_i D_i + sum_{j != i} q_ij D_j

At an internal node the children's D vectors are multiplied together
with lambda. D is renormalized after every branch and node and the log
scale factors are accumulated, so deep trees do not underflow.

Key design principles:
1. Pure evaluation - rates in, log-likelihood out, no state kept between calls
2. Tree traversal precomputed once per tree
3. Integration tolerance fixed per instance so results are reproducible
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
import logging

import numpy as np
from scipy.integrate import solve_ivp

from .trees import TreeStructure

logger = logging.getLogger(__name__)

ROOT_OPTIONS = ("obs", "flat", "given")
STIFF_METHODS = ("LSODA", "BDF", "Radau")


@dataclass
class MuSSERates:
    """
    Rates for a k-state MuSSE model.

    Attributes:
        speciation: (k,) lambda per state
        extinction: (k,) mu per state
        transitions: (k, k) q_ij with zero diagonal
    """
    speciation: np.ndarray
    extinction: np.ndarray
    transitions: np.ndarray

    @property
    def n_states(self) -> int:
        return self.speciation.shape[0]

    def any_negative(self) -> bool:
        return bool(
            np.any(self.speciation < 0)
            or np.any(self.extinction < 0)
            or np.any(self.transitions < 0)
        )


@dataclass
class PruningResult:
    """
    Result of pruning algorithm.

    Attributes:
        log_likelihood: Total log-likelihood
        root_d: Normalized D at the root (before conditioning)
        root_e: E at the root
        root_p: Root state weights used
    """
    log_likelihood: float
    root_d: Optional[np.ndarray] = None
    root_e: Optional[np.ndarray] = None
    root_p: Optional[np.ndarray] = None


def musse_derivatives(
    y: np.ndarray,
    lam: np.ndarray,
    mu: np.ndarray,
    q: np.ndarray,
) -> np.ndarray:
    """Right-hand side of the E/D system; ``y`` is ``[E, D]``."""
    k = lam.shape[0]
    e = y[:k]
    d = y[k:]
    out_rate = lam + mu + q.sum(axis=1)
    de = mu - out_rate * e + lam * e * e + q @ e
    dd = -out_rate * d + 2.0 * lam * e * d + q @ d
    return np.concatenate([de, dd])


def musse_jacobian(
    y: np.ndarray,
    lam: np.ndarray,
    mu: np.ndarray,
    q: np.ndarray,
) -> np.ndarray:
    """Jacobian of :func:`musse_derivatives` with respect to ``[E, D]``."""
    k = lam.shape[0]
    e = y[:k]
    d = y[k:]
    block = q + np.diag(2.0 * lam * e - (lam + mu + q.sum(axis=1)))
    jac = np.zeros((2 * k, 2 * k))
    jac[:k, :k] = block
    jac[k:, :k] = np.diag(2.0 * lam * d)
    jac[k:, k:] = block
    return jac


def _branch_rhs(t, y, lam, mu, q):
    return musse_derivatives(y, lam, mu, q)


def _branch_jac(t, y, lam, mu, q):
    return musse_jacobian(y, lam, mu, q)


class MuSSEPruning:
    """
    Likelihood engine for one tree and one set of tip states.

    Usage:
        tree = TreeStructure.from_newick(newick_str)
        pruning = MuSSEPruning(tree, states=[1, 2, 2, 4], n_states=4)
        result = pruning.compute_likelihood(rates)
    """

    def __init__(
        self,
        tree: TreeStructure,
        states: Sequence[float],
        n_states: int,
        sampling_fractions: Optional[Sequence[float]] = None,
        condition_surv: bool = True,
        root: str = "obs",
        root_p: Optional[Sequence[float]] = None,
        method: str = "LSODA",
        rtol: float = 1e-8,
        atol: float = 1e-10,
    ):
        """
        Initialize pruning algorithm.

        Args:
            tree: Binary TreeStructure with branch lengths
            states: Tip states 1..n_states in ``tree.tip_names`` order
                (NaN for unknown)
            n_states: Number of states k
            sampling_fractions: Per-state sampling fractions (default all 1)
            condition_surv: Condition on survival of the root lineages
            root: Root weighting: "obs", "flat" or "given"
            root_p: Root weights when ``root="given"``
            method: scipy ``solve_ivp`` method
            rtol: Relative integration tolerance
            atol: Absolute integration tolerance
        """
        if not tree.is_binary():
            raise ValueError("MuSSE likelihood requires a strictly binary tree")
        if root not in ROOT_OPTIONS:
            raise ValueError(f"root must be one of {ROOT_OPTIONS}, got {root}")

        self.tree = tree
        self.n_states = n_states
        self.condition_surv = condition_surv
        self.root = root
        self.method = method
        self.rtol = rtol
        self.atol = atol

        if sampling_fractions is None:
            sampling_fractions = np.ones(n_states)
        self.sampling_fractions = np.asarray(sampling_fractions, dtype=float)
        if self.sampling_fractions.shape != (n_states,):
            raise ValueError(f"Expected {n_states} sampling fractions")

        if root == "given":
            if root_p is None:
                raise ValueError("root_p is required when root='given'")
            root_p = np.asarray(root_p, dtype=float)
            if root_p.shape != (n_states,) or not np.isclose(root_p.sum(), 1.0):
                raise ValueError("root_p must have one weight per state summing to 1")
        self.root_p = root_p

        states = np.asarray(states, dtype=float)
        if states.shape != (tree.n_tips,):
            raise ValueError(
                f"Got {states.shape[0]} tip states for a tree with {tree.n_tips} tips"
            )
        known = ~np.isnan(states)
        if np.any((states[known] < 1) | (states[known] > n_states)
                  | (states[known] != np.round(states[known]))):
            raise ValueError(f"Tip states must be integers in 1..{n_states}")
        self.states = states

        self._setup_tips()

    def _setup_tips(self):
        """Precompute initial (E, D) at every tip."""
        f = self.sampling_fractions
        self.tip_initial = {}
        for tip_idx, state in zip(self.tree.tip_indices, self.states):
            if np.isnan(state):
                d = f.copy()
            else:
                d = np.zeros(self.n_states)
                d[int(state) - 1] = f[int(state) - 1]
            self.tip_initial[tip_idx] = np.concatenate([1.0 - f, d])

    def integrate_branch(
        self,
        y0: np.ndarray,
        length: float,
        rates: MuSSERates,
    ) -> Optional[np.ndarray]:
        """Integrate (E, D) along a branch; None if the solver fails."""
        if length <= 0:
            return y0
        options = {"jac": _branch_jac} if self.method in STIFF_METHODS else {}
        sol = solve_ivp(
            _branch_rhs,
            (0.0, float(length)),
            y0,
            method=self.method,
            args=(rates.speciation, rates.extinction, rates.transitions),
            rtol=self.rtol,
            atol=self.atol,
            **options,
        )
        if not sol.success:
            logger.debug("Branch integration failed: %s", sol.message)
            return None
        return sol.y[:, -1]

    def compute_likelihood(self, rates: MuSSERates) -> PruningResult:
        """
        Compute log-likelihood by postorder traversal.

        Returns ``-inf`` for negative rates, failed integration, or a
        likelihood of exactly zero.
        """
        if rates.n_states != self.n_states:
            raise ValueError(
                f"Rates have {rates.n_states} states, expected {self.n_states}"
            )
        if rates.any_negative():
            return PruningResult(log_likelihood=-np.inf)

        k = self.n_states
        tree = self.tree
        lam = rates.speciation
        log_comp = 0.0
        top = {}

        for node_idx in tree.postorder:
            node = tree.nodes[node_idx]
            if node.is_tip:
                y = self.tip_initial[node_idx]
            else:
                left, right = (top.pop(c) for c in node.children_ids)
                d = lam * left[k:] * right[k:]
                y = np.concatenate([left[:k], d])
                y, log_comp = self._normalize(y, log_comp, k)
                if y is None:
                    return PruningResult(log_likelihood=-np.inf)

            if node_idx == tree.root_index:
                break

            y = self.integrate_branch(y, tree.branch_lengths[node_idx], rates)
            if y is None:
                return PruningResult(log_likelihood=-np.inf)
            y, log_comp = self._normalize(y, log_comp, k)
            if y is None:
                return PruningResult(log_likelihood=-np.inf)
            top[node_idx] = y

        root_e = y[:k]
        root_d = y[k:]
        return self._root_likelihood(root_e, root_d, lam, log_comp)

    @staticmethod
    def _normalize(
        y: np.ndarray,
        log_comp: float,
        k: int,
    ) -> Tuple[Optional[np.ndarray], float]:
        total = y[k:].sum()
        if not np.isfinite(total):
            return None, log_comp
        if total <= 0:
            return None, log_comp
        y = y.copy()
        y[k:] /= total
        return y, log_comp + float(np.log(total))

    def _root_likelihood(
        self,
        root_e: np.ndarray,
        root_d: np.ndarray,
        lam: np.ndarray,
        log_comp: float,
    ) -> PruningResult:
        if self.root == "obs":
            root_p = root_d / root_d.sum()
        elif self.root == "flat":
            root_p = np.full(self.n_states, 1.0 / self.n_states)
        else:
            root_p = self.root_p

        d = root_d
        if self.condition_surv:
            denom = np.sum(root_p * lam * (1.0 - root_e) ** 2)
            if not denom > 0:
                return PruningResult(log_likelihood=-np.inf, root_e=root_e)
            d = root_d / denom

        lik = float(np.sum(root_p * d))
        log_lik = np.log(lik) + log_comp if lik > 0 else -np.inf
        return PruningResult(
            log_likelihood=float(log_lik),
            root_d=root_d,
            root_e=root_e,
            root_p=root_p,
        )
