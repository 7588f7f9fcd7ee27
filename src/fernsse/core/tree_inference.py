"""
Maximum likelihood fitting of tree likelihood models.

Any model exposing named, bounded parameters and a log-likelihood (the
MuSSE model and its constrained views) can be fitted here. Fits carry
information criteria and optional standard errors; competing constraint
sets are compared by likelihood ratio test or information criterion.

An optimizer that stops without converging is reported through
:class:`OptimizationWarning` and a provisional result, never silently.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging
import warnings

import numpy as np
from scipy import optimize
from scipy import stats

logger = logging.getLogger(__name__)


class OptimizationWarning(UserWarning):
    """Emitted when the optimizer stops without reporting convergence."""


@dataclass
class MLEResult:
    """
    A maximum likelihood fit over the free parameters of a model.

    Attributes:
        parameters: Dict of fitted parameter values
        log_likelihood: Log-likelihood at MLE
        n_parameters: Number of free parameters
        n_observations: Number of observations (tips)
        aic: Akaike Information Criterion
        aicc: Small-sample corrected AIC
        bic: Bayesian Information Criterion
        standard_errors: Optional standard errors from Hessian
        convergence: Whether optimization converged
        message: Optimization message
        n_iterations: Number of iterations
        n_function_evals: Number of function evaluations
        gradient_norm: Norm of the final (projected) gradient, if available
    """
    parameters: Dict[str, float]
    log_likelihood: float
    n_parameters: int
    n_observations: int
    aic: float
    aicc: float
    bic: float
    standard_errors: Optional[Dict[str, float]] = None
    convergence: bool = True
    message: str = ""
    n_iterations: int = 0
    n_function_evals: int = 0
    gradient_norm: Optional[float] = None

    @property
    def provisional(self) -> bool:
        """True when the estimate comes from a non-converged run."""
        return not self.convergence

    def vector(self, names: Sequence[str]) -> np.ndarray:
        """Parameter values in the given order."""
        return np.array([self.parameters[name] for name in names])

    def to_dict(self) -> dict:
        return {
            "parameters": dict(self.parameters),
            "log_likelihood": self.log_likelihood,
            "n_parameters": self.n_parameters,
            "n_observations": self.n_observations,
            "aic": self.aic,
            "aicc": self.aicc,
            "bic": self.bic,
            "standard_errors": (
                {k: (None if np.isnan(v) else v) for k, v in self.standard_errors.items()}
                if self.standard_errors is not None else None
            ),
            "convergence": self.convergence,
            "provisional": self.provisional,
            "message": self.message,
            "n_iterations": self.n_iterations,
            "n_function_evals": self.n_function_evals,
            "gradient_norm": self.gradient_norm,
        }

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v:.4f}" for k, v in self.parameters.items())
        flag = ", provisional" if self.provisional else ""
        return (
            f"MLEResult({params_str}, "
            f"LL={self.log_likelihood:.4f}, "
            f"AIC={self.aic:.2f}{flag})"
        )


@dataclass
class LRTResult:
    """
    Likelihood ratio test between two nested constraint sets.

    Attributes:
        statistic: 2 × (alternative log-likelihood - null log-likelihood)
        df: Extra free parameters of the alternative
        pvalue: Upper tail of the chi-squared distribution with ``df``
        alpha: Significance level
    """
    statistic: float
    df: int
    pvalue: float
    alpha: float = 0.05

    @property
    def significant(self) -> bool:
        return self.pvalue < self.alpha

    def to_dict(self) -> dict:
        return {
            "statistic": self.statistic,
            "df": self.df,
            "pvalue": self.pvalue,
            "alpha": self.alpha,
            "significant": self.significant,
        }

    def __repr__(self) -> str:
        return f"LRTResult(statistic={self.statistic:.4f}, df={self.df}, p={self.pvalue:.4g})"


class TreeLikelihoodModel(ABC):
    """
    Interface shared by MuSSE models and their constrained views.

    Models implement this to define their parameter space and likelihood
    computation. The optimizer, the constraint layer and the sampler all
    use this interface.
    """

    @abstractmethod
    def get_parameter_names(self) -> List[str]:
        """Return list of parameter names."""
        ...

    @abstractmethod
    def get_parameter_bounds(self) -> Dict[str, Tuple[float, float]]:
        """Return bounds for each parameter as (lower, upper)."""
        ...

    @abstractmethod
    def get_initial_parameters(self) -> Dict[str, float]:
        """Return initial parameter values for optimization."""
        ...

    @abstractmethod
    def log_likelihood(self, parameters: Dict[str, float]) -> float:
        """
        Compute log-likelihood at given parameters.

        Args:
            parameters: Dict mapping parameter names to values

        Returns:
            Log-likelihood value
        """
        ...

    @property
    @abstractmethod
    def n_observations(self) -> int:
        """Number of observations (tips)."""
        ...

    @property
    def parameter_names(self) -> List[str]:
        return self.get_parameter_names()

    def __call__(self, x: Sequence[float]) -> float:
        """Evaluate at a parameter vector ordered as ``parameter_names``."""
        names = self.get_parameter_names()
        x = np.asarray(x, dtype=float)
        if x.shape != (len(names),):
            raise ValueError(f"Expected {len(names)} parameters, got {x.shape}")
        return self.log_likelihood(dict(zip(names, x)))


class TreeMLEOptimizer:
    """
    Bounded maximum likelihood search over non-negative rates.

    Non-finite log-likelihoods are replaced by ``fail_value`` so the
    search backs away from them.

    Usage:
        model = constrain(MuSSEModel(tree, states, 4), "mu2 ~ mu1")
        optimizer = TreeMLEOptimizer(model)
        result = optimizer.fit()
    """

    def __init__(
        self,
        model: TreeLikelihoodModel,
        method: str = "L-BFGS-B",
        tol: float = 1e-8,
        maxiter: int = 1000,
        fail_value: float = 1e10,
        se_step: float = 1e-3,
    ):
        """
        Args:
            model: TreeLikelihoodModel to optimize
            method: Optimization method (default: L-BFGS-B for bounded)
            tol: Convergence tolerance
            maxiter: Maximum iterations
            fail_value: Objective value used where the log-likelihood is not finite
            se_step: Relative finite-difference step for standard errors
        """
        self.model = model
        self.method = method
        self.tol = tol
        self.maxiter = maxiter
        self.fail_value = fail_value
        self.se_step = se_step

    def fit(
        self,
        initial_params: Optional[Dict[str, float]] = None,
        compute_se: bool = False,
    ) -> MLEResult:
        """
        Maximize the log-likelihood from the model's starting point.

        Args:
            initial_params: Starting values (default: the model's own)
            compute_se: Also estimate standard errors from the observed information

        Returns:
            MLEResult with fitted parameters
        """
        param_names = self.model.get_parameter_names()
        bounds_dict = self.model.get_parameter_bounds()

        if initial_params is None:
            initial_params = self.model.get_initial_parameters()

        x0 = np.array([initial_params[name] for name in param_names], dtype=float)
        bounds = [bounds_dict[name] for name in param_names]

        def neg_ll(x: np.ndarray) -> float:
            ll = self.model(x)
            if not np.isfinite(ll):
                return self.fail_value
            return -ll

        options = {'maxiter': self.maxiter}
        if self.method == "L-BFGS-B":
            options.update({'ftol': self.tol, 'gtol': self.tol})

        logger.info(
            "Optimizing %d parameters with %s (maxiter=%d)",
            len(param_names), self.method, self.maxiter,
        )
        result = optimize.minimize(
            neg_ll,
            x0,
            method=self.method,
            bounds=bounds,
            options=options,
        )

        x_hat = np.array(result.x, dtype=float)
        for i, (lower, upper) in enumerate(bounds):
            x_hat[i] = np.clip(x_hat[i], lower, np.inf if upper is None else upper)
        fitted_params = {name: float(val) for name, val in zip(param_names, x_hat)}
        # Recompute at the reported point so the value can be reproduced exactly.
        log_lik = float(self.model(x_hat))

        gradient_norm = None
        jac = getattr(result, 'jac', None)
        if jac is not None:
            gradient_norm = float(np.linalg.norm(np.asarray(jac, dtype=float)))
        n_iterations = int(getattr(result, 'nit', 0) or 0)

        if not result.success:
            detail = (
                f"Optimization did not converge: {result.message} "
                f"(iterations={n_iterations}, gradient norm={gradient_norm})"
            )
            logger.warning(detail)
            warnings.warn(detail, OptimizationWarning)

        standard_errors = None
        if compute_se:
            standard_errors = self._standard_errors(neg_ll, x_hat, bounds, param_names)

        k = len(param_names)
        n = self.model.n_observations
        aic = 2 * k - 2 * log_lik
        aicc = aic + (2 * k * (k + 1)) / (n - k - 1) if n - k - 1 > 0 else float('inf')
        bic = k * np.log(n) - 2 * log_lik if n > 0 else float('inf')

        fit = MLEResult(
            parameters=fitted_params,
            log_likelihood=log_lik,
            n_parameters=k,
            n_observations=n,
            aic=float(aic),
            aicc=float(aicc),
            bic=float(bic),
            standard_errors=standard_errors,
            convergence=bool(result.success),
            message=str(result.message),
            n_iterations=n_iterations,
            n_function_evals=int(result.nfev),
            gradient_norm=gradient_norm,
        )
        logger.info("MLE: %r", fit)
        return fit

    def _standard_errors(
        self,
        neg_ll: Callable[[np.ndarray], float],
        x: np.ndarray,
        bounds: Sequence[Tuple[float, Optional[float]]],
        names: Sequence[str],
    ) -> Dict[str, float]:
        """
        Standard errors from the observed information (central differences).

        Steps are relative to each estimate. Estimates within two steps of
        a bound get NaN and are held fixed while the others are
        differentiated, so no evaluation leaves the parameter space.
        """
        steps = self.se_step * np.maximum(np.abs(x), self.se_step)
        interior = [
            i for i, (lower, upper) in enumerate(bounds)
            if x[i] - 2 * steps[i] >= (lower if lower is not None else -np.inf)
            and x[i] + 2 * steps[i] <= (upper if upper is not None else np.inf)
        ]
        se = {name: float("nan") for name in names}
        on_bound = [names[i] for i in range(len(names)) if i not in interior]
        if on_bound:
            logger.info("No standard errors for estimates on a bound: %s", ", ".join(on_bound))
        if not interior:
            return se

        f0 = neg_ll(x)
        m = len(interior)
        info = np.zeros((m, m))

        def shifted(moves: Dict[int, float]) -> float:
            y = x.copy()
            for i, delta in moves.items():
                y[i] += delta
            return neg_ll(y)

        for a, i in enumerate(interior):
            hi = steps[i]
            info[a, a] = (shifted({i: hi}) - 2 * f0 + shifted({i: -hi})) / hi ** 2
            for b in range(a + 1, m):
                j = interior[b]
                hj = steps[j]
                info[a, b] = info[b, a] = (
                    shifted({i: hi, j: hj}) - shifted({i: hi, j: -hj})
                    - shifted({i: -hi, j: hj}) + shifted({i: -hi, j: -hj})
                ) / (4 * hi * hj)

        try:
            variances = np.diag(np.linalg.inv(info))
        except np.linalg.LinAlgError:
            warnings.warn("Observed information is singular; no standard errors", OptimizationWarning)
            return se
        if np.any(variances <= 0):
            warnings.warn(
                "Observed information is not positive definite at the estimate; "
                "standard errors are unreliable",
                OptimizationWarning,
            )
        for a, i in enumerate(interior):
            if variances[a] > 0:
                se[names[i]] = float(np.sqrt(variances[a]))
        return se


def likelihood_ratio_test(
    null_result: MLEResult,
    alt_result: MLEResult,
    alpha: float = 0.05,
) -> LRTResult:
    """
    Test a constraint set against a relaxation of it.

    Args:
        null_result: Fit under the stricter constraints
        alt_result: Fit with some of those constraints lifted
        alpha: Significance level

    Raises:
        ValueError: If the alternative does not have more free parameters
    """
    df = alt_result.n_parameters - null_result.n_parameters
    if df <= 0:
        raise ValueError(
            f"The alternative needs more free parameters than the null "
            f"({alt_result.n_parameters} vs {null_result.n_parameters})"
        )

    statistic = 2.0 * (alt_result.log_likelihood - null_result.log_likelihood)
    if statistic < 0:
        message = (
            f"Negative LRT statistic ({statistic:.4g}); the relaxed fit did not "
            "reach the constrained optimum"
        )
        logger.warning(message)
        warnings.warn(message, OptimizationWarning)
        pvalue = 1.0
    else:
        pvalue = float(stats.chi2.sf(statistic, df))
    return LRTResult(statistic=float(statistic), df=df, pvalue=pvalue, alpha=alpha)


CRITERIA = {"AIC": "aic", "AICc": "aicc", "BIC": "bic"}


def model_selection(
    results: Dict[str, MLEResult],
    criterion: str = "AICc",
) -> Tuple[str, Dict[str, float]]:
    """
    Rank named fits by an information criterion.

    Returns:
        Name of the best fit and each fit's difference from it
    """
    if criterion not in CRITERIA:
        raise ValueError(f"Unknown criterion {criterion!r}; use one of {sorted(CRITERIA)}")
    if not results:
        raise ValueError("No fits to compare")
    scores = {name: getattr(fit, CRITERIA[criterion]) for name, fit in results.items()}
    best = min(scores, key=scores.get)
    return best, {name: float(score - scores[best]) for name, score in scores.items()}
