import numpy as np
import pytest
from scipy import optimize

from fernsse.core import tree_inference as inference_mod
from fernsse.core.constraints import constrain
from fernsse.core.musse import MuSSEModel
from fernsse.core.tree_inference import (
    MLEResult,
    OptimizationWarning,
    TreeLikelihoodModel,
    TreeMLEOptimizer,
    likelihood_ratio_test,
    model_selection,
)
from fernsse.core.trees import TreeStructure


class QuadraticModel(TreeLikelihoodModel):
    """Log-likelihood -(a - 3)^2 - 10 (b - 1)^2 with a known maximum."""

    def get_parameter_names(self):
        return ["a", "b"]

    def get_parameter_bounds(self):
        return {"a": (0.0, None), "b": (0.0, None)}

    def get_initial_parameters(self):
        return {"a": 0.5, "b": 5.0}

    def log_likelihood(self, parameters):
        return -(parameters["a"] - 3.0) ** 2 - 10.0 * (parameters["b"] - 1.0) ** 2

    @property
    def n_observations(self):
        return 20


def make_result(ll, k, n=20):
    return MLEResult(
        parameters={}, log_likelihood=ll, n_parameters=k, n_observations=n,
        aic=2 * k - 2 * ll, aicc=2 * k - 2 * ll, bic=k * np.log(n) - 2 * ll,
    )


def test_fit_finds_known_maximum():
    fit = TreeMLEOptimizer(QuadraticModel()).fit()

    assert fit.parameters["a"] == pytest.approx(3.0, abs=1e-4)
    assert fit.parameters["b"] == pytest.approx(1.0, abs=1e-4)
    assert fit.log_likelihood == pytest.approx(0.0, abs=1e-6)
    assert fit.aic == pytest.approx(4.0 - 2 * fit.log_likelihood)
    assert fit.aicc == pytest.approx(fit.aic + 12 / 17)
    assert fit.n_function_evals > 0


def test_fit_standard_errors_from_hessian():
    fit = TreeMLEOptimizer(QuadraticModel()).fit(compute_se=True)

    # Observed information is diag(2, 20).
    assert fit.standard_errors["a"] == pytest.approx(np.sqrt(0.5), rel=1e-3)
    assert fit.standard_errors["b"] == pytest.approx(np.sqrt(0.05), rel=1e-3)


def test_reported_log_likelihood_is_reproducible():
    model = QuadraticModel()
    fit = TreeMLEOptimizer(model).fit()

    assert model(fit.vector(["a", "b"])) == fit.log_likelihood


def test_non_convergence_warns_and_marks_provisional(monkeypatch):
    def fake_minimize(fun, x0, method=None, bounds=None, options=None):
        return optimize.OptimizeResult(
            x=np.array([2.0, 2.0]),
            success=False,
            message="STOP: TOTAL NO. of ITERATIONS REACHED LIMIT",
            nit=1,
            nfev=3,
            jac=np.array([2.0, -20.0]),
        )

    monkeypatch.setattr(inference_mod.optimize, "minimize", fake_minimize)

    with pytest.warns(OptimizationWarning, match="iterations=1"):
        fit = TreeMLEOptimizer(QuadraticModel(), maxiter=1).fit()

    assert fit.provisional
    assert fit.gradient_norm == pytest.approx(np.hypot(2.0, 20.0))
    assert fit.log_likelihood == pytest.approx(-1.0 - 10.0)
    assert fit.to_dict()["provisional"] is True


def test_non_finite_likelihood_uses_fail_value():
    class Cliff(QuadraticModel):
        def log_likelihood(self, parameters):
            if parameters["a"] > 4.0:
                return -np.inf
            return super().log_likelihood(parameters)

    fit = TreeMLEOptimizer(Cliff()).fit()

    assert np.isfinite(fit.log_likelihood)
    assert fit.parameters["a"] <= 4.0


def test_pure_birth_mle_on_balanced_tree():
    tree = TreeStructure.from_newick("((A:1,B:1):1,(C:1,D:1):1);")
    model = constrain(MuSSEModel(tree, [1, 1, 1, 1], k=1), "mu1 ~ 0")

    fit = TreeMLEOptimizer(model).fit({"lambda1": 0.5})

    # log L = 2 log(lambda) - 6 lambda
    assert fit.parameters["lambda1"] == pytest.approx(1 / 3, rel=1e-3)
    assert fit.n_parameters == 1


def test_likelihood_ratio_test():
    lrt = likelihood_ratio_test(make_result(-12.0, 2), make_result(-10.0, 3))

    assert lrt.statistic == pytest.approx(4.0)
    assert lrt.df == 1
    assert lrt.pvalue == pytest.approx(0.0455, abs=1e-3)
    assert lrt.significant
    assert lrt.to_dict()["significant"] is True

    with pytest.raises(ValueError):
        likelihood_ratio_test(make_result(-10.0, 3), make_result(-12.0, 2))


def test_negative_lrt_statistic_warns():
    with pytest.warns(OptimizationWarning, match="Negative LRT"):
        lrt = likelihood_ratio_test(make_result(-10.0, 2), make_result(-11.0, 3))

    assert lrt.pvalue == 1.0
    assert not lrt.significant


def test_model_selection():
    results = {"equal_mu": make_result(-10.0, 2), "free_mu": make_result(-9.5, 5)}

    best, delta = model_selection(results, "AIC")
    assert best == "equal_mu"
    assert delta == {"equal_mu": 0.0, "free_mu": pytest.approx(5.0)}

    assert model_selection(results, "BIC")[0] == "equal_mu"
    with pytest.raises(ValueError):
        model_selection(results, "DIC")


def test_standard_errors_skip_estimates_on_a_bound():
    class Boundary(QuadraticModel):
        # Maximum of b lies below zero, so the bounded estimate sits at b = 0.
        def log_likelihood(self, parameters):
            return -(parameters["a"] - 3.0) ** 2 - 10.0 * (parameters["b"] + 1.0) ** 2

    fit = TreeMLEOptimizer(Boundary()).fit(compute_se=True)

    assert fit.parameters["b"] == 0.0
    assert np.isnan(fit.standard_errors["b"])
    assert fit.standard_errors["a"] == pytest.approx(np.sqrt(0.5), rel=1e-3)
    assert fit.to_dict()["standard_errors"]["b"] is None
