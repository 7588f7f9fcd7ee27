import numpy as np
import pytest

from fernsse.core.musse import (
    MuSSEModel,
    musse_parameter_names,
    rates_from_vector,
    starting_point_bd,
    starting_point_musse,
    yule_rate,
)
from fernsse.core.pruning import MuSSEPruning, MuSSERates, musse_derivatives, musse_jacobian
from fernsse.core.trees import TreeStructure

CHERRY = "(A:1,B:1);"
BALANCED = "((A:1,B:1):1,(C:1,D:1):1);"


def bd_params(lam, mu):
    return {"lambda1": lam, "mu1": mu}


def test_parameter_names_order():
    names = musse_parameter_names(2)
    assert names == ["lambda1", "lambda2", "mu1", "mu2", "q12", "q21"]

    names = musse_parameter_names(4)
    assert len(names) == 20
    assert names[8:11] == ["q12", "q13", "q14"]
    assert names[-1] == "q43"

    assert "q1.10" in musse_parameter_names(10)


def test_rates_from_vector_fills_off_diagonal_row_major():
    rates = rates_from_vector([1, 2, 0.1, 0.2, 0.3, 0.4], 2)

    np.testing.assert_allclose(rates.speciation, [1, 2])
    np.testing.assert_allclose(rates.extinction, [0.1, 0.2])
    np.testing.assert_allclose(rates.transitions, [[0, 0.3], [0.4, 0]])

    with pytest.raises(ValueError):
        rates_from_vector([1, 2, 3], 2)


def test_derivatives_without_extinction_or_transitions():
    y = np.array([0.0, 1.0])
    dy = musse_derivatives(y, np.array([2.0]), np.array([0.0]), np.zeros((1, 1)))

    np.testing.assert_allclose(dy, [0.0, -2.0])


def test_jacobian_matches_finite_differences():
    rng = np.random.default_rng(3)
    lam = np.array([0.4, 0.9, 0.2])
    mu = np.array([0.1, 0.3, 0.05])
    q = rng.uniform(0.0, 0.2, size=(3, 3))
    np.fill_diagonal(q, 0.0)
    y = rng.uniform(0.0, 1.0, size=6)
    h = 1e-6

    numeric = np.empty((6, 6))
    for j in range(6):
        step = np.zeros(6)
        step[j] = h
        numeric[:, j] = (
            musse_derivatives(y + step, lam, mu, q) - musse_derivatives(y - step, lam, mu, q)
        ) / (2 * h)

    np.testing.assert_allclose(musse_jacobian(y, lam, mu, q), numeric, atol=1e-8)


def test_explicit_solver_agrees_with_lsoda():
    tree = TreeStructure.from_newick("((A:1,B:1):0.5,C:1.5);")
    rates = rates_from_vector([0.5, 0.8, 0.1, 0.2, 0.05, 0.15], 2)

    stiff = MuSSEPruning(tree, [1, 2, 2], n_states=2).compute_likelihood(rates)
    explicit = MuSSEPruning(tree, [1, 2, 2], n_states=2, method="RK45").compute_likelihood(rates)

    assert explicit.log_likelihood == pytest.approx(stiff.log_likelihood, abs=1e-6)


def test_yule_cherry_matches_closed_form():
    tree = TreeStructure.from_newick(CHERRY)
    model = MuSSEModel(tree, [1, 1], k=1)

    # D = lam * exp(-2 lam), conditioned on survival: divide by lam.
    assert model.log_likelihood(bd_params(0.7, 0.0)) == pytest.approx(-1.4, rel=1e-6)


@pytest.mark.parametrize("lam", [0.2, 1 / 3, 1.5])
def test_yule_four_tips_matches_closed_form(lam):
    tree = TreeStructure.from_newick(BALANCED)
    model = MuSSEModel(tree, [1, 1, 1, 1], k=1)

    expected = 2 * np.log(lam) - 6 * lam
    assert model.log_likelihood(bd_params(lam, 0.0)) == pytest.approx(expected, rel=1e-6)


def test_negative_component_gives_minus_infinity():
    tree = TreeStructure.from_newick(BALANCED)
    model = MuSSEModel(tree, [1, 2, 1, 2], k=2)

    x = np.array([0.5, 0.5, 0.1, 0.1, 0.1, -0.01])
    assert model(x) == -np.inf
    assert model.pruning.compute_likelihood(rates_from_vector(x, 2)).log_likelihood == -np.inf


def test_unused_state_reduces_to_birth_death():
    tree = TreeStructure.from_newick(BALANCED)
    bd = MuSSEModel(tree, [1, 1, 1, 1], k=1)
    two_state = MuSSEModel(tree, [1, 1, 1, 1], k=2)

    params = {"lambda1": 0.8, "lambda2": 0.3, "mu1": 0.2, "mu2": 0.1, "q12": 0.0, "q21": 0.0}
    assert two_state.log_likelihood(params) == pytest.approx(
        bd.log_likelihood(bd_params(0.8, 0.2)), rel=1e-6
    )


def test_unknown_tip_state_sums_over_states():
    tree = TreeStructure.from_newick(BALANCED)
    known = MuSSEModel(tree, [1, 1, 1, 1], k=1)
    unknown = MuSSEModel(tree, [1, np.nan, 1, 1], k=1)

    params = bd_params(0.6, 0.1)
    assert unknown.log_likelihood(params) == pytest.approx(known.log_likelihood(params))


def test_flat_root_with_identical_states():
    tree = TreeStructure.from_newick(BALANCED)
    states = [1, 1, 1, 1]
    obs = MuSSEModel(tree, states, k=2, root="obs")
    flat = MuSSEModel(tree, states, k=2, root="flat")

    params = {"lambda1": 0.5, "lambda2": 0.5, "mu1": 0.1, "mu2": 0.1, "q12": 0.0, "q21": 0.0}
    assert flat.log_likelihood(params) == pytest.approx(
        obs.log_likelihood(params) - np.log(2), rel=1e-6
    )


def test_sampling_fraction_changes_likelihood():
    tree = TreeStructure.from_newick(BALANCED)
    full = MuSSEModel(tree, [1, 1, 1, 1], k=1)
    partial = MuSSEModel(tree, [1, 1, 1, 1], k=1, sampling_fractions=[0.5])

    params = bd_params(0.6, 0.1)
    assert np.isfinite(partial.log_likelihood(params))
    assert partial.log_likelihood(params) != pytest.approx(full.log_likelihood(params))


def test_compute_returns_root_conditionals():
    tree = TreeStructure.from_newick(BALANCED)
    model = MuSSEModel(tree, [1, 2, 1, 2], k=2)

    result = model.compute(dict(zip(model.get_parameter_names(), [0.5, 0.6, 0.1, 0.1, 0.2, 0.2])))

    assert np.isfinite(result.log_likelihood)
    assert result.root_d.shape == (2,)
    assert result.root_p.sum() == pytest.approx(1.0)


def test_pruning_rejects_bad_inputs():
    polytomy = TreeStructure.from_newick("(A:1,B:1,C:1);")
    with pytest.raises(ValueError, match="binary"):
        MuSSEPruning(polytomy, [1, 1, 1], n_states=1)

    tree = TreeStructure.from_newick(BALANCED)
    with pytest.raises(ValueError):
        MuSSEPruning(tree, [1, 2, 3, 5], n_states=4)
    with pytest.raises(ValueError):
        MuSSEPruning(tree, [1, 1, 1], n_states=1)
    with pytest.raises(ValueError):
        MuSSEPruning(tree, [1, 1, 1, 1], n_states=2, root="given")
    with pytest.raises(ValueError):
        MuSSEPruning(tree, [1, 1, 1, 1], n_states=1, root="stationary")


def test_given_root_weights():
    tree = TreeStructure.from_newick(BALANCED)
    model = MuSSEModel(tree, [1, 2, 1, 2], k=2, root="given", root_p=[0.25, 0.75])

    assert np.isfinite(model(np.array([0.5, 0.6, 0.1, 0.1, 0.2, 0.2])))


def test_mismatched_rates_dimension():
    tree = TreeStructure.from_newick(BALANCED)
    pruning = MuSSEPruning(tree, [1, 1, 1, 1], n_states=2)
    rates = MuSSERates(np.ones(1), np.zeros(1), np.zeros((1, 1)))

    with pytest.raises(ValueError):
        pruning.compute_likelihood(rates)


def test_yule_rate_and_starting_points():
    tree = TreeStructure.from_newick(BALANCED)

    assert yule_rate(tree) == pytest.approx(1 / 3)
    assert starting_point_bd(tree, yule=True) == (pytest.approx(1 / 3), 0.0)

    x0 = starting_point_musse(tree, 2, yule=True)
    np.testing.assert_allclose(x0, [1 / 3, 1 / 3, 0, 0, 1 / 15, 1 / 15])

    with pytest.raises(ValueError):
        yule_rate(TreeStructure.from_newick(CHERRY))


def test_birth_death_starting_point_is_feasible():
    tree = TreeStructure.from_newick(BALANCED)

    lam, mu = starting_point_bd(tree)

    assert lam > 0
    assert mu >= 0


def test_model_initial_parameters_from_heuristic():
    tree = TreeStructure.from_newick(BALANCED)
    model = MuSSEModel(tree, [1, 2, 3, 4], k=4)

    initial = model.get_initial_parameters()

    assert list(initial) == model.get_parameter_names()
    assert all(v >= 0 for v in initial.values())
    assert initial["q12"] == pytest.approx(initial["q43"])
    assert model.n_observations == 4
    assert all(lower == 0.0 and upper is None for lower, upper in model.get_parameter_bounds().values())
