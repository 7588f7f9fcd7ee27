import json

import pytest

from fernsse.config import SPORE_HABIT_CONSTRAINTS, AnalysisConfig


def test_defaults():
    config = AnalysisConfig(tree_path="tree.nwk", trait_path="traits.csv")

    assert config.constraints == SPORE_HABIT_CONSTRAINTS
    assert config.alternative_constraints == ["q14 ~ 0", "q41 ~ 0", "q23 ~ 0", "q32 ~ 0"]
    assert config.calibration_steps == 100
    assert config.production_steps == 10000
    assert config.chain_count == 4
    assert config.burn_in == 1000
    assert config.retention_interval == 5
    assert ["q24", "q42"] in config.comparisons


def test_defaults_are_not_shared():
    a = AnalysisConfig(tree_path="t", trait_path="x")
    b = AnalysisConfig(tree_path="t", trait_path="x")

    a.constraints.append("q12 ~ 0")
    assert b.constraints == SPORE_HABIT_CONSTRAINTS


@pytest.mark.parametrize(
    "overrides",
    [
        {"chain_count": 0},
        {"production_steps": 100, "burn_in": 100},
        {"burn_in": -1},
        {"sampling_fractions": [0.5, 0.5, 0.5]},
        {"sampling_fractions": [0.5, 0.5, 0.5, 1.5]},
        {"sampling_fractions": [1, 1, 1, 1], "estimated_richness": [5, 5, 5, 5]},
        {"random_seeds": [1, 2]},
        {"ultrametric_method": "nnls"},
        {"root": "equi"},
        {"root": "given"},
        {"comparisons": [["q24"]]},
        {"max_rhat": 0.9},
        {"state_columns": [0, 1]},
    ],
)
def test_validation(overrides):
    with pytest.raises(ValueError):
        AnalysisConfig(tree_path="t", trait_path="x", **overrides)


def test_json_roundtrip_resolves_relative_paths(tmp_path):
    path = tmp_path / "analysis.json"
    path.write_text(json.dumps({
        "tree_path": "data/tree.nwk",
        "trait_path": "data/traits.xlsx",
        "chain_count": 2,
        "random_seeds": [5, 6],
        "output_dir": "out",
        "alternative_constraints": None,
    }))

    config = AnalysisConfig.from_json(path)

    assert config.tree_path == str(tmp_path.resolve() / "data" / "tree.nwk")
    assert config.output_path == tmp_path.resolve() / "out"
    assert config.random_seeds == [5, 6]
    assert config.alternative_constraints is None

    config.to_json(tmp_path / "copy.json")
    again = AnalysisConfig.from_json(tmp_path / "copy.json")
    assert again == config


def test_unknown_keys_rejected():
    with pytest.raises(ValueError, match="Unknown"):
        AnalysisConfig.from_dict({"tree_path": "t", "trait_path": "x", "chains": 3})


def test_replace_revalidates():
    config = AnalysisConfig(tree_path="t", trait_path="x")

    assert config.replace(chain_count=2).chain_count == 2
    with pytest.raises(ValueError):
        config.replace(production_steps=10)
