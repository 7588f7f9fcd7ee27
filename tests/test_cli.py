import json
from types import SimpleNamespace

import numpy as np
import pandas as pd
from typer.testing import CliRunner

import fernsse.recipes
from fernsse import __version__
from fernsse.cli import app
from fernsse.core.diagnostics import ConvergenceReport
from fernsse.core.summary import PosteriorSummary
from fernsse.core.tree_inference import MLEResult

runner = CliRunner()


def write_traces(directory, n=200, shift=0.0):
    rng = np.random.default_rng(0)
    paths = []
    for chain in (1, 2):
        path = directory / f"chain_{chain}.csv"
        pd.DataFrame({
            "i": np.arange(1, n + 1) * 5,
            "q24": rng.gamma(3.0, 0.1, size=n) + shift * (chain - 1),
            "q42": rng.gamma(1.0, 0.1, size=n),
            "p": rng.normal(-40, 1, size=n),
        }).to_csv(path, index=False)
        paths.append(path)
    return paths


def test_version():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_summarize_reports_comparisons(tmp_path):
    paths = write_traces(tmp_path)
    output = tmp_path / "summary.json"

    result = runner.invoke(app, [
        "summarize", *map(str, paths), "--burn-in", "100",
        "--compare", "q24:q42", "--output", str(output),
    ])

    assert result.exit_code == 0, result.stdout
    assert "q24 > q42" in result.stdout
    data = json.loads(output.read_text())
    assert data["n_chains"] == 2
    assert data["n_samples"] == 2 * 181
    assert 0.0 <= data["comparisons"]["q24 > q42"] <= 1.0


def test_summarize_unknown_parameter(tmp_path):
    paths = write_traces(tmp_path)

    result = runner.invoke(app, ["summarize", *map(str, paths), "--compare", "q24:q99"])

    assert result.exit_code == 1
    assert "q99" in result.stdout


def test_diagnose_passes_for_mixed_chains(tmp_path):
    paths = write_traces(tmp_path)

    result = runner.invoke(app, ["diagnose", *map(str, paths), "--min-ess", "50"])

    assert result.exit_code == 0, result.stdout
    assert "All convergence checks passed" in result.stdout


def test_diagnose_fails_for_separated_chains(tmp_path):
    paths = write_traces(tmp_path, shift=5.0)

    result = runner.invoke(app, ["diagnose", *map(str, paths), "--min-ess", "50"])

    assert result.exit_code == 1
    assert "R-hat" in result.stdout


def test_run_rejects_invalid_config(tmp_path):
    config = tmp_path / "analysis.json"
    config.write_text(json.dumps({"tree_path": "t.nwk", "trait_path": "x.csv", "chain_count": 0}))

    result = runner.invoke(app, ["run", str(config)])

    assert result.exit_code == 2
    assert "Invalid configuration" in result.stdout


def test_run_reports_data_mismatch(tmp_path):
    (tmp_path / "tree.nwk").write_text("((A:1,B:1):1,C:2);\n")
    (tmp_path / "traits.csv").write_text("species,spore,habit\nX,0,0\nY,1,1\n")
    config = tmp_path / "analysis.json"
    config.write_text(json.dumps({"tree_path": "tree.nwk", "trait_path": "traits.csv"}))

    result = runner.invoke(app, ["run", str(config), "--output-dir", str(tmp_path / "out")])

    assert result.exit_code == 1
    assert "Data error" in result.stdout


def test_run_applies_overrides(tmp_path, monkeypatch):
    config = tmp_path / "analysis.json"
    config.write_text(json.dumps({"tree_path": "tree.nwk", "trait_path": "traits.csv"}))
    captured = {}

    def fake_run_analysis(cfg, resume=False):
        captured["config"] = cfg
        captured["resume"] = resume
        return SimpleNamespace(
            mle=MLEResult(parameters={"lambda1": 0.3}, log_likelihood=-12.5, n_parameters=1,
                          n_observations=8, aic=27.0, aicc=27.8, bic=27.1),
            model_comparison={
                "alternative": {"log_likelihood": -10.0, "n_parameters": 4},
                "lrt": {"statistic": 5.0, "df": 3, "pvalue": 0.17},
                "criterion": "AIC",
                "preferred": "constrained",
            },
            failed_chains=[],
            diagnostics=ConvergenceReport(ess={"lambda1": 900.0}, rhat={"lambda1": 1.001},
                                          n_chains=2, n_samples=[100, 100],
                                          min_ess=200.0, max_rhat=1.1),
            summary=PosteriorSummary(
                table=pd.DataFrame([{"parameter": "lambda1", "mean": 0.3, "median": 0.29,
                                     "lower": 0.1, "upper": 0.6, "hpd_lower": 0.08,
                                     "hpd_upper": 0.55}]),
                comparisons={"lambda2 > lambda1": 0.7},
                n_samples=200,
                n_chains=2,
            ),
        )

    monkeypatch.setattr(fernsse.recipes, "run_analysis", fake_run_analysis)

    result = runner.invoke(app, [
        "run", str(config), "--production-steps", "2000", "--chains", "2",
        "--seed", "7", "--resume", "--log-level", "WARNING",
    ])

    assert result.exit_code == 0, result.stdout
    cfg = captured["config"]
    assert cfg.production_steps == 2000
    assert cfg.chain_count == 2
    assert len(cfg.random_seeds) == 2
    assert cfg.calibration_seed == 7
    assert captured["resume"] is True
    assert "lambda2 > lambda1" in result.stdout
    assert "df 3" in result.stdout
    assert "prefers the constrained model" in result.stdout
