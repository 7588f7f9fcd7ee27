"""
Analysis configuration.

All knobs of a run live in one dataclass that can be written to and read
from JSON, so a finished analysis records exactly how it was produced.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

from fernsse.core.pruning import ROOT_OPTIONS

SPORE_HABIT_CONSTRAINTS = [
    "mu2 ~ mu1",
    "mu3 ~ mu1",
    "mu4 ~ mu1",
    "q14 ~ 0",
    "q41 ~ 0",
    "q23 ~ 0",
    "q32 ~ 0",
]
"""Equal extinction across states; no simultaneous change of both traits."""

FREE_EXTINCTION_CONSTRAINTS = [c for c in SPORE_HABIT_CONSTRAINTS if not c.startswith("mu")]
"""Relaxation of the default set with one extinction rate per state."""

DEFAULT_COMPARISONS = [
    ["q24", "q42"],
    ["q13", "q31"],
    ["lambda2", "lambda1"],
    ["lambda4", "lambda3"],
]

ULTRAMETRIC_METHODS = ("lp", "extend")


@dataclass
class AnalysisConfig:
    """
    Settings for one MuSSE analysis.

    Exactly one of ``sampling_fractions`` and ``estimated_richness`` may be
    given; with neither, every state is assumed completely sampled.

    Attributes:
        tree_path: Newick tree file
        trait_path: Trait table (CSV, TSV or Excel)
        state_columns: Positions of (species, trait A, trait B) in the table
        sheet_name: Excel sheet to read
        sampling_fractions: Per-state sampling fractions
        estimated_richness: Per-state estimated extant species counts
        constraints: Constraint formulae such as ``"mu2 ~ mu1"``
        alternative_constraints: Constraint set fitted for comparison with
            ``constraints`` (likelihood ratio test, AICc); None skips it
        calibration_steps: Length of the width calibration chain
        calibration_width: Initial proposal width of the calibration chain
        production_steps: Steps per production chain
        chain_count: Number of production chains
        burn_in: Rows with step index below this are discarded
        retention_interval: Keep every n-th step
        random_seeds: One seed per production chain (drawn if empty)
        calibration_seed: Seed of the calibration chain (drawn if None)
        output_dir: Directory for traces and results
        ultrametric_method: "lp" or "extend"
        condition_surv: Condition on survival of the crown lineages
        root: Root state weighting ("obs", "flat" or "given")
        root_p: Root state weights when ``root="given"``
        comparisons: Parameter pairs ``[a, b]`` reported as P(a > b)
        optimizer_maxiter: Iteration limit of the MLE search
        min_ess: Smallest acceptable pooled effective sample size
        max_rhat: Largest acceptable Gelman-Rubin statistic
    """

    tree_path: str
    trait_path: str
    state_columns: list[int] = field(default_factory=lambda: [0, 1, 2])
    sheet_name: int | str = 0
    sampling_fractions: Optional[list[float]] = None
    estimated_richness: Optional[list[float]] = None
    constraints: list[str] = field(default_factory=lambda: list(SPORE_HABIT_CONSTRAINTS))
    alternative_constraints: Optional[list[str]] = field(
        default_factory=lambda: list(FREE_EXTINCTION_CONSTRAINTS)
    )
    calibration_steps: int = 100
    calibration_width: float = 0.1
    production_steps: int = 10000
    chain_count: int = 4
    burn_in: int = 1000
    retention_interval: int = 5
    random_seeds: list[int] = field(default_factory=list)
    calibration_seed: Optional[int] = None
    output_dir: str = "results"
    ultrametric_method: str = "lp"
    condition_surv: bool = True
    root: str = "obs"
    root_p: Optional[list[float]] = None
    comparisons: list[list[str]] = field(default_factory=lambda: [list(c) for c in DEFAULT_COMPARISONS])
    optimizer_maxiter: int = 1000
    min_ess: float = 200.0
    max_rhat: float = 1.1

    def __post_init__(self):
        if len(self.state_columns) != 3:
            raise ValueError("state_columns must give three positions")
        if self.sampling_fractions is not None and self.estimated_richness is not None:
            raise ValueError("Give sampling_fractions or estimated_richness, not both")
        for name in ("sampling_fractions", "estimated_richness"):
            values = getattr(self, name)
            if values is not None and len(values) != 4:
                raise ValueError(f"{name} must have one value per state (4)")
        if self.sampling_fractions is not None:
            if any(not 0 < f <= 1 for f in self.sampling_fractions):
                raise ValueError("sampling_fractions must lie in (0, 1]")
        for name in (
            "calibration_steps",
            "production_steps",
            "chain_count",
            "retention_interval",
            "optimizer_maxiter",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive")
        if self.burn_in < 0:
            raise ValueError("burn_in must be non-negative")
        if self.burn_in >= self.production_steps:
            raise ValueError(
                f"burn_in ({self.burn_in}) must be below production_steps ({self.production_steps})"
            )
        if not self.calibration_width > 0:
            raise ValueError("calibration_width must be positive")
        if self.random_seeds and len(self.random_seeds) != self.chain_count:
            raise ValueError(
                f"Got {len(self.random_seeds)} random_seeds for {self.chain_count} chains"
            )
        if self.ultrametric_method not in ULTRAMETRIC_METHODS:
            raise ValueError(f"ultrametric_method must be one of {ULTRAMETRIC_METHODS}")
        if self.root not in ROOT_OPTIONS:
            raise ValueError(f"root must be one of {ROOT_OPTIONS}")
        if self.root == "given" and self.root_p is None:
            raise ValueError("root='given' requires root_p")
        for pair in self.comparisons:
            if len(pair) != 2:
                raise ValueError(f"Comparisons are pairs of parameter names, got {pair}")
        if self.min_ess <= 0 or self.max_rhat < 1:
            raise ValueError("min_ess must be positive and max_rhat at least 1")

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir)

    def resolve_paths(self, base: Path) -> "AnalysisConfig":
        """Interpret relative input and output paths against ``base``."""
        updates = {}
        for name in ("tree_path", "trait_path", "output_dir"):
            path = Path(getattr(self, name))
            if not path.is_absolute():
                updates[name] = str(base / path)
        return self.replace(**updates)

    def replace(self, **changes) -> "AnalysisConfig":
        data = self.to_dict()
        data.update(changes)
        return type(self).from_dict(data)

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self, path: Path) -> None:
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}")
        return cls(**data)

    @classmethod
    def from_json(cls, path: Path) -> "AnalysisConfig":
        """Load a config; relative paths are taken relative to the file."""
        path = Path(path).resolve()
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data).resolve_paths(path.parent)
