"""
Analysis recipes.

Each recipe wires the core components into one complete, configurable
workflow and writes its results to an output directory.
"""

from fernsse.recipes.spore_habit import (
    SPORE_HABIT_STATES,
    AnalysisResult,
    build_model,
    resolve_sampling_fractions,
    run_analysis,
)

__all__ = [
    "SPORE_HABIT_STATES",
    "AnalysisResult",
    "build_model",
    "resolve_sampling_fractions",
    "run_analysis",
]
