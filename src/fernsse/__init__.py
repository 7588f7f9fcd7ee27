"""
fernsse: Trait-dependent diversification of ferns with MuSSE

Maximum likelihood and Bayesian estimation of speciation, extinction and
transition rates for two binary traits on a dated phylogeny.
"""

__version__ = "0.1.0"

from fernsse.config import AnalysisConfig
from fernsse.core.constraints import constrain
from fernsse.core.data import DataMismatchError, MatchedData, load_matched_data
from fernsse.core.musse import MuSSEModel
from fernsse.core.trees import TreeStructure, load_tree
from fernsse.recipes import run_analysis

__all__ = [
    "AnalysisConfig",
    "constrain",
    "DataMismatchError",
    "MatchedData",
    "load_matched_data",
    "MuSSEModel",
    "TreeStructure",
    "load_tree",
    "run_analysis",
    "__version__",
]
