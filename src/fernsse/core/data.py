"""Trait table loading and tree/trait matching."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from fernsse.core.states import encode_states
from fernsse.core.trees import TreeStructure, force_ultrametric, load_tree

logger = logging.getLogger(__name__)

TRAIT_COLUMNS = ("trait_a", "trait_b")

_WHITESPACE = re.compile(r"\s+")


class DataMismatchError(ValueError):
    """Raised when the tree and trait table share too few species."""


def normalize_label(label: object) -> str:
    """Strip a species label and replace internal whitespace with underscores."""
    return _WHITESPACE.sub("_", str(label).strip())


def load_traits(
    path: str | Path,
    columns: Sequence[int] = (0, 1, 2),
    sheet_name: int | str = 0,
) -> pd.DataFrame:
    """
    Load the species trait table.

    Three columns are picked by position: species identifier, first binary
    trait, second binary trait. CSV, tab-separated and Excel files are
    recognised by suffix.

    Args:
        path: Trait table file
        columns: Positions of (species, trait A, trait B)
        sheet_name: Sheet to read for Excel workbooks

    Returns:
        DataFrame indexed by normalized species label with float columns
        ``trait_a`` and ``trait_b`` (NaN where missing).
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in (".xls", ".xlsx"):
        raw = pd.read_excel(path, sheet_name=sheet_name)
    elif suffix in (".tsv", ".tab", ".txt"):
        raw = pd.read_csv(path, sep="\t")
    else:
        raw = pd.read_csv(path)

    if len(columns) != 3:
        raise ValueError(f"Expected three column positions, got {list(columns)}")
    if max(columns) >= raw.shape[1]:
        raise ValueError(
            f"Trait table {path} has {raw.shape[1]} columns; "
            f"cannot select positions {list(columns)}"
        )

    table = raw.iloc[:, list(columns)].copy()
    table.columns = ["species", *TRAIT_COLUMNS]
    return traits_from_frame(table)


def traits_from_frame(table: pd.DataFrame) -> pd.DataFrame:
    """Normalize a (species, trait_a, trait_b) frame into a trait table."""
    table = table.dropna(subset=["species"]).copy()
    table["species"] = table["species"].map(normalize_label)

    for column in TRAIT_COLUMNS:
        values = pd.to_numeric(table[column], errors="coerce")
        invalid = table[column].notna() & values.isna()
        invalid |= values.notna() & ~values.isin([0, 1])
        if invalid.any():
            bad = table.loc[invalid, column].unique().tolist()
            raise ValueError(f"Column {column} must be binary (0/1); found {bad}")
        table[column] = values.astype(float)

    duplicated = table["species"].duplicated()
    if duplicated.any():
        logger.warning(
            "Dropping %d duplicated species rows (first occurrence kept)",
            int(duplicated.sum()),
        )
        table = table.loc[~duplicated]

    return table.set_index("species")


@dataclass
class MatchedData:
    """
    Tree and trait table restricted to the same species.

    Attributes:
        tree: Pruned tree
        traits: Trait table ordered as ``tree.tip_names``
        dropped_tips: Tree tips without a complete trait record
        dropped_rows: Trait rows without a tree tip
    """

    tree: TreeStructure
    traits: pd.DataFrame
    dropped_tips: list[str] = field(default_factory=list)
    dropped_rows: list[str] = field(default_factory=list)

    @property
    def states(self) -> np.ndarray:
        """MuSSE states (1..4) in tip order."""
        return encode_states(
            self.traits["trait_a"].to_numpy(dtype=int),
            self.traits["trait_b"].to_numpy(dtype=int),
        )

    def state_counts(self, k: int = 4) -> np.ndarray:
        """Number of tips in each state."""
        return np.bincount(self.states - 1, minlength=k)

    def __repr__(self) -> str:
        return (
            f"MatchedData({self.tree.n_tips} species, "
            f"dropped {len(self.dropped_tips)} tips / {len(self.dropped_rows)} rows)"
        )


def match_tree_and_traits(tree: TreeStructure, traits: pd.DataFrame) -> MatchedData:
    """
    Inner-join tree tips and trait rows by species label.

    Tree tips are normalized the same way as trait rows, so a quoted tip
    such as 'Asplenium nidus' matches the row ``Asplenium_nidus``.

    Unmatched tips and rows are dropped, then rows with a missing trait
    (and their tips). The tree is pruned to the surviving tips and the
    trait table reordered to the tree's tip order.

    Raises:
        DataMismatchError: If fewer than two species survive, or two tree
            tips share a normalized label
    """
    tree = tree.relabel_tips(normalize_label)
    tip_names = list(tree.tip_names)
    if len(set(tip_names)) < len(tip_names):
        repeated = sorted({name for name in tip_names if tip_names.count(name) > 1})
        raise DataMismatchError(f"Tree tips share normalized labels: {repeated}")
    tip_set = set(tip_names)
    complete = traits.dropna(subset=list(TRAIT_COLUMNS))

    keep = [name for name in tip_names if name in complete.index]
    dropped_tips = [name for name in tip_names if name not in complete.index]
    dropped_rows = [name for name in traits.index if name not in tip_set]

    if len(keep) < 2:
        raise DataMismatchError(
            f"Only {len(keep)} species are shared by the tree ({tree.n_tips} tips) "
            f"and the trait table ({len(traits)} rows with "
            f"{len(complete)} complete); check that the labels match"
        )

    if dropped_tips or dropped_rows:
        logger.info(
            "Matched %d species; dropped %d tree tips and %d trait rows",
            len(keep), len(dropped_tips), len(dropped_rows),
        )

    pruned = tree.keep_tips(keep)
    ordered = complete.loc[pruned.tip_names, list(TRAIT_COLUMNS)]
    return MatchedData(
        tree=pruned,
        traits=ordered,
        dropped_tips=dropped_tips,
        dropped_rows=dropped_rows,
    )


def load_matched_data(
    tree_path: str | Path,
    trait_path: str | Path,
    columns: Sequence[int] = (0, 1, 2),
    ultrametric_method: str = "lp",
    sheet_name: int | str = 0,
) -> MatchedData:
    """Load, match, and force the tree to be ultrametric."""
    tree = load_tree(tree_path)
    logger.info("Loaded tree with %d tips from %s", tree.n_tips, tree_path)
    traits = load_traits(trait_path, columns=columns, sheet_name=sheet_name)
    logger.info("Loaded %d trait rows from %s", len(traits), trait_path)

    matched = match_tree_and_traits(tree, traits)
    matched.tree = force_ultrametric(matched.tree, method=ultrametric_method)
    return matched
