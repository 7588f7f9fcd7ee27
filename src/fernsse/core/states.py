"""State space for two binary traits and sampling fractions."""

from typing import Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field

import numpy as np


def encode_states(trait_a: Sequence[int], trait_b: Sequence[int]) -> np.ndarray:
    """
    Map pairs of binary traits to MuSSE states 1..4.

    The pair is read as the two-digit code ``"{a}{b}"`` and the codes are
    numbered lexicographically:

        (0, 0) -> 1,  (0, 1) -> 2,  (1, 0) -> 3,  (1, 1) -> 4

    Args:
        trait_a: First binary trait (0/1)
        trait_b: Second binary trait (0/1)

    Returns:
        Integer array of states
    """
    a = np.asarray(trait_a)
    b = np.asarray(trait_b)
    if a.shape != b.shape:
        raise ValueError(f"Trait arrays differ in shape: {a.shape} vs {b.shape}")
    for name, values in (("trait_a", a), ("trait_b", b)):
        if not np.isin(values, (0, 1)).all():
            raise ValueError(f"{name} must contain only 0 and 1")
    return 2 * a.astype(int) + b.astype(int) + 1


def decode_states(states: Sequence[int]) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of :func:`encode_states`."""
    s = np.asarray(states, dtype=int)
    if not np.isin(s, (1, 2, 3, 4)).all():
        raise ValueError("States must be in 1..4")
    code = s - 1
    return code // 2, code % 2


@dataclass
class TraitStateSpace:
    """
    Labelled enumeration of the four two-trait states.

    Attributes:
        trait_names: Names of the (first, second) trait
        level_names: For each trait, labels of values 0 and 1
        metadata: Free-form annotations
    """

    trait_names: Tuple[str, str] = ("trait_a", "trait_b")
    level_names: Optional[Tuple[Tuple[str, str], Tuple[str, str]]] = None
    metadata: dict = field(default_factory=dict)

    @property
    def dimension(self) -> int:
        return 4

    @property
    def states(self) -> List[int]:
        return [1, 2, 3, 4]

    def label(self, state: int) -> str:
        """Human-readable label, e.g. ``"spore=green, habit=epiphytic"``."""
        a, b = decode_states([state])
        values = (int(a[0]), int(b[0]))
        parts = []
        for t, value in enumerate(values):
            level = self.level_names[t][value] if self.level_names else str(value)
            parts.append(f"{self.trait_names[t]}={level}")
        return ", ".join(parts)

    def labels(self) -> Dict[int, str]:
        return {s: self.label(s) for s in self.states}

    def __len__(self) -> int:
        return self.dimension

    def __repr__(self) -> str:
        return f"TraitStateSpace(traits={self.trait_names})"


def validate_sampling_fractions(fractions: Sequence[float], k: int) -> np.ndarray:
    """
    Check a sampling fraction vector.

    Raises:
        ValueError: Wrong length, non-finite, or outside (0, 1]
    """
    f = np.asarray(fractions, dtype=float)
    if f.shape != (k,):
        raise ValueError(f"Expected {k} sampling fractions, got {f.shape[0] if f.ndim else f}")
    if not np.all(np.isfinite(f)) or np.any(f <= 0) or np.any(f > 1):
        raise ValueError(f"Sampling fractions must lie in (0, 1], got {f.tolist()}")
    return f


def sampling_fractions(
    sampled_counts: Sequence[int],
    estimated_richness: Sequence[float],
) -> np.ndarray:
    """
    Proportion of the estimated extant species in each state that is sampled.

    Args:
        sampled_counts: Number of tips in each state
        estimated_richness: Estimated total extant species in each state

    Returns:
        Sampling fraction per state
    """
    counts = np.asarray(sampled_counts, dtype=float)
    richness = np.asarray(estimated_richness, dtype=float)
    if counts.shape != richness.shape:
        raise ValueError(
            f"Got {counts.size} state counts but {richness.size} richness estimates"
        )
    if np.any(richness <= 0):
        raise ValueError("Estimated richness must be positive")
    if np.any(counts > richness):
        raise ValueError(
            f"Sampled counts {counts.tolist()} exceed estimated richness {richness.tolist()}"
        )
    return validate_sampling_fractions(counts / richness, counts.size)
