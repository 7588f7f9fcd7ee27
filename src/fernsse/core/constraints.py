"""
Parameter constraints for tree likelihood models.

A constraint set turns a model over the full parameter vector into a
model over a smaller vector of free parameters. Two kinds of constraint
are supported, written as formulae:

- aliasing, ``"mu2 ~ mu1"``: mu2 always takes the value of mu1
- fixing, ``"q14 ~ 0"``: q14 is held at a constant

The wrapped model never sees the constraints; the free vector is expanded
into the full vector before every evaluation. Constrained models are
themselves ``TreeLikelihoodModel`` instances, so constraints compose.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple, Union
import re

import numpy as np

from .tree_inference import TreeLikelihoodModel

_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


@dataclass(frozen=True)
class Constraint:
    """
    One parsed constraint formula.

    Attributes:
        target: Parameter being constrained (left-hand side)
        source: Parameter it is aliased to, or None for a constant
        value: Constant value when ``source`` is None
    """
    target: str
    source: Union[str, None] = None
    value: float = 0.0

    @classmethod
    def parse(cls, formula: str) -> "Constraint":
        """Parse ``"lhs ~ rhs"`` where rhs is a parameter name or a number."""
        parts = formula.split("~")
        if len(parts) != 2:
            raise ValueError(f"Constraint must have the form 'lhs ~ rhs': {formula!r}")
        lhs, rhs = (p.strip() for p in parts)
        if not _NAME.match(lhs):
            raise ValueError(f"Invalid parameter name {lhs!r} in {formula!r}")
        if _NAME.match(rhs):
            if rhs == lhs:
                raise ValueError(f"Parameter constrained to itself: {formula!r}")
            return cls(target=lhs, source=rhs)
        try:
            value = float(rhs)
        except ValueError:
            raise ValueError(f"Cannot parse right-hand side of {formula!r}") from None
        if not np.isfinite(value) or value < 0:
            raise ValueError(f"Constant in {formula!r} must be finite and non-negative")
        return cls(target=lhs, value=value)

    def __str__(self) -> str:
        rhs = self.source if self.source is not None else repr(self.value)
        return f"{self.target} ~ {rhs}"


class ConstrainedModel(TreeLikelihoodModel):
    """
    View of a likelihood model with some parameters aliased or fixed.

    Usage:
        lik = MuSSEModel(tree, states, k=4, sampling_fractions=f)
        lik_c = constrain(lik, "mu2 ~ mu1", "q14 ~ 0")
        lik_c.get_parameter_names()   # free parameters only
        lik_c([...])                  # evaluate at a free vector
    """

    def __init__(self, base: TreeLikelihoodModel, constraints: Sequence[Constraint]):
        self.base = base
        base_names = base.get_parameter_names()

        targets = {}
        for c in constraints:
            if c.target not in base_names:
                raise ValueError(f"Unknown parameter {c.target!r}; expected one of {base_names}")
            if c.target in targets:
                raise ValueError(f"Parameter {c.target!r} constrained more than once")
            if c.source is not None and c.source not in base_names:
                raise ValueError(f"Unknown parameter {c.source!r} in '{c}'")
            targets[c.target] = c

        # Resolve chains like a ~ b, b ~ c and a ~ b, b ~ 0.
        resolved: Dict[str, Constraint] = {}
        for name, c in targets.items():
            seen = {name}
            while c.source is not None and c.source in targets:
                if c.source in seen:
                    raise ValueError(f"Circular constraints involving {name!r}")
                seen.add(c.source)
                c = targets[c.source]
            resolved[name] = Constraint(target=name, source=c.source, value=c.value)

        self.constraints: Tuple[Constraint, ...] = tuple(targets.values())
        self._resolved = resolved
        self._base_names = base_names
        self._free_names = [n for n in base_names if n not in resolved]
        if not self._free_names:
            raise ValueError("Constraints leave no free parameters")

    def get_parameter_names(self) -> List[str]:
        return list(self._free_names)

    @property
    def constrained_names(self) -> List[str]:
        return [n for n in self._base_names if n in self._resolved]

    def get_parameter_bounds(self) -> Dict[str, Tuple[float, float]]:
        bounds = self.base.get_parameter_bounds()
        return {name: bounds[name] for name in self._free_names}

    def get_initial_parameters(self) -> Dict[str, float]:
        initial = self.base.get_initial_parameters()
        return {name: initial[name] for name in self._free_names}

    @property
    def n_observations(self) -> int:
        return self.base.n_observations

    def expand(self, parameters: Dict[str, float]) -> Dict[str, float]:
        """Full parameter dict (in base order) from a free parameter dict."""
        missing = [n for n in self._free_names if n not in parameters]
        if missing:
            raise ValueError(f"Missing free parameters: {missing}")
        full = {}
        for name in self._base_names:
            c = self._resolved.get(name)
            if c is None:
                full[name] = parameters[name]
            elif c.source is None:
                full[name] = c.value
            else:
                full[name] = parameters[c.source]
        return full

    def expand_vector(self, x: Sequence[float]) -> np.ndarray:
        """Full parameter vector from a free parameter vector."""
        full = self.expand(dict(zip(self._free_names, np.asarray(x, dtype=float))))
        return np.array([full[name] for name in self._base_names])

    def log_likelihood(self, parameters: Dict[str, float]) -> float:
        return self.base.log_likelihood(self.expand(parameters))

    def full_parameter_names(self) -> List[str]:
        """Parameter names of the innermost unconstrained model."""
        if isinstance(self.base, ConstrainedModel):
            return self.base.full_parameter_names()
        return list(self._base_names)

    def expand_full(self, parameters: Dict[str, float]) -> Dict[str, float]:
        """Expand through every constraint layer to the innermost model."""
        full = self.expand(parameters)
        if isinstance(self.base, ConstrainedModel):
            return self.base.expand_full(full)
        return full

    def __repr__(self) -> str:
        rules = ", ".join(str(c) for c in self.constraints)
        return f"ConstrainedModel({len(self._free_names)} free; {rules})"


def constrain(model: TreeLikelihoodModel, *formulae: str) -> ConstrainedModel:
    """
    Constrain a likelihood model.

    Args:
        model: Model to wrap (may itself be constrained)
        *formulae: Constraints such as ``"mu2 ~ mu1"`` or ``"q14 ~ 0"``

    Returns:
        ConstrainedModel over the remaining free parameters
    """
    return ConstrainedModel(model, [Constraint.parse(f) for f in formulae])
