from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from densiflux.workflow.settings import DensityConfig

TERM_INTERCEPT = "intercept"
TERM_GROUP = "group"
TERM_MEASUREMENT = "measurement"
TERM_INTERACTION = "interaction"


@dataclass(frozen=True)
class ModelVariant:
    """
    Tagged description of one member of the per-feature model family.

    Polynomial variants: log-density = group + x^1..x^degree
    + group:x^1..x^interaction_degree. Smooth variants replace the polynomial
    by a penalized spline, one curve per group when `by_group` is set.
    """

    degree: int = 0
    interaction_degree: int = 0
    smooth: bool = False
    by_group: bool = False

    @property
    def name(self) -> str:
        if self.smooth:
            return "smooth-by-group" if self.by_group else "smooth"
        return f"degree-{self.degree}-interaction-{self.interaction_degree}"

    @property
    def is_null(self) -> bool:
        """Baseline and smooth null are fit, but never tested themselves."""
        if self.smooth:
            return not self.by_group
        return self.degree == 0 and self.interaction_degree == 0

    def null_variant(self) -> Optional["ModelVariant"]:
        """Nested null for the likelihood-ratio test (None for null variants)."""
        if self.is_null:
            return None
        if self.smooth:
            return ModelVariant(smooth=True, by_group=False)
        return ModelVariant(degree=self.degree, interaction_degree=0)

    def __str__(self) -> str:
        return self.name


BASELINE = ModelVariant(degree=0, interaction_degree=0)


def build_model_family(config: DensityConfig) -> List[ModelVariant]:
    """Group-only baseline, degree-d models over the interaction degrees, then the smooth pair."""
    family = [BASELINE]
    for k in sorted(config.interaction_degrees):
        variant = ModelVariant(degree=config.max_degree, interaction_degree=k)
        if variant not in family:
            family.append(variant)
    if config.smooth:
        family.append(ModelVariant(smooth=True, by_group=True))
        family.append(ModelVariant(smooth=True, by_group=False))
    return family


@dataclass(frozen=True)
class Term:
    name: str
    kind: str
    power: int = 0
    level: Optional[str] = None


def group_column_name(level) -> str:
    return f"GROUP[T.{level}]"


def design_terms(variant: ModelVariant, levels: Sequence) -> List[Term]:
    """
    Explicit term list of a polynomial variant (treatment coding, first level as reference).

    Interaction names contain ':' so that selecting by kind and selecting by
    the ':' marker give the same coefficient set.
    """
    if variant.smooth:
        raise ValueError(f"{variant.name} has no fixed polynomial terms")

    terms = [Term("Intercept", TERM_INTERCEPT)]
    contrasts = list(levels)[1:]
    terms += [Term(group_column_name(lvl), TERM_GROUP, level=str(lvl)) for lvl in contrasts]
    terms += [Term(f"x^{p}", TERM_MEASUREMENT, power=p) for p in range(1, variant.degree + 1)]
    terms += [
        Term(f"{group_column_name(lvl)}:x^{p}", TERM_INTERACTION, power=p, level=str(lvl))
        for p in range(1, variant.interaction_degree + 1)
        for lvl in contrasts
    ]
    return terms


def standardize(x: np.ndarray) -> np.ndarray:
    """Center and scale the measurement axis before raising it to powers."""
    x = np.asarray(x, dtype=float)
    sd = x.std()
    return (x - x.mean()) / (sd if sd > 0 else 1.0)


def design_matrix(variant: ModelVariant, groups: Sequence, x: Sequence[float], levels: Sequence) -> pd.DataFrame:
    """Evaluate `design_terms` on long-format rows (one row per group and bin)."""
    groups = np.asarray(groups).astype(str)
    z = standardize(x)
    columns = {}
    for term in design_terms(variant, levels):
        if term.kind == TERM_INTERCEPT:
            col = np.ones_like(z)
        elif term.kind == TERM_GROUP:
            col = (groups == term.level).astype(float)
        elif term.kind == TERM_MEASUREMENT:
            col = z ** term.power
        else:
            col = (groups == term.level).astype(float) * z ** term.power
        columns[term.name] = col
    return pd.DataFrame(columns)


def interaction_names(variant: ModelVariant, levels: Sequence) -> List[str]:
    if variant.smooth:
        return []
    return [t.name for t in design_terms(variant, levels) if t.kind == TERM_INTERACTION]
