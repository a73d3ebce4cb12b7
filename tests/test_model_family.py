"""Tests for densiflux.analysis.model_family."""

import numpy as np
import pytest

from densiflux.analysis.model_family import (
    BASELINE,
    TERM_INTERACTION,
    ModelVariant,
    build_model_family,
    design_matrix,
    design_terms,
    interaction_names,
)
from densiflux.workflow.settings import DensityConfig


class TestFamily:
    def test_default_family_order_and_names(self):
        names = [v.name for v in build_model_family(DensityConfig())]

        assert names == [
            "degree-0-interaction-0",
            "degree-4-interaction-0",
            "degree-4-interaction-1",
            "degree-4-interaction-2",
            "degree-4-interaction-3",
            "degree-4-interaction-4",
            "smooth-by-group",
            "smooth",
        ]

    def test_without_smooth(self):
        family = build_model_family(DensityConfig(smooth=False, max_degree=2, interaction_degrees=(0, 2)))

        assert [v.name for v in family] == [
            "degree-0-interaction-0", "degree-2-interaction-0", "degree-2-interaction-2",
        ]

    def test_null_variants(self):
        assert BASELINE.is_null
        assert ModelVariant(smooth=True).is_null
        assert ModelVariant(smooth=True).null_variant() is None
        assert ModelVariant(smooth=True, by_group=True).null_variant() == ModelVariant(smooth=True)
        assert ModelVariant(4, 3).null_variant() == ModelVariant(4, 0)
        assert not ModelVariant(4, 0).is_null


class TestTerms:
    def test_term_counts(self):
        terms = design_terms(ModelVariant(4, 2), ["A", "B", "C"])

        # intercept + 2 group dummies + 4 powers + 2 powers x 2 contrasts
        assert len(terms) == 1 + 2 + 4 + 4

    def test_interaction_selection_matches_name_marker(self):
        variant = ModelVariant(4, 3)
        terms = design_terms(variant, ["A", "B"])

        by_kind = [t.name for t in terms if t.kind == TERM_INTERACTION]
        by_marker = [t.name for t in terms if ":" in t.name]
        assert by_kind == by_marker == interaction_names(variant, ["A", "B"])
        assert by_kind == ["GROUP[T.B]:x^1", "GROUP[T.B]:x^2", "GROUP[T.B]:x^3"]

    def test_smooth_has_no_terms(self):
        with pytest.raises(ValueError):
            design_terms(ModelVariant(smooth=True, by_group=True), ["A", "B"])
        assert interaction_names(ModelVariant(smooth=True, by_group=True), ["A", "B"]) == []


class TestDesignMatrix:
    def test_columns_and_values(self):
        x = np.array([1.0, 2.0, 3.0, 1.0, 2.0, 3.0])
        groups = ["A", "A", "A", "B", "B", "B"]
        X = design_matrix(ModelVariant(2, 1), groups, x, ["A", "B"])

        assert list(X.columns) == ["Intercept", "GROUP[T.B]", "x^1", "x^2", "GROUP[T.B]:x^1"]
        np.testing.assert_array_equal(X["GROUP[T.B]"], [0, 0, 0, 1, 1, 1])
        # standardized measurement
        assert X["x^1"].mean() == pytest.approx(0.0)
        np.testing.assert_allclose(X["x^2"], X["x^1"] ** 2)
        np.testing.assert_allclose(X["GROUP[T.B]:x^1"], X["GROUP[T.B]"] * X["x^1"])
