"""Shared test fixtures for densiflux tests."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from densiflux.workflow.settings import DensityConfig


def build_adata(features: dict, groups) -> ad.AnnData:
    """features: feature id -> values per sample (aligned with `groups`)."""
    groups = list(groups)
    X = np.column_stack([np.asarray(v, dtype=float) for v in features.values()])
    obs = pd.DataFrame({"SampleType": groups}, index=[f"cell{i}" for i in range(len(groups))])
    var = pd.DataFrame(index=list(features.keys()))
    return ad.AnnData(X=X, obs=obs, var=var)


@pytest.fixture
def groups_50x2():
    return ["A"] * 50 + ["B"] * 50


@pytest.fixture
def same_distribution(groups_50x2):
    """Both groups hold exactly the same 50 draws."""
    rng = np.random.default_rng(0)
    a = rng.normal(20, 1, 50)
    return np.concatenate([a, a])


@pytest.fixture
def shifted(groups_50x2):
    """Group B shifted by five standard deviations."""
    rng = np.random.default_rng(1)
    return np.concatenate([rng.normal(20, 1, 50), rng.normal(25, 1, 50)])


@pytest.fixture
def mixed_adata(groups_50x2, same_distribution, shifted):
    rng = np.random.default_rng(7)
    features = {
        "PEP_SAME": same_distribution,
        "PEP_SHIFT": shifted,
        "PEP_SHIFT2": np.concatenate([rng.normal(18, 1, 50), rng.normal(23, 1, 50)]),
        "PEP_CONST": np.full(100, 21.0),
    }
    return build_adata(features, groups_50x2)


@pytest.fixture
def poly_config():
    """Polynomial family only (fast)."""
    return DensityConfig(smooth=False)


@pytest.fixture
def full_config():
    return DensityConfig()
