"""Density-based differential-abundance testing across all features.

Two phases:
  1. per-feature map (discretize -> fit family -> test family), fanned out with joblib;
  2. gather all raw p-values and apply Benjamini-Hochberg per (model, test).

Phase 2 is the only point where features meet.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

import anndata as ad
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from densiflux.analysis.discretizer import DegenerateFeatureError, discretize
from densiflux.analysis.model_family import ModelVariant, build_model_family
from densiflux.analysis.poisson_fitter import FitFailedError, FitResult, SmoothPoissonModel, fitter_for
from densiflux.analysis.results_schema import (
    COL_DEVIANCE, COL_DF, COL_FEATURE, COL_LLF, COL_MODEL, COL_N_PARAMS, COL_NOTE,
    COL_PVALUE, COL_QVALUE, COL_REASON, COL_SIGNIFICANT, COL_STATISTIC, COL_STATUS,
    COL_TEST, FIT_COLUMNS, PVALUE_COLUMNS, SKIPPED_COLUMNS, STATUS_FAILED, STATUS_OK,
    TEST_KINDS, TEST_LR, UNS_DENSITY_COLUMNS, UNS_DENSITY_CONFIG,
    UNS_DENSITY_FAILURES, UNS_DENSITY_SKIPPED, UNS_DENSITY_THRESHOLD, VARM_DENSITY_P,
    VARM_DENSITY_Q,
)
from densiflux.analysis.significance import SignificanceResult, bh_adjust, deviance_test, lr_test, wald_test
from densiflux.utils.utils import log_info, log_time, log_warning
from densiflux.workflow.settings import DensityConfig


@dataclass
class FeatureOutcome:
    feature_id: str
    skipped_reason: Optional[str] = None
    fits: List[dict] = field(default_factory=list)
    tests: List[dict] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


def fit_family(
    table: pd.DataFrame,
    levels: Sequence,
    family: Sequence[ModelVariant],
    smooth_basis_size: int = 10,
) -> Dict[str, object]:
    """
    Fit every variant on one histogram table.

    Returns a dict model name -> FitResult, or the FitFailedError for
    variants that did not fit.
    """
    out: Dict[str, object] = {}
    for variant in family:
        try:
            out[variant.name] = fitter_for(variant, smooth_basis_size).fit(table, levels)
        except FitFailedError as err:
            out[variant.name] = err
    return out


def fit_lr_nulls(
    table: pd.DataFrame,
    levels: Sequence,
    family: Sequence[ModelVariant],
    fits: Dict[str, object],
    smooth_basis_size: int = 10,
) -> Dict[str, object]:
    """
    Null fit used by the LR test of each variant.

    Polynomial variants reuse the family fit of their null. A smooth variant
    refits its null at the smoothing weight of the full fit so the two models
    share one penalty and stay nested.
    """
    nulls: Dict[str, object] = {}
    for variant in family:
        null_variant = variant.null_variant()
        if null_variant is None or null_variant == variant:
            continue
        full = fits.get(variant.name)
        if variant.smooth and isinstance(full, FitResult):
            model = SmoothPoissonModel(null_variant, basis_size=smooth_basis_size, penalty=full.penalty)
            try:
                nulls[variant.name] = model.fit(table, levels)
            except FitFailedError as err:
                nulls[variant.name] = err
        else:
            nulls[variant.name] = fits.get(null_variant.name)
    return nulls


def _test_variant(
    variant: ModelVariant,
    fits: Dict[str, object],
    lr_nulls: Dict[str, object],
) -> List[SignificanceResult]:
    fit = fits[variant.name]
    if not isinstance(fit, FitResult):
        return [SignificanceResult.not_applicable(kind, "fit failed") for kind in TEST_KINDS]

    null_variant = variant.null_variant()
    null_fit = lr_nulls.get(variant.name)
    if null_variant == variant:
        lr = SignificanceResult.not_applicable(TEST_LR, "model is its own null")
    elif null_fit is not None and not isinstance(null_fit, FitResult):
        lr = SignificanceResult.not_applicable(TEST_LR, f"null fit {null_variant.name} failed")
    else:
        lr = lr_test(fit, null_fit)

    return [deviance_test(fit), wald_test(fit), lr]


def process_feature(feature_id: str, values: np.ndarray, groups: np.ndarray, config: DensityConfig) -> FeatureOutcome:
    """Discretize, fit the model family and run every test for one feature."""
    outcome = FeatureOutcome(feature_id=feature_id)

    try:
        grid = discretize(values, groups, config.n_bins)
    except DegenerateFeatureError as err:
        outcome.skipped_reason = str(err)
        return outcome

    table = grid.to_long(config.carrier)
    present = [lvl for lvl, n in zip(grid.levels, grid.totals) if n > 0]
    if len(present) < 2:
        outcome.skipped_reason = f"fewer than 2 groups with binned values ({len(present)})"
        return outcome

    family = build_model_family(config)
    fits = fit_family(table, present, family, config.smooth_basis_size)
    lr_nulls = fit_lr_nulls(table, present, family, fits, config.smooth_basis_size)

    for variant in family:
        fit = fits[variant.name]
        if isinstance(fit, FitResult):
            outcome.fits.append({
                COL_FEATURE: feature_id, COL_MODEL: variant.name, COL_STATUS: STATUS_OK,
                COL_REASON: "", COL_LLF: fit.llf, COL_DEVIANCE: fit.deviance,
                COL_N_PARAMS: fit.n_params,
            })
        else:
            outcome.fits.append({
                COL_FEATURE: feature_id, COL_MODEL: variant.name, COL_STATUS: STATUS_FAILED,
                COL_REASON: str(fit), COL_LLF: np.nan, COL_DEVIANCE: np.nan,
                COL_N_PARAMS: np.nan,
            })

        if variant.is_null:
            continue
        for res in _test_variant(variant, fits, lr_nulls):
            outcome.tests.append({
                COL_FEATURE: feature_id, COL_MODEL: variant.name, COL_TEST: res.test,
                COL_STATISTIC: res.statistic, COL_DF: res.df, COL_PVALUE: res.pvalue,
                COL_NOTE: res.note,
            })

    return outcome


class DensityTestResults:
    """
    Gathered per-feature results with FDR-adjusted p-values.

    Attributes:
        pvalues: Long table, one row per (feature, model, test).
        fits: One row per (feature, model) with fit status.
        skipped: Features that were not tested and why.
        threshold: FDR threshold used for SIGNIFICANT.
        models: Tested model names in family order.
    """

    def __init__(
        self,
        pvalues: pd.DataFrame,
        fits: pd.DataFrame,
        skipped: pd.DataFrame,
        threshold: float,
        models: List[str],
        feature_ids: List[str],
    ):
        self.pvalues = pvalues
        self.fits = fits
        self.skipped = skipped
        self.threshold = threshold
        self.models = models
        self.feature_ids = feature_ids

    @classmethod
    def gather(cls, outcomes: Sequence[FeatureOutcome], config: DensityConfig) -> "DensityTestResults":
        pvalues = pd.DataFrame([row for o in outcomes for row in o.tests], columns=PVALUE_COLUMNS)
        fits = pd.DataFrame([row for o in outcomes for row in o.fits], columns=FIT_COLUMNS)
        skipped = pd.DataFrame(
            [{COL_FEATURE: o.feature_id, COL_REASON: o.skipped_reason} for o in outcomes if o.skipped],
            columns=SKIPPED_COLUMNS,
        )

        pvalues[COL_PVALUE] = pvalues[COL_PVALUE].astype(float)
        pvalues[COL_QVALUE] = np.nan
        for _, idx in pvalues.groupby([COL_MODEL, COL_TEST], sort=False).groups.items():
            pvalues.loc[idx, COL_QVALUE] = bh_adjust(pvalues.loc[idx, COL_PVALUE].to_numpy())
        pvalues[COL_SIGNIFICANT] = pvalues[COL_QVALUE] < config.fdr_threshold

        models = [v.name for v in build_model_family(config) if not v.is_null]
        return cls(
            pvalues=pvalues,
            fits=fits,
            skipped=skipped,
            threshold=config.fdr_threshold,
            models=models,
            feature_ids=[o.feature_id for o in outcomes],
        )

    def wide(self, value: str = COL_QVALUE) -> pd.DataFrame:
        """Features x (model, test) matrix of `value`, in input feature order."""
        columns = pd.MultiIndex.from_product([self.models, list(TEST_KINDS)], names=[COL_MODEL, COL_TEST])
        if self.pvalues.empty:
            return pd.DataFrame(np.nan, index=pd.Index(self.feature_ids, name=COL_FEATURE), columns=columns)
        table = self.pvalues.pivot(index=COL_FEATURE, columns=[COL_MODEL, COL_TEST], values=value)
        return table.reindex(index=self.feature_ids, columns=columns)

    def significant(self, model: str, test: str) -> Set[str]:
        sel = self.pvalues[
            (self.pvalues[COL_MODEL] == model)
            & (self.pvalues[COL_TEST] == test)
            & self.pvalues[COL_SIGNIFICANT]
        ]
        return set(sel[COL_FEATURE])

    def failed(self, model: str) -> Set[str]:
        sel = self.fits[(self.fits[COL_MODEL] == model) & (self.fits[COL_STATUS] == STATUS_FAILED)]
        return set(sel[COL_FEATURE])

    def failure_summary(self) -> pd.DataFrame:
        """Per model: features skipped before fitting, failed fits, successful fits."""
        all_models = list(dict.fromkeys(list(self.fits[COL_MODEL].unique()) + self.models))
        rows = []
        for model in all_models:
            sub = self.fits[self.fits[COL_MODEL] == model]
            rows.append({
                COL_MODEL: model,
                "N_SKIPPED": len(self.skipped),
                "N_FAILED": int((sub[COL_STATUS] == STATUS_FAILED).sum()),
                "N_FITTED": int((sub[COL_STATUS] == STATUS_OK).sum()),
            })
        return pd.DataFrame(rows)


def _feature_inputs(adata: ad.AnnData, group_column: str):
    if group_column not in adata.obs.columns:
        raise ValueError(f"Group column {group_column!r} not found in sample metadata.")
    groups = adata.obs[group_column].astype(str).to_numpy()
    X = np.asarray(adata.X.toarray() if hasattr(adata.X, "toarray") else adata.X, dtype=float)
    return X, groups


@log_time("Density testing")
def run_density_pipeline(adata: ad.AnnData, config: DensityConfig) -> DensityTestResults:
    """
    Run the density test on every feature of `adata` (samples x features).

    The group covariate is read from `adata.obs[config.group_column]`.
    """
    X, groups = _feature_inputs(adata, config.group_column)
    feature_ids = adata.var_names.astype(str).tolist()
    levels = sorted(set(groups))

    log_info(f"{len(feature_ids)} features, {X.shape[0]} samples, groups: {levels}")
    if len(levels) < 2:
        log_warning("Only one group present: every feature will be reported as not tested.")

    family = build_model_family(config)
    log_info(f"Model family: {[v.name for v in family]}")

    if config.n_jobs == 1:
        outcomes = []
        for i, fid in enumerate(feature_ids):
            outcomes.append(process_feature(fid, X[:, i], groups, config))
            if (i + 1) % 500 == 0:
                log_info(f"Processed {i + 1}/{len(feature_ids)} features")
    else:
        outcomes = Parallel(n_jobs=config.n_jobs)(
            delayed(process_feature)(fid, X[:, i], groups, config) for i, fid in enumerate(feature_ids)
        )

    results = DensityTestResults.gather(outcomes, config)

    n_skipped = len(results.skipped)
    if n_skipped:
        log_warning(f"{n_skipped} feature(s) not tested (degenerate measurements or single group).")
    summary = results.failure_summary()
    for _, row in summary[summary["N_FAILED"] > 0].iterrows():
        log_warning(f"{row[COL_MODEL]}: {row['N_FAILED']} failed fit(s)")
    for model in results.models:
        calls = {test: len(results.significant(model, test)) for test in TEST_KINDS}
        log_info(f"{model}: significant at FDR<{config.fdr_threshold} -> {calls}")

    return results


def export_to_anndata(adata: ad.AnnData, results: DensityTestResults, config: Optional[DensityConfig] = None) -> ad.AnnData:
    """
    Attach results to a copy of `adata`.

    Raw and adjusted p-values go to .varm as (n_features x n_model_tests)
    arrays; column labels, threshold and failure summaries go to .uns.
    """
    out = adata.copy()
    p_wide = results.wide(COL_PVALUE).reindex(out.var_names.astype(str))
    q_wide = results.wide(COL_QVALUE).reindex(out.var_names.astype(str))

    out.varm[VARM_DENSITY_P] = p_wide.to_numpy(dtype=float)
    out.varm[VARM_DENSITY_Q] = q_wide.to_numpy(dtype=float)
    out.uns[UNS_DENSITY_COLUMNS] = [f"{m}|{t}" for m, t in p_wide.columns]
    out.uns[UNS_DENSITY_THRESHOLD] = results.threshold
    out.uns[UNS_DENSITY_FAILURES] = results.failure_summary().to_dict(orient="list")
    out.uns[UNS_DENSITY_SKIPPED] = results.skipped.to_dict(orient="list")
    if config is not None:
        out.uns[UNS_DENSITY_CONFIG] = config.to_dict()
    return out
