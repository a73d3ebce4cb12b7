from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.stats import chi2
from statsmodels.stats.multitest import multipletests

from densiflux.analysis.poisson_fitter import FitResult
from densiflux.analysis.results_schema import TEST_DEVIANCE, TEST_LR, TEST_WALD


@dataclass(frozen=True)
class SignificanceResult:
    """Raw result of one test on one (feature, model); NaN p-value means not applicable."""

    test: str
    statistic: float
    df: float
    pvalue: float
    note: str = ""

    @property
    def applicable(self) -> bool:
        return np.isfinite(self.pvalue)

    @classmethod
    def not_applicable(cls, test: str, note: str) -> "SignificanceResult":
        return cls(test=test, statistic=np.nan, df=np.nan, pvalue=np.nan, note=note)


def deviance_test(fit: FitResult) -> SignificanceResult:
    """
    Goodness-of-fit: deviance against chi2(df_resid).

    A small p-value means the model family itself does not describe the
    histogram, independent of any group effect.
    """
    if fit.df_resid <= 0:
        return SignificanceResult.not_applicable(TEST_DEVIANCE, "no residual degrees of freedom")
    return SignificanceResult(
        test=TEST_DEVIANCE,
        statistic=fit.deviance,
        df=fit.df_resid,
        pvalue=float(chi2.sf(fit.deviance, fit.df_resid)),
    )


def wald_test(fit: FitResult) -> SignificanceResult:
    """
    Joint Wald test that every group x measurement interaction coefficient is zero.

    The contrast matrix has one unit row per interaction coefficient, so
    W = b' (L V L')^-1 b with b = L beta ~ chi2(n_interactions).
    """
    cov = fit.coefficient_covariance()
    if cov is None:
        return SignificanceResult.not_applicable(TEST_WALD, "no coefficient covariance for smooth terms")
    names = fit.interaction_names
    if not names:
        return SignificanceResult.not_applicable(TEST_WALD, "no interaction terms")

    L = np.zeros((len(names), len(fit.params)))
    for row, name in enumerate(names):
        L[row, fit.params.index.get_loc(name)] = 1.0

    beta = fit.params.to_numpy()
    b = L @ beta
    V = L @ cov.to_numpy() @ L.T
    try:
        stat = float(b @ np.linalg.solve(V, b))
    except np.linalg.LinAlgError:
        return SignificanceResult.not_applicable(TEST_WALD, "singular interaction covariance")
    if not np.isfinite(stat):
        return SignificanceResult.not_applicable(TEST_WALD, "non-finite Wald statistic")

    return SignificanceResult(test=TEST_WALD, statistic=stat, df=float(len(names)), pvalue=float(chi2.sf(stat, len(names))))


def lr_test(full: FitResult, null: Optional[FitResult]) -> SignificanceResult:
    """
    Likelihood ratio of `full` against its nested `null`.

    df is the difference in estimated parameters (effective degrees of
    freedom for smooth fits) and must be strictly positive.
    """
    if null is None:
        return SignificanceResult.not_applicable(TEST_LR, "null model unavailable")

    df = full.parameter_count() - null.parameter_count()
    if not df > 0:
        return SignificanceResult.not_applicable(TEST_LR, f"non-positive df ({df:.3g}) against {null.name}")

    stat = max(0.0, 2.0 * (full.log_likelihood() - null.log_likelihood()))
    return SignificanceResult(test=TEST_LR, statistic=stat, df=float(df), pvalue=float(chi2.sf(stat, df)))


def bh_adjust(pvalues) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    NaN entries (tests not applicable, failed fits) are left out of the
    hypothesis count and stay NaN in the output.
    """
    p = np.asarray(pvalues, dtype=float)
    q = np.full_like(p, np.nan)
    finite = np.isfinite(p)
    if finite.any():
        q[finite] = multipletests(p[finite], method="fdr_bh")[1]
    return q
