"""Bookkeeping on finished results: significant counts, ranked lists, and
agreement with an externally computed reference test (e.g. msqrob2).

Nothing here computes statistics; matching against the reference is by
exact feature-identifier string equality.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from densiflux.analysis.density_pipeline import DensityTestResults
from densiflux.analysis.results_schema import (
    COL_FEATURE, COL_MODEL, COL_PVALUE, COL_QVALUE, COL_TEST, REF_ADJ_PVALUE, TEST_KINDS,
)


def significance_summary(results: DensityTestResults) -> pd.DataFrame:
    """Per (model, test): tested features, significant features and their ratio."""
    rows = []
    pv = results.pvalues
    for model in results.models:
        for test in TEST_KINDS:
            sub = pv[(pv[COL_MODEL] == model) & (pv[COL_TEST] == test)]
            n_tested = int(np.isfinite(sub[COL_QVALUE].to_numpy(dtype=float)).sum())
            n_sig = len(results.significant(model, test))
            rows.append({
                COL_MODEL: model,
                COL_TEST: test,
                "N_TESTED": n_tested,
                "N_SIGNIFICANT": n_sig,
                "RATIO": n_sig / n_tested if n_tested else np.nan,
            })
    return pd.DataFrame(rows)


def rank_features(results: DensityTestResults, model: str, test: str, n: Optional[int] = None) -> pd.DataFrame:
    """Rows of one (model, test) sorted by raw p-value; not-applicable entries last."""
    pv = results.pvalues
    sub = pv[(pv[COL_MODEL] == model) & (pv[COL_TEST] == test)]
    ranked = sub.sort_values(COL_PVALUE, na_position="last", kind="mergesort").reset_index(drop=True)
    return ranked.head(n) if n is not None else ranked


@dataclass
class ReferenceComparison:
    model: str
    test: str
    threshold: float
    both: set = field(default_factory=set)
    density_only: set = field(default_factory=set)
    reference_only: set = field(default_factory=set)
    neither: set = field(default_factory=set)
    excluded: set = field(default_factory=set)

    @property
    def n_compared(self) -> int:
        return len(self.both) + len(self.density_only) + len(self.reference_only) + len(self.neither)

    def counts(self) -> dict:
        return {
            "BOTH": len(self.both),
            "DENSITY_ONLY": len(self.density_only),
            "REFERENCE_ONLY": len(self.reference_only),
            "NEITHER": len(self.neither),
            "EXCLUDED": len(self.excluded),
        }

    def contingency(self) -> pd.DataFrame:
        """2x2 table, rows = density call, columns = reference call."""
        return pd.DataFrame(
            [[len(self.both), len(self.density_only)],
             [len(self.reference_only), len(self.neither)]],
            index=pd.Index(["density significant", "density not significant"]),
            columns=pd.Index(["reference significant", "reference not significant"]),
        )


def compare_to_reference(
    results: DensityTestResults,
    reference: pd.DataFrame,
    model: str,
    test: str,
    threshold: Optional[float] = None,
) -> ReferenceComparison:
    """
    Cross-tabulate density calls against reference calls for one (model, test).

    `reference` is indexed by feature id and holds REF_ADJ_PVALUE. A feature
    missing from either side, or with a NaN adjusted p-value on either side,
    goes to `excluded` rather than being counted as not significant.
    """
    threshold = results.threshold if threshold is None else threshold

    pv = results.pvalues
    sub = pv[(pv[COL_MODEL] == model) & (pv[COL_TEST] == test)]
    density_q = pd.Series(sub[COL_QVALUE].to_numpy(dtype=float), index=sub[COL_FEATURE].astype(str))
    density_q = density_q[np.isfinite(density_q.to_numpy())]

    ref_q = reference[REF_ADJ_PVALUE].astype(float)
    ref_q.index = ref_q.index.astype(str)
    ref_q = ref_q[np.isfinite(ref_q.to_numpy())]

    all_ids = set(results.feature_ids) | set(reference.index.astype(str))
    shared = set(density_q.index) & set(ref_q.index)

    out = ReferenceComparison(model=model, test=test, threshold=threshold, excluded=all_ids - shared)
    for fid in shared:
        d_sig = density_q[fid] < threshold
        r_sig = ref_q[fid] < threshold
        if d_sig and r_sig:
            out.both.add(fid)
        elif d_sig:
            out.density_only.add(fid)
        elif r_sig:
            out.reference_only.add(fid)
        else:
            out.neither.add(fid)
    return out


def compare_all(results: DensityTestResults, reference: pd.DataFrame, threshold: Optional[float] = None) -> pd.DataFrame:
    """One row of agreement counts per tested (model, test)."""
    rows = []
    for model in results.models:
        for test in TEST_KINDS:
            cmp = compare_to_reference(results, reference, model, test, threshold)
            rows.append({COL_MODEL: model, COL_TEST: test, **cmp.counts()})
    return pd.DataFrame(rows)
