"""Load the reference regression results (msqrob2 or any per-feature p-value table)."""

from pathlib import Path
from typing import Optional

import pandas as pd
import polars as pl

from densiflux.analysis.results_schema import COL_FEATURE, REF_ADJ_PVALUE, REF_PVALUE
from densiflux.utils.utils import log_info, log_time


def _read_table(path: Path) -> pl.DataFrame:
    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
    return pl.read_csv(path, separator=sep, infer_schema_length=10000, null_values=["NA", "NaN", ""])


def harmonize_reference(
    df: pd.DataFrame,
    id_column: str = COL_FEATURE,
    pvalue_column: str = "pval",
    adj_pvalue_column: str = "adjPval",
) -> pd.DataFrame:
    """
    Rename reference columns to REF_PVALUE / REF_ADJ_PVALUE and index by feature id.

    Duplicated feature ids are ambiguous and rejected.
    """
    for col in (id_column, adj_pvalue_column):
        if col not in df.columns:
            raise ValueError(f"Reference table has no column {col!r} (columns: {list(df.columns)})")

    out = pd.DataFrame(index=pd.Index(df[id_column].astype(str), name=COL_FEATURE))
    out[REF_PVALUE] = pd.to_numeric(df[pvalue_column], errors="coerce").to_numpy() if pvalue_column in df.columns else float("nan")
    out[REF_ADJ_PVALUE] = pd.to_numeric(df[adj_pvalue_column], errors="coerce").to_numpy()

    dup = out.index.duplicated()
    if dup.any():
        raise ValueError(f"Reference table has {int(dup.sum())} duplicated feature id(s), e.g. {out.index[dup][0]!r}")
    return out


@log_time("Loading reference results")
def load_reference(config: Optional[dict]) -> Optional[pd.DataFrame]:
    """Read `reference.input_file` if configured, else return None."""
    ref_cfg = (config or {}).get("reference", {}) or {}
    path = ref_cfg.get("input_file")
    if not path:
        log_info("No reference table configured, skipping comparison.")
        return None

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Reference table not found: {path}")

    df = _read_table(path).to_pandas()
    ref = harmonize_reference(
        df,
        id_column=ref_cfg.get("id_column", COL_FEATURE),
        pvalue_column=ref_cfg.get("pvalue_column", "pval"),
        adj_pvalue_column=ref_cfg.get("adj_pvalue_column", "adjPval"),
    )
    log_info(f"Reference: {len(ref)} features from {path.name}")
    return ref
