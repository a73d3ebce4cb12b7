"""Export density-test results to Excel/CSV and write the annotated .h5ad.

The "P-values" sheet is the long table (feature, model, test, statistic, df,
raw and adjusted p-value); "Summary" is the wide features x (model, test)
table of adjusted p-values.
"""
from datetime import datetime
from importlib.metadata import version as _pkg_version, PackageNotFoundError
from pathlib import Path
from typing import Dict, Optional

import anndata as ad
import pandas as pd

from densiflux.analysis.comparison import compare_all, significance_summary
from densiflux.analysis.density_pipeline import DensityTestResults
from densiflux.analysis.results_schema import COL_FEATURE, COL_PVALUE, COL_QVALUE
from densiflux.utils.utils import log_info, log_time


class DensityExporter:
    def __init__(
        self,
        results: DensityTestResults,
        output_path,
        use_xlsx: bool = True,
        reference: Optional[pd.DataFrame] = None,
    ):
        """Excel/CSV exporter for a finished `DensityTestResults`."""
        self.results = results
        self.output_path = Path(output_path)
        self.use_xlsx = use_xlsx
        self.reference = reference

    def _summary_table(self) -> pd.DataFrame:
        """Wide table: QVALUE_<model>_<test> then PVALUE_<model>_<test>, one row per feature."""
        q = self.results.wide(COL_QVALUE)
        p = self.results.wide(COL_PVALUE)
        q.columns = [f"QVALUE_{m}_{t}" for m, t in q.columns]
        p.columns = [f"PVALUE_{m}_{t}" for m, t in p.columns]
        out = pd.concat([q, p], axis=1)
        out.index.name = COL_FEATURE

        if self.reference is not None:
            ref = self.reference.reindex(out.index)
            out = pd.concat([out, ref], axis=1)
        return out

    def tables(self) -> Dict[str, Optional[pd.DataFrame]]:
        res = self.results
        tables = {
            "Summary": self._summary_table(),
            "P-values": res.pvalues.set_index(COL_FEATURE),
            "Significance": significance_summary(res).set_index(["MODEL", "TEST"]),
            "Fits": res.fits.set_index(COL_FEATURE),
            "Failures": res.failure_summary().set_index("MODEL"),
            "Skipped": res.skipped.set_index(COL_FEATURE),
            "Comparison": None,
        }
        if self.reference is not None:
            tables["Comparison"] = compare_all(res, self.reference).set_index(["MODEL", "TEST"])
        return tables

    def _export_excel(self, tables: Dict[str, Optional[pd.DataFrame]], readme: str) -> Path:
        """Write selected tables to a single XLSX with a README sheet."""
        out_file = self.output_path.with_suffix(".xlsx")
        with pd.ExcelWriter(out_file, engine="xlsxwriter") as writer:
            pd.DataFrame({"README": readme.split("\n")}).to_excel(
                writer, index=False, sheet_name="README"
            )

            header_fmt = writer.book.add_format({"bold": False, "align": "left", "border": 0})
            for name, df in tables.items():
                if df is None:
                    continue
                ws = writer.book.add_worksheet(name)
                df_out = df.reset_index()
                columns = list(df_out.columns)
                ws.write_row(0, 0, columns, header_fmt)
                df_out.to_excel(writer, sheet_name=name, startrow=1, index=False, header=False)
                ws.set_column(0, len(columns) - 1, 14)
        return out_file

    def _export_csvs(self, tables: Dict[str, Optional[pd.DataFrame]]) -> Path:
        """Write each table to a separate CSV with a shared filename prefix."""
        prefix = self.output_path.with_suffix("")
        for name, df in tables.items():
            if df is not None:
                df.to_csv(f"{prefix}_{name.replace(' ', '_')}.csv")
        return prefix

    @log_time("Density test - exporting tables")
    def export(self) -> Path:
        """Export all tables as xlsx (or csv)."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        readme = (
            "densiflux density-test export\n\n"
            f"FDR threshold: {self.results.threshold}\n"
            "Sheet Descriptions:\n"
            "- Summary: adjusted (QVALUE_) and raw (PVALUE_) p-values per model and test, reference p-values if given.\n"
            "- P-values: long table, one row per feature, model and test; empty p-value = not applicable.\n"
            "- Significance: number and ratio of significant features per model and test.\n"
            "- Fits: fit status, log-likelihood, deviance and parameter count per feature and model.\n"
            "- Failures: skipped features and failed fits per model.\n"
            "- Skipped: features not tested and why.\n"
            "- Comparison: agreement with the reference test (if provided).\n"
        )

        tables = self.tables()
        if self.use_xlsx:
            out = self._export_excel(tables, readme)
        else:
            out = self._export_csvs(tables)
        log_info(f"Tables written to {out}")
        return out

    @staticmethod
    @log_time("Exporting .h5ad")
    def export_adata(adata: ad.AnnData, h5ad_path) -> None:
        """Write the annotated AnnData with package version and timestamp in .uns."""
        meta = adata.uns.get("densiflux", {})
        if not isinstance(meta, dict):
            meta = {}
        try:
            df_version = _pkg_version("densiflux")
        except PackageNotFoundError:
            df_version = "0+unknown"
        meta.setdefault("version", df_version)
        meta.setdefault("created_at", datetime.now().isoformat(timespec="seconds") + "Z")
        adata.uns["densiflux"] = meta

        for col in adata.obs.columns:
            if adata.obs[col].dtype == object or pd.api.types.is_string_dtype(adata.obs[col].dtype):
                adata.obs[col] = adata.obs[col].astype("category")

        Path(h5ad_path).parent.mkdir(parents=True, exist_ok=True)
        adata.write(h5ad_path, compression="gzip")
