"""Tests for table, .h5ad and PDF export."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from densiflux.analysis.density_pipeline import export_to_anndata, run_density_pipeline
from densiflux.analysis.results_schema import COL_FEATURE, REF_ADJ_PVALUE, VARM_DENSITY_Q
from densiflux.export.density_exporter import DensityExporter
from densiflux.export.report_plotter import ReportPlotter


@pytest.fixture
def results(mixed_adata, poly_config):
    return run_density_pipeline(mixed_adata, poly_config)


@pytest.fixture
def reference():
    return pd.DataFrame(
        {REF_ADJ_PVALUE: [0.9, 0.001, 0.04]},
        index=pd.Index(["PEP_SAME", "PEP_SHIFT", "PEP_SHIFT2"], name=COL_FEATURE),
    )


class TestTables:
    def test_summary_layout(self, results, reference):
        summary = DensityExporter(results, "out.xlsx", reference=reference).tables()["Summary"]

        assert list(summary.index) == ["PEP_SAME", "PEP_SHIFT", "PEP_SHIFT2", "PEP_CONST"]
        assert "QVALUE_degree-4-interaction-1_lr" in summary.columns
        assert "PVALUE_degree-4-interaction-1_wald" in summary.columns
        assert np.isnan(summary.loc["PEP_CONST", REF_ADJ_PVALUE])

    def test_comparison_sheet_only_with_reference(self, results, reference):
        assert DensityExporter(results, "out.xlsx").tables()["Comparison"] is None
        assert DensityExporter(results, "out.xlsx", reference=reference).tables()["Comparison"] is not None

    def test_csv_export(self, tmp_path, results):
        DensityExporter(results, tmp_path / "res" / "density.xlsx", use_xlsx=False).export()

        for name in ("Summary", "P-values", "Significance", "Fits", "Failures", "Skipped"):
            assert (tmp_path / "res" / f"density_{name}.csv").exists()
        assert not (tmp_path / "res" / "density_Comparison.csv").exists()

        skipped = pd.read_csv(tmp_path / "res" / "density_Skipped.csv")
        assert list(skipped[COL_FEATURE]) == ["PEP_CONST"]

    def test_xlsx_export(self, tmp_path, results, reference):
        out = DensityExporter(results, tmp_path / "density.xlsx", reference=reference).export()

        assert out == tmp_path / "density.xlsx"
        assert out.stat().st_size > 0


class TestH5ad:
    def test_roundtrip_keeps_results(self, tmp_path, mixed_adata, results, poly_config):
        adata = export_to_anndata(mixed_adata, results, poly_config)
        path = tmp_path / "density.h5ad"
        DensityExporter.export_adata(adata, path)

        loaded = ad.read_h5ad(path)
        assert "version" in loaded.uns["densiflux"]
        np.testing.assert_allclose(loaded.varm[VARM_DENSITY_Q], adata.varm[VARM_DENSITY_Q])
        assert loaded.obs["SampleType"].dtype == "category"


class TestReport:
    def test_pdf_report(self, tmp_path, mixed_adata, results, reference):
        config = {
            "analysis": {
                "smooth": False,
                "title": "Test run",
                "intro_text": "Density test on simulated peptides.",
                "exports": {"top_features": 3, "rank_model": "degree-4-interaction-2", "rank_test": "lr"},
            },
        }
        path = ReportPlotter(mixed_adata, results, config, reference=reference).plot_all(tmp_path / "report.pdf")

        assert path.exists()
        assert path.stat().st_size > 0

    def test_default_rank_model(self, mixed_adata, results):
        plotter = ReportPlotter(mixed_adata, results, {"analysis": {"smooth": False}})

        assert plotter.rank_model == "degree-4-interaction-1"
