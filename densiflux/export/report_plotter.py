"""PDF diagnostic report for the density test.

Pages:
  - title page with the run configuration and failure summary
  - raw p-value histograms per (model, test)
  - significant-feature counts, with the reference comparison when available
  - per-group histograms and fitted densities for the top-ranked features
"""
import textwrap
from datetime import datetime
from typing import Dict, Optional

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from anndata import AnnData
from matplotlib.backends.backend_pdf import PdfPages

from densiflux.analysis.comparison import compare_all, rank_features, significance_summary
from densiflux.analysis.density_pipeline import DensityTestResults
from densiflux.analysis.discretizer import DegenerateFeatureError, discretize
from densiflux.analysis.model_family import build_model_family
from densiflux.analysis.poisson_fitter import FitFailedError, fitter_for
from densiflux.analysis.results_schema import (
    COL_COUNT, COL_FEATURE, COL_GROUP, COL_MODEL, COL_PVALUE, COL_QVALUE, COL_TEST, TEST_KINDS,
)
from densiflux.utils.utils import log_time, log_warning
from densiflux.workflow.settings import DensityConfig


def get_color_map(labels, palette: str = "tab10") -> Dict[str, tuple]:
    cmap = plt.get_cmap(palette)
    return {lab: cmap(i % cmap.N) for i, lab in enumerate(labels)}


class ReportPlotter:
    """Prepare plotting context from results, AnnData and config dict."""
    def __init__(
        self,
        adata: AnnData,
        results: DensityTestResults,
        config: Dict,
        reference: Optional[pd.DataFrame] = None,
    ):
        self.config = config or {}
        self.analysis_config = self.config.get("analysis", {}) or {}
        self.export_config = self.analysis_config.get("exports", {}) or {}
        self.density_config = DensityConfig.from_dict(self.config)

        self.adata = adata
        self.results = results
        self.reference = reference

        self.groups = adata.obs[self.density_config.group_column].astype(str).to_numpy()
        self.levels = sorted(set(self.groups))
        self.colors = get_color_map(self.levels)

        self.top_n = int(self.export_config.get("top_features", 6))
        self.rank_model = self.export_config.get("rank_model", self._default_rank_model())
        self.rank_test = self.export_config.get("rank_test", "lr")

    def _default_rank_model(self) -> str:
        polys = [m for m in self.results.models if m.startswith("degree-") and not m.endswith("-0")]
        return polys[0] if polys else self.results.models[0]

    @log_time("Preparing Pdf Report")
    def plot_all(self, path=None):
        """Create the full PDF report at `path` or the configured path."""
        path = path or self.export_config.get("path_plot", "densiflux_report.pdf")
        with PdfPages(path) as pdf:
            self.pdf = pdf
            self._plot_title_page()
            self._plot_pvalue_histograms()
            self._plot_significance_counts()
            self._plot_top_features()
        return path

    def _plot_title_page(self):
        """Run configuration, input size and failure summary."""
        fig = plt.figure(figsize=(8.27, 11.69))
        fig.patch.set_facecolor("white")
        x0, y = 0.05, 0.95
        line_height = 0.03

        title = self.analysis_config.get("title", "Density-based differential abundance")
        fig.text(0.5, y, title, ha="center", va="top", fontsize=20, weight="bold")
        y -= 1.5 * line_height
        fig.text(0.5, y, datetime.now().strftime("%Y-%m-%d"), ha="center", va="top", fontsize=13)
        y -= 1.5 * line_height

        intro = self.analysis_config.get("intro_text", "")
        for para in intro.split("\n") if intro else []:
            for line in textwrap.wrap(para, width=105):
                fig.text(x0, y, line, ha="left", va="top", fontsize=12)
                y -= 0.6 * line_height

        cfg = self.density_config
        fig.text(x0, y, "Settings:", ha="left", va="top", fontsize=14, weight="semibold")
        y -= line_height
        for label, value in [
            ("Features x samples", f"{self.adata.n_vars} x {self.adata.n_obs}"),
            ("Group column", f"{cfg.group_column} ({', '.join(self.levels)})"),
            ("Bins", cfg.n_bins),
            ("Main-effect degree", cfg.max_degree),
            ("Interaction degrees", ", ".join(map(str, cfg.interaction_degrees))),
            ("Smooth models", "yes" if cfg.smooth else "no"),
            ("FDR threshold", cfg.fdr_threshold),
        ]:
            fig.text(x0 + 0.02, y, f"- {label}: {value}", ha="left", va="top", fontsize=12)
            y -= 0.8 * line_height

        y -= 0.5 * line_height
        fig.text(x0, y, "Not tested / failed fits:", ha="left", va="top", fontsize=14, weight="semibold")
        y -= line_height
        fig.text(x0 + 0.02, y, f"- Features not tested: {len(self.results.skipped)}",
                 ha="left", va="top", fontsize=12)
        y -= 0.8 * line_height
        for _, row in self.results.failure_summary().iterrows():
            fig.text(x0 + 0.02, y, f"- {row[COL_MODEL]}: {row['N_FAILED']} failed, {row['N_FITTED']} fitted",
                     ha="left", va="top", fontsize=11)
            y -= 0.7 * line_height

        self.pdf.savefig(fig)
        plt.close(fig)

    def _plot_pvalue_histograms(self):
        """Raw p-value distributions, one row per model, one column per test."""
        models = self.results.models
        pv = self.results.pvalues
        fig, axes = plt.subplots(len(models), len(TEST_KINDS),
                                 figsize=(8.27, max(3, 2.0 * len(models))), squeeze=False)
        for i, model in enumerate(models):
            for j, test in enumerate(TEST_KINDS):
                ax = axes[i, j]
                p = pv.loc[(pv[COL_MODEL] == model) & (pv[COL_TEST] == test), COL_PVALUE].to_numpy(dtype=float)
                p = p[np.isfinite(p)]
                if p.size:
                    ax.hist(p, bins=20, range=(0, 1), color="steelblue", edgecolor="white")
                else:
                    ax.text(0.5, 0.5, "NA", ha="center", va="center", transform=ax.transAxes, color="gray")
                ax.set_title(f"{model} / {test}", fontsize=8)
                ax.tick_params(labelsize=6)
        fig.suptitle("Raw p-value distributions")
        fig.tight_layout()
        self.pdf.savefig(fig)
        plt.close(fig)

    def _plot_significance_counts(self):
        summary = significance_summary(self.results)
        ncols = 2 if self.reference is not None else 1
        fig, axes = plt.subplots(1, ncols, figsize=(11.69, 5), squeeze=False)

        ax = axes[0, 0]
        labels = [f"{m}\n{t}" for m, t in zip(summary[COL_MODEL], summary[COL_TEST])]
        ax.bar(range(len(summary)), summary["N_SIGNIFICANT"], color="darkorange")
        ax.set_xticks(range(len(summary)))
        ax.set_xticklabels(labels, rotation=90, fontsize=6)
        ax.set_ylabel(f"significant (FDR < {self.results.threshold})")
        ax.set_title("Significant features per model and test")

        if self.reference is not None:
            cmp = compare_all(self.results, self.reference)
            ax = axes[0, 1]
            bottom = np.zeros(len(cmp))
            for col, color in [("BOTH", "seagreen"), ("DENSITY_ONLY", "darkorange"), ("REFERENCE_ONLY", "royalblue")]:
                ax.bar(range(len(cmp)), cmp[col], bottom=bottom, color=color, label=col.lower().replace("_", " "))
                bottom += cmp[col].to_numpy()
            ax.set_xticks(range(len(cmp)))
            ax.set_xticklabels([f"{m}\n{t}" for m, t in zip(cmp[COL_MODEL], cmp[COL_TEST])], rotation=90, fontsize=6)
            ax.set_title("Agreement with reference test")
            ax.legend(fontsize=7)

        fig.tight_layout()
        self.pdf.savefig(fig)
        plt.close(fig)

    def _plot_top_features(self):
        """Per-group histograms with the fitted densities of the ranking model."""
        ranked = rank_features(self.results, self.rank_model, self.rank_test, n=self.top_n)
        if ranked.empty:
            return

        family = {v.name: v for v in build_model_family(self.density_config)}
        variant = family.get(self.rank_model)
        if variant is None:
            log_warning(f"Unknown ranking model {self.rank_model!r}, skipping feature pages.")
            return

        var_index = {str(v): i for i, v in enumerate(self.adata.var_names)}
        X = np.asarray(self.adata.X, dtype=float)
        cfg = self.density_config

        ncols = 2
        nrows = int(np.ceil(len(ranked) / ncols))
        fig, axes = plt.subplots(nrows, ncols, figsize=(11.69, 3.2 * nrows), squeeze=False)
        for ax in axes.ravel()[len(ranked):]:
            ax.axis("off")

        for ax, (_, row) in zip(axes.ravel(), ranked.iterrows()):
            fid = row[COL_FEATURE]
            try:
                grid = discretize(X[:, var_index[fid]], self.groups, cfg.n_bins)
            except DegenerateFeatureError:
                ax.axis("off")
                continue
            table = grid.to_long(cfg.carrier)
            present = [lvl for lvl, n in zip(grid.levels, grid.totals) if n > 0]
            try:
                fit = fitter_for(variant, cfg.smooth_basis_size).fit(table, present)
            except FitFailedError:
                fit = None

            for lvl in present:
                mask = (table[COL_GROUP].astype(str) == str(lvl)).to_numpy()
                color = self.colors.get(str(lvl), "gray")
                ax.bar(grid.midpoints, table.loc[mask, COL_COUNT], width=grid.width,
                       alpha=0.35, color=color, label=str(lvl))
                if fit is not None:
                    ax.plot(grid.midpoints, fit.fitted[mask], color=color, linewidth=1.5)

            q = row[COL_QVALUE]
            q_txt = "NA" if not np.isfinite(q) else f"{q:.2g}"
            ax.set_title(f"{fid}  ({self.rank_model}, {self.rank_test} q={q_txt})", fontsize=9)
            ax.set_xlabel("intensity", fontsize=8)
            ax.set_ylabel("count", fontsize=8)
            ax.legend(fontsize=7)

        fig.tight_layout()
        self.pdf.savefig(fig)
        plt.close(fig)
