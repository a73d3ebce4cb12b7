from densiflux.analysis.comparison import compare_all, significance_summary
from densiflux.analysis.density_pipeline import export_to_anndata, run_density_pipeline
from densiflux.export.density_exporter import DensityExporter
from densiflux.export.report_plotter import ReportPlotter
from densiflux.utils.utils import log_info, log_time
from densiflux.workflow.dataset import Dataset
from densiflux.workflow.reference import load_reference
from densiflux.workflow.settings import DensityConfig


@log_time("Densiflux Pipeline")
def run_pipeline(config: dict):
    density_config = DensityConfig.from_dict(config)

    dataset = Dataset(**config)
    adata = dataset.get_anndata()
    reference = load_reference(config)

    results = run_density_pipeline(adata, density_config)
    adata = export_to_anndata(adata, results, density_config)

    if reference is not None:
        cmp = compare_all(results, reference)
        log_info(f"Agreement with reference:\n{cmp}")
    else:
        log_info(f"Significance summary:\n{significance_summary(results)}")

    analysis_config = config.get("analysis", {}) or {}
    export_config = analysis_config.get("exports", {}) or {}

    if analysis_config.get("export_plot", True) and export_config.get("path_plot"):
        plotter = ReportPlotter(adata, results, config, reference=reference)
        plotter.plot_all()

    if analysis_config.get("export_table", True) and export_config.get("path_table"):
        exporter = DensityExporter(results,
                                   output_path=export_config.get("path_table"),
                                   use_xlsx=export_config.get("use_xlsx", True),
                                   reference=reference,
                                   )
        exporter.export()

    if export_config.get("path_h5ad"):
        DensityExporter.export_adata(adata, export_config.get("path_h5ad"))

    return results
