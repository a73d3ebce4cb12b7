"""Command line tests (typer)."""

import yaml
from typer.testing import CliRunner

from densiflux.cli import app
from tests.test_io import write_wide_csv

runner = CliRunner()


def test_init_writes_template(tmp_path):
    target = tmp_path / "config.yaml"
    result = runner.invoke(app, ["init", "--path", str(target)])

    assert result.exit_code == 0
    config = yaml.safe_load(target.read_text())
    assert config["analysis"]["n_bins"] == 40
    assert config["dataset"]["group_column"] == "SampleType"


def test_run_end_to_end(tmp_path):
    table, annot = write_wide_csv(tmp_path, n_features=4, n_per_group=40)
    out = tmp_path / "results"
    config = {
        "dataset": {"input_file": str(table), "annotation_file": str(annot), "feature_id_column": "FEATURE_ID"},
        "analysis": {
            "n_bins": 20,
            "max_degree": 2,
            "interaction_degrees": [0, 1, 2],
            "smooth": False,
            "exports": {
                "path_table": str(out / "density.csv"),
                "use_xlsx": False,
                "path_h5ad": str(out / "density.h5ad"),
                "path_plot": str(out / "report.pdf"),
                "rank_model": "degree-2-interaction-1",
            },
        },
    }
    out.mkdir()
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config))

    result = runner.invoke(app, ["run", "--config", str(config_path)])

    assert result.exit_code == 0, result.output
    assert (out / "density_Summary.csv").exists()
    assert (out / "density.h5ad").exists()
    assert (out / "report.pdf").exists()


def test_run_missing_config(tmp_path):
    result = runner.invoke(app, ["run", "--config", str(tmp_path / "missing.yaml")])

    assert result.exit_code != 0
