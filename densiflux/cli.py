import typer
from pathlib import Path
import yaml
from importlib.resources import files

app = typer.Typer(help="densiflux: density-based differential abundance testing for single-cell proteomics")

@app.command()
def init(path: Path = Path("densiflux_config.yaml")):
    """
    Generate a config scaffold (basic template) at given path.
    """
    default_yaml = files("densiflux.templates").joinpath("user_template.yaml").read_text()

    path.write_text(default_yaml)
    typer.echo(f"Template written to {path}")

@app.command()
def run(
    config: Path = typer.Option(..., help="Path to YAML config file"),
):
    """
    Run the density test pipeline from a YAML config.
    """
    from densiflux.main import run_pipeline
    from densiflux.utils.cli_setup import configure_cli_display

    configure_cli_display()
    if not config.exists():
        raise typer.BadParameter(f"Config file not found: {config}", param_hint="--config")
    config_data = yaml.safe_load(config.read_text()) or {}

    run_pipeline(config=config_data)

if __name__ == "__main__":
    app()
