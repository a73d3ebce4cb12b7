import pandas as pd
import polars as pl


def configure_cli_display() -> None:
    """
    Cap dataframe display sizes for tables echoed by the CLI and the logs.

    Result tables are long-format (one row per feature, model and test), so
    the defaults would flood the terminal.
    """
    pl.Config.set_tbl_rows(10)
    pl.Config.set_tbl_cols(20)
    pl.Config.set_tbl_width_chars(160)

    pd.set_option("display.max_rows", 10)
    pd.set_option("display.max_columns", 20)
    pd.set_option("display.width", 160)
