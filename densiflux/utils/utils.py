import logging
import time
from contextlib import contextmanager
from functools import wraps
from typing import Optional, Tuple

import numpy as np
import polars as pl

logger = logging.getLogger("densiflux")
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

_INDENT = {"level": 0}


def _prefix(msg: str) -> str:
    return "  " * _INDENT["level"] + msg


def log_info(msg: str) -> None:
    logger.info(_prefix(msg))


def log_warning(msg: str) -> None:
    logger.warning(_prefix(msg))


@contextmanager
def log_indent():
    """Indent every log line emitted inside the block by one level."""
    _INDENT["level"] += 1
    try:
        yield
    finally:
        _INDENT["level"] -= 1


def log_time(name: str):
    """
    Decorator logging start, end and elapsed wall time of a pipeline step.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            log_info(f"{name}...")
            start = time.perf_counter()
            with log_indent():
                result = func(*args, **kwargs)
            log_info(f"{name} done ({time.perf_counter() - start:.2f}s)")
            return result
        return wrapper
    return decorator


def polars_matrix_to_numpy(df: pl.DataFrame, index_col: Optional[str] = "INDEX") -> Tuple[np.ndarray, list, list]:
    """
    Split a wide polars table into (matrix, row ids, column names).

    Non-numeric cells become NaN; the index column is returned as strings.
    """
    if index_col is not None and index_col in df.columns:
        index = [str(v) for v in df.get_column(index_col).to_list()]
        values = df.drop(index_col)
    else:
        index = [str(i) for i in range(df.height)]
        values = df

    values = values.select(pl.all().cast(pl.Float64, strict=False))
    mat = values.to_numpy().astype(float)
    return mat, index, list(values.columns)
