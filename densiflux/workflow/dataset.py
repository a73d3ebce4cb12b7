from pathlib import Path
from typing import Optional

import anndata as ad
import numpy as np
import pandas as pd
import polars as pl

from densiflux.utils.utils import log_info, log_time, log_warning, polars_matrix_to_numpy


class Dataset:
    """Load the feature x sample measurement table and the sample covariate into AnnData."""

    def __init__(self, **kwargs):
        """
        Initialize the dataset object.

        Args:
            kwargs: dict with all the config elements (only `dataset` is read)
        """
        dataset_cfg = kwargs.get("dataset", {}) or {}
        self.file_path = dataset_cfg.get("input_file", None)
        self.annotation_file = dataset_cfg.get("annotation_file", None)
        self.load_method = dataset_cfg.get("load_method", "polars")
        self.feature_id_column = dataset_cfg.get("feature_id_column", None)
        self.sample_column = dataset_cfg.get("sample_column", "SAMPLE")
        self.group_column = dataset_cfg.get("group_column", "SampleType")
        self.layer = dataset_cfg.get("layer", None)
        self.log_transform = bool(dataset_cfg.get("log_transform", False))

        if not self.file_path:
            raise ValueError("dataset.input_file is required.")

        self.adata: Optional[ad.AnnData] = None
        self._load_and_process()

    @log_time("Loading dataset")
    def _load_and_process(self):
        path = Path(self.file_path)
        if not path.exists():
            raise FileNotFoundError(f"Input file not found: {path}")

        if path.suffix == ".h5ad":
            adata = self._load_h5ad(path)
        else:
            adata = self._load_wide_table(path)

        if self.group_column not in adata.obs.columns:
            raise ValueError(f"{self.group_column} not found in sample metadata.")
        if not adata.var_names.is_unique:
            raise ValueError("Feature identifiers must be unique.")

        if self.log_transform:
            adata.X = self._log2(adata.X)

        groups = adata.obs[self.group_column].astype(str)
        log_info(f"{adata.n_vars} features x {adata.n_obs} samples; "
                 f"{self.group_column}: {groups.value_counts().sort_index().to_dict()}")
        if groups.nunique() < 2:
            log_warning(f"Only one level in {self.group_column}: no interaction test is meaningful.")

        self.adata = adata

    def _load_h5ad(self, path: Path) -> ad.AnnData:
        adata = ad.read_h5ad(path)
        if self.layer is not None:
            if self.layer not in adata.layers:
                raise ValueError(f"Layer {self.layer!r} not found in {path.name}.")
            adata.X = adata.layers[self.layer]
        X = adata.X.toarray() if hasattr(adata.X, "toarray") else adata.X
        adata.X = np.asarray(X, dtype=float)
        return adata

    def _load_rawdata(self, file_path: Path) -> pl.DataFrame:
        """Load a CSV or TSV file."""
        if file_path.suffix.lower() not in (".csv", ".tsv", ".txt"):
            raise ValueError("Only CSV or TSV files are supported.")
        delimiter = "," if file_path.suffix.lower() == ".csv" else "\t"

        if self.load_method == "polars":
            return pl.read_csv(file_path,
                               separator=delimiter,
                               infer_schema_length=10000,
                               null_values=["NA", "NaN", "N/A", ""])
        elif self.load_method == "pandas":
            return pl.from_pandas(pd.read_csv(file_path, delimiter=delimiter))
        else:
            raise ValueError(f"Unknown load method: {self.load_method}")

    def _load_wide_table(self, path: Path) -> ad.AnnData:
        """Features in rows, samples in columns, plus an annotation table keyed by sample."""
        df = self._load_rawdata(path)
        id_col = self.feature_id_column or df.columns[0]
        if id_col not in df.columns:
            raise ValueError(f"Feature id column {id_col!r} not found in {path.name}.")
        mat, features, samples = polars_matrix_to_numpy(df, index_col=id_col)

        if not self.annotation_file:
            raise ValueError("dataset.annotation_file is required for tabular input.")
        annot_path = Path(self.annotation_file)
        if not annot_path.exists():
            raise FileNotFoundError(f"Annotation file not found: {annot_path}")
        annot = self._load_rawdata(annot_path).to_pandas()
        if self.sample_column not in annot.columns:
            raise ValueError(f"{self.sample_column} not found in annotation file.")

        annot[self.sample_column] = annot[self.sample_column].astype(str)
        annot = annot.set_index(self.sample_column)
        missing = [s for s in samples if s not in annot.index]
        if missing:
            raise ValueError(f"{len(missing)} sample(s) have no annotation, e.g. {missing[:3]}")

        obs = annot.loc[samples].copy()
        obs.index.name = None
        var = pd.DataFrame(index=pd.Index(features))

        return ad.AnnData(X=mat.T, obs=obs, var=var)

    @staticmethod
    def _log2(X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(X > 0, np.log2(X), np.nan)

    def get_anndata(self) -> ad.AnnData:
        """Return the samples x features AnnData."""
        return self.adata
