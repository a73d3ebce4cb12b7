from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Optional

CARRIER_POLICIES = ("uniform",)


class ConfigurationError(ValueError):
    """Raised when a configuration value is outside its valid range."""


@dataclass(frozen=True)
class DensityConfig:
    """
    Resolved `analysis` section of the YAML config.

    Every constant of the density test lives here so that nothing in the
    fitting and testing code is hardcoded.
    """

    n_bins: int = 40
    max_degree: int = 4
    interaction_degrees: tuple[int, ...] = (0, 1, 2, 3, 4)
    fdr_threshold: float = 0.05
    carrier: str = "uniform"
    smooth: bool = True
    smooth_basis_size: int = 10
    group_column: str = "SampleType"
    n_jobs: int = 1

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_dict(cls, config: Optional[dict[str, Any]]) -> "DensityConfig":
        """Build from the full config dict (reads `analysis` and `dataset.group_column`)."""
        config = config or {}
        analysis_cfg = config.get("analysis", {}) or {}
        dataset_cfg = config.get("dataset", {}) or {}

        defaults = cls.__dataclass_fields__
        degrees = analysis_cfg.get("interaction_degrees", defaults["interaction_degrees"].default)
        if isinstance(degrees, int):
            degrees = [degrees]

        try:
            return cls(
                n_bins=int(analysis_cfg.get("n_bins", defaults["n_bins"].default)),
                max_degree=int(analysis_cfg.get("max_degree", defaults["max_degree"].default)),
                interaction_degrees=tuple(int(d) for d in degrees),
                fdr_threshold=float(analysis_cfg.get("fdr_threshold", defaults["fdr_threshold"].default)),
                carrier=str(analysis_cfg.get("carrier", defaults["carrier"].default)),
                smooth=analysis_cfg.get("smooth", defaults["smooth"].default),
                smooth_basis_size=int(analysis_cfg.get("smooth_basis_size", defaults["smooth_basis_size"].default)),
                group_column=str(dataset_cfg.get("group_column", defaults["group_column"].default)),
                n_jobs=int(analysis_cfg.get("n_jobs", defaults["n_jobs"].default)),
            )
        except (TypeError, ValueError) as err:
            if isinstance(err, ConfigurationError):
                raise
            raise ConfigurationError(f"Invalid analysis configuration: {err}") from err

    def validate(self) -> None:
        if self.n_bins <= 0:
            raise ConfigurationError(f"n_bins must be positive, got {self.n_bins}")
        if self.max_degree < 0:
            raise ConfigurationError(f"max_degree must be >= 0, got {self.max_degree}")
        if not self.interaction_degrees:
            raise ConfigurationError("interaction_degrees must not be empty")
        if len(set(self.interaction_degrees)) != len(self.interaction_degrees):
            raise ConfigurationError(f"interaction_degrees contains duplicates: {list(self.interaction_degrees)}")
        for k in self.interaction_degrees:
            if k < 0 or k > self.max_degree:
                raise ConfigurationError(
                    f"interaction degree {k} outside [0, max_degree={self.max_degree}]"
                )
        if 0 not in self.interaction_degrees:
            # degree-d-interaction-0 is the null of every likelihood-ratio test
            raise ConfigurationError("interaction_degrees must include 0")
        if not 0.0 <= self.fdr_threshold <= 1.0:
            raise ConfigurationError(f"fdr_threshold must be within [0, 1], got {self.fdr_threshold}")
        if self.carrier not in CARRIER_POLICIES:
            raise ConfigurationError(f"Unknown carrier policy {self.carrier!r}; use one of {CARRIER_POLICIES}")
        if not isinstance(self.smooth, bool):
            raise ConfigurationError(f"smooth must be true or false, got {self.smooth!r}")
        if self.smooth_basis_size < 4:
            raise ConfigurationError(f"smooth_basis_size must be >= 4, got {self.smooth_basis_size}")
        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be a positive integer or negative (joblib convention)")

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["interaction_degrees"] = list(self.interaction_degrees)
        return out
