"""
Parameter structs and settings for drift correction and feature filtering.

Correction and filter parameters are explicit pydantic models passed into each
call. ``DriftQCSettings`` bundles the defaults and can be loaded from and
saved to a TOML file.

Example config.toml:
    algorithm = "QC-RSC"
    log_level = "INFO"

    [qc_rsc]
    smoothing_parameter = 0.0
    n_jobs = 4

    [thresholds]
    technical_cv_max = 20.0
    icc_min = 0.5
"""

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

import tomli_w
from pydantic import BaseModel, Field, field_validator

from driftqc.config.constants import (
    AUTO_SMOOTHING,
    DEFAULT_ICC_MIN,
    DEFAULT_N_QC,
    DEFAULT_ROBUST_ITERATIONS,
    DEFAULT_SMOOTHING_GRID,
    DEFAULT_TECHNICAL_CV_MAX,
    N_QC_BOUNDS,
    QC_RSC,
    VALID_ALGORITHMS,
)
from driftqc.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)

CONFIG_FILE_NAME = "driftqc.toml"
CONFIG_PATH_ENV_VAR = "DRIFTQC_CONFIG"
N_JOBS_ENV_VAR = "DRIFTQC_N_JOBS"
LOG_LEVEL_ENV_VAR = "DRIFTQC_LOG_LEVEL"


class QCMNParams(BaseModel):
    """Parameters of QC median normalization."""

    n_qc: int = Field(
        DEFAULT_N_QC,
        ge=N_QC_BOUNDS[0],
        le=N_QC_BOUNDS[1],
        description="Number of nearest QC injections whose median is divided out",
    )

    include_self: bool = Field(
        True,
        description="Allow a QC row to count itself among its nearest QC neighbours",
    )


class QCRSCParams(BaseModel):
    """Parameters of QC robust spline correction."""

    smoothing_parameter: float = Field(
        AUTO_SMOOTHING,
        ge=0.0,
        le=1.0,
        description="Spline smoothing parameter p; 0 selects p by leave-one-out CV",
    )

    robust_iterations: int = Field(
        DEFAULT_ROBUST_ITERATIONS,
        ge=0,
        le=20,
        description="Bisquare reweighting passes after the initial fit",
    )

    candidate_grid: List[float] = Field(
        default_factory=lambda: list(DEFAULT_SMOOTHING_GRID),
        description="Smoothing parameters searched when smoothing_parameter is 0",
    )

    n_jobs: int = Field(
        1, ge=1, description="Worker threads for per-batch, per-feature fits"
    )

    @field_validator("candidate_grid")
    @classmethod
    def _check_grid(cls, grid: List[float]) -> List[float]:
        if not grid:
            raise ValueError("candidate_grid must not be empty")
        for p in grid:
            if not 0.0 < p <= 1.0:
                raise ValueError(f"candidate smoothing parameter {p} outside (0, 1]")
        return sorted(set(float(p) for p in grid))

    @property
    def auto(self) -> bool:
        return self.smoothing_parameter == AUTO_SMOOTHING


class FilterThresholds(BaseModel):
    """Thresholds of the precision-based feature filter."""

    technical_cv_max: float = Field(
        DEFAULT_TECHNICAL_CV_MAX,
        ge=0.0,
        description="Maximum technical CV (%) a feature may have to be kept",
    )

    icc_min: float = Field(
        DEFAULT_ICC_MIN,
        ge=0.0,
        le=1.0,
        description="Minimum ICC a feature must reach to be kept",
    )


class DriftQCSettings(BaseModel):
    """Default algorithm, parameters and thresholds for a session."""

    algorithm: str = Field(QC_RSC, description="Default correction algorithm")
    log_level: str = Field("WARNING", description="Log level of the driftqc logger")
    qc_mn: QCMNParams = Field(default_factory=QCMNParams)
    qc_rsc: QCRSCParams = Field(default_factory=QCRSCParams)
    thresholds: FilterThresholds = Field(default_factory=FilterThresholds)

    @field_validator("algorithm")
    @classmethod
    def _check_algorithm(cls, value: str) -> str:
        if value not in VALID_ALGORITHMS:
            raise ValueError(
                f"Unknown algorithm '{value}'. Choose from: {', '.join(VALID_ALGORITHMS)}"
            )
        return value

    @classmethod
    def load(cls, path: Path) -> "DriftQCSettings":
        """
        Load settings from a TOML file.

        A missing file yields defaults. Environment overrides are applied
        afterwards.
        """
        path = Path(path)
        data = {}
        if path.exists():
            with open(path, "rb") as f:
                data = tomllib.load(f)
            logger.debug(f"Loaded settings from {path}")
        else:
            logger.debug(f"No settings file at {path}, using defaults")

        settings = cls(**data)
        return settings.with_env_overrides()

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(self.model_dump(), f)
        logger.debug(f"Saved settings to {path}")

    def with_env_overrides(self) -> "DriftQCSettings":
        updated = self.model_copy(deep=True)
        if os.environ.get(LOG_LEVEL_ENV_VAR):
            updated.log_level = os.environ[LOG_LEVEL_ENV_VAR].upper()
        if os.environ.get(N_JOBS_ENV_VAR):
            try:
                n_jobs = int(os.environ[N_JOBS_ENV_VAR])
            except ValueError:
                logger.warning(
                    f"Ignoring non-integer {N_JOBS_ENV_VAR}={os.environ[N_JOBS_ENV_VAR]!r}"
                )
            else:
                updated.qc_rsc = QCRSCParams(
                    **{**updated.qc_rsc.model_dump(), "n_jobs": max(1, n_jobs)}
                )
        return updated


@lru_cache(maxsize=1)
def get_settings(config_path: Optional[str] = None) -> DriftQCSettings:
    """Return process-wide default settings (cached)."""
    path = config_path or os.environ.get(CONFIG_PATH_ENV_VAR) or CONFIG_FILE_NAME
    settings = DriftQCSettings.load(Path(path))
    configure_logging(settings.log_level)
    return settings
