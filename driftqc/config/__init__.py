"""Constants, parameter models and settings."""

from driftqc.config.settings import (
    DriftQCSettings,
    FilterThresholds,
    QCMNParams,
    QCRSCParams,
    get_settings,
)

__all__ = [
    "DriftQCSettings",
    "FilterThresholds",
    "QCMNParams",
    "QCRSCParams",
    "get_settings",
]
