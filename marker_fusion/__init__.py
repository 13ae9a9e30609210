"""Optical marker + inertial pose fusion for a single tracking sensor."""

from .config import CalibrationModel, FusionConfig, load_calibration, load_config
from .worker import FusionPipeline, SessionSummary

__all__ = [
    "CalibrationModel",
    "FusionConfig",
    "FusionPipeline",
    "SessionSummary",
    "load_calibration",
    "load_config",
]
