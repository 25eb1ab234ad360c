"""
Core module: Configuration, logging, and exception handling.
"""

from .config import AlertsConfig, Config, config
from .exceptions import (
    ConfigurationError,
    DataValidationError,
    DetectorExecutionError,
    InvalidTransitionError,
    RepositoryError,
    StudentAlertsError,
)

__all__ = [
    "AlertsConfig",
    "Config",
    "config",
    "StudentAlertsError",
    "DataValidationError",
    "ConfigurationError",
    "RepositoryError",
    "DetectorExecutionError",
    "InvalidTransitionError",
]
