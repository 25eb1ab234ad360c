"""
Custom exceptions for the student alert pipeline.

These exceptions provide clear error semantics across the system.
Use them to distinguish between data issues, storage problems, and configuration errors.
"""


class StudentAlertsError(Exception):
    """Base exception for alert pipeline failures."""
    pass


class DataValidationError(StudentAlertsError):
    """Raised when input data fails validation or ingestion."""
    pass


class ConfigurationError(StudentAlertsError):
    """Raised when configuration or an experiment definition is invalid."""
    pass


class RepositoryError(StudentAlertsError):
    """Raised when a keyed record cannot be read from or written to a store."""
    pass


class DetectorExecutionError(StudentAlertsError):
    """Raised (and caught) when a detector fails on a series."""

    def __init__(self, detector_type: str, cause: Exception):
        super().__init__(f"{detector_type} detector failed: {cause}")
        self.detector_type = detector_type
        self.cause = cause


class InvalidTransitionError(StudentAlertsError):
    """Raised when an alert status change is not allowed."""
    pass
