"""
Learning module: feedback-driven threshold overrides, threshold experiments
and the alert telemetry that feeds them.
"""

from .experiments import ExperimentService
from .learner import ThresholdLearner, samples_from_telemetry, summarize_feedback
from .schema import (
	AlertFeedback,
	AlertTelemetryEntry,
	CalibrationMetrics,
	ExperimentAssignment,
	ExperimentDefinition,
	FeedbackSample,
	TelemetryReport,
	ThresholdOverride,
	VariantConfig,
)
from .telemetry import AlertTelemetryService, hash_student_id

__all__ = [
	"ExperimentService",
	"AlertTelemetryService",
	"hash_student_id",
	"ThresholdLearner",
	"samples_from_telemetry",
	"summarize_feedback",
	"AlertFeedback",
	"AlertTelemetryEntry",
	"CalibrationMetrics",
	"ExperimentAssignment",
	"ExperimentDefinition",
	"FeedbackSample",
	"TelemetryReport",
	"ThresholdOverride",
	"VariantConfig",
]
