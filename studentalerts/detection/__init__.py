"""
Detection module: candidate generation, threshold application, finalization,
governance and the orchestrating engine.
"""

from .candidates import CandidateGenerator
from .engine import DetectionEngine, run_detection
from .finalizer import AlertFinalizer, ResultAggregator, build_alert_id, build_dedupe_key
from .policies import AlertPolicies
from .schema import AggregatedResult, AlertCandidate, AlertSettings, DetectionInput, QuietHours, ThresholdContext
from .thresholds import ThresholdApplicator, experiment_key_for

__all__ = [
	"DetectionEngine",
	"run_detection",
	"DetectionInput",
	"CandidateGenerator",
	"ThresholdApplicator",
	"ThresholdContext",
	"experiment_key_for",
	"AlertCandidate",
	"AggregatedResult",
	"ResultAggregator",
	"AlertFinalizer",
	"build_alert_id",
	"build_dedupe_key",
	"AlertPolicies",
	"AlertSettings",
	"QuietHours",
]
