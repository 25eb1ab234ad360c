"""
Anomaly module: statistical primitives, baselines, detectors and scoring.

Implements robust per-student baselines, explainable detectors and the
severity mapping used by the detection pipeline.
"""

from .baselines import BaselineService, beta_posterior
from .detectors import (
	AssociationDetector,
	BetaRateDetector,
	BurstDetector,
	CUSUMShiftDetector,
	EWMATrendDetector,
)
from .schema import (
	AlertEvent,
	AlertKind,
	AlertSeverity,
	AlertSource,
	AlertStatus,
	DetectorResult,
	SourceType,
	StudentBaseline,
	TrendPoint,
	is_valid_detector_result,
)
from .scoring import SeverityMapper, combine_scores, rank_sources, recency_score
from .tau_u import InterventionOutcomeDetector, TauUEvaluator, TauUOutcomeDetector

__all__ = [
	"BaselineService",
	"beta_posterior",
	"EWMATrendDetector",
	"CUSUMShiftDetector",
	"BetaRateDetector",
	"AssociationDetector",
	"BurstDetector",
	"InterventionOutcomeDetector",
	"TauUEvaluator",
	"TauUOutcomeDetector",
	"AlertEvent",
	"AlertKind",
	"AlertSeverity",
	"AlertSource",
	"AlertStatus",
	"DetectorResult",
	"SourceType",
	"StudentBaseline",
	"TrendPoint",
	"is_valid_detector_result",
	"SeverityMapper",
	"combine_scores",
	"rank_sources",
	"recency_score",
]
