"""
Application configuration for the student alert pipeline.

Provides environment-aware settings with conservative defaults. Detector
thresholds, severity cut points and the recency horizon are all configurable to
avoid hard-coded "magic numbers" in the scoring path.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DETECTOR_THRESHOLDS: Dict[str, float] = {
	"ewma": 0.6,
	"cusum": 0.55,
	"beta": 0.5,
	"association": 0.5,
	"burst": 0.6,
	"tau_u": 0.5,
}

FALLBACK_DETECTOR_THRESHOLD = 0.5


class DetectorThresholds(BaseModel):
	"""
	Baseline score thresholds per detector type.

	Rationale:
	- Trend and burst detectors are noisier on short series, so they start higher.
	- Rate and association detectors already gate on posterior/CI significance.
	"""

	ewma: float = Field(0.6, gt=0.0, le=1.0)
	cusum: float = Field(0.55, gt=0.0, le=1.0)
	beta: float = Field(0.5, gt=0.0, le=1.0)
	association: float = Field(0.5, gt=0.0, le=1.0)
	burst: float = Field(0.6, gt=0.0, le=1.0)
	tau_u: float = Field(0.5, gt=0.0, le=1.0)

	def for_detector(self, detector_type: str) -> float:
		value = getattr(self, detector_type, None)
		if isinstance(value, (int, float)) and value > 0:
			return float(value)
		return DEFAULT_DETECTOR_THRESHOLDS.get(detector_type, FALLBACK_DETECTOR_THRESHOLD)


class BaselineConfig(BaseModel):
	"""
	Configuration for per-student rolling baselines.

	Notes:
	- windows: rolling window widths in days.
	- min_sessions / min_unique_days: both must hold before a baseline is computed.
	- outlier_z: robust z-score cut-off on a median/MAD basis.
	- lookup_order: window preference when a detector reads a baseline.
	"""

	windows: List[int] = Field(default_factory=lambda: [7, 14, 30])
	min_sessions: int = Field(10, ge=1)
	min_unique_days: int = Field(7, ge=1)
	outlier_z: float = Field(3.5, gt=0.0)
	high_intensity: float = Field(4.0, description="Intensity counted as a high-intensity occurrence")
	lookup_order: List[int] = Field(default_factory=lambda: [14, 7, 30])
	refresh_interval_days: int = Field(7, ge=1)
	stability_shift_scale: float = Field(0.2, gt=0.0)
	sufficiency_factor: float = Field(0.8, ge=0.0, le=1.0)


class EWMAConfig(BaseModel):
	"""Trend detector tuning."""

	lam: float = Field(0.2, gt=0.0, lt=1.0, description="EWMA smoothing factor")
	min_points: int = Field(8, ge=5)
	target_false_alert_interval: int = Field(336, ge=1, description="Expected points between false alarms")
	sustained_required: int = Field(3, ge=1)
	recent_window: int = Field(5, ge=1)


class CusumConfig(BaseModel):
	"""
	Shift detector tuning.

	Notes:
	- k_factor is the drift slack in units of sigma.
	- decision_interval is h in units of sigma; None derives it adaptively.
	"""

	k_factor: float = Field(0.5, ge=0.1, le=1.0)
	decision_interval: float = Field(5.0, gt=0.0)
	min_points: int = Field(6, ge=3)
	sided: str = Field("upper", description="'upper', 'lower' or 'both'")


class SeriesConfig(BaseModel):
	"""
	Series building limits and categorical cut-offs.
	"""

	series_limit: int = Field(90, ge=10, le=365)
	preview_limit: int = Field(30, ge=2)
	high_intensity: float = Field(4.0)
	high_noise: float = Field(70.0)
	min_association_support: int = Field(5, ge=1)
	burst_window_minutes: float = Field(15.0, gt=0.0)
	burst_min_events: int = Field(3, ge=2)
	burst_pairing_seconds: float = Field(60.0, ge=0.0)
	tau_u_min_effect: float = Field(0.2, ge=0.0, le=1.0)
	tau_u_baseline_window_days: int = Field(60, ge=1)


class ScoringConfig(BaseModel):
	"""
	Aggregate scoring configuration.

	Notes:
	- Weights are applied to impact, confidence, recency and tier, then clamped.
	- recency_horizon_hours is the exponential decay time constant.
	- severity_* are lower cut points on the aggregate score.
	"""

	impact_weight: float = Field(0.4, ge=0.0, le=1.0)
	confidence_weight: float = Field(0.25, ge=0.0, le=1.0)
	recency_weight: float = Field(0.2, ge=0.0, le=1.0)
	tier_weight: float = Field(0.15, ge=0.0, le=1.0)
	recency_horizon_hours: float = Field(24.0, gt=0.0)
	severity_critical: float = Field(0.85, ge=0.0, le=1.0)
	severity_important: float = Field(0.7, ge=0.0, le=1.0)
	severity_moderate: float = Field(0.55, ge=0.0, le=1.0)
	max_ranked_sources: int = Field(3, ge=1)


class LearnerConfig(BaseModel):
	"""Threshold learner targets."""

	target_ppv: float = Field(0.7, ge=0.0, le=1.0)
	epsilon: float = Field(0.1, ge=0.0, le=1.0, description="Exploration probability")
	min_samples: int = Field(10, ge=1)
	step: float = Field(0.05, gt=0.0)
	max_adjustment: float = Field(0.25, gt=0.0, lt=1.0)
	ppv_high: float = Field(0.8, ge=0.0, le=1.0)
	fpr_ceiling: float = Field(0.35, ge=0.0, le=1.0)


class ExperimentConfig(BaseModel):
	"""Experiment assignment defaults."""

	salt: str = "alert-threshold"
	default_split: Dict[str, float] = Field(default_factory=lambda: {"A": 0.5, "B": 0.5})
	bucket_count: int = Field(10_000, ge=2)


class AlertsConfig(BaseModel):
	"""
	Alert pipeline configuration.
	"""

	thresholds: DetectorThresholds = DetectorThresholds()
	baseline: BaselineConfig = BaselineConfig()
	ewma: EWMAConfig = EWMAConfig()
	cusum: CusumConfig = CusumConfig()
	series: SeriesConfig = SeriesConfig()
	scoring: ScoringConfig = ScoringConfig()
	learner: LearnerConfig = LearnerConfig()
	experiments: ExperimentConfig = ExperimentConfig()


class Config(BaseSettings):
	"""
	Global configuration with environment overrides.
	"""

	model_config = SettingsConfigDict(
		env_prefix="STUDENT_ALERTS_",
		env_file=".env",
		env_nested_delimiter="__",
		extra="ignore",
	)

	log_level: str = Field("INFO", description="Default logging level")
	logs_dir: Path = Field(Path("logs"), description="Directory for log files")
	state_dir: Path = Field(Path("state"), description="Directory for persisted baselines and assignments")
	alerts: AlertsConfig = AlertsConfig()


config = Config()
