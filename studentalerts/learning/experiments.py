"""
Threshold experiments with sticky per-student variant assignment.

A student is bucketed deterministically from a hash of (experiment, student,
salt); the first assignment is persisted and reused until explicitly reassigned.
Variants map an incoming threshold to the threshold actually applied.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from studentalerts.core.config import ExperimentConfig, config
from studentalerts.core.exceptions import ConfigurationError
from studentalerts.storage.repositories import KeyValueStore, ModelRepository

from .schema import ExperimentAssignment, ExperimentDefinition

logger = logging.getLogger(__name__)

EXPERIMENT_PREFIX = "experiment"
ASSIGNMENT_PREFIX = "experiment-assignment"
MIN_VARIANT_THRESHOLD = 1e-3


def _normalize_split(split: Dict[str, float], variants: List[str]) -> Dict[str, float]:
    weights = {name: max(0.0, float(split.get(name, 0.0))) for name in variants}
    total = sum(weights.values())
    if total <= 0:
        return {name: 1.0 / len(variants) for name in variants}
    return {name: weight / total for name, weight in weights.items()}


class ExperimentService:
    """
    Experiment definitions and assignments over one injected store.
    """

    def __init__(self, store: KeyValueStore, settings: Optional[ExperimentConfig] = None):
        self.settings = settings or config.alerts.experiments
        self.experiments: ModelRepository[ExperimentDefinition] = ModelRepository(
            store, ExperimentDefinition, EXPERIMENT_PREFIX
        )
        self.assignments: ModelRepository[ExperimentAssignment] = ModelRepository(
            store, ExperimentAssignment, ASSIGNMENT_PREFIX
        )

    # ------------------------------------------------------------------ #
    # Definitions
    # ------------------------------------------------------------------ #

    def create_experiment(self, definition: ExperimentDefinition) -> ExperimentDefinition:
        if not definition.key.strip():
            raise ConfigurationError("Experiment key must not be empty")
        if self.experiments.get(definition.key) is not None:
            raise ConfigurationError(f"Experiment '{definition.key}' already exists")
        if definition.created_at is None:
            definition = definition.model_copy(update={"created_at": datetime.now(timezone.utc)})
        self.experiments.put(definition.key, definition)
        logger.info(f"Created experiment '{definition.key}' with variants {sorted(definition.variants)}")
        return definition

    def get_experiment(self, experiment_key: str) -> Optional[ExperimentDefinition]:
        return self.experiments.get(experiment_key)

    def list_experiments(self) -> List[ExperimentDefinition]:
        return self.experiments.all()

    # ------------------------------------------------------------------ #
    # Assignment
    # ------------------------------------------------------------------ #

    def bucket(self, experiment_key: str, student_id: str, salt: Optional[str] = None) -> int:
        payload = json.dumps(
            {"experiment": experiment_key, "student": student_id, "salt": salt or self.settings.salt},
            sort_keys=True,
            separators=(",", ":"),
        )
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return int(digest, 16) % self.settings.bucket_count

    def draw_variant(self, experiment_key: str, student_id: str) -> str:
        """
        Deterministic variant for a student, walking the cumulative traffic split.
        """
        definition = self.get_experiment(experiment_key)
        if definition is not None:
            variants = sorted(definition.variants)
            split = definition.traffic_split or {name: 1.0 for name in variants}
            salt = definition.salt
        else:
            split = self.settings.default_split
            variants = sorted(split)
            salt = None

        normalized = _normalize_split(split, variants)
        position = self.bucket(experiment_key, student_id, salt)
        cumulative = 0.0
        for name in variants:
            cumulative += normalized[name]
            if position < round(cumulative * self.settings.bucket_count):
                return name
        return variants[-1]

    def assign(self, experiment_key: str, student_id: str, now: Optional[datetime] = None) -> ExperimentAssignment:
        key = f"{experiment_key}:{student_id}"
        existing = self.assignments.get(key)
        if existing is not None:
            return existing
        return self._store_assignment(experiment_key, student_id, self.draw_variant(experiment_key, student_id), now)

    def reassign(
        self,
        experiment_key: str,
        student_id: str,
        variant: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ExperimentAssignment:
        """
        Replace a student's assignment, forcing ``variant`` when given.
        """
        if variant is not None:
            definition = self.get_experiment(experiment_key)
            known = definition.variants if definition is not None else self.settings.default_split
            if variant not in known:
                raise ConfigurationError(f"Unknown variant '{variant}' for experiment '{experiment_key}'")
        chosen = variant or self.draw_variant(experiment_key, student_id)
        logger.info(f"Reassigning {student_id} in '{experiment_key}' to {chosen}")
        return self._store_assignment(experiment_key, student_id, chosen, now)

    def _store_assignment(
        self, experiment_key: str, student_id: str, variant: str, now: Optional[datetime]
    ) -> ExperimentAssignment:
        assignment = ExperimentAssignment(
            experiment_key=experiment_key,
            student_id=student_id,
            variant=variant,
            assigned_at=now or datetime.now(timezone.utc),
        )
        self.assignments.put(f"{experiment_key}:{student_id}", assignment)
        return assignment

    # ------------------------------------------------------------------ #
    # Threshold mapping
    # ------------------------------------------------------------------ #

    def threshold_for_variant(
        self,
        experiment_key: Optional[str],
        variant: Optional[str],
        value: float,
        default: Optional[float] = None,
    ) -> float:
        """
        Map a threshold through a variant's arm configuration.

        Without a matching experiment or variant the value passes through;
        a non-positive value falls back to ``default``. Mapped values are floored
        at ``MIN_VARIANT_THRESHOLD``.
        """
        fallback = value if value > 0 else (default if default is not None else value)
        if not experiment_key or not variant:
            return fallback
        definition = self.get_experiment(experiment_key)
        if definition is None:
            return fallback
        arm = definition.variants.get(variant)
        if arm is None:
            return fallback
        if arm.fixed_threshold is not None:
            return arm.fixed_threshold
        # non-decreasing in value
        return max(fallback * arm.multiplier + arm.offset, MIN_VARIANT_THRESHOLD)
