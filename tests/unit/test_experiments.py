"""
Unit tests for threshold experiments and sticky assignment.
"""

import pytest

from studentalerts.core.exceptions import ConfigurationError
from studentalerts.learning.experiments import MIN_VARIANT_THRESHOLD, ExperimentService
from studentalerts.learning.schema import ExperimentDefinition, VariantConfig


@pytest.fixture
def service(memory_store):
    return ExperimentService(memory_store)


def test_bucket_is_deterministic_and_in_range(service):
    first = service.bucket("alerts.thresholds.behavior", "s-1")

    assert first == service.bucket("alerts.thresholds.behavior", "s-1")
    assert 0 <= first < 10_000
    assert first != service.bucket("alerts.thresholds.behavior", "s-1", salt="other")


def test_default_split_is_roughly_even(service):
    variants = [service.draw_variant("alerts.thresholds.global", f"student-{i}") for i in range(1000)]

    assert set(variants) == {"A", "B"}
    assert 400 < variants.count("A") < 600


def test_assignment_is_sticky(service, now):
    first = service.assign("alerts.thresholds.behavior", "s-1", now=now)
    forced = "B" if first.variant == "A" else "A"

    assert service.assign("alerts.thresholds.behavior", "s-1").variant == first.variant

    service.reassign("alerts.thresholds.behavior", "s-1", variant=forced, now=now)
    assert service.assign("alerts.thresholds.behavior", "s-1").variant == forced


def test_reassign_rejects_unknown_variant(service):
    with pytest.raises(ConfigurationError):
        service.reassign("alerts.thresholds.behavior", "s-1", variant="Z")


def test_traffic_split_is_respected(service):
    service.create_experiment(
        ExperimentDefinition(
            key="exp-1",
            variants={"A": VariantConfig(), "B": VariantConfig()},
            traffic_split={"A": 1.0, "B": 0.0},
        )
    )

    assert {service.draw_variant("exp-1", f"student-{i}") for i in range(200)} == {"A"}


def test_create_experiment_validation(service):
    created = service.create_experiment(ExperimentDefinition(key="exp-1"))

    assert created.created_at is not None
    assert [e.key for e in service.list_experiments()] == ["exp-1"]
    with pytest.raises(ConfigurationError):
        service.create_experiment(ExperimentDefinition(key="exp-1"))
    with pytest.raises(ConfigurationError):
        service.create_experiment(ExperimentDefinition(key="   "))


def test_definition_requires_variants():
    with pytest.raises(ValueError):
        ExperimentDefinition(key="exp-1", variants={})


class TestThresholdForVariant:
    """Test variant threshold mapping."""

    @pytest.fixture(autouse=True)
    def _experiment(self, service):
        service.create_experiment(
            ExperimentDefinition(
                key="exp-1",
                variants={
                    "control": VariantConfig(),
                    "scaled": VariantConfig(multiplier=1.5, offset=-0.1),
                    "fixed": VariantConfig(fixed_threshold=0.3),
                },
            )
        )

    def test_passthrough(self, service):
        assert service.threshold_for_variant(None, "scaled", 0.6) == 0.6
        assert service.threshold_for_variant("missing", "scaled", 0.6) == 0.6
        assert service.threshold_for_variant("exp-1", "missing", 0.6) == 0.6
        assert service.threshold_for_variant("exp-1", "control", 0.6) == pytest.approx(0.6)

    def test_scaled_and_fixed(self, service):
        assert service.threshold_for_variant("exp-1", "scaled", 0.6) == pytest.approx(0.8)
        assert service.threshold_for_variant("exp-1", "fixed", 0.6) == 0.3

    def test_non_positive_value_falls_back(self, service):
        assert service.threshold_for_variant("exp-1", "control", 0.0, default=0.5) == pytest.approx(0.5)

    def test_negative_offset_is_floored(self, service):
        mapped = [service.threshold_for_variant("exp-1", "scaled", v) for v in (0.02, 0.05, 0.06, 0.1, 0.2)]

        assert mapped[0] == MIN_VARIANT_THRESHOLD
        assert mapped[-1] == pytest.approx(0.2)
        assert mapped == sorted(mapped)
