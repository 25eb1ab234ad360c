"""
Detectors for statistical deviations in per-student series.

Implements explainable methods:
- EWMA trend (sustained drift against a reference band)
- CUSUM shift (abrupt level change)
- Beta-Binomial rate shift (behavior frequency vs. a prior rate)
- 2x2 association (environmental factor vs. emotional response)
- Burst (clustered high-intensity episodes)

Every detector is pure: series in, ``DetectorResult`` or ``None`` out. ``None``
means "not enough evidence" and is never an error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .schema import (
    AlertSource,
    AssociationAnalysis,
    BetaPrior,
    BetaRateAnalysis,
    BurstAnalysis,
    BurstEvent,
    CUSUMAnalysis,
    DetectorResult,
    EWMAAnalysis,
    TrendPoint,
)
from .statistics import (
    IQR_NORMAL_SCALE,
    beta_cdf,
    clamp,
    clamp01,
    correlation_p_value,
    fisher_exact_p,
    mad,
    median,
    normal_quantile,
    pearson_correlation,
)

SIGMA_FLOOR = 1e-6


# --------------------------------------------------------------------------- #
# Tuning helpers
# --------------------------------------------------------------------------- #


def control_limit_multiplier(expected_points_between_alarms: int = 336) -> float:
    """
    Two-sided normal quantile giving roughly one false alarm per N points.

    Clamped to [2, 5] so very short or very long horizons stay usable.
    """
    n = max(1, int(expected_points_between_alarms))
    z = normal_quantile(1.0 - 1.0 / (2.0 * n))
    return clamp(z, 2.0, 5.0)


def cusum_decision_interval(k_factor: float, expected_points_between_alarms: int = 336) -> float:
    """Adaptive h (in sigma units) for a CUSUM with slack k_factor."""
    k_factor = clamp(k_factor, 0.1, 1.0)
    horizon_term = clamp(math.log10(max(1, expected_points_between_alarms) / 336.0), -0.5, 0.5)
    slack_term = clamp(0.5 / k_factor - 1.0, -0.4, 0.6)
    h = 5.0 * (1.0 + 0.15 * horizon_term + 0.2 * slack_term)
    return clamp(h, 4.0, 7.5)


def quality_adjustment(multiplier: float, quality_score: Optional[float]) -> float:
    """
    Widen limits for low-quality baselines, tighten slightly for very good ones.
    """
    if quality_score is None or not math.isfinite(quality_score):
        return multiplier
    q = clamp01(quality_score)
    if q < 0.6:
        return multiplier * (1.0 + 0.25 * (0.6 - q) / 0.6)
    if q > 0.9:
        return multiplier * (1.0 - 0.05 * (q - 0.9) / 0.1)
    return multiplier


def _finite_values(series: Sequence[TrendPoint]) -> List[float]:
    return [float(p.value) for p in series if p.value is not None and math.isfinite(p.value)]


def _is_finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


# --------------------------------------------------------------------------- #
# Trend (EWMA)
# --------------------------------------------------------------------------- #


@dataclass
class EWMATrendDetector:
    """
    EWMA control chart against a robust reference band.

    Reference median/sigma come from the student's baseline when available,
    otherwise from the series itself (median / MAD). Fires only on sustained
    drift: at least ``sustained_required`` of the last ``recent_window`` EWMA
    values outside the band on the same side.
    """

    lam: float = 0.2
    min_points: int = 8
    target_false_alert_interval: int = 336
    sustained_required: int = 3
    recent_window: int = 5

    def detect(
        self,
        series: Sequence[TrendPoint],
        baseline_median: Optional[float] = None,
        baseline_iqr: Optional[float] = None,
        quality_score: Optional[float] = None,
        label: str = "EWMA trend",
    ) -> Optional[DetectorResult]:
        lam = clamp(self.lam, 1e-3, 0.9)
        values = _finite_values(series)
        if len(values) < max(5, self.min_points):
            return None
        if max(values) == min(values):
            return None

        used_baseline = _is_finite(baseline_median)
        reference = float(baseline_median) if used_baseline else median(values)
        if _is_finite(baseline_iqr) and baseline_iqr > 0:
            sigma0 = baseline_iqr / IQR_NORMAL_SCALE
        else:
            sigma0 = mad(values)
        sigma0 = max(sigma0, SIGMA_FLOOR)

        z_mult = quality_adjustment(control_limit_multiplier(self.target_false_alert_interval), quality_score)
        sigma_ewma = sigma0 * math.sqrt(lam / (2.0 - lam))
        upper = reference + z_mult * sigma_ewma
        lower = reference - z_mult * sigma_ewma

        ewma = reference
        trace: List[float] = []
        for value in values:
            ewma = lam * value + (1.0 - lam) * ewma
            trace.append(ewma)

        recent = trace[-self.recent_window:]
        above = sum(1 for e in recent if e > upper)
        below = sum(1 for e in recent if e < lower)
        required = min(self.sustained_required, len(recent))

        if above >= required and above >= below:
            direction, sustained = "up", above
        elif below >= required:
            direction, sustained = "down", below
        else:
            return None

        z_last = (trace[-1] - reference) / sigma_ewma
        score = clamp01(abs(z_last) / max(4.0, z_mult + 1.0))
        confidence = clamp(
            0.6 + (sustained - required) * 0.08 + min(0.2, abs(z_last) / 10.0),
            0.6,
            0.97,
        )

        return DetectorResult(
            score=score,
            confidence=confidence,
            impact_hint=f"Sustained {'increase' if direction == 'up' else 'decrease'} versus typical level",
            analysis=EWMAAnalysis(
                lam=lam,
                z_multiplier=z_mult,
                reference_median=reference,
                reference_sigma=sigma0,
                ewma_last=trace[-1],
                upper_limit=upper,
                lower_limit=lower,
                z_score=z_last,
                sustained_count=sustained,
                sustained_required=required,
                direction=direction,
                used_baseline=used_baseline,
            ),
            sources=[
                AlertSource(
                    label=label,
                    details={
                        "z_score": z_last,
                        "direction": direction,
                        "sustained": sustained,
                        "reference": reference,
                    },
                )
            ],
        )


# --------------------------------------------------------------------------- #
# Shift (CUSUM)
# --------------------------------------------------------------------------- #


@dataclass
class CUSUMShiftDetector:
    """
    Tabular CUSUM with slack k = k_factor * sigma and decision interval h.

    ``decision_interval`` is h in sigma units; when None it is derived from
    k_factor (see ``cusum_decision_interval``).
    """

    k_factor: float = 0.5
    decision_interval: Optional[float] = 5.0
    min_points: int = 6
    sided: str = "upper"
    target_false_alert_interval: int = 336

    def detect(
        self,
        series: Sequence[TrendPoint],
        baseline_mean: Optional[float] = None,
        baseline_sigma: Optional[float] = None,
        quality_score: Optional[float] = None,
        label: str = "CUSUM shift",
    ) -> Optional[DetectorResult]:
        values = _finite_values(series)
        if len(values) < self.min_points:
            return None

        mean = float(baseline_mean) if _is_finite(baseline_mean) else median(values)
        if _is_finite(baseline_sigma) and baseline_sigma > 0:
            sigma = float(baseline_sigma)
        else:
            sigma = mad(values)
        sigma = max(sigma, SIGMA_FLOOR)

        k_factor = clamp(self.k_factor, 0.1, 1.0)
        k = k_factor * sigma
        if _is_finite(self.decision_interval) and self.decision_interval > 0:
            h_mult = float(self.decision_interval)
        else:
            h_mult = cusum_decision_interval(k_factor, self.target_false_alert_interval)
        h = quality_adjustment(h_mult, quality_score) * sigma

        s_hi = s_lo = 0.0
        best, best_index, best_direction = 0.0, -1, "up"
        for idx, value in enumerate(values):
            s_hi = max(0.0, s_hi + (value - mean - k))
            s_lo = max(0.0, s_lo + (mean - value - k))
            if self.sided in ("upper", "both") and s_hi > best:
                best, best_index, best_direction = s_hi, idx, "up"
            if self.sided in ("lower", "both") and s_lo > best:
                best, best_index, best_direction = s_lo, idx, "down"

        if best <= h:
            return None

        ratio = best / h
        score = clamp01((ratio - 1.0) / 2.0)
        confidence = clamp(0.65 + math.log1p(ratio - 1.0) * 0.2, 0.65, 0.98)

        return DetectorResult(
            score=score,
            confidence=confidence,
            impact_hint=f"Level shift {'upwards' if best_direction == 'up' else 'downwards'} detected",
            analysis=CUSUMAnalysis(
                mean=mean,
                sigma=sigma,
                k=k,
                h=h,
                max_cusum=best,
                ratio=ratio,
                direction=best_direction,
                change_index=best_index,
            ),
            sources=[
                AlertSource(
                    label=label,
                    details={"cusum": best, "h": h, "ratio": ratio, "direction": best_direction},
                )
            ],
        )


# --------------------------------------------------------------------------- #
# Rate (Beta-Binomial)
# --------------------------------------------------------------------------- #


@dataclass
class BetaRateDetector:
    """
    Posterior shift test for a behavior rate.

    Posterior Beta(a0 + s, b0 + t - s); fires when P(rate > baseline + delta)
    reaches ``min_probability``.
    """

    min_support: int = 5
    min_probability: float = 0.9

    def detect(
        self,
        successes: int,
        trials: int,
        baseline_prior: Optional[BetaPrior] = None,
        delta: float = 0.1,
        label: str = "Rate shift",
    ) -> Optional[DetectorResult]:
        if trials is None or trials < self.min_support:
            return None
        successes = int(successes)
        trials = int(trials)
        if successes < 0 or successes > trials:
            return None

        if baseline_prior is not None and baseline_prior.alpha > 0 and baseline_prior.beta > 0:
            a0, b0 = baseline_prior.alpha, baseline_prior.beta
        else:
            a0, b0 = 0.5, 0.5

        delta = clamp(delta, 0.05, 0.2)
        baseline_rate = a0 / (a0 + b0)
        post_alpha = a0 + successes
        post_beta = b0 + (trials - successes)
        post_mean = post_alpha / (post_alpha + post_beta)
        threshold_rate = clamp01(baseline_rate + delta)
        probability = 1.0 - beta_cdf(threshold_rate, post_alpha, post_beta)

        if probability < self.min_probability:
            return None

        score = clamp01((post_mean - baseline_rate) / delta)
        confidence = clamp(probability, 0.9, 0.99)

        return DetectorResult(
            score=score,
            confidence=confidence,
            impact_hint="Behavior frequency above typical rate",
            analysis=BetaRateAnalysis(
                successes=successes,
                trials=trials,
                prior_alpha=a0,
                prior_beta=b0,
                posterior_alpha=post_alpha,
                posterior_beta=post_beta,
                posterior_mean=post_mean,
                baseline_rate=baseline_rate,
                delta=delta,
                threshold_rate=threshold_rate,
                probability_above=probability,
            ),
            sources=[
                AlertSource(
                    label=label,
                    details={
                        "successes": successes,
                        "trials": trials,
                        "posterior_mean": post_mean,
                        "baseline_rate": baseline_rate,
                        "probability": probability,
                    },
                )
            ],
        )


# --------------------------------------------------------------------------- #
# Association (2x2)
# --------------------------------------------------------------------------- #


@dataclass
class AssociationDetector:
    """
    Log-odds association on a 2x2 contingency table.

    Table cells: a = factor high & response high, b = factor high & response low,
    c = factor low & response high, d = factor low & response low.
    """

    min_support: int = 5
    min_series_points: int = 5

    def detect(
        self,
        contingency: Dict[str, int],
        series_x: Optional[Sequence[float]] = None,
        series_y: Optional[Sequence[float]] = None,
        label: str = "Context association",
        context: Optional[Dict[str, str]] = None,
    ) -> Optional[DetectorResult]:
        a, b, c, d = (int(contingency.get(cell, 0)) for cell in ("a", "b", "c", "d"))
        if min(a, b, c, d) < 0:
            return None
        support = a + b + c + d
        if support < self.min_support:
            return None

        ca, cb, cc, cd = (float(v) for v in (a, b, c, d))
        if 0 in (a, b, c, d):
            ca, cb, cc, cd = ca + 0.5, cb + 0.5, cc + 0.5, cd + 0.5
        log_odds = math.log((ca * cd) / (cb * cc))
        se = math.sqrt(1.0 / ca + 1.0 / cb + 1.0 / cc + 1.0 / cd)
        ci_lower = log_odds - 1.96 * se
        ci_upper = log_odds + 1.96 * se
        if ci_lower <= 0.0 <= ci_upper:
            return None

        fisher_p = fisher_exact_p(a, b, c, d)

        correlation = 0.0
        correlation_p: Optional[float] = None
        xs = list(series_x or [])
        ys = list(series_y or [])
        if len(xs) >= self.min_series_points and len(ys) >= self.min_series_points:
            correlation = pearson_correlation(xs, ys)
            correlation_p = correlation_p_value(correlation, min(len(xs), len(ys)))

        if correlation_p is not None:
            score = clamp01(min(abs(correlation), abs(log_odds) / 2.0))
        else:
            score = clamp01(abs(log_odds) / 2.0)

        confidence_candidates = [1.0 - fisher_p, 1.0 - 1.0 / (1.0 + abs(log_odds))]
        if correlation_p is not None:
            confidence_candidates.append(1.0 - correlation_p)
        confidence = clamp(max(confidence_candidates), 0.7, 0.99)

        details = {
            "log_odds_ratio": log_odds,
            "support": support,
            "fisher_p": fisher_p,
            "correlation": correlation,
        }
        if context:
            details.update(context)

        return DetectorResult(
            score=score,
            confidence=confidence,
            impact_hint="Response co-occurs with environmental condition",
            analysis=AssociationAnalysis(
                contingency={"a": a, "b": b, "c": c, "d": d},
                support=support,
                log_odds_ratio=log_odds,
                ci_lower=ci_lower,
                ci_upper=ci_upper,
                fisher_p=fisher_p,
                correlation=correlation,
                correlation_p=correlation_p,
            ),
            sources=[AlertSource(label=label, details=details)],
        )


# --------------------------------------------------------------------------- #
# Burst
# --------------------------------------------------------------------------- #


@dataclass
class BurstDetector:
    """
    Densest run of high-intensity events inside a sliding time window.
    """

    window_minutes: float = 15.0
    min_events: int = 3

    def detect(self, events: Sequence[BurstEvent], label: str = "Burst episode") -> Optional[DetectorResult]:
        if len(events) < self.min_events:
            return None

        window_seconds = self.window_minutes * 60.0
        ordered = sorted(events, key=lambda e: e.timestamp)

        best_start = best_end = best_count = 0
        best_sum = 0.0
        start = 0
        running = 0.0
        for end, event in enumerate(ordered):
            running += event.value
            while (event.timestamp - ordered[start].timestamp).total_seconds() > window_seconds:
                running -= ordered[start].value
                start += 1
            count = end - start + 1
            if count > best_count and count >= self.min_events:
                best_start, best_end, best_count, best_sum = start, end, count, running

        if best_count < self.min_events:
            return None

        window = ordered[best_start:best_end + 1]
        start_ts = window[0].timestamp
        end_ts = window[-1].timestamp
        duration_minutes = (end_ts - start_ts).total_seconds() / 60.0
        mean_intensity = best_sum / best_count
        peak_intensity = max(e.value for e in window)

        duration_ratio = clamp01(min(self.window_minutes, max(duration_minutes, 0.0)) / self.window_minutes)
        frequency_ratio = clamp01(best_count / (self.min_events * 2.0))

        paired = [(e.value, e.paired_value) for e in window if _is_finite(e.paired_value)]
        cross_correlation = 0.0
        if len(paired) >= 3:
            cross_correlation = pearson_correlation([p[0] for p in paired], [p[1] for p in paired])

        score = clamp01(0.5 * frequency_ratio + 0.5 * duration_ratio)
        expected_density = self.min_events / max(self.window_minutes, 1.0)
        observed_density = best_count / max(duration_minutes, 1e-3)
        density_ratio = clamp01(observed_density / max(expected_density, 1e-3))
        confidence = clamp(
            0.6 + (best_count - self.min_events) * 0.08 + abs(cross_correlation) * 0.2 + density_ratio * 0.12,
            0.6,
            0.95,
        )

        return DetectorResult(
            score=score,
            confidence=confidence,
            impact_hint="Clustered high-intensity episode detected",
            analysis=BurstAnalysis(
                window_minutes=self.window_minutes,
                event_count=best_count,
                duration_minutes=duration_minutes,
                mean_intensity=mean_intensity,
                peak_intensity=peak_intensity,
                cross_correlation=cross_correlation,
                density_ratio=density_ratio,
            ),
            sources=[
                AlertSource(
                    label=label,
                    details={
                        "event_count": best_count,
                        "duration_minutes": duration_minutes,
                        "mean_intensity": mean_intensity,
                        "peak_intensity": peak_intensity,
                        "start_timestamp": start_ts.isoformat(),
                        "end_timestamp": end_ts.isoformat(),
                        "cross_correlation": cross_correlation,
                    },
                )
            ],
        )
