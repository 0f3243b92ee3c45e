"""
Statistical Analysis Utilities

This module scores one factor's association with flares against the user's
own baseline flare rate.

Key Features:
- Beta-Binomial posterior confidence, discounted by the baseline flare rate
- Association-rule lift
- One-sided z-approximation of a binomial test for significance
- Interest filter deciding which factors can become discoveries

Every division is guarded: degenerate inputs yield neutral values
(lift 1, p-value 1, confidence from the posterior alone) instead of raising.
"""

import logging
import math
from dataclasses import dataclass

from discovery_engine.services.aggregation import FactorStatistics

logger = logging.getLogger(__name__)

# Statistical significance threshold (alpha level)
DEFAULT_ALPHA = 0.05

# Confidence never reaches certainty
MAX_CONFIDENCE = 0.99

# Lift over baseline stops adding confidence past this multiple
MAX_BASELINE_LIFT = 3.0

# p-value floor of the z-approximation
MIN_P_VALUE = 0.001


@dataclass(frozen=True)
class AnalysisBaseline:
    """Global counts for one analysis run"""
    total_events: int
    flare_count: int

    @property
    def base_outcome_rate(self) -> float:
        if self.total_events <= 0:
            return 0.0
        return self.flare_count / self.total_events


@dataclass(frozen=True)
class FactorScore:
    """Confidence / lift / significance triple for one factor"""
    confidence: float
    lift: float
    p_value: float


def bayesian_confidence(outcome_count: int, total_appearances: int, base_rate: float) -> float:
    """
    Posterior probability that the factor is followed by a flare, discounted
    by how little it exceeds the baseline flare rate.

    Uses a Beta-Binomial model with a uniform Beta(1, 1) prior:
    posterior mean = (1 + hits) / (2 + trials).

    A factor whose hit rate merely matches the background rate gets about a
    third of its posterior; one at three times the background rate or more
    keeps all of it.

    Args:
        outcome_count: Appearances followed by a flare
        total_appearances: Total appearances of the factor
        base_rate: Fraction of all events that are flares

    Returns:
        Confidence in [0, 0.99]

    Example:
        >>> # Factor seen 4 times, 3 followed by a flare, baseline 25%
        >>> round(bayesian_confidence(3, 4, 0.25), 3)
        0.593
    """
    alpha = 1 + outcome_count
    beta = 1 + (total_appearances - outcome_count)
    posterior = alpha / (alpha + beta)

    lift_over_base = posterior / base_rate if base_rate > 0 else posterior

    return min(MAX_CONFIDENCE, posterior * min(lift_over_base, MAX_BASELINE_LIFT) / MAX_BASELINE_LIFT)


def calculate_lift(co_occurrences: int, total_factor: int, total_outcomes: int, total_events: int) -> float:
    """
    Association rule lift: P(A and B) / (P(A) * P(B)).

    Args:
        co_occurrences: Appearances of the factor followed by a flare
        total_factor: Appearances of the factor
        total_outcomes: Flares in the dataset
        total_events: Events in the dataset

    Returns:
        Lift (>1 means positive association); 1.0 when any denominator is zero
    """
    if total_factor == 0 or total_outcomes == 0 or total_events == 0:
        return 1.0

    p_ab = co_occurrences / total_events
    p_a = total_factor / total_events
    p_b = total_outcomes / total_events
    return p_ab / (p_a * p_b)


def approx_p_value(observed: int, total: int, expected_rate: float) -> float:
    """
    Approximate one-sided p-value of a binomial test.

    z = (observed - n*p) / sqrt(n*p*(1-p)), p-value ~ 0.5 * exp(-z^2 / 2),
    clamped to [0.001, 1]. Cheap by construction; not an exact test.

    Returns:
        p-value; 1.0 when the variance is zero
    """
    if total == 0:
        return 1.0

    expected = total * expected_rate
    variance = total * expected_rate * (1 - expected_rate)
    if variance <= 0:
        return 1.0

    z = (observed - expected) / math.sqrt(variance)
    return max(MIN_P_VALUE, min(1.0, 0.5 * math.exp(-0.5 * z * z)))


def is_statistically_significant(p_value: float, alpha: float = DEFAULT_ALPHA) -> bool:
    """
    Check if p-value meets statistical significance threshold.

    Example:
        >>> is_statistically_significant(0.003)
        True
    """
    return p_value < alpha


def score_factor(stats: FactorStatistics, baseline: AnalysisBaseline) -> FactorScore:
    """
    Compute confidence, lift and p-value for one factor.

    Example:
        >>> baseline = AnalysisBaseline(total_events=20, flare_count=5)
        >>> score = score_factor(stats, baseline)
        >>> round(score.lift, 2)
        3.0
    """
    base_rate = baseline.base_outcome_rate
    return FactorScore(
        confidence=bayesian_confidence(stats.outcome_count, stats.total_appearances, base_rate),
        lift=calculate_lift(stats.outcome_count, stats.total_appearances, baseline.flare_count, baseline.total_events),
        p_value=approx_p_value(stats.outcome_count, stats.total_appearances, base_rate),
    )


def is_interesting(
    stats: FactorStatistics,
    score: FactorScore,
    min_total_appearances: int = 2,
    min_lift: float = 1.1,
    min_confidence: float = 0.25
) -> bool:
    """
    Whether a factor carries enough signal to become a discovery.

    Requires at least `min_total_appearances` and either a lift or a
    confidence above the floor.
    """
    if stats.total_appearances < min_total_appearances:
        return False
    return score.lift >= min_lift or score.confidence >= min_confidence
