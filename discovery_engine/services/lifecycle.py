"""
Discovery Lifecycle Classification

Maps a factor's current evidence to a lifecycle status, a relationship, a
discovery type and a human-readable evidence summary. Status is recomputed
from scratch on every analysis run; there are no stored transitions.

Status ladder (first match wins):
- strong:        confidence >= 0.70, occurrences >= 5, p < 0.05
- confirmed:     confidence >= 0.50, occurrences >= 3, p < 0.10
- investigating: confidence >= 0.30, occurrences >= 2
- disproven:     confidence <  0.15, exposures >= 5  (terminal)
- declining:     confidence <  0.20, exposures >= 3
- emerging:      everything else
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from discovery_engine.models.discovery import DiscoveryStatus, DiscoveryType, Relationship
from discovery_engine.services.statistical_analysis import is_statistically_significant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveryThresholds:
    """Numeric thresholds for filtering and classifying discoveries"""

    # Interest filter
    min_total_appearances: int = 2
    min_lift: float = 1.1
    min_confidence: float = 0.25

    # Status ladder
    strong_confidence: float = 0.70
    strong_occurrences: int = 5
    strong_p_value: float = 0.05
    confirmed_confidence: float = 0.50
    confirmed_occurrences: int = 3
    confirmed_p_value: float = 0.10
    investigating_confidence: float = 0.30
    investigating_occurrences: int = 2
    disproven_confidence: float = 0.15
    disproven_exposures: int = 5
    declining_confidence: float = 0.20
    declining_exposures: int = 3

    # Relationship
    increases_risk_lift: float = 1.2
    protective_lift: float = 0.8

    # Evidence summary clauses
    evidence_min_delay_hours: float = 0.5
    evidence_min_lift: float = 1.5
    significance_alpha: float = 0.05


DEFAULT_THRESHOLDS = DiscoveryThresholds()


def classify_status(
    confidence: float,
    occurrence_count: int,
    p_value: float,
    total_exposures: int,
    thresholds: DiscoveryThresholds = DEFAULT_THRESHOLDS
) -> DiscoveryStatus:
    """
    Classify current evidence into a lifecycle status.

    Supporting statuses count occurrences (appearances followed by a flare);
    the evidence-against statuses count exposures, since a factor seen six
    times without a single flare has plenty of evidence, all of it negative.
    Note: disproven and declining do not compare occurrence_count, unlike an
    occurrence-only ladder.

    Example:
        >>> classify_status(0.59, 3, 0.035, 4)
        'confirmed'
        >>> classify_status(0.02, 0, 1.0, 6)
        'disproven'
    """
    t = thresholds
    if confidence >= t.strong_confidence and occurrence_count >= t.strong_occurrences and p_value < t.strong_p_value:
        return "strong"
    if confidence >= t.confirmed_confidence and occurrence_count >= t.confirmed_occurrences and p_value < t.confirmed_p_value:
        return "confirmed"
    if confidence >= t.investigating_confidence and occurrence_count >= t.investigating_occurrences:
        return "investigating"
    if confidence < t.disproven_confidence and total_exposures >= t.disproven_exposures:
        return "disproven"
    if confidence < t.declining_confidence and total_exposures >= t.declining_exposures:
        return "declining"
    return "emerging"


def determine_relationship(
    category: str,
    lift: float,
    thresholds: DiscoveryThresholds = DEFAULT_THRESHOLDS
) -> Relationship:
    """Medications with low lift protect; high lift raises risk; the rest correlate"""
    if category == "medication" and lift < thresholds.protective_lift:
        return "decreases_risk"
    if lift > thresholds.increases_risk_lift:
        return "increases_risk"
    return "correlates_with"


def determine_discovery_type(
    category: str,
    lift: float,
    thresholds: DiscoveryThresholds = DEFAULT_THRESHOLDS
) -> DiscoveryType:
    if category in ("food", "lifestyle"):
        return "trigger"
    if category in ("pattern", "time"):
        return "pattern"
    if category == "medication" and lift < thresholds.protective_lift:
        return "protective_factor"
    return "correlation"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def format_delay(hours: float) -> str:
    """'45 minutes' under an hour, otherwise hours to one decimal"""
    if hours < 1:
        return f"{_round_half_up(hours * 60)} minutes"
    return f"{hours:.1f} hours"


def build_evidence_summary(
    outcome_count: int,
    total_appearances: int,
    avg_delay_hours: Optional[float],
    lift: float,
    p_value: float,
    thresholds: DiscoveryThresholds = DEFAULT_THRESHOLDS
) -> str:
    """
    Deterministic, human-readable explanation of a discovery's evidence.

    Example:
        >>> build_evidence_summary(3, 4, 2.25, 3.0, 0.035)
        '3 out of 4 times (75%) this occurred, a flare followed. Average delay: 2.2 hours. This is 3.0x more likely than random chance. Statistically significant (p<0.05).'
    """
    pct = _round_half_up(outcome_count / total_appearances * 100) if total_appearances else 0
    summary = f"{outcome_count} out of {total_appearances} times ({pct}%) this occurred, a flare followed."

    if avg_delay_hours is not None and avg_delay_hours > thresholds.evidence_min_delay_hours:
        summary += f" Average delay: {format_delay(avg_delay_hours)}."
    if lift > thresholds.evidence_min_lift:
        summary += f" This is {lift:.1f}x more likely than random chance."
    if is_statistically_significant(p_value, thresholds.significance_alpha):
        summary += f" Statistically significant (p<{thresholds.significance_alpha:g})."

    return summary
