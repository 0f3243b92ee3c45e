"""
Occurrence Aggregation

Folds the observation stream produced by factor extraction into one
FactorStatistics per factor key. The fold is order-independent: supporting
event ids keep the earliest events and delay samples are kept sorted, so any
permutation (or any sharding followed by merge) yields equal statistics.
"""

import logging
from bisect import insort
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from discovery_engine.services.factor_extraction import FactorObservation

logger = logging.getLogger(__name__)

# Maximum supporting event ids kept per factor
MAX_SUPPORTING_EVENTS = 20

SEVERE_OUTCOMES = {"moderate", "severe"}


@dataclass
class FactorStatistics:
    """Per-factor counts for one analysis run"""
    category: str
    total_appearances: int = 0
    outcome_count: int = 0
    severe_or_moderate_count: int = 0
    outcome_events: List[Tuple[datetime, str]] = field(default_factory=list)
    delay_samples: List[float] = field(default_factory=list)

    @property
    def outcome_event_ids(self) -> List[str]:
        return [event_id for _, event_id in self.outcome_events]

    @property
    def outcome_rate(self) -> float:
        if self.total_appearances == 0:
            return 0.0
        return self.outcome_count / self.total_appearances

    @property
    def avg_delay_hours(self) -> Optional[float]:
        if not self.delay_samples:
            return None
        return sum(self.delay_samples) / len(self.delay_samples)

    def add(self, observation: FactorObservation) -> None:
        """Fold one observation into the counts"""
        self.total_appearances += 1
        if observation.had_outcome:
            self.outcome_count += 1
            self._keep_event((observation.occurred_at, observation.event_id))
            if observation.delay_hours is not None and observation.delay_hours > 0:
                insort(self.delay_samples, observation.delay_hours)
        if observation.severity_of_outcome in SEVERE_OUTCOMES:
            self.severe_or_moderate_count += 1

    def merge(self, other: "FactorStatistics") -> "FactorStatistics":
        """Combine statistics folded from two disjoint observation streams"""
        combined = FactorStatistics(
            category=self.category,
            total_appearances=self.total_appearances + other.total_appearances,
            outcome_count=self.outcome_count + other.outcome_count,
            severe_or_moderate_count=self.severe_or_moderate_count + other.severe_or_moderate_count,
            delay_samples=sorted(self.delay_samples + other.delay_samples),
        )
        for entry in self.outcome_events + other.outcome_events:
            combined._keep_event(entry)
        return combined

    def _keep_event(self, entry: Tuple[datetime, str]) -> None:
        if len(self.outcome_events) >= MAX_SUPPORTING_EVENTS and entry >= self.outcome_events[-1]:
            return
        insort(self.outcome_events, entry)
        del self.outcome_events[MAX_SUPPORTING_EVENTS:]


def aggregate_observations(
    observations: Iterable[FactorObservation],
    initial: Optional[Dict[str, FactorStatistics]] = None
) -> Dict[str, FactorStatistics]:
    """
    Fold observations into per-factor statistics.

    Args:
        observations: Output of factor extraction
        initial: Statistics to continue folding into (left untouched; a copy is returned)

    Returns:
        Mapping of factor key -> FactorStatistics

    Example:
        >>> stats = aggregate_observations(observations)
        >>> stats["food:eggs"].outcome_count
        3
    """
    result: Dict[str, FactorStatistics] = {}
    if initial:
        for key, stats in initial.items():
            result[key] = stats.merge(FactorStatistics(category=stats.category))

    for observation in observations:
        stats = result.get(observation.factor_key)
        if stats is None:
            stats = result[observation.factor_key] = FactorStatistics(category=observation.category)
        stats.add(observation)

    logger.debug(f"Aggregated observations into {len(result)} factors")
    return result
