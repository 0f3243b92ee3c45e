"""
Discovery Engine Service

Orchestrates deep analysis of one user's journal:

    list events -> extract factors -> aggregate -> score -> classify
                -> merge into the discovery repository -> unsurfaced discoveries

and exposes the retrieval / surfacing / acknowledgment paths used by the API.

No writes happen before the single merge at the end of a run, so a failed or
cancelled run leaves storage untouched. Calls to the event and discovery
stores are bounded by a request-level timeout; failures surface as
StoreUnavailableError (retryable) or QueryError.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from discovery_engine.config import (
    EVENT_FETCH_LIMIT,
    LOOKAHEAD_WINDOW_HOURS,
    MAX_TRACKED_DISCOVERIES,
    MIN_EVENTS_FOR_ANALYSIS,
    STORE_TIMEOUT_SECONDS,
)
from discovery_engine.exceptions import (
    DiscoveryEngineError,
    ValidationError,
    wrap_external_exception,
)
from discovery_engine.models.discovery import Discovery, TERMINAL_STATUS, VALID_STATUSES
from discovery_engine.models.event import HealthEvent
from discovery_engine.observability.metrics import (
    analysis_duration_seconds,
    analysis_runs_total,
    discoveries_tracked_total,
    factors_scored_total,
    record_store_error,
)
from discovery_engine.services.aggregation import FactorStatistics, aggregate_observations
from discovery_engine.services.discovery_repository import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_LIST_MIN_CONFIDENCE,
    DiscoveryRepository,
    PostgresDiscoveryRepository,
)
from discovery_engine.services.factor_extraction import FactorExtractor, FoodExtractor
from discovery_engine.services.health_events import list_events
from discovery_engine.services.lifecycle import (
    DEFAULT_THRESHOLDS,
    DiscoveryThresholds,
    build_evidence_summary,
    classify_status,
    determine_discovery_type,
    determine_relationship,
)
from discovery_engine.services.statistical_analysis import (
    AnalysisBaseline,
    FactorScore,
    is_interesting,
    score_factor,
)

logger = logging.getLogger(__name__)

# Number of computed discoveries echoed back by run_deep_analysis
TOP_DISCOVERIES_LIMIT = 10

EventSource = Callable[[str, int], Awaitable[List[HealthEvent]]]


@dataclass
class AnalysisResult:
    """Outcome of one deep analysis run"""
    total_analyzed: int
    discoveries_tracked: int = 0
    new_discoveries: List[Discovery] = field(default_factory=list)
    top_discoveries: List[Discovery] = field(default_factory=list)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "total_analyzed": self.total_analyzed,
            "discoveries_tracked": self.discoveries_tracked,
            "new_discoveries": [d.model_dump(mode="json") for d in self.new_discoveries],
            "top_discoveries": [d.model_dump(mode="json") for d in self.top_discoveries],
        }
        if self.message:
            result["message"] = self.message
        return result


def stored_in_order(tracked: Sequence[Discovery], stored: Sequence[Discovery]) -> List[Discovery]:
    """Stored records for the tracked discoveries, in tracked order"""
    by_identity = {d.identity: d for d in stored}
    return [by_identity[d.identity] for d in tracked if d.identity in by_identity]


def build_discovery(
    user_id: str,
    factor_key: str,
    stats: FactorStatistics,
    score: FactorScore,
    now: datetime,
    thresholds: DiscoveryThresholds = DEFAULT_THRESHOLDS
) -> Discovery:
    """
    Classify one scored factor into a Discovery record.

    factor_a is the factor key without its prefix ('food:eggs' -> 'eggs');
    factor_b is always None.
    """
    return Discovery(
        user_id=user_id,
        discovery_type=determine_discovery_type(stats.category, score.lift, thresholds),
        category=stats.category,
        factor_a=factor_key.split(":", 1)[1],
        factor_b=None,
        relationship=determine_relationship(stats.category, score.lift, thresholds),
        occurrence_count=stats.outcome_count,
        total_exposures=stats.total_appearances,
        confidence=score.confidence,
        lift=score.lift,
        avg_delay_hours=stats.avg_delay_hours,
        p_value=score.p_value,
        supporting_event_ids=stats.outcome_event_ids,
        evidence_summary=build_evidence_summary(
            stats.outcome_count,
            stats.total_appearances,
            stats.avg_delay_hours,
            score.lift,
            score.p_value,
            thresholds
        ),
        status=classify_status(
            score.confidence,
            stats.outcome_count,
            score.p_value,
            stats.total_appearances,
            thresholds
        ),
        last_evidence_at=now,
    )


def select_tracked(
    user_id: str,
    statistics: Dict[str, FactorStatistics],
    baseline: AnalysisBaseline,
    now: datetime,
    max_tracked: int = MAX_TRACKED_DISCOVERIES,
    thresholds: DiscoveryThresholds = DEFAULT_THRESHOLDS
) -> Tuple[List[Discovery], List[Discovery]]:
    """
    Split scored factors into tracked and refresh-only discoveries.

    Tracked: interesting, not disproven, top `max_tracked` by
    confidence x max(lift, 1). Everything else may only refresh a discovery
    that already exists (so a factor can retire as disproven, but is never
    created that way).

    Returns:
        (tracked, refresh_only)
    """
    candidates: List[Discovery] = []
    refresh_only: List[Discovery] = []

    for factor_key, stats in statistics.items():
        score = score_factor(stats, baseline)
        discovery = build_discovery(user_id, factor_key, stats, score, now, thresholds)
        score_ok = is_interesting(
            stats,
            score,
            min_total_appearances=thresholds.min_total_appearances,
            min_lift=thresholds.min_lift,
            min_confidence=thresholds.min_confidence
        )
        if score_ok and discovery.status != TERMINAL_STATUS:
            candidates.append(discovery)
        else:
            refresh_only.append(discovery)

    candidates.sort(key=lambda d: (-d.interest_score, d.category, d.factor_a))
    tracked = candidates[:max_tracked]
    refresh_only.extend(candidates[max_tracked:])
    return tracked, refresh_only


class DiscoveryEngine:
    """
    Discovery pipeline and retrieval operations for one deployment.

    Args:
        event_source: Async callable (user_id, limit) -> events
        repository: Discovery storage backend
        food_extractor: Strategy for food mentions in notes
        thresholds: Interest filter and classifier thresholds
        lookahead_window_hours: Outcome attribution window
        max_tracked: Discoveries upserted per run
        min_events: Events required before analysis runs
        store_timeout: Seconds allowed for each store call
    """

    def __init__(
        self,
        event_source: EventSource = list_events,
        repository: Optional[DiscoveryRepository] = None,
        food_extractor: Optional[FoodExtractor] = None,
        thresholds: DiscoveryThresholds = DEFAULT_THRESHOLDS,
        lookahead_window_hours: float = LOOKAHEAD_WINDOW_HOURS,
        max_tracked: int = MAX_TRACKED_DISCOVERIES,
        min_events: int = MIN_EVENTS_FOR_ANALYSIS,
        event_limit: int = EVENT_FETCH_LIMIT,
        store_timeout: float = STORE_TIMEOUT_SECONDS
    ):
        self.event_source = event_source
        self.repository = repository or PostgresDiscoveryRepository()
        self.extractor = FactorExtractor(lookahead_window_hours, food_extractor)
        self.thresholds = thresholds
        self.max_tracked = max_tracked
        self.min_events = min_events
        self.event_limit = event_limit
        self.store_timeout = store_timeout

    async def _call_store(self, operation: str, user_id: str, store: str, awaitable: Awaitable[Any]) -> Any:
        """Await a store call under the request timeout, mapping failures into the error hierarchy"""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.store_timeout)
        except DiscoveryEngineError:
            raise
        except Exception as e:
            record_store_error(operation, e)
            raise wrap_external_exception(e, operation=operation, user_id=user_id, store=store) from e

    async def run_deep_analysis(self, user_id: str, timezone_name: Optional[str] = "UTC") -> AnalysisResult:
        """
        Analyze a user's full history and merge the findings.

        Args:
            user_id: Journal owner
            timezone_name: IANA timezone for time-of-day / weekday factors
                           (unknown names fall back to UTC)

        Returns:
            AnalysisResult; with fewer than `min_events` events nothing is
            written and the result carries an explanatory message

        Raises:
            StoreUnavailableError: Event or discovery store unreachable / timed out
            QueryError: Store rejected a query
        """
        with analysis_duration_seconds.time():
            try:
                result = await self._run(user_id, timezone_name)
            except Exception:
                analysis_runs_total.labels(outcome="error").inc()
                raise

        analysis_runs_total.labels(outcome="insufficient_data" if result.message else "completed").inc()
        return result

    async def _run(self, user_id: str, timezone_name: Optional[str]) -> AnalysisResult:
        events = await self._call_store(
            "list_events", user_id, "events", self.event_source(user_id, self.event_limit)
        )

        if len(events) < self.min_events:
            logger.info(f"Not enough events for user {user_id}: {len(events)} < {self.min_events}")
            return AnalysisResult(
                total_analyzed=len(events),
                message=f"Need at least {self.min_events} entries for analysis",
            )

        logger.info(f"Running deep analysis for user {user_id} on {len(events)} events")

        observations = self.extractor.extract(events, timezone_name)
        statistics = aggregate_observations(observations)
        baseline = AnalysisBaseline(
            total_events=len(events),
            flare_count=sum(1 for e in events if e.is_flare),
        )
        factors_scored_total.inc(len(statistics))

        now = datetime.now(timezone.utc)
        tracked, refresh_only = select_tracked(
            user_id, statistics, baseline, now, self.max_tracked, self.thresholds
        )

        merge = await self._call_store(
            "merge_discoveries", user_id, "discoveries",
            self.repository.merge(user_id, tracked, refresh_only, now)
        )
        discoveries_tracked_total.labels(action="inserted").inc(merge.inserted)
        discoveries_tracked_total.labels(action="updated").inc(merge.updated)

        unsurfaced = await self._call_store(
            "list_unsurfaced", user_id, "discoveries", self.repository.list_unsurfaced(user_id)
        )

        logger.info(
            f"Deep analysis for user {user_id}: {len(statistics)} factors, "
            f"{len(tracked)} tracked ({merge.inserted} new), {len(unsurfaced)} unsurfaced"
        )
        return AnalysisResult(
            total_analyzed=len(events),
            discoveries_tracked=len(tracked),
            new_discoveries=unsurfaced,
            top_discoveries=stored_in_order(tracked, merge.records)[:TOP_DISCOVERIES_LIMIT],
        )

    async def get_discoveries(
        self,
        user_id: str,
        min_confidence: float = DEFAULT_LIST_MIN_CONFIDENCE,
        status: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> List[Discovery]:
        """List discoveries above a confidence floor, optionally by status"""
        if status is not None and status not in VALID_STATUSES:
            raise ValidationError(
                message=f"Unknown status '{status}'",
                field="status",
                value=status,
                user_id=user_id,
                operation="get_discoveries"
            )
        if not 0.0 <= min_confidence <= 1.0:
            raise ValidationError(
                message="min_confidence must be between 0 and 1",
                field="min_confidence",
                value=min_confidence,
                user_id=user_id,
                operation="get_discoveries"
            )
        if limit <= 0:
            raise ValidationError(
                message="limit must be positive",
                field="limit",
                value=limit,
                user_id=user_id,
                operation="get_discoveries"
            )

        return await self._call_store(
            "get_discoveries", user_id, "discoveries",
            self.repository.list_discoveries(user_id, min_confidence, status, limit)
        )

    async def get_unsurfaced(self, user_id: str) -> List[Discovery]:
        return await self._call_store(
            "get_unsurfaced", user_id, "discoveries", self.repository.list_unsurfaced(user_id)
        )

    async def get_high_confidence(self, user_id: str) -> List[Discovery]:
        return await self._call_store(
            "get_high_confidence", user_id, "discoveries", self.repository.list_high_confidence(user_id)
        )

    async def mark_surfaced(self, user_id: str, discovery_ids: Sequence[str]) -> int:
        """Record that discoveries were shown; already-surfaced ones keep their timestamp"""
        if not discovery_ids:
            return 0
        return await self._call_store(
            "mark_surfaced", user_id, "discoveries", self.repository.mark_surfaced(user_id, discovery_ids)
        )

    async def acknowledge(self, user_id: str, discovery_id: str) -> bool:
        """Record that the user acknowledged a discovery; False when it does not exist"""
        return await self._call_store(
            "acknowledge", user_id, "discoveries", self.repository.acknowledge(user_id, discovery_id)
        )
