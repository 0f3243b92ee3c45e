"""
Unit tests for the discovery engine service

End-to-end runs of the analysis pipeline against the in-memory repository:
thresholds, lifecycle retirement, idempotent re-runs, surfacing and store
failures.
"""
import asyncio
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import psycopg

from discovery_engine.exceptions import QueryError, StoreUnavailableError, ValidationError
from discovery_engine.models.discovery import Discovery
from discovery_engine.services.aggregation import FactorStatistics
from discovery_engine.services.discovery_engine import (
    AnalysisResult,
    DiscoveryEngine,
    select_tracked,
)
from discovery_engine.services.discovery_repository import InMemoryDiscoveryRepository
from discovery_engine.services.statistical_analysis import AnalysisBaseline

USER = "user-123"
RUN_TIME = datetime(2024, 5, 1, tzinfo=timezone.utc)


def find(repository, factor_a, category=None):
    matches = [
        d for d in repository.all(USER)
        if d.factor_a == factor_a and (category is None or d.category == category)
    ]
    assert len(matches) <= 1
    return matches[0] if matches else None


class TestInsufficientData:
    """Runs with too little history"""

    @pytest.mark.asyncio
    async def test_fewer_than_five_events(self, make_engine, make_event, repository):
        engine = make_engine([make_event(days=i) for i in range(4)])

        result = await engine.run_deep_analysis(USER)

        assert result.total_analyzed == 4
        assert result.discoveries_tracked == 0
        assert result.new_discoveries == []
        assert result.message == "Need at least 5 entries for analysis"
        assert repository.all() == []

    @pytest.mark.asyncio
    async def test_event_source_called_with_limit(self, make_engine, make_event):
        engine = make_engine([], event_limit=250)

        await engine.run_deep_analysis(USER)

        engine.event_source.assert_awaited_once_with(USER, 250)


class TestDeepAnalysisScenarios:
    """Pipeline scenarios from a single user's history"""

    @pytest.mark.asyncio
    async def test_single_appearance_creates_no_discovery(self, make_engine, make_event, repository):
        """One eggs meal followed by a flare is below the minimum occurrence threshold"""
        events = [
            make_event(kind="meal", note="ate eggs"),
            make_event(hours=2, kind="flare", severity="moderate"),
        ]
        events += [make_event(days=day, kind="wellness") for day in range(5, 13)]

        result = await make_engine(events).run_deep_analysis(USER)

        assert result.total_analyzed == 10
        assert find(repository, "eggs") is None

    @pytest.mark.asyncio
    async def test_recurring_trigger_is_confirmed(self, make_engine, eggs_history, repository):
        """Eggs before 3 of 4 flares at a 25% baseline"""
        result = await make_engine(eggs_history).run_deep_analysis(USER)

        eggs = find(repository, "eggs", "food")
        assert eggs is not None
        assert eggs.status == "confirmed"
        assert eggs.confidence == pytest.approx(0.5926, abs=1e-4)
        assert eggs.lift == pytest.approx(3.0)
        assert eggs.p_value < 0.05
        assert eggs.occurrence_count == 3
        assert eggs.total_exposures == 4
        assert eggs.avg_delay_hours == pytest.approx(2.0)
        assert eggs.discovery_type == "trigger"
        assert eggs.relationship == "increases_risk"
        assert eggs.factor_b is None
        assert len(eggs.supporting_event_ids) == 3
        assert eggs.evidence_summary == (
            "3 out of 4 times (75%) this occurred, a flare followed. "
            "Average delay: 2.0 hours. "
            "This is 3.0x more likely than random chance. "
            "Statistically significant (p<0.05)."
        )
        assert eggs.surfaced_at is None
        assert result.total_analyzed == 20
        assert result.discoveries_tracked == len(repository.all(USER))

    @pytest.mark.asyncio
    async def test_supporting_events_are_meal_events(self, make_engine, eggs_history, repository):
        await make_engine(eggs_history).run_deep_analysis(USER)

        meal_ids = {e.id for e in eggs_history if e.kind == "meal" and e.occurred_at.day in (4, 7, 10)}
        assert set(find(repository, "eggs").supporting_event_ids) == meal_ids

    @pytest.mark.asyncio
    async def test_factor_without_outcomes_retires_existing_discovery(self, make_engine, make_event, repository):
        """A factor seen 6 times with no flare becomes disproven and stops surfacing"""
        existing = Discovery(
            user_id=USER,
            discovery_type="trigger",
            category="lifestyle",
            factor_a="stress",
            relationship="increases_risk",
            occurrence_count=2,
            total_exposures=2,
            confidence=0.6,
            lift=2.0,
            p_value=0.04,
            evidence_summary="2 out of 2 times (100%) this occurred, a flare followed.",
            status="confirmed",
            last_evidence_at=RUN_TIME,
        )
        repository.add(existing)
        events = [make_event(days=day, kind="wellness", triggers=["stress"]) for day in range(6)]
        events += [make_event(days=20, kind="flare"), make_event(days=22, kind="flare")]
        engine = make_engine(events)

        await engine.run_deep_analysis(USER)

        stress = find(repository, "stress", "lifestyle")
        assert stress.id == existing.id
        assert stress.status == "disproven"
        assert stress.occurrence_count == 0
        assert stress.total_exposures == 6
        assert stress.last_evidence_at == RUN_TIME
        assert stress.id not in [d.id for d in await engine.get_unsurfaced(USER)]
        assert stress.id not in [d.id for d in await engine.get_discoveries(USER, min_confidence=0.0)]
        assert stress.id in [d.id for d in await engine.get_discoveries(USER, min_confidence=0.0, status="disproven")]

    @pytest.mark.asyncio
    async def test_disproven_factor_never_created(self, make_engine, make_event, repository):
        events = [make_event(days=day, kind="wellness", triggers=["stress"]) for day in range(6)]
        events += [make_event(days=20, kind="flare"), make_event(days=22, kind="flare")]

        await make_engine(events).run_deep_analysis(USER)

        assert find(repository, "stress") is None

    @pytest.mark.asyncio
    async def test_reordered_symptoms_form_one_discovery(self, make_engine, make_event, repository):
        events = [
            make_event(kind="flare", symptoms=["headache", "nausea"]),
            make_event(days=3, kind="flare", symptoms=["Nausea", "headache"]),
        ]
        events += [make_event(days=day, kind="wellness") for day in range(6, 10)]

        await make_engine(events).run_deep_analysis(USER)

        pairs = [d for d in repository.all(USER) if d.category == "pattern"]
        assert len(pairs) == 1
        assert pairs[0].factor_a == "headache + nausea"
        assert pairs[0].discovery_type == "pattern"
        assert pairs[0].occurrence_count == 2
        assert pairs[0].avg_delay_hours is None

    @pytest.mark.asyncio
    async def test_scores_stay_in_bounds(self, make_engine, eggs_history, repository):
        await make_engine(eggs_history).run_deep_analysis(USER)

        for discovery in repository.all(USER):
            assert 0.0 <= discovery.confidence <= 0.99
            assert discovery.lift >= 0.0
            assert 0.0 < discovery.p_value <= 1.0
            assert discovery.occurrence_count <= discovery.total_exposures

    @pytest.mark.asyncio
    async def test_invalid_timezone_falls_back_to_utc(self, make_engine, eggs_history, repository):
        result = await make_engine(eggs_history).run_deep_analysis(USER, "Not/AZone")

        assert result.total_analyzed == 20
        assert find(repository, "tod:morning", "time") is not None


class TestRerunsAndSurfacing:
    """Idempotence and surfacing across runs"""

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, make_engine, eggs_history, repository):
        engine = make_engine(eggs_history)
        volatile = {"last_evidence_at", "updated_at"}

        await engine.run_deep_analysis(USER)
        first = {d.id: d.model_dump(exclude=volatile) for d in repository.all(USER)}
        await engine.run_deep_analysis(USER)
        second = {d.id: d.model_dump(exclude=volatile) for d in repository.all(USER)}

        assert first == second

    @pytest.mark.asyncio
    async def test_rerun_preserves_surfacing_and_acknowledgment(self, make_engine, eggs_history, repository):
        engine = make_engine(eggs_history)
        await engine.run_deep_analysis(USER)
        eggs = find(repository, "eggs")

        await engine.mark_surfaced(USER, [eggs.id])
        await engine.acknowledge(USER, eggs.id)
        marked = find(repository, "eggs")

        result = await engine.run_deep_analysis(USER)
        rerun = find(repository, "eggs")

        assert rerun.id == eggs.id
        assert rerun.surfaced_at == marked.surfaced_at is not None
        assert rerun.acknowledged_at == marked.acknowledged_at is not None
        assert eggs.id not in [d.id for d in result.new_discoveries]

    @pytest.mark.asyncio
    async def test_identities_unique_after_reruns(self, make_engine, eggs_history, repository):
        engine = make_engine(eggs_history)
        for _ in range(3):
            await engine.run_deep_analysis(USER)

        identities = [d.identity for d in repository.all(USER)]
        assert len(identities) == len(set(identities))

    @pytest.mark.asyncio
    async def test_top_discoveries_are_stored_records(self, make_engine, eggs_history, repository):
        """A re-run reports the stored ids and surfacing state, not fresh copies"""
        engine = make_engine(eggs_history)
        await engine.run_deep_analysis(USER)
        eggs_id = find(repository, "eggs", "food").id
        await engine.mark_surfaced(USER, [eggs_id])

        result = await engine.run_deep_analysis(USER)

        stored = {d.id: d for d in repository.all(USER)}
        assert result.top_discoveries
        for discovery in result.top_discoveries:
            assert discovery.id in stored
            assert discovery.surfaced_at == stored[discovery.id].surfaced_at
        eggs = [d for d in result.top_discoveries if d.factor_a == "eggs"]
        assert eggs[0].id == eggs_id
        assert eggs[0].surfaced_at is not None

    @pytest.mark.asyncio
    async def test_top_discoveries_keep_interest_order(self, make_engine, eggs_history):
        result = await make_engine(eggs_history).run_deep_analysis(USER)

        scores = [d.interest_score for d in result.top_discoveries]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_mark_surfaced_then_get_unsurfaced(self, make_engine, eggs_history):
        engine = make_engine(eggs_history)
        result = await engine.run_deep_analysis(USER)
        shown = [d.id for d in result.new_discoveries[:2]]

        touched = await engine.mark_surfaced(USER, shown)
        remaining = [d.id for d in await engine.get_unsurfaced(USER)]

        assert touched == len(shown)
        assert not set(shown) & set(remaining)

    @pytest.mark.asyncio
    async def test_new_discoveries_are_unsurfaced_and_confident(self, make_engine, eggs_history):
        result = await make_engine(eggs_history).run_deep_analysis(USER)

        assert 0 < len(result.new_discoveries) <= 5
        confidences = [d.confidence for d in result.new_discoveries]
        assert confidences == sorted(confidences, reverse=True)
        assert all(c >= 0.3 for c in confidences)
        assert len(result.top_discoveries) <= 10

    @pytest.mark.asyncio
    async def test_mark_surfaced_empty_list(self, make_engine):
        assert await make_engine([]).mark_surfaced(USER, []) == 0

    @pytest.mark.asyncio
    async def test_acknowledge_unknown(self, make_engine):
        assert await make_engine([]).acknowledge(USER, "missing") is False


class TestValidation:
    """Tests for retrieval input validation"""

    @pytest.mark.asyncio
    async def test_unknown_status(self, make_engine):
        with pytest.raises(ValidationError) as exc_info:
            await make_engine([]).get_discoveries(USER, status="maybe")
        assert exc_info.value.field == "status"

    @pytest.mark.asyncio
    async def test_confidence_out_of_range(self, make_engine):
        with pytest.raises(ValidationError):
            await make_engine([]).get_discoveries(USER, min_confidence=1.5)

    @pytest.mark.asyncio
    async def test_non_positive_limit(self, make_engine):
        with pytest.raises(ValidationError):
            await make_engine([]).get_discoveries(USER, limit=0)


class TestStoreFailures:
    """Store errors surface as retryable errors and write nothing"""

    @pytest.mark.asyncio
    async def test_event_store_timeout(self, repository):
        async def slow_source(user_id, limit):
            await asyncio.sleep(5)
            return []

        engine = DiscoveryEngine(event_source=slow_source, repository=repository, store_timeout=0.01)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await engine.run_deep_analysis(USER)

        assert exc_info.value.retryable is True
        assert exc_info.value.store == "events"
        assert repository.all() == []

    @pytest.mark.asyncio
    async def test_discovery_store_connection_failure(self, eggs_history):
        repository = AsyncMock(spec=InMemoryDiscoveryRepository)
        repository.merge.side_effect = psycopg.OperationalError("connection refused")
        engine = DiscoveryEngine(event_source=AsyncMock(return_value=eggs_history), repository=repository)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await engine.run_deep_analysis(USER)

        assert exc_info.value.store == "discoveries"
        assert exc_info.value.to_dict()["retryable"] is True
        repository.list_unsurfaced.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_query_failure_is_not_retryable(self):
        repository = AsyncMock(spec=InMemoryDiscoveryRepository)
        repository.list_unsurfaced.side_effect = psycopg.errors.UndefinedTable("relation does not exist")
        engine = DiscoveryEngine(event_source=AsyncMock(return_value=[]), repository=repository)

        with pytest.raises(QueryError) as exc_info:
            await engine.get_unsurfaced(USER)

        assert exc_info.value.retryable is False


class TestSelectTracked:
    """Tests for select_tracked()"""

    def test_caps_tracked_and_refreshes_the_rest(self):
        statistics = {
            f"food:item{i}": FactorStatistics(category="food", total_appearances=4, outcome_count=min(i, 4))
            for i in range(1, 5)
        }
        baseline = AnalysisBaseline(total_events=20, flare_count=5)

        tracked, refresh_only = select_tracked(USER, statistics, baseline, RUN_TIME, max_tracked=2)

        assert [d.factor_a for d in tracked] == ["item4", "item3"]
        assert {d.factor_a for d in refresh_only} == {"item1", "item2"}

    def test_single_appearance_is_refresh_only(self):
        statistics = {"food:eggs": FactorStatistics(category="food", total_appearances=1, outcome_count=1)}
        baseline = AnalysisBaseline(total_events=10, flare_count=1)

        tracked, refresh_only = select_tracked(USER, statistics, baseline, RUN_TIME)

        assert tracked == []
        assert [d.factor_a for d in refresh_only] == ["eggs"]


def test_analysis_result_to_dict():
    result = AnalysisResult(total_analyzed=3, message="Need at least 5 entries for analysis")

    assert result.to_dict() == {
        "total_analyzed": 3,
        "discoveries_tracked": 0,
        "new_discoveries": [],
        "top_discoveries": [],
        "message": "Need at least 5 entries for analysis",
    }
