"""
Discovery Repository

Merges each analysis run's discoveries into persistent storage and serves the
read/update paths (unsurfaced, general listing, high-confidence, mark
surfaced, acknowledge).

Merge semantics are shared by every backend through plan_merge():
- Identity is (user_id, category, factor_a, factor_b)
- Existing records get their mutable fields replaced in place; id,
  surfaced_at, acknowledged_at and created_at are never touched
- New identities are inserted unsurfaced and unacknowledged
- Refresh-only discoveries update existing records but never insert
- Several records sharing one identity (concurrent writers) resolve to the
  most recently evidenced one, and the anomaly is logged
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from discovery_engine.config import UNSURFACED_LIMIT, UNSURFACED_MIN_CONFIDENCE
from discovery_engine.db.queries import discoveries as discovery_queries
from discovery_engine.models.discovery import (
    Discovery,
    DiscoveryIdentity,
    MUTABLE_FIELDS,
)

logger = logging.getLogger(__name__)

DEFAULT_LIST_MIN_CONFIDENCE = 0.2
DEFAULT_LIST_LIMIT = 30
HIGH_CONFIDENCE_MIN = 0.4
HIGH_CONFIDENCE_STATUSES = ("confirmed", "strong")
HIGH_CONFIDENCE_LIMIT = 20


@dataclass
class MergePlan:
    """Writes needed to merge one run into storage"""
    updates: List[Discovery] = field(default_factory=list)
    inserts: List[Discovery] = field(default_factory=list)
    skipped: int = 0


@dataclass(frozen=True)
class MergeResult:
    """Counts of a merge plus the stored state of every record it wrote"""
    inserted: int
    updated: int
    skipped: int
    records: List[Discovery] = field(default_factory=list)

    @classmethod
    def from_plan(cls, plan: MergePlan) -> "MergeResult":
        return cls(
            inserted=len(plan.inserts),
            updated=len(plan.updates),
            skipped=plan.skipped,
            records=plan.updates + plan.inserts,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def select_identity_match(candidates: Sequence[Discovery]) -> Optional[Discovery]:
    """
    Pick the record to update when one or more records share an identity.

    Deterministic: most recent last_evidence_at, then most recent updated_at,
    then highest id.
    """
    if not candidates:
        return None
    if len(candidates) > 1:
        identity = candidates[0].identity
        logger.warning(
            f"Found {len(candidates)} discoveries for identity {identity}; "
            f"updating the most recently evidenced one"
        )
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return max(
        candidates,
        key=lambda d: (d.last_evidence_at, d.updated_at or epoch, d.id)
    )


def apply_update(existing: Discovery, computed: Discovery, now: datetime) -> Discovery:
    """Copy the mutable fields of a fresh computation onto an existing record"""
    changes = {name: getattr(computed, name) for name in MUTABLE_FIELDS}
    if computed.occurrence_count == 0:
        # No supporting evidence this run
        changes["last_evidence_at"] = existing.last_evidence_at
    changes["updated_at"] = now
    return existing.model_copy(update=changes)


def new_record(computed: Discovery, now: datetime) -> Discovery:
    return computed.model_copy(update={
        "surfaced_at": None,
        "acknowledged_at": None,
        "created_at": now,
        "updated_at": now,
    })


def plan_merge(
    existing: Iterable[Discovery],
    tracked: Sequence[Discovery],
    refresh_only: Sequence[Discovery] = (),
    now: Optional[datetime] = None
) -> MergePlan:
    """
    Decide which records to update and which to insert.

    Args:
        existing: Records currently stored for the user
        tracked: Discoveries to upsert
        refresh_only: Discoveries that may only update existing records
        now: Merge timestamp

    Returns:
        MergePlan with the full post-merge state of every touched record
    """
    now = now or _utcnow()
    by_identity: Dict[DiscoveryIdentity, List[Discovery]] = {}
    for record in existing:
        by_identity.setdefault(record.identity, []).append(record)

    plan = MergePlan()
    seen: set = set()
    for computed, may_insert in [(d, True) for d in tracked] + [(d, False) for d in refresh_only]:
        if computed.identity in seen:
            plan.skipped += 1
            continue
        seen.add(computed.identity)

        match = select_identity_match(by_identity.get(computed.identity, []))
        if match is not None:
            plan.updates.append(apply_update(match, computed, now))
        elif may_insert:
            plan.inserts.append(new_record(computed, now))
        else:
            plan.skipped += 1

    return plan


def _by_confidence(discoveries: Iterable[Discovery]) -> List[Discovery]:
    return sorted(discoveries, key=lambda d: (-d.confidence, d.category, d.factor_a))


class DiscoveryRepository(ABC):
    """Storage for discoveries"""

    @abstractmethod
    async def merge(
        self,
        user_id: str,
        tracked: Sequence[Discovery],
        refresh_only: Sequence[Discovery] = (),
        now: Optional[datetime] = None
    ) -> MergeResult:
        """Upsert a run's discoveries atomically; the result carries the stored records"""

    @abstractmethod
    async def list_unsurfaced(
        self,
        user_id: str,
        min_confidence: float = UNSURFACED_MIN_CONFIDENCE,
        limit: int = UNSURFACED_LIMIT
    ) -> List[Discovery]:
        """Discoveries not yet shown to the user, most confident first"""

    @abstractmethod
    async def list_discoveries(
        self,
        user_id: str,
        min_confidence: float = DEFAULT_LIST_MIN_CONFIDENCE,
        status: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> List[Discovery]:
        """All discoveries above a confidence floor; disproven ones only on request"""

    @abstractmethod
    async def list_high_confidence(
        self,
        user_id: str,
        min_confidence: float = HIGH_CONFIDENCE_MIN,
        limit: int = HIGH_CONFIDENCE_LIMIT
    ) -> List[Discovery]:
        """Confirmed and strong discoveries"""

    @abstractmethod
    async def mark_surfaced(
        self,
        user_id: str,
        discovery_ids: Sequence[str],
        now: Optional[datetime] = None
    ) -> int:
        """Set surfaced_at where unset; returns number of records touched"""

    @abstractmethod
    async def acknowledge(
        self,
        user_id: str,
        discovery_id: str,
        now: Optional[datetime] = None
    ) -> bool:
        """Set acknowledged_at once; returns False when the discovery is unknown"""


class InMemoryDiscoveryRepository(DiscoveryRepository):
    """
    Process-local repository.

    Used by tests and local development. Merges are serialized with a lock,
    so overlapping runs for one user behave like the upsert in PostgreSQL.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Discovery] = {}
        self._lock = asyncio.Lock()

    def _user_records(self, user_id: str) -> List[Discovery]:
        return [d for d in self._records.values() if d.user_id == user_id]

    def add(self, discovery: Discovery) -> None:
        """Store a record as-is (fixtures, migrations)"""
        self._records[discovery.id] = discovery

    def all(self, user_id: Optional[str] = None) -> List[Discovery]:
        if user_id is None:
            return list(self._records.values())
        return self._user_records(user_id)

    async def merge(self, user_id, tracked, refresh_only=(), now=None) -> MergeResult:
        async with self._lock:
            plan = plan_merge(self._user_records(user_id), tracked, refresh_only, now)
            for record in plan.updates + plan.inserts:
                self._records[record.id] = record
        logger.info(
            f"Merged discoveries for user {user_id}: "
            f"{len(plan.inserts)} inserted, {len(plan.updates)} updated, {plan.skipped} skipped"
        )
        return MergeResult.from_plan(plan)

    async def list_unsurfaced(self, user_id, min_confidence=UNSURFACED_MIN_CONFIDENCE, limit=UNSURFACED_LIMIT):
        matches = [
            d for d in self._user_records(user_id)
            if d.surfaced_at is None and d.confidence >= min_confidence and not d.is_retired
        ]
        return _by_confidence(matches)[:limit]

    async def list_discoveries(self, user_id, min_confidence=DEFAULT_LIST_MIN_CONFIDENCE, status=None, limit=DEFAULT_LIST_LIMIT):
        matches = [d for d in self._user_records(user_id) if d.confidence >= min_confidence]
        if status is not None:
            matches = [d for d in matches if d.status == status]
        else:
            matches = [d for d in matches if not d.is_retired]
        return _by_confidence(matches)[:limit]

    async def list_high_confidence(self, user_id, min_confidence=HIGH_CONFIDENCE_MIN, limit=HIGH_CONFIDENCE_LIMIT):
        matches = [
            d for d in self._user_records(user_id)
            if d.confidence >= min_confidence and d.status in HIGH_CONFIDENCE_STATUSES
        ]
        return _by_confidence(matches)[:limit]

    async def mark_surfaced(self, user_id, discovery_ids, now=None) -> int:
        now = now or _utcnow()
        touched = 0
        for discovery_id in set(discovery_ids):
            record = self._records.get(discovery_id)
            if record is None or record.user_id != user_id or record.surfaced_at is not None:
                continue
            self._records[discovery_id] = record.model_copy(update={"surfaced_at": now, "updated_at": now})
            touched += 1
        return touched

    async def acknowledge(self, user_id, discovery_id, now=None) -> bool:
        record = self._records.get(discovery_id)
        if record is None or record.user_id != user_id:
            return False
        if record.acknowledged_at is None:
            now = now or _utcnow()
            self._records[discovery_id] = record.model_copy(update={"acknowledged_at": now, "updated_at": now})
        return True


class PostgresDiscoveryRepository(DiscoveryRepository):
    """Repository backed by the discoveries table"""

    async def merge(self, user_id, tracked, refresh_only=(), now=None) -> MergeResult:
        now = now or _utcnow()
        plan = await discovery_queries.merge_discoveries(
            user_id,
            lambda existing: plan_merge(existing, tracked, refresh_only, now)
        )
        return MergeResult.from_plan(plan)

    async def list_unsurfaced(self, user_id, min_confidence=UNSURFACED_MIN_CONFIDENCE, limit=UNSURFACED_LIMIT):
        return await discovery_queries.get_unsurfaced_discoveries(user_id, min_confidence, limit)

    async def list_discoveries(self, user_id, min_confidence=DEFAULT_LIST_MIN_CONFIDENCE, status=None, limit=DEFAULT_LIST_LIMIT):
        return await discovery_queries.get_discoveries(user_id, min_confidence, status, limit)

    async def list_high_confidence(self, user_id, min_confidence=HIGH_CONFIDENCE_MIN, limit=HIGH_CONFIDENCE_LIMIT):
        return await discovery_queries.get_high_confidence_discoveries(
            user_id, min_confidence, list(HIGH_CONFIDENCE_STATUSES), limit
        )

    async def mark_surfaced(self, user_id, discovery_ids, now=None) -> int:
        return await discovery_queries.mark_discoveries_surfaced(user_id, list(discovery_ids), now or _utcnow())

    async def acknowledge(self, user_id, discovery_id, now=None) -> bool:
        return await discovery_queries.acknowledge_discovery(user_id, discovery_id, now or _utcnow())
