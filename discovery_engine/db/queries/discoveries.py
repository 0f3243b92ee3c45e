"""Discovery database queries"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from discovery_engine.db.connection import db
from discovery_engine.models.discovery import Discovery, TERMINAL_STATUS

logger = logging.getLogger(__name__)

DISCOVERY_COLUMNS = """
    id, user_id, discovery_type, category, factor_a, factor_b, relationship,
    occurrence_count, total_exposures, confidence, lift, avg_delay_hours,
    p_value, supporting_event_ids, evidence_summary, status,
    surfaced_at, acknowledged_at, last_evidence_at, created_at, updated_at
"""

# Matches the unique index on (user_id, category, factor_a, COALESCE(factor_b, ''))
UPSERT_DISCOVERY = f"""
    INSERT INTO discoveries ({DISCOVERY_COLUMNS})
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (user_id, category, factor_a, (COALESCE(factor_b, '')))
    DO UPDATE SET
        discovery_type = EXCLUDED.discovery_type,
        relationship = EXCLUDED.relationship,
        occurrence_count = EXCLUDED.occurrence_count,
        total_exposures = EXCLUDED.total_exposures,
        confidence = EXCLUDED.confidence,
        lift = EXCLUDED.lift,
        avg_delay_hours = EXCLUDED.avg_delay_hours,
        p_value = EXCLUDED.p_value,
        supporting_event_ids = EXCLUDED.supporting_event_ids,
        evidence_summary = EXCLUDED.evidence_summary,
        status = EXCLUDED.status,
        last_evidence_at = EXCLUDED.last_evidence_at,
        updated_at = EXCLUDED.updated_at
"""

UPDATE_DISCOVERY = """
    UPDATE discoveries
    SET discovery_type = %s,
        relationship = %s,
        occurrence_count = %s,
        total_exposures = %s,
        confidence = %s,
        lift = %s,
        avg_delay_hours = %s,
        p_value = %s,
        supporting_event_ids = %s,
        evidence_summary = %s,
        status = %s,
        last_evidence_at = %s,
        updated_at = %s
    WHERE id = %s AND user_id = %s
"""


def row_to_discovery(row: Dict[str, Any]) -> Discovery:
    """Convert a discoveries row into a Discovery"""
    return Discovery(**row)


def _insert_params(d: Discovery) -> tuple:
    return (
        d.id, d.user_id, d.discovery_type, d.category, d.factor_a, d.factor_b,
        d.relationship, d.occurrence_count, d.total_exposures, d.confidence,
        d.lift, d.avg_delay_hours, d.p_value, d.supporting_event_ids,
        d.evidence_summary, d.status, d.surfaced_at, d.acknowledged_at,
        d.last_evidence_at, d.created_at, d.updated_at
    )


def _update_params(d: Discovery) -> tuple:
    return (
        d.discovery_type, d.relationship, d.occurrence_count, d.total_exposures,
        d.confidence, d.lift, d.avg_delay_hours, d.p_value, d.supporting_event_ids,
        d.evidence_summary, d.status, d.last_evidence_at, d.updated_at,
        d.id, d.user_id
    )


async def merge_discoveries(user_id: str, planner: Callable[[List[Discovery]], Any]) -> Any:
    """
    Merge discoveries for one user inside a single transaction.

    Existing rows are locked, handed to `planner`, and the returned plan's
    updates and inserts are written. Inserts go through ON CONFLICT so a
    concurrent run that inserted the same identity first is updated instead
    of duplicated.

    Args:
        user_id: Owner of the discoveries
        planner: Callable receiving existing discoveries and returning an
                 object with `updates` and `inserts` lists

    Returns:
        The plan that was applied
    """
    async with db.connection() as conn:
        async with conn.transaction():
            async with conn.cursor() as cur:
                await cur.execute(
                    f"SELECT {DISCOVERY_COLUMNS} FROM discoveries WHERE user_id = %s FOR UPDATE",
                    (user_id,)
                )
                existing = [row_to_discovery(row) for row in await cur.fetchall()]

                plan = planner(existing)

                if plan.updates:
                    await cur.executemany(UPDATE_DISCOVERY, [_update_params(d) for d in plan.updates])
                if plan.inserts:
                    await cur.executemany(UPSERT_DISCOVERY, [_insert_params(d) for d in plan.inserts])

    logger.info(
        f"Merged discoveries for user {user_id}: "
        f"{len(plan.inserts)} inserted, {len(plan.updates)} updated"
    )
    return plan


async def get_unsurfaced_discoveries(user_id: str, min_confidence: float, limit: int) -> List[Discovery]:
    """Get discoveries not yet shown to the user"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                f"""
                SELECT {DISCOVERY_COLUMNS}
                FROM discoveries
                WHERE user_id = %s
                  AND surfaced_at IS NULL
                  AND confidence >= %s
                  AND status <> %s
                ORDER BY confidence DESC, category, factor_a
                LIMIT %s
                """,
                (user_id, min_confidence, TERMINAL_STATUS, limit)
            )
            return [row_to_discovery(row) for row in await cur.fetchall()]


async def get_discoveries(
    user_id: str,
    min_confidence: float,
    status: Optional[str],
    limit: int
) -> List[Discovery]:
    """Get discoveries above a confidence floor, optionally filtered by status"""
    query = f"""
        SELECT {DISCOVERY_COLUMNS}
        FROM discoveries
        WHERE user_id = %s
          AND confidence >= %s
    """
    params: list = [user_id, min_confidence]

    if status is not None:
        query += " AND status = %s"
        params.append(status)
    else:
        query += " AND status <> %s"
        params.append(TERMINAL_STATUS)

    query += " ORDER BY confidence DESC, category, factor_a LIMIT %s"
    params.append(limit)

    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return [row_to_discovery(row) for row in await cur.fetchall()]


async def get_high_confidence_discoveries(
    user_id: str,
    min_confidence: float,
    statuses: List[str],
    limit: int
) -> List[Discovery]:
    """Get confirmed/strong discoveries"""
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                f"""
                SELECT {DISCOVERY_COLUMNS}
                FROM discoveries
                WHERE user_id = %s
                  AND confidence >= %s
                  AND status = ANY(%s)
                ORDER BY confidence DESC, category, factor_a
                LIMIT %s
                """,
                (user_id, min_confidence, statuses, limit)
            )
            return [row_to_discovery(row) for row in await cur.fetchall()]


def _parse_ids(discovery_ids: List[str]) -> List[UUID]:
    parsed = []
    for discovery_id in discovery_ids:
        try:
            parsed.append(UUID(str(discovery_id)))
        except ValueError:
            logger.warning(f"Ignoring malformed discovery id: {discovery_id!r}")
    return parsed


async def mark_discoveries_surfaced(user_id: str, discovery_ids: List[str], now: datetime) -> int:
    """Set surfaced_at for the user's discoveries that have not been surfaced yet"""
    ids = _parse_ids(discovery_ids)
    if not ids:
        return 0

    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE discoveries
                SET surfaced_at = %s, updated_at = %s
                WHERE user_id = %s
                  AND id = ANY(%s)
                  AND surfaced_at IS NULL
                """,
                (now, now, user_id, ids)
            )
            touched = cur.rowcount
            await conn.commit()

    logger.info(f"Marked {touched} discoveries surfaced for user {user_id}")
    return touched


async def acknowledge_discovery(user_id: str, discovery_id: str, now: datetime) -> bool:
    """Set acknowledged_at once; returns False if the discovery does not belong to the user"""
    ids = _parse_ids([discovery_id])
    if not ids:
        return False

    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE discoveries
                SET acknowledged_at = COALESCE(acknowledged_at, %s),
                    updated_at = %s
                WHERE id = %s AND user_id = %s
                """,
                (now, now, ids[0], user_id)
            )
            found = cur.rowcount > 0
            await conn.commit()

    if found:
        logger.info(f"Acknowledged discovery {discovery_id} for user {user_id}")
    else:
        logger.warning(f"Discovery not found for acknowledgment: {discovery_id} (user {user_id})")
    return found
