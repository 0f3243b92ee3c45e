"""
Health Event Store Adapter

Reads a user's journal history from the unified health_events timeline and
maps each row to a HealthEvent for analysis.

Rows carry event-specific fields in a JSONB metadata column. Known keys:
- severity, symptoms, triggers, medications, note, city
- environment (or environmental_data): weather / air_quality / pollen
- physiology (or physiological_data): wearable readings

Rows missing an id or timestamp are skipped with a warning; every other
malformed field degrades to its empty value so the rest of the event survives.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from discovery_engine.config import EVENT_FETCH_LIMIT
from discovery_engine.db.connection import db
from discovery_engine.models.event import FLARE_KIND, HealthEvent

logger = logging.getLogger(__name__)

# Legacy event types that mean "flare"
KIND_ALIASES = {
    "symptom": FLARE_KIND,
}


def _metadata(row: Dict[str, Any]) -> Dict[str, Any]:
    raw = row.get("metadata")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning(f"Unparseable metadata on health_event {row.get('id')}")
            return {}
    return raw if isinstance(raw, dict) else {}


def event_from_row(row: Dict[str, Any]) -> Optional[HealthEvent]:
    """
    Map a health_events row to a HealthEvent.

    Returns:
        HealthEvent, or None when the row cannot identify an event
    """
    if row.get("id") is None or row.get("timestamp") is None:
        logger.warning(f"Skipping health_event without id or timestamp: {row.get('id')}")
        return None

    metadata = _metadata(row)
    event_type = str(row.get("event_type") or metadata.get("kind") or "").strip().lower()

    try:
        return HealthEvent(
            id=row["id"],
            user_id=row["user_id"],
            occurred_at=row["timestamp"],
            kind=KIND_ALIASES.get(event_type, event_type),
            severity=metadata.get("severity"),
            symptoms=metadata.get("symptoms"),
            triggers=metadata.get("triggers"),
            medications=metadata.get("medications"),
            note=metadata.get("note") or metadata.get("notes"),
            environment=metadata.get("environment") or metadata.get("environmental_data"),
            physiology=metadata.get("physiology") or metadata.get("physiological_data"),
            city=metadata.get("city"),
        )
    except (KeyError, PydanticValidationError) as e:
        logger.warning(f"Skipping malformed health_event {row.get('id')}: {e}")
        return None


async def list_events(user_id: str, limit: int = EVENT_FETCH_LIMIT) -> List[HealthEvent]:
    """
    Get a user's most recent events.

    Args:
        user_id: Journal owner
        limit: Maximum number of events (most recent first)

    Returns:
        List of HealthEvent sorted by occurred_at DESC
    """
    async with db.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                SELECT id, user_id, event_type, timestamp, metadata
                FROM health_events
                WHERE user_id = %s
                ORDER BY timestamp DESC
                LIMIT %s
                """,
                (user_id, limit)
            )
            rows = await cur.fetchall()

    events = [event for event in (event_from_row(row) for row in rows) if event is not None]
    if len(events) < len(rows):
        logger.warning(f"Skipped {len(rows) - len(events)} malformed events for user {user_id}")
    logger.debug(f"Loaded {len(events)} events for user {user_id}")
    return events
