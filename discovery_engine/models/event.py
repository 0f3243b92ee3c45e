"""Pydantic models for journal events consumed by the discovery engine"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

FLARE_KIND = "flare"


class HealthEvent(BaseModel):
    """
    One journal entry: a flare, medication dose, wellness check-in or note.

    Environment and physiology readings stay as raw mappings; the factor
    extractor validates each reading on its own so one bad value never
    discards the rest of the event.
    """

    id: str
    user_id: str
    occurred_at: datetime
    kind: str
    severity: Optional[str] = None
    symptoms: List[str] = Field(default_factory=list)
    triggers: List[str] = Field(default_factory=list)
    medications: List[str] = Field(default_factory=list)
    note: Optional[str] = None
    environment: Dict[str, Any] = Field(default_factory=dict)
    physiology: Dict[str, Any] = Field(default_factory=dict)
    city: Optional[str] = None

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def coerce_identifier(cls, value: Any) -> Any:
        # psycopg hands back uuid.UUID for uuid columns
        return str(value) if value is not None and not isinstance(value, str) else value

    @field_validator("occurred_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("note", "city", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return None
        value = value.strip()
        return value or None

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return None
        value = value.strip().lower()
        return value or None

    @field_validator("symptoms", "triggers", "medications", mode="before")
    @classmethod
    def clean_tags(cls, value: Any) -> List[str]:
        if not isinstance(value, (list, tuple, set)):
            return []
        return [tag.strip() for tag in value if isinstance(tag, str) and tag.strip()]

    @field_validator("environment", "physiology", mode="before")
    @classmethod
    def mapping_or_empty(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @property
    def is_flare(self) -> bool:
        """An event is a flare when logged as one or when it carries a severity"""
        return self.kind == FLARE_KIND or self.severity is not None
