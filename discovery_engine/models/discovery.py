"""Pydantic models for persisted discoveries"""
from datetime import datetime
from typing import Any, List, Literal, Optional, Tuple
from uuid import uuid4
from pydantic import BaseModel, Field, field_validator

DiscoveryType = Literal["trigger", "protective_factor", "pattern", "correlation"]

Relationship = Literal["increases_risk", "decreases_risk", "correlates_with"]

DiscoveryStatus = Literal[
    "emerging",
    "investigating",
    "confirmed",
    "strong",
    "declining",
    "disproven"
]

VALID_STATUSES = {
    "emerging",
    "investigating",
    "confirmed",
    "strong",
    "declining",
    "disproven"
}

# Retired discoveries are kept for history but never surfaced again
TERMINAL_STATUS = "disproven"

# Fields a re-run may overwrite; id, surfaced_at and acknowledged_at are never touched
MUTABLE_FIELDS = (
    "discovery_type",
    "relationship",
    "occurrence_count",
    "total_exposures",
    "confidence",
    "lift",
    "avg_delay_hours",
    "p_value",
    "supporting_event_ids",
    "evidence_summary",
    "status",
    "last_evidence_at",
)

DiscoveryIdentity = Tuple[str, str, str, Optional[str]]


class Discovery(BaseModel):
    """A scored association between a factor and flares for one user"""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    discovery_type: DiscoveryType
    category: str
    factor_a: str
    factor_b: Optional[str] = None
    relationship: Relationship
    occurrence_count: int = Field(ge=0)
    total_exposures: int = Field(ge=0)
    confidence: float = Field(ge=0.0, le=1.0)
    lift: float = Field(ge=0.0)
    avg_delay_hours: Optional[float] = None
    p_value: float = Field(gt=0.0, le=1.0)
    supporting_event_ids: List[str] = Field(default_factory=list)
    evidence_summary: str
    status: DiscoveryStatus
    surfaced_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    last_evidence_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def coerce_identifier(cls, value: Any) -> Any:
        return str(value) if value is not None and not isinstance(value, str) else value

    @field_validator("supporting_event_ids", mode="before")
    @classmethod
    def coerce_event_ids(cls, value: Any) -> Any:
        if value is None:
            return []
        return [str(event_id) for event_id in value]

    @property
    def identity(self) -> DiscoveryIdentity:
        """Merge identity: (user_id, category, factor_a, factor_b)"""
        return (self.user_id, self.category, self.factor_a, self.factor_b)

    @property
    def interest_score(self) -> float:
        """Ranking used to pick which discoveries are tracked in a run"""
        return self.confidence * max(self.lift, 1.0)

    @property
    def is_retired(self) -> bool:
        return self.status == TERMINAL_STATUS
