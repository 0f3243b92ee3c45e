"""Pydantic models for API request/response validation"""
from typing import Optional, List
from pydantic import BaseModel, Field
from datetime import datetime

from discovery_engine.models.discovery import Discovery


class AnalyzeRequest(BaseModel):
    """Request to run deep analysis"""
    timezone: str = Field(default="UTC", description="IANA timezone of the user (e.g. Europe/Stockholm)")


class AnalyzeResponse(BaseModel):
    """Result of a deep analysis run"""
    total_analyzed: int = Field(..., description="Events analyzed")
    discoveries_tracked: int = Field(..., description="Discoveries merged into storage")
    new_discoveries: List[Discovery] = Field(default_factory=list, description="Unsurfaced discoveries after the run")
    top_discoveries: List[Discovery] = Field(default_factory=list, description="Strongest discoveries of this run, as stored")
    message: Optional[str] = Field(default=None, description="Set when the run was skipped")


class DiscoveryListResponse(BaseModel):
    """List of discoveries"""
    discoveries: List[Discovery]
    count: int


class MarkSurfacedRequest(BaseModel):
    """Request to mark discoveries as shown to the user"""
    discovery_ids: List[str] = Field(..., description="Discovery IDs that were surfaced")


class MarkSurfacedResponse(BaseModel):
    """Number of discoveries newly marked surfaced"""
    surfaced: int


class AcknowledgeResponse(BaseModel):
    """Acknowledgment result"""
    discovery_id: str
    acknowledged: bool


class HealthCheckResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Service status")
    database: str = Field(..., description="Database connection status")
    timestamp: datetime = Field(..., description="Check timestamp")
