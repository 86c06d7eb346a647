"""Risk score models."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import Field

from caseflow.models.base import CamelModel, utcnow


class RiskFactor(CamelModel):
    key: str
    contribution: float = Field(..., ge=0.0)
    detail: str


class RiskResult(CamelModel):
    score: int = Field(..., ge=0, le=100)
    factors: List[RiskFactor] = Field(default_factory=list)


class MatterRiskAssessment(CamelModel):
    """Latest stored risk result for a matter."""

    matter_id: UUID
    firm_id: Optional[UUID] = None
    score: int = Field(..., ge=0, le=100)
    factors: List[RiskFactor] = Field(default_factory=list)
    assessed_at: datetime = Field(default_factory=utcnow)
