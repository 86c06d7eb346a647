"""Finding models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import Field, model_validator

from caseflow.models.base import CamelModel, utcnow


class FindingStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    AUTO_APPLIED = "auto_applied"
    REJECTED = "rejected"
    CONFLICT = "conflict"


# Statuses that make a value part of the case record
SETTLED_STATUSES = frozenset({FindingStatus.ACCEPTED, FindingStatus.AUTO_APPLIED})


class Impact(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class ConfidenceTier(str, Enum):
    """Per-finding confidence band."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ConfidenceLevel(str, Enum):
    """Document-level classification confidence colour."""

    GREEN = "green"
    AMBER = "amber"
    RED = "red"


class FindingCandidate(CamelModel):
    """A value extracted by the model, before reconciliation assigns a status."""

    category_key: str
    field_key: str
    label: str
    value: str
    source_quote: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    impact: Impact = Impact.MEDIUM
    char_start: Optional[int] = None
    char_end: Optional[int] = None


class Finding(CamelModel):
    """One extracted or matched data point on a matter.

    ``existing_value`` is the matter's value for the same field at the
    time the finding was reconciled.
    """

    id: UUID = Field(default_factory=uuid4)
    firm_id: Optional[UUID] = None
    pipeline_run_id: Optional[UUID] = None
    matter_id: Optional[UUID] = None
    document_id: Optional[UUID] = None
    category_key: str
    field_key: str
    label: str
    value: Optional[str] = None
    source_quote: Optional[str] = None
    char_start: Optional[int] = None
    char_end: Optional[int] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    impact: Impact = Impact.MEDIUM
    status: FindingStatus = FindingStatus.PENDING
    existing_value: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_status_consistency(self) -> "Finding":
        if self.status == FindingStatus.CONFLICT:
            if self.existing_value is None or self.existing_value == self.value:
                raise ValueError("conflict findings need an existing value different from the extracted one")
        if self.status == FindingStatus.AUTO_APPLIED and self.existing_value is not None:
            raise ValueError("auto_applied findings cannot carry an existing value")
        return self

    @property
    def key(self) -> str:
        return f"{self.category_key}:{self.field_key}"
