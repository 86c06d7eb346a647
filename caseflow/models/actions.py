"""Pipeline action models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import Field

from caseflow.models.base import CamelModel, utcnow
from caseflow.models.triggers import ActionType


class ActionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"
    EXECUTED = "executed"
    FAILED = "failed"


class PipelineAction(CamelModel):
    """A concrete action produced by the actions stage.

    Lower ``priority`` values are more urgent.
    """

    id: UUID = Field(default_factory=uuid4)
    firm_id: Optional[UUID] = None
    pipeline_run_id: Optional[UUID] = None
    matter_id: Optional[UUID] = None
    action_type: ActionType
    title: str
    description: Optional[str] = None
    priority: int = 0
    status: ActionStatus = ActionStatus.PENDING
    is_deterministic: bool = True
    action_payload: Optional[Dict[str, Any]] = None
    trigger_finding_id: Optional[UUID] = None
    trigger_rule_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)
