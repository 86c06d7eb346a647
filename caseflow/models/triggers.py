"""Action trigger configuration.

Trigger conditions are a union discriminated by ``operator``; each variant
carries only the value it needs. A stored condition that does not parse
(no ``fieldKey``, unknown operator, missing value) is kept as ``None`` so
the trigger is skipped instead of breaking the whole pack.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import ConfigDict, Field, ValidationError, ValidatorFunctionWrapHandler, field_validator

from caseflow.models.base import CamelModel
from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class ActionType(str, Enum):
    CREATE_TASK = "create_task"
    CREATE_DEADLINE = "create_deadline"
    UPDATE_FIELD = "update_field"
    SEND_NOTIFICATION = "send_notification"
    FLAG_RISK = "flag_risk"
    REQUEST_REVIEW = "request_review"
    AI_RECOMMENDATION = "ai_recommendation"


class _ConditionBase(CamelModel):
    field_key: str = Field(..., min_length=1)
    category_key: Optional[str] = None

    @property
    def lookup_key(self) -> str:
        if self.category_key:
            return f"{self.category_key}:{self.field_key}"
        return self.field_key


class ExistsCondition(_ConditionBase):
    operator: Literal["exists"] = "exists"


class _TextValueCondition(_ConditionBase):
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class EqualsCondition(_TextValueCondition):
    operator: Literal["equals"] = "equals"


class ContainsCondition(_TextValueCondition):
    operator: Literal["contains"] = "contains"


class GreaterThanCondition(_ConditionBase):
    operator: Literal["gt"] = "gt"
    value: float


class LessThanCondition(_ConditionBase):
    operator: Literal["lt"] = "lt"
    value: float


class DateWithinDaysCondition(_ConditionBase):
    operator: Literal["date_within_days"] = "date_within_days"
    value: int = Field(..., ge=0)


TriggerCondition = Annotated[
    Union[
        ExistsCondition,
        EqualsCondition,
        ContainsCondition,
        GreaterThanCondition,
        LessThanCondition,
        DateWithinDaysCondition,
    ],
    Field(discriminator="operator"),
]


class ActionTemplate(CamelModel):
    """Template for the action a matched trigger creates."""

    model_config = ConfigDict(extra="allow")

    action_type: ActionType = ActionType.AI_RECOMMENDATION
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = None
    payload: Optional[Dict[str, Any]] = None


class Trigger(CamelModel):
    """A deterministic rule from a taxonomy pack."""

    id: UUID = Field(default_factory=uuid4)
    pack_id: Optional[UUID] = None
    trigger_type: str = "field_value"
    name: str
    description: Optional[str] = None
    trigger_condition: Optional[TriggerCondition] = None
    action_template: ActionTemplate = Field(default_factory=ActionTemplate)
    is_deterministic: bool = True

    @field_validator("trigger_condition", mode="wrap")
    @classmethod
    def _lenient_condition(cls, value: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        if value is None:
            return None
        try:
            return handler(value)
        except ValidationError as e:
            LOGGER.warning(
                "Ignoring unusable trigger condition",
                extra={"condition": value, "errors": e.error_count()},
            )
            return None


@dataclass(frozen=True)
class CandidateValue:
    """A value available to trigger evaluation."""

    value: str
    confidence: float
    finding_id: Optional[UUID] = None


@dataclass(frozen=True)
class TriggerMatch:
    trigger: Trigger
    matched_finding: Optional[CandidateValue] = None
