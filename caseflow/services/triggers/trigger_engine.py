"""Deterministic evaluation of taxonomy action triggers."""

from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from caseflow.models.findings import Finding
from caseflow.models.triggers import (
    CandidateValue,
    ContainsCondition,
    DateWithinDaysCondition,
    EqualsCondition,
    ExistsCondition,
    GreaterThanCondition,
    LessThanCondition,
    Trigger,
    TriggerCondition,
    TriggerMatch,
)
from caseflow.utils.logging import get_logger
from caseflow.utils.value_parsing import parse_amount, parse_date

LOGGER = get_logger(__name__)

CandidatesMap = Dict[str, List[CandidateValue]]


def _exists(condition: ExistsCondition, candidate: CandidateValue, today: date) -> bool:
    return True


def _equals(condition: EqualsCondition, candidate: CandidateValue, today: date) -> bool:
    return candidate.value == condition.value


def _contains(condition: ContainsCondition, candidate: CandidateValue, today: date) -> bool:
    return condition.value.lower() in candidate.value.lower()


def _greater_than(condition: GreaterThanCondition, candidate: CandidateValue, today: date) -> bool:
    amount = parse_amount(candidate.value)
    return amount is not None and amount > condition.value


def _less_than(condition: LessThanCondition, candidate: CandidateValue, today: date) -> bool:
    amount = parse_amount(candidate.value)
    return amount is not None and amount < condition.value


def _date_within_days(condition: DateWithinDaysCondition, candidate: CandidateValue, today: date) -> bool:
    when = parse_date(candidate.value)
    if when is None:
        return False
    return 0 <= (when - today).days <= condition.value


_EVALUATORS: Dict[type, Callable[..., bool]] = {
    ExistsCondition: _exists,
    EqualsCondition: _equals,
    ContainsCondition: _contains,
    GreaterThanCondition: _greater_than,
    LessThanCondition: _less_than,
    DateWithinDaysCondition: _date_within_days,
}


def evaluate_trigger(
    condition: TriggerCondition,
    candidates_map: CandidatesMap,
    today: Optional[date] = None,
) -> Optional[CandidateValue]:
    """Evaluate one condition.

    Candidates are looked up under ``categoryKey:fieldKey`` first and under
    the bare ``fieldKey`` when the qualified key has none.

    Args:
        condition: Parsed trigger condition
        candidates_map: Extracted values by key
        today: Reference date for ``date_within_days``

    Returns:
        The first candidate satisfying the condition, or None
    """
    candidates = candidates_map.get(condition.lookup_key) or candidates_map.get(condition.field_key) or []
    evaluator = _EVALUATORS[type(condition)]
    reference = today or date.today()

    for candidate in candidates:
        if evaluator(condition, candidate, reference):
            return candidate
    return None


def process_triggers(
    triggers: Sequence[Trigger],
    candidates_map: CandidatesMap,
    today: Optional[date] = None,
) -> List[TriggerMatch]:
    """Evaluate every trigger, keeping input order.

    Triggers without a usable condition never match.
    """
    matches: List[TriggerMatch] = []
    for trigger in triggers:
        if trigger.trigger_condition is None:
            LOGGER.debug(f"Skipping trigger without condition: {trigger.name}")
            continue

        matched = evaluate_trigger(trigger.trigger_condition, candidates_map, today)
        if matched is not None:
            matches.append(TriggerMatch(trigger=trigger, matched_finding=matched))

    LOGGER.info(f"{len(matches)} of {len(triggers)} triggers matched")
    return matches


def build_candidates_map(findings: Iterable[Finding]) -> CandidatesMap:
    """Index finding values by ``categoryKey:fieldKey`` and by bare ``fieldKey``."""
    candidates_map: CandidatesMap = {}
    for finding in findings:
        candidate = CandidateValue(value=finding.value or "", confidence=finding.confidence, finding_id=finding.id)
        for key in (finding.key, finding.field_key):
            candidates_map.setdefault(key, []).append(candidate)
    return candidates_map


def load_triggers(rows: Iterable[dict]) -> List[Trigger]:
    """Parse stored trigger definitions, dropping entries that are not triggers at all."""
    triggers: List[Trigger] = []
    for row in rows:
        try:
            triggers.append(Trigger.model_validate(row))
        except PydanticValidationError as e:
            LOGGER.warning(
                "Ignoring invalid trigger definition",
                extra={"trigger_name": row.get("name"), "errors": e.error_count()},
            )
    return triggers
