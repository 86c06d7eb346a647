"""Reconciliation of extracted values against a matter's existing data.

Each candidate gets its final status when it is turned into a Finding:

- no existing value, confident enough and not forced to review: ``auto_applied``
- no existing value otherwise: ``pending``
- existing value that matches: ``accepted``
- existing value that differs: ``conflict``

The only later change is a human decision through :func:`resolve_finding`.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from caseflow.core.exceptions import FindingResolutionError
from caseflow.models.base import utcnow
from caseflow.models.findings import SETTLED_STATUSES, Finding, FindingCandidate, FindingStatus
from caseflow.models.taxonomy import ConflictDetectionMode, ReconciliationRule, TaxonomyField, TaxonomyPack
from caseflow.utils.logging import get_logger
from caseflow.utils.value_parsing import normalize_text, parse_amount, parse_date

LOGGER = get_logger(__name__)

DEFAULT_AUTO_APPLY_THRESHOLD = 0.85
NUMBER_TOLERANCE = 0.01

RESOLVABLE_STATUSES = frozenset({FindingStatus.PENDING, FindingStatus.CONFLICT})
RESOLUTION_DECISIONS = frozenset({FindingStatus.ACCEPTED, FindingStatus.REJECTED})


def _exact_match(new_value: str, existing_value: str) -> bool:
    return new_value.strip() == existing_value.strip()


def _fuzzy_text_match(new_value: str, existing_value: str) -> bool:
    return normalize_text(new_value) == normalize_text(existing_value)


def _fuzzy_number_match(new_value: str, existing_value: str) -> bool:
    a = parse_amount(new_value)
    b = parse_amount(existing_value)
    if a is None or b is None:
        return False
    return abs(a - b) <= max(abs(a), abs(b)) * NUMBER_TOLERANCE


def _date_match(new_value: str, existing_value: str) -> bool:
    a = parse_date(new_value)
    b = parse_date(existing_value)
    if a is None or b is None:
        return False
    return a == b


# Semantic comparison has no embedding backend; it uses the text normaliser
_MATCHERS: Dict[ConflictDetectionMode, Callable[[str, str], bool]] = {
    ConflictDetectionMode.EXACT: _exact_match,
    ConflictDetectionMode.FUZZY_TEXT: _fuzzy_text_match,
    ConflictDetectionMode.FUZZY_NUMBER: _fuzzy_number_match,
    ConflictDetectionMode.DATE_RANGE: _date_match,
    ConflictDetectionMode.SEMANTIC: _fuzzy_text_match,
}


def values_match(
    new_value: str,
    existing_value: str,
    mode: ConflictDetectionMode = ConflictDetectionMode.FUZZY_TEXT,
) -> bool:
    """Compare an extracted value with the existing one under ``mode``.

    Identical strings (ignoring surrounding whitespace) always match.
    """
    if _exact_match(new_value, existing_value):
        return True
    return _MATCHERS[ConflictDetectionMode(mode)](new_value, existing_value)


@dataclass(frozen=True)
class ReconciliationDecision:
    status: FindingStatus
    existing_value: Optional[str] = None


def auto_apply_threshold(
    rule: Optional[ReconciliationRule],
    field: Optional[TaxonomyField],
    default: float = DEFAULT_AUTO_APPLY_THRESHOLD,
) -> float:
    if rule is not None and rule.auto_apply_threshold is not None:
        return rule.auto_apply_threshold
    if field is not None and field.confidence_threshold is not None:
        return field.confidence_threshold
    return default


def reconcile_candidate(
    value: str,
    existing_value: Optional[str],
    confidence: float,
    rule: Optional[ReconciliationRule] = None,
    field: Optional[TaxonomyField] = None,
    default_threshold: float = DEFAULT_AUTO_APPLY_THRESHOLD,
) -> ReconciliationDecision:
    """Decide the status of one extracted value.

    Args:
        value: Extracted value
        existing_value: The matter's current value for the field, if any
        confidence: Model confidence for the value
        rule: Pack reconciliation rule for the field
        field: Pack field definition
        default_threshold: Auto-apply threshold when neither rule nor field sets one

    Returns:
        ReconciliationDecision with the status and the existing value to retain
    """
    if not existing_value:
        threshold = auto_apply_threshold(rule, field, default_threshold)
        requires_review = rule is not None and rule.requires_human_review
        if not requires_review and confidence >= threshold:
            return ReconciliationDecision(FindingStatus.AUTO_APPLIED)
        return ReconciliationDecision(FindingStatus.PENDING)

    mode = rule.conflict_detection_mode if rule is not None else ConflictDetectionMode.FUZZY_TEXT
    if values_match(value, existing_value, mode):
        return ReconciliationDecision(FindingStatus.ACCEPTED, existing_value)

    return ReconciliationDecision(FindingStatus.CONFLICT, existing_value)


def existing_values_from_findings(
    findings: Iterable[Finding],
    exclude_run_id: Optional[UUID] = None,
) -> Dict[str, str]:
    """Latest accepted or auto-applied value per ``categoryKey:fieldKey``."""
    settled = [
        finding
        for finding in findings
        if finding.status in SETTLED_STATUSES
        and finding.value
        and (exclude_run_id is None or finding.pipeline_run_id != exclude_run_id)
    ]
    settled.sort(key=lambda finding: finding.created_at)
    return {finding.key: finding.value for finding in settled}


class ReconciliationEngine:
    """Builds findings with their final status from extraction candidates."""

    def __init__(self, default_threshold: float = DEFAULT_AUTO_APPLY_THRESHOLD):
        self.default_threshold = default_threshold

    def reconcile(
        self,
        candidates: Sequence[FindingCandidate],
        existing_values: Dict[str, str],
        pack: Optional[TaxonomyPack] = None,
        firm_id: Optional[UUID] = None,
        pipeline_run_id: Optional[UUID] = None,
        matter_id: Optional[UUID] = None,
        document_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> List[Finding]:
        timestamp = now or utcnow()
        rules = pack.reconciliation_rule_map if pack else {}
        fields = pack.field_map if pack else {}
        findings: List[Finding] = []

        for candidate in candidates:
            key = f"{candidate.category_key}:{candidate.field_key}"
            decision = reconcile_candidate(
                candidate.value,
                existing_values.get(key),
                candidate.confidence,
                rule=rules.get(candidate.field_key),
                field=fields.get(key),
                default_threshold=self.default_threshold,
            )

            findings.append(
                Finding(
                    firm_id=firm_id,
                    pipeline_run_id=pipeline_run_id,
                    matter_id=matter_id,
                    document_id=document_id,
                    category_key=candidate.category_key,
                    field_key=candidate.field_key,
                    label=candidate.label,
                    value=candidate.value,
                    source_quote=candidate.source_quote,
                    char_start=candidate.char_start,
                    char_end=candidate.char_end,
                    confidence=candidate.confidence,
                    impact=candidate.impact,
                    status=decision.status,
                    existing_value=decision.existing_value,
                    resolved_at=timestamp if decision.status == FindingStatus.AUTO_APPLIED else None,
                    created_at=timestamp,
                )
            )

        counts: Dict[str, int] = {}
        for finding in findings:
            counts[finding.status.value] = counts.get(finding.status.value, 0) + 1
        LOGGER.info(
            f"Reconciled {len(findings)} findings",
            extra={"pipeline_run_id": str(pipeline_run_id), "status_counts": counts},
        )
        return findings


def resolve_finding(
    finding: Finding,
    decision: FindingStatus,
    now: Optional[datetime] = None,
) -> Finding:
    """Apply a reviewer's decision to a pending or conflicting finding.

    Raises:
        FindingResolutionError: If the decision or the current status does not allow it
    """
    decision = FindingStatus(decision)
    if decision not in RESOLUTION_DECISIONS:
        raise FindingResolutionError(f"Findings can only be resolved as accepted or rejected, not {decision.value}")
    if finding.status not in RESOLVABLE_STATUSES:
        raise FindingResolutionError(f"Finding {finding.id} is already {finding.status.value}")

    return finding.model_copy(update={"status": decision, "resolved_at": now or utcnow()})
