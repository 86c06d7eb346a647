"""Build pipeline actions from trigger matches and reconciled findings."""

from typing import List, Optional, Sequence

from caseflow.models.actions import PipelineAction
from caseflow.models.findings import Finding, FindingStatus, Impact
from caseflow.models.pipeline import PipelineRun
from caseflow.models.triggers import ActionType, TriggerMatch

CONFLICT_PRIORITY = {Impact.CRITICAL: 0, Impact.HIGH: 1}
DEFAULT_CONFLICT_PRIORITY = 2


def _base(run: PipelineRun) -> dict:
    return {"firm_id": run.firm_id, "pipeline_run_id": run.id, "matter_id": run.matter_id}


def actions_from_matches(run: PipelineRun, matches: Sequence[TriggerMatch]) -> List[PipelineAction]:
    actions: List[PipelineAction] = []
    for match in matches:
        template = match.trigger.action_template
        actions.append(
            PipelineAction(
                **_base(run),
                action_type=template.action_type,
                title=template.title or match.trigger.name,
                description=template.description or match.trigger.description,
                priority=template.priority if template.priority is not None else 0,
                is_deterministic=True,
                action_payload=template.payload,
                trigger_finding_id=match.matched_finding.finding_id if match.matched_finding else None,
                trigger_rule_id=match.trigger.id,
            )
        )
    return actions


def conflict_actions(run: PipelineRun, findings: Sequence[Finding]) -> List[PipelineAction]:
    actions: List[PipelineAction] = []
    for finding in findings:
        if finding.status != FindingStatus.CONFLICT:
            continue
        actions.append(
            PipelineAction(
                **_base(run),
                action_type=ActionType.FLAG_RISK,
                title=f"Data conflict: {finding.label}",
                description=(
                    f'Extracted "{finding.value}" conflicts with existing value '
                    f'"{finding.existing_value}". Review required.'
                ),
                priority=CONFLICT_PRIORITY.get(finding.impact, DEFAULT_CONFLICT_PRIORITY),
                action_payload={
                    "findingId": str(finding.id),
                    "fieldKey": finding.field_key,
                    "categoryKey": finding.category_key,
                    "newValue": finding.value,
                    "existingValue": finding.existing_value,
                },
                trigger_finding_id=finding.id,
            )
        )
    return actions


def critical_review_action(run: PipelineRun, findings: Sequence[Finding]) -> Optional[PipelineAction]:
    critical_pending = [
        finding
        for finding in findings
        if finding.status == FindingStatus.PENDING and finding.impact == Impact.CRITICAL
    ]
    if not critical_pending:
        return None

    labels = ", ".join(finding.label for finding in critical_pending)
    return PipelineAction(
        **_base(run),
        action_type=ActionType.REQUEST_REVIEW,
        title=f"{len(critical_pending)} critical finding(s) need review",
        description=f"Critical findings extracted: {labels}. Manual review recommended.",
        priority=0,
        action_payload={"findingIds": [str(finding.id) for finding in critical_pending]},
        trigger_finding_id=critical_pending[0].id,
    )


def classification_review_action(run: PipelineRun, threshold: float) -> Optional[PipelineAction]:
    if not run.classified_doc_type or run.classification_confidence is None:
        return None
    if run.classification_confidence >= threshold:
        return None

    confidence = run.classification_confidence * 100
    return PipelineAction(
        **_base(run),
        action_type=ActionType.REQUEST_REVIEW,
        title=f"Review document classification (confidence: {confidence:.0f}%)",
        description=(
            f'The pipeline classified a document as "{run.classified_doc_type}" with low '
            f"confidence ({confidence:.1f}%). Please review and correct if needed."
        ),
        priority=1,
        action_payload={
            "documentId": str(run.document_id),
            "classifiedDocType": run.classified_doc_type,
            "classificationConfidence": run.classification_confidence,
        },
    )


def build_run_actions(
    run: PipelineRun,
    findings: Sequence[Finding],
    matches: Sequence[TriggerMatch],
    low_classification_confidence: float,
) -> List[PipelineAction]:
    """All actions for a run: trigger matches, conflicts, critical reviews, classification review."""
    actions = actions_from_matches(run, matches)
    actions.extend(conflict_actions(run, findings))

    review = critical_review_action(run, findings)
    if review is not None:
        actions.append(review)

    classification_review = classification_review_action(run, low_classification_confidence)
    if classification_review is not None:
        actions.append(classification_review)

    return actions
