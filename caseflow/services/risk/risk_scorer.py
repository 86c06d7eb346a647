"""Matter risk scoring from findings.

Factors, in output order:

- ``critical_pending``: 15 per pending critical finding, capped at 30
- ``conflicts``: 12 per conflict, capped at 25
- ``high_impact_ratio``: share of critical/high findings times 20 (omitted at 0)
- ``low_confidence``: 15 if average confidence < 0.75, 8 if < 0.85 (omitted otherwise)
- ``unresolved_pending``: 2 per pending finding, capped at 10

The three count factors are reported for any non-empty list, including at 0.
"""

from typing import Iterable, List, Protocol

from caseflow.models.findings import FindingStatus, Impact
from caseflow.models.risk import RiskFactor, RiskResult

CRITICAL_PENDING_WEIGHT = 15
CRITICAL_PENDING_CAP = 30
CONFLICT_WEIGHT = 12
CONFLICT_CAP = 25
HIGH_IMPACT_WEIGHT = 20
LOW_CONFIDENCE_SEVERE = 0.75
LOW_CONFIDENCE_SEVERE_POINTS = 15
LOW_CONFIDENCE_MILD = 0.85
LOW_CONFIDENCE_MILD_POINTS = 8
PENDING_WEIGHT = 2
PENDING_CAP = 10
MAX_SCORE = 100

HIGH_IMPACTS = frozenset({Impact.CRITICAL, Impact.HIGH})


class ScorableFinding(Protocol):
    status: FindingStatus
    impact: Impact
    confidence: float


def _round(value: float) -> float:
    return round(value, 2)


def calculate_risk_score(findings: Iterable[ScorableFinding]) -> RiskResult:
    """Aggregate findings into a 0-100 risk score.

    Args:
        findings: Findings of one matter

    Returns:
        RiskResult with the rounded, capped score and its factors
    """
    findings = list(findings)
    if not findings:
        return RiskResult(score=0, factors=[])

    total = len(findings)
    critical_pending = sum(
        1 for f in findings if f.status == FindingStatus.PENDING and f.impact == Impact.CRITICAL
    )
    conflicts = sum(1 for f in findings if f.status == FindingStatus.CONFLICT)
    high_impact = sum(1 for f in findings if f.impact in HIGH_IMPACTS)
    pending = sum(1 for f in findings if f.status == FindingStatus.PENDING)
    average_confidence = sum(float(f.confidence) for f in findings) / total

    factors: List[RiskFactor] = [
        RiskFactor(
            key="critical_pending",
            contribution=min(critical_pending * CRITICAL_PENDING_WEIGHT, CRITICAL_PENDING_CAP),
            detail=f"{critical_pending} critical finding(s) awaiting review",
        ),
        RiskFactor(
            key="conflicts",
            contribution=min(conflicts * CONFLICT_WEIGHT, CONFLICT_CAP),
            detail=f"{conflicts} finding(s) conflict with existing matter data",
        ),
    ]

    high_impact_contribution = _round(high_impact / total * HIGH_IMPACT_WEIGHT)
    if high_impact_contribution > 0:
        factors.append(
            RiskFactor(
                key="high_impact_ratio",
                contribution=high_impact_contribution,
                detail=f"{high_impact} of {total} findings are critical or high impact",
            )
        )

    if average_confidence < LOW_CONFIDENCE_SEVERE:
        low_confidence_contribution = LOW_CONFIDENCE_SEVERE_POINTS
    elif average_confidence < LOW_CONFIDENCE_MILD:
        low_confidence_contribution = LOW_CONFIDENCE_MILD_POINTS
    else:
        low_confidence_contribution = 0
    if low_confidence_contribution:
        factors.append(
            RiskFactor(
                key="low_confidence",
                contribution=low_confidence_contribution,
                detail=f"Average extraction confidence is {average_confidence * 100:.0f}%",
            )
        )

    factors.append(
        RiskFactor(
            key="unresolved_pending",
            contribution=min(pending * PENDING_WEIGHT, PENDING_CAP),
            detail=f"{pending} finding(s) still pending",
        )
    )

    score = min(round(sum(factor.contribution for factor in factors)), MAX_SCORE)
    return RiskResult(score=int(score), factors=factors)
