"""Turn model extraction output into finding candidates."""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from caseflow.models.findings import ConfidenceLevel, ConfidenceTier, FindingCandidate, Impact
from caseflow.models.taxonomy import TaxonomyField
from caseflow.services.extraction.chunking import TextChunk
from caseflow.utils.json_parser import parse_json_safely
from caseflow.utils.logging import get_logger
from caseflow.utils.value_parsing import normalize_text

LOGGER = get_logger(__name__)

CRITICAL_FIELD_PATTERN = re.compile(r"deadline|limitation|filing|injury_date")
PARTY_FIELD_PATTERN = re.compile(r"claimant|defendant|plaintiff|respondent|party|insured")
LOW_CONFIDENCE_IMPACT_THRESHOLD = 0.5


@dataclass
class RawFinding:
    """One item of model output, before labelling and de-duplication."""

    category_key: str
    field_key: str
    value: str
    confidence: float
    source_quote: Optional[str] = None
    chunk_index: Optional[int] = None


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return min(max(confidence, 0.0), 1.0)


def parse_extraction_output(content: str, chunk_index: Optional[int] = None) -> Optional[List[RawFinding]]:
    """Parse the model's answer for one chunk.

    Accepts either a JSON array of findings or an object with a
    ``findings`` array. Items without ``fieldKey``, ``value`` or
    ``confidence`` are dropped.

    Returns:
        The findings, or None when the output is not JSON at all
    """
    parsed = parse_json_safely(content)
    if parsed is None:
        return None

    if isinstance(parsed, list):
        items = parsed
    elif isinstance(parsed, dict) and isinstance(parsed.get("findings"), list):
        items = parsed["findings"]
    else:
        items = []

    findings: List[RawFinding] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if not all(key in item for key in ("fieldKey", "value", "confidence")):
            continue

        source_quote = item.get("sourceQuote")
        findings.append(
            RawFinding(
                category_key=str(item.get("categoryKey") or ""),
                field_key=str(item.get("fieldKey") or ""),
                value="" if item["value"] is None else str(item["value"]),
                confidence=_coerce_confidence(item["confidence"]),
                source_quote=str(source_quote) if source_quote else None,
                chunk_index=chunk_index,
            )
        )

    return findings


def deduplicate_findings(findings: Sequence[RawFinding]) -> List[RawFinding]:
    """Collapse findings with the same field and normalised value.

    The most confident occurrence wins; first-seen order is kept.
    """
    best: Dict[tuple, RawFinding] = {}
    for finding in findings:
        key = (finding.category_key, finding.field_key, normalize_text(finding.value))
        current = best.get(key)
        if current is None or finding.confidence > current.confidence:
            best[key] = finding
    return list(best.values())


def classify_impact(finding: RawFinding, field: Optional[TaxonomyField] = None) -> Impact:
    field_key = finding.field_key.lower()

    if CRITICAL_FIELD_PATTERN.search(field_key):
        return Impact.CRITICAL

    if field is not None and field.requires_human_review:
        return Impact.HIGH
    if PARTY_FIELD_PATTERN.search(field_key):
        return Impact.HIGH
    if finding.confidence < LOW_CONFIDENCE_IMPACT_THRESHOLD:
        return Impact.HIGH

    return Impact.MEDIUM


def confidence_tier(confidence: float) -> ConfidenceTier:
    if confidence >= 0.8:
        return ConfidenceTier.HIGH
    if confidence >= 0.5:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


def confidence_level(score: float) -> ConfidenceLevel:
    """Map a 0-100 document confidence score to its display colour."""
    if score >= 80:
        return ConfidenceLevel.GREEN
    if score >= 50:
        return ConfidenceLevel.AMBER
    return ConfidenceLevel.RED


def build_candidates(
    findings: Sequence[RawFinding],
    field_map: Dict[str, TaxonomyField],
    chunks: Sequence[TextChunk] = (),
) -> List[FindingCandidate]:
    """Label, classify and locate de-duplicated findings.

    Args:
        findings: Raw findings from every chunk
        field_map: Taxonomy fields keyed by ``categoryKey:fieldKey``
        chunks: The chunks the findings came from, for character offsets

    Returns:
        One candidate per distinct value
    """
    chunk_by_index = {chunk.index: chunk for chunk in chunks}
    candidates: List[FindingCandidate] = []

    for finding in deduplicate_findings(findings):
        field = field_map.get(f"{finding.category_key}:{finding.field_key}")
        chunk = chunk_by_index.get(finding.chunk_index) if finding.chunk_index is not None else None

        candidates.append(
            FindingCandidate(
                category_key=finding.category_key,
                field_key=finding.field_key,
                label=field.label if field else finding.field_key,
                value=finding.value,
                source_quote=finding.source_quote,
                confidence=finding.confidence,
                impact=classify_impact(finding, field),
                char_start=chunk.char_start if chunk else None,
                char_end=chunk.char_end if chunk else None,
            )
        )

    LOGGER.debug(f"Built {len(candidates)} candidates from {len(findings)} raw findings")
    return candidates
