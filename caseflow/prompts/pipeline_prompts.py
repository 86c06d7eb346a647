# Prompts for the model-driven pipeline stages (ocr, classify, extract).
# - Packs may override the classify/extract prompts with their own templates;
#   placeholders use the {{name}} syntax and are filled by the builders below.
# - Every prompt asks for JSON only; stage handlers parse with parse_json_safely.

import json
from dataclasses import dataclass
from typing import Dict, List, Optional

from caseflow.models.taxonomy import DocumentType, PromptTemplate, TaxonomyCategory

DEFAULT_MODEL = "google/gemini-2.0-flash-001"
DEFAULT_TEMPERATURE = 0.1
CLASSIFICATION_MAX_TOKENS = 256
EXTRACTION_MAX_TOKENS = 2048
OCR_MAX_TOKENS = 8192
TEXT_SAMPLE_CHARS = 2000

# =============================================================================
# OCR
# =============================================================================
OCR_SYSTEM_PROMPT = r"""You are a document transcription engine for a law firm.
Transcribe ALL text in the supplied document exactly as written, preserving reading order,
paragraph breaks and table rows (one row per line, cells separated by " | ").
Do not summarise, translate, correct or comment. Return ONLY the document text."""

OCR_USER_PROMPT = "Extract the full text of this document ({filename}, {mime_type})."

# =============================================================================
# CLASSIFICATION
# =============================================================================
CLASSIFICATION_SYSTEM_PROMPT = r"""You are a legal document classifier. Given the text content of a document, classify it into one of the provided document types. Return a JSON object with "documentType" (the key) and "confidence" (0.0-1.0)."""

CLASSIFICATION_USER_PROMPT = r"""Classify the following document into one of these types:

{{document_types}}

MIME type: {{mime_type}}
Filename: {{filename}}

Document text (first ~2000 characters):
---
{{text_sample}}
---

Return ONLY a JSON object: {"documentType": "<key>", "confidence": <0.0-1.0>}"""

# =============================================================================
# EXTRACTION
# =============================================================================
EXTRACTION_SYSTEM_PROMPT = r"""You are a legal document extraction AI. Extract structured data points from the provided text. For each finding, provide the field key, extracted value, a direct quote from the source text, and your confidence (0.0-1.0). Only extract fields you find evidence for - do not guess."""

EXTRACTION_USER_PROMPT = r"""Document type: {{document_type}}
Chunk {{chunk_index}} of {{total_chunks}}

Extract values for these fields where present:
{{field_descriptions}}

Text:
---
{{chunk_text}}
---

Return ONLY a JSON object of the form:
{"findings": [{"categoryKey": "<cat>", "fieldKey": "<field>", "value": "<extracted>", "sourceQuote": "<verbatim quote>", "confidence": <0.0-1.0>}]}

If no relevant data is found in this chunk, return {"findings": []}"""


@dataclass
class PromptSpec:
    """A fully rendered prompt plus the generation settings to call it with."""

    system_prompt: str
    user_prompt: str
    model: str
    temperature: float
    max_tokens: int


def render_template(template: str, values: Dict[str, str]) -> str:
    """Substitute ``{{name}}`` placeholders in ``template``."""
    rendered = template
    for name, value in values.items():
        rendered = rendered.replace("{{" + name + "}}", value)
    return rendered


def describe_document_types(document_types: List[DocumentType]) -> str:
    lines = []
    for document_type in document_types:
        hints = f" - {document_type.classification_hints}" if document_type.classification_hints else ""
        lines.append(f'- "{document_type.key}" ({document_type.label}){hints}')
    return "\n".join(lines)


def describe_fields(categories: List[TaxonomyCategory]) -> str:
    lines = []
    for category in categories:
        for field in category.fields:
            examples = f" (examples: {json.dumps(field.examples)})" if field.examples else ""
            lines.append(f"- {category.key}.{field.key} [{field.data_type}]: {field.label}{examples}")
    return "\n".join(lines)


def _from_template(
    template: Optional[PromptTemplate],
    default_system: str,
    default_user: str,
    values: Dict[str, str],
    default_model: str,
    default_max_tokens: int,
) -> PromptSpec:
    if template is None:
        return PromptSpec(
            system_prompt=default_system,
            user_prompt=render_template(default_user, values),
            model=default_model,
            temperature=DEFAULT_TEMPERATURE,
            max_tokens=default_max_tokens,
        )

    return PromptSpec(
        system_prompt=template.system_prompt,
        user_prompt=render_template(template.user_prompt_template, values),
        model=template.model_preference or default_model,
        temperature=DEFAULT_TEMPERATURE if template.temperature is None else template.temperature,
        max_tokens=template.max_tokens or default_max_tokens,
    )


def build_classification_prompt(
    document_types: List[DocumentType],
    text_sample: str,
    template: Optional[PromptTemplate] = None,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
    default_model: str = DEFAULT_MODEL,
    sample_chars: int = TEXT_SAMPLE_CHARS,
) -> PromptSpec:
    """Build the document classification prompt.

    Args:
        document_types: Candidate types from the taxonomy pack
        text_sample: Document text; only the first ``sample_chars`` are sent
        template: Pack-specific classification template, if any
        mime_type: Document MIME type
        filename: Original filename
        default_model: Model used when the template names none
        sample_chars: Length of the text sample

    Returns:
        PromptSpec ready to send
    """
    values = {
        "document_types": describe_document_types(document_types),
        "text_sample": text_sample[:sample_chars],
        "mime_type": mime_type or "unknown",
        "filename": filename or "unknown",
    }
    return _from_template(
        template,
        CLASSIFICATION_SYSTEM_PROMPT,
        CLASSIFICATION_USER_PROMPT,
        values,
        default_model,
        CLASSIFICATION_MAX_TOKENS,
    )


def build_extraction_prompt(
    categories: List[TaxonomyCategory],
    chunk_text: str,
    chunk_index: int,
    total_chunks: int,
    document_type: Optional[str],
    template: Optional[PromptTemplate] = None,
    default_model: str = DEFAULT_MODEL,
) -> PromptSpec:
    """Build the field extraction prompt for one chunk.

    ``chunk_index`` is zero-based; the prompt shows it one-based.
    """
    values = {
        "field_descriptions": describe_fields(categories),
        "chunk_text": chunk_text,
        "chunk_index": str(chunk_index + 1),
        "total_chunks": str(total_chunks),
        "document_type": document_type or "unknown",
    }
    return _from_template(
        template,
        EXTRACTION_SYSTEM_PROMPT,
        EXTRACTION_USER_PROMPT,
        values,
        default_model,
        EXTRACTION_MAX_TOKENS,
    )
