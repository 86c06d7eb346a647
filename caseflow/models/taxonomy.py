"""Taxonomy pack models.

A pack describes, for one practice area, which document types exist, which
fields to extract, how to reconcile them and which triggers to evaluate.
Packs are read-only configuration for the pipeline.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import Field

from caseflow.models.base import CamelModel
from caseflow.models.triggers import Trigger


class ConflictDetectionMode(str, Enum):
    EXACT = "exact"
    FUZZY_TEXT = "fuzzy_text"
    FUZZY_NUMBER = "fuzzy_number"
    DATE_RANGE = "date_range"
    SEMANTIC = "semantic"


class PromptTemplateType(str, Enum):
    EXTRACTION = "extraction"
    CLASSIFICATION = "classification"
    ACTION_GENERATION = "action_generation"
    SUMMARIZATION = "summarization"


class TaxonomyField(CamelModel):
    key: str
    label: str
    description: Optional[str] = None
    data_type: str = "text"
    examples: Optional[List[Any]] = None
    confidence_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    requires_human_review: bool = False


class TaxonomyCategory(CamelModel):
    key: str
    label: str
    description: Optional[str] = None
    fields: List[TaxonomyField] = Field(default_factory=list)


class DocumentType(CamelModel):
    key: str
    label: str
    description: Optional[str] = None
    classification_hints: Optional[str] = None
    activated_categories: Optional[List[str]] = None


class PromptTemplate(CamelModel):
    template_type: PromptTemplateType
    system_prompt: str
    user_prompt_template: str
    model_preference: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class ReconciliationRule(CamelModel):
    field_key: str
    conflict_detection_mode: ConflictDetectionMode = ConflictDetectionMode.FUZZY_TEXT
    auto_apply_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    requires_human_review: bool = False


class TaxonomyPack(CamelModel):
    id: UUID = Field(default_factory=uuid4)
    firm_id: Optional[UUID] = None
    key: str
    name: str
    practice_area: Optional[str] = None
    version: str = "1.0.0"
    categories: List[TaxonomyCategory] = Field(default_factory=list)
    document_types: List[DocumentType] = Field(default_factory=list)
    prompt_templates: List[PromptTemplate] = Field(default_factory=list)
    reconciliation_rules: List[ReconciliationRule] = Field(default_factory=list)
    action_triggers: List[Trigger] = Field(default_factory=list)

    @property
    def field_map(self) -> Dict[str, TaxonomyField]:
        """Fields keyed by ``categoryKey:fieldKey``."""
        return {
            f"{category.key}:{field.key}": field
            for category in self.categories
            for field in category.fields
        }

    @property
    def reconciliation_rule_map(self) -> Dict[str, ReconciliationRule]:
        return {rule.field_key: rule for rule in self.reconciliation_rules}

    def template(self, template_type: PromptTemplateType) -> Optional[PromptTemplate]:
        for template in self.prompt_templates:
            if template.template_type == template_type:
                return template
        return None

    def document_type(self, key: Optional[str]) -> Optional[DocumentType]:
        if not key:
            return None
        for document_type in self.document_types:
            if document_type.key == key:
                return document_type
        return None

    def active_categories(self, document_type_key: Optional[str]) -> List[TaxonomyCategory]:
        """Categories activated by the classified document type.

        An unknown or unclassified type activates every category.
        """
        document_type = self.document_type(document_type_key)
        if document_type is None or document_type.activated_categories is None:
            return list(self.categories)
        activated = set(document_type.activated_categories)
        return [category for category in self.categories if category.key in activated]
