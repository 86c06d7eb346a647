"""SQLAlchemy models for all database tables."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from caseflow.core.database import Base


class Matter(Base):
    """Case record; only the columns the pipeline reads."""

    __tablename__ = "matters"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    firm_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    practice_area: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default="NOW()")


class PipelineRunRecord(Base):
    """One document processing attempt."""

    __tablename__ = "pipeline_runs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    firm_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    matter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("matters.id", ondelete="CASCADE"), nullable=False
    )
    document_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="queued"
    )  # queued | running | completed | failed | cancelled
    current_stage: Mapped[str | None] = mapped_column(String, nullable=True)
    stage_statuses: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    document_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    classified_doc_type: Mapped[str | None] = mapped_column(String, nullable=True)
    classification_confidence: Mapped[Decimal | None] = mapped_column(Numeric(4, 3), nullable=True)
    taxonomy_pack_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    findings_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    triggered_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default="NOW()", onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("pipeline_runs_firm_matter_idx", "firm_id", "matter_id"),
        Index("pipeline_runs_firm_status_idx", "firm_id", "status"),
    )


class PipelineFindingRecord(Base):
    """An extracted data point."""

    __tablename__ = "pipeline_findings"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    firm_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    pipeline_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pipeline_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    matter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("matters.id", ondelete="CASCADE"), nullable=False
    )
    document_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    category_key: Mapped[str] = mapped_column(String, nullable=False)
    field_key: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_quote: Mapped[str | None] = mapped_column(Text, nullable=True)
    char_start: Mapped[int | None] = mapped_column(Integer, nullable=True)
    char_end: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence: Mapped[Decimal] = mapped_column(Numeric(4, 3), nullable=False)
    impact: Mapped[str] = mapped_column(String, nullable=False, default="medium")
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending"
    )  # pending | accepted | auto_applied | rejected | conflict
    existing_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        Index("pipeline_findings_matter_field_idx", "matter_id", "field_key"),
        Index("pipeline_findings_status_idx", "firm_id", "status"),
    )


class PipelineActionRecord(Base):
    """An action produced by the actions stage."""

    __tablename__ = "pipeline_actions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    firm_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    pipeline_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pipeline_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    matter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("matters.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action_type: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    is_deterministic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    action_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    trigger_finding_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pipeline_findings.id", ondelete="SET NULL"), nullable=True
    )
    trigger_rule_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)


class MatterRiskAssessmentRecord(Base):
    """Latest risk score of a matter."""

    __tablename__ = "matter_risk_assessments"

    matter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("matters.id", ondelete="CASCADE"), primary_key=True
    )
    firm_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    factors: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    assessed_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)


class TaxonomyPackRecord(Base):
    """A versioned taxonomy pack; ``firm_id`` is null for system packs."""

    __tablename__ = "taxonomy_packs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    firm_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    key: Mapped[str] = mapped_column(String, nullable=False)
    version: Mapped[str] = mapped_column(String, nullable=False, default="1.0.0")
    name: Mapped[str] = mapped_column(String, nullable=False)
    practice_area: Mapped[str] = mapped_column(String, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default="NOW()")

    categories: Mapped[list["TaxonomyCategoryRecord"]] = relationship(
        "TaxonomyCategoryRecord",
        back_populates="pack",
        cascade="all, delete-orphan",
        order_by="TaxonomyCategoryRecord.sort_order",
    )
    document_types: Mapped[list["TaxonomyDocumentTypeRecord"]] = relationship(
        "TaxonomyDocumentTypeRecord",
        cascade="all, delete-orphan",
        order_by="TaxonomyDocumentTypeRecord.sort_order",
    )
    prompt_templates: Mapped[list["TaxonomyPromptTemplateRecord"]] = relationship(
        "TaxonomyPromptTemplateRecord", cascade="all, delete-orphan"
    )
    reconciliation_rules: Mapped[list["TaxonomyReconciliationRuleRecord"]] = relationship(
        "TaxonomyReconciliationRuleRecord", cascade="all, delete-orphan"
    )
    action_triggers: Mapped[list["TaxonomyActionTriggerRecord"]] = relationship(
        "TaxonomyActionTriggerRecord", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("firm_id", "key", "version", name="taxonomy_packs_firm_key_version_unique"),
    )


class TaxonomyCategoryRecord(Base):
    __tablename__ = "taxonomy_categories"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pack_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("taxonomy_packs.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    pack: Mapped["TaxonomyPackRecord"] = relationship("TaxonomyPackRecord", back_populates="categories")
    fields: Mapped[list["TaxonomyFieldRecord"]] = relationship(
        "TaxonomyFieldRecord", cascade="all, delete-orphan", order_by="TaxonomyFieldRecord.sort_order"
    )

    __table_args__ = (UniqueConstraint("pack_id", "key", name="taxonomy_categories_pack_key_unique"),)


class TaxonomyFieldRecord(Base):
    __tablename__ = "taxonomy_fields"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    category_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("taxonomy_categories.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_type: Mapped[str] = mapped_column(String, nullable=False, default="text")
    examples: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    confidence_threshold: Mapped[Decimal | None] = mapped_column(Numeric(4, 3), nullable=True)
    requires_human_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("category_id", "key", name="taxonomy_fields_category_key_unique"),)


class TaxonomyDocumentTypeRecord(Base):
    __tablename__ = "taxonomy_document_types"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pack_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("taxonomy_packs.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    activated_categories: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    classification_hints: Mapped[str | None] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class TaxonomyPromptTemplateRecord(Base):
    __tablename__ = "taxonomy_prompt_templates"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pack_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("taxonomy_packs.id", ondelete="CASCADE"), nullable=False
    )
    template_type: Mapped[str] = mapped_column(
        String, nullable=False
    )  # extraction | classification | action_generation | summarization
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    user_prompt_template: Mapped[str] = mapped_column(Text, nullable=False)
    model_preference: Mapped[str | None] = mapped_column(String, nullable=True)
    temperature: Mapped[Decimal | None] = mapped_column(Numeric(4, 3), nullable=True)
    max_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("pack_id", "template_type", name="taxonomy_prompt_templates_pack_type_unique"),
    )


class TaxonomyReconciliationRuleRecord(Base):
    __tablename__ = "taxonomy_reconciliation_rules"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pack_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("taxonomy_packs.id", ondelete="CASCADE"), nullable=False
    )
    field_key: Mapped[str] = mapped_column(String, nullable=False)
    conflict_detection_mode: Mapped[str] = mapped_column(String, nullable=False, default="fuzzy_text")
    auto_apply_threshold: Mapped[Decimal | None] = mapped_column(Numeric(4, 3), nullable=True)
    requires_human_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("pack_id", "field_key", name="taxonomy_reconciliation_rules_pack_field_unique"),
    )


class TaxonomyActionTriggerRecord(Base):
    __tablename__ = "taxonomy_action_triggers"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pack_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("taxonomy_packs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    trigger_type: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_condition: Mapped[dict] = mapped_column(JSONB, nullable=False)
    action_template: Mapped[dict] = mapped_column(JSONB, nullable=False)
    is_deterministic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
