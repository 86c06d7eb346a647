from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from caseflow.database.models import Matter, TaxonomyCategoryRecord, TaxonomyPackRecord
from caseflow.models.taxonomy import (
    DocumentType,
    PromptTemplate,
    ReconciliationRule,
    TaxonomyCategory,
    TaxonomyField,
    TaxonomyPack,
)
from caseflow.repositories.base_repository import BaseRepository
from caseflow.services.triggers.trigger_engine import load_triggers


def _optional_float(value) -> Optional[float]:
    return float(value) if value is not None else None


def _to_domain(record: TaxonomyPackRecord) -> TaxonomyPack:
    return TaxonomyPack(
        id=record.id,
        firm_id=record.firm_id,
        key=record.key,
        name=record.name,
        practice_area=record.practice_area,
        version=record.version,
        categories=[
            TaxonomyCategory(
                key=category.key,
                label=category.label,
                description=category.description,
                fields=[
                    TaxonomyField(
                        key=field.key,
                        label=field.label,
                        description=field.description,
                        data_type=field.data_type,
                        examples=field.examples,
                        confidence_threshold=_optional_float(field.confidence_threshold),
                        requires_human_review=field.requires_human_review,
                    )
                    for field in category.fields
                ],
            )
            for category in record.categories
        ],
        document_types=[
            DocumentType(
                key=document_type.key,
                label=document_type.label,
                description=document_type.description,
                classification_hints=document_type.classification_hints,
                activated_categories=document_type.activated_categories,
            )
            for document_type in record.document_types
        ],
        prompt_templates=[
            PromptTemplate(
                template_type=template.template_type,
                system_prompt=template.system_prompt,
                user_prompt_template=template.user_prompt_template,
                model_preference=template.model_preference,
                temperature=_optional_float(template.temperature),
                max_tokens=template.max_tokens,
            )
            for template in record.prompt_templates
        ],
        reconciliation_rules=[
            ReconciliationRule(
                field_key=rule.field_key,
                conflict_detection_mode=rule.conflict_detection_mode,
                auto_apply_threshold=_optional_float(rule.auto_apply_threshold),
                requires_human_review=rule.requires_human_review,
            )
            for rule in record.reconciliation_rules
        ],
        action_triggers=load_triggers(
            {
                "id": trigger.id,
                "packId": trigger.pack_id,
                "triggerType": trigger.trigger_type,
                "name": trigger.name,
                "description": trigger.description,
                "triggerCondition": trigger.trigger_condition,
                "actionTemplate": trigger.action_template,
                "isDeterministic": trigger.is_deterministic,
            }
            for trigger in record.action_triggers
        ),
    )


class TaxonomyRepository(BaseRepository[TaxonomyPackRecord]):
    """Read access to taxonomy packs.

    Packs are visible to a firm when they belong to it or are system packs
    (no firm).
    """

    def __init__(self, session: AsyncSession, firm_id: UUID):
        super().__init__(session, TaxonomyPackRecord, firm_id)

    def _pack_query(self):
        return select(TaxonomyPackRecord).options(
            selectinload(TaxonomyPackRecord.categories).selectinload(TaxonomyCategoryRecord.fields),
            selectinload(TaxonomyPackRecord.document_types),
            selectinload(TaxonomyPackRecord.prompt_templates),
            selectinload(TaxonomyPackRecord.reconciliation_rules),
            selectinload(TaxonomyPackRecord.action_triggers),
        )

    async def get_practice_area(self, matter_id: UUID) -> Optional[str]:
        try:
            query = select(Matter.practice_area).where(Matter.id == matter_id, Matter.firm_id == self.firm_id)
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(f"Error retrieving practice area of matter {matter_id}: {str(e)}", exc_info=True)
            raise

    async def load_pack(self, pack_id: UUID) -> Optional[TaxonomyPack]:
        try:
            query = self._pack_query().where(
                TaxonomyPackRecord.id == pack_id,
                or_(TaxonomyPackRecord.firm_id == self.firm_id, TaxonomyPackRecord.firm_id.is_(None)),
            )
            result = await self.session.execute(query)
            record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading taxonomy pack {pack_id}: {str(e)}", exc_info=True)
            raise
        return _to_domain(record) if record else None

    async def load_pack_for_matter(self, matter_id: UUID) -> Optional[TaxonomyPack]:
        """Load the active pack for the matter's practice area.

        A firm-specific pack wins over the system pack; among several, the
        newest is used.

        Args:
            matter_id: Matter being processed

        Returns:
            TaxonomyPack or None when the matter has no practice area or
            no pack covers it
        """
        practice_area = await self.get_practice_area(matter_id)
        if not practice_area:
            self.logger.warning(f"Matter {matter_id} has no practice area; no taxonomy pack loaded")
            return None

        try:
            query = (
                self._pack_query()
                .where(
                    TaxonomyPackRecord.practice_area == practice_area,
                    TaxonomyPackRecord.is_active.is_(True),
                    or_(TaxonomyPackRecord.firm_id == self.firm_id, TaxonomyPackRecord.firm_id.is_(None)),
                )
                # firm packs (firm_id IS NULL = false) sort first
                .order_by(TaxonomyPackRecord.firm_id.is_(None), TaxonomyPackRecord.created_at.desc())
                .limit(1)
            )
            result = await self.session.execute(query)
            record = result.scalars().first()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error loading taxonomy pack for practice area {practice_area}: {str(e)}", exc_info=True
            )
            raise

        if record is None:
            self.logger.warning(f"No active taxonomy pack for practice area {practice_area}")
            return None
        return _to_domain(record)
