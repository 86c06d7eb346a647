"""Interfaces of the services the pipeline reads documents from and hands actions to."""

from typing import Optional, Protocol, Sequence
from uuid import UUID

from caseflow.models.actions import PipelineAction
from caseflow.models.documents import SourceDocument


class DocumentSource(Protocol):
    """Raw-bytes provider for uploaded documents."""

    async def get_document(self, firm_id: UUID, document_id: UUID) -> Optional[SourceDocument]: ...

    async def save_extracted_text(self, firm_id: UUID, document_id: UUID, text: str) -> None: ...


class ActionSink(Protocol):
    """Task and notification service that receives generated actions."""

    async def submit(self, firm_id: UUID, actions: Sequence[PipelineAction]) -> None: ...
