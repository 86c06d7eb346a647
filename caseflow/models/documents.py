"""Document payloads exchanged with the document source."""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID


@dataclass
class SourceDocument:
    """Raw bytes and metadata of an uploaded document."""

    id: UUID
    filename: str
    mime_type: str
    content: Optional[bytes] = None
    extracted_text: Optional[str] = None

    @property
    def has_text(self) -> bool:
        return bool(self.extracted_text and self.extracted_text.strip())
