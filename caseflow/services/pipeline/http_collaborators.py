"""HTTP clients for the document service and the task service."""

from typing import Optional, Sequence
from uuid import UUID

import httpx

from caseflow.core.exceptions import APIClientError
from caseflow.models.actions import PipelineAction
from caseflow.models.documents import SourceDocument
from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class _ServiceClient:
    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.timeout = timeout
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient()

    def _tenant_headers(self, firm_id: UUID) -> dict:
        return {**self.headers, "X-Firm-Id": str(firm_id)}

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()


class HttpDocumentSource(_ServiceClient):
    """Fetches document metadata and bytes from the document service."""

    async def get_document(self, firm_id: UUID, document_id: UUID) -> Optional[SourceDocument]:
        headers = self._tenant_headers(firm_id)
        try:
            response = await self._http.get(
                f"{self.base_url}/documents/{document_id}", headers=headers, timeout=self.timeout
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            metadata = response.json()

            content = None
            if not metadata.get("extractedText"):
                content_response = await self._http.get(
                    f"{self.base_url}/documents/{document_id}/content", headers=headers, timeout=self.timeout
                )
                content_response.raise_for_status()
                content = content_response.content
        except httpx.HTTPError as e:
            LOGGER.error(
                f"Failed to load document {document_id}: {str(e)}",
                exc_info=True,
                extra={"document_id": str(document_id)},
            )
            raise APIClientError(f"Document service error: {str(e)}", original_error=e) from e

        return SourceDocument(
            id=document_id,
            filename=metadata.get("filename") or str(document_id),
            mime_type=metadata.get("mimeType") or "application/octet-stream",
            content=content,
            extracted_text=metadata.get("extractedText"),
        )

    async def save_extracted_text(self, firm_id: UUID, document_id: UUID, text: str) -> None:
        try:
            response = await self._http.put(
                f"{self.base_url}/documents/{document_id}/text",
                json={"extractedText": text},
                headers=self._tenant_headers(firm_id),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            LOGGER.error(f"Failed to store extracted text for document {document_id}: {str(e)}", exc_info=True)
            raise APIClientError(f"Document service error: {str(e)}", original_error=e) from e


class HttpActionSink(_ServiceClient):
    """Hands generated actions to the task and notification service."""

    async def submit(self, firm_id: UUID, actions: Sequence[PipelineAction]) -> None:
        if not actions:
            return

        payload = {"actions": [action.model_dump(mode="json", by_alias=True) for action in actions]}
        try:
            response = await self._http.post(
                f"{self.base_url}/actions",
                json=payload,
                headers=self._tenant_headers(firm_id),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            LOGGER.error(f"Failed to submit {len(actions)} actions: {str(e)}", exc_info=True)
            raise APIClientError(f"Action service error: {str(e)}", original_error=e) from e

        LOGGER.info(f"Submitted {len(actions)} actions", extra={"firm_id": str(firm_id)})
