"""Client for the external text/vision model.

Every call goes through the shared :class:`CallSemaphore`, is bounded by a
timeout and retries transient failures with backoff.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from caseflow.core.call_semaphore import CallSemaphore
from caseflow.core.exceptions import ModelCallError, ModelCallErrorKind
from caseflow.core.retry import Attempt, RetryPolicy
from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

DEFAULT_TEMPERATURE = 0.1
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT_MS = 300_000
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_DELAY_MS = 1000

# Kinds the client retries itself when budget remains
_AUTO_RETRIED_KINDS = frozenset({
    ModelCallErrorKind.RATE_LIMITED,
    ModelCallErrorKind.TRANSIENT_ERROR,
    ModelCallErrorKind.NETWORK_ERROR,
})


@dataclass
class ChatMessage:
    """A chat message; ``content`` is text or a list of multimodal parts."""

    role: str
    content: Union[str, List[Dict[str, Any]]]

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class ModelCallRequest:
    model: str
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    response_format: Optional[Dict[str, str]] = None
    timeout_ms: Optional[int] = None
    max_retries: Optional[int] = None
    retry_delay_ms: Optional[int] = None


@dataclass
class ModelCallResult:
    content: str
    tokens_used: int
    model: str
    was_retried: bool = False
    attempts: int = field(default=1, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "tokensUsed": self.tokens_used,
            "model": self.model,
            "wasRetried": self.was_retried,
        }


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if not value:
        return None

    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        LOGGER.debug(f"Ignoring unparseable Retry-After header: {value}")
        return None

    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max((retry_at - datetime.now(timezone.utc)).total_seconds(), 0.0)


class ModelCallClient:
    """Chat-completions client with concurrency limiting, timeout and retry.

    The semaphore is owned by the caller and shared across clients, so the
    number of simultaneous external calls stays bounded process-wide.
    A slot covers a single HTTP attempt and is not held during backoff.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        semaphore: CallSemaphore,
        http_client: Optional[httpx.AsyncClient] = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        default_retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """Initialize the model call client.

        Args:
            api_key: Provider API key; an empty key fails every call with config_error
            base_url: Chat completions endpoint
            semaphore: Process-wide limiter shared by all clients
            http_client: Optional pre-configured httpx client
            default_timeout_ms: Per-call timeout when the request sets none
            default_max_retries: Retry budget when the request sets none
            default_retry_delay_ms: Base backoff delay when the request sets none
            sleep: Coroutine used to wait between retries (seconds)
        """
        self.api_key = api_key
        self.base_url = base_url
        self.semaphore = semaphore
        self.default_timeout_ms = default_timeout_ms
        self.default_max_retries = default_max_retries
        self.default_retry_delay_ms = default_retry_delay_ms
        self._owns_http_client = http_client is None
        # Timeouts are enforced per call below
        self._http = http_client or httpx.AsyncClient(timeout=None)
        self._sleep = sleep or asyncio.sleep

    async def call(self, request: ModelCallRequest) -> ModelCallResult:
        """Invoke the model.

        Args:
            request: Model, messages and per-call overrides

        Returns:
            ModelCallResult with the trimmed message content

        Raises:
            ModelCallError: On configuration, timeout, permanent API errors,
                network failures or exhausted retries
        """
        if not self.api_key:
            raise ModelCallError("OPENROUTER_API_KEY not configured", ModelCallErrorKind.CONFIG_ERROR)

        policy = RetryPolicy(
            max_retries=self.default_max_retries if request.max_retries is None else request.max_retries,
            base_delay_ms=self.default_retry_delay_ms if request.retry_delay_ms is None else request.retry_delay_ms,
        )
        timeout_ms = request.timeout_ms or self.default_timeout_ms

        return await self._attempt(request, self._build_payload(request), policy, timeout_ms, Attempt())

    async def _attempt(
        self,
        request: ModelCallRequest,
        payload: Dict[str, Any],
        policy: RetryPolicy,
        timeout_ms: int,
        attempt: Attempt,
    ) -> ModelCallResult:
        try:
            async with self.semaphore.slot():
                data = await self._send(payload, timeout_ms)
        except ModelCallError as error:
            if error.kind not in _AUTO_RETRIED_KINDS:
                raise

            if not policy.can_retry(attempt):
                if not attempt.is_retry:
                    raise
                raise ModelCallError(
                    f"Model call failed after {attempt.number + 1} attempts: {error.message}",
                    ModelCallErrorKind.RETRIES_EXHAUSTED,
                    status_code=error.status_code,
                    original_error=error,
                ) from error

            delay_ms = policy.delay_ms(attempt, error.retry_after_seconds)
            LOGGER.warning(
                f"Model call attempt {attempt.number + 1}/{policy.max_retries + 1} failed, retrying in {delay_ms}ms",
                extra={
                    "model": request.model,
                    "kind": error.kind.value,
                    "status_code": error.status_code,
                    "attempt": attempt.number + 1,
                },
            )
            await self._sleep(delay_ms / 1000)
            return await self._attempt(request, payload, policy, timeout_ms, attempt.next(error))

        return self._parse_result(data, request.model, attempt)

    async def _send(self, payload: Dict[str, Any], timeout_ms: int) -> Dict[str, Any]:
        """Perform one HTTP attempt and map failures onto error kinds."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await asyncio.wait_for(
                self._http.post(self.base_url, json=payload, headers=headers),
                timeout=timeout_ms / 1000,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ModelCallError(
                f"Model call timed out after {timeout_ms}ms",
                ModelCallErrorKind.TIMEOUT,
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise ModelCallError(
                f"Model call failed: {e}",
                ModelCallErrorKind.NETWORK_ERROR,
                original_error=e,
            ) from e

        status_code = response.status_code
        if status_code in TRANSIENT_STATUS_CODES:
            kind = ModelCallErrorKind.RATE_LIMITED if status_code == 429 else ModelCallErrorKind.TRANSIENT_ERROR
            raise ModelCallError(
                f"Model API returned {status_code}",
                kind,
                status_code=status_code,
                retry_after_seconds=parse_retry_after(response.headers.get("retry-after")),
            )

        if response.is_error:
            LOGGER.error(
                f"Model API error {status_code}",
                extra={"status_code": status_code, "error_body": response.text[:500]},
            )
            raise ModelCallError(
                f"Model API returned {status_code}: {response.text[:500]}",
                ModelCallErrorKind.API_ERROR,
                status_code=status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ModelCallError(
                "Model API returned a non-JSON body",
                ModelCallErrorKind.API_ERROR,
                status_code=status_code,
                original_error=e,
            ) from e

    def _build_payload(self, request: ModelCallRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [message.to_dict() for message in request.messages],
            "temperature": DEFAULT_TEMPERATURE if request.temperature is None else request.temperature,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if request.response_format:
            payload["response_format"] = request.response_format
        return payload

    def _parse_result(self, data: Dict[str, Any], model: str, attempt: Attempt) -> ModelCallResult:
        content = ""
        choices = data.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content") or ""
            if isinstance(content, list):
                content = "".join(part.get("text", "") for part in content if isinstance(part, dict))

        usage = data.get("usage") or {}

        return ModelCallResult(
            content=content.strip(),
            tokens_used=int(usage.get("total_tokens") or 0),
            model=data.get("model") or model,
            was_retried=attempt.is_retry,
            attempts=attempt.number + 1,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http_client:
            await self._http.aclose()
