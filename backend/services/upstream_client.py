"""Client for an OpenAI-compatible chat-completion API (SiliconFlow by default)."""
import time
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
import httpx

from config import SILICON_FLOW_API_KEY, SILICON_FLOW_API_URL, DEFAULT_MODEL, UPSTREAM_TIMEOUT
from models.conversation import ConversationTurn

logger = logging.getLogger(__name__)


@dataclass
class UpstreamResponse:
    """Response from a non-streaming completion call."""
    text: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    model_used: str
    usage: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UpstreamErrorInfo:
    """Structured error information from upstream operations."""
    code: str
    message: str
    details: Dict[str, Any]


class UpstreamError(Exception):
    """Base exception for upstream failures with structured error information."""

    def __init__(self, error: UpstreamErrorInfo):
        self.error = error
        super().__init__(error.message)


class UpstreamRequestError(UpstreamError):
    """The provider answered with a non-2xx status, or no response arrived at all."""

    def __init__(
        self,
        status_code: Optional[int],
        status_text: str,
        code: str = "UPSTREAM_REQUEST_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.status_text = status_text
        if status_code is None:
            message = f"API request failed: {status_text}"
        else:
            message = f"API request failed: {status_code} {status_text}"
        super().__init__(UpstreamErrorInfo(
            code=code,
            message=message,
            details={"status_code": status_code, "status_text": status_text, **(details or {})}
        ))


class UpstreamParseError(UpstreamError):
    """The provider's payload was malformed or missing required fields."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(UpstreamErrorInfo(code="PARSE_ERROR", message=message, details=details or {}))


class StreamTransportError(UpstreamError):
    """Reading the upstream stream failed after the response had started."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(UpstreamErrorInfo(
            code="STREAM_TRANSPORT_ERROR",
            message=message,
            details=details or {}
        ))


class UpstreamClient:
    """Thin wrapper around one chat-completion endpoint, in blocking and streaming modes."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: str = SILICON_FLOW_API_URL,
        default_model: str = DEFAULT_MODEL,
        timeout: float = UPSTREAM_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the upstream client.

        Args:
            api_key: Provider API key (defaults to SILICON_FLOW_API_KEY from environment)
            api_url: Full URL of the chat-completions endpoint
            default_model: Model used when a call does not name one
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used to swap in a mock transport)
        """
        self.api_key = api_key or SILICON_FLOW_API_KEY
        if not self.api_key:
            raise ValueError("SILICON_FLOW_API_KEY must be provided or set in environment")

        self.api_url = api_url
        self.default_model = default_model
        self.timeout = timeout
        self.transport = transport
        logger.info(f"UpstreamClient initialized: url={api_url}, model={default_model}")

    async def complete(
        self,
        turns: Sequence[ConversationTurn],
        model: Optional[str] = None
    ) -> UpstreamResponse:
        """
        Run a non-streaming completion.

        Args:
            turns: Ordered, non-empty conversation
            model: Model identifier (defaults to the client's default model)

        Returns:
            UpstreamResponse with text, token counts, and latency

        Raises:
            ValueError: If turns is empty
            UpstreamRequestError: Non-2xx status, timeout, or connection failure
            UpstreamParseError: Body is not JSON or lacks choices[0].message.content
        """
        payload = self._build_payload(turns, model, stream=False)
        model_name = payload["model"]
        start_time = time.time()

        logger.debug(f"Requesting completion with model: {model_name}")
        try:
            async with self._http_client() as client:
                response = await client.post(self.api_url, headers=self._headers(), json=payload)
        except httpx.TimeoutException as e:
            raise self._timeout_error(e, model_name, start_time) from e
        except httpx.RequestError as e:
            raise self._network_error(e, model_name, start_time) from e

        latency_ms = int((time.time() - start_time) * 1000)

        if not response.is_success:
            raise self._status_error(response.status_code, response.reason_phrase,
                                     response.text, model_name, latency_ms)

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamParseError(
                "Upstream response is not valid JSON",
                details={"model": model_name, "latency_ms": latency_ms, "original_error": str(e)}
            ) from e

        text = self._extract_message_content(data)
        if text is None:
            raise UpstreamParseError(
                "Upstream response has no choices[0].message.content",
                details={"model": model_name, "latency_ms": latency_ms}
            )

        usage = data.get("usage") or {}
        tokens_input = int(usage.get("prompt_tokens") or 0)
        tokens_output = int(usage.get("completion_tokens") or 0)

        logger.info(
            f"Completion received: model={model_name}, "
            f"input_tokens={tokens_input}, output_tokens={tokens_output}, "
            f"latency={latency_ms}ms"
        )

        return UpstreamResponse(
            text=text,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            latency_ms=latency_ms,
            model_used=model_name,
            usage=usage
        )

    async def stream_complete(
        self,
        turns: Sequence[ConversationTurn],
        model: Optional[str] = None
    ) -> AsyncIterator[bytes]:
        """
        Run a streaming completion and yield the raw response body.

        The request is sent when iteration starts. Closing the iterator early
        closes the underlying HTTP response.

        Yields:
            Raw body chunks as received

        Raises:
            ValueError: If turns is empty
            UpstreamRequestError: Non-2xx status, timeout, or connection failure
            StreamTransportError: Reading the body failed mid-stream
        """
        payload = self._build_payload(turns, model, stream=True)
        model_name = payload["model"]
        start_time = time.time()

        logger.debug(f"Opening completion stream with model: {model_name}")
        try:
            async with self._http_client() as client:
                async with client.stream("POST", self.api_url, headers=self._headers(), json=payload) as response:
                    if not response.is_success:
                        body = await response.aread()
                        raise self._status_error(
                            response.status_code,
                            response.reason_phrase,
                            body.decode("utf-8", errors="replace"),
                            model_name,
                            int((time.time() - start_time) * 1000)
                        )

                    logger.info(
                        f"Stream opened: model={model_name}, "
                        f"latency={int((time.time() - start_time) * 1000)}ms"
                    )
                    bytes_received = 0
                    try:
                        async for chunk in response.aiter_bytes():
                            bytes_received += len(chunk)
                            yield chunk
                    except httpx.HTTPError as e:
                        latency_ms = int((time.time() - start_time) * 1000)
                        logger.error(
                            f"Stream transport error: model={model_name}, "
                            f"bytes_received={bytes_received}, error={e}",
                            exc_info=True
                        )
                        raise StreamTransportError(
                            f"Upstream stream failed: {e}",
                            details={
                                "model": model_name,
                                "latency_ms": latency_ms,
                                "bytes_received": bytes_received,
                                "original_error": str(e),
                                "error_type": type(e).__name__
                            }
                        ) from e

                    logger.debug(f"Stream finished: model={model_name}, bytes_received={bytes_received}")
        except httpx.TimeoutException as e:
            raise self._timeout_error(e, model_name, start_time) from e
        except httpx.RequestError as e:
            raise self._network_error(e, model_name, start_time) from e

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

    def _build_payload(
        self,
        turns: Sequence[ConversationTurn],
        model: Optional[str],
        stream: bool
    ) -> Dict[str, Any]:
        if not turns:
            raise ValueError("turns cannot be empty")

        messages: List[Dict[str, str]] = [turn.to_dict() for turn in turns]
        payload: Dict[str, Any] = {
            "model": model or self.default_model,
            "messages": messages
        }
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def _extract_message_content(data: Any) -> Optional[str]:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None
        return content if isinstance(content, str) else None

    @staticmethod
    def _status_error(
        status_code: int,
        status_text: str,
        body: str,
        model: str,
        latency_ms: int
    ) -> UpstreamRequestError:
        error = UpstreamRequestError(
            status_code,
            status_text,
            details={"model": model, "latency_ms": latency_ms, "body": body[:500]}
        )
        logger.error(
            f"Upstream request failed: model={model}, status={status_code} {status_text}, "
            f"latency={latency_ms}ms",
            extra={"error_code": error.error.code, "error_details": error.error.details}
        )
        return error

    @staticmethod
    def _timeout_error(exc: Exception, model: str, start_time: float) -> UpstreamRequestError:
        latency_ms = int((time.time() - start_time) * 1000)
        error = UpstreamRequestError(
            None,
            "Request timed out",
            code="TIMEOUT_ERROR",
            details={"model": model, "latency_ms": latency_ms, "original_error": str(exc)}
        )
        logger.error(
            f"Timeout error: model={model}, latency={latency_ms}ms, error={exc}",
            extra={"error_code": error.error.code, "error_details": error.error.details}
        )
        return error

    @staticmethod
    def _network_error(exc: Exception, model: str, start_time: float) -> UpstreamRequestError:
        latency_ms = int((time.time() - start_time) * 1000)
        error = UpstreamRequestError(
            None,
            f"Network error: {exc}",
            code="NETWORK_ERROR",
            details={
                "model": model,
                "latency_ms": latency_ms,
                "original_error": str(exc),
                "error_type": type(exc).__name__
            }
        )
        logger.error(
            f"Network error: model={model}, latency={latency_ms}ms, error={exc}",
            exc_info=True,
            extra={"error_code": error.error.code, "error_details": error.error.details}
        )
        return error
