"""Completion service streaming answers from an OpenAI-compatible chat API."""
import time
from typing import AsyncIterator, List, Optional, Sequence

import anyio
import httpx

from docuchat.exceptions import CompletionError, StreamTimeoutError
from docuchat.models.chat import PromptMessage
from docuchat.services.embedding_service import resolve_api_key
from docuchat.utils.logger import logger
from docuchat.utils.metrics import PROVIDER_LATENCY
from docuchat.utils.tracer import tracer


class CompletionStream:
    """An open streaming response from the completion provider."""

    def __init__(self, response: httpx.Response, max_stream_seconds: float):
        self.response = response
        self.max_stream_seconds = max_stream_seconds
        self._closed = False

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """
        Yield response bytes as they arrive.

        Raises:
            StreamTimeoutError: Once the overall stream deadline has passed
        """
        deadline = time.monotonic() + self.max_stream_seconds
        chunks = self.response.aiter_raw()
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise StreamTimeoutError("Completion stream exceeded its deadline")

            # The timeout scope covers a single read, never a yield
            with anyio.move_on_after(remaining) as scope:
                try:
                    chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    return
            if scope.cancelled_caught:
                raise StreamTimeoutError("Completion stream exceeded its deadline")

            if chunk:
                yield chunk

    async def aclose(self) -> None:
        """Release the upstream connection; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self.response.aclose()


class CompletionService:
    """Service for streaming chat completions."""

    def __init__(
        self,
        base_url: str = "https://api.mistral.ai/v1",
        model: str = "mistral-large-latest",
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        max_stream_seconds: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize completion service.

        Args:
            base_url: Provider base URL (``/chat/completions`` is appended)
            model: Completion model name
            api_key: Default credential, used when a call supplies none
            timeout: Transport timeout in seconds (connect and between reads)
            max_stream_seconds: Upper bound on the duration of one stream
            transport: Optional httpx transport (tests inject a mock)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.max_stream_seconds = max_stream_seconds
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def open_stream(
        self, messages: Sequence[PromptMessage], api_key: Optional[str] = None
    ) -> CompletionStream:
        """
        Start a streaming completion.

        The response status is checked before any byte is handed out, so a
        provider rejection surfaces as an exception rather than a stream.

        Raises:
            CompletionError: On a transport failure or a non-2xx response
        """
        key = resolve_api_key(api_key, self.api_key)
        payload = {
            "model": self.model,
            "messages": [message.to_dict() for message in messages],
            "stream": True,
        }
        request = self.client.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            json=payload,
            headers={"Authorization": f"Bearer {key}", "Accept": "text/event-stream"},
        )

        start_time = time.time()
        with tracer.start_as_current_span("completion.open_stream") as span:
            span.set_attribute("completion.model", self.model)
            span.set_attribute("completion.message_count", len(messages))
            try:
                response = await self.client.send(request, stream=True)
            except httpx.HTTPError as e:
                logger.error(f"Completion request failed: {str(e)}")
                raise CompletionError(f"Failed to reach completion provider: {str(e)}")
            finally:
                PROVIDER_LATENCY.labels(provider="completions").observe(time.time() - start_time)

            span.set_attribute("http.status_code", response.status_code)

            if response.status_code >= 400:
                try:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                finally:
                    await response.aclose()
                logger.error(
                    "Completion provider returned an error",
                    extra={"provider_status": response.status_code},
                )
                raise CompletionError(
                    f"Completion provider returned status {response.status_code}",
                    status_code=response.status_code,
                    body=body,
                )

        return CompletionStream(response, self.max_stream_seconds)

    async def aclose(self) -> None:
        await self.client.aclose()


def build_messages(system_prompt: str, history: List[PromptMessage], message: str) -> List[PromptMessage]:
    """System instruction, then prior turns, then the current user turn."""
    return [PromptMessage("system", system_prompt), *history, PromptMessage("user", message)]
