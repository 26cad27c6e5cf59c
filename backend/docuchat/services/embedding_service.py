"""Embedding service for an OpenAI-compatible embeddings endpoint."""
import time
from typing import List, Optional, Sequence

import httpx

from docuchat.exceptions import EmbeddingError, MissingCredentialError
from docuchat.services.chunking import estimate_token_count
from docuchat.utils.logger import logger
from docuchat.utils.metrics import PROVIDER_LATENCY
from docuchat.utils.tracer import tracer


def resolve_api_key(request_key: Optional[str], default_key: Optional[str]) -> str:
    """
    Pick the credential for a provider call.

    The per-request credential wins over the configured default.

    Raises:
        MissingCredentialError: If neither is available
    """
    api_key = (request_key or "").strip() or (default_key or "").strip()
    if not api_key:
        raise MissingCredentialError("API key is required. Provide it via the X-Api-Key header.")
    return api_key


class EmbeddingService:
    """Service for generating embeddings through the provider HTTP API."""

    def __init__(
        self,
        base_url: str = "https://api.mistral.ai/v1",
        model: str = "mistral-embed",
        api_key: Optional[str] = None,
        batch_size: int = 16,
        max_batch_tokens: int = 8000,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize embedding service.

        Args:
            base_url: Provider base URL (``/embeddings`` is appended)
            model: Embedding model name
            api_key: Default credential, used when a call supplies none
            batch_size: Maximum passages per provider request
            max_batch_tokens: Maximum estimated tokens per provider request
            timeout: Transport timeout in seconds
            transport: Optional httpx transport (tests inject a mock)
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.batch_size = batch_size
        self.max_batch_tokens = max_batch_tokens
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _make_batches(self, texts: Sequence[str]) -> List[List[str]]:
        """Pack texts into batches bounded by item count and estimated tokens."""
        batches: List[List[str]] = []
        current: List[str] = []
        current_tokens = 0

        for text in texts:
            tokens = estimate_token_count(text)
            # An oversized single text still goes out alone
            if current and (len(current) >= self.batch_size or current_tokens + tokens > self.max_batch_tokens):
                batches.append(current)
                current = []
                current_tokens = 0
            current.append(text)
            current_tokens += tokens

        if current:
            batches.append(current)
        return batches

    async def _request_batch(self, batch: List[str], api_key: str) -> List[List[float]]:
        start_time = time.time()
        try:
            response = await self.client.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": batch},
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Embedding request failed: {str(e)}")
            raise EmbeddingError(f"Failed to generate embeddings: {str(e)}")
        finally:
            PROVIDER_LATENCY.labels(provider="embeddings").observe(time.time() - start_time)

        if response.status_code >= 400:
            logger.error(
                "Embedding provider returned an error",
                extra={"provider_status": response.status_code},
            )
            raise EmbeddingError(
                f"Embedding provider returned status {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = sorted(response.json()["data"], key=lambda item: item.get("index", 0))
            vectors = [[float(value) for value in item["embedding"]] for item in data]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise EmbeddingError(f"Malformed embedding response: {str(e)}", body=response.text)

        if len(vectors) != len(batch):
            raise EmbeddingError(
                f"Embedding count mismatch: sent {len(batch)} texts, received {len(vectors)} vectors"
            )
        return vectors

    async def embed_texts(self, texts: Sequence[str], api_key: Optional[str] = None) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Batches are sent one after another. Any failure fails the whole
        call; no partial result is returned.

        Args:
            texts: Texts to embed
            api_key: Per-request credential

        Returns:
            One vector per input text, in input order
        """
        if not texts:
            return []

        key = resolve_api_key(api_key, self.api_key)
        batches = self._make_batches(texts)

        with tracer.start_as_current_span("embeddings.embed_texts") as span:
            span.set_attribute("embedding.model", self.model)
            span.set_attribute("embedding.text_count", len(texts))
            span.set_attribute("embedding.batch_count", len(batches))

            embeddings: List[List[float]] = []
            for batch in batches:
                embeddings.extend(await self._request_batch(batch, key))

        dimensions = {len(vector) for vector in embeddings}
        if len(dimensions) > 1 or 0 in dimensions:
            raise EmbeddingError(f"Inconsistent embedding dimensions: {sorted(dimensions)}")

        logger.info(f"Generated {len(embeddings)} embeddings in {len(batches)} batches")
        return embeddings

    async def embed_query(self, text: str, api_key: Optional[str] = None) -> List[float]:
        """Generate the embedding of a single query string."""
        return (await self.embed_texts([text], api_key=api_key))[0]

    async def aclose(self) -> None:
        await self.client.aclose()
