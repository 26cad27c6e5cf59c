"""Pytest configuration and fixtures."""
import json
import zlib
from typing import List, Optional

import httpx
import pytest

from docuchat.config import Settings
from docuchat.db.database import create_engine, create_session_factory, init_db
from docuchat.db.repository import Repository
from docuchat.services.chunking import TextChunker
from docuchat.services.document_processor import DocumentProcessor
from docuchat.services.embedding_service import EmbeddingService
from docuchat.services.llm_service import CompletionService
from docuchat.services.retrieval_cache import RetrievalCache
from docuchat.services.storage import LocalObjectStorage


EMBEDDING_DIMENSION = 16
OWNER_ID = "user-1"


def embed_words(text: str) -> List[float]:
    """Deterministic bag-of-words vector: one hashed bucket per word."""
    vector = [0.0] * EMBEDDING_DIMENSION
    for word in text.lower().split():
        word = word.strip(".,?!:;")
        if word:
            vector[zlib.crc32(word.encode()) % EMBEDDING_DIMENSION] += 1.0
    return vector


def sse_frame(payload) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode()


def delta_frame(text: str) -> bytes:
    return sse_frame({"choices": [{"index": 0, "delta": {"content": text}}]})


async def _iter_parts(parts: List[bytes]):
    for part in parts:
        yield part


class FakeProvider:
    """
    Embedding and chat completion endpoints behind an ``httpx.MockTransport``.

    Records every request so tests can inspect what was sent.
    """

    def __init__(self):
        self.embedding_requests: List[dict] = []
        self.chat_requests: List[dict] = []
        self.embedding_status = 200
        self.embedding_error_body = '{"message": "Unauthorized"}'
        self.chat_status = 200
        self.chat_error_body = '{"message": "Service unavailable"}'
        self.answer_parts = ["Refunds are ", "accepted within ", "30 days."]
        self.usage: Optional[dict] = {"prompt_tokens": 120, "completion_tokens": 9, "total_tokens": 129}
        self.chat_body: Optional[List[bytes]] = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def chat_stream_parts(self) -> List[bytes]:
        if self.chat_body is not None:
            return self.chat_body
        parts = [delta_frame(text) for text in self.answer_parts]
        if self.usage is not None:
            parts.append(sse_frame({"choices": [{"index": 0, "delta": {}}], "usage": self.usage}))
        parts.append(sse_frame("[DONE]"))
        return parts

    def handle(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)

        if request.url.path.endswith("/embeddings"):
            self.embedding_requests.append({"payload": payload, "headers": dict(request.headers)})
            if self.embedding_status != 200:
                return httpx.Response(self.embedding_status, text=self.embedding_error_body)
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"index": i, "embedding": embed_words(text)} for i, text in enumerate(payload["input"])
                    ]
                },
            )

        if request.url.path.endswith("/chat/completions"):
            self.chat_requests.append({"payload": payload, "headers": dict(request.headers)})
            if self.chat_status != 200:
                return httpx.Response(self.chat_status, text=self.chat_error_body)
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=_iter_parts(self.chat_stream_parts()),
            )

        return httpx.Response(404)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def settings(tmp_path):
    """Settings isolated to a temporary database and storage directory."""
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'docuchat.db'}",
        storage_dir=str(tmp_path / "uploads"),
        provider_api_key="test-key",
        provider_base_url="https://provider.test/v1",
        chunk_size=200,
        chunk_overlap=20,
        cache_sweep_interval_seconds=3600,
        processing_workers=1,
    )


@pytest.fixture
async def repository(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'repository.db'}")
    await init_db(engine)
    yield Repository(create_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(str(tmp_path / "objects"))


@pytest.fixture
def cache():
    return RetrievalCache(max_entries=100, default_ttl_seconds=300)


@pytest.fixture
def chunker():
    return TextChunker(chunk_size=200, chunk_overlap=20)


@pytest.fixture
def document_processor():
    return DocumentProcessor()


@pytest.fixture
async def embedding_service(fake_provider):
    service = EmbeddingService(
        base_url="https://provider.test/v1",
        api_key="test-key",
        batch_size=4,
        transport=fake_provider.transport,
    )
    yield service
    await service.aclose()


@pytest.fixture
async def completion_service(fake_provider):
    service = CompletionService(
        base_url="https://provider.test/v1",
        api_key="test-key",
        transport=fake_provider.transport,
    )
    yield service
    await service.aclose()


@pytest.fixture
async def collection(repository):
    return await repository.create_collection(OWNER_ID, "Handbook")


@pytest.fixture
def sample_text():
    """Plain text long enough to produce several chunks."""
    return (
        "Refund policy. Customers may request a refund within 30 days of purchase. "
        "Refunds are issued to the original payment method.\n\n"
        "Shipping policy. Orders ship within two business days. "
        "Express shipping is available for an additional fee.\n\n"
        "Warranty. Hardware carries a one year limited warranty covering defects in materials."
    )
