"""Tests for the grounded chat orchestrator."""
import math
from unittest.mock import Mock

import httpx
import pytest

from docuchat.exceptions import (
    CompletionError,
    MissingCredentialError,
    NoDocumentsError,
    NotFoundError,
    ValidationError,
)
from docuchat.models.document import CandidateChunk, ScoredChunk
from docuchat.services.chat_service import ChatService, TranscriptAccumulator, build_context
from docuchat.services.llm_service import CompletionService
from docuchat.services.processing_service import DocumentProcessingService
from docuchat.services.retrieval_cache import cache_key
from conftest import OWNER_ID, delta_frame, sse_frame


@pytest.fixture
def chat_service(repository, cache, embedding_service, completion_service):
    return ChatService(
        repository=repository,
        cache=cache,
        embedding_service=embedding_service,
        completion_service=completion_service,
        top_k=3,
        max_history_messages=10,
    )


@pytest.fixture
async def indexed_collection(repository, storage, document_processor, chunker, embedding_service, cache, collection, sample_text):
    """A collection holding one completed document."""
    stored = await storage.upload(sample_text.encode(), "policies.txt")
    document = await repository.create_document(
        collection_id=collection.id,
        name="policies.txt",
        size=len(sample_text),
        extension="txt",
        mime_type="text/plain",
        storage_url=stored.url,
        storage_id=stored.public_id,
    )
    service = DocumentProcessingService(repository, storage, document_processor, chunker, embedding_service, cache)
    result = await service.process(document.id)
    assert result.succeeded
    return collection


async def consume(turn):
    return b"".join([chunk async for chunk in turn.body()])


class TestBuildContext:
    def test_numbered_and_sanitised(self):
        chunks = [
            ScoredChunk(CandidateChunk("c1", "d1", "a.txt", 0, "<b>bold</b>", [1.0]), 0.9),
            ScoredChunk(CandidateChunk("c2", "d2", "b.txt", 3, "plain\0text", [1.0]), 0.8),
        ]
        context = build_context(chunks)

        assert context == "[Document 1: a.txt]\nbbold/b\n\n---\n\n[Document 2: b.txt]\nplaintext"


class TestTranscriptAccumulator:
    def test_collects_deltas_and_usage(self):
        accumulator = TranscriptAccumulator()
        accumulator.feed(delta_frame("Hel"))
        accumulator.feed(delta_frame("lo") + b"data: {broken\n\n")
        accumulator.feed(sse_frame({"usage": {"prompt_tokens": 5, "completion_tokens": 2}}))
        accumulator.feed(sse_frame("[DONE]"))
        accumulator.finish()

        assert accumulator.content == "Hello"
        assert accumulator.usage.input_tokens == 5
        assert accumulator.usage.output_tokens == 2
        assert accumulator.done
        assert accumulator.malformed_frames == 1


class TestChatService:
    @pytest.mark.asyncio
    async def test_relays_and_persists_turn(self, chat_service, repository, indexed_collection, fake_provider):
        turn = await chat_service.start_turn(OWNER_ID, indexed_collection.id, "How long do refunds take?")
        body = await consume(turn)

        assert body == b"".join(fake_provider.chat_stream_parts())
        messages = await repository.list_messages(turn.conversation_id)
        assert [(m.role, m.content) for m in messages] == [
            ("user", "How long do refunds take?"),
            ("assistant", "Refunds are accepted within 30 days."),
        ]
        usage = await repository.list_usage(OWNER_ID)
        assert len(usage) == 1
        assert (usage[0].input_tokens, usage[0].output_tokens) == (120, 9)
        assert usage[0].conversation_id == turn.conversation_id

    @pytest.mark.asyncio
    async def test_prompt_is_grounded_in_retrieved_chunks(self, chat_service, indexed_collection, fake_provider):
        turn = await chat_service.start_turn(OWNER_ID, indexed_collection.id, "refund policy")
        await consume(turn)

        messages = fake_provider.chat_requests[0]["payload"]["messages"]
        assert messages[0]["role"] == "system"
        assert "[Document 1: policies.txt]" in messages[0]["content"]
        assert "not prior knowledge" in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "refund policy"}

    @pytest.mark.asyncio
    async def test_second_turn_includes_history(self, chat_service, repository, indexed_collection, fake_provider):
        first = await chat_service.start_turn(OWNER_ID, indexed_collection.id, "What is the refund policy?")
        await consume(first)
        fake_provider.answer_parts = ["Orders ship ", "in two days."]
        second = await chat_service.start_turn(
            OWNER_ID, indexed_collection.id, "And shipping?", conversation_id=first.conversation_id
        )
        await consume(second)

        messages = fake_provider.chat_requests[1]["payload"]["messages"]
        assert [(m["role"], m["content"]) for m in messages[1:]] == [
            ("user", "What is the refund policy?"),
            ("assistant", "Refunds are accepted within 30 days."),
            ("user", "And shipping?"),
        ]
        conversation = await repository.get_conversation(first.conversation_id)
        assert conversation.message_count == 4
        assert second.conversation_id == first.conversation_id

    @pytest.mark.asyncio
    async def test_new_conversation_title(self, chat_service, repository, indexed_collection):
        message = "refund " * 30
        turn = await chat_service.start_turn(OWNER_ID, indexed_collection.id, message)
        await consume(turn)

        conversation = await repository.get_conversation(turn.conversation_id)
        assert conversation.title == message.strip()[:100]

    @pytest.mark.asyncio
    async def test_empty_collection_creates_nothing(self, chat_service, repository, collection, fake_provider):
        with pytest.raises(NoDocumentsError):
            await chat_service.start_turn(OWNER_ID, collection.id, "Anything?")

        assert await repository.list_conversations(collection.id, OWNER_ID) == []
        assert await repository.list_usage(OWNER_ID) == []
        assert fake_provider.embedding_requests == []

    @pytest.mark.asyncio
    async def test_empty_message(self, chat_service, indexed_collection):
        with pytest.raises(ValidationError):
            await chat_service.start_turn(OWNER_ID, indexed_collection.id, "   ")

    @pytest.mark.asyncio
    async def test_missing_credential(self, chat_service, indexed_collection, embedding_service):
        embedding_service.api_key = None
        with pytest.raises(MissingCredentialError):
            await chat_service.start_turn(OWNER_ID, indexed_collection.id, "Hi")

    @pytest.mark.asyncio
    async def test_request_credential_used_for_both_providers(self, chat_service, indexed_collection, fake_provider):
        turn = await chat_service.start_turn(OWNER_ID, indexed_collection.id, "Hi", api_key="caller-key")
        await consume(turn)

        assert fake_provider.embedding_requests[-1]["headers"]["authorization"] == "Bearer caller-key"
        assert fake_provider.chat_requests[0]["headers"]["authorization"] == "Bearer caller-key"

    @pytest.mark.asyncio
    async def test_foreign_collection_and_conversation(self, chat_service, repository, indexed_collection):
        with pytest.raises(NotFoundError):
            await chat_service.start_turn("intruder", indexed_collection.id, "Hi")
        with pytest.raises(NotFoundError):
            await chat_service.start_turn(OWNER_ID, indexed_collection.id, "Hi", conversation_id="missing")

        other = await repository.create_collection(OWNER_ID, "Other")
        conversation = await repository.create_conversation(other.id, OWNER_ID, "Elsewhere")
        with pytest.raises(NotFoundError):
            await chat_service.start_turn(OWNER_ID, indexed_collection.id, "Hi", conversation_id=conversation.id)

    @pytest.mark.asyncio
    async def test_provider_error_is_raised_before_streaming(
        self, chat_service, repository, indexed_collection, fake_provider
    ):
        fake_provider.chat_status = 429

        with pytest.raises(CompletionError) as exc_info:
            await chat_service.start_turn(OWNER_ID, indexed_collection.id, "Hi")

        assert exc_info.value.status_code == 429
        conversations = await repository.list_conversations(indexed_collection.id, OWNER_ID)
        messages = await repository.list_messages(conversations[0].id)
        assert [m.role for m in messages] == ["user"]
        assert await repository.list_usage(OWNER_ID) == []

    @pytest.mark.asyncio
    async def test_disconnect_discards_partial_answer(self, chat_service, repository, indexed_collection):
        turn = await chat_service.start_turn(OWNER_ID, indexed_collection.id, "Hi")
        body = turn.body()
        await body.__anext__()
        await body.aclose()

        assert turn.outcome == "disconnected"
        assert turn.stream.response.is_closed
        assert [m.role for m in await repository.list_messages(turn.conversation_id)] == ["user"]
        assert await repository.list_usage(OWNER_ID) == []

    @pytest.mark.asyncio
    async def test_upstream_error_discards_partial_answer(
        self, repository, cache, embedding_service, indexed_collection
    ):
        async def broken_body():
            yield delta_frame("Partial")
            raise httpx.ReadError("connection reset")

        completion_service = CompletionService(
            base_url="https://provider.test/v1",
            api_key="test-key",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=broken_body())),
        )
        service = ChatService(repository, cache, embedding_service, completion_service)

        turn = await service.start_turn(OWNER_ID, indexed_collection.id, "Hi")
        body = await consume(turn)
        await completion_service.aclose()

        assert body == delta_frame("Partial")
        assert turn.outcome == "upstream_error"
        assert [m.role for m in await repository.list_messages(turn.conversation_id)] == ["user"]

    @pytest.mark.asyncio
    async def test_empty_answer_is_not_saved(self, chat_service, repository, indexed_collection, fake_provider):
        fake_provider.chat_body = [sse_frame("[DONE]")]

        turn = await chat_service.start_turn(OWNER_ID, indexed_collection.id, "Hi")
        await consume(turn)

        assert turn.outcome == "empty"
        assert [m.role for m in await repository.list_messages(turn.conversation_id)] == ["user"]

    @pytest.mark.asyncio
    async def test_odd_frame_is_relayed_and_skipped(self, chat_service, repository, indexed_collection, fake_provider):
        fake_provider.chat_body = [
            delta_frame("Refunds are "),
            sse_frame({"choices": [{"delta": "oops"}]}),
            delta_frame("accepted."),
            sse_frame("[DONE]"),
        ]

        turn = await chat_service.start_turn(OWNER_ID, indexed_collection.id, "Hi")
        body = await consume(turn)

        assert body == b"".join(fake_provider.chat_body)
        assert turn.outcome == "completed"
        assert turn.accumulator.malformed_frames == 1
        messages = await repository.list_messages(turn.conversation_id)
        assert [(m.role, m.content) for m in messages][-1] == ("assistant", "Refunds are accepted.")

    @pytest.mark.asyncio
    async def test_transcript_failure_does_not_stop_relay(self, chat_service, repository, indexed_collection, fake_provider):
        turn = await chat_service.start_turn(OWNER_ID, indexed_collection.id, "Hi")
        turn.accumulator.feed = Mock(side_effect=RuntimeError("decoder fault"))

        body = await consume(turn)

        assert body == b"".join(fake_provider.chat_stream_parts())
        assert turn.accumulator.feed.call_count == 1
        assert turn.outcome == "transcript_error"
        assert [m.role for m in await repository.list_messages(turn.conversation_id)] == ["user"]

    @pytest.mark.asyncio
    async def test_usage_estimated_when_not_reported(self, chat_service, repository, indexed_collection, fake_provider):
        fake_provider.usage = None

        turn = await chat_service.start_turn(OWNER_ID, indexed_collection.id, "refund policy")
        await consume(turn)

        prompt = fake_provider.chat_requests[0]["payload"]["messages"]
        usage = (await repository.list_usage(OWNER_ID))[0]
        assert usage.input_tokens == math.ceil(sum(len(m["content"]) for m in prompt) / 4)
        assert usage.output_tokens == math.ceil(len("Refunds are accepted within 30 days.") / 4)
        assert usage.total_tokens == usage.input_tokens + usage.output_tokens

    @pytest.mark.asyncio
    async def test_candidates_are_cached(self, chat_service, cache, indexed_collection):
        key = cache_key("chunks", indexed_collection.id)
        assert cache.get(key) is None

        turn = await chat_service.start_turn(OWNER_ID, indexed_collection.id, "Hi")
        await consume(turn)

        cached = cache.get(key)
        assert cached
        assert all(isinstance(candidate, CandidateChunk) for candidate in cached)

    @pytest.mark.asyncio
    async def test_fill_racing_invalidation_is_not_cached(self, chat_service, repository, cache, indexed_collection):
        load_candidates = repository.load_candidates

        async def load_then_invalidate(collection_id, limit):
            candidates = await load_candidates(collection_id, limit)
            cache.invalidate_collection(collection_id)
            return candidates

        repository.load_candidates = load_then_invalidate

        candidates = await chat_service.load_candidates(indexed_collection.id)

        assert candidates
        assert cache.get(cache_key("chunks", indexed_collection.id)) is None

    @pytest.mark.asyncio
    async def test_history_window_is_bounded(self, repository, cache, embedding_service, completion_service, indexed_collection, fake_provider):
        service = ChatService(
            repository, cache, embedding_service, completion_service, max_history_messages=2
        )
        first = await service.start_turn(OWNER_ID, indexed_collection.id, "one")
        await consume(first)
        second = await service.start_turn(OWNER_ID, indexed_collection.id, "two", conversation_id=first.conversation_id)
        await consume(second)
        third = await service.start_turn(OWNER_ID, indexed_collection.id, "three", conversation_id=first.conversation_id)
        await consume(third)

        messages = fake_provider.chat_requests[2]["payload"]["messages"]
        assert [m["content"] for m in messages[1:-1]] == ["two", "Refunds are accepted within 30 days."]
