"""Grounded chat over a collection's documents with a streamed answer."""
import time
from typing import AsyncIterator, List, Optional, Sequence

import anyio
import httpx

from docuchat.db.models import Conversation
from docuchat.db.repository import Repository
from docuchat.exceptions import (
    NoDocumentsError,
    NoRelevantContentError,
    NotFoundError,
    StreamTimeoutError,
    ValidationError,
)
from docuchat.models.chat import PromptMessage, TokenUsage
from docuchat.models.document import CandidateChunk, ScoredChunk
from docuchat.services.chunking import estimate_token_count
from docuchat.services.embedding_service import EmbeddingService, resolve_api_key
from docuchat.services.llm_service import CompletionService, CompletionStream, build_messages
from docuchat.services.retrieval_cache import CHUNKS_PURPOSE, RetrievalCache, cache_key
from docuchat.services.similarity import top_k_similar
from docuchat.services.stream_frames import StreamEnd, StreamFrameDecoder, TokenDelta, UsageSummary
from docuchat.utils.logger import logger
from docuchat.utils.metrics import CHAT_TURNS
from docuchat.utils.text_cleaner import sanitize_for_context


TITLE_MAX_LENGTH = 100
CONTEXT_SEPARATOR = "\n\n---\n\n"
REQUEST_TYPE = "project_chat"

SYSTEM_PROMPT_TEMPLATE = """You are a helpful assistant. Answer the user's question based on the following documents. If the answer is not in the documents, say so clearly.

Context information is below.
---------------------
{context}
---------------------
Given the context information and not prior knowledge, answer the query."""


def build_context(chunks: Sequence[ScoredChunk]) -> str:
    """Render retrieved chunks as numbered, sanitised document excerpts."""
    return CONTEXT_SEPARATOR.join(
        f"[Document {i}: {item.chunk.document_name}]\n{sanitize_for_context(item.chunk.content)}"
        for i, item in enumerate(chunks, 1)
    )


class TranscriptAccumulator:
    """Collects the answer text and usage from the bytes relayed to the caller."""

    def __init__(self):
        self.decoder = StreamFrameDecoder()
        self._parts: List[str] = []
        self.usage: Optional[UsageSummary] = None
        self.done = False
        self.malformed_frames = 0

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def feed(self, data: bytes) -> None:
        self._apply(self.decoder.feed(data))

    def finish(self) -> None:
        self._apply(self.decoder.flush())

    def _apply(self, events) -> None:
        for event in events:
            if isinstance(event, TokenDelta):
                self._parts.append(event.text)
            elif isinstance(event, UsageSummary):
                self.usage = event
            elif isinstance(event, StreamEnd):
                self.done = True
            else:
                self.malformed_frames += 1


class ChatTurn:
    """
    A chat turn whose provider stream is open and ready to relay.

    Iterating ``body()`` forwards every upstream chunk unchanged. The
    assistant message and usage record are saved only if the upstream
    stream ends cleanly with a non-empty answer.
    """

    def __init__(
        self,
        repository: Repository,
        stream: CompletionStream,
        conversation: Conversation,
        owner_id: str,
        model: str,
        prompt: Sequence[PromptMessage],
    ):
        self.repository = repository
        self.stream = stream
        self.conversation = conversation
        self.owner_id = owner_id
        self.model = model
        self.prompt = list(prompt)
        self.accumulator = TranscriptAccumulator()
        self.outcome = "pending"
        self.transcript_error: Optional[Exception] = None

    @property
    def conversation_id(self) -> str:
        return self.conversation.id

    def usage(self) -> TokenUsage:
        """Provider-reported usage, else length-based estimates."""
        reported = self.accumulator.usage
        input_tokens = reported.input_tokens if reported else 0
        output_tokens = reported.output_tokens if reported else 0
        if not input_tokens:
            input_tokens = estimate_token_count("".join(message.content for message in self.prompt))
        if not output_tokens:
            output_tokens = estimate_token_count(self.accumulator.content)
        return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)

    async def body(self) -> AsyncIterator[bytes]:
        start_time = time.time()
        self.outcome = "disconnected"
        try:
            async for chunk in self.stream.iter_bytes():
                self._record(self.accumulator.feed, chunk)
                yield chunk
            self._record(self.accumulator.finish)
            if self.transcript_error is not None:
                self.outcome = "transcript_error"
            else:
                self.outcome = "completed" if self.accumulator.content else "empty"
        except StreamTimeoutError:
            self.outcome = "timeout"
            logger.warning("Completion stream deadline reached", extra={"conversation_id": self.conversation_id})
        except httpx.HTTPError as e:
            self.outcome = "upstream_error"
            logger.error(f"Streaming error: {str(e)}", extra={"conversation_id": self.conversation_id})
        finally:
            # Runs on disconnect too, so it must not be interrupted by cancellation
            with anyio.CancelScope(shield=True):
                await self.stream.aclose()
                if self.outcome == "completed":
                    await self._persist(start_time)
                CHAT_TURNS.labels(outcome=self.outcome).inc()

    def _record(self, step, *args) -> None:
        """Feed the transcript; after a failure it stops collecting but relaying goes on."""
        if self.transcript_error is not None:
            return
        try:
            step(*args)
        except Exception as e:
            self.transcript_error = e
            logger.error(
                f"Failed to decode completion stream: {str(e)}",
                exc_info=True,
                extra={"conversation_id": self.conversation_id},
            )

    async def _persist(self, start_time: float) -> None:
        usage = self.usage()
        try:
            await self.repository.record_assistant_turn(
                conversation_id=self.conversation_id,
                content=self.accumulator.content,
                owner_id=self.owner_id,
                collection_id=self.conversation.collection_id,
                model=self.model,
                usage=usage,
                request_type=REQUEST_TYPE,
            )
        except Exception as e:
            self.outcome = "persist_failed"
            logger.error(
                f"Failed to save assistant message: {str(e)}",
                exc_info=True,
                extra={"conversation_id": self.conversation_id},
            )
            return

        logger.info(
            "Chat turn completed",
            extra={
                "conversation_id": self.conversation_id,
                "collection_id": self.conversation.collection_id,
                "token_usage": {
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                    "total_tokens": usage.total_tokens,
                },
                "answer_length": len(self.accumulator.content),
                "response_time_ms": (time.time() - start_time) * 1000,
            },
        )


class ChatService:
    """Runs retrieval and opens the provider stream for a chat turn."""

    def __init__(
        self,
        repository: Repository,
        cache: RetrievalCache,
        embedding_service: EmbeddingService,
        completion_service: CompletionService,
        top_k: int = 5,
        max_candidates: int = 500,
        max_history_messages: int = 10,
        min_similarity_score: Optional[float] = None,
    ):
        self.repository = repository
        self.cache = cache
        self.embedding_service = embedding_service
        self.completion_service = completion_service
        self.top_k = top_k
        self.max_candidates = max_candidates
        self.max_history_messages = max_history_messages
        # Cosine ranges over [-1, 1]; a floor at or below -1 filters nothing
        self.min_similarity_score = (
            min_similarity_score if min_similarity_score is not None and min_similarity_score > -1 else None
        )

    async def load_candidates(self, collection_id: str) -> Sequence[CandidateChunk]:
        """Chunk set of a collection, served from the cache when fresh."""
        key = cache_key(CHUNKS_PURPOSE, collection_id)
        candidates = self.cache.get(key)
        if candidates is not None:
            return candidates

        generation = self.cache.generation(key)
        candidates = tuple(await self.repository.load_candidates(collection_id, self.max_candidates))
        if candidates:
            self.cache.set(key, candidates, expected_generation=generation)
        return candidates

    async def start_turn(
        self,
        owner_id: str,
        collection_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> ChatTurn:
        """
        Prepare a chat turn up to the point where streaming can begin.

        Every error is raised here, before the caller has sent any byte,
        so it can still pick the HTTP status.

        Raises:
            ValidationError: Empty message
            MissingCredentialError: No provider credential
            NotFoundError: Unknown collection or conversation
            NoDocumentsError: The collection has nothing to search
            NoRelevantContentError: Retrieval returned nothing
            ProviderError: Embedding or completion provider failure
        """
        message = (message or "").strip()
        if not message:
            raise ValidationError("Message is required")

        key = resolve_api_key(api_key, self.embedding_service.api_key)

        collection = await self.repository.get_collection(collection_id, owner_id=owner_id)
        if collection is None:
            raise NotFoundError("Collection not found")

        conversation: Optional[Conversation] = None
        if conversation_id:
            conversation = await self.repository.get_conversation(
                conversation_id, collection_id=collection_id, owner_id=owner_id
            )
            if conversation is None:
                raise NotFoundError("Conversation not found")

        candidates = await self.load_candidates(collection_id)
        if not candidates:
            raise NoDocumentsError("No documents found in this collection. Please upload documents first.")

        query_embedding = await self.embedding_service.embed_query(message, api_key=key)
        top_chunks = top_k_similar(query_embedding, candidates, self.top_k, self.min_similarity_score)
        if not top_chunks:
            raise NoRelevantContentError("No relevant content found")

        logger.info(
            "Retrieved context for chat turn",
            extra={
                "collection_id": collection_id,
                "chunk_count": len(candidates),
                "similarity_scores": [round(item.score, 4) for item in top_chunks],
            },
        )

        if conversation is None:
            conversation = await self.repository.create_conversation(
                collection_id, owner_id, title=message[:TITLE_MAX_LENGTH]
            )
            history = []
        else:
            history = await self.repository.recent_messages(conversation.id, self.max_history_messages)

        await self.repository.add_message(conversation.id, "user", message)

        system_prompt = SYSTEM_PROMPT_TEMPLATE.format(context=build_context(top_chunks))
        prompt = build_messages(
            system_prompt,
            [PromptMessage(item.role, item.content) for item in history],
            message,
        )

        try:
            stream = await self.completion_service.open_stream(prompt, api_key=key)
        except Exception:
            CHAT_TURNS.labels(outcome="provider_error").inc()
            raise

        return ChatTurn(
            repository=self.repository,
            stream=stream,
            conversation=conversation,
            owner_id=owner_id,
            model=self.completion_service.model,
            prompt=prompt,
        )
