"""Document processing state machine: pending -> processing -> completed | failed."""
import asyncio
import time
import weakref
from typing import Optional

from docuchat.db.models import DocumentStatus
from docuchat.db.repository import Repository
from docuchat.exceptions import DocumentEmptyError, DocuchatError, EmbeddingError
from docuchat.models.document import ProcessingResult
from docuchat.services.chunking import TextChunker
from docuchat.services.document_processor import DocumentProcessor
from docuchat.services.embedding_service import EmbeddingService
from docuchat.services.retrieval_cache import RetrievalCache
from docuchat.services.storage import LocalObjectStorage
from docuchat.utils.logger import logger
from docuchat.utils.metrics import DOCUMENTS_PROCESSED
from docuchat.utils.tracer import tracer


NO_CONTENT_MESSAGE = "No content found in document"
NO_CHUNKS_MESSAGE = "No valid chunks created from document"


class DocumentProcessingService:
    """Turns a stored document into embedded chunks."""

    def __init__(
        self,
        repository: Repository,
        storage: LocalObjectStorage,
        processor: DocumentProcessor,
        chunker: TextChunker,
        embedding_service: EmbeddingService,
        cache: RetrievalCache,
    ):
        self.repository = repository
        self.storage = storage
        self.processor = processor
        self.chunker = chunker
        self.embedding_service = embedding_service
        self.cache = cache
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    async def process(self, document_id: str, api_key: Optional[str] = None) -> ProcessingResult:
        """
        Run the full pipeline for one document.

        Failures are recorded on the document and returned, not raised. A
        missing document raises NotFoundError before any state changes.
        Cancellation propagates and leaves the document ``processing``.
        """
        async with self._lock_for(document_id):
            document = await self.repository.mark_processing(document_id)
            start_time = time.time()

            with tracer.start_as_current_span("documents.process") as span:
                span.set_attribute("document.id", document_id)
                try:
                    content = await self.storage.fetch(document.storage_url)
                    extracted = await asyncio.to_thread(self.processor.extract, content, document.extension)
                    if not extracted.text.strip():
                        raise DocumentEmptyError(NO_CONTENT_MESSAGE)

                    passages = self.chunker.chunk(extracted.text)
                    if not passages:
                        raise DocumentEmptyError(NO_CHUNKS_MESSAGE)

                    embeddings = await self.embedding_service.embed_texts(
                        [passage.content for passage in passages], api_key=api_key
                    )
                    if len(embeddings) != len(passages):
                        raise EmbeddingError(
                            f"Embedding count mismatch: {len(passages)} chunks, {len(embeddings)} vectors"
                        )

                    completed = await self.repository.complete_document(
                        document_id, passages, embeddings, extracted.page_count
                    )
                except DocuchatError as e:
                    return await self._fail(document_id, document.collection_id, e.message)
                except Exception as e:
                    logger.error(f"Unexpected error processing document: {str(e)}", exc_info=True)
                    return await self._fail(document_id, document.collection_id, str(e) or type(e).__name__)

                span.set_attribute("document.chunk_count", completed.chunk_count)

        self.cache.invalidate_collection(document.collection_id)
        DOCUMENTS_PROCESSED.labels(status=DocumentStatus.COMPLETED).inc()
        logger.info(
            "Document processed",
            extra={
                "document_id": document_id,
                "collection_id": document.collection_id,
                "chunk_count": completed.chunk_count,
                "page_count": completed.page_count,
                "status": DocumentStatus.COMPLETED,
                "response_time_ms": (time.time() - start_time) * 1000,
            },
        )
        return ProcessingResult(
            document_id=document_id,
            status=DocumentStatus.COMPLETED,
            chunk_count=completed.chunk_count,
            page_count=completed.page_count,
        )

    async def _fail(self, document_id: str, collection_id: str, error_message: str) -> ProcessingResult:
        await self.repository.fail_document(document_id, error_message)
        self.cache.invalidate_collection(collection_id)
        DOCUMENTS_PROCESSED.labels(status=DocumentStatus.FAILED).inc()
        logger.warning(
            f"Document processing failed: {error_message}",
            extra={"document_id": document_id, "collection_id": collection_id, "status": DocumentStatus.FAILED},
        )
        return ProcessingResult(
            document_id=document_id,
            status=DocumentStatus.FAILED,
            error_message=error_message,
        )
