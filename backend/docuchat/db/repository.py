from typing import List, Optional, Sequence

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docuchat.db.models import (
    Chunk,
    Collection,
    Conversation,
    Document,
    DocumentStatus,
    Message,
    UsageRecord,
    utcnow,
)
from docuchat.exceptions import NotFoundError
from docuchat.models.chat import TokenUsage
from docuchat.models.document import CandidateChunk, Passage
from docuchat.utils.logger import logger


CHUNK_INSERT_BATCH_SIZE = 100


class Repository:
    """
    Datastore operations for collections, documents, chunks and chat history.

    Every public method is one unit of work with its own session and
    transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def create_collection(
        self, owner_id: str, name: str, description: Optional[str] = None
    ) -> Collection:
        async with self.session_factory() as db:
            collection = Collection(owner_id=owner_id, name=name, description=description)
            db.add(collection)
            await db.commit()
            await db.refresh(collection)
        logger.info("Collection created", extra={"collection_id": collection.id})
        return collection

    async def get_collection(self, collection_id: str, owner_id: Optional[str] = None) -> Optional[Collection]:
        async with self.session_factory() as db:
            query = select(Collection).where(Collection.id == collection_id)
            if owner_id is not None:
                query = query.where(Collection.owner_id == owner_id)
            out = await db.execute(query)
            return out.scalar_one_or_none()

    async def delete_collection(self, collection_id: str) -> List[str]:
        """
        Delete a collection with its chunks, documents and conversations.

        Returns:
            Storage ids of the collection's documents, for best-effort removal
        """
        async with self.session_factory() as db:
            out = await db.execute(
                select(Document.storage_id).where(
                    Document.collection_id == collection_id, Document.is_deleted.is_(False)
                )
            )
            storage_ids = list(out.scalars().all())

            conversation_ids = select(Conversation.id).where(Conversation.collection_id == collection_id)
            await db.execute(delete(Chunk).where(Chunk.collection_id == collection_id))
            await db.execute(delete(Message).where(Message.conversation_id.in_(conversation_ids)))
            await db.execute(delete(Conversation).where(Conversation.collection_id == collection_id))
            await db.execute(delete(Document).where(Document.collection_id == collection_id))
            await db.execute(delete(Collection).where(Collection.id == collection_id))
            await db.commit()

        logger.info("Collection deleted", extra={"collection_id": collection_id})
        return storage_ids

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def create_document(
        self,
        collection_id: str,
        name: str,
        size: int,
        extension: str,
        mime_type: Optional[str],
        storage_url: str,
        storage_id: str,
    ) -> Document:
        async with self.session_factory() as db:
            document = Document(
                collection_id=collection_id,
                name=name,
                size=size,
                extension=extension,
                mime_type=mime_type,
                storage_url=storage_url,
                storage_id=storage_id,
                processing_status=DocumentStatus.PENDING,
            )
            db.add(document)
            await db.execute(
                update(Collection)
                .where(Collection.id == collection_id)
                .values(document_count=Collection.document_count + 1, updated_at=utcnow())
            )
            await db.commit()
            await db.refresh(document)

        logger.info(
            "Document registered",
            extra={"document_id": document.id, "collection_id": collection_id, "status": document.processing_status},
        )
        return document

    async def get_document(self, document_id: str, owner_id: Optional[str] = None) -> Optional[Document]:
        """Fetch a live document, optionally scoped to the owner of its collection."""
        async with self.session_factory() as db:
            query = select(Document).where(Document.id == document_id, Document.is_deleted.is_(False))
            if owner_id is not None:
                query = query.join(Collection, Collection.id == Document.collection_id).where(
                    Collection.owner_id == owner_id
                )
            out = await db.execute(query)
            return out.scalar_one_or_none()

    async def list_documents(self, collection_id: str) -> List[Document]:
        async with self.session_factory() as db:
            out = await db.execute(
                select(Document)
                .where(Document.collection_id == collection_id, Document.is_deleted.is_(False))
                .order_by(Document.created_at.desc())
            )
            return list(out.scalars().all())

    async def list_unfinished_documents(self) -> List[Document]:
        """Documents left pending or in flight, e.g. by a crash."""
        async with self.session_factory() as db:
            out = await db.execute(
                select(Document)
                .where(
                    Document.processing_status.in_(DocumentStatus.UNFINISHED),
                    Document.is_deleted.is_(False),
                )
                .order_by(Document.created_at)
            )
            return list(out.scalars().all())

    async def count_chunks(self, document_id: str) -> int:
        async with self.session_factory() as db:
            out = await db.execute(select(func.count()).select_from(Chunk).where(Chunk.document_id == document_id))
            return out.scalar_one()

    async def mark_processing(self, document_id: str) -> Document:
        """Enter ``processing``, dropping any chunks from an earlier run."""
        async with self.session_factory() as db:
            document = await db.get(Document, document_id)
            if document is None or document.is_deleted:
                raise NotFoundError("Document not found")

            await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
            document.processing_status = DocumentStatus.PROCESSING
            document.processing_started_at = utcnow()
            document.chunk_count = 0
            document.error_message = None
            await db.commit()
            await db.refresh(document)
            return document

    async def complete_document(
        self,
        document_id: str,
        passages: Sequence[Passage],
        embeddings: Sequence[List[float]],
        page_count: Optional[int],
    ) -> Document:
        """Insert all chunks and mark the document ``completed`` in one transaction."""
        if len(passages) != len(embeddings):
            raise ValueError("Every passage needs exactly one embedding")

        async with self.session_factory() as db:
            document = await db.get(Document, document_id)
            if document is None or document.is_deleted:
                raise NotFoundError("Document not found")

            rows = [
                {
                    "collection_id": document.collection_id,
                    "document_id": document_id,
                    "chunk_index": passage.chunk_index,
                    "content": passage.content,
                    "embedding": list(vector),
                    "token_count": passage.token_count,
                }
                for passage, vector in zip(passages, embeddings)
            ]
            for i in range(0, len(rows), CHUNK_INSERT_BATCH_SIZE):
                db.add_all([Chunk(**row) for row in rows[i:i + CHUNK_INSERT_BATCH_SIZE]])
                await db.flush()

            document.processing_status = DocumentStatus.COMPLETED
            document.chunk_count = len(rows)
            document.page_count = page_count
            document.processed_at = utcnow()
            document.processing_started_at = None
            document.error_message = None
            await db.commit()
            await db.refresh(document)
            return document

    async def fail_document(self, document_id: str, error_message: str) -> None:
        """Delete partial chunks and mark the document ``failed``."""
        async with self.session_factory() as db:
            await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
            await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(
                    processing_status=DocumentStatus.FAILED,
                    error_message=error_message,
                    chunk_count=0,
                    processing_started_at=None,
                    updated_at=utcnow(),
                )
            )
            await db.commit()

    async def soft_delete_document(self, document_id: str) -> Document:
        async with self.session_factory() as db:
            document = await db.get(Document, document_id)
            if document is None or document.is_deleted:
                raise NotFoundError("Document not found")

            await db.execute(delete(Chunk).where(Chunk.document_id == document_id))
            document.is_deleted = True
            document.deleted_at = utcnow()
            document.chunk_count = 0
            await db.execute(
                update(Collection)
                .where(Collection.id == document.collection_id)
                .values(
                    document_count=case((Collection.document_count > 0, Collection.document_count - 1), else_=0),
                    updated_at=utcnow(),
                )
            )
            await db.commit()
            await db.refresh(document)

        logger.info(
            "Document deleted",
            extra={"document_id": document_id, "collection_id": document.collection_id},
        )
        return document

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def load_candidates(self, collection_id: str, limit: int) -> List[CandidateChunk]:
        """Chunks of the collection's completed documents, newest document first."""
        async with self.session_factory() as db:
            out = await db.execute(
                select(Chunk, Document.name)
                .join(Document, Document.id == Chunk.document_id)
                .where(
                    Chunk.collection_id == collection_id,
                    Document.is_deleted.is_(False),
                    Document.processing_status == DocumentStatus.COMPLETED,
                )
                .order_by(Document.created_at.desc(), Document.id, Chunk.chunk_index)
                .limit(limit)
            )
            return [
                CandidateChunk(
                    id=chunk.id,
                    document_id=chunk.document_id,
                    document_name=document_name,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    embedding=list(chunk.embedding),
                )
                for chunk, document_name in out.all()
            ]

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def get_conversation(
        self, conversation_id: str, collection_id: Optional[str] = None, owner_id: Optional[str] = None
    ) -> Optional[Conversation]:
        async with self.session_factory() as db:
            query = select(Conversation).where(Conversation.id == conversation_id)
            if collection_id is not None:
                query = query.where(Conversation.collection_id == collection_id)
            if owner_id is not None:
                query = query.where(Conversation.owner_id == owner_id)
            out = await db.execute(query)
            return out.scalar_one_or_none()

    async def create_conversation(self, collection_id: str, owner_id: str, title: str) -> Conversation:
        async with self.session_factory() as db:
            conversation = Conversation(collection_id=collection_id, owner_id=owner_id, title=title)
            db.add(conversation)
            await db.commit()
            await db.refresh(conversation)

        logger.info(
            "Conversation created",
            extra={"conversation_id": conversation.id, "collection_id": collection_id},
        )
        return conversation

    async def list_conversations(self, collection_id: str, owner_id: str, limit: int = 50) -> List[Conversation]:
        async with self.session_factory() as db:
            out = await db.execute(
                select(Conversation)
                .where(Conversation.collection_id == collection_id, Conversation.owner_id == owner_id)
                .order_by(Conversation.updated_at.desc())
                .limit(limit)
            )
            return list(out.scalars().all())

    async def add_message(self, conversation_id: str, role: str, content: str) -> Message:
        async with self.session_factory() as db:
            message = Message(conversation_id=conversation_id, role=role, content=content)
            db.add(message)
            await db.commit()
            await db.refresh(message)
            return message

    async def recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        """The ``limit`` most recent messages, restored to chronological order."""
        if limit <= 0:
            return []
        async with self.session_factory() as db:
            out = await db.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
            )
            return list(reversed(out.scalars().all()))

    async def list_messages(self, conversation_id: str) -> List[Message]:
        async with self.session_factory() as db:
            out = await db.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at, Message.id)
            )
            return list(out.scalars().all())

    async def record_assistant_turn(
        self,
        conversation_id: str,
        content: str,
        owner_id: str,
        collection_id: str,
        model: str,
        usage: TokenUsage,
        request_type: str = "project_chat",
    ) -> Message:
        """Persist the assistant reply, bump the conversation and log usage atomically."""
        async with self.session_factory() as db:
            message = Message(conversation_id=conversation_id, role="assistant", content=content)
            db.add(message)
            await db.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(message_count=Conversation.message_count + 2, updated_at=utcnow())
            )
            db.add(
                UsageRecord(
                    owner_id=owner_id,
                    collection_id=collection_id,
                    conversation_id=conversation_id,
                    model=model,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    total_tokens=usage.total_tokens,
                    request_type=request_type,
                )
            )
            await db.commit()
            await db.refresh(message)
            return message

    async def list_usage(self, owner_id: str) -> List[UsageRecord]:
        async with self.session_factory() as db:
            out = await db.execute(
                select(UsageRecord).where(UsageRecord.owner_id == owner_id).order_by(UsageRecord.id)
            )
            return list(out.scalars().all())
