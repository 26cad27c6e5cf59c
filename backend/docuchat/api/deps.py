"""Request dependencies: services from app state, caller identity and credentials."""
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from docuchat.config import Settings
from docuchat.db.models import Collection, Document
from docuchat.db.repository import Repository
from docuchat.exceptions import AuthenticationError, NotFoundError
from docuchat.services.chat_service import ChatService
from docuchat.services.document_processor import DocumentProcessor
from docuchat.services.job_queue import ProcessingQueue
from docuchat.services.processing_service import DocumentProcessingService
from docuchat.services.retrieval_cache import RetrievalCache
from docuchat.services.storage import LocalObjectStorage


def _state(request: Request, name: str, label: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{label} not initialized")
    return service


def get_app_settings(request: Request) -> Settings:
    return _state(request, "settings", "Settings")


def get_repository(request: Request) -> Repository:
    return _state(request, "repository", "Database")


def get_storage(request: Request) -> LocalObjectStorage:
    return _state(request, "storage", "Object storage")


def get_document_processor(request: Request) -> DocumentProcessor:
    return _state(request, "document_processor", "Document processor")


def get_retrieval_cache(request: Request) -> RetrievalCache:
    return _state(request, "retrieval_cache", "Retrieval cache")


def get_processing_service(request: Request) -> DocumentProcessingService:
    return _state(request, "processing_service", "Processing service")


def get_processing_queue(request: Request) -> ProcessingQueue:
    return _state(request, "processing_queue", "Processing queue")


def get_chat_service(request: Request) -> ChatService:
    return _state(request, "chat_service", "Chat service")


def require_identity(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity set by the upstream gateway."""
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Unauthorized")
    return x_user_id.strip()


def get_api_key(
    x_api_key: Optional[str] = Header(default=None),
    x_mistral_api_key: Optional[str] = Header(default=None),
) -> Optional[str]:
    """Per-request provider credential, if the caller sent one."""
    return (x_api_key or x_mistral_api_key or "").strip() or None


async def get_owned_collection(
    collection_id: str,
    owner_id: str = Depends(require_identity),
    repository: Repository = Depends(get_repository),
) -> Collection:
    collection = await repository.get_collection(collection_id, owner_id=owner_id)
    if collection is None:
        raise NotFoundError("Collection not found")
    return collection


async def get_owned_document(
    document_id: str,
    owner_id: str = Depends(require_identity),
    repository: Repository = Depends(get_repository),
) -> Document:
    document = await repository.get_document(document_id, owner_id=owner_id)
    if document is None:
        raise NotFoundError("Document not found")
    return document
