"""Document upload, processing and status endpoints."""
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse

from docuchat.api.deps import (
    get_api_key,
    get_app_settings,
    get_document_processor,
    get_owned_document,
    get_processing_queue,
    get_processing_service,
    get_repository,
    get_retrieval_cache,
    get_storage,
    require_identity,
)
from docuchat.api.schemas import (
    DocumentStatusResponse,
    DocumentUploadResponse,
    ProcessDocumentResponse,
    SuccessResponse,
)
from docuchat.config import Settings
from docuchat.db.models import Document
from docuchat.db.repository import Repository
from docuchat.exceptions import FileSizeExceededError, NotFoundError, StorageError, ValidationError
from docuchat.services.document_processor import MIME_TYPES, DocumentProcessor
from docuchat.services.job_queue import ProcessingQueue
from docuchat.services.processing_service import DocumentProcessingService
from docuchat.services.rate_limiter import rate_limit
from docuchat.services.retrieval_cache import RetrievalCache
from docuchat.services.storage import LocalObjectStorage
from docuchat.utils.logger import logger


router = APIRouter(prefix="/documents", tags=["documents"])


@router.post(
    "",
    response_model=DocumentUploadResponse,
    status_code=202,
    dependencies=[Depends(rate_limit("upload", "rate_limit_upload"))],
)
async def upload_document(
    file: Annotated[UploadFile, File(...)],
    collection_id: Annotated[str, Form(...)],
    owner_id: str = Depends(require_identity),
    api_key: Optional[str] = Depends(get_api_key),
    settings: Settings = Depends(get_app_settings),
    repository: Repository = Depends(get_repository),
    storage: LocalObjectStorage = Depends(get_storage),
    processor: DocumentProcessor = Depends(get_document_processor),
    queue: ProcessingQueue = Depends(get_processing_queue),
):
    """
    Accept a document (PDF, DOCX, TXT or Markdown) for processing.

    The file is stored and registered as ``pending``; extraction, chunking
    and embedding run in the background. Poll the status endpoint for the
    outcome.

    Args:
        file: Document file to upload
        collection_id: Collection receiving the document

    Returns:
        DocumentUploadResponse with the document id and ``pending`` status
    """
    collection = await repository.get_collection(collection_id, owner_id=owner_id)
    if collection is None:
        raise NotFoundError("Collection not found")

    extension = processor.validate_file_type(file.filename)

    content = await file.read()
    if len(content) > settings.max_file_size_bytes:
        raise FileSizeExceededError(f"File too large. Maximum size is {settings.max_file_size_mb}MB")
    if not content:
        raise ValidationError("File is empty")

    stored = await storage.upload(content, file.filename)
    document = await repository.create_document(
        collection_id=collection.id,
        name=file.filename,
        size=len(content),
        extension=extension,
        mime_type=file.content_type or MIME_TYPES.get(extension),
        storage_url=stored.url,
        storage_id=stored.public_id,
    )
    queue.enqueue(document.id, api_key=api_key)

    logger.info(
        f"Document upload accepted: {file.filename}",
        extra={"document_id": document.id, "collection_id": collection.id},
    )
    return DocumentUploadResponse(document_id=document.id, name=document.name, status=document.processing_status)


@router.post(
    "/{document_id}/process",
    response_model=ProcessDocumentResponse,
    dependencies=[Depends(rate_limit("processing", "rate_limit_processing"))],
)
async def process_document(
    document: Document = Depends(get_owned_document),
    api_key: Optional[str] = Depends(get_api_key),
    processing_service: DocumentProcessingService = Depends(get_processing_service),
):
    """Run (or re-run) processing inline and report the outcome."""
    result = await processing_service.process(document.id, api_key=api_key)
    if not result.succeeded:
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to process document", "details": result.error_message},
        )
    return ProcessDocumentResponse(success=True, chunk_count=result.chunk_count, page_count=result.page_count)


@router.get("/{document_id}/status", response_model=DocumentStatusResponse)
async def get_document_status(document: Document = Depends(get_owned_document)):
    return DocumentStatusResponse(
        document_id=document.id,
        status=document.processing_status,
        chunk_count=document.chunk_count,
        page_count=document.page_count,
        error_message=document.error_message,
    )


@router.delete("/{document_id}", response_model=SuccessResponse)
async def delete_document(
    document: Document = Depends(get_owned_document),
    repository: Repository = Depends(get_repository),
    storage: LocalObjectStorage = Depends(get_storage),
    cache: RetrievalCache = Depends(get_retrieval_cache),
):
    """Soft-delete a document and drop its chunks from retrieval."""
    await repository.soft_delete_document(document.id)
    cache.invalidate_collection(document.collection_id)

    try:
        await storage.delete(document.storage_id)
    except StorageError as e:
        logger.warning(f"Failed to delete stored file: {e.message}", extra={"document_id": document.id})

    return SuccessResponse(success=True)
