"""Collection endpoints."""
from typing import List

from fastapi import APIRouter, Depends

from docuchat.api.deps import (
    get_owned_collection,
    get_repository,
    get_retrieval_cache,
    get_storage,
    require_identity,
)
from docuchat.api.schemas import (
    CollectionCreateRequest,
    CollectionResponse,
    ConversationSummary,
    DocumentSummary,
    SuccessResponse,
)
from docuchat.db.models import Collection
from docuchat.db.repository import Repository
from docuchat.exceptions import StorageError
from docuchat.services.retrieval_cache import RetrievalCache
from docuchat.services.storage import LocalObjectStorage
from docuchat.utils.logger import logger


router = APIRouter(prefix="/collections", tags=["collections"])


@router.post("", response_model=CollectionResponse, status_code=201)
async def create_collection(
    request: CollectionCreateRequest,
    owner_id: str = Depends(require_identity),
    repository: Repository = Depends(get_repository),
):
    """Create an empty collection owned by the caller."""
    return await repository.create_collection(owner_id, request.name, request.description)


@router.get("/{collection_id}/documents", response_model=List[DocumentSummary])
async def list_collection_documents(
    collection: Collection = Depends(get_owned_collection),
    repository: Repository = Depends(get_repository),
):
    return await repository.list_documents(collection.id)


@router.get("/{collection_id}/conversations", response_model=List[ConversationSummary])
async def list_collection_conversations(
    collection: Collection = Depends(get_owned_collection),
    owner_id: str = Depends(require_identity),
    repository: Repository = Depends(get_repository),
):
    return await repository.list_conversations(collection.id, owner_id)


@router.delete("/{collection_id}", response_model=SuccessResponse)
async def delete_collection(
    collection: Collection = Depends(get_owned_collection),
    repository: Repository = Depends(get_repository),
    storage: LocalObjectStorage = Depends(get_storage),
    cache: RetrievalCache = Depends(get_retrieval_cache),
):
    """
    Delete a collection with its documents, chunks and conversations.

    Stored files are removed afterwards; a failed file removal is logged
    and does not fail the request.
    """
    storage_ids = await repository.delete_collection(collection.id)
    cache.invalidate_collection(collection.id)

    for storage_id in storage_ids:
        try:
            await storage.delete(storage_id)
        except StorageError as e:
            logger.warning(
                f"Failed to delete stored file {storage_id}: {e.message}",
                extra={"collection_id": collection.id},
            )

    return SuccessResponse(success=True)
