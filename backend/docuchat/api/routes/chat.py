"""Chat endpoints: streamed grounded answers and conversation history."""
from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from docuchat.api.deps import get_api_key, get_chat_service, get_repository, require_identity
from docuchat.api.schemas import ChatRequest, MessageResponse, UsageRecordResponse, UsageSummaryResponse
from docuchat.db.repository import Repository
from docuchat.exceptions import NotFoundError
from docuchat.services.chat_service import ChatService
from docuchat.services.rate_limiter import rate_limit


router = APIRouter(tags=["chat"])


@router.post("/chat", dependencies=[Depends(rate_limit("chat", "rate_limit_chat"))])
async def chat(
    request: ChatRequest,
    owner_id: str = Depends(require_identity),
    api_key: Optional[str] = Depends(get_api_key),
    chat_service: ChatService = Depends(get_chat_service),
):
    """
    Answer a question from the collection's documents.

    Retrieval and the provider handshake finish before the response
    starts, so any failure still gets a proper status code. The body is
    the provider's event stream, relayed unchanged.
    """
    turn = await chat_service.start_turn(
        owner_id=owner_id,
        collection_id=request.collection_id,
        message=request.message,
        conversation_id=request.conversation_id,
        api_key=api_key,
    )
    return StreamingResponse(
        turn.body(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Conversation-Id": turn.conversation_id,
        },
    )


@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageResponse])
async def list_conversation_messages(
    conversation_id: str,
    owner_id: str = Depends(require_identity),
    repository: Repository = Depends(get_repository),
):
    conversation = await repository.get_conversation(conversation_id, owner_id=owner_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return await repository.list_messages(conversation.id)


@router.get("/usage", response_model=UsageSummaryResponse)
async def get_usage(
    owner_id: str = Depends(require_identity),
    repository: Repository = Depends(get_repository),
):
    """Token usage recorded for the caller's chat turns."""
    records = await repository.list_usage(owner_id)
    return UsageSummaryResponse(
        input_tokens=sum(record.input_tokens for record in records),
        output_tokens=sum(record.output_tokens for record in records),
        total_tokens=sum(record.total_tokens for record in records),
        records=[UsageRecordResponse.model_validate(record) for record in records],
    )
