"""Pydantic schemas for API requests and responses."""
import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and renders camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class CollectionCreateRequest(CamelModel):
    """Request schema for creating a collection."""

    name: str = Field(..., min_length=1, max_length=200, description="Collection name")
    description: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Collection name cannot be empty")
        return v


class CollectionResponse(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    document_count: int = 0
    created_at: datetime
    updated_at: datetime


class SuccessResponse(CamelModel):
    success: bool = True


class DocumentUploadResponse(CamelModel):
    """Response schema for an accepted upload."""

    document_id: str = Field(..., description="Unique identifier for the uploaded document")
    name: str = Field(..., description="Original filename")
    status: str = Field(default="pending", description="Processing status")


class ProcessDocumentResponse(CamelModel):
    success: bool
    chunk_count: int
    page_count: Optional[int] = None


class DocumentStatusResponse(CamelModel):
    """Processing status of one document."""

    document_id: str
    status: str
    chunk_count: int = 0
    page_count: Optional[int] = None
    error_message: Optional[str] = None


class DocumentSummary(CamelModel):
    id: str
    name: str
    size: int
    extension: str
    processing_status: str
    chunk_count: int = 0
    page_count: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class ChatRequest(CamelModel):
    """Request schema for a chat turn."""

    collection_id: str = Field(..., min_length=1, description="Collection to answer from")
    message: str = Field(..., description="User's question")
    conversation_id: Optional[str] = Field(default=None, description="Existing conversation to continue")

    @field_validator("message")
    @classmethod
    def clean_message(cls, v: str) -> str:
        # Keep \n, \t and \r; drop other control characters
        return re.sub(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]", "", v).strip()


class ConversationSummary(CamelModel):
    id: str
    title: str
    message_count: int
    created_at: datetime
    updated_at: datetime


class MessageResponse(CamelModel):
    id: int
    role: str
    content: str
    created_at: datetime


class UsageRecordResponse(CamelModel):
    id: int
    collection_id: Optional[str] = None
    conversation_id: Optional[str] = None
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    request_type: str
    created_at: datetime


class UsageSummaryResponse(CamelModel):
    """Per-caller token usage totals plus the individual records."""

    input_tokens: int
    output_tokens: int
    total_tokens: int
    records: List[UsageRecordResponse]


class ErrorResponse(BaseModel):
    error: str
    details: Optional[object] = None
