"""Document data models."""
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class Passage:
    """A chunk of extracted text before it is embedded."""

    chunk_index: int
    content: str
    token_count: int


@dataclass
class ExtractedText:
    """Plain text extracted from an uploaded file."""

    text: str
    page_count: Optional[int] = None


@dataclass(frozen=True)
class CandidateChunk:
    """Snapshot of a stored chunk used as a retrieval candidate."""

    id: str
    document_id: str
    document_name: str
    chunk_index: int
    content: str
    embedding: List[float]


@dataclass(frozen=True)
class ScoredChunk:
    """A candidate chunk with its cosine similarity to the query."""

    chunk: CandidateChunk
    score: float


@dataclass
class ProcessingResult:
    """Outcome of one run of the document processing state machine."""

    document_id: str
    status: str
    chunk_count: int = 0
    page_count: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"
