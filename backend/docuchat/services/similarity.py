"""Cosine similarity top-K search over an in-memory candidate set."""
import heapq
import math
from typing import List, Optional, Sequence

from docuchat.models.document import CandidateChunk, ScoredChunk
from docuchat.utils.logger import logger


def cosine_similarity(vector_a: Sequence[float], vector_b: Sequence[float]) -> float:
    """
    Dot product divided by the product of the vector magnitudes.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: If the vectors have different dimensions
    """
    if len(vector_a) != len(vector_b):
        raise ValueError(f"Vector dimensions differ: {len(vector_a)} != {len(vector_b)}")

    dot_product = sum(a * b for a, b in zip(vector_a, vector_b))
    magnitude_a = math.sqrt(sum(a * a for a in vector_a))
    magnitude_b = math.sqrt(sum(b * b for b in vector_b))
    if magnitude_a == 0 or magnitude_b == 0:
        return 0.0
    return dot_product / (magnitude_a * magnitude_b)


def top_k_similar(
    query_embedding: Sequence[float],
    candidates: Sequence[CandidateChunk],
    top_k: int = 5,
    min_score: Optional[float] = None,
) -> List[ScoredChunk]:
    """
    Rank candidates by cosine similarity to the query.

    Args:
        query_embedding: Query vector
        candidates: Chunks to score
        top_k: Number of results to return
        min_score: Optional floor below which candidates are dropped

    Returns:
        At most ``top_k`` scored chunks, highest score first; equal scores
        are ordered by ascending chunk index
    """
    if top_k <= 0 or not candidates:
        return []

    scored: List[ScoredChunk] = []
    skipped = 0
    for candidate in candidates:
        try:
            score = cosine_similarity(query_embedding, candidate.embedding)
        except ValueError:
            skipped += 1
            continue
        if min_score is not None and score < min_score:
            continue
        scored.append(ScoredChunk(chunk=candidate, score=score))

    if skipped:
        logger.warning(f"Skipped {skipped} candidate chunks with mismatched embedding dimensions")

    return heapq.nsmallest(
        top_k,
        scored,
        key=lambda item: (-item.score, item.chunk.chunk_index, item.chunk.document_id),
    )
