"""Tests for cosine similarity search."""
import math

import pytest

from docuchat.models.document import CandidateChunk
from docuchat.services.similarity import cosine_similarity, top_k_similar


def make_candidate(index, embedding, document_id="doc-1"):
    return CandidateChunk(
        id=f"{document_id}-{index}",
        document_id=document_id,
        document_name="handbook.txt",
        chunk_index=index,
        content=f"chunk {index}",
        embedding=embedding,
    )


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_and_opposite(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_magnitude(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 2.0])


class TestTopKSimilar:
    def test_orders_by_descending_score(self):
        candidates = [
            make_candidate(0, [0.0, 1.0]),
            make_candidate(1, [1.0, 0.0]),
            make_candidate(2, [1.0, 1.0]),
        ]
        results = top_k_similar([1.0, 0.0], candidates, top_k=2)

        assert [r.chunk.chunk_index for r in results] == [1, 2]
        assert results[0].score == pytest.approx(1.0)
        assert results[1].score == pytest.approx(1 / math.sqrt(2))

    def test_ties_break_by_chunk_index(self):
        candidates = [make_candidate(i, [1.0, 1.0]) for i in (4, 1, 3, 0, 2)]
        results = top_k_similar([2.0, 2.0], candidates, top_k=3)

        assert [r.chunk.chunk_index for r in results] == [0, 1, 2]

    def test_fewer_candidates_than_k(self):
        candidates = [make_candidate(0, [1.0, 0.0]), make_candidate(1, [0.0, 1.0])]
        assert len(top_k_similar([1.0, 0.0], candidates, top_k=5)) == 2

    def test_empty_candidates(self):
        assert top_k_similar([1.0, 0.0], [], top_k=5) == []

    def test_skips_mismatched_dimensions(self):
        candidates = [make_candidate(0, [1.0, 0.0, 0.0]), make_candidate(1, [1.0, 0.0])]
        results = top_k_similar([1.0, 0.0], candidates, top_k=5)

        assert [r.chunk.chunk_index for r in results] == [1]

    def test_min_score_filters(self):
        candidates = [make_candidate(0, [1.0, 0.0]), make_candidate(1, [0.0, 1.0])]
        results = top_k_similar([1.0, 0.0], candidates, top_k=5, min_score=0.5)

        assert [r.chunk.chunk_index for r in results] == [0]
