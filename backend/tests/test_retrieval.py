"""Tests for retrieval utilities."""

import pytest

from scope_memory.retrieval.vector_index import VectorIndex, cosine_similarity


def test_vector_index_basic() -> None:
    index = VectorIndex(dim=3)
    index.upsert([1, 2], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    results = index.search([1.0, 0.0, 0.0], top_k=1)
    assert results
    assert results[0].chunk_idx == 1
    assert results[0].distance == pytest.approx(0.0)


def test_vector_index_remove_and_dimension_checks() -> None:
    index = VectorIndex(dim=2)
    index.upsert([1, 2], [[1.0, 0.0], [0.0, 1.0]])
    index.remove([1, 99])
    assert index.size == 1
    assert [item.chunk_idx for item in index.search([1.0, 0.0], top_k=5)] == [2]
    assert index.search([1.0, 0.0], top_k=5)[0].distance == pytest.approx(2**0.5)
    with pytest.raises(ValueError):
        index.search([1.0, 0.0, 0.0])
    with pytest.raises(ValueError):
        index.upsert([3], [[1.0]])


def test_cosine_similarity_handles_zero_vectors() -> None:
    assert cosine_similarity([1.0, 1.0], [2.0, 2.0]) == pytest.approx(1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
