"""Tests for the embedding gateway and vector helpers."""

import math

import pytest
from conftest import DIMENSION, EMBED_MODEL, FakeEmbedClient, unit

from memmesh.models.core import EMBEDDING_SUMMARY
from memmesh.services.embedding_gateway import EmbeddingGateway
from memmesh.utils.vector_utils import (FALLBACK_MODEL_ID, cosine_from_rescaled, cosine_similarity, fallback_embedding,
                                        rescale_cosine, similarity_from_cosine)


@pytest.fixture
def gateway(embed_client):
    return EmbeddingGateway(embed_client, DIMENSION, EMBED_MODEL)


class TestEmbeddingGateway:
    """Test provider and fallback embeddings."""

    def test_provider_embedding(self, gateway, embed_client):
        embed_client.vectors['hello world'] = unit(1.0)

        embedding = gateway.embed('hello world', EMBEDDING_SUMMARY, 'm1')

        assert embedding.vector == unit(1.0)
        assert embedding.model_id == EMBED_MODEL
        assert embedding.embedding_type == EMBEDDING_SUMMARY
        assert embedding.memory_id == 'm1'
        assert not embedding.fallback

    def test_provider_failure_uses_fallback(self, gateway, embed_client):
        embed_client.fail = True

        embedding = gateway.embed('hello world', memory_id='m1')

        assert embedding.fallback
        assert embedding.model_id == FALLBACK_MODEL_ID
        assert len(embedding.vector) == DIMENSION
        assert math.isclose(math.sqrt(sum(v * v for v in embedding.vector)), 1.0)
        assert embedding.vector == fallback_embedding('hello world', DIMENSION)

    def test_blank_text_skips_provider(self, gateway, embed_client):
        embedding = gateway.embed('   ')

        assert embedding.fallback
        assert embed_client.calls == []

    def test_without_client(self):
        embedding = EmbeddingGateway(None, DIMENSION, EMBED_MODEL).embed_query('hello')

        assert embedding.fallback

    def test_query_failure_uses_fallback(self, gateway, embed_client):
        embed_client.fail = True

        assert gateway.embed_query('find my notes').fallback

    def test_query_embedding(self, gateway, embed_client):
        embed_client.vectors['find my notes'] = unit(0.0, 1.0)

        embedding = gateway.embed_query('find my notes')

        assert embedding.vector == unit(0.0, 1.0)
        assert not embedding.fallback


class TestFallbackEmbedding:
    """Test the deterministic hash-derived vector."""

    def test_deterministic(self):
        assert fallback_embedding('same text', 64) == fallback_embedding('same text', 64)

    def test_empty_text_is_unit_vector(self):
        vector = fallback_embedding('', 32)
        assert math.isclose(math.sqrt(sum(v * v for v in vector)), 1.0)

    def test_shared_vocabulary_is_closer(self):
        a = fallback_embedding('python asyncio event loop tutorial', 1024)
        b = fallback_embedding('python asyncio event loop guide', 1024)
        c = fallback_embedding('chocolate cake recipe baking oven', 1024)

        assert cosine_similarity(a, b) > cosine_similarity(a, c)

    def test_provider_client_fake_is_deterministic(self):
        assert FakeEmbedClient().embed_document('x y z') == FakeEmbedClient().embed_document('x y z')


class TestCosine:
    """Test cosine similarity edge cases."""

    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_opposite(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    @pytest.mark.parametrize('a, b', [([], [1.0]), ([0.0, 0.0], [1.0, 0.0]), ([1.0], [1.0, 0.0])])
    def test_undefined(self, a, b):
        assert cosine_similarity(a, b) is None

    def test_rescale(self):
        assert rescale_cosine(-1.0) == 0.0
        assert rescale_cosine(0.0) == 0.5
        assert rescale_cosine(1.0) == 1.0

    def test_lucene_score_back_to_cosine(self):
        assert cosine_from_rescaled(0.5) == 0.0
        assert cosine_from_rescaled(1.0) == 1.0
        assert cosine_from_rescaled(rescale_cosine(0.3)) == pytest.approx(0.3)

    def test_similarity_clamps_raw_cosine_by_default(self):
        assert similarity_from_cosine(0.0) == 0.0
        assert similarity_from_cosine(-0.4) == 0.0
        assert similarity_from_cosine(0.7) == 0.7
        assert similarity_from_cosine(1.0000001) == 1.0

    def test_similarity_rescale_switch(self):
        assert similarity_from_cosine(0.0, rescale=True) == 0.5
        assert similarity_from_cosine(-1.0, rescale=True) == 0.0
