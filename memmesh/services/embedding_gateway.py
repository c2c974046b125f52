"""
Embedding gateway: text to vector, with a deterministic fallback when the provider fails.
"""

from typing import Optional

from ..models.core import EMBEDDING_CONTENT, Embedding
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from ..utils.vector_utils import FALLBACK_MODEL_ID, fallback_embedding

logger = get_logger(__name__)


class EmbeddingGateway:
    """Wraps the Bedrock embedding client.

    Provider failures never propagate: the gateway returns a hash-derived unit
    vector flagged ``fallback`` with model id ``hash-fallback-v1``, so scoring
    only ever compares it with other fallback vectors.
    """

    def __init__(self, embed_client: Optional[BedrockEmbed], dimension: int, model_id: str):
        self.embed_client = embed_client
        self.dimension = dimension
        self.model_id = model_id

    def _fallback(self, text: str, memory_id: str, embedding_type: str) -> Embedding:
        return Embedding(memory_id=memory_id,
                         embedding_type=embedding_type,
                         vector=fallback_embedding(text or '', self.dimension),
                         model_id=FALLBACK_MODEL_ID,
                         created_at=utc_now(),
                         fallback=True)

    def embed(self, text: str, embedding_type: str = EMBEDDING_CONTENT, memory_id: str = '') -> Embedding:
        """Embed document text for one memory and embedding type."""
        if self.embed_client is None or not text or not text.strip():
            return self._fallback(text, memory_id, embedding_type)

        try:
            vector = self.embed_client.embed_document(text)
        except BedrockEmbedError as e:
            logger.warning(f'Embedding provider failed for memory {memory_id or "?"} ({embedding_type}), '
                           f'using fallback vector: {e}')
            return self._fallback(text, memory_id, embedding_type)

        return Embedding(memory_id=memory_id,
                         embedding_type=embedding_type,
                         vector=vector,
                         model_id=self.model_id,
                         created_at=utc_now())

    def embed_query(self, query: str) -> Embedding:
        """Embed a search query. Check ``fallback`` before using the vector for a k-NN scan."""
        if self.embed_client is None or not query or not query.strip():
            return self._fallback(query, '', EMBEDDING_CONTENT)

        try:
            vector = self.embed_client.embed_query(query)
        except BedrockEmbedError as e:
            logger.warning(f'Query embedding failed, using fallback vector: {e}')
            return self._fallback(query, '', EMBEDDING_CONTENT)

        return Embedding(memory_id='',
                         embedding_type=EMBEDDING_CONTENT,
                         vector=vector,
                         model_id=self.model_id,
                         created_at=utc_now())
