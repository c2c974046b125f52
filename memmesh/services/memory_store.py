"""
Memory persistence over OpenSearch (memory documents and vectors) and Neptune (relation graph).
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.core import (EMBEDDING_CONTENT, EMBEDDING_TYPES, UNKNOWN_URL, Embedding, Memory, MemoryMetadata,
                           RelationEdge)
from ..utils.logging_config import get_logger
from ..utils.neptune_client import RELATION_LABEL, NeptuneClient, NeptuneError
from ..utils.opensearch_client import FALLBACK_FIELD, OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import parse_datetime, to_datetime, to_iso
from .canonicalization import normalize_url

logger = get_logger(__name__)

EPOCH = to_datetime(0)


class MemoryStoreError(Exception):
    """Custom exception for memory store errors."""
    pass


def memory_to_document(memory: Memory) -> Dict[str, Any]:
    """Serialize a memory into its OpenSearch document."""
    document = {
        'id': memory.id,
        'user_id': memory.user_id,
        'content': memory.content,
        'canonical_text': memory.canonical_text,
        'canonical_hash': memory.canonical_hash,
        'url': memory.url,
        'normalized_url': normalize_url(memory.url),
        'title': memory.title,
        'summary': memory.summary,
        'source': memory.source,
        'metadata': memory.metadata.to_dict(),
        'importance_score': memory.importance_score,
        'confidence_score': memory.confidence_score,
        'access_count': memory.access_count,
        'created_at': to_iso(memory.created_at),
        'last_accessed': to_iso(memory.last_accessed),
        'embedding_models': {},
        FALLBACK_FIELD: {}
    }
    for embedding in memory.embeddings.values():
        document.update(_embedding_fields(embedding, document['embedding_models'], document[FALLBACK_FIELD]))
    return document


def _embedding_fields(embedding: Embedding, models: Dict[str, Any], fallbacks: Dict[str, Any]) -> Dict[str, Any]:
    """Document fields for one embedding.

    Provider vectors go to the k-NN field of their type. Fallback vectors are
    kept out of the k-NN index so a provider query vector never matches them.
    """
    models = dict(models)
    fallbacks = dict(fallbacks)
    models[embedding.embedding_type] = {
        'model_id': embedding.model_id,
        'created_at': to_iso(embedding.created_at),
        'fallback': embedding.fallback
    }

    fields: Dict[str, Any] = {'embedding_models': models}
    if embedding.fallback:
        fallbacks[embedding.embedding_type] = embedding.vector
        fields[f'embedding_{embedding.embedding_type}'] = None
    else:
        fallbacks.pop(embedding.embedding_type, None)
        fields[f'embedding_{embedding.embedding_type}'] = embedding.vector
    fields[FALLBACK_FIELD] = fallbacks

    if embedding.embedding_type == EMBEDDING_CONTENT:
        fields['content_model_id'] = None if embedding.fallback else embedding.model_id
    return fields


def document_to_memory(document: Dict[str, Any]) -> Memory:
    """Deserialize an OpenSearch document into a memory."""
    models = document.get('embedding_models') or {}
    fallbacks = document.get(FALLBACK_FIELD) or {}

    embeddings = {}
    for embedding_type in EMBEDDING_TYPES:
        info = models.get(embedding_type)
        if not info:
            continue
        vector = fallbacks.get(embedding_type) if info.get('fallback') else document.get(f'embedding_{embedding_type}')
        if not vector:
            # vectors excluded from the fetched source
            continue
        embeddings[embedding_type] = Embedding(memory_id=document['id'],
                                               embedding_type=embedding_type,
                                               vector=[float(v) for v in vector],
                                               model_id=info.get('model_id', ''),
                                               created_at=parse_datetime(info.get('created_at'), default=EPOCH),
                                               fallback=bool(info.get('fallback', False)))

    return Memory(id=document['id'],
                  user_id=document.get('user_id', ''),
                  content=document.get('content', ''),
                  canonical_text=document.get('canonical_text', ''),
                  canonical_hash=document.get('canonical_hash', ''),
                  url=document.get('url') or UNKNOWN_URL,
                  title=document.get('title') or '',
                  created_at=parse_datetime(document.get('created_at'), default=EPOCH),
                  summary=document.get('summary'),
                  metadata=MemoryMetadata.from_stored(document.get('metadata')),
                  importance_score=float(document.get('importance_score', 0.0)),
                  confidence_score=float(document.get('confidence_score', 0.0)),
                  access_count=int(document.get('access_count', 0)),
                  last_accessed=parse_datetime(document.get('last_accessed')),
                  source=document.get('source'),
                  embeddings=embeddings)


class MemoryStore:
    """Owner-scoped persistence for memories, their embeddings and relation edges.

    Vectors are only loaded when asked for, since they dominate document size.
    """

    def __init__(self, opensearch: OpenSearchClient, neptune: NeptuneClient):
        self.opensearch = opensearch
        self.neptune = neptune

    def initialize(self) -> None:
        try:
            self.opensearch.create_index_if_not_exists()
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch index: {e}')

    def create_memory(self, memory: Memory) -> Memory:
        try:
            indexed = self.opensearch.index_document(memory_to_document(memory))
        except OpenSearchError as e:
            logger.error(f'Error creating memory {memory.id}: {e}')
            raise MemoryStoreError(f'Failed to create memory: {e}')
        if not indexed:
            raise MemoryStoreError(f'Memory {memory.id} was not indexed')

        try:
            self.neptune.upsert_memory_vertex(memory.id, memory.user_id, to_iso(memory.created_at))
        except NeptuneError as e:
            # The vertex is created again before the first edge is written
            logger.warning(f'Could not create graph vertex for memory {memory.id}: {e}')

        logger.debug(f'Created memory {memory.id} for user {memory.user_id}')
        return memory

    def get_memory(self,
                   memory_id: str,
                   user_id: Optional[str] = None,
                   include_embeddings: bool = False) -> Optional[Memory]:
        try:
            hit = self.opensearch.get_document(memory_id, user_id, include_embeddings=include_embeddings)
        except OpenSearchError as e:
            raise MemoryStoreError(f'Failed to get memory {memory_id}: {e}')
        return document_to_memory(hit['document']) if hit else None

    def get_memories(self, user_id: str, memory_ids: Iterable[str]) -> Dict[str, Memory]:
        memory_ids = list(dict.fromkeys(memory_ids))
        if not memory_ids:
            return {}
        hits = self._search(user_id, [{'terms': {'id': memory_ids}}], size=len(memory_ids))
        return {memory.id: memory for memory in hits}

    def find_by_canonical_hash(self, user_id: str, canonical_hash: str) -> Optional[Memory]:
        hits = self._search(user_id, [{'term': {'canonical_hash': canonical_hash}}], size=1)
        return hits[0] if hits else None

    def find_recent_by_url(self, user_id: str, normalized_url: str, since: datetime, limit: int) -> List[Memory]:
        """Memories of one owner at a URL created at or after ``since``, newest first."""
        return self._search(user_id, [{
            'term': {
                'normalized_url': normalized_url
            }
        }, {
            'range': {
                'created_at': {
                    'gte': to_iso(since)
                }
            }
        }],
                            size=limit,
                            sort=[{
                                'created_at': {
                                    'order': 'desc'
                                }
                            }])

    def list_memories(self, user_id: str, limit: int, include_embeddings: bool = False) -> List[Memory]:
        """Most recent memories of one owner."""
        return self._search(user_id, [],
                            size=limit,
                            sort=[{
                                'created_at': {
                                    'order': 'desc'
                                }
                            }],
                            include_embeddings=include_embeddings)

    def _search(self,
                user_id: str,
                filters: List[Dict[str, Any]],
                size: int,
                sort: Optional[List[Dict[str, Any]]] = None,
                include_embeddings: bool = False) -> List[Memory]:
        try:
            hits = self.opensearch.search_documents(user_id,
                                                    filters,
                                                    size=size,
                                                    sort=sort,
                                                    include_embeddings=include_embeddings)
        except OpenSearchError as e:
            raise MemoryStoreError(f'Memory lookup failed: {e}')
        return [document_to_memory(hit['document']) for hit in hits]

    def update_memory(self, memory: Memory) -> Memory:
        """Persist the mutable attributes of a memory."""
        fields = {
            'summary': memory.summary,
            'metadata': memory.metadata.to_dict(),
            'importance_score': memory.importance_score,
            'confidence_score': memory.confidence_score,
            'access_count': memory.access_count,
            'last_accessed': to_iso(memory.last_accessed)
        }
        try:
            if not self.opensearch.update_document(memory.id, memory.user_id, fields):
                raise MemoryStoreError(f'Memory {memory.id} not found for update')
        except OpenSearchError as e:
            raise MemoryStoreError(f'Failed to update memory {memory.id}: {e}')
        return memory

    def append_embedding(self, memory: Memory, embedding: Embedding) -> bool:
        """Attach an embedding to a memory.

        Embeddings are append-only per type: an existing provider embedding is
        kept, while a fallback one may be replaced.

        Returns:
            True if the embedding was stored
        """
        current = memory.embeddings.get(embedding.embedding_type)
        if current is not None and not current.fallback:
            logger.debug(f'Memory {memory.id} already has a {embedding.embedding_type} embedding')
            return False

        models = {t: {'model_id': e.model_id, 'created_at': to_iso(e.created_at), 'fallback': e.fallback}
                  for t, e in memory.embeddings.items()}
        fallbacks = {t: e.vector for t, e in memory.embeddings.items() if e.fallback}
        try:
            updated = self.opensearch.update_document(memory.id, memory.user_id,
                                                      _embedding_fields(embedding, models, fallbacks))
        except OpenSearchError as e:
            raise MemoryStoreError(f'Failed to store embedding for memory {memory.id}: {e}')

        if updated:
            memory.embeddings[embedding.embedding_type] = embedding
        return updated

    def lexical_search(self, user_id: str, query: str, top_k: int) -> List[Tuple[str, float]]:
        try:
            return self.opensearch.lexical_search(user_id, query, top_k)
        except OpenSearchError as e:
            raise MemoryStoreError(f'Lexical scan failed: {e}')

    def vector_search(self,
                      user_id: str,
                      vector: List[float],
                      top_k: int,
                      model_id: Optional[str] = None) -> List[Tuple[str, float]]:
        """(memory_id, cosine) pairs of the owner's nearest content vectors, best first."""
        try:
            return self.opensearch.vector_search(user_id, vector, top_k, model_id=model_id)
        except OpenSearchError as e:
            raise MemoryStoreError(f'Vector scan failed: {e}')

    def get_relation_edges(self,
                           user_id: str,
                           memory_id: Optional[str] = None,
                           label: str = RELATION_LABEL) -> List[RelationEdge]:
        """Shaped relation edges of an owner, or the scored candidates with ``label=CANDIDATE_LABEL``."""
        try:
            return self.neptune.get_relation_edges(user_id, memory_id, label=label)
        except NeptuneError as e:
            raise MemoryStoreError(f'Failed to load {label} edges: {e}')

    def apply_edge_changes(self,
                           removed: List[RelationEdge],
                           upserted: List[RelationEdge],
                           label: str = RELATION_LABEL) -> None:
        """Delete stale edges and upsert new or rescored ones."""
        endpoints = sorted({(edge.user_id, memory_id) for edge in upserted for memory_id in edge.pair})
        try:
            for edge in removed:
                self.neptune.delete_relation_edge(edge.edge_id, edge.user_id, label=label)
            for user_id, memory_id in endpoints:
                self.neptune.upsert_memory_vertex(memory_id, user_id)
            for edge in upserted:
                self.neptune.upsert_relation_edge(edge, label=label)
        except NeptuneError as e:
            logger.error(f'Error applying {label} edge changes: {e}')
            raise MemoryStoreError(f'Failed to persist {label} edges: {e}')

        logger.debug(f'Removed {len(removed)} and upserted {len(upserted)} {label} edges')
