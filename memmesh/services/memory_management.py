"""
Memory Management Service for ingestion, relation building, graph navigation and search.
"""

import uuid
from typing import Any, Dict, List, Optional, Union

from ..models.core import (EMBEDDING_CONTENT, EMBEDDING_SUMMARY, EMBEDDING_TITLE, UNKNOWN_URL, IngestResult, Memory,
                           MemoryCluster, MemoryMesh, MemoryMetadata, MemoryRelations, RelationEdge, SearchResult)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig
from ..utils.health_check import check_health, get_health_status
from ..utils.logging_config import get_logger
from ..utils.neptune_client import CANDIDATE_LABEL, RELATION_LABEL, NeptuneClient
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import utc_now
from ..utils.ttl_cache import SearchCache, cache_key
from ..utils.worker_pool import WorkerPool, WorkerPoolError, WorkerPoolFullError
from .answer_synthesis import AnswerSynthesisService
from .canonicalization import canonicalize_content
from .duplicate_detection import DuplicateDetectionError, DuplicateDetector
from .embedding_gateway import EmbeddingGateway
from .enrichment import MemoryEnrichmentService
from .graph_shaping import GraphShaper, GraphShapingError, ShapedGraph
from .hybrid_ranking import HybridRanker, HybridRankingError
from .memory_navigation import MemoryNavigationError, MemoryNavigator
from .memory_store import MemoryStore, MemoryStoreError
from .relation_scoring import RelationScorer

logger = get_logger(__name__)

SCORE_TOLERANCE = 1e-9


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


class InvalidInputError(MemoryManagementError):
    """Raised synchronously when ingest or search input is rejected."""
    pass


class MemoryNotFoundError(MemoryManagementError):
    """Raised when a memory cannot be resolved for its owner."""
    pass


class MemoryManagementService:
    """Unified service for memory ingestion, relation graph maintenance and hybrid search.

    Collaborators default to the AWS-backed clients built from the
    configuration; any of them can be passed in instead.
    """

    def __init__(self,
                 app_config: Optional[AppConfig] = None,
                 store: Optional[MemoryStore] = None,
                 embed_client: Optional[BedrockEmbed] = None,
                 llm: Optional[BedrockLLM] = None,
                 worker_pool: Optional[WorkerPool] = None,
                 search_cache: Optional[SearchCache] = None):
        """Initialize the memory management service."""
        if app_config is None:
            from ..utils.config import config as default_config
            app_config = default_config
        self.config = app_config

        if store is None:
            store = MemoryStore(OpenSearchClient(app_config.opensearch), NeptuneClient(app_config.neptune))
            store.initialize()
        self.store = store
        self.embed = embed_client if embed_client is not None else BedrockEmbed(app_config.bedrock_embed)
        self.llm = llm if llm is not None else BedrockLLM(app_config.bedrock_llm)

        self.gateway = EmbeddingGateway(self.embed, app_config.bedrock_embed.dimension, app_config.bedrock_embed.model_id)
        self.duplicates = DuplicateDetector(self.store, app_config.ingestion)
        self.scorer = RelationScorer(app_config.relation)
        self.shaper = GraphShaper(app_config.relation)
        self.enrichment = MemoryEnrichmentService(self.llm)
        self.ranker = HybridRanker(self.gateway, self.store, app_config.search, AnswerSynthesisService(self.llm))
        self.navigator = MemoryNavigator(self.store, app_config.relation)

        self.worker_pool = worker_pool if worker_pool is not None else WorkerPool(app_config.worker, name='relations')
        self.search_cache = search_cache if search_cache is not None else SearchCache(app_config.cache)

        logger.info('Initialized MemoryManagementService')

    def start(self) -> None:
        """Start the background worker pool and the search cache sweeper."""
        self.worker_pool.start()
        self.search_cache.start()

    def stop(self, wait: bool = True) -> None:
        self.worker_pool.stop(wait=wait)
        self.search_cache.stop()

    def ingest(self,
               user_id: str,
               content: str,
               url: Optional[str] = None,
               metadata: Optional[Union[Dict[str, Any], MemoryMetadata]] = None,
               title: Optional[str] = None,
               source: Optional[str] = None,
               background: bool = True) -> IngestResult:
        """Store a captured text as a memory, or fold it into the memory it duplicates.

        The call returns once the memory record exists. Enrichment, embedding
        and relation building run on the worker pool, or inline when
        ``background`` is False.

        Args:
            user_id: Owner of the memory
            content: Raw captured text
            url: Source URL, if known
            metadata: Caller-supplied metadata (dict or MemoryMetadata)
            title: Page title
            source: Capture surface label
            background: Schedule processing on the worker pool

        Returns:
            IngestResult with the memory id and, for duplicates, the reason

        Raises:
            InvalidInputError: If the owner or content is rejected
            MemoryManagementError: If the memory cannot be stored
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInputError('Owner is required')
        if not isinstance(content, str) or not content.strip():
            raise InvalidInputError('Content is empty')
        max_length = self.config.ingestion.max_content_length
        if len(content) > max_length:
            raise InvalidInputError(f'Content is longer than {max_length} characters ({len(content)})')

        if isinstance(metadata, MemoryMetadata):
            incoming = metadata
        else:
            incoming = MemoryMetadata.from_dict(metadata)
        url = url.strip() if isinstance(url, str) and url.strip() else UNKNOWN_URL

        form = canonicalize_content(content, url)
        if not form.text:
            raise InvalidInputError('Content has no text left after canonicalization')

        try:
            match = self.duplicates.find_duplicate(user_id, form.text, form.hash, url)
            if match is not None:
                self.duplicates.merge_duplicate(match.memory, incoming)
                self.search_cache.invalidate_owner(user_id)
                return IngestResult(memory_id=match.memory.id, duplicate_of=match.memory.id, reason=match.reason)
        except DuplicateDetectionError as e:
            logger.error(f'Duplicate check failed during ingest for user {user_id}: {e}')
            raise MemoryManagementError(f'Memory ingest failed: {e}')

        memory = Memory(id=str(uuid.uuid4()),
                        user_id=user_id,
                        content=content,
                        canonical_text=form.text,
                        canonical_hash=form.hash,
                        url=url,
                        title=title.strip() if isinstance(title, str) and title.strip() else 'Untitled',
                        created_at=utc_now(),
                        metadata=incoming,
                        importance_score=self.config.ingestion.default_importance,
                        confidence_score=self.config.ingestion.default_confidence,
                        source=source)
        try:
            self.store.create_memory(memory)
        except MemoryStoreError as e:
            logger.error(f'Failed to store memory for user {user_id}: {e}')
            raise MemoryManagementError(f'Memory ingest failed: {e}')

        self.search_cache.invalidate_owner(user_id)
        logger.info(f'Ingested memory {memory.id} for user {user_id}')

        if not background:
            self.process_memory(memory.id, user_id)
            return IngestResult(memory_id=memory.id)

        try:
            task = self.worker_pool.submit(self.process_memory, memory.id, user_id)
        except WorkerPoolFullError as e:
            logger.warning(f'Relation building for memory {memory.id} not scheduled, run rebuild_relations later: {e}')
            return IngestResult(memory_id=memory.id)
        except WorkerPoolError as e:
            logger.warning(f'Relation building for memory {memory.id} not scheduled: {e}')
            return IngestResult(memory_id=memory.id)

        return IngestResult(memory_id=memory.id, task=task)

    def process_memory(self, memory_id: str, user_id: str) -> List[RelationEdge]:
        """Enrich and embed a stored memory, then rebuild its relations.

        Returns:
            Relation edges touching the memory after shaping
        """
        memory = self._require_memory(memory_id, user_id)

        try:
            if self.config.ingestion.enrich_with_llm and not memory.summary:
                self._enrich(memory)
            self._embed(memory)
        except MemoryStoreError as e:
            logger.error(f'Failed to process memory {memory_id}: {e}')
            raise MemoryManagementError(f'Memory processing failed: {e}')

        return self.rebuild_relations(memory_id, user_id, memory=memory)

    def _enrich(self, memory: Memory) -> None:
        enriched = self.enrichment.enrich(memory)
        if enriched is None:
            return

        summary, metadata = enriched
        memory.summary = summary or None
        if not memory.metadata.has_facets():
            # Caller-supplied scalar values win over generated ones
            memory.metadata = metadata.merge(memory.metadata, list_cap=self.config.ingestion.metadata_list_cap)
        self.store.update_memory(memory)

    def _embed(self, memory: Memory) -> None:
        texts = {EMBEDDING_CONTENT: memory.content, EMBEDDING_SUMMARY: memory.summary, EMBEDDING_TITLE: memory.title}
        for embedding_type, text in texts.items():
            if not text:
                continue
            current = memory.embedding(embedding_type)
            if current is not None and not current.fallback:
                continue

            embedding = self.gateway.embed(text, embedding_type, memory.id)
            if current is not None and embedding.fallback:
                continue
            self.store.append_embedding(memory, embedding)

    def _require_memory(self, memory_id: str, user_id: Optional[str]) -> Memory:
        try:
            memory = self.store.get_memory(memory_id, user_id, include_embeddings=True)
        except MemoryStoreError as e:
            raise MemoryManagementError(f'Failed to load memory {memory_id}: {e}')
        if memory is None:
            raise MemoryNotFoundError(f'Memory {memory_id} not found' + (f' for user {user_id}' if user_id else ''))
        return memory

    def rebuild_relations(self,
                          memory_id: str,
                          user_id: Optional[str] = None,
                          memory: Optional[Memory] = None) -> List[RelationEdge]:
        """Rescore one memory against its owner's memories and reshape the owner's graph.

        Every accepted score is kept as a candidate edge, and the owner's graph
        is always shaped from the full candidate set, never from the pruned
        graph. The memory's candidates are replaced by the fresh scores, so
        running it again without new data leaves the graph unchanged.

        Returns:
            Relation edges touching the memory after shaping

        Raises:
            MemoryNotFoundError: If the memory does not exist for the owner
            MemoryManagementError: If scoring inputs or edges cannot be loaded or stored
        """
        if memory is None:
            memory = self._require_memory(memory_id, user_id)
        owner = memory.user_id

        try:
            peers = self.store.list_memories(owner, self.config.relation.candidate_limit, include_embeddings=True)
            candidates = self.scorer.candidate_edges(memory, peers)

            stored = self.store.get_relation_edges(owner, label=CANDIDATE_LABEL)
            previous = [edge for edge in stored if edge.touches(memory.id)]
            others = [edge for edge in stored if not edge.touches(memory.id)]
            self._persist_edges(previous, candidates, label=CANDIDATE_LABEL)

            existing = self.store.get_relation_edges(owner)
            shaped = self.shaper.shape(owner, others + candidates)
            self._persist_edges(existing, shaped.edges)
        except (MemoryStoreError, GraphShapingError) as e:
            logger.error(f'Failed to rebuild relations of memory {memory.id}: {e}')
            raise MemoryManagementError(f'Relation rebuild failed: {e}')

        edges = [edge for edge in shaped.edges if edge.touches(memory.id)]
        logger.info(f'Rebuilt relations of memory {memory.id}: {len(candidates)} candidates, {len(edges)} kept')
        return edges

    def rebuild_owner_graph(self, user_id: str) -> ShapedGraph:
        """Rescore every pair of an owner's memories and replace the owner's candidates and graph.

        Returns:
            The shaped graph now stored for the owner
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInputError('Owner is required')

        try:
            memories = self.store.list_memories(user_id, self.config.relation.candidate_limit, include_embeddings=True)
            candidates = self.scorer.candidate_edges_for_owner(memories)
            self._persist_edges(self.store.get_relation_edges(user_id, label=CANDIDATE_LABEL),
                                candidates,
                                label=CANDIDATE_LABEL)

            existing = self.store.get_relation_edges(user_id)
            shaped = self.shaper.shape(user_id, candidates)
            self._persist_edges(existing, shaped.edges)
        except (MemoryStoreError, GraphShapingError) as e:
            logger.error(f'Failed to rebuild graph of user {user_id}: {e}')
            raise MemoryManagementError(f'Graph rebuild failed: {e}')

        logger.info(f'Rebuilt graph of user {user_id}: {len(memories)} memories, {len(shaped.edges)} edges')
        return shaped

    def _persist_edges(self,
                       existing: List[RelationEdge],
                       wanted: List[RelationEdge],
                       label: str = RELATION_LABEL) -> None:
        """Write only the difference between the stored and the wanted edge sets."""
        stored = {edge.key: edge for edge in existing}
        wanted_keys = {edge.key for edge in wanted}

        removed = [edge for key, edge in stored.items() if key not in wanted_keys]
        upserted = [
            edge for edge in wanted
            if edge.key not in stored or abs(stored[edge.key].score - edge.score) > SCORE_TOLERANCE
        ]
        if removed or upserted:
            self.store.apply_edge_changes(removed, upserted, label=label)

    def get_memory_mesh(self, user_id: str, limit: Optional[int] = None) -> MemoryMesh:
        """Recent memories of an owner with the shaped edges among them."""
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInputError('Owner is required')
        limit = self.config.relation.mesh_limit if limit is None else max(1, int(limit))

        try:
            return self.navigator.get_memory_mesh(user_id, limit)
        except MemoryNavigationError as e:
            raise MemoryManagementError(f'Memory mesh failed: {e}')

    def get_memory_with_relations(self, memory_id: str, user_id: str) -> MemoryRelations:
        """
        One memory with its related memories.

        Raises:
            MemoryNotFoundError: If the memory does not exist for the owner
        """
        try:
            relations = self.navigator.get_memory_with_relations(memory_id, user_id)
        except MemoryNavigationError as e:
            raise MemoryManagementError(f'Memory relations failed: {e}')
        if relations is None:
            raise MemoryNotFoundError(f'Memory {memory_id} not found for user {user_id}')
        return relations

    def get_memory_cluster(self, memory_id: str, user_id: str, depth: int = 2) -> MemoryCluster:
        """
        Memories reachable from one memory over strong edges within ``depth`` hops.

        Raises:
            InvalidInputError: If depth is negative
            MemoryNotFoundError: If the memory does not exist for the owner
        """
        if depth < 0:
            raise InvalidInputError(f'Cluster depth must not be negative, got {depth}')

        try:
            cluster = self.navigator.get_memory_cluster(memory_id, user_id, depth)
        except MemoryNavigationError as e:
            raise MemoryManagementError(f'Memory cluster failed: {e}')
        if cluster is None:
            raise MemoryNotFoundError(f'Memory {memory_id} not found for user {user_id}')
        return cluster

    def search(self, user_id: str, query: str, limit: Optional[int] = None) -> SearchResult:
        """Hybrid search over an owner's memories.

        Results are cached per (owner, normalized query, limit) until the TTL
        expires or the owner ingests again.

        Raises:
            InvalidInputError: If the owner is missing
            MemoryManagementError: If both the lexical and vector scans fail
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInputError('Owner is required')
        if not isinstance(query, str) or not query.strip():
            return SearchResult(query=query if isinstance(query, str) else '')

        limit = self.ranker.clamp_limit(limit)
        key = cache_key(user_id, query, limit)
        cached = self.search_cache.get(key)
        if cached is not None:
            logger.debug(f'Search cache hit for user {user_id}')
            return cached

        try:
            result = self.ranker.search(user_id, query, limit)
        except HybridRankingError as e:
            logger.error(f'Search failed for user {user_id}: {e}')
            raise MemoryManagementError(f'Memory search failed: {e}')

        self.search_cache.set(key, result)
        return result

    def _health_clients(self) -> Dict[str, Any]:
        return {
            'bedrock_llm': self.llm,
            'bedrock_embed': self.embed,
            'opensearch': getattr(self.store, 'opensearch', None),
            'neptune': getattr(self.store, 'neptune', None)
        }

    def health_check(self) -> bool:
        return check_health(self.config, **self._health_clients())

    def get_health_status(self) -> Dict[str, Any]:
        return get_health_status(self.config, **self._health_clients())
