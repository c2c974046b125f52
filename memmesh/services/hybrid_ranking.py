"""
Hybrid search ranking: blends lexical and vector scores into one ranked list.
"""

import re
from typing import Dict, List, Optional

from ..models.core import Memory, SearchHit, SearchResult
from ..utils.config import SearchConfig
from ..utils.logging_config import get_logger
from ..utils.vector_utils import similarity_from_cosine
from .answer_synthesis import AnswerSynthesisService
from .embedding_gateway import EmbeddingGateway
from .memory_store import MemoryStore, MemoryStoreError

logger = get_logger(__name__)

STOP_WORDS = frozenset([
    'a', 'an', 'and', 'are', 'as', 'at', 'be', 'by', 'for', 'from', 'has', 'he', 'in', 'is', 'it', 'its', 'of', 'on',
    'that', 'the', 'to', 'was', 'will', 'with', 'this', 'but', 'they', 'have', 'had', 'what', 'when', 'where', 'who',
    'which', 'why', 'how'
])

# (field, weight) for the keyword score; weights sum to 1 so the score stays in [0, 1]
KEYWORD_FIELDS = (('title', 0.5), ('summary', 0.3), ('content', 0.2))

_NON_WORD = re.compile(r'[^\w\s]')


class HybridRankingError(Exception):
    """Custom exception for hybrid ranking errors."""
    pass


def tokenize_query(query: str) -> List[str]:
    tokens = _NON_WORD.sub(' ', (query or '').lower()).split()
    return [token for token in tokens if len(token) > 2 and token not in STOP_WORDS]


def keyword_score(tokens: List[str], memory: Memory) -> float:
    """Weighted share of query tokens found in title, summary and content, in [0, 1]."""
    if not tokens:
        return 0.0

    texts = {name: (getattr(memory, name) or '').lower() for name, _ in KEYWORD_FIELDS}
    score = 0.0
    for token in tokens:
        pattern = re.compile(rf'\b{re.escape(token)}\b')
        for name, weight in KEYWORD_FIELDS:
            if pattern.search(texts[name]):
                score += weight
    return min(1.0, score / len(tokens))


class HybridRanker:
    """Runs the lexical and vector scans for a query and ranks their union.

    Either scan may fail or be skipped and the other still produces results;
    only when neither yields candidates does the search raise.
    """

    def __init__(self,
                 gateway: EmbeddingGateway,
                 store: MemoryStore,
                 config: SearchConfig,
                 synthesizer: Optional[AnswerSynthesisService] = None):
        self.gateway = gateway
        self.store = store
        self.config = config
        self.synthesizer = synthesizer

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.default_limit
        return max(1, min(int(limit), self.config.max_limit))

    def search(self, user_id: str, query: str, limit: Optional[int] = None) -> SearchResult:
        """
        Rank an owner's memories for a free-text query.

        Args:
            user_id: Owner whose memories are searched
            query: Free-text query
            limit: Maximum number of hits (clamped to the configured maximum)

        Returns:
            SearchResult with ranked hits and, when enabled, a cited answer

        Raises:
            HybridRankingError: If neither the lexical nor the vector scan produced candidates
        """
        limit = self.clamp_limit(limit)
        if not query or not query.strip():
            return SearchResult(query=query or '')

        candidate_count = limit * max(1, self.config.candidate_multiplier)

        lexical: Optional[Dict[str, float]] = None
        try:
            lexical = dict(self.store.lexical_search(user_id, query, candidate_count))
        except MemoryStoreError as e:
            logger.warning(f'Lexical scan failed for user {user_id}, continuing vector-only: {e}')

        semantic: Optional[Dict[str, float]] = None
        query_embedding = self.gateway.embed_query(query)
        if query_embedding.fallback:
            logger.info('Query embedding unavailable, skipping vector scan')
        else:
            try:
                semantic = {
                    memory_id: similarity_from_cosine(cosine, self.config.rescale_cosine)
                    for memory_id, cosine in self.store.vector_search(
                        user_id, query_embedding.vector, candidate_count, model_id=query_embedding.model_id)
                }
            except MemoryStoreError as e:
                logger.warning(f'Vector scan failed for user {user_id}, continuing lexical-only: {e}')

        if lexical is None and semantic is None:
            logger.error(f'Both lexical and vector scans unavailable for user {user_id}')
            raise HybridRankingError('Search failed: no lexical or vector results available')

        hits = self.rank(user_id, query, lexical or {}, semantic or {}, limit)
        result = SearchResult(query=query, hits=hits)

        if hits and self.synthesizer is not None and self.config.synthesize_answers:
            synthesized = self.synthesizer.synthesize_answer(query, hits[:self.config.answer_top_n])
            if synthesized is not None:
                result.answer, result.citations = synthesized

        logger.info(f'Search for user {user_id} returned {len(hits)} hits '
                    f'(lexical {len(lexical or {})}, vector {len(semantic or {})})')
        return result

    def rank(self, user_id: str, query: str, lexical: Dict[str, float], semantic: Dict[str, float],
             limit: int) -> List[SearchHit]:
        """Blend per-candidate scores, drop noise, sort and truncate."""
        candidate_ids = list(dict.fromkeys(list(lexical) + list(semantic)))
        if not candidate_ids:
            return []

        try:
            memories = self.store.get_memories(user_id, candidate_ids)
        except MemoryStoreError as e:
            raise HybridRankingError(f'Failed to load search candidates: {e}')

        tokens = tokenize_query(query)
        hits = []
        for memory_id in candidate_ids:
            memory = memories.get(memory_id)
            if memory is None:
                continue

            kw = keyword_score(tokens, memory) if memory_id in lexical else None
            sem = semantic.get(memory_id)
            if kw is not None and sem is not None:
                score = self.config.keyword_weight * kw + self.config.semantic_weight * sem
            else:
                score = kw if kw is not None else sem

            if score is None or score < self.config.min_score:
                continue
            hits.append(SearchHit(memory=memory, score=score, keyword_score=kw, semantic_score=sem))

        hits.sort(key=lambda hit: (-hit.score, -hit.memory.created_at.timestamp(), hit.memory.id))
        return hits[:limit]
