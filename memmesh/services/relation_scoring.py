"""
Pairwise relation scoring between memories of one owner.

Three independent signals are scored for every pair: semantic (embedding
cosine), topical (metadata facet overlap) and temporal (capture time
proximity). Each accepted signal becomes one typed edge.
"""

import re
from datetime import datetime, timedelta
from itertools import combinations
from typing import Iterable, List, Optional, Sequence, Set

from ..models.core import (EMBEDDING_CONTENT, RELATION_SEMANTIC, RELATION_TEMPORAL, RELATION_TOPICAL, Memory, PairScores,
                           RelationEdge, pair_key)
from ..utils.config import RelationConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import ensure_utc, utc_now
from ..utils.vector_utils import cosine_similarity, similarity_from_cosine
from .canonicalization import extract_hostname

logger = get_logger(__name__)

ONE_HOUR = timedelta(hours=1)
ONE_DAY = timedelta(days=1)
ONE_WEEK = timedelta(days=7)
ONE_MONTH = timedelta(days=30)

# (window, base score, span) per temporal band, nearest first
TEMPORAL_BANDS = ((ONE_HOUR, 0.9, 0.1), (ONE_DAY, 0.7, 0.2), (ONE_WEEK, 0.4, 0.3), (ONE_MONTH, 0.1, 0.3))

TOPICAL_WEIGHTS = (('topics', 0.4), ('categories', 0.3), ('key_points', 0.2), ('searchable_terms', 0.1))


def set_overlap(a: Iterable[str], b: Iterable[str]) -> float:
    """|A ∩ B| / |A ∪ B|, or 0 when either side is empty."""
    set_a, set_b = set(a), set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def temporal_similarity(created_a: datetime, created_b: datetime) -> float:
    delta = abs(ensure_utc(created_a) - ensure_utc(created_b))
    for window, base, span in TEMPORAL_BANDS:
        if delta <= window:
            return base + span * (1 - delta / window)
    return 0.0


class RelationScorer:
    """Scores memory pairs and turns accepted scores into relation edges."""

    def __init__(self, config: RelationConfig):
        self.config = config
        self.thresholds = {
            RELATION_SEMANTIC: config.semantic_threshold,
            RELATION_TOPICAL: config.topical_threshold,
            RELATION_TEMPORAL: config.temporal_threshold
        }

    def surface_of(self, memory: Memory) -> Optional[str]:
        hostname = extract_hostname(memory.url)
        if hostname is None:
            return None
        surface = self.config.surface_hosts.get(hostname)
        if surface is None:
            # subdomains such as us02web.zoom.us
            for host, candidate in self.config.surface_hosts.items():
                if hostname.endswith(f'.{host}'):
                    return candidate
        return surface

    @staticmethod
    def _mentioned(memory: Memory, keywords: Iterable[str]) -> Set[str]:
        text = ' '.join(part for part in (memory.title, memory.summary, memory.content) if part).lower()
        return {keyword for keyword in keywords if re.search(rf'\b{re.escape(keyword)}\b', text)}

    def semantic_score(self, a: Memory, b: Memory) -> Optional[float]:
        emb_a = a.embedding(EMBEDDING_CONTENT)
        emb_b = b.embedding(EMBEDDING_CONTENT)
        if emb_a is None or emb_b is None or emb_a.model_id != emb_b.model_id:
            return None

        cosine = cosine_similarity(emb_a.vector, emb_b.vector)
        if cosine is None:
            return None
        score = similarity_from_cosine(cosine, self.config.rescale_cosine)

        surface_a = self.surface_of(a)
        surface_b = self.surface_of(b)
        if surface_a is None or surface_b is None:
            return score

        if score < self.config.high_confidence_band:
            for penalty in self.config.surface_penalties:
                if (surface_a, surface_b) in (penalty.surfaces, penalty.surfaces[::-1]):
                    score *= penalty.multiplier
                    break

        for boost in self.config.surface_boosts:
            if surface_a == surface_b == boost.surface:
                if self._mentioned(a, boost.keywords) & self._mentioned(b, boost.keywords):
                    score *= boost.multiplier
                break

        return min(1.0, score)

    def topical_score(self, a: Memory, b: Memory) -> Optional[float]:
        if not a.metadata.has_facets() or not b.metadata.has_facets():
            return None

        score = sum(weight * set_overlap(getattr(a.metadata, facet), getattr(b.metadata, facet))
                    for facet, weight in TOPICAL_WEIGHTS)

        host_a = extract_hostname(a.url)
        if host_a is not None and host_a == extract_hostname(b.url):
            score += self.config.same_host_bonus

        return min(1.0, score)

    def temporal_score(self, a: Memory, b: Memory) -> Optional[float]:
        if a.created_at is None or b.created_at is None:
            return None
        return temporal_similarity(a.created_at, b.created_at)

    def score_pair(self, a: Memory, b: Memory) -> PairScores:
        return PairScores(semantic=self.semantic_score(a, b),
                          topical=self.topical_score(a, b),
                          temporal=self.temporal_score(a, b))

    def accepted(self, relation_type: str, score: Optional[float]) -> bool:
        return score is not None and self.thresholds[relation_type] <= score <= 1.0

    def edges_for_pair(self, a: Memory, b: Memory, created_at: Optional[datetime] = None) -> List[RelationEdge]:
        """Typed edges for every accepted signal of one pair, oriented from the smaller id."""
        created_at = created_at or utc_now()
        source_id, target_id = pair_key(a.id, b.id)

        edges = []
        for relation_type, score in self.score_pair(a, b).items():
            if self.accepted(relation_type, score):
                edges.append(
                    RelationEdge(user_id=a.user_id,
                                 source_id=source_id,
                                 target_id=target_id,
                                 relation_type=relation_type,
                                 score=score,
                                 created_at=created_at))
        return edges

    def candidate_edges(self, memory: Memory, peers: Sequence[Memory]) -> List[RelationEdge]:
        """Score one memory against its peers.

        Peers that are the memory itself, belong to another owner or repeat
        an id already scored are skipped, so each pair is scored once.
        """
        created_at = utc_now()
        seen = set()
        edges = []
        for peer in peers:
            if peer.id == memory.id or peer.user_id != memory.user_id or peer.id in seen:
                continue
            seen.add(peer.id)
            edges.extend(self.edges_for_pair(memory, peer, created_at))

        logger.debug(f'Scored {len(seen)} pairs for memory {memory.id}, {len(edges)} edges accepted')
        return edges

    def candidate_edges_for_owner(self, memories: Sequence[Memory]) -> List[RelationEdge]:
        """Score every unordered pair among one owner's memories."""
        created_at = utc_now()
        unique = list({memory.id: memory for memory in memories}.values())

        edges = []
        for a, b in combinations(unique, 2):
            if a.user_id != b.user_id:
                continue
            edges.extend(self.edges_for_pair(a, b, created_at))

        logger.debug(f'Scored {len(unique)} memories pairwise, {len(edges)} edges accepted')
        return edges
