"""
Core data models for the memory mesh.
"""

from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

RELATION_SEMANTIC = 'semantic'
RELATION_TOPICAL = 'topical'
RELATION_TEMPORAL = 'temporal'
RELATION_TYPES = (RELATION_SEMANTIC, RELATION_TOPICAL, RELATION_TEMPORAL)

EMBEDDING_CONTENT = 'content'
EMBEDDING_SUMMARY = 'summary'
EMBEDDING_TITLE = 'title'
EMBEDDING_TYPES = (EMBEDDING_CONTENT, EMBEDDING_SUMMARY, EMBEDDING_TITLE)

DUPLICATE_CANONICAL = 'canonical'
DUPLICATE_URL = 'url'

UNKNOWN_URL = 'unknown'

MAX_METADATA_EXTRA_KEYS = 32


def _string_set(values: Any) -> Set[str]:
    if not isinstance(values, (list, tuple, set, frozenset)):
        return set()
    return {v.strip().lower() for v in values if isinstance(v, str) and v.strip()}


def _string_list(values: Any) -> List[str]:
    if not isinstance(values, (list, tuple)):
        return []
    out = []
    for value in values:
        if isinstance(value, str) and value.strip():
            item = value.strip().lower()
            if item not in out:
                out.append(item)
    return out


@dataclass
class MemoryMetadata:
    """Structured page metadata attached to a memory.

    Known facets are explicit fields so scoring code can rely on their types.
    Anything else lands in ``extra``, which only holds scalar values and is
    capped at ``MAX_METADATA_EXTRA_KEYS`` entries.
    """
    topics: Set[str] = field(default_factory=set)
    categories: Set[str] = field(default_factory=set)
    key_points: List[str] = field(default_factory=list)
    sentiment: Optional[str] = None
    importance: Optional[float] = None
    searchable_terms: Set[str] = field(default_factory=set)
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = ('topics', 'categories', 'key_points', 'keyPoints', 'sentiment', 'importance', 'searchable_terms',
                   'searchableTerms')

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MemoryMetadata':
        """Build metadata from a loosely-typed dictionary (caller payload or LLM output)."""
        if not isinstance(data, dict):
            return cls()

        importance = data.get('importance')
        try:
            importance = None if importance is None else min(1.0, max(0.0, float(importance)))
        except (TypeError, ValueError):
            importance = None

        sentiment = data.get('sentiment')
        sentiment = sentiment.strip().lower() if isinstance(sentiment, str) and sentiment.strip() else None

        extra = {}
        for key, value in data.items():
            if key in cls._KNOWN_KEYS or len(extra) >= MAX_METADATA_EXTRA_KEYS:
                continue
            if isinstance(value, (str, int, float, bool)) or value is None:
                extra[str(key)] = value

        return cls(topics=_string_set(data.get('topics')),
                   categories=_string_set(data.get('categories')),
                   key_points=_string_list(data.get('key_points', data.get('keyPoints'))),
                   sentiment=sentiment,
                   importance=importance,
                   searchable_terms=_string_set(data.get('searchable_terms', data.get('searchableTerms'))),
                   extra=extra)

    @classmethod
    def from_stored(cls, data: Optional[Dict[str, Any]]) -> 'MemoryMetadata':
        """Rebuild metadata from the output of ``to_dict``."""
        if not isinstance(data, dict):
            return cls()
        flat = {k: v for k, v in data.items() if k != 'extra'}
        extra = data.get('extra')
        if isinstance(extra, dict):
            flat.update({k: v for k, v in extra.items() if k not in cls._KNOWN_KEYS})
        return cls.from_dict(flat)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'topics': sorted(self.topics),
            'categories': sorted(self.categories),
            'key_points': list(self.key_points),
            'sentiment': self.sentiment,
            'importance': self.importance,
            'searchable_terms': sorted(self.searchable_terms),
            'extra': dict(self.extra)
        }

    def has_facets(self) -> bool:
        return bool(self.topics or self.categories or self.key_points or self.searchable_terms)

    def merge(self, incoming: 'MemoryMetadata', list_cap: int = 50) -> 'MemoryMetadata':
        """Return a new metadata object combining this one with ``incoming``.

        Set facets are unioned, key points appended without repeats, scalar
        facets take the incoming value when it is set.
        """
        key_points = list(self.key_points)
        for point in incoming.key_points:
            if point not in key_points:
                key_points.append(point)

        extra = dict(self.extra)
        for key, value in incoming.extra.items():
            if key in extra or len(extra) < MAX_METADATA_EXTRA_KEYS:
                extra[key] = value

        return MemoryMetadata(topics=self.topics | incoming.topics,
                              categories=self.categories | incoming.categories,
                              key_points=key_points[:list_cap],
                              sentiment=incoming.sentiment or self.sentiment,
                              importance=incoming.importance if incoming.importance is not None else self.importance,
                              searchable_terms=self.searchable_terms | incoming.searchable_terms,
                              extra=extra)


@dataclass
class Embedding:
    """A vector for one memory and one embedding type."""
    memory_id: str
    embedding_type: str  # content, summary or title
    vector: List[float]
    model_id: str
    created_at: datetime
    fallback: bool = False  # True when the provider failed and a hash-derived vector was used


@dataclass
class Memory:
    """A captured text record owned by a single user.

    The canonical hash is derived from the canonical text, and two memories of
    the same user sharing a hash are the same logical memory.
    """
    id: str
    user_id: str
    content: str
    canonical_text: str
    canonical_hash: str
    url: str
    title: str
    created_at: datetime
    summary: Optional[str] = None
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)
    importance_score: float = 0.35
    confidence_score: float = 0.5
    access_count: int = 0
    last_accessed: Optional[datetime] = None
    source: Optional[str] = None
    embeddings: Dict[str, Embedding] = field(default_factory=dict)

    def embedding(self, embedding_type: str = EMBEDDING_CONTENT) -> Optional[Embedding]:
        return self.embeddings.get(embedding_type)


def pair_key(a: str, b: str) -> Tuple[str, str]:
    """Unordered pair key with the lexicographically smaller id first."""
    return (a, b) if a <= b else (b, a)


@dataclass
class RelationEdge:
    """A scored, typed relation from one memory to another within a user's graph."""
    user_id: str
    source_id: str
    target_id: str
    relation_type: str
    score: float
    created_at: datetime

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.source_id, self.target_id, self.relation_type)

    @property
    def edge_id(self) -> str:
        return f'{self.source_id}:{self.target_id}:{self.relation_type}'

    @property
    def pair(self) -> Tuple[str, str]:
        return pair_key(self.source_id, self.target_id)

    def touches(self, memory_id: str) -> bool:
        return memory_id in (self.source_id, self.target_id)


@dataclass
class PairScores:
    """Relation scores for one pair of memories. ``None`` means the signal is missing on either side."""
    semantic: Optional[float] = None
    topical: Optional[float] = None
    temporal: Optional[float] = None

    def items(self) -> Iterable[Tuple[str, Optional[float]]]:
        return ((RELATION_SEMANTIC, self.semantic), (RELATION_TOPICAL, self.topical), (RELATION_TEMPORAL, self.temporal))


@dataclass
class DuplicateMatch:
    """An existing memory that an incoming capture duplicates."""
    memory: Memory
    reason: str  # canonical or url


@dataclass
class IngestResult:
    """Outcome of an ingest call."""
    memory_id: str
    duplicate_of: Optional[str] = None
    reason: Optional[str] = None
    task: Optional[Future] = None  # background enrichment/relation task, if one was scheduled

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of is not None


@dataclass
class SearchHit:
    memory: Memory
    score: float
    keyword_score: Optional[float] = None
    semantic_score: Optional[float] = None


@dataclass
class Citation:
    label: int  # 1-based position in the ranked hits
    memory_id: str
    title: Optional[str]
    url: Optional[str]


@dataclass
class SearchResult:
    query: str
    hits: List[SearchHit] = field(default_factory=list)
    answer: Optional[str] = None
    citations: List[Citation] = field(default_factory=list)


@dataclass
class MeshNode:
    memory_id: str
    label: str
    surface: str  # capture surface, or 'unknown'
    title: Optional[str]
    summary: Optional[str]
    degree: int


@dataclass
class MemoryMesh:
    """An owner's recent memories and the shaped relation edges among them."""
    nodes: List[MeshNode] = field(default_factory=list)
    edges: List[RelationEdge] = field(default_factory=list)
    clusters: Dict[str, List[str]] = field(default_factory=dict)  # surface -> memory ids


@dataclass
class RelatedMemory:
    memory: Memory
    edges: List[RelationEdge]  # strongest first

    @property
    def score(self) -> float:
        return self.edges[0].score


@dataclass
class MemoryRelations:
    memory: Memory
    related: List[RelatedMemory] = field(default_factory=list)

    @property
    def relation_count(self) -> int:
        return len(self.related)

    @property
    def has_embeddings(self) -> bool:
        return bool(self.memory.embeddings)


@dataclass
class ClusterMember:
    memory: Memory
    depth: int
    relation_count: int


@dataclass
class MemoryCluster:
    """Memories reachable from a center memory over strong edges, breadth first."""
    center_id: str
    max_depth: int
    members: List[ClusterMember] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.members)
