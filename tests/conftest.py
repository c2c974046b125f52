"""Test configuration and fixtures.

External collaborators (OpenSearch, Neptune, Bedrock) are replaced by
in-memory fakes at the client seam, so the real MemoryStore document mapping
runs in every service test.
"""

import copy
import dataclasses
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from memmesh.models.core import EMBEDDING_CONTENT, Embedding, Memory, MemoryMetadata, RelationEdge
from memmesh.services.canonicalization import canonicalize, hash_canonical
from memmesh.services.memory_store import MemoryStore
from memmesh.utils.bedrock_embed import BedrockEmbedError
from memmesh.utils.bedrock_llm import BedrockLLM, BedrockLLMError
from memmesh.utils.config import load_config
from memmesh.utils.neptune_client import CANDIDATE_LABEL, RELATION_LABEL
from memmesh.utils.opensearch_client import EMBEDDING_FIELDS, FALLBACK_FIELD, OpenSearchError
from memmesh.utils.timestamp_utils import parse_datetime
from memmesh.utils.vector_utils import cosine_similarity, fallback_embedding

DIMENSION = 16
EMBED_MODEL = 'test-embed-v1'
BASE_TIME = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeOpenSearchClient:
    """Evaluates the filter, sort and scan calls MemoryStore issues against a list of documents."""

    def __init__(self):
        self.documents: List[Dict[str, Any]] = []
        self.fail_lexical = False
        self.fail_vector = False
        self.index_created = False

    def create_index_if_not_exists(self) -> str:
        self.index_created = True
        return 'created'

    def index_document(self, document: Dict[str, Any]) -> bool:
        self.documents.append(copy.deepcopy(document))
        return True

    @staticmethod
    def _matches(document: Dict[str, Any], clause: Dict[str, Any]) -> bool:
        if 'term' in clause:
            (field, value), = clause['term'].items()
            return document.get(field) == value
        if 'terms' in clause:
            (field, values), = clause['terms'].items()
            return document.get(field) in values
        if 'range' in clause:
            (field, bounds), = clause['range'].items()
            value = parse_datetime(document.get(field))
            return value is not None and value >= parse_datetime(bounds['gte'])
        raise AssertionError(f'Unsupported clause {clause}')

    def _visible(self, document: Dict[str, Any], include_embeddings: bool) -> Dict[str, Any]:
        document = copy.deepcopy(document)
        if not include_embeddings:
            for field in EMBEDDING_FIELDS + (FALLBACK_FIELD, ):
                document.pop(field, None)
        return document

    def search_documents(self, user_id, filters=None, size=50, sort=None, include_embeddings=False):
        clauses = list(filters or [])
        if user_id is not None:
            clauses.append({'term': {'user_id': user_id}})
        hits = [doc for doc in self.documents if all(self._matches(doc, clause) for clause in clauses)]
        if sort:
            hits.sort(key=lambda doc: parse_datetime(doc['created_at']), reverse=True)
        return [{'_id': doc['id'], 'document': self._visible(doc, include_embeddings)} for doc in hits[:size]]

    def get_document(self, memory_id, user_id=None, include_embeddings=False):
        hits = self.search_documents(user_id, [{'term': {'id': memory_id}}], size=1, include_embeddings=include_embeddings)
        return hits[0] if hits else None

    def update_document(self, memory_id, user_id, fields):
        for document in self.documents:
            if document['id'] == memory_id and document['user_id'] == user_id:
                document.update(copy.deepcopy(fields))
                return True
        return False

    def lexical_search(self, user_id, query_text, top_k=20):
        if self.fail_lexical:
            raise OpenSearchError('lexical scan unavailable')
        tokens = set(re.findall(r'\w+', query_text.lower()))
        scored = []
        for document in self.documents:
            if document['user_id'] != user_id:
                continue
            text = ' '.join(document.get(f) or '' for f in ('title', 'summary', 'content')).lower()
            matched = len(tokens & set(re.findall(r'\w+', text)))
            if matched:
                scored.append((document['id'], float(matched)))
        scored.sort(key=lambda item: (-item[1], item[0]))
        return scored[:top_k]

    def vector_search(self, user_id, query_vector, top_k=20, field='embedding_content', model_id=None):
        if self.fail_vector:
            raise OpenSearchError('vector scan unavailable')
        scored = []
        for document in self.documents:
            vector = document.get(field)
            if document['user_id'] != user_id or not vector:
                continue
            if model_id and document.get('content_model_id') != model_id:
                continue
            cosine = cosine_similarity(query_vector, vector)
            if cosine is not None:
                scored.append((document['id'], cosine))
        scored.sort(key=lambda item: (-item[1], item[0]))
        return scored[:top_k]

    def health_check(self) -> bool:
        return True


class FakeNeptuneClient:
    """Keeps vertices and edges in dictionaries keyed like the Gremlin properties.

    ``edges`` holds the shaped graph and ``candidates`` the scored candidate edges.
    """

    def __init__(self):
        self.vertices: Dict[str, str] = {}
        self.edges: Dict[Tuple[str, str], RelationEdge] = {}
        self.candidates: Dict[Tuple[str, str], RelationEdge] = {}
        self.upserts = 0
        self.deletes = 0

    def _bucket(self, label: str) -> Dict[Tuple[str, str], RelationEdge]:
        return {RELATION_LABEL: self.edges, CANDIDATE_LABEL: self.candidates}[label]

    def upsert_memory_vertex(self, memory_id, user_id, created_at=None):
        self.vertices.setdefault(memory_id, user_id)
        return True

    def upsert_relation_edge(self, edge: RelationEdge, label: str = RELATION_LABEL):
        assert self.vertices.get(edge.source_id) == edge.user_id
        assert self.vertices.get(edge.target_id) == edge.user_id
        self._bucket(label)[(edge.user_id, edge.edge_id)] = copy.deepcopy(edge)
        self.upserts += 1
        return True

    def delete_relation_edge(self, edge_id, user_id, label: str = RELATION_LABEL):
        self._bucket(label).pop((user_id, edge_id), None)
        self.deletes += 1
        return True

    def get_relation_edges(self, user_id, memory_id=None, label: str = RELATION_LABEL):
        return [
            copy.deepcopy(edge) for (owner, _), edge in sorted(self._bucket(label).items())
            if owner == user_id and (memory_id is None or edge.touches(memory_id))
        ]

    def health_check(self) -> bool:
        return True


class FakeEmbedClient:
    """Deterministic stand-in for BedrockEmbed. Set ``fail`` to simulate provider errors."""

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self.fail = False
        self.vectors: Dict[str, List[float]] = {}
        self.calls: List[str] = []

    def _vector(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise BedrockEmbedError('provider unavailable')
        return self.vectors.get(text) or fallback_embedding(text, self.dimension)

    def embed_document(self, text: str) -> List[float]:
        return self._vector(text)

    def embed_query(self, text: str) -> List[float]:
        return self._vector(text)

    def health_check(self) -> bool:
        return not self.fail


class FakeLLM(BedrockLLM):
    """Replaces only the Bedrock round trip; prompt shaping and parsing run for real.

    Returns queued responses in order and raises BedrockLLMError when ``fail`` is set.
    """

    def __init__(self, responses: Optional[List[str]] = None):
        self.responses = list(responses or [])
        self.fail = False
        self.calls: List[Dict[str, Any]] = []

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None):
        self.calls.append({'messages': messages, 'system_prompt': system_prompt, 'stop_sequences': stop_sequences})
        if self.fail:
            raise BedrockLLMError('model unavailable')
        text = self.responses.pop(0) if self.responses else ''
        return text, {'inputTokens': 1, 'outputTokens': 1}

    def health_check(self) -> bool:
        return not self.fail


@pytest.fixture
def app_config():
    """Application config with small vectors and no retry delays."""
    base = load_config()
    return dataclasses.replace(
        base,
        bedrock_embed=dataclasses.replace(base.bedrock_embed, dimension=DIMENSION, model_id=EMBED_MODEL),
        opensearch=dataclasses.replace(base.opensearch, dimension=DIMENSION, index_sync_wait=0),
        worker=dataclasses.replace(base.worker, retry_delay=0.0, retry_jitter=0.0),
        cache=dataclasses.replace(base.cache, sweep_interval_seconds=0.05))


@pytest.fixture
def opensearch():
    return FakeOpenSearchClient()


@pytest.fixture
def neptune():
    return FakeNeptuneClient()


@pytest.fixture
def store(opensearch, neptune):
    return MemoryStore(opensearch, neptune)


@pytest.fixture
def embed_client():
    return FakeEmbedClient()


@pytest.fixture
def llm():
    return FakeLLM()


def unit(*components: float) -> List[float]:
    """Pad components to DIMENSION."""
    return list(components) + [0.0] * (DIMENSION - len(components))


def make_memory(memory_id: str,
                user_id: str = 'user-1',
                content: Optional[str] = None,
                url: str = 'unknown',
                title: str = '',
                created_at: Optional[datetime] = None,
                metadata: Optional[Dict[str, Any]] = None,
                vector: Optional[List[float]] = None,
                model_id: str = EMBED_MODEL,
                fallback: bool = False,
                summary: Optional[str] = None) -> Memory:
    content = content if content is not None else f'content of {memory_id}'
    canonical = canonicalize(content)
    memory = Memory(id=memory_id,
                    user_id=user_id,
                    content=content,
                    canonical_text=canonical,
                    canonical_hash=hash_canonical(canonical),
                    url=url,
                    title=title,
                    created_at=created_at or BASE_TIME,
                    summary=summary,
                    metadata=MemoryMetadata.from_dict(metadata))
    if vector is not None:
        memory.embeddings[EMBEDDING_CONTENT] = Embedding(memory_id=memory_id,
                                                         embedding_type=EMBEDDING_CONTENT,
                                                         vector=vector,
                                                         model_id=model_id,
                                                         created_at=memory.created_at,
                                                         fallback=fallback)
    return memory


def make_edge(source: str, target: str, score: float, relation_type: str = 'semantic', user_id: str = 'user-1',
              created_at: Optional[datetime] = None) -> RelationEdge:
    return RelationEdge(user_id=user_id,
                        source_id=source,
                        target_id=target,
                        relation_type=relation_type,
                        score=score,
                        created_at=created_at or BASE_TIME)


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


def at_cosine(cosine: float) -> List[float]:
    """Unit vector at the given cosine from unit(1.0)."""
    return unit(cosine, math.sqrt(1 - cosine * cosine))
