"""Tests for the memory management service."""

import dataclasses

import pytest
from conftest import EMBED_MODEL, make_edge, make_memory

from memmesh.models.core import DUPLICATE_CANONICAL, RELATION_TEMPORAL
from memmesh.services.memory_management import (InvalidInputError, MemoryManagementError, MemoryManagementService,
                                                MemoryNotFoundError)
from memmesh.utils.neptune_client import CANDIDATE_LABEL
from memmesh.utils.opensearch_client import FALLBACK_FIELD
from memmesh.utils.ttl_cache import SearchCache
from memmesh.utils.worker_pool import WorkerPool, WorkerPoolFullError


class RejectingPool:
    """Worker pool that is always full."""

    def start(self):
        pass

    def stop(self, wait=True):
        pass

    def submit(self, func, *args, **kwargs):
        raise WorkerPoolFullError('full')


def build_service(app_config, store, embed_client, llm, **overrides):
    return MemoryManagementService(app_config,
                                   store=store,
                                   embed_client=embed_client,
                                   llm=llm,
                                   worker_pool=overrides.get('worker_pool') or WorkerPool(app_config.worker),
                                   search_cache=SearchCache(app_config.cache))


@pytest.fixture
def service(app_config, store, embed_client, llm):
    service = build_service(app_config, store, embed_client, llm)
    yield service
    service.stop()


def document(opensearch, memory_id):
    return next(doc for doc in opensearch.documents if doc['id'] == memory_id)


class TestIngest:
    """Test ingestion, validation and duplicate folding."""

    @pytest.mark.parametrize('user_id, content', [
        ('', 'content'),
        ('user-1', ''),
        ('user-1', '   '),
        ('user-1', None),
        ('user-1', '<!-- markup only --><br/>'),
    ])
    def test_rejects_invalid_input(self, service, opensearch, user_id, content):
        with pytest.raises(InvalidInputError):
            service.ingest(user_id, content, background=False)
        assert opensearch.documents == []

    def test_rejects_oversized_content(self, app_config, store, embed_client, llm):
        ingestion = dataclasses.replace(app_config.ingestion, max_content_length=10)
        service = build_service(dataclasses.replace(app_config, ingestion=ingestion), store, embed_client, llm)

        with pytest.raises(InvalidInputError):
            service.ingest('user-1', 'x' * 11, background=False)

    def test_identical_capture_stored_once(self, service, opensearch):
        first = service.ingest('user-1', 'Release notes for version two', background=False)
        second = service.ingest('user-1', 'release   NOTES for version two <b></b>', background=False)

        assert len(opensearch.documents) == 1
        assert not first.is_duplicate
        assert second.is_duplicate
        assert second.memory_id == first.memory_id
        assert second.reason == DUPLICATE_CANONICAL
        stored = document(opensearch, first.memory_id)
        assert stored['access_count'] == 1
        assert stored['importance_score'] == pytest.approx(0.40)

    def test_same_text_for_other_owner_is_not_a_duplicate(self, service, opensearch):
        service.ingest('user-1', 'shared text', background=False)
        result = service.ingest('user-2', 'shared text', background=False)

        assert not result.is_duplicate
        assert len(opensearch.documents) == 2

    def test_defaults_for_missing_url_and_title(self, service, opensearch):
        result = service.ingest('user-1', 'some note', background=False)

        stored = document(opensearch, result.memory_id)
        assert stored['url'] == 'unknown'
        assert stored['title'] == 'Untitled'

    def test_background_processing(self, service, opensearch):
        service.start()

        result = service.ingest('user-1', 'background note', url='https://example.com/a')

        assert result.task is not None
        assert result.task.result(timeout=5) == []
        assert document(opensearch, result.memory_id)['embedding_content'] is not None

    def test_pool_not_running_still_acknowledges(self, service, opensearch):
        result = service.ingest('user-1', 'queued note')

        assert result.task is None
        assert document(opensearch, result.memory_id).get('embedding_content') is None

    def test_full_pool_still_acknowledges(self, app_config, store, embed_client, llm, opensearch):
        service = build_service(app_config, store, embed_client, llm, worker_pool=RejectingPool())

        result = service.ingest('user-1', 'queued note')

        assert result.task is None
        assert [doc['id'] for doc in opensearch.documents] == [result.memory_id]


class TestProcessing:
    """Test enrichment, embedding and relation building."""

    def test_enrichment_applied(self, service, llm, opensearch):
        llm.responses.append('{"summary": "A summary", "topics": ["python"]}')

        result = service.ingest('user-1', 'python asyncio notes', background=False)

        stored = document(opensearch, result.memory_id)
        assert stored['summary'] == 'A summary'
        assert stored['metadata']['topics'] == ['python']
        assert stored['embedding_summary'] is not None

    def test_caller_facets_win_over_enrichment(self, service, llm, opensearch):
        llm.responses.append('{"summary": "A summary", "topics": ["python"]}')

        result = service.ingest('user-1', 'rust notes', metadata={'topics': ['rust']}, background=False)

        stored = document(opensearch, result.memory_id)
        assert stored['summary'] == 'A summary'
        assert stored['metadata']['topics'] == ['rust']

    def test_llm_failure_does_not_block_processing(self, service, llm, opensearch):
        llm.fail = True

        result = service.ingest('user-1', 'plain note', background=False)

        stored = document(opensearch, result.memory_id)
        assert stored['summary'] is None
        assert stored['embedding_content'] is not None

    def test_fallback_embedding_replaced_once_provider_recovers(self, service, embed_client, opensearch):
        embed_client.fail = True
        result = service.ingest('user-1', 'offline note', background=False)

        stored = document(opensearch, result.memory_id)
        assert stored['embedding_content'] is None
        assert stored['content_model_id'] is None
        assert 'content' in stored[FALLBACK_FIELD]

        embed_client.fail = False
        service.process_memory(result.memory_id, 'user-1')

        stored = document(opensearch, result.memory_id)
        assert stored['embedding_content'] is not None
        assert stored['content_model_id'] == EMBED_MODEL
        assert 'content' not in stored[FALLBACK_FIELD]

    def test_relations_built_between_recent_memories(self, service, neptune):
        first = service.ingest('user-1', 'first note about python', background=False)
        second = service.ingest('user-1', 'second note about gardening', background=False)

        edges = service.rebuild_relations(second.memory_id, 'user-1')

        assert edges
        assert all(edge.touches(second.memory_id) and edge.touches(first.memory_id) for edge in edges)
        assert RELATION_TEMPORAL in {edge.relation_type for edge in edges}
        assert sorted(edge.key for edge in edges) == sorted(edge.key for edge in neptune.get_relation_edges('user-1'))

    def test_rebuild_is_idempotent(self, service, neptune):
        service.ingest('user-1', 'first note about python', background=False)
        second = service.ingest('user-1', 'second note about gardening', background=False)
        before = service.rebuild_relations(second.memory_id, 'user-1')
        upserts, deletes = neptune.upserts, neptune.deletes

        after = service.rebuild_relations(second.memory_id, 'user-1')

        assert [(e.key, e.score) for e in after] == [(e.key, e.score) for e in before]
        assert (neptune.upserts, neptune.deletes) == (upserts, deletes)

    def test_relations_never_cross_owners(self, service, neptune):
        service.ingest('user-1', 'note one', background=False)
        service.ingest('user-2', 'note two', background=False)

        assert neptune.edges == {}

    def test_rebuild_unknown_memory(self, service):
        with pytest.raises(MemoryNotFoundError):
            service.rebuild_relations('missing', 'user-1')

    def test_rebuild_other_owner(self, service):
        result = service.ingest('user-1', 'private note', background=False)

        with pytest.raises(MemoryNotFoundError):
            service.rebuild_relations(result.memory_id, 'user-2')

    def test_rebuild_owner_graph_replaces_stored_edges(self, service, neptune):
        for text in ('alpha note', 'beta note', 'gamma note'):
            service.ingest('user-1', text, background=False)

        graph = service.rebuild_owner_graph('user-1')

        assert len(graph.pairs) == 3
        assert sorted(e.key for e in graph.edges) == sorted(e.key for e in neptune.get_relation_edges('user-1'))


class FixedScorer:
    """Relation scorer that reads pair scores from a table."""

    def __init__(self, scores):
        self.scores = dict(scores)

    def candidate_edges(self, memory, peers):
        return [make_edge(a, b, score) for (a, b), score in sorted(self.scores.items()) if memory.id in (a, b)]

    def candidate_edges_for_owner(self, memories):
        return [make_edge(a, b, score) for (a, b), score in sorted(self.scores.items())]


class TestRebuildConvergence:
    """Test that repeated rebuilds shape the same candidate set."""

    NEIGHBOURHOOD = {('x', 'y'): 0.9, ('w', 'x'): 0.85, ('u', 'x'): 0.84, ('v', 'y'): 0.92, ('t', 'y'): 0.91}

    @pytest.fixture
    def seeded(self, service, store):
        for memory_id in ('m', 't', 'u', 'v', 'w', 'x', 'y'):
            store.create_memory(make_memory(memory_id))
        service.scorer = FixedScorer(self.NEIGHBOURHOOD)
        service.rebuild_owner_graph('user-1')
        service.scorer.scores.update({('m', 'y'): 0.95, ('m', 'x'): 0.8})
        return service

    def test_new_memory_pruned_neighbourhood_is_stable(self, seeded, neptune):
        first = seeded.rebuild_relations('m', 'user-1')
        graph = sorted(edge.key for edge in neptune.get_relation_edges('user-1'))
        upserts, deletes = neptune.upserts, neptune.deletes

        second = seeded.rebuild_relations('m', 'user-1')

        assert [e.pair for e in first] == [('m', 'y')]
        assert [e.key for e in second] == [e.key for e in first]
        assert sorted(edge.key for edge in neptune.get_relation_edges('user-1')) == graph
        assert (neptune.upserts, neptune.deletes) == (upserts, deletes)

    def test_pruned_pairs_stay_candidates(self, seeded, neptune):
        seeded.rebuild_relations('m', 'user-1')

        candidates = {edge.pair for edge in neptune.get_relation_edges('user-1', label=CANDIDATE_LABEL)}
        shaped = {edge.pair for edge in neptune.get_relation_edges('user-1')}

        assert candidates == set(seeded.scorer.scores)
        assert shaped == {('m', 'y'), ('t', 'y'), ('u', 'x'), ('v', 'y'), ('w', 'x')}

    def test_matches_owner_rebuild(self, seeded, neptune):
        seeded.rebuild_relations('m', 'user-1')
        incremental = sorted(edge.key for edge in neptune.get_relation_edges('user-1'))

        full = seeded.rebuild_owner_graph('user-1')

        assert sorted(edge.key for edge in full.edges) == incremental

    def test_rescored_memory_replaces_its_candidates(self, seeded, neptune):
        seeded.rebuild_relations('m', 'user-1')
        del seeded.scorer.scores[('m', 'x')]

        seeded.rebuild_relations('m', 'user-1')

        candidates = {edge.pair for edge in neptune.get_relation_edges('user-1', 'm', label=CANDIDATE_LABEL)}
        assert candidates == {('m', 'y')}


class TestNavigation:
    """Test graph navigation through the service."""

    def test_mesh_after_ingest(self, service):
        first = service.ingest('user-1', 'first note', background=False)
        second = service.ingest('user-1', 'second note', background=False)

        mesh = service.get_memory_mesh('user-1')

        assert sorted(node.memory_id for node in mesh.nodes) == sorted([first.memory_id, second.memory_id])
        assert {edge.pair for edge in mesh.edges} == {tuple(sorted([first.memory_id, second.memory_id]))}

    def test_mesh_requires_owner(self, service):
        with pytest.raises(InvalidInputError):
            service.get_memory_mesh(' ')

    def test_memory_with_relations(self, service):
        first = service.ingest('user-1', 'first note', background=False)
        second = service.ingest('user-1', 'second note', background=False)

        relations = service.get_memory_with_relations(first.memory_id, 'user-1')

        assert [item.memory.id for item in relations.related] == [second.memory_id]
        assert relations.has_embeddings

    def test_memory_with_relations_unknown(self, service):
        with pytest.raises(MemoryNotFoundError):
            service.get_memory_with_relations('missing', 'user-1')

    def test_cluster(self, service):
        first = service.ingest('user-1', 'first note', background=False)
        second = service.ingest('user-1', 'second note', background=False)

        cluster = service.get_memory_cluster(first.memory_id, 'user-1', depth=1)

        assert [(m.memory.id, m.depth) for m in cluster.members] == [(first.memory_id, 0), (second.memory_id, 1)]

    def test_cluster_rejects_negative_depth(self, service):
        with pytest.raises(InvalidInputError):
            service.get_memory_cluster('any', 'user-1', depth=-1)

    def test_cluster_unknown(self, service):
        with pytest.raises(MemoryNotFoundError):
            service.get_memory_cluster('missing', 'user-1')


class TestSearch:
    """Test search caching and error mapping."""

    def test_results_cached_until_owner_ingests(self, service):
        service.ingest('user-1', 'asyncio notes for the team', background=False)

        first = service.search('user-1', 'asyncio')
        again = service.search('user-1', '  ASYNCIO ')

        assert first.hits
        assert again is first

        service.ingest('user-1', 'more asyncio notes', background=False)

        assert service.search('user-1', 'asyncio') is not first

    def test_blank_query(self, service):
        assert service.search('user-1', ' ').hits == []

    def test_missing_owner(self, service):
        with pytest.raises(InvalidInputError):
            service.search('', 'asyncio')

    def test_both_scans_failing(self, service, opensearch, embed_client):
        service.ingest('user-1', 'asyncio notes', background=False)
        opensearch.fail_lexical = True
        embed_client.fail = True

        with pytest.raises(MemoryManagementError):
            service.search('user-1', 'asyncio')


class TestHealth:
    """Test health reporting over the injected clients."""

    def test_healthy(self, service):
        status = service.get_health_status()

        assert set(status) == {'bedrock_llm', 'bedrock_embed', 'neptune', 'opensearch'}
        assert service.health_check()

    def test_unhealthy_provider(self, service, embed_client):
        embed_client.fail = True

        assert not service.get_health_status()['bedrock_embed']['healthy']
        assert not service.health_check()
