"""Tests for LLM enrichment of memories."""

import json

import pytest
from conftest import FakeLLM, make_memory

from memmesh.services.enrichment import MemoryEnrichmentService


@pytest.fixture
def memory():
    return make_memory('m1', content='Asyncio schedules coroutines on an event loop.', title='Asyncio basics')


class TestMemoryEnrichmentService:
    """Test summary and metadata extraction."""

    def test_parses_summary_and_metadata(self, memory):
        payload = {
            'summary': ' Asyncio runs coroutines. ',
            'topics': ['Python', 'asyncio'],
            'keyPoints': ['Event loop'],
            'sentiment': 'Technical',
            'importance': 7,
            'searchable_terms': ['coroutine']
        }
        llm = FakeLLM([json.dumps(payload)])

        summary, metadata = MemoryEnrichmentService(llm).enrich(memory)

        assert summary == 'Asyncio runs coroutines.'
        assert metadata.topics == {'python', 'asyncio'}
        assert metadata.key_points == ['event loop']
        assert metadata.sentiment == 'technical'
        assert metadata.importance == pytest.approx(0.7)
        assert metadata.searchable_terms == {'coroutine'}

    def test_uses_json_prefill(self, memory):
        llm = FakeLLM(['{"summary": "s"}'])

        MemoryEnrichmentService(llm).enrich(memory)

        call = llm.calls[0]
        assert call['messages'][-1] == {'role': 'assistant', 'content': [{'text': '```json'}]}
        assert call['stop_sequences'] == ['```']
        assert 'Asyncio basics' in call['messages'][0]['content'][0]['text']

    def test_fenced_response(self, memory):
        llm = FakeLLM(['```json\n{"summary": "s", "topics": ["x"]}\n```'])

        summary, metadata = MemoryEnrichmentService(llm).enrich(memory)

        assert summary == 's'
        assert metadata.topics == {'x'}

    def test_invalid_json(self, memory):
        assert MemoryEnrichmentService(FakeLLM(['not json'])).enrich(memory) is None

    def test_llm_failure(self, memory):
        llm = FakeLLM()
        llm.fail = True

        assert MemoryEnrichmentService(llm).enrich(memory) is None

    def test_blank_content_skips_llm(self):
        llm = FakeLLM(['{}'])

        assert MemoryEnrichmentService(llm).enrich(make_memory('m1', content='  ')) is None
        assert llm.calls == []
