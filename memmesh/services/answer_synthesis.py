"""
Answer synthesis over ranked search hits with bracketed numeric citations.
"""

import re
from typing import List, Optional, Tuple

from ..models.core import Citation, SearchHit
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.logging_config import get_logger
from .canonicalization import content_preview

logger = get_logger(__name__)

CITATION_PATTERN = re.compile(r'\[([\d,\s]+)\]')

SYSTEM_PROMPT = """You answer questions about a user's own saved memories using numbered evidence notes.

## Rules
1. Use only the evidence notes. If they do not answer the query, say so briefly.
2. Insert bracketed numeric citations wherever you use a note, like [1] or [2, 3].
3. Keep it concise: 2-4 sentences.
4. Plain text only. No markdown, no lists, no links, and no brackets other than numeric citations."""


def extract_citation_order(text: Optional[str]) -> List[int]:
    """Citation labels in order of first appearance, e.g. 'a [2] b [1, 2]' -> [2, 1]."""
    if not text:
        return []

    order: List[int] = []
    for match in CITATION_PATTERN.finditer(text):
        for part in match.group(1).split(','):
            part = part.strip()
            if not part.isdigit():
                continue
            label = int(part)
            if label not in order:
                order.append(label)
    return order


def map_citations(answer: str, hits: List[SearchHit]) -> List[Citation]:
    """Map citation labels to hit positions (1-based). Labels outside the hit list are ignored."""
    citations = []
    for label in extract_citation_order(answer):
        if 1 <= label <= len(hits):
            memory = hits[label - 1].memory
            citations.append(Citation(label=label, memory_id=memory.id, title=memory.title or None, url=memory.url))
        else:
            logger.debug(f'Ignoring citation [{label}] outside {len(hits)} results')
    return citations


class AnswerSynthesisService:
    """Generates a short cited answer from ranked hits using the Bedrock LLM."""

    def __init__(self, llm: BedrockLLM, snippet_length: int = 400):
        self.llm = llm
        self.snippet_length = snippet_length

    def _evidence_notes(self, hits: List[SearchHit]) -> str:
        lines = []
        for i, hit in enumerate(hits):
            memory = hit.memory
            date = memory.created_at.date().isoformat() if memory.created_at else ''
            text = memory.summary or content_preview(memory.content, self.snippet_length)
            title = f' {memory.title}:' if memory.title else ''
            lines.append(f'- [{i + 1}] {date}{title} {text}'.strip())
        return '\n'.join(lines)

    def synthesize_answer(self, query: str, hits: List[SearchHit]) -> Optional[Tuple[str, List[Citation]]]:
        """
        Synthesize an answer for a query from ranked hits.

        Args:
            query: User query
            hits: Ranked hits; citation [n] refers to hits[n - 1]

        Returns:
            Tuple of (answer, citations), or None when no answer could be produced
        """
        if not hits or not query or not query.strip():
            return None

        prompt = f'User query: "{query.strip()}"\n\nEvidence notes (ordered by relevance):\n{self._evidence_notes(hits)}'

        try:
            answer, metrics = self.llm.generate_text(prompt, SYSTEM_PROMPT)
        except BedrockLLMError as e:
            logger.warning(f'Answer synthesis failed, returning results without answer: {e}')
            return None

        if not answer:
            logger.warning('Answer synthesis returned empty text')
            return None

        citations = map_citations(answer, hits)
        logger.debug(f'Synthesized answer ({len(answer)} chars, {len(citations)} citations, metrics {metrics})')
        return answer, citations
