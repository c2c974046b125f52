"""
Memory enrichment: LLM-derived summary and structured metadata for captured content.
"""

from typing import Optional, Tuple

from ..models.core import Memory, MemoryMetadata
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

MAX_PROMPT_CONTENT = 4000

SYSTEM_PROMPT = """
You are an expert at summarizing captured web content and extracting metadata for later retrieval.

Return a single JSON object with this exact format:
```json
{
  "summary": "2-3 sentence summary of the content",
  "topics": ["2-4 relevant keywords"],
  "categories": ["content type, e.g. article, documentation, code_repository, meeting, issue_tracking"],
  "key_points": ["2-3 main points, max 80 characters each"],
  "sentiment": "educational|technical|neutral|analytical|positive|negative",
  "importance": 5,
  "searchable_terms": ["5-8 important words"]
}
```

Rules:
- importance is a number from 1 to 10
- Only use information present in the content. Do not infer or assume facts."""


class MemoryEnrichmentService:
    """Asks the Bedrock LLM for a summary and metadata of a memory."""

    def __init__(self, llm: BedrockLLM):
        self.llm = llm

    def enrich(self, memory: Memory) -> Optional[Tuple[str, MemoryMetadata]]:
        """Summarize a memory and extract its metadata.

        Args:
            memory: Memory to enrich

        Returns:
            Tuple of (summary, metadata), or None when the provider fails or
            returns something unusable. Enrichment never raises.
        """
        if not memory.content or not memory.content.strip():
            return None

        title = memory.title or 'Untitled'
        prompt = f'Title: {title}\nURL: {memory.url}\n\nContent:\n{memory.content[:MAX_PROMPT_CONTENT]}'

        try:
            data, _ = self.llm.generate_json(prompt, SYSTEM_PROMPT)
        except BedrockLLMError as e:
            logger.warning(f'Enrichment failed for memory {memory.id}: {e}')
            return None

        if data is None:
            logger.warning(f'Enrichment for memory {memory.id} returned invalid JSON')
            return None

        importance = data.get('importance')
        if isinstance(importance, (int, float)) and not isinstance(importance, bool) and importance > 1:
            # 1-10 scale
            data['importance'] = importance / 10.0

        summary = data.pop('summary', None)
        summary = summary.strip() if isinstance(summary, str) else ''
        metadata = MemoryMetadata.from_dict(data)

        logger.debug(f'Enriched memory {memory.id}: {len(metadata.topics)} topics, summary {len(summary)} chars')
        return summary, metadata
