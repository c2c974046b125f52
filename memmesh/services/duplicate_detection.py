"""
Duplicate detection at ingestion time.
"""

from datetime import timedelta
from typing import Optional

from ..models.core import DUPLICATE_CANONICAL, DUPLICATE_URL, UNKNOWN_URL, DuplicateMatch, Memory, MemoryMetadata
from ..utils.config import IngestionConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .canonicalization import canonicalize, jaccard_similarity, normalize_url
from .memory_store import MemoryStore, MemoryStoreError

logger = get_logger(__name__)


class DuplicateDetectionError(Exception):
    """Custom exception for duplicate detection errors."""
    pass


class DuplicateDetector:
    """Finds an existing memory that an incoming capture repeats, and folds the capture into it."""

    def __init__(self, store: MemoryStore, config: IngestionConfig):
        self.store = store
        self.config = config

    def find_duplicate(self,
                       user_id: str,
                       canonical_text: str,
                       canonical_hash: str,
                       url: Optional[str] = None) -> Optional[DuplicateMatch]:
        """Look for a duplicate of a capture among the owner's memories.

        An identical canonical hash is an exact duplicate. Otherwise, when a
        URL is known, recent captures of the same normalized URL whose word
        sets overlap by at least the configured Jaccard threshold count as
        near-duplicates. The stored content is re-canonicalized before
        comparison so older records follow the current rules.

        Args:
            user_id: Owner of the incoming capture
            canonical_text: Canonical form of the incoming content
            canonical_hash: SHA-256 of ``canonical_text``
            url: Source URL of the capture, if any

        Returns:
            DuplicateMatch or None

        Raises:
            DuplicateDetectionError: If the store lookup fails
        """
        try:
            existing = self.store.find_by_canonical_hash(user_id, canonical_hash)
            if existing is not None:
                logger.debug(f'Canonical duplicate of memory {existing.id} for user {user_id}')
                return DuplicateMatch(memory=existing, reason=DUPLICATE_CANONICAL)

            if not url or url == UNKNOWN_URL:
                return None

            normalized = normalize_url(url)
            since = utc_now() - timedelta(minutes=self.config.duplicate_window_minutes)
            candidates = self.store.find_recent_by_url(user_id, normalized, since, self.config.duplicate_scan_limit)
        except MemoryStoreError as e:
            logger.error(f'Duplicate lookup failed for user {user_id}: {e}')
            raise DuplicateDetectionError(f'Duplicate lookup failed: {e}')

        for candidate in candidates:
            if normalize_url(candidate.url) != normalized:
                continue
            similarity = jaccard_similarity(canonical_text, canonicalize(candidate.content))
            if similarity >= self.config.url_similarity_threshold:
                logger.debug(f'URL duplicate of memory {candidate.id} (similarity {similarity:.3f})')
                return DuplicateMatch(memory=candidate, reason=DUPLICATE_URL)

        return None

    def merge_duplicate(self, existing: Memory, metadata: Optional[MemoryMetadata] = None) -> Memory:
        """Record a repeated capture on the existing memory.

        Scores move towards 1.0 and never past it, so repeated merges converge.

        Raises:
            DuplicateDetectionError: If the update cannot be stored
        """
        existing.access_count += 1
        existing.last_accessed = utc_now()
        existing.importance_score = min(1.0, existing.importance_score + self.config.importance_boost)
        existing.confidence_score = min(1.0, existing.confidence_score + self.config.confidence_boost)
        if metadata is not None:
            existing.metadata = existing.metadata.merge(metadata, list_cap=self.config.metadata_list_cap)

        try:
            self.store.update_memory(existing)
        except MemoryStoreError as e:
            logger.error(f'Failed to merge duplicate into memory {existing.id}: {e}')
            raise DuplicateDetectionError(f'Duplicate merge failed: {e}')

        logger.info(f'Merged duplicate capture into memory {existing.id} (access count {existing.access_count})')
        return existing
