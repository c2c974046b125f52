"""
Text canonicalization used for duplicate detection and hashing.

The canonical form strips everything that varies between two captures of the
same page (timestamps, ids, markup, tracking parameters) so that equal content
produces equal hashes.
"""

import hashlib
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlsplit

from ..models.core import UNKNOWN_URL
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

MAX_CANONICAL_PASSES = 10

_VOLATILE_PATTERNS = [
    re.compile(r'\d{4}-\d{2}-\d{2}[t\s]\d{2}:\d{2}:\d{2}(?:\.\d+)?z?', re.I),  # ISO timestamps
    re.compile(r'\d{1,2}/\d{1,2}/\d{2,4}'),  # dates
    re.compile(r'\b\d{1,2}:\d{2}(?::\d{2})?\s*(?:am|pm)?\b', re.I),  # times
    re.compile(r'\d{13,}'),  # unix millisecond timestamps
    re.compile(r'[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}', re.I),  # uuids
    re.compile(r'data-[\w-]+="[^"]*"'),
    re.compile(r'\bid="[^"]*"'),
    re.compile(r'\bclass="[^"]*"'),
    re.compile(r'\bstyle="[^"]*"'),
    re.compile(r'<!--.*?-->', re.S),
    re.compile(r'<script.*?</script>', re.S | re.I),
    re.compile(r'<style.*?</style>', re.S | re.I),
    re.compile(r'<noscript.*?</noscript>', re.S | re.I),
]

_TAG_PATTERN = re.compile(r'<[^>]+>')

_TRACKING_PATTERNS = [
    re.compile(r'\b(?:ga|gtag|gtm|analytics|_ga|_gid|_gat)[-_]?[a-z0-9_]*[:=]\s*[\'"]?[a-z0-9_-]+[\'"]?', re.I),
    re.compile(r'\b(?:fb|facebook)[-_]?(?:pixel|track|event)[-_]?[a-z0-9_]*[:=]\s*[\'"]?[a-z0-9_-]+[\'"]?', re.I),
    re.compile(r'\b(?:tracking|track)[-_]?(?:id|code|token|key)[:=]\s*[\'"]?[a-z0-9_-]{10,}[\'"]?', re.I),
    re.compile(r'\b(?:session|sess)[-_]?(?:id|token)[:=]\s*[\'"]?[a-z0-9_-]{20,}[\'"]?', re.I),
    re.compile(r'\b(?:utm_[a-z]+|ref|source|campaign|medium|term|content|gclid|fbclid|_hsenc|_hsmi)=[^&\s]*', re.I),
    re.compile(r'\b(?:marketing|promo|affiliate)[-_]?(?:id|code|tag)[:=]\s*[\'"]?[a-z0-9_-]+[\'"]?', re.I),
]

_WHITESPACE = re.compile(r'\s+')


@dataclass
class CanonicalForm:
    text: str
    hash: str
    normalized_url: Optional[str] = None


def _canonical_pass(text: str) -> str:
    text = unicodedata.normalize('NFKC', text).strip().lower()
    for pattern in _VOLATILE_PATTERNS:
        text = pattern.sub('', text)
    text = _TAG_PATTERN.sub(' ', text)
    for pattern in _TRACKING_PATTERNS:
        text = pattern.sub('', text)
    return _WHITESPACE.sub(' ', text).strip()


def canonicalize(text: Any) -> str:
    """Return the canonical form of captured text.

    Removing one pattern can expose another (a stripped tag joining two digit
    runs, for instance), so passes repeat until the text stops changing. This
    keeps ``canonicalize(canonicalize(x)) == canonicalize(x)``.
    """
    if not isinstance(text, str) or not text:
        return ''

    current = _canonical_pass(text)
    for _ in range(MAX_CANONICAL_PASSES):
        following = _canonical_pass(current)
        if following == current:
            return current
        current = following

    logger.warning(f'Canonical form did not settle after {MAX_CANONICAL_PASSES} passes')
    return current


def hash_canonical(canonical_text: str) -> str:
    return hashlib.sha256(canonical_text.encode('utf-8')).hexdigest()


def normalize_url(url: Any) -> str:
    """Scheme, host and path of a URL, lowercased, without query or fragment."""
    if not isinstance(url, str) or not url:
        return ''
    try:
        parts = urlsplit(url.strip())
        if not parts.scheme or not parts.hostname:
            raise ValueError('not an absolute url')
        return f'{parts.scheme}://{parts.hostname}{parts.path or "/"}'.lower()
    except ValueError:
        return url.strip().lower().split('?')[0].split('#')[0]


def extract_hostname(url: Any) -> Optional[str]:
    if not isinstance(url, str) or not url or url == UNKNOWN_URL:
        return None
    try:
        hostname = urlsplit(url.strip()).hostname
    except ValueError:
        return None
    if not hostname:
        return None
    return hostname[4:] if hostname.startswith('www.') else hostname


def canonicalize_content(content: str, url: Optional[str] = None) -> CanonicalForm:
    canonical_text = canonicalize(content)
    normalized_url = normalize_url(url) if url and url != UNKNOWN_URL else None
    return CanonicalForm(text=canonical_text, hash=hash_canonical(canonical_text), normalized_url=normalized_url)


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """Jaccard similarity of the whitespace-separated word sets of two texts."""
    if text_a == text_b:
        return 1.0

    words_a = set((text_a or '').split())
    words_b = set((text_b or '').split())
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def content_preview(text: Optional[str], length: int = 400) -> str:
    if not text:
        return ''
    return _WHITESPACE.sub(' ', text).strip()[:length]
