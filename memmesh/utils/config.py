"""
Configuration management for AWS services and memory mesh settings.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Tuple

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    service: str
    index_name: str
    dimension: int
    index_sync_wait: float


@dataclass
class IngestionConfig:
    """Configuration for memory ingestion and duplicate detection."""
    max_content_length: int
    duplicate_window_minutes: int
    duplicate_scan_limit: int
    url_similarity_threshold: float
    default_importance: float
    default_confidence: float
    importance_boost: float
    confidence_boost: float
    metadata_list_cap: int
    enrich_with_llm: bool


@dataclass
class SurfacePenalty:
    """Semantic score multiplier for two capture surfaces that embed alike but rarely relate."""
    surfaces: Tuple[str, str]
    multiplier: float


@dataclass
class SurfaceBoost:
    """Semantic score multiplier for two captures from the same surface sharing a keyword."""
    surface: str
    multiplier: float
    keywords: FrozenSet[str]


DEFAULT_SURFACE_HOSTS = {
    'meet.google.com': 'meeting',
    'zoom.us': 'meeting',
    'teams.microsoft.com': 'meeting',
    'github.com': 'code_hosting',
    'gitlab.com': 'code_hosting',
    'bitbucket.org': 'code_hosting',
}

DEFAULT_SURFACE_PENALTIES = [{'surfaces': ['meeting', 'code_hosting'], 'multiplier': 0.6}]

DEFAULT_SURFACE_BOOSTS = [{
    'surface': 'code_hosting',
    'multiplier': 1.1,
    'keywords': ['pull request', 'merge request', 'commit', 'branch', 'issue', 'code review', 'release', 'pipeline']
}]


@dataclass
class RelationConfig:
    """Configuration for relation scoring and graph shaping."""
    semantic_threshold: float
    topical_threshold: float
    temporal_threshold: float
    high_confidence_band: float
    same_host_bonus: float
    cleanup_threshold: float
    mutual_k: int
    max_degree: int
    candidate_limit: int
    mesh_limit: int
    cluster_min_score: float
    cluster_fanout: int
    rescale_cosine: bool
    surface_hosts: Dict[str, str] = field(default_factory=dict)
    surface_penalties: List[SurfacePenalty] = field(default_factory=list)
    surface_boosts: List[SurfaceBoost] = field(default_factory=list)


@dataclass
class SearchConfig:
    """Configuration for hybrid search."""
    keyword_weight: float
    semantic_weight: float
    default_limit: int
    max_limit: int
    candidate_multiplier: int
    min_score: float
    synthesize_answers: bool
    answer_top_n: int
    rescale_cosine: bool


@dataclass
class WorkerConfig:
    """Configuration for the background relation worker pool."""
    max_workers: int
    max_pending: int
    retry_attempts: int
    retry_delay: float
    retry_jitter: float


@dataclass
class CacheConfig:
    """Configuration for the search result cache."""
    ttl_seconds: float
    maxsize: int
    sweep_interval_seconds: float


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    ingestion: IngestionConfig
    relation: RelationConfig
    search: SearchConfig
    worker: WorkerConfig
    cache: CacheConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def _env_json(name: str, default: Any) -> Any:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f'Invalid JSON in {name}: {e}')


def _parse_surface_penalties(entries: List[Dict[str, Any]]) -> List[SurfacePenalty]:
    penalties = []
    for entry in entries:
        surfaces = entry.get('surfaces') or []
        if len(surfaces) != 2:
            raise ValueError(f'Surface penalty needs exactly two surfaces, got {surfaces}')
        penalties.append(SurfacePenalty(surfaces=(str(surfaces[0]), str(surfaces[1])), multiplier=float(entry['multiplier'])))
    return penalties


def _parse_surface_boosts(entries: List[Dict[str, Any]]) -> List[SurfaceBoost]:
    return [
        SurfaceBoost(surface=str(entry['surface']),
                     multiplier=float(entry['multiplier']),
                     keywords=frozenset(str(k).lower() for k in entry.get('keywords', []))) for entry in entries
    ]


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    embed_dimension = int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024'))
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=embed_dimension,
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Lexical and vector index configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memory_mesh'),
                                         dimension=embed_dimension,
                                         index_sync_wait=float(os.getenv('OPENSEARCH_INDEX_SYNC_WAIT', '15')))

    ingestion_config = IngestionConfig(
        max_content_length=int(os.getenv('MEMORY_MAX_CONTENT_LENGTH', '100000')),
        duplicate_window_minutes=int(os.getenv('MEMORY_DUPLICATE_WINDOW_MINUTES', '60')),
        duplicate_scan_limit=int(os.getenv('MEMORY_DUPLICATE_SCAN_LIMIT', '50')),
        url_similarity_threshold=float(os.getenv('MEMORY_URL_SIMILARITY_THRESHOLD', '0.9')),
        default_importance=float(os.getenv('MEMORY_DEFAULT_IMPORTANCE', '0.35')),
        default_confidence=float(os.getenv('MEMORY_DEFAULT_CONFIDENCE', '0.5')),
        importance_boost=float(os.getenv('MEMORY_DUPLICATE_IMPORTANCE_BOOST', '0.05')),
        confidence_boost=float(os.getenv('MEMORY_DUPLICATE_CONFIDENCE_BOOST', '0.03')),
        metadata_list_cap=int(os.getenv('MEMORY_METADATA_LIST_CAP', '50')),
        enrich_with_llm=_env_bool('MEMORY_ENRICH_WITH_LLM', 'true'))

    # Off for the normalized Titan v2 and Cohere vectors
    rescale_cosine = _env_bool('EMBEDDING_RESCALE_COSINE', 'false')

    relation_config = RelationConfig(
        semantic_threshold=float(os.getenv('RELATION_SEMANTIC_THRESHOLD', '0.30')),
        topical_threshold=float(os.getenv('RELATION_TOPICAL_THRESHOLD', '0.25')),
        temporal_threshold=float(os.getenv('RELATION_TEMPORAL_THRESHOLD', '0.20')),
        high_confidence_band=float(os.getenv('RELATION_HIGH_CONFIDENCE_BAND', '0.85')),
        same_host_bonus=float(os.getenv('RELATION_SAME_HOST_BONUS', '0.1')),
        cleanup_threshold=float(os.getenv('RELATION_CLEANUP_THRESHOLD', '0.30')),
        mutual_k=int(os.getenv('RELATION_MUTUAL_K', '3')),
        max_degree=int(os.getenv('RELATION_MAX_DEGREE', '20')),
        candidate_limit=int(os.getenv('RELATION_CANDIDATE_LIMIT', '500')),
        mesh_limit=int(os.getenv('RELATION_MESH_LIMIT', '50')),
        cluster_min_score=float(os.getenv('RELATION_CLUSTER_MIN_SCORE', '0.3')),
        cluster_fanout=int(os.getenv('RELATION_CLUSTER_FANOUT', '5')),
        rescale_cosine=rescale_cosine,
        surface_hosts=_env_json('RELATION_SURFACE_HOSTS', DEFAULT_SURFACE_HOSTS),
        surface_penalties=_parse_surface_penalties(_env_json('RELATION_SURFACE_PENALTIES', DEFAULT_SURFACE_PENALTIES)),
        surface_boosts=_parse_surface_boosts(_env_json('RELATION_SURFACE_BOOSTS', DEFAULT_SURFACE_BOOSTS)))

    search_config = SearchConfig(keyword_weight=float(os.getenv('SEARCH_KEYWORD_WEIGHT', '0.4')),
                                 semantic_weight=float(os.getenv('SEARCH_SEMANTIC_WEIGHT', '0.6')),
                                 default_limit=int(os.getenv('SEARCH_DEFAULT_LIMIT', '10')),
                                 max_limit=int(os.getenv('SEARCH_MAX_LIMIT', '100')),
                                 candidate_multiplier=int(os.getenv('SEARCH_CANDIDATE_MULTIPLIER', '2')),
                                 min_score=float(os.getenv('SEARCH_MIN_SCORE', '0.05')),
                                 synthesize_answers=_env_bool('SEARCH_SYNTHESIZE_ANSWERS', 'true'),
                                 answer_top_n=int(os.getenv('SEARCH_ANSWER_TOP_N', '10')),
                                 rescale_cosine=rescale_cosine)

    worker_config = WorkerConfig(max_workers=int(os.getenv('WORKER_MAX_WORKERS', '4')),
                                 max_pending=int(os.getenv('WORKER_MAX_PENDING', '100')),
                                 retry_attempts=int(os.getenv('WORKER_RETRY_ATTEMPTS', '3')),
                                 retry_delay=float(os.getenv('WORKER_RETRY_DELAY', '1.0')),
                                 retry_jitter=float(os.getenv('WORKER_RETRY_JITTER', '1.0')))

    cache_config = CacheConfig(ttl_seconds=float(os.getenv('SEARCH_CACHE_TTL_SECONDS', '900')),
                               maxsize=int(os.getenv('SEARCH_CACHE_MAXSIZE', '1024')),
                               sweep_interval_seconds=float(os.getenv('SEARCH_CACHE_SWEEP_SECONDS', '60')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     ingestion=ingestion_config,
                     relation=relation_config,
                     search=search_config,
                     worker=worker_config,
                     cache=cache_config)


# Global configuration instance
config = load_config()
