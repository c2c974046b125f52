"""
Health check utilities for the application.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None, **clients: Any) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(app_config, **clients)

        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def _check_client(name: str, service: str, detail: Dict[str, Any], client: Any,
                  factory: Callable[[], Any]) -> Dict[str, Any]:
    try:
        if client is None:
            client = factory()
        return {'healthy': bool(client.health_check()), 'service': service, **detail}
    except Exception as e:
        logger.warning(f'{name} health check failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(app_config: Optional[AppConfig] = None,
                      bedrock_llm: Any = None,
                      bedrock_embed: Any = None,
                      neptune: Any = None,
                      opensearch: Any = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Clients that are passed in are checked as-is; missing ones are built from
    the configuration.

    Returns:
        Dictionary with health status of each component
    """
    if app_config is None:
        from .config import config as default_config
        app_config = default_config

    return {
        'bedrock_llm':
        _check_client('bedrock_llm', 'Amazon Bedrock LLM', {'model': app_config.bedrock_llm.model_id}, bedrock_llm,
                      lambda: BedrockLLM(app_config.bedrock_llm)),
        'bedrock_embed':
        _check_client('bedrock_embed', 'Amazon Bedrock Embed', {'model': app_config.bedrock_embed.model_id},
                      bedrock_embed,
                      lambda: BedrockEmbed(app_config.bedrock_embed)),
        'neptune':
        _check_client('neptune', 'Amazon Neptune', {'endpoint': app_config.neptune.endpoint}, neptune,
                      lambda: NeptuneClient(app_config.neptune)),
        'opensearch':
        _check_client('opensearch', 'Amazon OpenSearch', {'endpoint': app_config.opensearch.endpoint}, opensearch,
                      lambda: OpenSearchClient(app_config.opensearch)),
    }
