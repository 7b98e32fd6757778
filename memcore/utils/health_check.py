"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig, config
from .logging_config import get_logger
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None, engine: Optional[Engine] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(app_config, engine)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def get_health_status(app_config: Optional[AppConfig] = None, engine: Optional[Engine] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        app_config: Configuration to check against (global config when None)
        engine: Memory database engine; the database check is skipped when None

    Returns:
        Dictionary with health status of each component
    """
    app_config = app_config or config
    health_status = {}

    # Check Bedrock LLM
    try:
        llm = BedrockLLM(app_config.bedrock_llm)
        health_status['bedrock_llm'] = {
            'healthy': llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': app_config.bedrock_llm.model_id
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    # Check Bedrock Embed
    try:
        embed = BedrockEmbed(app_config.bedrock_embed)
        health_status['bedrock_embed'] = {
            'healthy': embed.health_check(),
            'service': 'Amazon Bedrock Embed',
            'model': app_config.bedrock_embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    # Check memory database
    if engine is not None:
        try:
            with engine.connect() as conn:
                conn.execute(text('SELECT 1'))
            health_status['database'] = {'healthy': True, 'service': 'Memory store', 'dialect': engine.dialect.name}
        except Exception as e:
            health_status['database'] = {'healthy': False, 'service': 'Memory store', 'error': str(e)}

    # Check OpenSearch only when it backs the retriever
    if app_config.retriever.backend == 'opensearch':
        try:
            opensearch = OpenSearchClient(app_config.opensearch)
            health_status['opensearch'] = {
                'healthy': opensearch.health_check(),
                'service': 'Amazon OpenSearch',
                'endpoint': app_config.opensearch.endpoint
            }
        except Exception as e:
            health_status['opensearch'] = {'healthy': False, 'service': 'Amazon OpenSearch', 'error': str(e)}

    return health_status


def get_system_info(app_config: Optional[AppConfig] = None, engine: Optional[Engine] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    app_config = app_config or config
    return {
        'service_name': 'memcore',
        'version': '1.0.0',
        'configuration': {
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'retriever_backend': app_config.retriever.backend,
            'consolidate_threshold': app_config.maintenance.consolidate_threshold,
            'aws_region': app_config.bedrock_llm.region
        },
        'health_status': get_health_status(app_config, engine)
    }
