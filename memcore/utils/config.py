"""
Configuration management for external collaborators, storage and the maintenance scheduler.
"""

import os
from dataclasses import dataclass, field
from typing import Dict

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
    timeout: int


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    timeout: int


@dataclass
class DatabaseConfig:
    """Configuration for the relational memory store."""
    url: str
    echo: bool = False


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int


@dataclass
class RetrieverConfig:
    """Configuration for the similarity retriever backend."""
    backend: str = 'store'  # store | opensearch


@dataclass
class DecisionConfig:
    """Configuration for the update decision engine."""
    top_k: int = 10
    threshold: float = 0.5
    max_attempts: int = 2  # first try + one re-queue
    conflict_retries: int = 3
    tie_tolerance: float = 0.01


@dataclass
class RetrievalConfig:
    """Configuration for the retrieval composer."""
    candidate_pool: int = 50
    min_similarity: float = 0.3
    min_value_per_token: float = 0.002
    default_token_budget: int = 2000
    sufficiency_mode: str = 'heuristic'  # llm | heuristic
    max_sensitivity: str = 'sensitive'


def _default_half_lives() -> Dict[str, float]:
    return {
        'preference': 180.0,
        'entity': 120.0,
        'fact': 90.0,
        'goal': 90.0,
        'procedure': 120.0,
        'decision': 60.0,
        'action': 30.0,
        'event': 14.0,
    }


@dataclass
class MaintenanceConfig:
    """Configuration for background maintenance jobs."""
    workers: int = 2
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    poll_interval_seconds: float = 1.0
    consolidate_threshold: float = 0.85
    decay_floor: float = 0.05
    pinned_floor: float = 0.8
    decay_grace_days: float = 7.0
    half_lives: Dict[str, float] = field(default_factory=_default_half_lives)
    cleanup_idle_days: int = 180
    cleanup_importance: float = 0.1
    resummarize_min_new_records: int = 10
    job_timeout_seconds: float = 1800.0


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    database: DatabaseConfig
    opensearch: OpenSearchConfig
    retriever: RetrieverConfig
    decision: DecisionConfig
    retrieval: RetrievalConfig
    maintenance: MaintenanceConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          timeout=int(os.getenv('BEDROCK_LLM_TIMEOUT', '60')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')),
                                              timeout=int(os.getenv('BEDROCK_EMBED_TIMEOUT', '30')))

    database_config = DatabaseConfig(url=os.getenv('MEMCORE_DATABASE_URL', 'sqlite:///memcore.db'),
                                     echo=_env_bool('MEMCORE_DATABASE_ECHO'))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memcore_records'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    retriever_config = RetrieverConfig(backend=os.getenv('MEMCORE_RETRIEVER', 'store'))

    decision_config = DecisionConfig(top_k=int(os.getenv('MEMCORE_DECISION_TOP_K', '10')),
                                     threshold=float(os.getenv('MEMCORE_DECISION_THRESHOLD', '0.5')),
                                     max_attempts=int(os.getenv('MEMCORE_DECISION_MAX_ATTEMPTS', '2')),
                                     conflict_retries=int(os.getenv('MEMCORE_CONFLICT_RETRIES', '3')))

    retrieval_config = RetrievalConfig(candidate_pool=int(os.getenv('MEMCORE_RETRIEVAL_POOL', '50')),
                                       min_similarity=float(os.getenv('MEMCORE_RETRIEVAL_MIN_SIMILARITY', '0.3')),
                                       min_value_per_token=float(os.getenv('MEMCORE_RETRIEVAL_MIN_VALUE_PER_TOKEN', '0.002')),
                                       default_token_budget=int(os.getenv('MEMCORE_RETRIEVAL_TOKEN_BUDGET', '2000')),
                                       sufficiency_mode=os.getenv('MEMCORE_SUFFICIENCY_MODE', 'heuristic'),
                                       max_sensitivity=os.getenv('MEMCORE_RETRIEVAL_MAX_SENSITIVITY', 'sensitive'))

    # Maintenance configuration
    maintenance_config = MaintenanceConfig(workers=int(os.getenv('MEMCORE_MAINTENANCE_WORKERS', '2')),
                                           max_attempts=int(os.getenv('MEMCORE_JOB_MAX_ATTEMPTS', '3')),
                                           backoff_base_seconds=float(os.getenv('MEMCORE_JOB_BACKOFF_SECONDS', '2.0')),
                                           poll_interval_seconds=float(os.getenv('MEMCORE_JOB_POLL_SECONDS', '1.0')),
                                           consolidate_threshold=float(os.getenv('MEMCORE_CONSOLIDATE_THRESHOLD', '0.85')),
                                           decay_floor=float(os.getenv('MEMCORE_DECAY_FLOOR', '0.05')),
                                           pinned_floor=float(os.getenv('MEMCORE_PINNED_FLOOR', '0.8')),
                                           cleanup_idle_days=int(os.getenv('MEMCORE_CLEANUP_IDLE_DAYS', '180')),
                                           job_timeout_seconds=float(os.getenv('MEMCORE_JOB_TIMEOUT_SECONDS', '1800')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     database=database_config,
                     opensearch=opensearch_config,
                     retriever=retriever_config,
                     decision=decision_config,
                     retrieval=retrieval_config,
                     maintenance=maintenance_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
