"""
Configuration management for AWS services and application settings.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

load_dotenv()


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
    native_edge_labels: bool


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int


@dataclass
class StoreConfig:
    """Configuration for the bitemporal version store."""
    backend: str  # 'neptune' or 'memory'
    changed_by: str
    max_update_attempts: int


@dataclass
class DecayConfig:
    """Configuration for read-time decay of relation strength and confidence."""
    enabled: bool
    half_life_days: float
    floor: float
    relation_overrides: Dict[str, Dict[str, float]] = field(default_factory=dict)


@dataclass
class OntologyConfig:
    """Configuration for the ontology cache."""
    cache_ttl_seconds: float
    cache_max_entries: int


@dataclass
class SearchConfig:
    """Configuration for semantic search."""
    default_k: int
    overfetch: int


@dataclass
class BackfillConfig:
    """Configuration for the embedding backfill job."""
    max_workers: int


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
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    store: StoreConfig
    decay: DecayConfig
    ontology: OntologyConfig
    search: SearchConfig
    backfill: BackfillConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def _env_json(name: str, default: str) -> Dict:
    raw = os.getenv(name, default)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f'{name} must be a JSON object: {e}')
    if not isinstance(value, dict):
        raise ValueError(f'{name} must be a JSON object, got {type(value).__name__}')
    return value


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'),
                                   native_edge_labels=_env_bool('NEPTUNE_NATIVE_EDGE_LABELS', 'false'))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'kg_entity_embeddings'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    # Version store configuration
    store_config = StoreConfig(backend=os.getenv('GRAPH_BACKEND', 'neptune').lower(),
                               changed_by=os.getenv('STORE_CHANGED_BY', 'system'),
                               max_update_attempts=int(os.getenv('STORE_MAX_UPDATE_ATTEMPTS', '3')))

    # Decay configuration
    decay_config = DecayConfig(enabled=_env_bool('DECAY_ENABLED', 'true'),
                               half_life_days=float(os.getenv('DECAY_HALF_LIFE_DAYS', '30')),
                               floor=float(os.getenv('DECAY_MIN_CONFIDENCE', '0.1')),
                               relation_overrides=_env_json('DECAY_RELATION_OVERRIDES', '{}'))

    # Ontology configuration
    ontology_config = OntologyConfig(cache_ttl_seconds=float(os.getenv('ONTOLOGY_CACHE_TTL_SECONDS', '300')),
                                     cache_max_entries=int(os.getenv('ONTOLOGY_CACHE_MAX_ENTRIES', '32')))

    # Search configuration
    search_config = SearchConfig(default_k=int(os.getenv('SEARCH_DEFAULT_K', '10')),
                                 overfetch=int(os.getenv('SEARCH_OVERFETCH', '3')))

    # Backfill configuration
    backfill_config = BackfillConfig(max_workers=int(os.getenv('BACKFILL_MAX_WORKERS', '4')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     store=store_config,
                     decay=decay_config,
                     ontology=ontology_config,
                     search=search_config,
                     backfill=backfill_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
