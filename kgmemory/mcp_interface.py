"""
MCP Interface Layer using fastmcp: exposes the knowledge graph operations as agent tools.
"""
from functools import wraps
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from kgmemory.models.errors import KnowledgeGraphError
from kgmemory.services.knowledge_graph import KnowledgeGraphService
from kgmemory.utils.config import config
from kgmemory.utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Knowledge Graph Memory')
_service: Optional[KnowledgeGraphService] = None


def get_service() -> KnowledgeGraphService:
    """Return the shared service, building it from configuration on first use."""
    global _service
    if _service is None:
        _service = KnowledgeGraphService()
    return _service


def _tool_errors(func):
    """Report failures to the calling agent as tool errors carrying the message text."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KnowledgeGraphError as e:
            logger.error(f'{func.__name__} failed: {e}')
            raise ToolError(f'{func.__name__} failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in {func.__name__}: {e}')
            raise ToolError(f'{func.__name__} failed: {e}')

    return wrapper


@_tool_errors
def create_entities(entities: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Create new entities in the knowledge graph.

    Args:
        entities: Items with name, entityType, observations and optional metadata and labels

    Returns:
        The created entity versions
    """
    created = get_service().create_entities(entities)
    logger.debug(f'MCP created {len(created)} entities')
    return [entity.to_dict(include_embedding=False) for entity in created]


@_tool_errors
def update_entity(name: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Update an entity's type, observations or metadata, creating a new version.

    Args:
        name: Entity name
        changes: Fields to change; metadata is merged into the existing metadata
    """
    return get_service().update_entity(name, changes).to_dict(include_embedding=False)


@_tool_errors
def add_observations(name: str, observations: List[str]) -> Dict[str, Any]:
    """Append observations to an existing entity."""
    return get_service().add_observations(name, observations).to_dict(include_embedding=False)


@_tool_errors
def delete_entities(entity_names: List[str]) -> Dict[str, int]:
    """Delete entities. Their history stays readable.

    Returns:
        {'deleted': number of entities that were current}
    """
    return {'deleted': get_service().delete_entities(entity_names)}


@_tool_errors
def create_relations(relations: List[Dict[str, Any]], update: bool = False) -> List[Dict[str, Any]]:
    """Create relations between existing entities.

    Args:
        relations: Items with from, to, relationType and optional strength, confidence, metadata
        update: Write a new version when a relation already exists instead of failing
    """
    return [relation.to_dict() for relation in get_service().create_relations(relations, update=update)]


@_tool_errors
def update_relation(relation: Dict[str, Any]) -> Dict[str, Any]:
    """Update strength, confidence or metadata of an existing relation."""
    return get_service().update_relation(relation).to_dict()


@_tool_errors
def delete_relations(relations: List[Dict[str, Any]]) -> Dict[str, int]:
    """Delete relations identified by from, to and relationType."""
    return {'deleted': get_service().delete_relations(relations)}


@_tool_errors
def add_label_to_entity(name: str, label: str) -> Dict[str, bool]:
    """Attach a structural label to an entity."""
    return {'added': get_service().add_label_to_entity(name, label)}


@_tool_errors
def read_graph() -> Dict[str, Any]:
    """Read the entire current knowledge graph."""
    return get_service().read_graph().to_dict()


@_tool_errors
def open_nodes(names: List[str]) -> Dict[str, Any]:
    """Read specific entities and the relations between them. Unknown names are skipped."""
    return get_service().open_nodes(names).to_dict()


@_tool_errors
def get_entity_history(name: str) -> List[Dict[str, Any]]:
    """List every version of an entity, oldest first."""
    return [entity.to_dict(include_embedding=False) for entity in get_service().get_entity_history(name)]


@_tool_errors
def get_graph_at_time(timestamp: int) -> Dict[str, Any]:
    """Read the knowledge graph as it was at an epoch-milliseconds timestamp."""
    return get_service().get_graph_at_time(timestamp).to_dict()


@_tool_errors
def get_decayed_graph() -> Dict[str, Any]:
    """Read the current graph with relation strength and confidence decayed by age."""
    return get_service().get_decayed_graph().to_dict()


@_tool_errors
def search_similar(query: str,
                   entity_types: Optional[List[str]] = None,
                   labels: Optional[List[str]] = None,
                   limit: int = 10) -> List[Dict[str, Any]]:
    """Semantic search over entities.

    Args:
        query: Natural language query
        entity_types: Only return entities of these types
        labels: Only return entities carrying all of these labels
        limit: Maximum number of results to return (default: 10)

    Returns:
        Entities with similarity score and direct relations, best match first
    """
    results = get_service().search_similar(query, entity_types=entity_types, labels=labels, k=limit)
    logger.debug(f'MCP search returned {len(results)} entities')
    return [result.to_dict() for result in results]


@_tool_errors
def get_ontology(timestamp: Optional[int] = None) -> str:
    """Describe the entity types and relation patterns in the knowledge graph."""
    return get_service().get_ontology(timestamp).text


@_tool_errors
def backfill_embeddings(limit: Optional[int] = None) -> Dict[str, Any]:
    """Generate embeddings for entities that do not have one yet."""
    return get_service().backfill_embeddings(limit).to_dict()


TOOLS = (create_entities, update_entity, add_observations, delete_entities, create_relations, update_relation,
         delete_relations, add_label_to_entity, read_graph, open_nodes, get_entity_history, get_graph_at_time,
         get_decayed_graph, search_similar, get_ontology, backfill_embeddings)

for _tool in TOOLS:
    mcp.tool()(_tool)

if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
