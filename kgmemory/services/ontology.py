"""
Ontology extraction: entity-type counts and relation-type connection patterns.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..models.core import KnowledgeGraph
from ..utils.logging_config import get_logger
from .version_store import VersionStore

logger = get_logger(__name__)

UNKNOWN_TYPE = 'Unknown'
EMPTY_GRAPH_TEXT = 'No entities or relations found in the knowledge graph.'
NO_ENTITY_TYPES_TEXT = 'No entity types found in the knowledge graph.\n\n'
NO_RELATION_TYPES_TEXT = 'No relation types found in the knowledge graph.'


@dataclass
class RelationPattern:
    """How often a relation type connects one entity type to another."""
    from_type: str
    to_type: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {'from': self.from_type, 'to': self.to_type, 'count': self.count}


@dataclass
class Ontology:
    entity_types: Dict[str, int] = field(default_factory=dict)
    relation_types: Dict[str, List[RelationPattern]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entityTypes': dict(self.entity_types),
            'relationTypes': {
                relation_type: [pattern.to_dict() for pattern in patterns]
                for relation_type, patterns in self.relation_types.items()
            }
        }


def _field(item: Any, attribute: str, key: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(key)
    return getattr(item, attribute, None)


def extract_ontology(graph: Union[KnowledgeGraph, Mapping[str, Any], None]) -> Ontology:
    """Aggregate entity types and relation connection patterns from a graph snapshot.

    Entities without a type are counted under ``Unknown``. Relations without a type, or
    whose endpoints are not in the snapshot, are skipped.

    Args:
        graph: KnowledgeGraph, or a mapping with plain-dict ``entities`` and ``relations``

    Returns:
        Ontology with per-type counts and per-relation-type (from, to, count) patterns
    """
    ontology = Ontology()
    if not graph:
        return ontology

    entities = _field(graph, 'entities', 'entities') or []
    relations = _field(graph, 'relations', 'relations') or []

    types_by_name: Dict[str, str] = {}
    for entity in entities:
        entity_type = _field(entity, 'entity_type', 'entityType') or UNKNOWN_TYPE
        ontology.entity_types[entity_type] = ontology.entity_types.get(entity_type, 0) + 1
        name = _field(entity, 'name', 'name')
        if name:
            types_by_name[name] = entity_type

    counts: Dict[str, Dict[Tuple[str, str], int]] = {}
    for relation in relations:
        relation_type = _field(relation, 'relation_type', 'relationType')
        if not relation_type:
            continue
        from_type = types_by_name.get(_field(relation, 'from_entity', 'from'))
        to_type = types_by_name.get(_field(relation, 'to_entity', 'to'))
        if from_type is None or to_type is None:
            continue
        pairs = counts.setdefault(relation_type, {})
        pairs[(from_type, to_type)] = pairs.get((from_type, to_type), 0) + 1

    for relation_type, pairs in counts.items():
        ontology.relation_types[relation_type] = [
            RelationPattern(from_type=from_type, to_type=to_type, count=count)
            for (from_type, to_type), count in sorted(pairs.items())
        ]

    return ontology


def format_ontology(ontology: Ontology) -> str:
    """Render an ontology as the plain-text listing returned to agents."""
    if not ontology.entity_types and not ontology.relation_types:
        return EMPTY_GRAPH_TEXT

    output = ''
    if ontology.entity_types:
        for entity_type in sorted(ontology.entity_types):
            output += f'EntityType: {entity_type} ({ontology.entity_types[entity_type]})\n'
        output += '\n'
    else:
        output += NO_ENTITY_TYPES_TEXT

    if ontology.relation_types:
        for relation_type in sorted(ontology.relation_types):
            grouped: Dict[Tuple[str, str], int] = {}
            for pattern in ontology.relation_types[relation_type]:
                pair = (pattern.from_type, pattern.to_type)
                grouped[pair] = grouped.get(pair, 0) + pattern.count
            for (from_type, to_type), count in sorted(grouped.items()):
                output += f'RelationType: {relation_type} (EntityType: {from_type} → EntityType: {to_type}) ({count})\n'
    else:
        output += NO_RELATION_TYPES_TEXT

    return output


class OntologyCache:
    """Bounded time-based cache; the oldest entry is evicted when full."""

    def __init__(self, ttl_seconds: float = 300, max_entries: int = 32, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self.max_entries = max(1, max_entries)
        self.clock = clock
        self._cache: 'OrderedDict[Any, Tuple[Any, float]]' = OrderedDict()  # key -> (value, stored_at)
        self._lock = threading.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        """Incremented by every :meth:`clear`; lets writers detect an invalidation mid-compute."""
        return self._generation

    def get(self, key: Any) -> Optional[Any]:
        """Get cached value or None if expired/missing."""
        with self._lock:
            if key in self._cache:
                value, stored_at = self._cache[key]
                if self.clock() - stored_at < self.ttl:
                    return value
                del self._cache[key]
        return None

    def set(self, key: Any, value: Any, generation: Optional[int] = None) -> bool:
        """Store a value unless the cache was cleared since ``generation`` was read."""
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._cache.pop(key, None)
            self._cache[key] = (value, self.clock())
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)
        return True

    def clear(self):
        """Clear all cached entries."""
        with self._lock:
            self._cache.clear()
            self._generation += 1

    def __len__(self) -> int:
        return len(self._cache)


@dataclass
class OntologyResult:
    text: str
    ontology: Ontology


class OntologyExtractor:
    """Serves the formatted ontology of the current or a historical snapshot, cached."""

    def __init__(self,
                 store: VersionStore,
                 ttl_seconds: float = 300,
                 max_entries: int = 32,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.cache = OntologyCache(ttl_seconds=ttl_seconds, max_entries=max_entries, clock=clock)

    def get_ontology(self, at: Optional[int] = None) -> OntologyResult:
        """
        Extract the ontology of the graph.

        Args:
            at: Epoch-milliseconds instant to read at (defaults to the current graph)

        Returns:
            OntologyResult with the formatted text and the raw aggregation
        """
        key = 'current' if at is None else int(at)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f'Ontology cache hit for {key}')
            return cached

        generation = self.cache.generation
        graph = self.store.read_graph() if at is None else self.store.get_graph_at_time(at)
        ontology = extract_ontology(graph)
        result = OntologyResult(text=format_ontology(ontology), ontology=ontology)
        self.cache.set(key, result, generation=generation)
        logger.debug(f'Ontology extracted for {key}: {len(ontology.entity_types)} entity types, '
                     f'{len(ontology.relation_types)} relation types')
        return result

    def invalidate(self):
        self.cache.clear()
