"""
Knowledge Graph Service: the single entry point wiring the version store, embeddings,
semantic search, decay and ontology behind the exposed operations.
"""

from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

from ..models.core import Entity, KnowledgeGraph, Relation
from ..utils.config import AppConfig, config
from ..utils.graph_backend import GraphBackend
from ..utils.logging_config import get_logger
from .decay import DecayedGraphGenerator, DecayPolicy
from .embedding_sync import BackfillReport, EmbeddingSynchronizer
from .ontology import OntologyExtractor, OntologyResult
from .semantic_search import SearchResult, SemanticSearchEngine
from .version_store import VersionStore

logger = get_logger(__name__)


def create_backend(app_config: AppConfig) -> GraphBackend:
    """Build the graph backend selected by ``GRAPH_BACKEND``."""
    if app_config.store.backend == 'memory':
        from ..utils.memory_graph import InMemoryGraphBackend
        return InMemoryGraphBackend()

    from ..utils.neptune_client import NeptuneClient
    return NeptuneClient(app_config.neptune)


def create_embedder(app_config: AppConfig) -> Any:
    from ..utils.bedrock_embed import BedrockEmbed
    return BedrockEmbed(app_config.bedrock_embed)


def create_index(app_config: AppConfig) -> Any:
    from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
    index = OpenSearchClient(app_config.opensearch)
    try:
        index.create_index_if_not_exists()
    except OpenSearchError as e:
        logger.warning(f'Failed to create OpenSearch index: {e}')
    return index


class KnowledgeGraphService:
    """Facade over the knowledge graph engine used by the MCP interface."""

    def __init__(self,
                 store: Optional[VersionStore] = None,
                 embedder: Any = None,
                 index: Any = None,
                 clock: Optional[Callable[[], int]] = None,
                 app_config: Optional[AppConfig] = None,
                 ontology_clock: Optional[Callable[[], float]] = None):
        """
        Initialize the service. Collaborators that are not given are built from configuration.

        Args:
            store: Version store (defaults to one over the configured backend)
            embedder: Embedding service (defaults to Bedrock)
            index: Embedding index (defaults to OpenSearch)
            clock: Epoch-milliseconds clock shared by every component
            app_config: Configuration (defaults to the global ``config``)
            ontology_clock: Seconds clock for ontology cache expiry
        """
        self.config = app_config or config
        if store is None:
            store_kwargs = {'clock': clock} if clock else {}
            store = VersionStore(create_backend(self.config),
                                 changed_by=self.config.store.changed_by,
                                 max_update_attempts=self.config.store.max_update_attempts,
                                 **store_kwargs)
        self.store = store
        self.clock = clock or store.clock
        self.embedder = embedder if embedder is not None else create_embedder(self.config)
        self.index = index if index is not None else create_index(self.config)

        self.embeddings = EmbeddingSynchronizer(store,
                                                self.embedder,
                                                self.index,
                                                clock=self.clock,
                                                max_workers=self.config.backfill.max_workers)
        self.search = SemanticSearchEngine(store, self.embedder, self.index, overfetch=self.config.search.overfetch)
        self.decay = DecayedGraphGenerator(store, DecayPolicy.from_config(self.config.decay), clock=self.clock)
        ontology_kwargs = {'clock': ontology_clock} if ontology_clock else {}
        self.ontology = OntologyExtractor(store,
                                          ttl_seconds=self.config.ontology.cache_ttl_seconds,
                                          max_entries=self.config.ontology.cache_max_entries,
                                          **ontology_kwargs)

        logger.info('Initialized KnowledgeGraphService')

    def _embed(self, entities: Sequence[Entity]) -> List[Entity]:
        """Embed and index freshly written versions; failures are left for backfill to repair."""
        report = self.embeddings.sync_entities(entities)
        if report.failed:
            logger.warning(f'Embedding deferred to backfill for {sorted(report.failed)}')
        embedded = set(report.updated)
        current = self.store.backend.get_current_entities(sorted(embedded)) if embedded else {}
        return [current.get(entity.name, entity) if entity.name in embedded else entity for entity in entities]

    def _changed(self):
        self.ontology.invalidate()

    # Mutations

    def create_entities(self, entities: Sequence[Union[Entity, Mapping[str, Any]]]) -> List[Entity]:
        created = self.store.create_entities(entities)
        self._changed()
        return self._embed(created)

    def update_entity(self, name: str, changes: Mapping[str, Any]) -> Entity:
        updated = self.store.update_entity(name, changes)
        self._changed()
        return self._embed([updated])[0]

    def add_observations(self, name: str, observations: Any) -> Entity:
        updated = self.store.add_observations(name, observations)
        self._changed()
        return self._embed([updated])[0]

    def delete_entities(self, names: Sequence[str]) -> int:
        """Delete entities and drop their index entries."""
        closed = self.store.delete_entities(names)
        self._changed()
        failed = self.embeddings.remove(list(dict.fromkeys(names)))
        if failed:
            logger.warning(f'Index entries left for deleted entities {sorted(failed)}; search filters them out')
        return closed

    def create_relations(self, relations: Sequence[Union[Relation, Mapping[str, Any]]], update: bool = False) -> List[Relation]:
        written = self.store.create_relations(relations, update=update)
        self._changed()
        return written

    def update_relation(self, relation: Union[Relation, Mapping[str, Any]]) -> Relation:
        updated = self.store.update_relation(relation)
        self._changed()
        return updated

    def delete_relations(self, relations: Sequence[Union[Relation, Mapping[str, Any]]]) -> int:
        closed = self.store.delete_relations(relations)
        self._changed()
        return closed

    def add_label_to_entity(self, name: str, label: str) -> bool:
        """Add a structural label; an embedded entity is re-indexed so label filters see it."""
        added = self.store.add_label_to_entity(name, label)
        if added:
            self._changed()
            entity = self.store.backend.get_current_entities([name]).get(name)
            if entity is not None and entity.embedding is not None:
                self._embed([entity])
        return added

    # Reads

    def read_graph(self) -> KnowledgeGraph:
        return self.store.read_graph()

    def open_nodes(self, names: Sequence[str]) -> KnowledgeGraph:
        return self.store.open_nodes(names)

    def get_entity_history(self, name: str) -> List[Entity]:
        return self.store.get_entity_history(name)

    def get_graph_at_time(self, timestamp: int) -> KnowledgeGraph:
        return self.store.get_graph_at_time(timestamp)

    def get_decayed_graph(self, now: Optional[int] = None) -> KnowledgeGraph:
        return self.decay.get_decayed_graph(now)

    def search_similar(self,
                       query_text: str,
                       entity_types: Union[str, Sequence[str], None] = None,
                       labels: Optional[Sequence[str]] = None,
                       k: Optional[int] = None) -> List[SearchResult]:
        return self.search.search_similar(query_text,
                                          entity_types=entity_types,
                                          labels=labels,
                                          k=self.config.search.default_k if k is None else k)

    def get_ontology(self, at: Optional[int] = None) -> OntologyResult:
        return self.ontology.get_ontology(at)

    def backfill_embeddings(self, limit: Optional[int] = None) -> BackfillReport:
        return self.embeddings.backfill(limit)

    def close(self):
        self.store.backend.close()
