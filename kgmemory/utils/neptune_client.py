"""
Amazon Neptune graph backend with Gremlin Python driver and AWS SigV4 authentication.

Each entity version is an ``Entity`` vertex and each relation version an edge between
the endpoint vertices that were current when it was written. Current rows are the ones
without a ``validTo`` property. Multi-row mutations run inside one Gremlin transaction.
"""

from contextlib import contextmanager
from functools import wraps
from typing import Any, Dict, Iterator, List, Optional, Sequence

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, P

from ..models.core import Entity, EntityEmbedding, KnowledgeGraph, Relation, RelationKey
from ..models.errors import (DanglingEndpointError, DuplicateKeyError, InconsistentStateError, KnowledgeGraphError,
                             NotFoundError, UpstreamFailure, VersionConflictError)
from ..services.text_builder import normalize_observations
from .config import NeptuneConfig
from .graph_backend import ENTITY_LABEL, GENERIC_RELATION_LABEL, GraphBackend, single_current
from .json_utils import from_json_property, to_json_property
from .logging_config import get_logger

logger = get_logger(__name__)


class NeptuneError(UpstreamFailure):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations once on a closed transport.

    Domain errors raised inside the operation pass through untouched; any other
    failure is wrapped in :class:`NeptuneError`.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        key = str(args[0]) if args else None
        try:
            return func(self, *args, **kwargs)
        except KnowledgeGraphError:
            raise
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except KnowledgeGraphError:
                    raise
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}', operation=func.__name__, key=key)
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}', operation=func.__name__, key=key)

    return wrapper


def _first(data: Dict[str, Any], key: str, default: Any = None) -> Any:
    """Unwrap a ``value_map`` entry, which is a list for vertex properties."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def entity_from_value_map(data: Dict[str, Any]) -> Entity:
    """Build an :class:`Entity` from a vertex ``value_map()``."""
    labels = data.get('labels', [])
    if not isinstance(labels, list):
        labels = [labels]
    return Entity(name=_first(data, 'name', ''),
                  entity_type=_first(data, 'entityType', ''),
                  observations=normalize_observations(_first(data, 'observations')),
                  metadata=from_json_property(_first(data, 'metadata'), {}),
                  labels=sorted(set(labels)),
                  embedding=EntityEmbedding.from_dict(from_json_property(_first(data, 'embedding'))),
                  id=_first(data, 'id', ''),
                  version=int(_first(data, 'version', 1)),
                  created_at=int(_first(data, 'createdAt', 0)),
                  updated_at=int(_first(data, 'updatedAt', 0)),
                  valid_from=int(_first(data, 'validFrom', 0)),
                  valid_to=_optional_int(_first(data, 'validTo')),
                  changed_by=_first(data, 'changedBy'))


def relation_from_value_map(data: Dict[str, Any]) -> Relation:
    """Build a :class:`Relation` from an edge ``value_map()``."""
    strength = _first(data, 'strength')
    confidence = _first(data, 'confidence')
    return Relation(from_entity=_first(data, 'fromName', ''),
                    to_entity=_first(data, 'toName', ''),
                    relation_type=_first(data, 'relationType', ''),
                    strength=None if strength is None else float(strength),
                    confidence=None if confidence is None else float(confidence),
                    metadata=from_json_property(_first(data, 'metadata'), {}),
                    relationship_type=_first(data, 'relationshipType'),
                    id=_first(data, 'id', ''),
                    version=int(_first(data, 'version', 1)),
                    created_at=int(_first(data, 'createdAt', 0)),
                    updated_at=int(_first(data, 'updatedAt', 0)),
                    valid_from=int(_first(data, 'validFrom', 0)),
                    valid_to=_optional_int(_first(data, 'validTo')),
                    changed_by=_first(data, 'changedBy'))


def _entity_properties(entity: Entity) -> Dict[str, Any]:
    properties = {
        'id': entity.id,
        'name': entity.name,
        'entityType': entity.entity_type,
        'observations': to_json_property(entity.observations),
        'metadata': to_json_property(entity.metadata),
        'version': entity.version,
        'createdAt': entity.created_at,
        'updatedAt': entity.updated_at,
        'validFrom': entity.valid_from,
        'validTo': entity.valid_to,
        'changedBy': entity.changed_by,
        'embedding': to_json_property(entity.embedding.to_dict()) if entity.embedding else None
    }
    # Neptune has no null property values; absence means "not set"
    return {key: value for key, value in properties.items() if value is not None}


def _relation_properties(relation: Relation) -> Dict[str, Any]:
    properties = {
        'id': relation.id,
        'fromName': relation.from_entity,
        'toName': relation.to_entity,
        'relationType': relation.relation_type,
        'relationshipType': relation.relationship_type,
        'strength': relation.strength,
        'confidence': relation.confidence,
        'metadata': to_json_property(relation.metadata),
        'version': relation.version,
        'createdAt': relation.created_at,
        'updatedAt': relation.updated_at,
        'validFrom': relation.valid_from,
        'validTo': relation.valid_to,
        'changedBy': relation.changed_by
    }
    return {key: value for key, value in properties.items() if value is not None}


class NeptuneClient(GraphBackend):
    """Amazon Neptune backend using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found', operation='connect')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        """Run the enclosed traversals in one Gremlin transaction, rolling back on any error."""
        tx = self.g.tx()
        gtx = tx.begin()
        try:
            yield gtx
            tx.commit()
        except Exception:
            if tx.is_open():
                tx.rollback()
            raise

    @staticmethod
    def _entity_versions(g, name: str):
        return g.V().has_label(ENTITY_LABEL).has('name', name)

    @staticmethod
    def _current_entity_rows(g, name: str) -> List[Entity]:
        rows = NeptuneClient._entity_versions(g, name).has_not('validTo').value_map().to_list()
        return [entity_from_value_map(row) for row in rows]

    @staticmethod
    def _relation_versions(g, key: RelationKey):
        from_name, to_name, relation_type = key
        return g.E().has('relationType', relation_type).has('fromName', from_name).has('toName', to_name)

    def _edge_label(self, relation: Relation) -> str:
        if self.config.native_edge_labels and relation.relationship_type:
            return relation.relationship_type
        return GENERIC_RELATION_LABEL

    @staticmethod
    def _add_entity_vertex(g, entity: Entity) -> None:
        vertex = g.add_v(ENTITY_LABEL)
        for key, value in _entity_properties(entity).items():
            vertex = vertex.property(Cardinality.single, key, value)
        for label in entity.labels:
            vertex = vertex.property(Cardinality.set_, 'labels', label)
        vertex.iterate()

    @retry_on_connection_error
    def get_entity_versions(self, name: str) -> List[Entity]:
        rows = self._entity_versions(self.g, name).value_map().to_list()
        return sorted((entity_from_value_map(row) for row in rows), key=lambda entity: entity.version)

    @retry_on_connection_error
    def get_current_entities(self, names: Sequence[str]) -> Dict[str, Entity]:
        if not names:
            return {}
        rows = self.g.V().has_label(ENTITY_LABEL).has('name', P.within(list(names))).has_not('validTo')\
            .value_map().to_list()

        grouped: Dict[str, List[Entity]] = {}
        for row in rows:
            entity = entity_from_value_map(row)
            grouped.setdefault(entity.name, []).append(entity)
        return {name: single_current(versions, name) for name, versions in grouped.items()}

    @retry_on_connection_error
    def insert_entities(self, entities: Sequence[Entity]) -> None:
        with self._transaction() as gtx:
            for entity in entities:
                if self._current_entity_rows(gtx, entity.name):
                    raise DuplicateKeyError(f"Entity '{entity.name}' already exists")
                self._add_entity_vertex(gtx, entity)
        logger.debug(f'Inserted {len(entities)} entity vertices')

    @retry_on_connection_error
    def supersede_entity(self, name: str, expected_version: int, replacement: Optional[Entity], now: int) -> None:
        with self._transaction() as gtx:
            current = single_current(self._current_entity_rows(gtx, name), name)
            if current is None:
                raise NotFoundError(f"Entity '{name}' not found")
            if current.version != expected_version:
                raise VersionConflictError(f"Entity '{name}' is at version {current.version}, expected {expected_version}",
                                           operation='supersede_entity',
                                           key=name)

            self._entity_versions(gtx, name).has('version', expected_version).has_not('validTo')\
                .property(Cardinality.single, 'validTo', now).iterate()
            if replacement is not None:
                self._add_entity_vertex(gtx, replacement)
        logger.debug(f"Superseded entity vertex '{name}' v{expected_version}")

    @retry_on_connection_error
    def close_entities(self, names: Sequence[str], now: int) -> int:
        closed = 0
        with self._transaction() as gtx:
            for name in dict.fromkeys(names):
                if single_current(self._current_entity_rows(gtx, name), name) is None:
                    continue
                self._entity_versions(gtx, name).has_not('validTo').property(Cardinality.single, 'validTo', now).iterate()
                closed += 1
        return closed

    @retry_on_connection_error
    def add_label(self, name: str, label: str) -> bool:
        with self._transaction() as gtx:
            current = single_current(self._current_entity_rows(gtx, name), name)
            if current is None:
                raise NotFoundError(f"Entity '{name}' not found")
            if label in current.labels:
                return False
            self._entity_versions(gtx, name).has_not('validTo').property(Cardinality.set_, 'labels', label).iterate()
        return True

    @retry_on_connection_error
    def set_embedding(self, name: str, version: int, embedding: EntityEmbedding) -> bool:
        updated = self._entity_versions(self.g, name).has('version', version).has_not('validTo')\
            .property(Cardinality.single, 'embedding', to_json_property(embedding.to_dict()))\
            .count().next()
        return int(updated) > 0

    @retry_on_connection_error
    def get_relation_versions(self, key: RelationKey) -> List[Relation]:
        rows = self._relation_versions(self.g, key).value_map().to_list()
        return sorted((relation_from_value_map(row) for row in rows), key=lambda relation: relation.version)

    @retry_on_connection_error
    def get_current_relations(self, keys: Sequence[RelationKey]) -> Dict[RelationKey, Relation]:
        found = {}
        for key in dict.fromkeys(keys):
            rows = self._relation_versions(self.g, key).has_not('validTo').value_map().to_list()
            current = single_current((relation_from_value_map(row) for row in rows), key)
            if current is not None:
                found[key] = current
        return found

    @retry_on_connection_error
    def commit_relations(self, relations: Sequence[Relation], expected_versions: Dict[RelationKey, Optional[int]],
                         now: int) -> None:
        with self._transaction() as gtx:
            for relation in relations:
                endpoints = []
                for endpoint in (relation.from_entity, relation.to_entity):
                    vertices = self._entity_versions(gtx, endpoint).has_not('validTo').to_list()
                    if not vertices:
                        raise DanglingEndpointError(f"Relation {relation.key!r} references missing entity '{endpoint}'")
                    if len(vertices) > 1:
                        raise InconsistentStateError(f"{len(vertices)} current versions found for entity '{endpoint}'")
                    endpoints.append(vertices[0])

                rows = self._relation_versions(gtx, relation.key).has_not('validTo').value_map().to_list()
                current = single_current((relation_from_value_map(row) for row in rows), relation.key)
                expected = expected_versions.get(relation.key)
                if expected is None and current is not None:
                    raise DuplicateKeyError(f'Relation {relation.key!r} already exists')
                if expected is not None and (current is None or current.version != expected):
                    raise VersionConflictError(f'Relation {relation.key!r} changed concurrently',
                                               operation='commit_relations',
                                               key=str(relation.key))
                if current is not None:
                    self._relation_versions(gtx, relation.key).has_not('validTo').property('validTo', now).iterate()

                edge = gtx.V(endpoints[0]).add_e(self._edge_label(relation)).to(endpoints[1])
                for key, value in _relation_properties(relation).items():
                    edge = edge.property(key, value)
                edge.iterate()
        logger.debug(f'Committed {len(relations)} relation edges')

    @retry_on_connection_error
    def close_relations(self, keys: Sequence[RelationKey], now: int) -> int:
        closed = 0
        with self._transaction() as gtx:
            for key in dict.fromkeys(keys):
                count = self._relation_versions(gtx, key).has_not('validTo').count().next()
                if not count:
                    continue
                self._relation_versions(gtx, key).has_not('validTo').property('validTo', now).iterate()
                closed += 1
        return closed

    @retry_on_connection_error
    def relations_touching(self, names: Sequence[str]) -> List[Relation]:
        if not names:
            return []
        names = list(names)
        rows = self.g.E().has_not('validTo')\
            .or_(__.has('fromName', P.within(names)), __.has('toName', P.within(names)))\
            .value_map().to_list()
        return sorted((relation_from_value_map(row) for row in rows), key=lambda relation: relation.key)

    @retry_on_connection_error
    def snapshot(self, at: Optional[int] = None) -> KnowledgeGraph:
        vertices = self.g.V().has_label(ENTITY_LABEL)
        edges = self.g.E().has('relationType')
        if at is None:
            vertices = vertices.has_not('validTo')
            edges = edges.has_not('validTo')
        else:
            vertices = vertices.has('validFrom', P.lte(at)).or_(__.has_not('validTo'), __.has('validTo', P.gt(at)))
            edges = edges.has('validFrom', P.lte(at)).or_(__.has_not('validTo'), __.has('validTo', P.gt(at)))

        entities = sorted((entity_from_value_map(row) for row in vertices.value_map().to_list()),
                          key=lambda entity: entity.name)
        relations = sorted((relation_from_value_map(row) for row in edges.value_map().to_list()),
                           key=lambda relation: relation.key)
        logger.debug(f'Snapshot at {at if at is not None else "now"}: {len(entities)} entities, {len(relations)} relations')
        return KnowledgeGraph(entities=entities, relations=relations)

