"""
Bitemporal version store for entities and relations.

Every mutation is copy-on-write: the current version of a logical key is closed
(``validTo`` set) and a successor with ``version + 1`` is opened at the same instant,
in one atomic backend call. Deletion closes the current version without a successor.
Reads only ever see versions whose validity interval covers the read instant.
"""

import re
import uuid
from dataclasses import replace
from numbers import Real
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Union

from ..models.core import Entity, EntityEmbedding, KnowledgeGraph, Relation, RelationKey
from ..models.errors import (InconsistentStateError, NotFoundError, ValidationError, VersionConflictError)
from ..utils.graph_backend import GraphBackend
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_ms
from .text_builder import build_entity_text, normalize_observations

logger = get_logger(__name__)

UNKNOWN_LABEL = 'Unknown'
LABEL_PREFIX = 'T_'
_INVALID_LABEL_CHARS = re.compile(r'[^A-Za-z0-9_]')
_UPDATABLE_ENTITY_FIELDS = {'name', 'entityType', 'observations', 'metadata'}


def sanitize_label(value: Optional[str]) -> str:
    """Normalize a string into a structural label or relationship-type identifier.

    Contract: the result starts with an ASCII letter and contains only ASCII letters,
    digits and underscores. Invalid characters become ``_``; a result that does not
    start with a letter gets the ``T_`` prefix; empty input maps to ``Unknown``.

    Args:
        value: Raw entity type, label or relation type

    Returns:
        Sanitized identifier
    """
    if not value:
        return UNKNOWN_LABEL
    sanitized = _INVALID_LABEL_CHARS.sub('_', value)
    if not sanitized[0].isalpha():
        return LABEL_PREFIX + sanitized
    return sanitized


def _require_text(value: Any, field: str, key: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{field} must be a non-empty string (key {key!r})')
    return value


def _require_mapping(value: Any, field: str, key: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f'{field} must be a mapping (key {key!r})')
    return dict(value)


def _require_unit_interval(value: Any, field: str, key: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ValidationError(f'{field} must be a number (key {key!r})')
    if not 0.0 <= float(value) <= 1.0:
        raise ValidationError(f'{field} must be within [0, 1], got {value} (key {key!r})')
    return float(value)


def _relation_metadata(value: Any, key: RelationKey) -> Dict[str, Any]:
    metadata = _require_mapping(value, 'metadata', key)
    inferred_from = metadata.get('inferredFrom')
    if inferred_from is not None and (not isinstance(inferred_from, list)
                                      or not all(isinstance(item, str) for item in inferred_from)):
        raise ValidationError(f'metadata.inferredFrom must be a list of relation ids (key {key!r})')
    last_accessed = metadata.get('lastAccessed')
    if last_accessed is not None and (isinstance(last_accessed, bool) or not isinstance(last_accessed, Real)):
        raise ValidationError(f'metadata.lastAccessed must be a timestamp (key {key!r})')
    return metadata


class VersionStore:
    """Copy-on-write versioning over a :class:`GraphBackend`."""

    def __init__(self,
                 backend: GraphBackend,
                 clock: Callable[[], int] = now_ms,
                 changed_by: Optional[str] = None,
                 max_update_attempts: int = 3):
        """
        Initialize the version store.

        Args:
            backend: Backing graph store
            clock: Returns the current time in epoch milliseconds
            changed_by: Actor recorded on every version written by this store
            max_update_attempts: Read-modify-write attempts before a version conflict is surfaced
        """
        self.backend = backend
        self.clock = clock
        self.changed_by = changed_by
        self.max_update_attempts = max(1, max_update_attempts)

    def _retrying(self, operation: str, key: Any, attempt: Callable[[], Any]) -> Any:
        """Re-run an optimistic read-modify-write until it commits or attempts run out."""
        for number in range(1, self.max_update_attempts + 1):
            try:
                return attempt()
            except VersionConflictError as e:
                logger.warning(f'{operation} on {key!r} lost a version race '
                               f'(attempt {number}/{self.max_update_attempts}): {e}')
        raise VersionConflictError(f'{operation} on {key!r} failed after {self.max_update_attempts} attempts',
                                   operation=operation,
                                   key=str(key))

    # Entities

    def create_entities(self, specs: Sequence[Union[Entity, Mapping[str, Any]]]) -> List[Entity]:
        """Create the first current version of each entity in one atomic batch.

        Args:
            specs: Entities or mappings with name, entityType, observations, metadata and labels

        Returns:
            The created entity versions

        Raises:
            ValidationError: If an item is malformed or a name repeats within the batch
            DuplicateKeyError: If any name already has a current version
        """
        now = self.clock()
        entities = []
        seen: Set[str] = set()
        for spec in specs:
            data = spec.to_dict() if isinstance(spec, Entity) else spec
            if not isinstance(data, Mapping):
                raise ValidationError(f'Entity must be a mapping, got {type(data).__name__}')
            name = _require_text(data.get('name'), 'name', data.get('name'))
            entity_type = _require_text(data.get('entityType'), 'entityType', name)
            if name in seen:
                raise ValidationError(f"Entity '{name}' appears more than once in the batch")
            seen.add(name)

            explicit_labels = data.get('labels') or []
            if isinstance(explicit_labels, str) or not all(isinstance(label, str) for label in explicit_labels):
                raise ValidationError(f'labels must be a list of strings (key {name!r})')
            labels = {sanitize_label(entity_type)} | {sanitize_label(label) for label in explicit_labels}

            entities.append(
                Entity(name=name,
                       entity_type=entity_type,
                       observations=normalize_observations(data.get('observations')),
                       metadata=_require_mapping(data.get('metadata'), 'metadata', name),
                       labels=sorted(labels),
                       id=str(uuid.uuid4()),
                       version=1,
                       created_at=now,
                       updated_at=now,
                       valid_from=now,
                       valid_to=None,
                       changed_by=self.changed_by))

        if not entities:
            return []

        # A re-created key continues its version sequence
        for position, entity in enumerate(entities):
            history = self.backend.get_entity_versions(entity.name)
            if history:
                entities[position] = replace(entity, version=history[-1].version + 1, created_at=history[0].created_at)

        self.backend.insert_entities(entities)
        logger.info(f'Created {len(entities)} entities')
        return entities

    def _next_entity_version(self, current: Entity, changes: Mapping[str, Any], now: int) -> Entity:
        entity_type = current.entity_type
        labels = set(current.labels)
        if 'entityType' in changes:
            entity_type = _require_text(changes['entityType'], 'entityType', current.name)
            labels.discard(sanitize_label(current.entity_type))
            labels.add(sanitize_label(entity_type))

        observations = current.observations
        if 'observations' in changes:
            observations = normalize_observations(changes['observations'])

        metadata = dict(current.metadata)
        if 'metadata' in changes:
            metadata.update(_require_mapping(changes['metadata'], 'metadata', current.name))

        successor = replace(current,
                            entity_type=entity_type,
                            observations=list(observations),
                            metadata=metadata,
                            labels=sorted(labels),
                            id=str(uuid.uuid4()),
                            version=current.version + 1,
                            updated_at=now,
                            valid_from=now,
                            valid_to=None,
                            changed_by=self.changed_by)
        if build_entity_text(successor) != build_entity_text(current):
            successor = replace(successor, embedding=None)
        return successor

    def _supersede(self, name: str, build: Callable[[Entity], Mapping[str, Any]], operation: str) -> Entity:

        def attempt() -> Entity:
            current = self.backend.get_current_entities([name]).get(name)
            if current is None:
                raise NotFoundError(f"Entity '{name}' not found")
            now = self.clock()
            successor = self._next_entity_version(current, build(current), now)
            self.backend.supersede_entity(name, current.version, successor, now)
            logger.debug(f"{operation}: entity '{name}' v{current.version} -> v{successor.version}")
            return successor

        return self._retrying(operation, name, attempt)

    def update_entity(self, name: str, changes: Mapping[str, Any]) -> Entity:
        """Write the next version of an entity.

        Provided ``entityType`` and ``observations`` replace the current values;
        ``metadata`` is merged shallowly into the current metadata.

        Args:
            name: Entity name
            changes: Partial entity with camelCase keys

        Returns:
            The new current version

        Raises:
            NotFoundError: If the entity has no current version
            ValidationError: If the change set is malformed or tries to rename the entity
        """
        if not isinstance(changes, Mapping):
            raise ValidationError(f'Update for {name!r} must be a mapping')
        unknown = set(changes) - _UPDATABLE_ENTITY_FIELDS
        if unknown:
            raise ValidationError(f'Cannot update field(s) {sorted(unknown)} of entity {name!r}')
        if 'name' in changes and changes['name'] != name:
            raise ValidationError(f'Entity name is immutable ({name!r} -> {changes["name"]!r})')

        return self._supersede(name, lambda current: changes, 'update_entity')

    def add_observations(self, name: str, observations: Any) -> Entity:
        """Append observations to an entity as a new version. Duplicates are kept."""
        additions = normalize_observations(observations)
        return self._supersede(name, lambda current: {'observations': current.observations + additions},
                               'add_observations')

    def delete_entities(self, names: Sequence[str]) -> int:
        """Close the current version of each named entity.

        Missing names are ignored, so repeating a delete is harmless.

        Returns:
            Number of entities that were current and are now closed
        """
        names = [name for name in dict.fromkeys(names) if name]
        if not names:
            return 0
        closed = self.backend.close_entities(names, self.clock())
        logger.info(f'Deleted {closed} of {len(names)} requested entities')
        return closed

    def add_label_to_entity(self, name: str, label: str) -> bool:
        """Add a structural label to the current entity version without versioning it.

        Returns:
            True if the label was added, False if it was already present
        """
        _require_text(label, 'label', name)
        added = self.backend.add_label(name, sanitize_label(label))
        logger.debug(f"Label '{label}' {'added to' if added else 'already on'} entity '{name}'")
        return added

    def set_embedding(self, name: str, version: int, embedding: EntityEmbedding) -> bool:
        """Attach an embedding to ``version`` of ``name`` if it is still the current version."""
        return self.backend.set_embedding(name, version, embedding)

    # Relations

    def _relation_from_spec(self, spec: Union[Relation, Mapping[str, Any]]) -> Relation:
        data = spec.to_dict() if isinstance(spec, Relation) else spec
        if not isinstance(data, Mapping):
            raise ValidationError(f'Relation must be a mapping, got {type(data).__name__}')
        key = (data.get('from'), data.get('to'), data.get('relationType'))
        relation_type = _require_text(data.get('relationType'), 'relationType', key)
        return Relation(from_entity=_require_text(data.get('from'), 'from', key),
                        to_entity=_require_text(data.get('to'), 'to', key),
                        relation_type=relation_type,
                        strength=_require_unit_interval(data.get('strength'), 'strength', key),
                        confidence=_require_unit_interval(data.get('confidence'), 'confidence', key),
                        metadata=_relation_metadata(data.get('metadata'), key),
                        relationship_type=sanitize_label(relation_type),
                        changed_by=self.changed_by)

    @staticmethod
    def _stamp(relation: Relation, previous: Optional[Relation], now: int, last: Optional[Relation] = None) -> Relation:
        """Fill version metadata, merging onto ``previous`` when it exists.

        ``last`` is the latest closed version of a deleted key being re-created.
        """
        if previous is None:
            created_at = last.created_at if last else now
            metadata = dict(relation.metadata)
            metadata.update({'createdAt': created_at, 'updatedAt': now})
            return replace(relation,
                           metadata=metadata,
                           id=str(uuid.uuid4()),
                           version=last.version + 1 if last else 1,
                           created_at=created_at,
                           updated_at=now,
                           valid_from=now,
                           valid_to=None)

        metadata = dict(previous.metadata)
        metadata.update(relation.metadata)
        metadata.update({'createdAt': previous.created_at, 'updatedAt': now})
        # A freshly written value restarts decay unless the caller supplies lastAccessed
        rewritten = relation.strength is not None or relation.confidence is not None
        if rewritten and 'lastAccessed' not in relation.metadata:
            metadata['lastAccessed'] = now
        return replace(relation,
                       strength=relation.strength if relation.strength is not None else previous.strength,
                       confidence=relation.confidence if relation.confidence is not None else previous.confidence,
                       metadata=metadata,
                       id=str(uuid.uuid4()),
                       version=previous.version + 1,
                       created_at=previous.created_at,
                       updated_at=now,
                       valid_from=now,
                       valid_to=None)

    def create_relations(self, specs: Sequence[Union[Relation, Mapping[str, Any]]], update: bool = False) -> List[Relation]:
        """Create relations atomically.

        Args:
            specs: Relations or mappings with from, to, relationType, strength, confidence, metadata
            update: Supersede relations that already exist instead of failing

        Returns:
            The written relation versions

        Raises:
            ValidationError: If an item is malformed or a key repeats within the batch
            DanglingEndpointError: If an endpoint entity is not current
            DuplicateKeyError: If a relation already exists and ``update`` is False
        """
        relations = [self._relation_from_spec(spec) for spec in specs]
        keys = [relation.key for relation in relations]
        if len(set(keys)) != len(keys):
            raise ValidationError('Relation batch contains the same (from, to, relationType) more than once')
        if not relations:
            return []

        def attempt() -> List[Relation]:
            existing = self.backend.get_current_relations(keys) if update else {}
            last = {}
            for key in keys:
                if key not in existing:
                    history = self.backend.get_relation_versions(key)
                    if history:
                        last[key] = history[-1]
            now = self.clock()
            written = [
                self._stamp(relation, existing.get(relation.key), now, last.get(relation.key)) for relation in relations
            ]
            expected = {key: (existing[key].version if key in existing else None) for key in keys}
            self.backend.commit_relations(written, expected, now)
            return written

        written = self._retrying('create_relations', keys[0], attempt)
        logger.info(f'Wrote {len(written)} relations')
        return written

    def update_relation(self, spec: Union[Relation, Mapping[str, Any]]) -> Relation:
        """Write the next version of an existing relation.

        Provided strength and confidence replace the current values, metadata merges
        shallowly.

        Raises:
            NotFoundError: If the relation has no current version
            DanglingEndpointError: If an endpoint is no longer current
        """
        relation = self._relation_from_spec(spec)

        def attempt() -> Relation:
            previous = self.backend.get_current_relations([relation.key]).get(relation.key)
            if previous is None:
                raise NotFoundError(f'Relation {relation.key!r} not found')
            now = self.clock()
            successor = self._stamp(relation, previous, now)
            self.backend.commit_relations([successor], {relation.key: previous.version}, now)
            return successor

        return self._retrying('update_relation', relation.key, attempt)

    def delete_relations(self, specs: Sequence[Union[Relation, Mapping[str, Any]]]) -> int:
        """Close the current versions of the given relations. Missing keys are ignored."""
        keys = []
        for spec in specs:
            if isinstance(spec, Relation):
                spec = spec.to_dict()
            if not isinstance(spec, Mapping):
                raise ValidationError(f'Relation key must be a mapping, got {type(spec).__name__}')
            key = (spec.get('from'), spec.get('to'), spec.get('relationType'))
            keys.append(tuple(_require_text(part, field, key) for part, field in zip(key, ('from', 'to', 'relationType'))))
        keys = list(dict.fromkeys(keys))
        if not keys:
            return 0
        closed = self.backend.close_relations(keys, self.clock())
        logger.info(f'Deleted {closed} of {len(keys)} requested relations')
        return closed

    def relations_for(self, names: Sequence[str]) -> List[Relation]:
        """Current relations touching any of ``names`` whose endpoints are both current."""
        relations = self.backend.relations_touching(names)
        endpoints = {relation.from_entity for relation in relations} | {relation.to_entity for relation in relations}
        current = self.backend.get_current_entities(sorted(endpoints))
        return [relation for relation in relations if relation.from_entity in current and relation.to_entity in current]

    # Reads

    @staticmethod
    def _consistent(graph: KnowledgeGraph) -> KnowledgeGraph:
        """Verify key uniqueness and drop relations whose endpoints are not in the snapshot."""
        names = set()
        for entity in graph.entities:
            if entity.name in names:
                raise InconsistentStateError(f"Two versions of entity '{entity.name}' are valid at the same instant")
            names.add(entity.name)

        keys = set()
        relations = []
        for relation in graph.relations:
            if relation.key in keys:
                raise InconsistentStateError(f'Two versions of relation {relation.key!r} are valid at the same instant')
            keys.add(relation.key)
            if relation.from_entity in names and relation.to_entity in names:
                relations.append(relation)

        orphaned = len(graph.relations) - len(relations)
        if orphaned:
            logger.debug(f'Filtered {orphaned} relations with non-current endpoints')
        return KnowledgeGraph(entities=list(graph.entities), relations=relations)

    def read_graph(self) -> KnowledgeGraph:
        """Return all current entities and relations as one snapshot."""
        return self._consistent(self.backend.snapshot())

    def get_graph_at_time(self, timestamp: int) -> KnowledgeGraph:
        """Return the snapshot that was current at ``timestamp`` (epoch milliseconds)."""
        if isinstance(timestamp, bool) or not isinstance(timestamp, Real):
            raise ValidationError(f'timestamp must be epoch milliseconds, got {timestamp!r}')
        return self._consistent(self.backend.snapshot(at=int(timestamp)))

    def open_nodes(self, names: Sequence[str]) -> KnowledgeGraph:
        """Return current versions of the requested entities, omitting missing ones.

        Relations are limited to those connecting two returned entities.
        """
        names = [name for name in dict.fromkeys(names) if name]
        found = self.backend.get_current_entities(names)
        entities = [found[name] for name in names if name in found]
        relations = [
            relation for relation in self.backend.relations_touching(list(found))
            if relation.from_entity in found and relation.to_entity in found
        ]
        return KnowledgeGraph(entities=entities, relations=relations)

    def get_entity_history(self, name: str) -> List[Entity]:
        """Return every version of an entity ordered by version number.

        Raises:
            NotFoundError: If the name never existed
            InconsistentStateError: If version numbers have gaps or several versions are open
        """
        versions = self.backend.get_entity_versions(name)
        if not versions:
            raise NotFoundError(f"Entity '{name}' has no history")
        if [version.version for version in versions] != list(range(1, len(versions) + 1)):
            raise InconsistentStateError(f"Entity '{name}' has non-contiguous versions")
        if sum(1 for version in versions if version.valid_to is None) > 1:
            raise InconsistentStateError(f"Entity '{name}' has more than one current version")
        return versions
