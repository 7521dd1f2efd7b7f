"""
In-process graph backend for local development and tests.

Rows for one logical key are kept as an immutable tuple of versions. Writers take
per-key locks (in sorted order, so multi-key commits cannot deadlock), build the new
tuples and publish them with a single catalogue swap, so readers never observe a key
with zero or two current versions mid-write.
"""

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ..models.core import Entity, EntityEmbedding, KnowledgeGraph, Relation, RelationKey
from ..models.errors import DanglingEndpointError, DuplicateKeyError, NotFoundError, VersionConflictError
from .graph_backend import GraphBackend, single_current, valid_at
from .logging_config import get_logger

logger = get_logger(__name__)


class InMemoryGraphBackend(GraphBackend):
    """Thread-safe in-memory implementation of :class:`GraphBackend`."""

    def __init__(self):
        self._entities: Dict[str, Tuple[Entity, ...]] = {}
        self._relations: Dict[RelationKey, Tuple[Relation, ...]] = {}
        self._catalog_lock = threading.Lock()
        self._key_locks: Dict[tuple, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        logger.info('Initialized in-memory graph backend')

    def _lock_for(self, key: tuple) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    @contextmanager
    def _locked(self, keys: Sequence[tuple]) -> Iterator[None]:
        locks = [self._lock_for(key) for key in sorted(set(keys))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    def _publish(self,
                 entities: Optional[Dict[str, Tuple[Entity, ...]]] = None,
                 relations: Optional[Dict[RelationKey, Tuple[Relation, ...]]] = None) -> None:
        with self._catalog_lock:
            self._entities.update(entities or {})
            self._relations.update(relations or {})

    def _entity_rows(self, name: str) -> Tuple[Entity, ...]:
        with self._catalog_lock:
            return self._entities.get(name, ())

    def _relation_rows(self, key: RelationKey) -> Tuple[Relation, ...]:
        with self._catalog_lock:
            return self._relations.get(key, ())

    @staticmethod
    def _close_current(rows: tuple, now: int) -> tuple:
        return tuple(replace(row, valid_to=now) if row.is_current else row for row in rows)

    def get_entity_versions(self, name: str) -> List[Entity]:
        return [copy.deepcopy(row) for row in sorted(self._entity_rows(name), key=lambda row: row.version)]

    def get_current_entities(self, names: Sequence[str]) -> Dict[str, Entity]:
        with self._catalog_lock:
            rows = {name: self._entities.get(name, ()) for name in names}
        found = {}
        for name, versions in rows.items():
            current = single_current(versions, name)
            if current is not None:
                found[name] = copy.deepcopy(current)
        return found

    def insert_entities(self, entities: Sequence[Entity]) -> None:
        with self._locked([('entity', entity.name) for entity in entities]):
            updates = {}
            for entity in entities:
                rows = self._entity_rows(entity.name)
                if single_current(rows, entity.name) is not None:
                    raise DuplicateKeyError(f"Entity '{entity.name}' already exists")
                updates[entity.name] = rows + (copy.deepcopy(entity), )
            self._publish(entities=updates)
        logger.debug(f'Inserted {len(entities)} entity rows')

    def supersede_entity(self, name: str, expected_version: int, replacement: Optional[Entity], now: int) -> None:
        with self._locked([('entity', name)]):
            rows = self._entity_rows(name)
            current = single_current(rows, name)
            if current is None:
                raise NotFoundError(f"Entity '{name}' not found")
            if current.version != expected_version:
                raise VersionConflictError(f"Entity '{name}' is at version {current.version}, expected {expected_version}",
                                           operation='supersede_entity',
                                           key=name)
            rows = self._close_current(rows, now)
            if replacement is not None:
                rows = rows + (copy.deepcopy(replacement), )
            self._publish(entities={name: rows})

    def close_entities(self, names: Sequence[str], now: int) -> int:
        closed = 0
        with self._locked([('entity', name) for name in names]):
            updates = {}
            for name in set(names):
                rows = self._entity_rows(name)
                if single_current(rows, name) is not None:
                    updates[name] = self._close_current(rows, now)
                    closed += 1
            self._publish(entities=updates)
        return closed

    def add_label(self, name: str, label: str) -> bool:
        with self._locked([('entity', name)]):
            rows = self._entity_rows(name)
            current = single_current(rows, name)
            if current is None:
                raise NotFoundError(f"Entity '{name}' not found")
            if label in current.labels:
                return False
            labelled = replace(current, labels=sorted(set(current.labels) | {label}))
            self._publish(entities={name: tuple(labelled if row is current else row for row in rows)})
            return True

    def set_embedding(self, name: str, version: int, embedding: EntityEmbedding) -> bool:
        with self._locked([('entity', name)]):
            rows = self._entity_rows(name)
            current = single_current(rows, name)
            if current is None or current.version != version:
                return False
            embedded = replace(current, embedding=copy.deepcopy(embedding))
            self._publish(entities={name: tuple(embedded if row is current else row for row in rows)})
            return True

    def get_relation_versions(self, key: RelationKey) -> List[Relation]:
        return [copy.deepcopy(row) for row in sorted(self._relation_rows(key), key=lambda row: row.version)]

    def get_current_relations(self, keys: Sequence[RelationKey]) -> Dict[RelationKey, Relation]:
        with self._catalog_lock:
            rows = {key: self._relations.get(key, ()) for key in keys}
        found = {}
        for key, versions in rows.items():
            current = single_current(versions, key)
            if current is not None:
                found[key] = copy.deepcopy(current)
        return found

    def commit_relations(self, relations: Sequence[Relation], expected_versions: Dict[RelationKey, Optional[int]],
                         now: int) -> None:
        lock_keys = []
        for relation in relations:
            lock_keys.extend([('entity', relation.from_entity), ('entity', relation.to_entity), ('relation', ) + relation.key])

        with self._locked(lock_keys):
            updates = {}
            for relation in relations:
                for endpoint in (relation.from_entity, relation.to_entity):
                    if single_current(self._entity_rows(endpoint), endpoint) is None:
                        raise DanglingEndpointError(f"Relation {relation.key!r} references missing entity '{endpoint}'")

                rows = updates.get(relation.key, self._relation_rows(relation.key))
                current = single_current(rows, relation.key)
                expected = expected_versions.get(relation.key)
                if expected is None and current is not None:
                    raise DuplicateKeyError(f'Relation {relation.key!r} already exists')
                if expected is not None and (current is None or current.version != expected):
                    raise VersionConflictError(f'Relation {relation.key!r} changed concurrently',
                                               operation='commit_relations',
                                               key=str(relation.key))
                updates[relation.key] = self._close_current(rows, now) + (copy.deepcopy(relation), )
            self._publish(relations=updates)
        logger.debug(f'Committed {len(relations)} relation rows')

    def close_relations(self, keys: Sequence[RelationKey], now: int) -> int:
        closed = 0
        with self._locked([('relation', ) + tuple(key) for key in keys]):
            updates = {}
            for key in set(keys):
                rows = self._relation_rows(key)
                if single_current(rows, key) is not None:
                    updates[key] = self._close_current(rows, now)
                    closed += 1
            self._publish(relations=updates)
        return closed

    def relations_touching(self, names: Sequence[str]) -> List[Relation]:
        wanted = set(names)
        with self._catalog_lock:
            rows = [versions for key, versions in self._relations.items() if key[0] in wanted or key[1] in wanted]
        touching = []
        for versions in rows:
            current = single_current(versions, versions[-1].key)
            if current is not None:
                touching.append(copy.deepcopy(current))
        return sorted(touching, key=lambda relation: relation.key)

    def snapshot(self, at: Optional[int] = None) -> KnowledgeGraph:
        with self._catalog_lock:
            entity_rows = [row for versions in self._entities.values() for row in versions]
            relation_rows = [row for versions in self._relations.values() for row in versions]

        def visible(row) -> bool:
            return row.valid_to is None if at is None else valid_at(row, at)

        entities = sorted((copy.deepcopy(row) for row in entity_rows if visible(row)), key=lambda row: row.name)
        relations = sorted((copy.deepcopy(row) for row in relation_rows if visible(row)), key=lambda row: row.key)
        return KnowledgeGraph(entities=entities, relations=relations)
