"""
Backing graph store contract used by the version store.

A backend owns physical rows (one row per entity or relation version) and provides the
atomic multi-row primitives the version store builds copy-on-write semantics on. It
knows nothing about snapshot building, metadata merging or label sanitization.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, TypeVar

from ..models.core import Entity, EntityEmbedding, KnowledgeGraph, Relation, RelationKey
from ..models.errors import InconsistentStateError

ENTITY_LABEL = 'Entity'
GENERIC_RELATION_LABEL = 'RELATES_TO'

_Row = TypeVar('_Row', Entity, Relation)


def single_current(versions: Iterable[_Row], key: object) -> Optional[_Row]:
    """Return the one current version among ``versions``.

    Raises:
        InconsistentStateError: If more than one version is current
    """
    current = [version for version in versions if version.is_current]
    if len(current) > 1:
        raise InconsistentStateError(f'{len(current)} current versions found for key {key!r}')
    return current[0] if current else None


def valid_at(row: _Row, timestamp: int) -> bool:
    """Whether a version's validity interval [validFrom, validTo) contains ``timestamp``."""
    return row.valid_from <= timestamp and (row.valid_to is None or row.valid_to > timestamp)


class GraphBackend(ABC):
    """Abstract backing store for versioned entity and relation rows."""

    @abstractmethod
    def get_entity_versions(self, name: str) -> List[Entity]:
        """Return every stored version of an entity ordered by version number."""

    @abstractmethod
    def get_current_entities(self, names: Sequence[str]) -> Dict[str, Entity]:
        """Return the current version for each name that has one."""

    @abstractmethod
    def insert_entities(self, entities: Sequence[Entity]) -> None:
        """Insert first versions atomically.

        Raises:
            DuplicateKeyError: If any name already has a current version; nothing is written
        """

    @abstractmethod
    def supersede_entity(self, name: str, expected_version: int, replacement: Optional[Entity], now: int) -> None:
        """Close the current version of ``name`` and open ``replacement`` in one atomic step.

        With ``replacement`` None the key is closed without a successor.

        Raises:
            NotFoundError: If ``name`` has no current version
            VersionConflictError: If the current version is no longer ``expected_version``
        """

    @abstractmethod
    def close_entities(self, names: Sequence[str], now: int) -> int:
        """Close current versions for the given names, returning how many were closed."""

    @abstractmethod
    def add_label(self, name: str, label: str) -> bool:
        """Add a structural label to the current version in place.

        Returns:
            True if the label was added, False if it was already present

        Raises:
            NotFoundError: If ``name`` has no current version
        """

    @abstractmethod
    def set_embedding(self, name: str, version: int, embedding: EntityEmbedding) -> bool:
        """Attach an embedding to ``version`` of ``name`` if that version is still current."""

    @abstractmethod
    def get_relation_versions(self, key: RelationKey) -> List[Relation]:
        """Return every stored version of a relation ordered by version number."""

    @abstractmethod
    def get_current_relations(self, keys: Sequence[RelationKey]) -> Dict[RelationKey, Relation]:
        """Return the current version for each relation key that has one."""

    @abstractmethod
    def commit_relations(self, relations: Sequence[Relation], expected_versions: Dict[RelationKey, Optional[int]],
                         now: int) -> None:
        """Write relation versions atomically.

        For every relation, both endpoints must be current. ``expected_versions[key]`` is
        None when the key must not have a current version, otherwise the version that is
        closed and replaced.

        Raises:
            DanglingEndpointError: If an endpoint is not current
            DuplicateKeyError: If a key expected to be absent has a current version
            VersionConflictError: If a key's current version differs from the expected one
        """

    @abstractmethod
    def close_relations(self, keys: Sequence[RelationKey], now: int) -> int:
        """Close current versions for the given relation keys, returning how many were closed."""

    @abstractmethod
    def relations_touching(self, names: Sequence[str]) -> List[Relation]:
        """Return current relations whose ``from`` or ``to`` is one of ``names``."""

    @abstractmethod
    def snapshot(self, at: Optional[int] = None) -> KnowledgeGraph:
        """Return every row valid at ``at`` (current rows when None), without orphan filtering."""

    def close(self) -> None:
        """Release backend resources."""
