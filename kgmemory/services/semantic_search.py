"""
Semantic search over current entities: nearest-neighbour lookup in the embedding index,
restricted by structural filters and resolved against the version store.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from ..models.core import Entity, Relation
from ..models.errors import ValidationError
from ..utils.logging_config import get_logger
from .version_store import VersionStore, sanitize_label

logger = get_logger(__name__)


@dataclass
class SearchResult:
    """An entity ranked by similarity, with its direct current relations."""
    entity: Entity
    score: float
    relations: List[Relation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity': self.entity.to_dict(include_embedding=False),
            'score': self.score,
            'relations': [relation.to_dict() for relation in self.relations]
        }


def _as_list(value: Union[str, Sequence[str], None]) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


class SemanticSearchEngine:
    """Combines structural graph filters with vector similarity."""

    def __init__(self, store: VersionStore, embedder: Any, index: Any, overfetch: int = 3):
        """
        Args:
            store: Version store used to resolve hits to current entities
            embedder: Object with ``embed_query(text)``
            index: Object with ``query_nearest(vector, k, filters)``
            overfetch: Candidate multiplier compensating for hits dropped after resolution
        """
        self.store = store
        self.embedder = embedder
        self.index = index
        self.overfetch = max(1, overfetch)

    @staticmethod
    def _is_fresh(entity: Optional[Entity], hit: Dict[str, Any]) -> bool:
        """Whether the hit was indexed for the entity's current, embedded version."""
        if entity is None or entity.embedding is None:
            return False
        indexed_version = (hit.get('metadata') or {}).get('version')
        return indexed_version is None or int(indexed_version) == entity.version

    @staticmethod
    def _matches(entity: Entity, entity_types: List[str], labels: List[str]) -> bool:
        if entity_types and entity.entity_type not in entity_types:
            return False
        return all(label in entity.labels for label in labels)

    def search_similar(self,
                       query_text: str,
                       entity_types: Union[str, Sequence[str], None] = None,
                       labels: Optional[Sequence[str]] = None,
                       k: int = 10) -> List[SearchResult]:
        """
        Find current entities semantically close to ``query_text``.

        Args:
            query_text: Free-text query
            entity_types: Keep entities of any of these types
            labels: Keep entities carrying all of these labels
            k: Maximum number of results

        Returns:
            Up to ``k`` results ordered by descending similarity

        Raises:
            ValidationError: If the query is empty or ``k`` is not positive
        """
        if not isinstance(query_text, str) or not query_text.strip():
            raise ValidationError('query_text must be a non-empty string')
        if isinstance(k, bool) or not isinstance(k, int) or k < 1:
            raise ValidationError(f'k must be a positive integer, got {k!r}')

        entity_types = _as_list(entity_types)
        labels = [sanitize_label(label) for label in _as_list(labels)]
        filters = {}
        if entity_types:
            filters['entityType'] = entity_types
        if labels:
            filters['labels'] = labels

        vector = self.embedder.embed_query(query_text)
        hits = self.index.query_nearest(vector, k * self.overfetch, filters)

        names = list(dict.fromkeys(hit['key'] for hit in hits))
        current = self.store.backend.get_current_entities(names)

        ranked = []
        seen = set()
        for hit in sorted(hits, key=lambda hit: hit['score'], reverse=True):
            name = hit['key']
            entity = current.get(name)
            if name in seen or not self._is_fresh(entity, hit) or not self._matches(entity, entity_types, labels):
                continue
            seen.add(name)
            ranked.append(SearchResult(entity=entity, score=float(hit['score'])))
            if len(ranked) == k:
                break

        for result in ranked:
            result.relations = self.store.relations_for([result.entity.name])

        logger.debug(f"Semantic search for '{query_text}' kept {len(ranked)} of {len(hits)} candidates")
        return ranked
