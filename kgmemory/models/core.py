"""
Core data models for the bitemporal knowledge graph.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple


@dataclass
class EntityEmbedding:
    """Derived embedding attached to one entity version."""
    vector: List[float]
    model: str
    last_updated: int  # epoch milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {'vector': list(self.vector), 'model': self.model, 'lastUpdated': self.last_updated}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional['EntityEmbedding']:
        if not data or not data.get('vector'):
            return None
        return cls(vector=[float(v) for v in data['vector']],
                   model=str(data.get('model', '')),
                   last_updated=int(data.get('lastUpdated', 0)))


@dataclass
class Entity:
    """One version of an entity, identified across versions by its name."""
    name: str
    entity_type: str
    observations: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    labels: List[str] = field(default_factory=list)  # Sorted, no duplicates
    embedding: Optional[EntityEmbedding] = None
    id: str = ''
    version: int = 1
    created_at: int = 0
    updated_at: int = 0
    valid_from: int = 0
    valid_to: Optional[int] = None  # None while this version is current
    changed_by: Optional[str] = None

    @property
    def is_current(self) -> bool:
        return self.valid_to is None

    def to_dict(self, include_embedding: bool = True) -> Dict[str, Any]:
        data = {
            'name': self.name,
            'entityType': self.entity_type,
            'observations': list(self.observations),
            'metadata': dict(self.metadata),
            'labels': list(self.labels),
            'id': self.id,
            'version': self.version,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'validFrom': self.valid_from,
            'validTo': self.valid_to,
            'changedBy': self.changed_by
        }
        if include_embedding:
            data['embedding'] = self.embedding.to_dict() if self.embedding else None
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Entity':
        """Build an entity from a persisted record or a creation request (camelCase keys)."""
        return cls(name=data.get('name', ''),
                   entity_type=data.get('entityType', ''),
                   observations=list(data.get('observations') or []),
                   metadata=dict(data.get('metadata') or {}),
                   labels=sorted(set(data.get('labels') or [])),
                   embedding=EntityEmbedding.from_dict(data.get('embedding')),
                   id=data.get('id', ''),
                   version=int(data.get('version', 1)),
                   created_at=int(data.get('createdAt', 0)),
                   updated_at=int(data.get('updatedAt', 0)),
                   valid_from=int(data.get('validFrom', 0)),
                   valid_to=data.get('validTo'),
                   changed_by=data.get('changedBy'))


RelationKey = Tuple[str, str, str]


@dataclass
class Relation:
    """One version of a typed, directed relation between two entity names."""
    from_entity: str
    to_entity: str
    relation_type: str
    strength: Optional[float] = None  # 0.0 - 1.0
    confidence: Optional[float] = None  # 0.0 - 1.0
    metadata: Dict[str, Any] = field(default_factory=dict)
    relationship_type: Optional[str] = None  # Native edge label for backends that support typed edges
    id: str = ''
    version: int = 1
    created_at: int = 0
    updated_at: int = 0
    valid_from: int = 0
    valid_to: Optional[int] = None
    changed_by: Optional[str] = None

    @property
    def key(self) -> RelationKey:
        return (self.from_entity, self.to_entity, self.relation_type)

    @property
    def is_current(self) -> bool:
        return self.valid_to is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from': self.from_entity,
            'to': self.to_entity,
            'relationType': self.relation_type,
            'relationshipType': self.relationship_type,
            'strength': self.strength,
            'confidence': self.confidence,
            'metadata': dict(self.metadata),
            'id': self.id,
            'version': self.version,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'validFrom': self.valid_from,
            'validTo': self.valid_to,
            'changedBy': self.changed_by
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Relation':
        return cls(from_entity=data.get('from', ''),
                   to_entity=data.get('to', ''),
                   relation_type=data.get('relationType', ''),
                   strength=data.get('strength'),
                   confidence=data.get('confidence'),
                   metadata=dict(data.get('metadata') or {}),
                   relationship_type=data.get('relationshipType'),
                   id=data.get('id', ''),
                   version=int(data.get('version', 1)),
                   created_at=int(data.get('createdAt', 0)),
                   updated_at=int(data.get('updatedAt', 0)),
                   valid_from=int(data.get('validFrom', 0)),
                   valid_to=data.get('validTo'),
                   changed_by=data.get('changedBy'))


@dataclass
class KnowledgeGraph:
    """A snapshot of entities and relations sharing one definition of "current"."""
    entities: List[Entity] = field(default_factory=list)
    relations: List[Relation] = field(default_factory=list)

    def to_dict(self, include_embeddings: bool = False) -> Dict[str, Any]:
        return {
            'entities': [entity.to_dict(include_embedding=include_embeddings) for entity in self.entities],
            'relations': [relation.to_dict() for relation in self.relations]
        }
