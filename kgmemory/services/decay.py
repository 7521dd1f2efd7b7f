"""
Read-time decay of relation strength and confidence.

Stored values are never rewritten: the effective value is derived from the stored value
and the time elapsed since the relation was last reinforced, so decay parameters can
change without migrating data.
"""

import math
from dataclasses import dataclass, replace
from numbers import Real
from typing import Callable, Dict, Mapping, Optional

from ..models.core import KnowledgeGraph, Relation
from ..models.errors import ValidationError
from ..utils.config import DecayConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import days_to_ms, now_ms
from .version_store import VersionStore

logger = get_logger(__name__)


def effective(stored: Optional[float], elapsed_ms: float, half_life_ms: float, floor: float) -> Optional[float]:
    """Decay a stored [0, 1] value toward ``floor`` with exponential half-life.

    ``floor + (stored - floor) * 2 ** (-elapsed / half_life)``. Values already at or
    below the floor are returned unchanged, so the result never increases; negative
    elapsed time counts as zero; the result is clamped to [0, 1].

    Args:
        stored: Value written at the last reinforcement, or None
        elapsed_ms: Milliseconds since the last reinforcement
        half_life_ms: Milliseconds for the distance to the floor to halve
        floor: Lower bound the value decays toward

    Returns:
        Effective value, or None when nothing was stored
    """
    if stored is None:
        return None
    if stored <= floor or elapsed_ms <= 0:
        return min(max(stored, 0.0), 1.0)
    value = floor + (stored - floor) * math.pow(2.0, -elapsed_ms / half_life_ms)
    return min(max(value, 0.0), min(stored, 1.0))


@dataclass(frozen=True)
class DecayParams:
    """Half-life and floor for one family of relations."""
    half_life_ms: float
    floor: float

    def __post_init__(self):
        if not self.half_life_ms > 0:
            raise ValidationError(f'Decay half-life must be positive, got {self.half_life_ms}')
        if not 0.0 <= self.floor <= 1.0:
            raise ValidationError(f'Decay floor must be within [0, 1], got {self.floor}')

    @classmethod
    def from_days(cls, half_life_days: float, floor: float) -> 'DecayParams':
        return cls(half_life_ms=days_to_ms(half_life_days), floor=floor)


class DecayPolicy:
    """Resolves decay parameters for a relation type from configuration."""

    def __init__(self, default: DecayParams, overrides: Optional[Mapping[str, DecayParams]] = None, enabled: bool = True):
        self.default = default
        self.overrides: Dict[str, DecayParams] = dict(overrides or {})
        self.enabled = enabled

    @classmethod
    def from_config(cls, config: DecayConfig) -> 'DecayPolicy':
        """Build a policy from ``DecayConfig``; overrides may set ``half_life_days`` and/or ``floor``."""
        default = DecayParams.from_days(config.half_life_days, config.floor)
        overrides = {}
        for relation_type, values in config.relation_overrides.items():
            overrides[relation_type] = DecayParams.from_days(float(values.get('half_life_days', config.half_life_days)),
                                                             float(values.get('floor', config.floor)))
        return cls(default, overrides, enabled=config.enabled)

    def params_for(self, relation_type: str) -> DecayParams:
        return self.overrides.get(relation_type, self.default)


def reinforced_at(relation: Relation) -> int:
    """Instant the relation was last reinforced: ``metadata.lastAccessed`` or its last update."""
    last_accessed = relation.metadata.get('lastAccessed')
    if isinstance(last_accessed, Real) and not isinstance(last_accessed, bool):
        return int(last_accessed)
    return relation.updated_at or relation.valid_from


class DecayedGraphGenerator:
    """Projects the current graph with decayed relation values, without persisting them."""

    def __init__(self, store: VersionStore, policy: DecayPolicy, clock: Optional[Callable[[], int]] = None):
        self.store = store
        self.policy = policy
        self.clock = clock or store.clock or now_ms

    def decay_relation(self, relation: Relation, now: int) -> Relation:
        params = self.policy.params_for(relation.relation_type)
        elapsed = now - reinforced_at(relation)
        return replace(relation,
                       strength=effective(relation.strength, elapsed, params.half_life_ms, params.floor),
                       confidence=effective(relation.confidence, elapsed, params.half_life_ms, params.floor),
                       metadata=dict(relation.metadata))

    def get_decayed_graph(self, now: Optional[int] = None) -> KnowledgeGraph:
        """Return the current snapshot with every relation's strength and confidence decayed.

        Args:
            now: Evaluation instant in epoch milliseconds (defaults to the store clock)

        Returns:
            A new KnowledgeGraph; stored relations are untouched
        """
        graph = self.store.read_graph()
        if not self.policy.enabled:
            return graph

        now = self.clock() if now is None else now
        relations = [self.decay_relation(relation, now) for relation in graph.relations]
        logger.debug(f'Decayed {len(relations)} relations at {now}')
        return KnowledgeGraph(entities=graph.entities, relations=relations)
