"""
Canonical text rendering of entities for embedding generation.

The same rendering is used on every write path and by the backfill job, so a given
entity snapshot always produces the same embedding input.
"""

import json
from typing import Any, List, Mapping, Union

from ..models.core import Entity

NO_OBSERVATIONS_MARKER = '  (No observations)'


def normalize_observations(value: Any) -> List[str]:
    """Coerce loosely-typed observations into a list of strings.

    Accepts a list or tuple, a JSON-encoded list, a bare string or None. A JSON string
    that does not decode to a list is kept as a single observation.

    Args:
        value: Observations as received from a caller or a stored record

    Returns:
        List of observation strings
    """
    if value is None:
        return []

    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return [value]
        if isinstance(decoded, list):
            return [item if isinstance(item, str) else json.dumps(item, ensure_ascii=False) for item in decoded]
        return [value]

    if isinstance(value, (list, tuple)):
        return [item if isinstance(item, str) else json.dumps(item, ensure_ascii=False) for item in value]

    return [str(value)]


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)


def build_entity_text(entity: Union[Entity, Mapping[str, Any]]) -> str:
    """Render an entity as the text used for its embedding.

    Args:
        entity: Entity instance or a mapping with name/entityType/observations/metadata keys

    Returns:
        Multi-line text covering name, type, observations and metadata
    """
    if isinstance(entity, Entity):
        name, entity_type = entity.name, entity.entity_type
        observations, metadata = entity.observations, entity.metadata
    else:
        name, entity_type = entity.get('name', ''), entity.get('entityType', '')
        observations, metadata = entity.get('observations'), entity.get('metadata')

    lines = [f'Name: {name}', f'Type: {entity_type}', 'Observations:']

    normalized = normalize_observations(observations)
    if normalized:
        lines.extend(f'- {observation}' for observation in normalized)
    else:
        lines.append(NO_OBSERVATIONS_MARKER)

    if isinstance(metadata, Mapping) and metadata:
        lines.append('Metadata:')
        lines.extend(f'- {key}: {_render_value(metadata[key])}' for key in sorted(metadata))

    return '\n'.join(lines)
