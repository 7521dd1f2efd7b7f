"""
Keeps entity embeddings and the embedding index in step with the version store.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..models.core import Entity, EntityEmbedding
from ..models.errors import UpstreamFailure
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_ms
from .text_builder import build_entity_text
from .version_store import VersionStore

logger = get_logger(__name__)


@dataclass
class BackfillReport:
    """Outcome of a batch embedding run: names embedded and per-name failure messages."""
    updated: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'updated': list(self.updated), 'failed': dict(self.failed)}


def index_document(entity: Entity) -> Dict[str, Any]:
    """Filterable fields stored next to an entity's vector."""
    return {
        'name': entity.name,
        'entityType': entity.entity_type,
        'labels': list(entity.labels),
        'version': entity.version,
        'model': entity.embedding.model if entity.embedding else None
    }


class EmbeddingSynchronizer:
    """Generates embeddings for entity versions and mirrors them into the index."""

    def __init__(self,
                 store: VersionStore,
                 embedder: Any,
                 index: Any,
                 clock: Optional[Callable[[], int]] = None,
                 max_workers: int = 4):
        """
        Initialize the synchronizer.

        Args:
            store: Version store the embeddings are attached to
            embedder: Object with ``generate_embedding(text)`` and ``get_model_info()``
            index: Object with ``upsert``, ``delete`` and ``indexed_metadata``
            clock: Returns the current time in epoch milliseconds
            max_workers: Thread pool size for batch runs
        """
        self.store = store
        self.embedder = embedder
        self.index = index
        self.clock = clock or store.clock or now_ms
        self.max_workers = max(1, max_workers)

    def sync_entity(self, entity: Entity) -> Optional[Entity]:
        """Embed one entity version and index it.

        The index document is written before the embedding is attached to the stored
        version, so an entity whose index write failed stays unembedded and is picked up
        by :meth:`backfill`. An entity that already carries an embedding (text unchanged
        since the previous version) is re-indexed with its existing vector so the index
        entry tracks the new version number and labels.

        Args:
            entity: Current entity version

        Returns:
            The entity with its embedding, or None if the version was superseded meanwhile

        Raises:
            UpstreamFailure: If the embedding service or the index rejects the write
        """
        embedding = entity.embedding
        generated = embedding is None
        if generated:
            vector = self.embedder.generate_embedding(build_entity_text(entity))
            model = self.embedder.get_model_info().get('name', '')
            embedding = EntityEmbedding(vector=list(vector), model=model, last_updated=self.clock())

        embedded = replace(entity, embedding=embedding)
        if not self.index.upsert(entity.name, embedding.vector, index_document(embedded)):
            raise UpstreamFailure(f"Index rejected the document for '{entity.name}'", operation='upsert', key=entity.name)

        if generated and not self.store.set_embedding(entity.name, entity.version, embedding):
            logger.debug(f"Entity '{entity.name}' v{entity.version} was superseded before its embedding landed")
            return None

        logger.debug(f"Synchronized embedding for '{entity.name}' v{entity.version}")
        return embedded

    def sync_entities(self, entities: Sequence[Entity]) -> BackfillReport:
        """Embed many entities concurrently; a failing item never stops the rest."""
        report = BackfillReport()
        if not entities:
            return report

        workers = min(self.max_workers, len(entities))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self.sync_entity, entity): entity.name for entity in entities}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    if future.result() is not None:
                        report.updated.append(name)
                except Exception as e:
                    logger.error(f"Embedding failed for entity '{name}': {e}")
                    report.failed[name] = str(e)

        report.updated.sort()
        return report

    def remove(self, names: Sequence[str]) -> Dict[str, str]:
        """Delete index entries for deleted entities.

        Returns:
            Per-name failure messages (empty when every delete succeeded)
        """
        failed = {}
        for name in names:
            try:
                self.index.delete(name)
            except Exception as e:
                logger.error(f"Failed to remove index entry for '{name}': {e}")
                failed[name] = str(e)
        return failed

    def _out_of_sync(self, entities: Sequence[Entity]) -> List[Entity]:
        """Entities with no embedding, or whose index entry is missing or describes another version."""
        embedded = [entity.name for entity in entities if entity.embedding is not None]
        indexed = self.index.indexed_metadata(embedded) if embedded else {}
        pending = []
        for entity in entities:
            document = indexed.get(entity.name)
            if entity.embedding is None or document is None:
                pending.append(entity)
            elif document.get('version') != entity.version or sorted(document.get('labels', [])) != sorted(entity.labels):
                pending.append(entity)
        return pending

    def backfill(self, limit: Optional[int] = None) -> BackfillReport:
        """Embed every current entity that has no embedding and re-index stale index entries.

        Entities that already carry an embedding are re-indexed with their stored vector
        without calling the embedding service.

        Args:
            limit: Maximum number of entities to process in this run

        Returns:
            BackfillReport with the synchronized names and per-name failures
        """
        pending = self._out_of_sync(self.store.read_graph().entities)
        if limit is not None:
            pending = pending[:max(0, limit)]

        logger.info(f'Backfilling embeddings for {len(pending)} entities')
        report = self.sync_entities(pending)
        logger.info(f'Backfill finished: {len(report.updated)} updated, {len(report.failed)} failed')
        return report
