"""
Pytest configuration and shared fixtures for kgmemory tests.
"""

import math
import re
import threading
import zlib

import pytest

from kgmemory.models.errors import UpstreamFailure
from kgmemory.services.knowledge_graph import KnowledgeGraphService
from kgmemory.services.version_store import VersionStore
from kgmemory.utils.config import (AppConfig, BackfillConfig, BedrockEmbedConfig, DecayConfig, MCPConfig, NeptuneConfig,
                                   OntologyConfig, OpenSearchConfig, SearchConfig, StoreConfig)
from kgmemory.utils.memory_graph import InMemoryGraphBackend

T0 = 1_700_000_000_000
DIMENSION = 256


class FakeClock:
    """Epoch-milliseconds clock that only moves when told to."""

    def __init__(self, start=T0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, ms=1):
        with self._lock:
            self.now += ms
            return self.now


class FakeEmbedder:
    """Deterministic bag-of-words embedder."""

    def __init__(self):
        self.fail_for = set()
        self.calls = []
        self._lock = threading.Lock()

    def _vector(self, text):
        vector = [0.0] * DIMENSION
        for token in re.findall(r'[a-z0-9]+', text.lower()):
            vector[zlib.crc32(token.encode()) % DIMENSION] += 1.0
        return vector

    def generate_embedding(self, text):
        with self._lock:
            self.calls.append(text)
        if any(marker in text for marker in self.fail_for):
            raise UpstreamFailure('embedding service unavailable', operation='generate_embedding')
        return self._vector(text)

    def embed_query(self, text):
        return self._vector(text)

    def get_model_info(self):
        return {'name': 'fake-embed', 'dimension': DIMENSION, 'provider': 'fake'}


class FakeIndex:
    """Brute-force cosine index with the same filter semantics as the OpenSearch adapter."""

    def __init__(self):
        self.docs = {}
        self.fail_upsert = False
        self._lock = threading.Lock()

    def upsert(self, key, vector, metadata=None):
        if self.fail_upsert:
            raise UpstreamFailure('index unavailable', operation='upsert', key=key)
        with self._lock:
            self.docs[key] = (list(vector), dict(metadata or {}))
        return True

    def indexed_metadata(self, keys):
        with self._lock:
            return {
                key: {
                    'version': self.docs[key][1].get('version'),
                    'labels': list(self.docs[key][1].get('labels', []))
                }
                for key in keys if key in self.docs
            }

    def delete(self, key):
        with self._lock:
            return self.docs.pop(key, None) is not None

    def query_nearest(self, vector, k, filters=None):
        filters = filters or {}
        entity_types = filters.get('entityType') or []
        labels = filters.get('labels') or []
        hits = []
        with self._lock:
            items = list(self.docs.items())
        for key, (stored, metadata) in items:
            if entity_types and metadata.get('entityType') not in entity_types:
                continue
            if not all(label in metadata.get('labels', []) for label in labels):
                continue
            hits.append({'key': key, 'score': _cosine(vector, stored), 'metadata': dict(metadata, key=key)})
        hits.sort(key=lambda hit: hit['score'], reverse=True)
        return hits[:k]


def _cosine(a, b):
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if not norm:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / norm


def make_config(**decay_overrides):
    """Application configuration independent of the process environment."""
    decay = dict(enabled=True, half_life_days=30.0, floor=0.1, relation_overrides={})
    decay.update(decay_overrides)
    return AppConfig(environment='test',
                     log_level='DEBUG',
                     bedrock_embed=BedrockEmbedConfig(region='us-east-1',
                                                      model_id='amazon.titan-embed-text-v2:0',
                                                      dimension=DIMENSION,
                                                      retry_attempts=2,
                                                      retry_delay=0.0),
                     neptune=NeptuneConfig(endpoint='localhost', port=8182, region='us-east-1', native_edge_labels=False),
                     opensearch=OpenSearchConfig(endpoint='localhost',
                                                 port=443,
                                                 region='us-east-1',
                                                 index_name='kg_entity_embeddings',
                                                 dimension=DIMENSION),
                     store=StoreConfig(backend='memory', changed_by='tester', max_update_attempts=3),
                     decay=DecayConfig(**decay),
                     ontology=OntologyConfig(cache_ttl_seconds=60, cache_max_entries=4),
                     search=SearchConfig(default_k=10, overfetch=3),
                     backfill=BackfillConfig(max_workers=4),
                     mcp=MCPConfig(transport='stdio', host='127.0.0.1', port=8000))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return InMemoryGraphBackend()


@pytest.fixture
def store(backend, clock):
    return VersionStore(backend, clock=clock, changed_by='tester')


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def index():
    return FakeIndex()


@pytest.fixture
def seconds():
    """Mutable monotonic clock for cache expiry."""
    return FakeClock(start=0)


@pytest.fixture
def app_config():
    return make_config()


@pytest.fixture
def service(store, embedder, index, clock, app_config, seconds):
    return KnowledgeGraphService(store=store,
                                 embedder=embedder,
                                 index=index,
                                 clock=clock,
                                 app_config=app_config,
                                 ontology_clock=seconds)


@pytest.fixture
def team_graph():
    """People, a team and a project with membership relations."""
    entities = [
        {'name': 'Person1', 'entityType': 'Person', 'observations': ['Observation 1']},
        {'name': 'Person2', 'entityType': 'Person', 'observations': ['Observation 2']},
        {'name': 'Team1', 'entityType': 'Team', 'observations': ['Observation 3']},
        {'name': 'Project1', 'entityType': 'Project', 'observations': ['Observation 4']},
    ]
    relations = [
        {'from': 'Person1', 'to': 'Team1', 'relationType': 'isMemberOf'},
        {'from': 'Person2', 'to': 'Team1', 'relationType': 'isMemberOf'},
        {'from': 'Project1', 'to': 'Team1', 'relationType': 'createdBy'},
    ]
    return {'entities': entities, 'relations': relations}
