"""
OpenSearch client wrapper used as the entity embedding index.
"""

import time
from typing import Any, Dict, List, Optional, Sequence

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.errors import UpstreamFailure
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(UpstreamFailure):
    """Custom exception for OpenSearch errors."""
    pass


def build_filter_clauses(filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Translate structural search filters into OpenSearch filter clauses.

    ``entityType`` matches any of the given types; every entry of ``labels`` must be present.

    Args:
        filters: Mapping with optional ``entityType`` (str or list) and ``labels`` (list)

    Returns:
        List of term/terms clauses
    """
    clauses = []
    if not filters:
        return clauses

    entity_types = filters.get('entityType')
    if entity_types:
        if isinstance(entity_types, str):
            entity_types = [entity_types]
        clauses.append({'terms': {'entityType': list(entity_types)}})

    for label in filters.get('labels') or []:
        clauses.append({'term': {'labels': label}})

    return clauses


class OpenSearchClient:
    """OpenSearch k-NN index keyed by entity name, with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config
        self.index_name = config.index_name

        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
        # Parse endpoint to get host and port
        endpoint = config.endpoint
        if '://' in endpoint:
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def create_index_if_not_exists(self) -> str:
        """
        Create the entity embedding index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            index_body = {
                'mappings': {
                    'properties': {
                        'key': {
                            'type': 'keyword'
                        },
                        'entityType': {
                            'type': 'keyword'
                        },
                        'labels': {
                            'type': 'keyword'
                        },
                        'version': {
                            'type': 'integer'
                        },
                        'model': {
                            'type': 'keyword'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            response = self.client.indices.create(index=self.index_name, body=index_body)
            logger.info(f'Created index {self.index_name}')
            if response.get('acknowledged', False):
                logger.info(f'Waiting 15s for index {self.index_name} sync-up...')
                time.sleep(15)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}', operation='create_index', key=self.index_name)

    def _document_ids(self, key: str) -> List[str]:
        """OpenSearch ``_id`` values of every document stored for ``key``."""
        response = self.client.search(index=self.index_name,
                                      body={
                                          'size': 10,
                                          'query': {
                                              'term': {
                                                  'key': key
                                              }
                                          },
                                          '_source': False
                                      })
        return [hit['_id'] for hit in response['hits']['hits']]

    def upsert(self, key: str, vector: Sequence[float], metadata: Optional[Dict[str, Any]] = None) -> bool:
        """
        Replace the indexed vector for an entity.

        Serverless vector collections do not accept caller-chosen document ids, so the new
        document is indexed first and only then are older documents for the key (located
        by the ``key`` field) removed. A failed write leaves the previous document in place.

        Args:
            key: Entity name
            vector: Embedding vector
            metadata: Filterable fields (entityType, labels, version, model)

        Returns:
            True if the new document was indexed
        """
        document = dict(metadata or {})
        document.update({'key': key, 'embedding': list(vector)})

        try:
            previous_ids = self._document_ids(key)
            response = self.client.index(index=self.index_name, body=document)
            success = response.get('result') in ['created', 'updated']
            if not success:
                logger.warning(f'Unexpected result indexing document: {response}')
                return False

            for doc_id in previous_ids:
                if doc_id != response.get('_id'):
                    self.client.delete(index=self.index_name, id=doc_id)
            logger.debug(f"Indexed embedding for '{key}' in {self.index_name}")
            return True

        except OpenSearchException as e:
            logger.error(f"Error indexing embedding for '{key}': {e}")
            raise OpenSearchError(f'Failed to index document: {e}', operation='upsert', key=key)

    def indexed_metadata(self, keys: Sequence[str], batch_size: int = 500) -> Dict[str, Dict[str, Any]]:
        """
        Look up the filterable fields stored for each key.

        Args:
            keys: Entity names
            batch_size: Keys per terms query

        Returns:
            Mapping of key to the ``version`` and ``labels`` of its newest document; keys
            without a document are absent
        """
        found: Dict[str, Dict[str, Any]] = {}
        keys = list(dict.fromkeys(keys))
        try:
            for start in range(0, len(keys), batch_size):
                batch = keys[start:start + batch_size]
                response = self.client.search(index=self.index_name,
                                              body={
                                                  'size': len(batch) * 2,
                                                  'query': {
                                                      'terms': {
                                                          'key': batch
                                                      }
                                                  },
                                                  '_source': ['key', 'version', 'labels']
                                              })
                for hit in response['hits']['hits']:
                    source = hit.get('_source', {})
                    key = source.get('key')
                    if key is None:
                        continue
                    known = found.get(key)
                    if known is None or (source.get('version') or 0) > (known.get('version') or 0):
                        found[key] = {'version': source.get('version'), 'labels': list(source.get('labels') or [])}
        except OpenSearchException as e:
            logger.error(f'Error reading indexed metadata: {e}')
            raise OpenSearchError(f'Failed to read indexed metadata: {e}', operation='indexed_metadata')
        return found

    def query_nearest(self, vector: Sequence[float], k: int, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Perform vector similarity search.

        Args:
            vector: Query vector
            k: Number of neighbours to return
            filters: Structural filters, see :func:`build_filter_clauses`

        Returns:
            Ranked list of {'key', 'score', 'metadata'}
        """
        search_body = {
            'size': k,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': list(vector),
                                'k': k
                            }
                        }
                    }],
                    'filter': build_filter_clauses(filters)
                }
            },
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}', operation='query_nearest')

        results = []
        for hit in response['hits']['hits']:
            source = hit.get('_source') or {}
            results.append({'key': source.get('key', hit['_id']), 'score': hit['_score'], 'metadata': source})

        logger.debug(f'Vector search returned {len(results)} results')
        return results

    def delete(self, key: str) -> bool:
        """
        Delete every indexed document for an entity.

        Args:
            key: Entity name

        Returns:
            True if at least one document was deleted
        """
        try:
            doc_ids = self._document_ids(key)
            for doc_id in doc_ids:
                self.client.delete(index=self.index_name, id=doc_id)
        except OpenSearchException as e:
            # OpenSearchException args: (status_code, error_type, error_info)
            if len(e.args) >= 2 and (e.args[0] == 404 or e.args[1] == 'not_found'):
                logger.warning(f"Embedding for '{key}' not found for deletion")
                return False
            logger.error(f"Error deleting embedding for '{key}': {e}")
            raise OpenSearchError(f'Failed to delete document: {e}', operation='delete', key=key)

        if doc_ids:
            logger.debug(f"Deleted {len(doc_ids)} embedding documents for '{key}'")
        return bool(doc_ids)
