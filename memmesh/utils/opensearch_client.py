"""
OpenSearch client wrapper for memory documents, lexical search and vector similarity search.
"""

import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import EMBEDDING_TYPES
from .config import OpenSearchConfig
from .logging_config import get_logger
from .vector_utils import cosine_from_rescaled

logger = get_logger(__name__)

EMBEDDING_FIELDS = tuple(f'embedding_{t}' for t in EMBEDDING_TYPES)
FALLBACK_FIELD = 'embedding_fallback'


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config
        self.index_name = config.index_name

        credentials = boto3.Session().get_credentials()
        if credentials is None:
            raise OpenSearchError('No AWS credentials found')
        auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)

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

    def _index_body(self) -> Dict[str, Any]:
        vector_field = {
            'type': 'knn_vector',
            'dimension': self.config.dimension,
            'method': {
                'name': 'hnsw',
                'space_type': 'cosinesimil',
                'engine': 'lucene'
            }
        }
        properties = {
            'id': {
                'type': 'keyword'
            },
            'user_id': {
                'type': 'keyword'
            },
            'content': {
                'type': 'text'
            },
            'canonical_text': {
                'type': 'text',
                'index': False
            },
            'canonical_hash': {
                'type': 'keyword'
            },
            'url': {
                'type': 'keyword'
            },
            'normalized_url': {
                'type': 'keyword'
            },
            'title': {
                'type': 'text'
            },
            'summary': {
                'type': 'text'
            },
            'source': {
                'type': 'keyword'
            },
            'metadata': {
                'type': 'object',
                'enabled': False
            },
            'embedding_models': {
                'type': 'object',
                'enabled': False
            },
            FALLBACK_FIELD: {
                'type': 'object',
                'enabled': False
            },
            'content_model_id': {
                'type': 'keyword'
            },
            'importance_score': {
                'type': 'float'
            },
            'confidence_score': {
                'type': 'float'
            },
            'access_count': {
                'type': 'integer'
            },
            'created_at': {
                'type': 'date'
            },
            'last_accessed': {
                'type': 'date'
            }
        }
        for field_name in EMBEDDING_FIELDS:
            properties[field_name] = dict(vector_field)

        return {'mappings': {'properties': properties}, 'settings': {'index': {'knn': True}}}

    def create_index_if_not_exists(self) -> str:
        """
        Create the memory index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=self.index_name, body=self._index_body())
            logger.info(f'Created index {self.index_name}')
            if not response.get('acknowledged', False):
                return 'failed'
            if self.config.index_sync_wait > 0:
                logger.info(f'Waiting {self.config.index_sync_wait}s for index {self.index_name} sync-up...')
                time.sleep(self.config.index_sync_wait)
            return 'created'

        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def _source_filter(self, include_embeddings: bool) -> Dict[str, Any]:
        return {} if include_embeddings else {'excludes': list(EMBEDDING_FIELDS) + [FALLBACK_FIELD]}

    def index_document(self, document: Dict[str, Any]) -> bool:
        """
        Index a memory document.

        Args:
            document: Document to index, must carry 'id' and 'user_id'

        Returns:
            True if indexing was successful, False otherwise
        """
        try:
            response = self.client.index(index=self.index_name, body=document)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f"Indexed memory document {document.get('id')}")
            else:
                logger.warning(f'Unexpected result indexing document: {response}')
            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def search_documents(self,
                         user_id: Optional[str],
                         filters: Optional[List[Dict[str, Any]]] = None,
                         size: int = 50,
                         sort: Optional[List[Dict[str, Any]]] = None,
                         include_embeddings: bool = False) -> List[Dict[str, Any]]:
        """
        Fetch documents matching exact filters, scoped to a user when given.

        Returns:
            List of hits as {'_id', 'document'} dictionaries
        """
        clauses = list(filters or [])
        if user_id is not None:
            clauses.append({'term': {'user_id': user_id}})

        search_body: Dict[str, Any] = {
            'size': size,
            'query': {
                'bool': {
                    'filter': clauses
                }
            },
            '_source': self._source_filter(include_embeddings)
        }
        if sort:
            search_body['sort'] = sort

        try:
            response = self.client.search(index=self.index_name, body=search_body)
            return [{'_id': hit['_id'], 'document': hit['_source']} for hit in response['hits']['hits']]

        except OpenSearchException as e:
            logger.error(f'Error searching documents for user {user_id}: {e}')
            raise OpenSearchError(f'Document search failed: {e}')

    def get_document(self,
                     memory_id: str,
                     user_id: Optional[str] = None,
                     include_embeddings: bool = False) -> Optional[Dict[str, Any]]:
        """
        Get a memory document by its memory id.

        Returns:
            Hit as {'_id', 'document'} if found, None otherwise
        """
        hits = self.search_documents(user_id, [{
            'term': {
                'id': memory_id
            }
        }],
                                     size=1,
                                     include_embeddings=include_embeddings)
        return hits[0] if hits else None

    def update_document(self, memory_id: str, user_id: str, fields: Dict[str, Any]) -> bool:
        """
        Partially update a memory document.

        Returns:
            True if the document was updated, False if it was not found
        """
        hit = self.get_document(memory_id, user_id)
        if hit is None:
            logger.warning(f'Memory document {memory_id} not found for update')
            return False

        try:
            self.client.update(index=self.index_name, id=hit['_id'], body={'doc': fields})
            logger.debug(f'Updated memory document {memory_id}')
            return True

        except OpenSearchException as e:
            logger.error(f'Error updating document {memory_id}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')

    def lexical_search(self, user_id: str, query_text: str, top_k: int = 20) -> List[Tuple[str, float]]:
        """Keyword search over title, summary and content.

        Returns:
            List of (memory_id, raw_score) tuples, best first
        """
        search_body = {
            'size': top_k,
            'query': {
                'bool': {
                    'must': [{
                        'multi_match': {
                            'query': query_text,
                            'fields': ['title^3', 'summary^2', 'content']
                        }
                    }],
                    'filter': [{
                        'term': {
                            'user_id': user_id
                        }
                    }]
                }
            },
            '_source': ['id']
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
            results = [(hit['_source']['id'], float(hit['_score'])) for hit in response['hits']['hits']]
            logger.debug(f'Lexical search returned {len(results)} results for user {user_id}')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing lexical search: {e}')
            raise OpenSearchError(f'Lexical search failed: {e}')

    def vector_search(self,
                      user_id: str,
                      query_vector: List[float],
                      top_k: int = 20,
                      field: str = 'embedding_content',
                      model_id: Optional[str] = None) -> List[Tuple[str, float]]:
        """
        Perform filtered k-NN similarity search.

        The lucene engine scores cosinesimil hits as (1 + cos) / 2; hits are returned
        with the cosine itself. When ``model_id`` is given only documents whose
        content vector came from that model are considered.

        Returns:
            List of (memory_id, cosine) tuples, best first
        """
        filters = [{'term': {'user_id': user_id}}]
        if model_id:
            filters.append({'term': {'content_model_id': model_id}})

        search_body = {
            'size': top_k,
            'query': {
                'knn': {
                    field: {
                        'vector': query_vector,
                        'k': top_k,
                        'filter': {
                            'bool': {
                                'filter': filters
                            }
                        }
                    }
                }
            },
            '_source': ['id']
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
            results = [(hit['_source']['id'], cosine_from_rescaled(float(hit['_score'])))
                       for hit in response['hits']['hits']]
            logger.debug(f'Vector search returned {len(results)} results for user {user_id}')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name)
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
