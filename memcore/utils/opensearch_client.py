"""
OpenSearch client wrapper for k-NN search over memory record embeddings.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.errors import CollaboratorUnavailable
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(CollaboratorUnavailable):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None, sync_wait_seconds: float = 15.0):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built opensearch-py client; an AWS SigV4 client is created when omitted
            sync_wait_seconds: Pause after index creation while the collection syncs up
        """
        self.config = config
        self.index_name = config.index_name
        self.sync_wait_seconds = sync_wait_seconds

        if client is None:
            # Get AWS credentials and create auth
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
            # Remove protocol if present
            endpoint = config.endpoint.split('://', 1)[1] if '://' in config.endpoint else config.endpoint

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def create_index_if_not_exists(self) -> str:
        """
        Create the record index if it doesn't exist.

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
                        'id': {
                            'type': 'keyword'
                        },
                        'owner_id': {
                            'type': 'keyword'
                        },
                        'subject_key': {
                            'type': 'keyword'
                        },
                        'predicate': {
                            'type': 'keyword'
                        },
                        'status': {
                            'type': 'keyword'
                        },
                        'category': {
                            'type': 'keyword'
                        },
                        'sensitivity': {
                            'type': 'keyword'
                        },
                        'content': {
                            'type': 'text'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        },
                        'updated_at': {
                            'type': 'date'
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
                if self.sync_wait_seconds:
                    logger.info(f'Waiting {self.sync_wait_seconds}s for index {self.index_name} sync-up...')
                    time.sleep(self.sync_wait_seconds)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def index_document(self, doc_id: str, document: Dict[str, Any]) -> bool:
        """
        Index (create or overwrite) a document in OpenSearch.

        Args:
            doc_id: Document id, the record id
            document: Document to index

        Returns:
            True if indexing was successful, False otherwise
        """
        try:
            response = self.client.index(index=self.index_name, id=doc_id, body=document)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document {doc_id} in {self.index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error indexing document: {e}')
            raise OpenSearchError(f'Unexpected error indexing document: {e}')

    def vector_search(self,
                      query_vector: List[float],
                      owner_id: str,
                      top_k: int = 20,
                      filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Perform vector similarity search restricted to one owner.

        Args:
            query_vector: Query vector for similarity search
            owner_id: Owner ID to filter results
            top_k: Number of results to return (default 20)
            filters: Additional exact-match filters, e.g. {'status': 'active'}

        Returns:
            List of search results with scores and documents
        """
        term_filters = [{'term': {'owner_id': owner_id}}]
        for key, value in (filters or {}).items():
            term_filters.append({'term': {key: value}})

        try:
            search_body = {
                'size': top_k,
                'query': {
                    'bool': {
                        'must': [{
                            'knn': {
                                'embedding': {
                                    'vector': query_vector,
                                    'k': top_k
                                }
                            }
                        }],
                        'filter': term_filters
                    }
                },
                '_source': {
                    'excludes': ['embedding']  # Don't return embedding in results
                }
            }

            response = self.client.search(index=self.index_name, body=search_body)

            results = []
            for hit in response['hits']['hits']:
                results.append({'id': hit['_id'], 'score': hit['_score'], 'document': hit['_source']})

            logger.debug(f'Vector search returned {len(results)} results for owner {owner_id}')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in vector search: {e}')
            raise OpenSearchError(f'Unexpected error in vector search: {e}')

    def delete_document(self, doc_id: str) -> bool:
        """
        Delete a document from the index.

        Args:
            doc_id: Document ID to delete

        Returns:
            True if deletion was successful, False otherwise
        """
        try:
            response = self.client.delete(index=self.index_name, id=doc_id)

            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted document {doc_id} from {self.index_name}')
            else:
                logger.warning(f'Document {doc_id} not found for deletion')

            return success

        except OpenSearchException as e:
            # OpenSearchException args: (status_code, error_type, error_info)
            if len(e.args) >= 2 and (e.args[0] == 404 or e.args[1] == 'not_found'):
                logger.warning(f'Document {doc_id} not found for deletion')
                return False
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error deleting document: {e}')

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
