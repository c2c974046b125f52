"""
Amazon Neptune graph database client with Gremlin Python driver and AWS SigV4 authentication.

Memories are stored as ``Memory`` vertices. Every scored relation is kept as a
``CANDIDATE`` edge and the shaped graph as ``RELATES`` edges. Every vertex and
edge carries ``user_id`` and every traversal filters on it, so one user's graph
never touches another's.
"""

from functools import wraps
from typing import Any, Dict, List, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __

from ..models.core import RelationEdge
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import parse_datetime, to_datetime, to_iso

logger = get_logger(__name__)

MEMORY_LABEL = 'Memory'
RELATION_LABEL = 'RELATES'
CANDIDATE_LABEL = 'CANDIDATE'


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations once after reconnecting a closed transport."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _first(data: Dict[Any, Any], key: str, default: Any = None) -> Any:
    """Unwrap a value_map entry, which Neptune returns as a single-item list for vertex properties."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = self.config.region or Session().region_name or 'us-east-1'

        # Sign the WebSocket upgrade request
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=dict(request.headers.items()),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    @retry_on_connection_error
    def upsert_memory_vertex(self, memory_id: str, user_id: str, created_at: Optional[str] = None) -> bool:
        """
        Create a memory vertex if it does not already exist.

        Args:
            memory_id: Memory identifier
            user_id: User ID for isolation
            created_at: ISO creation timestamp

        Returns:
            True once the vertex exists
        """
        existing = self.g.V().has_label(MEMORY_LABEL).has('id', memory_id).has('user_id', user_id).to_list()
        if existing:
            logger.debug(f'Memory vertex already exists: {memory_id}')
            return True

        self.g.addV(MEMORY_LABEL).property('id', memory_id)\
            .property('user_id', user_id)\
            .property('created_at', created_at or to_iso(to_datetime()))\
            .next()
        logger.debug(f'Created memory vertex: {memory_id}')
        return True

    @retry_on_connection_error
    def upsert_relation_edge(self, edge: RelationEdge, label: str = RELATION_LABEL) -> bool:
        """
        Create or update a relation edge keyed by (source, target, type).

        Args:
            edge: RelationEdge to persist
            label: Edge label, RELATES or CANDIDATE

        Returns:
            True if the edge was written
        """
        existing = self.g.E().has_label(label).has('id', edge.edge_id)\
            .has('user_id', edge.user_id).to_list()
        if existing:
            self.g.E().has_label(label).has('id', edge.edge_id).has('user_id', edge.user_id)\
                .property('score', float(edge.score))\
                .iterate()
            logger.debug(f'Updated {label} edge score: {edge.edge_id} -> {edge.score:.4f}')
            return True

        source = self.g.V().has_label(MEMORY_LABEL).has('id', edge.source_id).has('user_id', edge.user_id).next()
        target = self.g.V().has_label(MEMORY_LABEL).has('id', edge.target_id).has('user_id', edge.user_id).next()

        self.g.V(source).addE(label).to(target)\
            .property('id', edge.edge_id)\
            .property('user_id', edge.user_id)\
            .property('source_id', edge.source_id)\
            .property('target_id', edge.target_id)\
            .property('relation_type', edge.relation_type)\
            .property('score', float(edge.score))\
            .property('created_at', to_iso(edge.created_at))\
            .next()
        logger.debug(f'Created {label} edge: {edge.edge_id}')
        return True

    @retry_on_connection_error
    def delete_relation_edge(self, edge_id: str, user_id: str, label: str = RELATION_LABEL) -> bool:
        """
        Delete a single relation edge.

        Args:
            edge_id: Edge identifier ('source:target:type')
            user_id: User ID for security check
            label: Edge label, RELATES or CANDIDATE

        Returns:
            True if deletion was issued
        """
        self.g.E().has_label(label).has('id', edge_id).has('user_id', user_id).drop().iterate()
        logger.debug(f'Deleted {label} edge: {edge_id}')
        return True

    @retry_on_connection_error
    def get_relation_edges(self,
                           user_id: str,
                           memory_id: Optional[str] = None,
                           label: str = RELATION_LABEL) -> List[RelationEdge]:
        """
        Get relation edges of a user, optionally only those touching one memory.

        Args:
            user_id: User ID to filter by
            memory_id: Optional memory ID to restrict to its incident edges
            label: Edge label, RELATES or CANDIDATE

        Returns:
            List of RelationEdge objects
        """
        if memory_id is None:
            query = self.g.E().has_label(label).has('user_id', user_id)
        else:
            query = self.g.V().has_label(MEMORY_LABEL).has('id', memory_id).has('user_id', user_id)\
                .both_e(label).has('user_id', user_id).dedup()

        edge_data = query.value_map().to_list()

        edges = []
        for data in edge_data:
            source_id = _first(data, 'source_id')
            target_id = _first(data, 'target_id')
            relation_type = _first(data, 'relation_type')
            if not source_id or not target_id or not relation_type:
                logger.warning(f"Skipping malformed relation edge: {_first(data, 'id')}")
                continue
            edges.append(
                RelationEdge(user_id=user_id,
                             source_id=source_id,
                             target_id=target_id,
                             relation_type=relation_type,
                             score=float(_first(data, 'score', 0.0)),
                             created_at=parse_datetime(_first(data, 'created_at'), default=to_datetime(0))))

        logger.debug(f'Found {len(edges)} {label} edges for user {user_id}')
        return edges

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy
        """
        self.g.V().limit(1).count().next()
        return True
