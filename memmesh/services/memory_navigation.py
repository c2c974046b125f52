"""
Read-side navigation of an owner's shaped relation graph: the mesh overview,
one memory with its relations, and the cluster around a memory.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from ..models.core import (ClusterMember, Memory, MemoryCluster, MemoryMesh, MemoryRelations, MeshNode, RelatedMemory,
                           RelationEdge)
from ..utils.config import RelationConfig
from ..utils.logging_config import get_logger
from .memory_store import MemoryStore, MemoryStoreError

logger = get_logger(__name__)

UNKNOWN_SURFACE = 'unknown'


class MemoryNavigationError(Exception):
    """Custom exception for memory navigation errors."""
    pass


def node_label(memory: Memory) -> str:
    return memory.title or (memory.summary or '')[:20] or 'Memory'


def group_by_neighbor(memory_id: str, edges: Iterable[RelationEdge]) -> Dict[str, List[RelationEdge]]:
    """Edges touching ``memory_id`` grouped by their other endpoint, strongest first."""
    grouped: Dict[str, List[RelationEdge]] = defaultdict(list)
    for edge in edges:
        if not edge.touches(memory_id) or edge.source_id == edge.target_id:
            continue
        other = edge.target_id if edge.source_id == memory_id else edge.source_id
        grouped[other].append(edge)

    for group in grouped.values():
        group.sort(key=lambda edge: (-edge.score, edge.relation_type))
    return dict(grouped)


def pair_strengths(edges: Iterable[RelationEdge]) -> Dict[str, Dict[str, float]]:
    """Adjacency map holding the best score across relation types for every connected pair."""
    adjacency: Dict[str, Dict[str, float]] = defaultdict(dict)
    for edge in edges:
        a, b = edge.pair
        if a == b:
            continue
        strength = max(edge.score, adjacency[a].get(b, 0.0))
        adjacency[a][b] = strength
        adjacency[b][a] = strength
    return adjacency


class MemoryNavigator:
    """Reads the stored relation graph back together with the memories it connects.

    Only shaped edges are read, so every view shows the pruned graph.
    """

    def __init__(self, store: MemoryStore, config: RelationConfig):
        self.store = store
        self.config = config

    def get_memory_mesh(self, user_id: str, limit: int) -> MemoryMesh:
        """
        Recent memories of an owner and the edges among them.

        Args:
            user_id: Owner of the graph
            limit: Maximum number of memories, newest first

        Returns:
            MemoryMesh with one node per memory, the edges between nodes and
            node ids grouped by capture surface
        """
        try:
            memories = self.store.list_memories(user_id, limit)
            edges = self.store.get_relation_edges(user_id)
        except MemoryStoreError as e:
            logger.error(f'Failed to load memory mesh for user {user_id}: {e}')
            raise MemoryNavigationError(f'Failed to load memory mesh: {e}')

        node_ids = {memory.id for memory in memories}
        edges = sorted((edge for edge in edges if edge.source_id in node_ids and edge.target_id in node_ids),
                       key=lambda edge: edge.key)
        adjacency = pair_strengths(edges)

        mesh = MemoryMesh(edges=edges)
        for memory in memories:
            surface = memory.source or UNKNOWN_SURFACE
            mesh.nodes.append(
                MeshNode(memory_id=memory.id,
                         label=node_label(memory),
                         surface=surface,
                         title=memory.title,
                         summary=memory.summary,
                         degree=len(adjacency.get(memory.id, {}))))
            mesh.clusters.setdefault(surface, []).append(memory.id)

        logger.debug(f'Memory mesh for user {user_id}: {len(mesh.nodes)} nodes, {len(mesh.edges)} edges')
        return mesh

    def get_memory_with_relations(self, memory_id: str, user_id: str) -> Optional[MemoryRelations]:
        """One memory with its related memories, strongest relation first. None if the memory is unknown."""
        try:
            memory = self.store.get_memory(memory_id, user_id, include_embeddings=True)
            if memory is None:
                return None
            grouped = group_by_neighbor(memory.id, self.store.get_relation_edges(user_id, memory.id))
            neighbors = self.store.get_memories(user_id, list(grouped))
        except MemoryStoreError as e:
            logger.error(f'Failed to load relations of memory {memory_id}: {e}')
            raise MemoryNavigationError(f'Failed to load memory relations: {e}')

        related = [
            RelatedMemory(memory=neighbors[other], edges=group) for other, group in grouped.items() if other in neighbors
        ]
        related.sort(key=lambda item: (-item.score, item.memory.id))
        return MemoryRelations(memory=memory, related=related)

    def get_memory_cluster(self, memory_id: str, user_id: str, depth: int) -> Optional[MemoryCluster]:
        """
        Breadth-first walk from a memory over strong edges.

        From each memory only the ``cluster_fanout`` strongest neighbours are
        followed, and only when their pair strength exceeds
        ``cluster_min_score``. Members keep the depth at which they were first
        reached.

        Returns:
            MemoryCluster in visiting order, center first, or None if the
            memory is unknown
        """
        try:
            center = self.store.get_memory(memory_id, user_id)
            if center is None:
                return None
            adjacency = pair_strengths(self.store.get_relation_edges(user_id))
        except MemoryStoreError as e:
            logger.error(f'Failed to load cluster of memory {memory_id}: {e}')
            raise MemoryNavigationError(f'Failed to load memory cluster: {e}')

        depths = {center.id: 0}
        frontier = [center.id]
        for level in range(1, depth + 1):
            reached = []
            for node in frontier:
                ranked = sorted(adjacency.get(node, {}).items(), key=lambda item: (-item[1], item[0]))
                for neighbor, strength in ranked[:self.config.cluster_fanout]:
                    if strength > self.config.cluster_min_score and neighbor not in depths:
                        depths[neighbor] = level
                        reached.append(neighbor)
            if not reached:
                break
            frontier = reached

        try:
            memories = self.store.get_memories(user_id, [node for node in depths if node != center.id])
        except MemoryStoreError as e:
            logger.error(f'Failed to load cluster members of memory {memory_id}: {e}')
            raise MemoryNavigationError(f'Failed to load memory cluster: {e}')
        memories[center.id] = center

        cluster = MemoryCluster(center_id=center.id, max_depth=depth)
        for node, level in depths.items():
            memory = memories.get(node)
            if memory is None:
                logger.warning(f'Cluster member {node} of memory {memory_id} has no stored document')
                continue
            cluster.members.append(
                ClusterMember(memory=memory, depth=level, relation_count=len(adjacency.get(node, {}))))

        logger.debug(f'Cluster of memory {memory_id} at depth {depth}: {cluster.size} members')
        return cluster
