"""
Graph shaping: turns raw scored edges into a bounded, pruned relation graph per owner.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple

from ..models.core import RelationEdge
from ..utils.config import RelationConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

Pair = Tuple[str, str]


class GraphShapingError(Exception):
    """Custom exception for graph shaping errors."""
    pass


@dataclass
class ShapedGraph:
    """Surviving typed edges, sorted by key, plus the strongest edge of each surviving pair."""
    edges: List[RelationEdge] = field(default_factory=list)
    representatives: Dict[Pair, RelationEdge] = field(default_factory=dict)

    @property
    def pairs(self) -> Set[Pair]:
        return set(self.representatives)

    def degree(self, memory_id: str) -> int:
        return sum(1 for pair in self.representatives if memory_id in pair)


def _preference(edge: RelationEdge) -> Tuple[float, str, str, str]:
    # Higher score first, then the orientation with the smaller source id
    return (-edge.score, edge.source_id, edge.target_id, edge.created_at.isoformat())


class GraphShaper:
    """Deduplicates, prunes and degree-caps an owner's relation edges.

    Shaping depends only on the set of input edges, never on their order, and
    shaping an already shaped graph returns it unchanged.
    """

    def __init__(self, config: RelationConfig):
        self.config = config

    def shape(self, user_id: str, edges: Iterable[RelationEdge]) -> ShapedGraph:
        """
        Shape one owner's candidate and existing edges.

        Args:
            user_id: Owner whose graph is shaped
            edges: Typed edges, in any order and possibly repeated

        Returns:
            ShapedGraph with surviving edges

        Raises:
            GraphShapingError: If an edge belongs to another owner
        """
        typed = self._collapse_typed(user_id, edges)

        # Pair strength is the best score across relation types
        representatives: Dict[Pair, RelationEdge] = {}
        for (pair, _), edge in sorted(typed.items(), key=lambda item: (item[0][0], -item[1].score, item[0][1])):
            if pair not in representatives:
                representatives[pair] = edge

        strengths = {pair: edge.score for pair, edge in representatives.items()}
        total = len(strengths)

        strengths = {pair: score for pair, score in strengths.items() if score >= self.config.cleanup_threshold}
        after_cleanup = len(strengths)

        strengths = self._mutual_knn(strengths)
        after_knn = len(strengths)

        strengths = self._cap_degree(strengths)

        surviving = [edge for (pair, _), edge in typed.items() if pair in strengths]
        surviving.sort(key=lambda edge: edge.key)

        logger.debug(f'Shaped graph for user {user_id}: {total} pairs, {after_cleanup} after cleanup, '
                     f'{after_knn} after mutual-kNN, {len(strengths)} after degree cap')
        return ShapedGraph(edges=surviving, representatives={pair: representatives[pair] for pair in sorted(strengths)})

    def _collapse_typed(self, user_id: str, edges: Iterable[RelationEdge]) -> Dict[Tuple[Pair, str], RelationEdge]:
        """Keep the preferred edge per (unordered pair, relation type)."""
        typed: Dict[Tuple[Pair, str], RelationEdge] = {}
        for edge in edges:
            if edge.user_id != user_id:
                logger.error(f'Edge {edge.edge_id} of user {edge.user_id} passed to shaping for user {user_id}')
                raise GraphShapingError(f'Edge {edge.edge_id} does not belong to user {user_id}')
            if edge.source_id == edge.target_id:
                continue

            key = (edge.pair, edge.relation_type)
            current = typed.get(key)
            if current is None or _preference(edge) < _preference(current):
                typed[key] = edge
        return typed

    def _top_neighbors(self, strengths: Dict[Pair, float]) -> Dict[str, Set[str]]:
        neighbors: Dict[str, List[Tuple[float, str]]] = defaultdict(list)
        for (a, b), score in strengths.items():
            neighbors[a].append((-score, b))
            neighbors[b].append((-score, a))

        k = max(0, self.config.mutual_k)
        return {node: {neighbor for _, neighbor in sorted(ranked)[:k]} for node, ranked in neighbors.items()}

    def _mutual_knn(self, strengths: Dict[Pair, float]) -> Dict[Pair, float]:
        """Keep pairs whose endpoints each rank the other in their top k."""
        top = self._top_neighbors(strengths)
        return {(a, b): score for (a, b), score in strengths.items() if b in top[a] and a in top[b]}

    def _cap_degree(self, strengths: Dict[Pair, float]) -> Dict[Pair, float]:
        """Drop weakest pairs until no node has more than ``max_degree`` pairs."""
        degree: Dict[str, int] = defaultdict(int)
        for a, b in strengths:
            degree[a] += 1
            degree[b] += 1

        cap = self.config.max_degree
        if all(count <= cap for count in degree.values()):
            return strengths

        # Weakest first; among equal scores the lexicographically larger pair goes first
        ordered = sorted(sorted(strengths, reverse=True), key=lambda pair: strengths[pair])
        kept = dict(strengths)
        for a, b in ordered:
            if degree[a] > cap or degree[b] > cap:
                del kept[(a, b)]
                degree[a] -= 1
                degree[b] -= 1
        return kept
