"""
Best-first path search over the spatial graph.

A* uses f(n) = g(n) + h(n):
- g(n): accumulated edge cost from the origin
- h(n): great-circle distance to the closest goal

Edge cost is length x (1 + congestion penalty) x (1 + inaccessibility penalty),
so every factor is >= 1 and the great-circle heuristic stays admissible.
Equal-cost alternatives are resolved by the lower edge index, which keeps
output identical for identical inputs.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple
import heapq
import math

from ..errors import GraphUnreachable
from .edge import Edge
from .node import haversine_distance

INF = float('inf')
_EPS = 1e-12


@dataclass(frozen=True)
class PathConstraints:
    """Per-request constraints applied during path search."""
    requires_accessibility: bool = False
    avoid_edges: FrozenSet[int] = field(default_factory=frozenset)
    avoid_congested: bool = False
    congestion_threshold: float = 0.8
    min_accessible_rating: float = 0.2
    congestion_penalty_factor: float = 2.0
    inaccessibility_penalty_factor: float = 4.0

    def relaxed(self, drop_avoided: bool = False) -> 'PathConstraints':
        """Same constraints but allowing congested (and optionally avoided) edges."""
        return PathConstraints(
            requires_accessibility=self.requires_accessibility,
            avoid_edges=frozenset() if drop_avoided else self.avoid_edges,
            avoid_congested=False,
            congestion_threshold=self.congestion_threshold,
            min_accessible_rating=self.min_accessible_rating,
            congestion_penalty_factor=self.congestion_penalty_factor,
            inaccessibility_penalty_factor=self.inaccessibility_penalty_factor,
        )


@dataclass
class PathResult:
    """A concrete path found by the search."""
    origin: int
    target: int
    node_indices: List[int]
    edge_indices: List[int]
    distance_km: float
    cost: float
    congestion_exposure: float = 0.0  # length-weighted mean congestion level
    inaccessibility: float = 0.0      # length-weighted mean (1 - accessibility rating)
    max_congestion: float = 0.0

    @property
    def hops(self) -> int:
        return len(self.edge_indices)


def congestion_penalty(level: float, factor: float) -> float:
    """Penalty multiplier term for a congested edge (0 at free flow)."""
    return factor * max(0.0, level)


def inaccessibility_penalty(rating: float, requirement: bool, factor: float) -> float:
    """Penalty multiplier term for poorly accessible edges when access is required."""
    if not requirement:
        return 0.0
    return factor * (1.0 - max(0.0, min(1.0, rating)))


def edge_cost(edge: Edge, level: float, constraints: PathConstraints) -> float:
    """
    Cost of traversing an edge under the given constraints.

    Returns inf for closed, avoided or (when access is required) impassable edges.
    """
    if edge.closed or edge.index in constraints.avoid_edges:
        return INF
    if constraints.avoid_congested and level >= constraints.congestion_threshold:
        return INF
    if (constraints.requires_accessibility and
            edge.accessibility_rating < constraints.min_accessible_rating):
        return INF

    return (edge.length_km *
            (1.0 + congestion_penalty(level, constraints.congestion_penalty_factor)) *
            (1.0 + inaccessibility_penalty(edge.accessibility_rating,
                                           constraints.requires_accessibility,
                                           constraints.inaccessibility_penalty_factor)))


def _build_result(graph: Any, origin: int, target: int,
                  pred: Dict[int, Tuple[int, int]], g_cost: float,
                  congestion: Mapping[int, float]) -> PathResult:
    """Walk predecessor links back from `target` and aggregate path metrics."""
    nodes = [target]
    edges: List[int] = []
    current = target
    while current != origin:
        prev, edge_index = pred[current]
        edges.append(edge_index)
        nodes.append(prev)
        current = prev
    nodes.reverse()
    edges.reverse()

    distance = 0.0
    weighted_level = 0.0
    weighted_deficit = 0.0
    max_level = 0.0
    for edge_index in edges:
        edge = graph.get_edge(edge_index)
        level = congestion.get(edge_index, 0.0)
        distance += edge.length_km
        weighted_level += edge.length_km * level
        weighted_deficit += edge.length_km * (1.0 - edge.accessibility_rating)
        max_level = max(max_level, level)

    return PathResult(
        origin=origin,
        target=target,
        node_indices=nodes,
        edge_indices=edges,
        distance_km=distance,
        cost=g_cost,
        congestion_exposure=weighted_level / distance if distance > 0 else 0.0,
        inaccessibility=weighted_deficit / distance if distance > 0 else 0.0,
        max_congestion=max_level,
    )


def _search(graph: Any, origin: int, goals: FrozenSet[int],
            constraints: PathConstraints, congestion: Mapping[int, float],
            use_heuristic: bool, stop_at_first: bool) -> Tuple[Dict[int, float], Dict[int, Tuple[int, int]], List[int]]:
    """
    Shared best-first loop.

    Returns (best costs, predecessor links, goals in settle order).
    """
    goal_positions = [graph.get_node(g).pos for g in sorted(goals)]
    h_scale = graph.heuristic_scale if use_heuristic else 0.0

    def heuristic(node_index: int) -> float:
        if h_scale <= 0.0:
            return 0.0
        node = graph.get_node(node_index)
        return h_scale * min(haversine_distance(node.lat, node.lon, lat, lon)
                             for lat, lon in goal_positions)

    best_g: Dict[int, float] = {origin: 0.0}
    best_edge: Dict[int, int] = {origin: -1}
    pred: Dict[int, Tuple[int, int]] = {}
    settled = set()
    reached: List[int] = []

    # (f_cost, via_edge, node, g_cost)
    open_set = [(heuristic(origin), -1, origin, 0.0)]
    remaining = set(goals)

    while open_set:
        _, via_edge, current, g_cost = heapq.heappop(open_set)

        if current in settled:
            continue
        if g_cost > best_g.get(current, INF) + _EPS:
            continue
        settled.add(current)

        if current in remaining:
            reached.append(current)
            remaining.discard(current)
            if stop_at_first or not remaining:
                break

        for edge in graph.incident_edges(current):
            neighbor = edge.other_end(current)
            if neighbor in settled:
                continue
            cost = edge_cost(edge, congestion.get(edge.index, 0.0), constraints)
            if cost == INF:
                continue

            new_g = g_cost + cost
            old_g = best_g.get(neighbor, INF)
            if new_g < old_g - _EPS or (abs(new_g - old_g) <= _EPS and
                                         edge.index < best_edge.get(neighbor, math.inf)):
                best_g[neighbor] = new_g
                best_edge[neighbor] = edge.index
                pred[neighbor] = (current, edge.index)
                heapq.heappush(open_set, (new_g + heuristic(neighbor), edge.index, neighbor, new_g))

    return best_g, pred, reached


def astar_search(graph: Any, origin: int, candidates: Iterable[int],
                 constraints: PathConstraints,
                 congestion: Optional[Mapping[int, float]] = None) -> PathResult:
    """
    Find the cheapest path from `origin` to any of `candidates`.

    Raises:
        GraphUnreachable: if no open path reaches any candidate.
    """
    congestion = congestion or {}
    goals = frozenset(candidates)
    if not goals:
        raise GraphUnreachable("No candidate nodes to search for",
                               details={'origin': origin})

    if origin in goals:
        return PathResult(origin=origin, target=origin, node_indices=[origin],
                          edge_indices=[], distance_km=0.0, cost=0.0)

    best_g, pred, reached = _search(graph, origin, goals, constraints, congestion,
                                    use_heuristic=True, stop_at_first=True)
    if not reached:
        raise GraphUnreachable(
            f"No open path from node {origin} to any of {len(goals)} candidates",
            details={'origin': origin, 'candidates': sorted(goals)},
        )

    target = reached[0]
    return _build_result(graph, origin, target, pred, best_g[target], congestion)


def multi_target_search(graph: Any, origin: int, targets: Iterable[int],
                        constraints: PathConstraints,
                        congestion: Optional[Mapping[int, float]] = None) -> Dict[int, PathResult]:
    """
    Cheapest path from `origin` to each reachable target (Dijkstra, same cost model).
    Unreachable targets are simply absent from the result.
    """
    congestion = congestion or {}
    goals = frozenset(targets)
    if not goals:
        return {}

    best_g, pred, reached = _search(graph, origin, goals, constraints, congestion,
                                    use_heuristic=False, stop_at_first=False)
    results = {}
    for target in reached:
        if target == origin:
            results[target] = PathResult(origin=origin, target=origin, node_indices=[origin],
                                         edge_indices=[], distance_km=0.0, cost=0.0)
        else:
            results[target] = _build_result(graph, origin, target, pred, best_g[target], congestion)
    return results
