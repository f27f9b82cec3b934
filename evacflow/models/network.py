"""
Spatial graph for the evacuation system.

Nodes and edges live in arenas addressed by stable integer indices, with a
NetworkX multigraph holding the adjacency. Closing or reopening a road is a
flag flip on the edge, never a structural change.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
import json

import networkx as nx
import numpy as np
from scipy.spatial import cKDTree

from ..errors import UnknownResource
from .edge import Edge, EdgeStatus, RoadType
from .node import Destination, Node, haversine_distance, to_planar_km
from .pathfinding import (
    PathConstraints, PathResult, astar_search, multi_target_search
)


@dataclass
class NetworkStats:
    """Statistics about the network."""
    total_nodes: int = 0
    total_edges: int = 0
    destinations: int = 0
    total_destination_capacity: int = 0
    total_road_length_km: float = 0.0
    closed_edges: int = 0
    connected_components: int = 0


class SpatialGraph:
    """
    Graph of navigable points and traversable segments.
    Owns edge topology, closure flags and the nearest-node index.
    """

    def __init__(self):
        """Initialize empty graph."""
        self._graph = nx.MultiDiGraph()

        # Arenas; position == index
        self._nodes: List[Node] = []
        self._edges: List[Edge] = []

        # Destinations are anchored to graph nodes; capacity lives in the registry
        self._destinations: Dict[str, Destination] = {}

        # Lazily rebuilt caches
        self._incident: Dict[int, List[Edge]] = {}
        self._node_tree: Optional[cKDTree] = None
        self._dest_tree: Optional[cKDTree] = None
        self._dest_ids: List[str] = []
        self._ref_lat: float = 0.0

        # Lowest length/straight-line ratio seen; keeps the A* heuristic admissible
        self._heuristic_scale: float = 1.0

    # ==================== Node Operations ====================

    def add_node(self, lat: float, lon: float, name: Optional[str] = None) -> int:
        """Add a node and return its index."""
        index = len(self._nodes)
        self._nodes.append(Node(index=index, lat=lat, lon=lon, name=name))
        self._graph.add_node(index)
        self._node_tree = None
        return index

    def get_node(self, index: int) -> Node:
        """Get a node by index."""
        if not 0 <= index < len(self._nodes):
            raise UnknownResource(f"Unknown node {index}", details={'node': index})
        return self._nodes[index]

    def get_nodes(self) -> Iterator[Node]:
        return iter(self._nodes)

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    # ==================== Edge Operations ====================

    def add_edge(self, source: int, target: int, length_km: Optional[float] = None,
                 road_type: RoadType = RoadType.UNCLASSIFIED, lanes: int = 1,
                 accessibility_rating: float = 1.0, is_oneway: bool = False,
                 name: Optional[str] = None,
                 capacity: Optional[float] = None) -> int:
        """
        Add a road segment and return its index.
        Length defaults to the great-circle distance between the endpoints.
        """
        a = self.get_node(source)
        b = self.get_node(target)
        straight = a.distance_to(b)
        if length_km is None:
            length_km = straight

        index = len(self._edges)
        edge = Edge(
            index=index, source=source, target=target, length_km=length_km,
            road_type=road_type, lanes=lanes, accessibility_rating=accessibility_rating,
            is_oneway=is_oneway, name=name, capacity_override=capacity,
        )
        self._insert_edge(edge, straight)
        return index

    def _insert_edge(self, edge: Edge, straight: float) -> None:
        self._edges.append(edge)
        self._graph.add_edge(edge.source, edge.target, key=edge.index)
        if not edge.is_oneway:
            self._graph.add_edge(edge.target, edge.source, key=edge.index)

        if straight > 0:
            self._heuristic_scale = min(self._heuristic_scale, edge.length_km / straight)
        self._incident.pop(edge.source, None)
        self._incident.pop(edge.target, None)

    def get_edge(self, index: int) -> Edge:
        """Get an edge by index."""
        if not 0 <= index < len(self._edges):
            raise UnknownResource(f"Unknown edge {index}", details={'edge': index})
        return self._edges[index]

    def get_edges(self) -> Iterator[Edge]:
        return iter(self._edges)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    def incident_edges(self, node: int) -> List[Edge]:
        """Outgoing edges of a node, ordered by edge index."""
        cached = self._incident.get(node)
        if cached is None:
            keys = sorted(key for _, _, key in self._graph.out_edges(node, keys=True))
            cached = [self._edges[k] for k in keys]
            self._incident[node] = cached
        return cached

    def get_edge_between(self, source: int, target: int) -> Optional[Edge]:
        """Lowest-index edge joining two nodes, if any."""
        if not self._graph.has_edge(source, target):
            return None
        return self._edges[min(self._graph[source][target])]

    def set_edge_status(self, index: int, status: EdgeStatus) -> bool:
        """
        Administratively open or close an edge.

        Returns:
            True if the closure flag changed.
        """
        edge = self.get_edge(index)
        if status == EdgeStatus.CONGESTED:
            raise ValueError("Congestion is measured by the estimator, not set on the graph")
        closed = status == EdgeStatus.CLOSED
        changed = edge.closed != closed
        edge.closed = closed
        return changed

    @property
    def heuristic_scale(self) -> float:
        return self._heuristic_scale

    # ==================== Destinations ====================

    def add_destination(self, destination: Destination) -> Destination:
        """Anchor a destination to its nearest node (unless already anchored)."""
        if destination.node is None:
            destination.node = self.nearest_node(destination.lat, destination.lon)
        else:
            self.get_node(destination.node)
        self._destinations[destination.id] = destination
        self._dest_tree = None
        return destination

    def get_destination(self, destination_id: str) -> Destination:
        try:
            return self._destinations[destination_id]
        except KeyError:
            raise UnknownResource(f"Unknown destination {destination_id}",
                                  details={'destination': destination_id}) from None

    def get_destinations(self) -> List[Destination]:
        return [self._destinations[k] for k in sorted(self._destinations)]

    def destination_node(self, destination_id: str) -> int:
        return self.get_destination(destination_id).node

    # ==================== Spatial Queries ====================

    def _project(self, lat: float, lon: float) -> Tuple[float, float]:
        return to_planar_km(lat, lon, self._ref_lat)

    def _ensure_node_tree(self) -> cKDTree:
        if self._node_tree is None:
            if not self._nodes:
                raise UnknownResource("Graph has no nodes to snap to")
            self._ref_lat = float(np.mean([n.lat for n in self._nodes]))
            coords = np.array([self._project(n.lat, n.lon) for n in self._nodes])
            self._node_tree = cKDTree(coords)
            self._dest_tree = None
        return self._node_tree

    def _ensure_dest_tree(self) -> Optional[cKDTree]:
        self._ensure_node_tree()
        if self._dest_tree is None and self._destinations:
            self._dest_ids = sorted(self._destinations)
            coords = np.array([self._project(self._destinations[d].lat, self._destinations[d].lon)
                               for d in self._dest_ids])
            self._dest_tree = cKDTree(coords)
        return self._dest_tree

    def build_indexes(self) -> None:
        """Build spatial trees and adjacency caches ahead of concurrent readers."""
        if not self._nodes:
            return
        self._ensure_dest_tree()
        for node in self._nodes:
            self.incident_edges(node.index)

    def nearest_node(self, lat: float, lon: float) -> int:
        """Index of the node closest to a point."""
        tree = self._ensure_node_tree()
        _, idx = tree.query(self._project(lat, lon))
        return int(idx)

    def k_nearest_destinations(self, lat: float, lon: float, k: int,
                               within_km: Optional[float] = None) -> List[Tuple[str, float]]:
        """
        Up to `k` destinations nearest to a point as (id, great-circle km),
        sorted by distance then id.
        """
        tree = self._ensure_dest_tree()
        if tree is None or k <= 0:
            return []

        point = self._project(lat, lon)
        if within_km is not None:
            # Projection error is tiny at city scale; pad and filter exactly below
            indices = tree.query_ball_point(point, r=within_km * 1.05 + 0.1)
        else:
            count = min(len(self._dest_ids), max(k * 2, k + 4))
            _, found = tree.query(point, k=count)
            indices = np.atleast_1d(found).tolist()

        results = []
        for idx in indices:
            dest = self._destinations[self._dest_ids[int(idx)]]
            dist = haversine_distance(lat, lon, dest.lat, dest.lon)
            if within_km is None or dist <= within_km:
                results.append((dest.id, dist))

        results.sort(key=lambda item: (item[1], item[0]))
        return results[:k]

    # ==================== Path Search ====================

    def find_path(self, origin: int, candidates: Iterable[int],
                  constraints: Optional[PathConstraints] = None,
                  congestion: Optional[Mapping[int, float]] = None) -> PathResult:
        """
        Cheapest path from `origin` to any candidate node.

        Raises:
            GraphUnreachable: when no open path reaches any candidate.
        """
        return astar_search(self, origin, candidates, constraints or PathConstraints(), congestion)

    def shortest_paths(self, origin: int, targets: Iterable[int],
                       constraints: Optional[PathConstraints] = None,
                       congestion: Optional[Mapping[int, float]] = None) -> Dict[int, PathResult]:
        """Cheapest path from `origin` to each reachable target."""
        return multi_target_search(self, origin, targets, constraints or PathConstraints(), congestion)

    # ==================== Statistics ====================

    def get_stats(self) -> NetworkStats:
        """Get network statistics."""
        stats = NetworkStats()
        stats.total_nodes = len(self._nodes)
        stats.total_edges = len(self._edges)
        stats.destinations = len(self._destinations)
        stats.total_destination_capacity = sum(d.max_capacity for d in self._destinations.values())
        stats.total_road_length_km = sum(e.length_km for e in self._edges)
        stats.closed_edges = sum(1 for e in self._edges if e.closed)
        if self._nodes:
            stats.connected_components = nx.number_weakly_connected_components(self._graph)
        return stats

    # ==================== Serialization ====================

    def to_dict(self) -> dict:
        """Convert graph to dictionary for serialization."""
        return {
            'nodes': [
                {'index': n.index, 'lat': n.lat, 'lon': n.lon, 'name': n.name}
                for n in self._nodes
            ],
            'edges': [e.to_dict() for e in self._edges],
            'destinations': [
                {
                    'id': d.id,
                    'lat': d.lat,
                    'lon': d.lon,
                    'capacity': d.max_capacity,
                    'features': sorted(d.features),
                    'name': d.name,
                    'node': d.node,
                }
                for d in self.get_destinations()
            ],
        }

    def save_to_file(self, filepath: str) -> None:
        """Save graph to JSON file."""
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_dict(cls, data: dict) -> 'SpatialGraph':
        graph = cls()
        for node_data in sorted(data.get('nodes', []), key=lambda n: n['index']):
            graph.add_node(node_data['lat'], node_data['lon'], node_data.get('name'))

        for edge_data in sorted(data.get('edges', []), key=lambda e: e['index']):
            edge = Edge.from_dict(edge_data)
            if edge.index != graph.edge_count:
                raise ValueError(f"Edge indices must be contiguous, got {edge.index}")
            a = graph.get_node(edge.source)
            b = graph.get_node(edge.target)
            graph._insert_edge(edge, a.distance_to(b))

        for dest_data in data.get('destinations', []):
            graph.add_destination(Destination(
                id=dest_data['id'],
                lat=dest_data['lat'],
                lon=dest_data['lon'],
                max_capacity=dest_data.get('capacity', 1000),
                features=frozenset(dest_data.get('features', [])),
                name=dest_data.get('name'),
                node=dest_data.get('node'),
            ))
        return graph

    @classmethod
    def load_from_file(cls, filepath: str) -> 'SpatialGraph':
        """Load graph from JSON file."""
        with open(filepath, 'r') as f:
            return cls.from_dict(json.load(f))

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return (f"SpatialGraph(nodes={len(self._nodes)}, "
                f"edges={len(self._edges)}, "
                f"destinations={len(self._destinations)})")
