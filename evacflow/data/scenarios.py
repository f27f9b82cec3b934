"""
Synthetic scenarios for demos and tests.

Builds a grid city with major roads every few blocks, places shelters on it
and generates requesters uniformly over its extent.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple
import json

import numpy as np

from ..models.edge import RoadType
from ..models.network import SpatialGraph
from ..models.node import Destination, FEATURE_MEDICAL, FEATURE_WHEELCHAIR
from ..models.request import EvacuationRequest, PriorityTier

KM_PER_DEG_LAT = 111.32

# Default city origin (south-west corner)
DEFAULT_ORIGIN = (10.70, 106.60)


@dataclass
class ShelterSpec:
    """Where to put a shelter on a grid city, in grid coordinates."""
    id: str
    row: int
    col: int
    capacity: int
    features: FrozenSet[str] = field(default_factory=frozenset)
    name: Optional[str] = None


@dataclass
class Scenario:
    """A graph, its shelters and a batch of requests."""
    graph: SpatialGraph
    requests: List[EvacuationRequest]
    name: str = "scenario"

    @property
    def total_capacity(self) -> int:
        return sum(d.max_capacity for d in self.graph.get_destinations())


def grid_position(origin: Tuple[float, float], spacing_km: float,
                  row: int, col: int) -> Tuple[float, float]:
    """Latitude/longitude of a grid intersection."""
    lat0, lon0 = origin
    lat = lat0 + row * spacing_km / KM_PER_DEG_LAT
    lon = lon0 + col * spacing_km / (KM_PER_DEG_LAT * np.cos(np.radians(lat0)))
    return float(lat), float(lon)


def build_grid_city(rows: int = 10, cols: int = 10, spacing_km: float = 0.5,
                    origin: Tuple[float, float] = DEFAULT_ORIGIN,
                    major_every: int = 5,
                    shelters: Sequence[ShelterSpec] = ()) -> SpatialGraph:
    """
    Create a rows x cols grid of intersections joined by two-way roads.

    Every `major_every`-th row and column is a three-lane primary road; the
    rest are single-lane residential streets.
    """
    graph = SpatialGraph()
    nodes: Dict[Tuple[int, int], int] = {}
    for i in range(rows):
        for j in range(cols):
            lat, lon = grid_position(origin, spacing_km, i, j)
            nodes[(i, j)] = graph.add_node(lat, lon, name=f"n_{i}_{j}")

    def road(is_major: bool) -> Dict:
        if is_major:
            return {'road_type': RoadType.PRIMARY, 'lanes': 3}
        return {'road_type': RoadType.RESIDENTIAL, 'lanes': 1}

    for i in range(rows):
        for j in range(cols):
            if j + 1 < cols:
                graph.add_edge(nodes[(i, j)], nodes[(i, j + 1)],
                               **road(major_every > 0 and i % major_every == 0))
            if i + 1 < rows:
                graph.add_edge(nodes[(i, j)], nodes[(i + 1, j)],
                               **road(major_every > 0 and j % major_every == 0))

    for spec in shelters:
        add_shelter(graph, spec, origin, spacing_km)
    return graph


def add_shelter(graph: SpatialGraph, spec: ShelterSpec,
                origin: Tuple[float, float] = DEFAULT_ORIGIN,
                spacing_km: float = 0.5) -> Destination:
    lat, lon = grid_position(origin, spacing_km, spec.row, spec.col)
    return graph.add_destination(Destination(
        id=spec.id, lat=lat, lon=lon, max_capacity=spec.capacity,
        features=spec.features, name=spec.name or spec.id,
    ))


def generate_requests(count: int, graph: SpatialGraph, seed: int = 42,
                      medical_share: float = 0.05, vulnerable_share: float = 0.15,
                      accessibility_share: float = 0.05, family_share: float = 0.2,
                      max_family_size: int = 4, start_time: float = 0.0,
                      id_prefix: str = "req") -> List[EvacuationRequest]:
    """
    Requesters spread uniformly over the graph's bounding box.

    A share of requesters arrive as families (2..max_family_size members at
    the same spot); tiers and accessibility needs are drawn independently.
    """
    rng = np.random.default_rng(seed)
    lats = [n.lat for n in graph.get_nodes()]
    lons = [n.lon for n in graph.get_nodes()]
    south, north = min(lats), max(lats)
    west, east = min(lons), max(lons)

    requests: List[EvacuationRequest] = []
    family_counter = 0
    while len(requests) < count:
        lat = float(rng.uniform(south, north))
        lon = float(rng.uniform(west, east))
        size = 1
        family_id = None
        if rng.random() < family_share and count - len(requests) >= 2:
            size = int(rng.integers(2, max_family_size + 1))
            size = min(size, count - len(requests))
            family_counter += 1
            family_id = f"fam_{family_counter}"

        for _ in range(size):
            roll = rng.random()
            if roll < medical_share:
                tier = PriorityTier.MEDICAL
            elif roll < medical_share + vulnerable_share:
                tier = PriorityTier.VULNERABLE
            else:
                tier = PriorityTier.STANDARD
            sequence = len(requests) + 1
            requests.append(EvacuationRequest(
                requester_id=f"{id_prefix}_{sequence}",
                lat=lat, lon=lon, priority=tier,
                requires_accessibility=bool(rng.random() < accessibility_share),
                family_id=family_id,
                arrival_time=start_time,
                sequence=sequence,
            ))
    return requests


def demo_scenario(request_count: int = 250, seed: int = 7) -> Scenario:
    """Ten-by-ten city with four shelters, one of them a medical centre."""
    shelters = [
        ShelterSpec("shelter_north", row=8, col=2, capacity=120,
                    features=frozenset({FEATURE_WHEELCHAIR})),
        ShelterSpec("shelter_east", row=4, col=8, capacity=100),
        ShelterSpec("shelter_south", row=1, col=5, capacity=100,
                    features=frozenset({FEATURE_WHEELCHAIR})),
        ShelterSpec("hospital_central", row=5, col=5, capacity=40,
                    features=frozenset({FEATURE_MEDICAL, FEATURE_WHEELCHAIR})),
    ]
    graph = build_grid_city(10, 10, spacing_km=0.5, shelters=shelters)
    requests = generate_requests(request_count, graph, seed=seed)
    return Scenario(graph=graph, requests=requests, name="demo")


def request_from_dict(data: Dict) -> EvacuationRequest:
    return EvacuationRequest(
        requester_id=str(data['requester_id']),
        lat=float(data['lat']),
        lon=float(data['lon']),
        priority=PriorityTier(data.get('priority', PriorityTier.STANDARD.value)),
        requires_accessibility=bool(data.get('requires_accessibility', False)),
        required_features=frozenset(data.get('required_features', ())),
        family_id=data.get('family_id'),
        arrival_time=float(data.get('arrival_time', 0.0)),
        sequence=int(data.get('sequence', 0)),
    )


def load_scenario(filepath: str) -> Scenario:
    """
    Load a scenario file: a network document (as written by
    SpatialGraph.save_to_file) plus an optional "requests" list.
    """
    with open(filepath, 'r') as f:
        data = json.load(f)
    graph = SpatialGraph.from_dict(data)
    requests = [request_from_dict(item) for item in data.get('requests', [])]
    return Scenario(graph=graph, requests=requests, name=data.get('name', filepath))
