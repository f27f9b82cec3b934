"""
Edge model for the evacuation network.
Represents road segments with throughput capacity, accessibility and closure state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RoadType(Enum):
    """Types of roads with different capacities."""
    MOTORWAY = "motorway"
    TRUNK = "trunk"
    PRIMARY = "primary"
    SECONDARY = "secondary"
    TERTIARY = "tertiary"
    RESIDENTIAL = "residential"
    FOOTPATH = "footpath"
    UNCLASSIFIED = "unclassified"


# Expected throughput in people per hour per lane based on road type
ROAD_CAPACITY = {
    RoadType.MOTORWAY: 2000,
    RoadType.TRUNK: 1500,
    RoadType.PRIMARY: 1200,
    RoadType.SECONDARY: 800,
    RoadType.TERTIARY: 600,
    RoadType.RESIDENTIAL: 400,
    RoadType.FOOTPATH: 250,
    RoadType.UNCLASSIFIED: 300,
}


class EdgeStatus(Enum):
    """Traversal status of an edge."""
    OPEN = "open"
    CONGESTED = "congested"
    CLOSED = "closed"


@dataclass
class Edge:
    """
    A traversable road segment.

    Geometry is fixed once the edge is added to the graph; only the closure
    flag is mutated, and only by the graph. Congestion lives in the
    congestion estimator.
    """
    index: int
    source: int
    target: int
    length_km: float
    road_type: RoadType = RoadType.UNCLASSIFIED
    lanes: int = 1
    accessibility_rating: float = 1.0  # 0.0 impassable for wheelchairs .. 1.0 fully accessible
    is_oneway: bool = False
    name: Optional[str] = None
    capacity_override: Optional[float] = None

    # Administrative closure flag, owned by the graph
    closed: bool = False

    def __post_init__(self):
        if self.length_km < 0:
            raise ValueError(f"Edge {self.index} has negative length")
        self.accessibility_rating = max(0.0, min(1.0, self.accessibility_rating))
        self.lanes = max(1, int(self.lanes))

    @property
    def expected_capacity_per_hour(self) -> float:
        """Expected throughput (people/hour)."""
        if self.capacity_override is not None:
            return float(self.capacity_override)
        return float(ROAD_CAPACITY.get(self.road_type, 300) * self.lanes)

    def other_end(self, node: int) -> int:
        """Return the endpoint opposite to `node`."""
        return self.target if node == self.source else self.source

    def status_for(self, congestion_level: float, congested_level: float = 0.8) -> EdgeStatus:
        """Map a congestion level to a status; closure always wins."""
        if self.closed:
            return EdgeStatus.CLOSED
        if congestion_level >= congested_level:
            return EdgeStatus.CONGESTED
        return EdgeStatus.OPEN

    @classmethod
    def from_dict(cls, data: dict) -> 'Edge':
        """Create an Edge from its serialized form."""
        return cls(
            index=int(data['index']),
            source=int(data['source']),
            target=int(data['target']),
            length_km=float(data['length_km']),
            road_type=RoadType(data.get('road_type', 'unclassified')),
            lanes=data.get('lanes', 1),
            accessibility_rating=data.get('accessibility_rating', 1.0),
            is_oneway=data.get('oneway', False),
            name=data.get('name'),
            capacity_override=data.get('capacity'),
            closed=data.get('closed', False),
        )

    def to_dict(self) -> dict:
        return {
            'index': self.index,
            'source': self.source,
            'target': self.target,
            'length_km': self.length_km,
            'road_type': self.road_type.value,
            'lanes': self.lanes,
            'accessibility_rating': self.accessibility_rating,
            'oneway': self.is_oneway,
            'name': self.name,
            'capacity': self.capacity_override,
            'closed': self.closed,
        }
