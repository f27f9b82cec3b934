"""
Node models for the evacuation network.
Defines navigable points and capacity-limited destinations (shelters).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional, Tuple
import math


EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class Node:
    """A navigable point, addressed by its stable arena index."""
    index: int
    lat: float
    lon: float
    name: Optional[str] = None

    @property
    def pos(self) -> Tuple[float, float]:
        """Position as a (lat, lon) tuple."""
        return (self.lat, self.lon)

    def distance_to(self, other: 'Node') -> float:
        """Great-circle distance to another node in kilometres."""
        return haversine_distance(self.lat, self.lon, other.lat, other.lon)


class DestinationStatus(Enum):
    """Administrative/capacity status of a destination."""
    ACTIVE = "active"
    FULL = "full"
    CLOSED = "closed"


# Capability tags used by hard constraints
FEATURE_MEDICAL = "medical"
FEATURE_WHEELCHAIR = "wheelchair"


@dataclass
class Destination:
    """A shelter with bounded capacity and a set of capability tags."""
    id: str
    lat: float
    lon: float
    max_capacity: int
    features: FrozenSet[str] = field(default_factory=frozenset)
    name: Optional[str] = None
    # Graph node the destination is anchored to
    node: Optional[int] = None

    def __post_init__(self):
        self.features = frozenset(self.features)
        if self.max_capacity < 0:
            raise ValueError(f"Destination {self.id} has negative capacity")

    @property
    def pos(self) -> Tuple[float, float]:
        return (self.lat, self.lon)

    def has_features(self, required) -> bool:
        """Check whether every required tag is present."""
        return set(required) <= self.features


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points in kilometres.
    Uses the Haversine formula.
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def to_planar_km(lat: float, lon: float, ref_lat: float) -> Tuple[float, float]:
    """
    Equirectangular projection to kilometres around a reference latitude.
    Good enough for nearest-neighbour indexing at city scale.
    """
    x = math.radians(lon) * EARTH_RADIUS_KM * math.cos(math.radians(ref_lat))
    y = math.radians(lat) * EARTH_RADIUS_KM
    return (x, y)
