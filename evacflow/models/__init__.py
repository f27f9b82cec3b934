"""
Models package for the evacuation network and assignment records.
"""

from .node import (
    Node, Destination, DestinationStatus, FEATURE_MEDICAL, FEATURE_WHEELCHAIR,
    haversine_distance, to_planar_km
)
from .edge import Edge, EdgeStatus, RoadType, ROAD_CAPACITY
from .pathfinding import PathConstraints, PathResult
from .network import SpatialGraph, NetworkStats
from .request import PriorityTier, EvacuationRequest, AssignmentUnit, group_into_units
from .assignment import (
    Assignment, AssignmentStatus, AssignmentUpdate, DegradedReason, RoutePath,
    ACTIVE_STATUSES, REROUTABLE_STATUSES
)

__all__ = [
    'Node', 'Destination', 'DestinationStatus', 'FEATURE_MEDICAL', 'FEATURE_WHEELCHAIR',
    'haversine_distance', 'to_planar_km',
    'Edge', 'EdgeStatus', 'RoadType', 'ROAD_CAPACITY',
    'PathConstraints', 'PathResult',
    'SpatialGraph', 'NetworkStats',
    'PriorityTier', 'EvacuationRequest', 'AssignmentUnit', 'group_into_units',
    'Assignment', 'AssignmentStatus', 'AssignmentUpdate', 'DegradedReason', 'RoutePath',
    'ACTIVE_STATUSES', 'REROUTABLE_STATUSES',
]
