"""
Shared mutable state of the engine: capacity, congestion and assignments.
"""

from .versioned import VersionedCell, VersionedMap
from .capacity import CapacityRegistry, CapacitySnapshot, DestinationState
from .congestion import (
    CongestionEstimator, CongestionSample, CongestionSnapshot,
    EdgeCongestionState, Trend
)
from .assignments import AssignmentStore

__all__ = [
    'VersionedCell', 'VersionedMap',
    'CapacityRegistry', 'CapacitySnapshot', 'DestinationState',
    'CongestionEstimator', 'CongestionSample', 'CongestionSnapshot',
    'EdgeCongestionState', 'Trend',
    'AssignmentStore',
]
