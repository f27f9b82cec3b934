"""
Assignment records binding one requester to one destination and one path.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..errors import InvalidTransition
from .request import EvacuationRequest


class AssignmentStatus(Enum):
    """Lifecycle states of an assignment."""
    ASSIGNED = "assigned"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    REROUTED = "rerouted"
    ARCHIVED = "archived"


ALLOWED_TRANSITIONS = {
    AssignmentStatus.ASSIGNED: {AssignmentStatus.IN_TRANSIT, AssignmentStatus.ARRIVED,
                                AssignmentStatus.REROUTED, AssignmentStatus.ARCHIVED},
    AssignmentStatus.IN_TRANSIT: {AssignmentStatus.ARRIVED, AssignmentStatus.REROUTED,
                                  AssignmentStatus.ARCHIVED},
    AssignmentStatus.REROUTED: {AssignmentStatus.ASSIGNED, AssignmentStatus.ARCHIVED},
    AssignmentStatus.ARRIVED: {AssignmentStatus.ARCHIVED},
    AssignmentStatus.ARCHIVED: set(),
}

ACTIVE_STATUSES = frozenset({
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.IN_TRANSIT,
    AssignmentStatus.REROUTED,
    AssignmentStatus.ARRIVED,
})

# Assignments the controller may move to another destination or path
REROUTABLE_STATUSES = frozenset({AssignmentStatus.ASSIGNED, AssignmentStatus.IN_TRANSIT})


class DegradedReason(Enum):
    """Why an assignment was produced through a fallback."""
    WIDENED_RADIUS = "widened_radius"
    NEAREST_FIT = "nearest_fit"
    STRAIGHT_LINE = "straight_line"
    OVERLOAD_TIMEOUT = "overload_timeout"
    UNPLACED = "unplaced"


@dataclass(frozen=True)
class RoutePath:
    """A path through the graph (or a straight-line placeholder)."""
    id: str
    node_indices: Tuple[int, ...]
    edge_indices: Tuple[int, ...]
    distance_km: float
    cost: float = 0.0
    straight_line: bool = False

    def uses_edge(self, edge_index: int) -> bool:
        return edge_index in self.edge_indices


@dataclass
class Assignment:
    """Binding of one requester to a destination and path."""
    id: str
    requester_id: str
    destination_id: Optional[str]
    path: Optional[RoutePath]
    assigned_epoch: int
    request: EvacuationRequest
    status: AssignmentStatus = AssignmentStatus.ASSIGNED
    degraded: bool = False
    degraded_reasons: List[DegradedReason] = field(default_factory=list)
    needs_manual_intervention: bool = False
    score: Optional[float] = None
    revision: int = 0
    assigned_at: float = 0.0
    arrived_at: Optional[float] = None

    @property
    def path_id(self) -> Optional[str]:
        return self.path.id if self.path else None

    @property
    def family_id(self) -> Optional[str]:
        return self.request.family_id

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def transition(self, new_status: AssignmentStatus) -> None:
        """Move to `new_status`, enforcing the lifecycle."""
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Assignment {self.id} cannot move from {self.status.value} to {new_status.value}",
                details={'assignment_id': self.id, 'from': self.status.value,
                         'to': new_status.value},
            )
        self.status = new_status

    def flag_degraded(self, reason: DegradedReason) -> None:
        self.degraded = True
        if reason not in self.degraded_reasons:
            self.degraded_reasons.append(reason)
        if reason in (DegradedReason.STRAIGHT_LINE, DegradedReason.UNPLACED):
            self.needs_manual_intervention = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dictionary for the delivery and dashboard layers."""
        return {
            'id': self.id,
            'requester_id': self.requester_id,
            'destination_id': self.destination_id,
            'path_id': self.path_id,
            'assigned_epoch': self.assigned_epoch,
            'status': self.status.value,
            'degraded': self.degraded,
            'degraded_reasons': [r.value for r in self.degraded_reasons],
            'needs_manual_intervention': self.needs_manual_intervention,
            'revision': self.revision,
        }


@dataclass
class AssignmentUpdate:
    """A change the delivery layer must notify a requester about."""
    requester_id: str
    assignment_id: str
    old_destination_id: Optional[str]
    new_destination_id: Optional[str]
    old_path_id: Optional[str]
    new_path_id: Optional[str]
    trigger: str
    degraded: bool = False

    @property
    def destination_changed(self) -> bool:
        return self.old_destination_id != self.new_destination_id
