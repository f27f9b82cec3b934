"""
Tagged trigger events consumed by the rerouting controller.

Every trigger carries a version from one monotonic counter. Triggers for the
same scope supersede each other: only the latest version's result is applied.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional, Tuple
import itertools
import time


class TriggerKind(Enum):
    """Why a partial re-solve is requested."""
    SCHEDULED = "scheduled"
    CONGESTION_BREACH = "congestion_breach"
    CAPACITY_BREACH = "capacity_breach"
    MANUAL_CLOSURE = "manual_closure"
    OVERLOAD_RERUN = "overload_rerun"
    ALTERNATIVE_REQUEST = "alternative_request"
    FAMILY_REGROUP = "family_regroup"


class ResourceType(Enum):
    EDGE = "edge"
    DESTINATION = "destination"


_versions = itertools.count(1)


def next_version() -> int:
    return next(_versions)


@dataclass(frozen=True)
class RerouteTrigger:
    """
    A request to re-evaluate part of the assignment set.

    Attributes:
        kind: Trigger category
        edge_indices: Breached or closed edges
        destination_ids: Breached or closed destinations
        requester_ids: Explicit requesters (overload reruns, alternative routes,
            family regroups)
        avoid_edges: Extra edges new paths stay off without pulling in their assignments
        reason: Free text for logs and update notifications
    """
    kind: TriggerKind
    edge_indices: FrozenSet[int] = field(default_factory=frozenset)
    destination_ids: FrozenSet[str] = field(default_factory=frozenset)
    requester_ids: FrozenSet[str] = field(default_factory=frozenset)
    avoid_edges: FrozenSet[int] = field(default_factory=frozenset)
    reason: str = ""
    version: int = field(default_factory=next_version)
    created_at: float = field(default_factory=time.time)

    @property
    def scope(self) -> Tuple:
        """Key under which newer triggers supersede older ones."""
        if self.kind == TriggerKind.SCHEDULED:
            return (self.kind.value,)
        return (self.kind.value,
                tuple(sorted(self.edge_indices)),
                tuple(sorted(self.destination_ids)),
                tuple(sorted(self.requester_ids)))

    @classmethod
    def congestion(cls, edge_indices, reason: str = "") -> 'RerouteTrigger':
        return cls(TriggerKind.CONGESTION_BREACH, edge_indices=frozenset(edge_indices),
                   reason=reason or "congestion threshold crossed")

    @classmethod
    def capacity(cls, destination_ids, reason: str = "") -> 'RerouteTrigger':
        return cls(TriggerKind.CAPACITY_BREACH, destination_ids=frozenset(destination_ids),
                   reason=reason or "destination capacity breached")

    @classmethod
    def scheduled(cls) -> 'RerouteTrigger':
        return cls(TriggerKind.SCHEDULED, reason="scheduled re-evaluation")

    @classmethod
    def rerun(cls, requester_ids, reason: str = "") -> 'RerouteTrigger':
        return cls(TriggerKind.OVERLOAD_RERUN, requester_ids=frozenset(requester_ids),
                   reason=reason or "re-solve after overload")

    @classmethod
    def alternative(cls, requester_ids, avoid_edges=(), reason: str = "") -> 'RerouteTrigger':
        return cls(TriggerKind.ALTERNATIVE_REQUEST, requester_ids=frozenset(requester_ids),
                   avoid_edges=frozenset(avoid_edges),
                   reason=reason or "alternative route requested")

    @classmethod
    def regroup(cls, requester_ids, reason: str = "") -> 'RerouteTrigger':
        return cls(TriggerKind.FAMILY_REGROUP, requester_ids=frozenset(requester_ids),
                   reason=reason or "family member could not join its family's destination")


@dataclass(frozen=True)
class ResourceClosure:
    """Operator input closing (or reopening) an edge or a destination."""
    resource_type: ResourceType
    resource_id: object
    reason: str = ""
    reopen: bool = False

    def to_trigger(self) -> Optional[RerouteTrigger]:
        """Manual-closure trigger for the affected resource; None for reopenings."""
        if self.reopen:
            return None
        if self.resource_type == ResourceType.EDGE:
            return RerouteTrigger(TriggerKind.MANUAL_CLOSURE,
                                  edge_indices=frozenset({int(self.resource_id)}),
                                  reason=self.reason or "edge closed")
        return RerouteTrigger(TriggerKind.MANUAL_CLOSURE,
                              destination_ids=frozenset({str(self.resource_id)}),
                              reason=self.reason or "destination closed")
