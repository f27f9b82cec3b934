"""
Requester profiles submitted to the solver.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

from .node import FEATURE_WHEELCHAIR


class PriorityTier(Enum):
    """Service tiers; lower rank is processed first."""
    MEDICAL = "medical"
    VULNERABLE = "vulnerable"
    STANDARD = "standard"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {
    PriorityTier.MEDICAL: 0,
    PriorityTier.VULNERABLE: 1,
    PriorityTier.STANDARD: 2,
}


@dataclass(frozen=True)
class EvacuationRequest:
    """
    Ephemeral profile of one person needing relocation.

    `arrival_time` orders requests within a tier; `sequence` breaks ties
    between identical arrival times in submission order.
    """
    requester_id: str
    lat: float
    lon: float
    priority: PriorityTier = PriorityTier.STANDARD
    requires_accessibility: bool = False
    required_features: FrozenSet[str] = field(default_factory=frozenset)
    family_id: Optional[str] = None
    arrival_time: float = 0.0
    sequence: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'required_features', frozenset(self.required_features))

    @property
    def pos(self) -> Tuple[float, float]:
        return (self.lat, self.lon)

    @property
    def hard_features(self) -> FrozenSet[str]:
        """Required destination tags, including those implied by accessibility needs."""
        if self.requires_accessibility:
            return self.required_features | {FEATURE_WHEELCHAIR}
        return self.required_features

    def with_location(self, lat: float, lon: float) -> 'EvacuationRequest':
        return replace(self, lat=lat, lon=lon)

    def with_priority(self, priority: PriorityTier) -> 'EvacuationRequest':
        return replace(self, priority=priority)


@dataclass
class AssignmentUnit:
    """
    The atomic unit of a solver decision: a single requester or a whole family.
    """
    members: List[EvacuationRequest]

    @property
    def key(self) -> str:
        first = self.members[0]
        return first.family_id or first.requester_id

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def family_id(self) -> Optional[str]:
        return self.members[0].family_id

    @property
    def priority(self) -> PriorityTier:
        """Most urgent tier among members."""
        return min((m.priority for m in self.members), key=lambda p: p.rank)

    @property
    def arrival_time(self) -> float:
        return min(m.arrival_time for m in self.members)

    @property
    def sequence(self) -> int:
        return min(m.sequence for m in self.members)

    @property
    def requires_accessibility(self) -> bool:
        return any(m.requires_accessibility for m in self.members)

    @property
    def hard_features(self) -> FrozenSet[str]:
        required: FrozenSet[str] = frozenset()
        for member in self.members:
            required = required | member.hard_features
        return required

    @property
    def anchor(self) -> EvacuationRequest:
        """Member whose location is used for the unit's path search."""
        return min(self.members, key=lambda m: (m.arrival_time, m.sequence, m.requester_id))

    @property
    def requester_ids(self) -> List[str]:
        return [m.requester_id for m in self.members]

    def sort_key(self) -> Tuple[int, float, int, str]:
        return (self.priority.rank, self.arrival_time, self.sequence, self.key)


def group_into_units(requests: List[EvacuationRequest]) -> List[AssignmentUnit]:
    """
    Group requests into solver units; family members are merged into one unit.
    The result is sorted by tier, then arrival, then submission order.
    """
    families = {}
    units: List[AssignmentUnit] = []
    for request in requests:
        if request.family_id is None:
            units.append(AssignmentUnit(members=[request]))
            continue
        unit = families.get(request.family_id)
        if unit is None:
            unit = AssignmentUnit(members=[])
            families[request.family_id] = unit
            units.append(unit)
        unit.members.append(request)

    units.sort(key=lambda u: u.sort_key())
    return units
