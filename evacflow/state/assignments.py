"""
Working set of assignments with lookups by destination, edge and family.
"""

from typing import Dict, Iterable, List, Optional, Set
import threading

from ..errors import UnknownResource
from ..models.assignment import (
    ACTIVE_STATUSES, Assignment, AssignmentStatus, AssignmentUpdate
)


class AssignmentStore:
    """
    Holds the current assignment of every requester for the running event.

    Only the solver's committed results and check-in signals write here.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._by_requester: Dict[str, Assignment] = {}
        self._by_destination: Dict[str, Set[str]] = {}
        self._by_edge: Dict[int, Set[str]] = {}
        self._by_family: Dict[str, Set[str]] = {}
        self._archived: List[Assignment] = []

    # ==================== Index maintenance ====================

    def _index(self, assignment: Assignment) -> None:
        rid = assignment.requester_id
        if assignment.destination_id is not None:
            self._by_destination.setdefault(assignment.destination_id, set()).add(rid)
        if assignment.path is not None:
            for edge_index in assignment.path.edge_indices:
                self._by_edge.setdefault(edge_index, set()).add(rid)
        if assignment.family_id is not None:
            self._by_family.setdefault(assignment.family_id, set()).add(rid)

    def _unindex(self, assignment: Assignment) -> None:
        rid = assignment.requester_id
        if assignment.destination_id is not None:
            self._by_destination.get(assignment.destination_id, set()).discard(rid)
        if assignment.path is not None:
            for edge_index in assignment.path.edge_indices:
                self._by_edge.get(edge_index, set()).discard(rid)
        if assignment.family_id is not None:
            self._by_family.get(assignment.family_id, set()).discard(rid)

    # ==================== Writes ====================

    def put(self, assignment: Assignment) -> Optional[Assignment]:
        """
        Store an assignment, replacing the requester's previous one.

        Returns:
            The replaced assignment, if any.
        """
        with self._lock:
            previous = self._by_requester.get(assignment.requester_id)
            if previous is not None:
                self._unindex(previous)
            self._by_requester[assignment.requester_id] = assignment
            self._index(assignment)
            return previous

    def remove(self, requester_id: str) -> Optional[Assignment]:
        with self._lock:
            previous = self._by_requester.pop(requester_id, None)
            if previous is not None:
                self._unindex(previous)
            return previous

    def transition(self, requester_id: str, status: AssignmentStatus,
                   timestamp: Optional[float] = None) -> Assignment:
        """Apply a lifecycle transition (check-in signals, reroute marking)."""
        with self._lock:
            assignment = self.require(requester_id)
            assignment.transition(status)
            if status == AssignmentStatus.ARRIVED:
                assignment.arrived_at = timestamp
            return assignment

    def mark_rerouted(self, requester_ids: Iterable[str]) -> List[Assignment]:
        marked = []
        with self._lock:
            for rid in requester_ids:
                assignment = self._by_requester.get(rid)
                if assignment is None or assignment.status == AssignmentStatus.REROUTED:
                    continue
                assignment.transition(AssignmentStatus.REROUTED)
                marked.append(assignment)
        return marked

    def apply_reroute(self, replacement: Assignment, trigger: str) -> AssignmentUpdate:
        """
        Move a rerouted assignment onto the replacement destination and path.
        The stored record keeps its id; its revision is bumped.
        """
        with self._lock:
            current = self.require(replacement.requester_id)
            if current.status != AssignmentStatus.REROUTED:
                current.transition(AssignmentStatus.REROUTED)

            update = AssignmentUpdate(
                requester_id=current.requester_id,
                assignment_id=current.id,
                old_destination_id=current.destination_id,
                new_destination_id=replacement.destination_id,
                old_path_id=current.path_id,
                new_path_id=replacement.path_id,
                trigger=trigger,
                degraded=replacement.degraded,
            )

            self._unindex(current)
            current.destination_id = replacement.destination_id
            current.path = replacement.path
            current.assigned_epoch = replacement.assigned_epoch
            current.assigned_at = replacement.assigned_at
            current.degraded = replacement.degraded
            current.degraded_reasons = list(replacement.degraded_reasons)
            current.needs_manual_intervention = replacement.needs_manual_intervention
            current.score = replacement.score
            current.request = replacement.request
            current.revision += 1
            current.transition(AssignmentStatus.ASSIGNED)
            self._index(current)
            return update

    def restore(self, requester_ids: Iterable[str]) -> None:
        """Put rerouted assignments back to ASSIGNED unchanged (failed or discarded re-solve)."""
        with self._lock:
            for rid in requester_ids:
                assignment = self._by_requester.get(rid)
                if assignment is not None and assignment.status == AssignmentStatus.REROUTED:
                    assignment.transition(AssignmentStatus.ASSIGNED)

    def archive_all(self) -> int:
        """Archive every assignment at the end of an event."""
        with self._lock:
            count = 0
            for assignment in self._by_requester.values():
                if assignment.status != AssignmentStatus.ARCHIVED:
                    assignment.transition(AssignmentStatus.ARCHIVED)
                self._archived.append(assignment)
                count += 1
            self._by_requester.clear()
            self._by_destination.clear()
            self._by_edge.clear()
            self._by_family.clear()
            return count

    # ==================== Reads ====================

    def get(self, requester_id: str) -> Optional[Assignment]:
        return self._by_requester.get(requester_id)

    def require(self, requester_id: str) -> Assignment:
        assignment = self._by_requester.get(requester_id)
        if assignment is None:
            raise UnknownResource(f"No assignment for requester {requester_id}",
                                  details={'requester_id': requester_id})
        return assignment

    def active(self) -> List[Assignment]:
        with self._lock:
            return [a for a in self._by_requester.values() if a.status in ACTIVE_STATUSES]

    def _lookup(self, ids: Iterable[str]) -> List[Assignment]:
        return sorted((self._by_requester[r] for r in ids if r in self._by_requester),
                      key=lambda a: (a.request.arrival_time, a.request.sequence, a.requester_id))

    def by_destination(self, destination_id: str) -> List[Assignment]:
        with self._lock:
            return self._lookup(self._by_destination.get(destination_id, ()))

    def by_edge(self, edge_index: int) -> List[Assignment]:
        with self._lock:
            return self._lookup(self._by_edge.get(edge_index, ()))

    def by_family(self, family_id: str) -> List[Assignment]:
        with self._lock:
            return self._lookup(self._by_family.get(family_id, ()))

    def counts_by_destination(self) -> Dict[str, int]:
        """Active (non-rerouted) assignment count per destination."""
        with self._lock:
            counts: Dict[str, int] = {}
            for a in self._by_requester.values():
                if a.destination_id is None or a.status not in ACTIVE_STATUSES:
                    continue
                if a.status == AssignmentStatus.REROUTED:
                    continue
                counts[a.destination_id] = counts.get(a.destination_id, 0) + 1
            return counts

    def edge_loads(self) -> Dict[int, int]:
        with self._lock:
            return {e: len(ids) for e, ids in self._by_edge.items() if ids}

    @property
    def archived(self) -> List[Assignment]:
        return list(self._archived)

    def __len__(self) -> int:
        return len(self._by_requester)
