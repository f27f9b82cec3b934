"""
Result types and epoch accounting shared by the assignment solver.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import threading

from ..errors import EngineError
from ..models.assignment import Assignment


@dataclass
class AssignmentFailure:
    """A unit that could not be placed anywhere (all members fail together)."""
    requester_ids: List[str]
    error: EngineError

    def to_dict(self) -> Dict[str, Any]:
        return {'requester_ids': list(self.requester_ids), **self.error.to_dict()}


@dataclass
class SolverMetrics:
    """Performance figures for one solver batch."""
    execution_time_seconds: float = 0.0
    units_processed: int = 0
    assignments: int = 0
    degraded: int = 0
    failures: int = 0
    zones: int = 1
    deadline_hit: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'execution_time_seconds': self.execution_time_seconds,
            'units_processed': self.units_processed,
            'assignments': self.assignments,
            'degraded': self.degraded,
            'failures': self.failures,
            'zones': self.zones,
            'deadline_hit': self.deadline_hit,
        }


@dataclass
class AssignmentBatchResult:
    """Everything one solver epoch produced."""
    epoch: int
    assignments: List[Assignment] = field(default_factory=list)
    failures: List[AssignmentFailure] = field(default_factory=list)
    # Requester ids per processed tier, in processing order
    sub_batches: List[List[str]] = field(default_factory=list)
    # Units that hit the deadline and should be solved again in the background
    rerun_requester_ids: List[str] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    metrics: SolverMetrics = field(default_factory=SolverMetrics)

    @property
    def processed_order(self) -> List[str]:
        return [a.requester_id for a in self.assignments]

    def get(self, requester_id: str) -> Optional[Assignment]:
        for assignment in self.assignments:
            if assignment.requester_id == requester_id:
                return assignment
        return None

    def destination_counts(self) -> Dict[str, int]:
        """Number of assignments per destination."""
        counts: Dict[str, int] = {}
        for assignment in self.assignments:
            if assignment.destination_id is None:
                continue
            counts[assignment.destination_id] = counts.get(assignment.destination_id, 0) + 1
        return counts

    @property
    def degraded(self) -> List[Assignment]:
        return [a for a in self.assignments if a.degraded]

    @property
    def failed_requester_ids(self) -> List[str]:
        return [rid for failure in self.failures for rid in failure.requester_ids]


class EpochLedger:
    """
    Global assignment counts used by the load-imbalance term.

    Zone workers read a copy at the start of an epoch and only merge their
    deltas back when the epoch ends.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._epoch = 0
        self._counts: Dict[str, int] = {}

    @property
    def epoch(self) -> int:
        return self._epoch

    def begin_epoch(self) -> Tuple[int, Dict[str, int]]:
        """Open a new epoch and return (epoch, counts at its start)."""
        with self._lock:
            self._epoch += 1
            return self._epoch, dict(self._counts)

    def commit(self, deltas: Dict[str, int]) -> None:
        """Merge zone-local deltas at an epoch boundary."""
        with self._lock:
            for destination_id, delta in deltas.items():
                self._counts[destination_id] = max(0, self._counts.get(destination_id, 0) + delta)

    def sync(self, counts: Dict[str, int]) -> None:
        """Replace the counts with the authoritative assignment totals."""
        with self._lock:
            self._counts = dict(counts)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)
