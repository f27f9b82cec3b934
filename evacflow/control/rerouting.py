"""
Rerouting controller.

One loop consumes tagged triggers (scheduled sweeps, congestion and capacity
breaches, manual closures, overload reruns), picks the affected subset of
assignments and re-solves only that subset. Triggers are version-stamped:
when a newer trigger for the same scope arrives while an older one is being
solved, the older result is discarded and its reservations are released.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
import threading
import time

from ..algorithms.solver import AssignmentSolver
from ..config import ReroutingConfig
from ..events import EventManager, EventPriority, EventType
from ..logging_utils import log_event, log_warning
from ..models.assignment import (
    Assignment, AssignmentStatus, AssignmentUpdate, REROUTABLE_STATUSES
)
from ..models.network import SpatialGraph
from ..models.node import DestinationStatus
from ..state.assignments import AssignmentStore
from ..state.capacity import CapacityRegistry
from ..state.congestion import CongestionEstimator
from .triggers import RerouteTrigger, TriggerKind


class ReroutingController:
    """
    Schedules partial re-solves when conditions change.

    Affected subset for a trigger:
    - active assignments whose path uses a breached or closed edge
    - every routable assignment of a closed destination
    - the overflow of an over-capacity destination (latest assignments first)
    - explicitly named requesters
    Family members are always re-solved together.

    Capacity breaches fire only on overflow (occupancy above capacity, e.g.
    after a head-count sync). Destinations at 100% or with an imminent fill
    time keep their current assignments and are kept out of new ones by the
    registry's soft exclusion, not by a trigger.
    """

    def __init__(self, graph: SpatialGraph, registry: CapacityRegistry,
                 estimator: CongestionEstimator, store: AssignmentStore,
                 solver: AssignmentSolver,
                 config: Optional[ReroutingConfig] = None,
                 events: Optional[EventManager] = None,
                 clock: Callable[[], float] = time.time):
        self.graph = graph
        self.registry = registry
        self.estimator = estimator
        self.store = store
        self.solver = solver
        self.config = config or ReroutingConfig()
        self.events = events
        self.clock = clock

        self._lock = threading.Lock()
        self._pending: Dict[Tuple, RerouteTrigger] = {}
        self._latest: Dict[Tuple, int] = {}
        self._last_scheduled: Optional[float] = None

        # Breaches already reported; re-armed once the condition clears
        self._alerted_edges: Set[int] = set()
        self._alerted_destinations: Set[str] = set()

    # ==================== Trigger queue ====================

    def submit(self, trigger: RerouteTrigger) -> None:
        """Queue a trigger; an older pending trigger for the same scope is dropped."""
        with self._lock:
            scope = trigger.scope
            self._latest[scope] = max(self._latest.get(scope, 0), trigger.version)
            existing = self._pending.get(scope)
            if existing is not None and existing.version > trigger.version:
                return
            self._pending[scope] = trigger

        log_event("reroute_trigger_submitted", kind=trigger.kind.value,
                  version=trigger.version, reason=trigger.reason)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_current(self, trigger: RerouteTrigger) -> bool:
        """True while no newer trigger for the same scope has been seen."""
        with self._lock:
            return self._latest.get(trigger.scope, trigger.version) <= trigger.version

    def process_pending(self) -> List[AssignmentUpdate]:
        """Run every queued trigger and return the resulting updates."""
        with self._lock:
            batch = sorted(self._pending.values(), key=lambda t: t.version)
            self._pending.clear()

        if not batch:
            return []
        if len(batch) == 1 or self.config.max_workers <= 1:
            updates = []
            for trigger in batch:
                updates.extend(self.run(trigger))
            return updates

        with ThreadPoolExecutor(max_workers=self.config.max_workers,
                                thread_name_prefix="reroute") as pool:
            results = list(pool.map(self.run, batch))
        return [update for chunk in results for update in chunk]

    def tick(self, now: Optional[float] = None) -> List[AssignmentUpdate]:
        """
        One pass of the controller loop: scheduled sweep when due, threshold
        scan, then every pending trigger.
        """
        now = self.clock() if now is None else now
        if self._last_scheduled is None:
            self._last_scheduled = now
        elif now - self._last_scheduled >= self.config.scheduled_interval_s:
            self._last_scheduled = now
            self.submit(RerouteTrigger.scheduled())

        self.registry.refresh(now)
        self.check_thresholds()
        return self.process_pending()

    # ==================== Threshold scan ====================

    def check_thresholds(self) -> List[RerouteTrigger]:
        """Submit triggers for newly congested edges and over-capacity destinations."""
        submitted = []

        congested = {e for e in self.estimator.congested_edges()
                     if not self.graph.get_edge(e).closed}
        fresh_edges = sorted(congested - self._alerted_edges)
        self._alerted_edges = congested
        loaded = [e for e in fresh_edges if self._routable(self.store.by_edge(e))]
        if loaded:
            trigger = RerouteTrigger.congestion(loaded)
            self.submit(trigger)
            submitted.append(trigger)

        breached = set()
        for destination_id in self.registry.destination_ids():
            state = self.registry.status(destination_id)
            if state.status != DestinationStatus.CLOSED and state.overflow > 0:
                breached.add(destination_id)
        fresh_destinations = sorted(breached - self._alerted_destinations)
        self._alerted_destinations = breached
        if fresh_destinations:
            trigger = RerouteTrigger.capacity(fresh_destinations)
            self.submit(trigger)
            submitted.append(trigger)

        return submitted

    # ==================== Affected subset ====================

    @staticmethod
    def _routable(assignments: Iterable[Assignment]) -> List[Assignment]:
        return [a for a in assignments if a.status in REROUTABLE_STATUSES]

    def _breached_edges(self, trigger: RerouteTrigger) -> Set[int]:
        if trigger.kind == TriggerKind.SCHEDULED:
            closed = {e.index for e in self.graph.get_edges() if e.closed}
            return closed | set(self.estimator.congested_edges())
        return set(trigger.edge_indices)

    def _breached_destinations(self, trigger: RerouteTrigger) -> Set[str]:
        if trigger.kind == TriggerKind.SCHEDULED:
            return {d for d in self.registry.destination_ids()
                    if self.registry.status(d).status == DestinationStatus.CLOSED or
                    self.registry.status(d).overflow > 0}
        return set(trigger.destination_ids)

    def _overflow(self, destination_id: str) -> List[Assignment]:
        """Latest non-arrived assignments covering the destination's overflow."""
        overflow = self.registry.status(destination_id).overflow
        if overflow <= 0:
            return []

        chosen: List[Assignment] = []
        seen: Set[str] = set()
        candidates = sorted(self._routable(self.store.by_destination(destination_id)),
                            key=lambda a: (a.assigned_at, a.request.arrival_time,
                                           a.request.sequence),
                            reverse=True)
        for assignment in candidates:
            if len(chosen) >= overflow:
                break
            if assignment.requester_id in seen:
                continue
            group = [assignment]
            if assignment.family_id is not None:
                group = self._routable(self.store.by_family(assignment.family_id))
            for member in group:
                seen.add(member.requester_id)
                chosen.append(member)
        return chosen

    def affected_assignments(self, trigger: RerouteTrigger) -> List[Assignment]:
        """Assignments a trigger re-solves, families expanded, in arrival order."""
        chosen: Dict[str, Assignment] = {}
        closed_destinations: Set[str] = set()

        for edge_index in sorted(self._breached_edges(trigger)):
            for assignment in self._routable(self.store.by_edge(edge_index)):
                chosen[assignment.requester_id] = assignment

        for destination_id in sorted(self._breached_destinations(trigger)):
            if destination_id not in self.registry:
                continue
            if self.registry.status(destination_id).status == DestinationStatus.CLOSED:
                closed_destinations.add(destination_id)
                group = self._routable(self.store.by_destination(destination_id))
            else:
                group = self._overflow(destination_id)
            for assignment in group:
                chosen[assignment.requester_id] = assignment

        for requester_id in sorted(trigger.requester_ids):
            assignment = self.store.get(requester_id)
            if assignment is not None and assignment.status in REROUTABLE_STATUSES:
                chosen[requester_id] = assignment

        # Keep families whole; a family with someone already arrived stays put
        # unless its destination closed
        result: Dict[str, Assignment] = {}
        for assignment in chosen.values():
            if assignment.family_id is None:
                result[assignment.requester_id] = assignment
                continue
            family = self.store.by_family(assignment.family_id)
            arrived = any(m.status == AssignmentStatus.ARRIVED for m in family)
            if arrived and assignment.destination_id not in closed_destinations:
                continue
            for member in self._routable(family):
                result[member.requester_id] = member

        return sorted(result.values(),
                      key=lambda a: (a.request.arrival_time, a.request.sequence, a.requester_id))

    # ==================== Re-solve ====================

    @staticmethod
    def _holdings(assignments: List[Assignment]) -> Tuple[Dict[str, int], list]:
        """Places per destination and (route, people) pairs held by assignments."""
        per_destination: Dict[str, int] = {}
        per_route: Dict[str, list] = {}
        for assignment in assignments:
            if assignment.destination_id is not None:
                per_destination[assignment.destination_id] = \
                    per_destination.get(assignment.destination_id, 0) + 1
            if assignment.path is not None and assignment.path.edge_indices:
                per_route.setdefault(assignment.path.id, [assignment.path, 0])[1] += 1
        return per_destination, list(per_route.values())

    def _release(self, assignments: List[Assignment]) -> None:
        """Give back places and edge load held by assignments about to be re-solved."""
        per_destination, per_route = self._holdings(assignments)
        for destination_id, count in sorted(per_destination.items()):
            self.registry.release(destination_id, count)
        for route, count in per_route:
            self.estimator.add_assignment_load(route.edge_indices, -count)

    def _reclaim(self, assignments: List[Assignment]) -> None:
        """Take back what _release gave up when a result is discarded."""
        per_destination, per_route = self._holdings(assignments)
        for destination_id, count in sorted(per_destination.items()):
            reserved = self.registry.reserve(destination_id, count)
            if reserved < count:
                log_warning("reclaim_short", destination_id=destination_id,
                            wanted=count, reserved=reserved)
        for route, count in per_route:
            self.estimator.add_assignment_load(route.edge_indices, count)

    def run(self, trigger: RerouteTrigger) -> List[AssignmentUpdate]:
        """
        Re-solve the subset a trigger affects.

        Returns:
            One update per requester whose assignment changed. Empty when the
            trigger was superseded.
        """
        with self._lock:
            scope = trigger.scope
            self._latest[scope] = max(self._latest.get(scope, 0), trigger.version)

        if not self.is_current(trigger):
            self._discarded(trigger, solved=False)
            return []

        avoid_edges = self._breached_edges(trigger) | set(trigger.avoid_edges)
        affected = self.affected_assignments(trigger)
        if not affected:
            return []

        requester_ids = [a.requester_id for a in affected]
        marked = self.store.mark_rerouted(requester_ids)
        self._release(marked)

        try:
            result = self.solver.assign([a.request for a in marked],
                                        avoid_edges=avoid_edges)
        except Exception:
            # The solver has already given back its own partial placements
            self._reclaim(marked)
            self.store.restore(requester_ids)
            log_warning("reroute_failed", kind=trigger.kind.value,
                        version=trigger.version, affected=len(marked))
            raise

        if not self.is_current(trigger):
            self.solver.rollback(result)
            self._reclaim(marked)
            self.store.restore(requester_ids)
            self._discarded(trigger, solved=True)
            return []

        updates = []
        for assignment in result.assignments:
            updates.append(self.store.apply_reroute(assignment, trigger.kind.value))
        for failure in result.failures:
            for requester_id in failure.requester_ids:
                current = self.store.require(requester_id)
                updates.append(self.store.apply_reroute(
                    self.solver.unplaced(current.request, result.epoch), trigger.kind.value))

        self.solver.ledger.sync(self.store.counts_by_destination())

        for update in updates:
            self._announce(update)
        if result.rerun_requester_ids:
            self.submit(RerouteTrigger.rerun(result.rerun_requester_ids))

        log_event("reroute_applied", kind=trigger.kind.value, version=trigger.version,
                  affected=len(marked), updates=len(updates),
                  destinations_changed=sum(1 for u in updates if u.destination_changed))
        return updates

    def _announce(self, update: AssignmentUpdate) -> None:
        if self.events:
            self.events.publish(
                EventType.ASSIGNMENT_UPDATED,
                EventPriority.HIGH if update.destination_changed else EventPriority.NORMAL,
                requester_id=update.requester_id,
                assignment_id=update.assignment_id,
                old_destination_id=update.old_destination_id,
                new_destination_id=update.new_destination_id,
                old_path_id=update.old_path_id,
                new_path_id=update.new_path_id,
                trigger=update.trigger,
                degraded=update.degraded,
            )

    def _discarded(self, trigger: RerouteTrigger, solved: bool) -> None:
        log_event("stale_result_discarded", kind=trigger.kind.value,
                  version=trigger.version, solved=solved)
        if self.events:
            self.events.publish(EventType.STALE_RESULT_DISCARDED, EventPriority.LOW,
                                kind=trigger.kind.value, version=trigger.version,
                                solved=solved)
