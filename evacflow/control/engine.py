"""
Engine facade.

Wires the spatial graph, capacity registry, congestion estimator, assignment
solver, rerouting controller and predictor together and exposes the
operations the delivery, coordination and analytics layers call.
"""

from dataclasses import replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union
import itertools
import threading
import time

import numpy as np

from ..algorithms.base import AssignmentBatchResult, EpochLedger
from ..algorithms.solver import AssignmentSolver, PriorityMarker
from ..algorithms.zones import ZonePartitioner
from ..config import EngineConfig, ScoringWeights
from ..errors import EngineStateError
from ..events import EventHandler, EventManager, EventPriority, EventType
from ..logging_utils import get_logger, log_event, log_warning
from ..models.assignment import Assignment, AssignmentStatus, AssignmentUpdate, REROUTABLE_STATUSES
from ..models.edge import EdgeStatus
from ..models.network import SpatialGraph
from ..models.node import Destination
from ..models.request import EvacuationRequest
from ..state.assignments import AssignmentStore
from ..state.capacity import CapacityRegistry, DestinationState
from ..state.congestion import CongestionEstimator
from .predictor import BottleneckRisk, FillPrediction, Predictor, ZoneCompletion
from .rerouting import ReroutingController
from .triggers import RerouteTrigger, ResourceClosure, ResourceType


class EngineState(Enum):
    """Whether an evacuation event is running."""
    IDLE = "idle"
    ACTIVE = "active"


class EvacuationEngine:
    """
    Capacity-aware evacuation flow-assignment engine.

    Usage:
        engine = EvacuationEngine(graph)
        engine.start_event("typhoon")
        assignment = engine.assign_route(request)
        engine.record_edge_flow(edge_index, people_per_hour)
        updates = engine.tick()
        engine.end_event()
    """

    def __init__(self, graph: SpatialGraph, config: Optional[EngineConfig] = None,
                 clock=time.time):
        """
        Args:
            graph: Spatial graph with destinations already added
            config: Engine configuration
            clock: Time source shared by every component
        """
        self.config = config or EngineConfig()
        self.clock = clock
        self.logger = get_logger(self.config.log_level)

        self.graph = graph
        self.events = EventManager()
        self.registry = CapacityRegistry(self.config.capacity, self.events, clock)
        self.estimator = CongestionEstimator(self.config.congestion, self.events, clock)
        self.estimator.register_graph(graph)
        for destination in graph.get_destinations():
            self.registry.add_destination(destination)

        self.store = AssignmentStore()
        self.ledger = EpochLedger()
        ref_lat = float(np.mean([n.lat for n in graph.get_nodes()])) if graph.node_count else 0.0
        self.zones = ZonePartitioner(self.config.solver.zone_size_km, ref_lat)

        self.solver = AssignmentSolver(
            graph, self.registry, self.estimator, self.ledger,
            config=self.config, events=self.events, zones=self.zones, clock=clock,
        )
        self.controller = ReroutingController(
            graph, self.registry, self.estimator, self.store, self.solver,
            config=self.config.rerouting, events=self.events, clock=clock,
        )
        self.predictor = Predictor(
            graph, self.registry, self.estimator, self.store, self.zones,
            config=self.config.predictor, events=self.events, clock=clock,
        )

        self._state = EngineState.IDLE
        self._event_name: Optional[str] = None
        self._sequence = itertools.count()
        self._commit_lock = threading.Lock()

    # ==================== Lifecycle ====================

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == EngineState.ACTIVE

    def start_event(self, name: str = "evacuation") -> None:
        """Begin an evacuation event; weights are frozen until it ends."""
        if self.is_active:
            raise EngineStateError(f"Event '{self._event_name}' is already running",
                                   details={'event': self._event_name})
        self._state = EngineState.ACTIVE
        self._event_name = name
        self.predictor.started_at = self.clock()
        log_event("event_started", name=name)
        self.events.publish(EventType.EVENT_STARTED, EventPriority.HIGH, name=name)

    def end_event(self) -> int:
        """
        End the running event and archive its assignments.

        Returns:
            Number of archived assignments.
        """
        if not self.is_active:
            raise EngineStateError("No event is running")
        archived = self.store.archive_all()
        self.ledger.sync({})
        name = self._event_name
        self._state = EngineState.IDLE
        self._event_name = None
        log_event("event_ended", name=name, archived=archived)
        self.events.publish(EventType.EVENT_ENDED, EventPriority.HIGH,
                            name=name, archived=archived)
        return archived

    def add_destination(self, destination: Destination, occupancy: int = 0) -> DestinationState:
        """Add a shelter while the engine is running."""
        self.graph.add_destination(destination)
        return self.registry.add_destination(destination, occupancy)

    # ==================== Assignment ====================

    def _stamp(self, request: EvacuationRequest) -> EvacuationRequest:
        """Fill in arrival time and submission order when the caller left them unset."""
        if request.arrival_time and request.sequence:
            return request
        return replace(
            request,
            arrival_time=request.arrival_time or self.clock(),
            sequence=request.sequence or next(self._sequence) + 1,
        )

    def _commit(self, assignment: Assignment) -> None:
        previous = self.store.put(assignment)
        if previous is None or previous.status not in REROUTABLE_STATUSES:
            return
        # A resubmitted requester gives back what the old assignment held
        if previous.destination_id is not None:
            self.registry.release(previous.destination_id, 1)
        if previous.path is not None and previous.path.edge_indices:
            self.estimator.add_assignment_load(previous.path.edge_indices, -1)

    def assign_batch(self, requests: Iterable[EvacuationRequest]) -> AssignmentBatchResult:
        """
        Assign a batch of requests as one epoch.

        Every requester in the batch ends up with an assignment; those no
        destination can hold get an unplaced record flagged for manual
        intervention.
        """
        requests = [self._stamp(r) for r in requests]
        by_id = {r.requester_id: r for r in requests}
        pinned = self._family_destinations(requests)
        result = self.solver.assign(requests, pinned=pinned)

        regroup_ids = []
        with self._commit_lock:
            for assignment in result.assignments:
                self._commit(assignment)
            for failure in result.failures:
                for requester_id in failure.requester_ids:
                    request = by_id[requester_id]
                    regroup = request.family_id in pinned and self._can_regroup(request.family_id)
                    unplaced = self.solver.unplaced(request, result.epoch, report=not regroup)
                    result.assignments.append(unplaced)
                    self._commit(unplaced)
                    if regroup:
                        regroup_ids.append(requester_id)
                    else:
                        log_warning("requester_unplaced", requester_id=requester_id,
                                    reason_code=failure.error.reason_code)
            self.ledger.sync(self.store.counts_by_destination())

        if regroup_ids:
            self._regroup(regroup_ids)
        if result.rerun_requester_ids:
            self.controller.submit(RerouteTrigger.rerun(result.rerun_requester_ids))
        return result

    def _family_destinations(self, requests: List[EvacuationRequest]) -> Dict[str, str]:
        """Destination already holding each submitted family's other members."""
        submitted = {r.requester_id for r in requests}
        pinned = {}
        for family_id in sorted({r.family_id for r in requests if r.family_id is not None}):
            for member in self.store.by_family(family_id):
                if (member.requester_id not in submitted and member.destination_id is not None
                        and member.status != AssignmentStatus.REROUTED):
                    pinned[family_id] = member.destination_id
                    break
        return pinned

    def _can_regroup(self, family_id: str) -> bool:
        """A family can move as a whole while none of its members has arrived."""
        return all(m.status != AssignmentStatus.ARRIVED for m in self.store.by_family(family_id))

    def _regroup(self, requester_ids: List[str]) -> None:
        """
        Re-solve whole families whose new members did not fit their relatives'
        destination. Members the re-solve could not place are reported as
        degraded.
        """
        self.controller.run(RerouteTrigger.regroup(requester_ids))
        for requester_id in requester_ids:
            assignment = self.store.require(requester_id)
            if assignment.revision == 0:
                log_warning("requester_unplaced", requester_id=requester_id,
                            reason_code="constraint_unsatisfiable")
                self.solver.report_degraded(assignment)

    def assign_route(self, request: EvacuationRequest) -> Assignment:
        """Assign one requester; never returns None (degraded when needed)."""
        result = self.assign_batch([request])
        return result.get(request.requester_id)

    def get_assignment(self, requester_id: str) -> Assignment:
        return self.store.require(requester_id)

    # ==================== Rerouting ====================

    def recalculate_routes(self, trigger: Optional[RerouteTrigger] = None) -> List[AssignmentUpdate]:
        """
        Re-solve what a trigger affects, plus anything the threshold scan finds.

        Returns:
            Updates the delivery layer must notify.
        """
        if trigger is not None:
            self.controller.submit(trigger)
        self.controller.check_thresholds()
        return self.controller.process_pending()

    def get_alternative_routes(self, requester_id: str, reason: str = "") -> Assignment:
        """Re-solve one requester (and family) avoiding the current path's edges."""
        current = self.store.require(requester_id)
        avoid = current.path.edge_indices if current.path is not None else ()
        self.recalculate_routes(RerouteTrigger.alternative([requester_id], avoid, reason))
        return self.store.require(requester_id)

    def tick(self, now: Optional[float] = None) -> List[AssignmentUpdate]:
        """One controller cycle (scheduled sweep, threshold scan, pending triggers)."""
        return self.controller.tick(now)

    # ==================== Operator input ====================

    def apply_closure(self, closure: ResourceClosure) -> List[AssignmentUpdate]:
        """Close or reopen an edge or destination and reroute whoever it affects."""
        if closure.resource_type == ResourceType.EDGE:
            edge_index = int(closure.resource_id)
            status = EdgeStatus.OPEN if closure.reopen else EdgeStatus.CLOSED
            changed = self.graph.set_edge_status(edge_index, status)
            if changed:
                self.events.publish(EventType.EDGE_STATUS_CHANGED, EventPriority.HIGH,
                                    edge_index=edge_index, status=status.value,
                                    level=self.estimator.level(edge_index))
        else:
            destination_id = str(closure.resource_id)
            if closure.reopen:
                changed = self.registry.reopen(destination_id)
            else:
                changed = self.registry.close(destination_id, closure.reason)

        event_type = EventType.RESOURCE_REOPENED if closure.reopen else EventType.RESOURCE_CLOSED
        log_event(event_type.value, resource_type=closure.resource_type.value,
                  resource_id=closure.resource_id, reason=closure.reason, changed=changed)
        self.events.publish(event_type, EventPriority.CRITICAL,
                            resource_type=closure.resource_type.value,
                            resource_id=closure.resource_id, reason=closure.reason)

        trigger = closure.to_trigger()
        if trigger is None or not changed:
            return []
        return self.recalculate_routes(trigger)

    def add_priority_marker(self, lat: float, lon: float, radius_km: float,
                            label: str = "") -> PriorityMarker:
        marker = PriorityMarker(lat=lat, lon=lon, radius_km=radius_km, label=label)
        self.solver.add_priority_marker(marker)
        return marker

    def retune_weights(self, weights: Union[ScoringWeights, Dict[str, float]]) -> ScoringWeights:
        """
        Replace the scoring weights. Only allowed between events.

        Raises:
            EngineStateError: while an event is running.
        """
        if self.is_active:
            raise EngineStateError("Scoring weights cannot change during an active event",
                                   details={'event': self._event_name})
        if not isinstance(weights, ScoringWeights):
            weights = ScoringWeights.from_dict(weights)
        self.solver.set_weights(weights)
        log_event("weights_retuned", **weights.to_dict())
        return weights

    # ==================== Telemetry ====================

    def record_location_ping(self, requester_id: str, lat: float, lon: float) -> Assignment:
        """Move a requester's known position; later re-solves start from it."""
        assignment = self.store.require(requester_id)
        assignment.request = assignment.request.with_location(lat, lon)
        return assignment

    def record_edge_flow(self, edge_index: int, people_per_hour: float) -> float:
        """Fold an observed flow into an edge's congestion level and return it."""
        return self.estimator.record_flow(edge_index, people_per_hour)

    def check_in(self, requester_id: str,
                 status: Union[AssignmentStatus, str] = AssignmentStatus.ARRIVED) -> Assignment:
        """Apply a departure or arrival signal."""
        if not isinstance(status, AssignmentStatus):
            status = AssignmentStatus(status)
        return self.store.transition(requester_id, status, timestamp=self.clock())

    def sync_occupancy(self, destination_id: str, observed: int) -> DestinationState:
        """Overwrite a destination's occupancy with a counted head total."""
        self.registry.sync_occupancy(destination_id, observed)
        return self.registry.status(destination_id)

    # ==================== Prediction ====================

    def predict_bottlenecks(self, window_s: float = 900.0) -> List[BottleneckRisk]:
        return self.predictor.predict_bottlenecks(window_s)

    def predict_zone_completion(self, zone_id: str) -> ZoneCompletion:
        return self.predictor.predict_zone_completion(zone_id)

    def predict_destination_fill(self) -> List[FillPrediction]:
        return self.predictor.predict_destination_fill()

    def zone_of(self, lat: float, lon: float) -> str:
        return self.zones.zone_id(lat, lon)

    # ==================== Subscriptions ====================

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        self.events.subscribe(event_type, handler)

    def get_stats(self) -> Dict[str, Any]:
        """Summary for dashboards and the CLI."""
        counts = self.store.counts_by_destination()
        return {
            'event': self._event_name,
            'state': self._state.value,
            'epoch': self.ledger.epoch,
            'assignments': len(self.store),
            'degraded': sum(1 for a in self.store.active() if a.degraded),
            'destinations': {
                d: {
                    'assigned': counts.get(d, 0),
                    'occupancy': self.registry.status(d).occupancy,
                    'max_capacity': self.registry.status(d).max_capacity,
                    'status': self.registry.status(d).status.value,
                }
                for d in self.registry.destination_ids()
            },
            'congested_edges': self.estimator.congested_edges(),
        }
