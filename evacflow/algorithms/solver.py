"""
Capacity-aware assignment solver.

Processes a batch of requests as one epoch:
1. Group requests into units (families are atomic) and order them by tier,
   then arrival, then submission order
2. Build candidates: open, non-excluded destinations in range that satisfy
   every hard constraint and can hold the whole unit
3. Rank candidates by a weighted sum of path distance, congestion exposure,
   load imbalance and accessibility penalty
4. Reserve capacity through the registry, trying candidates in score order
5. Fall back to a widened radius, then a degraded nearest fit; straight-line
   placeholders when the graph offers no path

Large batches are split into geographic zones solved concurrently; zone-local
load counts merge into the ledger only when the epoch ends.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from itertools import groupby
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional
import time
import uuid

from ..config import EngineConfig, ScoringWeights
from ..errors import (
    ConstraintUnsatisfiable, EngineError, GraphUnreachable, OverloadTimeout, StaleStateConflict
)
from ..events import EventManager, EventPriority, EventType
from ..logging_utils import log_event, log_warning
from ..models.assignment import Assignment, DegradedReason, RoutePath
from ..models.network import SpatialGraph
from ..models.node import Destination, haversine_distance
from ..models.pathfinding import PathConstraints, PathResult
from ..models.request import (
    AssignmentUnit, EvacuationRequest, PriorityTier, group_into_units
)
from ..state.capacity import CapacityRegistry, CapacitySnapshot
from ..state.congestion import CongestionEstimator, CongestionSnapshot
from .base import AssignmentBatchResult, AssignmentFailure, EpochLedger, SolverMetrics
from .scoring import rank_candidates
from .zones import ZonePartitioner


@dataclass(frozen=True)
class PriorityMarker:
    """A known vulnerable location; requesters inside it are served as vulnerable."""
    lat: float
    lon: float
    radius_km: float
    label: str = ""

    def covers(self, lat: float, lon: float) -> bool:
        return haversine_distance(self.lat, self.lon, lat, lon) <= self.radius_km


@dataclass
class _EpochContext:
    """Working state of one zone (or the whole batch) during an epoch."""
    epoch: int
    capacity: CapacitySnapshot
    congestion: CongestionSnapshot
    base_counts: Dict[str, int]
    avoid_edges: FrozenSet[int]
    deadline_at: Optional[float]
    pinned: Dict[str, str] = field(default_factory=dict)
    local_counts: Dict[str, int] = field(default_factory=dict)
    assignments: List[Assignment] = field(default_factory=list)
    failures: List[AssignmentFailure] = field(default_factory=list)
    reruns: List[str] = field(default_factory=list)
    warnings: List[dict] = field(default_factory=list)
    deadline_hit: bool = False
    units_processed: int = 0

    def counts(self) -> Dict[str, int]:
        merged = dict(self.base_counts)
        for destination_id, delta in self.local_counts.items():
            merged[destination_id] = merged.get(destination_id, 0) + delta
        return merged

    def fork(self) -> '_EpochContext':
        return _EpochContext(
            epoch=self.epoch, capacity=self.capacity, congestion=self.congestion,
            base_counts=self.base_counts, avoid_edges=self.avoid_edges,
            deadline_at=self.deadline_at, pinned=self.pinned,
        )


class AssignmentSolver:
    """
    Produces destination + path assignments for batches of requests.

    The solver never touches occupancy directly: every place is taken through
    CapacityRegistry.reserve and given back through release.
    """

    def __init__(self, graph: SpatialGraph, registry: CapacityRegistry,
                 estimator: CongestionEstimator,
                 ledger: Optional[EpochLedger] = None,
                 config: Optional[EngineConfig] = None,
                 events: Optional[EventManager] = None,
                 zones: Optional[ZonePartitioner] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            graph: Spatial graph with anchored destinations
            registry: Capacity registry (owner of occupancy)
            estimator: Congestion estimator (owner of congestion levels)
            ledger: Epoch ledger for load-balancing counts
            config: Engine configuration
            events: Event manager for degraded/warning notifications
            zones: Zone partitioner for parallel batches
            clock: Time source, injectable for tests
        """
        self.graph = graph
        self.registry = registry
        self.estimator = estimator
        self.ledger = ledger or EpochLedger()
        self.config = config or EngineConfig()
        self.events = events
        self.clock = clock
        self.zones = zones or ZonePartitioner(self.config.solver.zone_size_km)
        self._markers: List[PriorityMarker] = []

    @property
    def weights(self) -> ScoringWeights:
        return self.config.weights

    def set_weights(self, weights: ScoringWeights) -> None:
        self.config.weights = weights

    # ==================== Priority markers ====================

    def add_priority_marker(self, marker: PriorityMarker) -> None:
        self._markers.append(marker)

    def apply_priority_markers(self, requests: Iterable[EvacuationRequest]) -> List[EvacuationRequest]:
        """Raise standard requesters inside a vulnerable-location marker to VULNERABLE."""
        raised = []
        for request in requests:
            if (request.priority == PriorityTier.STANDARD and
                    any(m.covers(request.lat, request.lon) for m in self._markers)):
                request = request.with_priority(PriorityTier.VULNERABLE)
            raised.append(request)
        return raised

    # ==================== Batch entry point ====================

    def assign(self, requests: Iterable[EvacuationRequest],
               avoid_edges: Iterable[int] = (),
               deadline_s: Optional[float] = None,
               pinned: Optional[Dict[str, str]] = None) -> AssignmentBatchResult:
        """
        Assign a batch of requests as one epoch.

        Args:
            requests: Requests in arrival order
            avoid_edges: Edges to keep out of new paths unless nothing else reaches
            deadline_s: Latency limit in seconds; defaults to the configured deadline
            pinned: family_id -> destination already holding that family's
                other members; those families only get that destination

        Returns:
            Assignments (in processing order) and failures for units that no
            destination can hold.

        Raises:
            Anything the solve raises, after every reservation and edge load
            taken so far in this batch has been given back.
        """
        started = self.clock()
        deadline_s = self.config.solver.deadline_s if deadline_s is None else deadline_s

        epoch, base_counts = self.ledger.begin_epoch()
        self.graph.build_indexes()

        units = group_into_units(self.apply_priority_markers(requests))
        ctx = _EpochContext(
            epoch=epoch,
            capacity=self.registry.snapshot(),
            congestion=self.estimator.snapshot(),
            base_counts=base_counts,
            avoid_edges=frozenset(avoid_edges),
            deadline_at=started + deadline_s if deadline_s is not None else None,
            pinned=dict(pinned or {}),
        )

        result = AssignmentBatchResult(epoch=epoch)
        request_count = sum(u.size for u in units)
        parallel = (request_count >= self.config.solver.parallel_batch_threshold and
                    self.config.solver.max_workers > 1)

        zone_contexts: Dict[str, _EpochContext] = {}
        try:
            if parallel:
                contexts = self._solve_parallel(units, ctx, result, zone_contexts)
            else:
                contexts = [ctx]
                for _, tier_units in groupby(units, key=lambda u: u.priority):
                    a_mark, f_mark = len(ctx.assignments), len(ctx.failures)
                    for unit in tier_units:
                        self._solve_unit(unit, ctx)
                    result.sub_batches.append(self._tier_ids(ctx, a_mark, f_mark))
                result.assignments = ctx.assignments
        except Exception:
            self._abort(epoch, [ctx] + list(zone_contexts.values()))
            raise

        # Epoch boundary: merge zone-local load counts
        deltas: Dict[str, int] = {}
        for zone_ctx in contexts:
            for destination_id, delta in zone_ctx.local_counts.items():
                deltas[destination_id] = deltas.get(destination_id, 0) + delta
            result.failures.extend(zone_ctx.failures)
            result.rerun_requester_ids.extend(zone_ctx.reruns)
            result.warnings.extend(zone_ctx.warnings)
        self.ledger.commit(deltas)

        metrics = SolverMetrics(
            execution_time_seconds=self.clock() - started,
            units_processed=sum(c.units_processed for c in contexts),
            assignments=len(result.assignments),
            degraded=len(result.degraded),
            failures=len(result.failures),
            zones=len(contexts),
            deadline_hit=any(c.deadline_hit for c in contexts),
        )
        result.metrics = metrics

        log_event("batch_assigned", epoch=epoch, requests=request_count,
                  **{k: v for k, v in metrics.to_dict().items() if k != 'assignments'},
                  assigned=metrics.assignments)
        return result

    @staticmethod
    def _tier_ids(ctx: _EpochContext, a_mark: int, f_mark: int) -> List[str]:
        """Requester ids placed or failed since the given marks."""
        ids = [a.requester_id for a in ctx.assignments[a_mark:]]
        ids.extend(rid for f in ctx.failures[f_mark:] for rid in f.requester_ids)
        return ids

    def _solve_parallel(self, units: List[AssignmentUnit], ctx: _EpochContext,
                        result: AssignmentBatchResult,
                        zone_contexts: Dict[str, _EpochContext]) -> List[_EpochContext]:
        """Solve tier by tier, with zones of each tier running concurrently."""
        with ThreadPoolExecutor(max_workers=self.config.solver.max_workers,
                                thread_name_prefix="zone-solver") as pool:
            for _, tier_units in groupby(units, key=lambda u: u.priority):
                zones = self.zones.partition(tier_units)
                marks = {}
                for zone_id in zones:
                    zone_ctx = zone_contexts.setdefault(zone_id, ctx.fork())
                    marks[zone_id] = (len(zone_ctx.assignments), len(zone_ctx.failures))

                futures = {
                    zone_id: pool.submit(self._solve_units, zone_units, zone_contexts[zone_id])
                    for zone_id, zone_units in zones.items()
                }
                tier_ids = []
                for zone_id in sorted(futures):
                    futures[zone_id].result()
                    zone_ctx = zone_contexts[zone_id]
                    a_mark, f_mark = marks[zone_id]
                    result.assignments.extend(zone_ctx.assignments[a_mark:])
                    tier_ids.extend(self._tier_ids(zone_ctx, a_mark, f_mark))
                result.sub_batches.append(tier_ids)

        return [zone_contexts[z] for z in sorted(zone_contexts)]

    def _solve_units(self, units: List[AssignmentUnit], ctx: _EpochContext) -> None:
        for unit in units:
            self._solve_unit(unit, ctx)

    # ==================== Per-unit ladder ====================

    def _solve_unit(self, unit: AssignmentUnit, ctx: _EpochContext) -> None:
        ctx.units_processed += 1
        try:
            self._run_ladder(unit, ctx)
        except (ConstraintUnsatisfiable, StaleStateConflict) as exc:
            self._fail(unit, ctx, exc)

    def _run_ladder(self, unit: AssignmentUnit, ctx: _EpochContext) -> None:
        if ctx.deadline_at is not None and self.clock() >= ctx.deadline_at:
            if not ctx.deadline_hit:
                ctx.deadline_hit = True
                self._warn(ctx, OverloadTimeout(
                    "Solver deadline reached; remaining units get quick placements",
                    details={'epoch': ctx.epoch},
                ))
            self._quick_fit(unit, ctx)
            return

        solver_cfg = self.config.solver
        try:
            self._place(unit, ctx, solver_cfg.search_radius_km, [])
            return
        except ConstraintUnsatisfiable:
            pass

        try:
            self._place(unit, ctx, solver_cfg.widened_radius_km, [DegradedReason.WIDENED_RADIUS])
            return
        except ConstraintUnsatisfiable:
            pass

        self._nearest_fit(unit, ctx)

    def _place(self, unit: AssignmentUnit, ctx: _EpochContext, radius_km: float,
               reasons: List[DegradedReason]) -> None:
        candidates = self._candidates(unit, ctx, radius_km)
        try:
            paths = self._paths_to(unit, candidates, ctx)
        except GraphUnreachable as exc:
            self._warn(ctx, exc)
            self._straight_line_fit(unit, ctx, candidates, reasons)
            return

        ranked = rank_candidates(
            paths, ctx.counts(), ctx.capacity.active_ids, self.weights,
            requires_accessibility=unit.requires_accessibility,
        )
        for candidate in ranked:
            if self._reserve(candidate.destination_id, unit.size):
                self._emit(unit, candidate.destination_id, self._route_path(candidate.path),
                           ctx, reasons, candidate.score)
                return

        raise ConstraintUnsatisfiable(
            "No reachable candidate has room for the whole unit",
            details={'unit': unit.key, 'size': unit.size, 'radius_km': radius_km},
        )

    def _candidates(self, unit: AssignmentUnit, ctx: _EpochContext, radius_km: float) -> List[str]:
        """Destinations within range satisfying every hard constraint, nearest first."""
        anchor = unit.anchor
        required = unit.hard_features
        nearby = self.graph.k_nearest_destinations(
            anchor.lat, anchor.lon, k=len(ctx.capacity.states) or 1, within_km=radius_km)

        candidates = []
        for destination_id, _ in nearby:
            if not self._eligible(destination_id, unit, ctx, required):
                continue
            candidates.append(destination_id)
            if len(candidates) >= self.config.solver.max_candidates:
                break

        if not candidates:
            raise ConstraintUnsatisfiable(
                "No destination within range satisfies the unit's hard constraints",
                details={'unit': unit.key, 'radius_km': radius_km,
                         'features': sorted(required), 'size': unit.size},
            )
        return candidates

    def _eligible(self, destination_id: str, unit: AssignmentUnit,
                  ctx: _EpochContext, required: FrozenSet[str]) -> bool:
        if not ctx.capacity.is_candidate(destination_id):
            return False
        pinned = ctx.pinned.get(unit.family_id) if unit.family_id is not None else None
        if pinned is not None and destination_id != pinned:
            return False
        if not self.graph.get_destination(destination_id).has_features(required):
            return False
        return self.registry.status(destination_id).remaining >= unit.size

    def _constraints(self, unit: AssignmentUnit, ctx: _EpochContext) -> PathConstraints:
        cfg = self.config.solver
        return PathConstraints(
            requires_accessibility=unit.requires_accessibility,
            avoid_edges=ctx.avoid_edges,
            avoid_congested=True,
            congestion_threshold=cfg.congestion_threshold,
            min_accessible_rating=cfg.min_accessible_rating,
            congestion_penalty_factor=cfg.congestion_penalty_factor,
            inaccessibility_penalty_factor=cfg.inaccessibility_penalty_factor,
        )

    def _paths_to(self, unit: AssignmentUnit, candidates: List[str],
                  ctx: _EpochContext) -> Dict[str, PathResult]:
        """
        Paths to every reachable candidate. Congested and avoided edges are
        only used when no candidate can be reached without them.

        Raises:
            GraphUnreachable: when no candidate is reachable at all.
        """
        anchor = unit.anchor
        origin = self.graph.nearest_node(anchor.lat, anchor.lon)
        node_map: Dict[int, List[str]] = {}
        for destination_id in candidates:
            node_map.setdefault(self.graph.destination_node(destination_id), []).append(destination_id)

        constraints = self._constraints(unit, ctx)
        levels = ctx.congestion.levels
        found = {}
        for stage in (constraints, constraints.relaxed(), constraints.relaxed(drop_avoided=True)):
            found = self.graph.shortest_paths(origin, node_map.keys(), stage, levels)
            if found:
                break

        if not found:
            raise GraphUnreachable(
                f"No open path from node {origin} to any candidate",
                details={'unit': unit.key, 'origin': origin, 'candidates': candidates},
            )
        return {d: found[node] for node, ids in node_map.items() if node in found for d in ids}

    # ==================== Fallbacks ====================

    def _fallback_options(self, unit: AssignmentUnit, ctx: _EpochContext) -> List[Destination]:
        """Every eligible destination regardless of range, nearest first."""
        anchor = unit.anchor
        required = unit.hard_features
        options = [
            (haversine_distance(anchor.lat, anchor.lon, d.lat, d.lon), d.id, d)
            for d in self.graph.get_destinations()
            if d.id in ctx.capacity.states and self._eligible(d.id, unit, ctx, required)
        ]
        options.sort(key=lambda item: (item[0], item[1]))
        if not options:
            raise ConstraintUnsatisfiable(
                "No destination anywhere satisfies the unit's hard constraints",
                details={'unit': unit.key, 'features': sorted(required), 'size': unit.size},
            )
        return [d for _, _, d in options]

    def _nearest_fit(self, unit: AssignmentUnit, ctx: _EpochContext) -> None:
        """Nearest eligible destination, ignoring load balancing."""
        anchor = unit.anchor
        origin = self.graph.nearest_node(anchor.lat, anchor.lon)
        constraints = self._constraints(unit, ctx).relaxed(drop_avoided=True)

        for destination in self._fallback_options(unit, ctx):
            if not self._reserve(destination.id, unit.size):
                continue
            reasons = [DegradedReason.NEAREST_FIT]
            try:
                path = self.graph.find_path(origin, [destination.node], constraints,
                                            ctx.congestion.levels)
                route = self._route_path(path)
            except GraphUnreachable:
                route = self._straight_route(origin, anchor, destination)
                reasons.append(DegradedReason.STRAIGHT_LINE)
            self._emit(unit, destination.id, route, ctx, reasons, None)
            return

        raise ConstraintUnsatisfiable(
            "Every eligible destination filled before the unit could be placed",
            details={'unit': unit.key, 'size': unit.size},
        )

    def _straight_line_fit(self, unit: AssignmentUnit, ctx: _EpochContext,
                           candidates: List[str], reasons: List[DegradedReason]) -> None:
        """Candidates exist but the graph reaches none: nearest by straight line."""
        anchor = unit.anchor
        origin = self.graph.nearest_node(anchor.lat, anchor.lon)
        for destination_id in candidates:
            destination = self.graph.get_destination(destination_id)
            if self._reserve(destination_id, unit.size):
                self._emit(unit, destination_id, self._straight_route(origin, anchor, destination),
                           ctx, reasons + [DegradedReason.STRAIGHT_LINE], None)
                return
        raise ConstraintUnsatisfiable(
            "No unreachable candidate had room for the unit",
            details={'unit': unit.key, 'size': unit.size},
        )

    def _quick_fit(self, unit: AssignmentUnit, ctx: _EpochContext) -> None:
        """Deadline fallback: nearest eligible destination without path search."""
        anchor = unit.anchor
        origin = self.graph.nearest_node(anchor.lat, anchor.lon)
        for destination in self._fallback_options(unit, ctx):
            if self._reserve(destination.id, unit.size):
                self._emit(unit, destination.id, self._straight_route(origin, anchor, destination),
                           ctx, [DegradedReason.OVERLOAD_TIMEOUT], None)
                ctx.reruns.extend(unit.requester_ids)
                return
        raise ConstraintUnsatisfiable(
            "No destination could take the unit before the deadline",
            details={'unit': unit.key, 'size': unit.size},
        )

    # ==================== Reservations and output ====================

    def _reserve(self, destination_id: str, size: int) -> bool:
        """All-or-nothing reservation for a unit; partial grabs are released."""
        for _ in range(self.config.solver.max_reserve_retries):
            try:
                reserved = self.registry.reserve(destination_id, size)
            except StaleStateConflict:
                continue
            if reserved == size:
                return True
            if reserved:
                self.registry.release(destination_id, reserved)
            return False
        return False

    @staticmethod
    def _route_path(path: PathResult) -> RoutePath:
        return RoutePath(
            id=str(uuid.uuid4()),
            node_indices=tuple(path.node_indices),
            edge_indices=tuple(path.edge_indices),
            distance_km=path.distance_km,
            cost=path.cost,
        )

    @staticmethod
    def _straight_route(origin: int, anchor: EvacuationRequest, destination: Destination) -> RoutePath:
        return RoutePath(
            id=str(uuid.uuid4()),
            node_indices=(origin, destination.node),
            edge_indices=(),
            distance_km=haversine_distance(anchor.lat, anchor.lon, destination.lat, destination.lon),
            straight_line=True,
        )

    def _emit(self, unit: AssignmentUnit, destination_id: str, route: RoutePath,
              ctx: _EpochContext, reasons: List[DegradedReason], score: Optional[float]) -> None:
        """Record a reserved placement; the reservation is released if the load write fails."""
        if route.edge_indices:
            try:
                self._add_route_load(route.edge_indices, unit.size)
            except StaleStateConflict:
                self.registry.release(destination_id, unit.size)
                raise

        now = self.clock()
        created = []
        for member in unit.members:
            assignment = Assignment(
                id=str(uuid.uuid4()),
                requester_id=member.requester_id,
                destination_id=destination_id,
                path=route,
                assigned_epoch=ctx.epoch,
                request=member,
                score=score,
                assigned_at=now,
            )
            for reason in reasons:
                assignment.flag_degraded(reason)
            created.append(assignment)

        ctx.assignments.extend(created)
        ctx.local_counts[destination_id] = ctx.local_counts.get(destination_id, 0) + unit.size

        if reasons:
            self._report_degraded(created, reasons)

    def _add_route_load(self, edge_indices, people: int) -> None:
        """
        Add routed load edge by edge. A lost race on one edge is retried;
        when it keeps losing, the edges already written are taken back.
        """
        retries = max(1, self.config.solver.max_reserve_retries)
        applied = []
        try:
            for edge_index in edge_indices:
                for attempt in range(retries):
                    try:
                        self.estimator.add_assignment_load([edge_index], people)
                        break
                    except StaleStateConflict:
                        if attempt == retries - 1:
                            raise
                applied.append(edge_index)
        except StaleStateConflict:
            if applied:
                self.estimator.add_assignment_load(applied, -people)
            raise

    def report_degraded(self, assignment: Assignment) -> None:
        """Tell the coordination layer about a degraded assignment."""
        self._report_degraded([assignment], list(assignment.degraded_reasons))

    def _report_degraded(self, created: List[Assignment], reasons: List[DegradedReason]) -> None:
        first = created[0]
        payload = {
            'requester_ids': [a.requester_id for a in created],
            'destination_id': first.destination_id,
            'reasons': [r.value for r in reasons],
            'needs_manual_intervention': first.needs_manual_intervention,
        }
        log_warning("degraded_assignment", **payload)
        if self.events:
            self.events.publish(EventType.DEGRADED_ASSIGNMENT, EventPriority.HIGH, **payload)

    def _fail(self, unit: AssignmentUnit, ctx: _EpochContext, error: EngineError) -> None:
        ctx.failures.append(AssignmentFailure(requester_ids=unit.requester_ids, error=error))
        self._warn(ctx, error, requester_ids=unit.requester_ids)

    def _warn(self, ctx: _EpochContext, error, **extra) -> None:
        record = {**error.to_dict(), **extra}
        ctx.warnings.append(record)
        log_warning("solver_warning", **record)
        if self.events:
            self.events.publish(EventType.SOLVER_WARNING, EventPriority.HIGH, **record)

    def unplaced(self, request: EvacuationRequest, epoch: Optional[int] = None,
                 report: bool = True) -> Assignment:
        """
        Degraded record for a requester no destination can hold.

        Args:
            request: The requester's request
            epoch: Epoch to stamp; defaults to the ledger's current epoch
            report: Publish DEGRADED_ASSIGNMENT for it right away
        """
        assignment = Assignment(
            id=str(uuid.uuid4()),
            requester_id=request.requester_id,
            destination_id=None,
            path=None,
            assigned_epoch=self.ledger.epoch if epoch is None else epoch,
            request=request,
            assigned_at=self.clock(),
        )
        assignment.flag_degraded(DegradedReason.UNPLACED)
        if report:
            self.report_degraded(assignment)
        return assignment

    # ==================== Undo ====================

    def _give_back(self, assignments: List[Assignment]) -> Dict[str, int]:
        """Release the places and edge load held by assignments; returns places per destination."""
        per_destination: Dict[str, int] = {}
        per_route: Dict[str, List] = {}
        for assignment in assignments:
            if assignment.destination_id is not None:
                per_destination[assignment.destination_id] = \
                    per_destination.get(assignment.destination_id, 0) + 1
            if assignment.path is not None and assignment.path.edge_indices:
                entry = per_route.setdefault(assignment.path.id, [assignment.path, 0])
                entry[1] += 1

        for destination_id, count in sorted(per_destination.items()):
            self.registry.release(destination_id, count)
        for route, count in per_route.values():
            self.estimator.add_assignment_load(route.edge_indices, -count)
        return per_destination

    def rollback(self, result: AssignmentBatchResult) -> None:
        """Give back every reservation and edge load a discarded result holds."""
        per_destination = self._give_back(result.assignments)
        self.ledger.commit({d: -c for d, c in per_destination.items()})

    def _abort(self, epoch: int, contexts: List[_EpochContext]) -> None:
        """Undo a batch that raised before its epoch was committed."""
        placed = [a for c in contexts for a in c.assignments]
        self._give_back(placed)
        log_warning("batch_aborted", epoch=epoch, released=len(placed))
