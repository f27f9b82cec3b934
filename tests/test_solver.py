"""
Tests for the assignment solver and its scoring function.
"""

import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from evacflow.algorithms import (
    AssignmentSolver, CandidateTerms, PriorityMarker,
    load_imbalance, rank_candidates, score_candidate
)
from evacflow.config import EngineConfig, ScoringWeights
from evacflow.data import ShelterSpec, build_grid_city, generate_requests, grid_position
from evacflow.errors import FROZEN_REASON_CODES, StaleStateConflict
from evacflow.events import EventManager, EventType
from evacflow.models.assignment import DegradedReason
from evacflow.models.network import SpatialGraph
from evacflow.models.node import Destination, FEATURE_WHEELCHAIR
from evacflow.models.pathfinding import PathResult
from evacflow.models.request import EvacuationRequest, PriorityTier
from evacflow.state.capacity import CapacityRegistry
from evacflow.state.congestion import CongestionEstimator

ORIGIN = (10.70, 106.60)
WHEELCHAIR = frozenset({FEATURE_WHEELCHAIR})


def create_solver(graph: SpatialGraph, clock=None, events=None, **solver_options) -> AssignmentSolver:
    """Solver wired to a fresh registry and estimator for `graph`."""
    clock = clock or (lambda: 0.0)
    config = EngineConfig()
    for name, value in solver_options.items():
        setattr(config.solver, name, value)
    registry = CapacityRegistry(config.capacity, events, clock)
    for destination in graph.get_destinations():
        registry.add_destination(destination)
    estimator = CongestionEstimator(config.congestion, events, clock)
    estimator.register_graph(graph)
    return AssignmentSolver(graph, registry, estimator, config=config, events=events, clock=clock)


def request_at(requester_id: str, row: float, col: float, **kwargs) -> EvacuationRequest:
    lat, lon = grid_position(ORIGIN, 0.5, row, col)
    return EvacuationRequest(requester_id, lat, lon, **kwargs)


def create_line_graph(distance_km: float, connected: bool = True) -> SpatialGraph:
    """Two nodes `distance_km` apart (north-south) with a shelter on the far one."""
    graph = SpatialGraph()
    graph.add_node(10.70, 106.60)
    graph.add_node(10.70 + distance_km / 111.2, 106.60)
    if connected:
        graph.add_edge(0, 1)
    graph.add_destination(Destination("far", 10.70 + distance_km / 111.2, 106.60, 100))
    return graph


class TestOrdering:

    def test_medical_tier_processed_first(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 100),
                                                ShelterSpec("s2", 4, 4, 100)])
        solver = create_solver(graph)
        requests = [
            request_at("standard", 2, 2, arrival_time=0.0, sequence=1),
            request_at("medical", 2, 2, priority=PriorityTier.MEDICAL, arrival_time=5.0, sequence=2),
            request_at("vulnerable", 2, 2, priority=PriorityTier.VULNERABLE,
                       arrival_time=1.0, sequence=3),
        ]
        result = solver.assign(requests, deadline_s=60)

        assert result.sub_batches == [["medical"], ["vulnerable"], ["standard"]]
        assert result.processed_order == ["medical", "vulnerable", "standard"]

    def test_arrival_then_sequence_within_tier(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 100)])
        solver = create_solver(graph)
        requests = [
            request_at("late", 1, 1, arrival_time=2.0, sequence=1),
            request_at("early_b", 1, 1, arrival_time=1.0, sequence=3),
            request_at("early_a", 1, 1, arrival_time=1.0, sequence=2),
        ]
        result = solver.assign(requests, deadline_s=60)
        assert result.processed_order == ["early_a", "early_b", "late"]

    def test_priority_marker_raises_tier(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 100)])
        solver = create_solver(graph)
        marked = request_at("care_home", 4, 4, arrival_time=9.0, sequence=2)
        solver.add_priority_marker(PriorityMarker(marked.lat, marked.lon, 0.2, "care home"))

        result = solver.assign([request_at("first", 0, 1, arrival_time=0.0, sequence=1), marked],
                               deadline_s=60)
        assert result.sub_batches[0] == ["care_home"]
        assert result.get("care_home").request.priority == PriorityTier.VULNERABLE


class TestHardConstraints:

    def test_accessibility_requires_wheelchair_shelter(self):
        graph = build_grid_city(5, 5, shelters=[
            ShelterSpec("near_plain", 2, 3, 100),
            ShelterSpec("far_accessible", 4, 4, 100, features=WHEELCHAIR),
        ])
        solver = create_solver(graph)
        result = solver.assign([
            request_at("walker", 2, 2),
            request_at("wheelchair", 2, 2, requires_accessibility=True, sequence=1),
        ], deadline_s=60)

        assert result.get("walker").destination_id == "near_plain"
        assert result.get("wheelchair").destination_id == "far_accessible"

    def test_required_features_unsatisfiable(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 100)])
        events = EventManager()
        solver = create_solver(graph, events=events)
        result = solver.assign([request_at("icu", 1, 1, required_features={"icu"})],
                               deadline_s=60)

        assert result.assignments == []
        assert result.failed_requester_ids == ["icu"]
        assert result.failures[0].error.reason_code == "constraint_unsatisfiable"
        assert events.get_history(EventType.SOLVER_WARNING)

    def test_never_exceeds_capacity(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("small", 2, 2, 5)])
        solver = create_solver(graph)
        requests = [request_at(f"r{i}", 2, 2, sequence=i) for i in range(8)]
        result = solver.assign(requests, deadline_s=60)

        assert len(result.assignments) == 5
        assert len(result.failures) == 3
        assert solver.registry.status("small").occupancy == 5


class TestFamilies:

    def test_family_kept_together(self):
        graph = build_grid_city(5, 5, shelters=[
            ShelterSpec("tiny", 2, 2, 3),
            ShelterSpec("big", 4, 4, 50),
        ])
        solver = create_solver(graph)
        family = [request_at(f"m{i}", 2, 2, family_id="fam", sequence=i) for i in range(4)]
        result = solver.assign(family, deadline_s=60)

        destinations = {a.destination_id for a in result.assignments}
        paths = {a.path_id for a in result.assignments}
        assert destinations == {"big"}
        assert len(paths) == 1
        assert len(result.assignments) == 4
        assert solver.registry.status("tiny").occupancy == 0

    def test_family_fails_together_without_leaking(self):
        graph = build_grid_city(5, 5, shelters=[
            ShelterSpec("a", 0, 0, 3),
            ShelterSpec("b", 4, 4, 3),
        ])
        solver = create_solver(graph)
        family = [request_at(f"m{i}", 2, 2, family_id="fam", sequence=i) for i in range(4)]
        result = solver.assign(family, deadline_s=60)

        assert result.assignments == []
        assert sorted(result.failed_requester_ids) == ["m0", "m1", "m2", "m3"]
        assert solver.registry.status("a").occupancy == 0
        assert solver.registry.status("b").occupancy == 0

    def test_family_takes_most_urgent_tier(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 100)])
        solver = create_solver(graph)
        result = solver.assign([
            request_at("single", 1, 1, priority=PriorityTier.VULNERABLE, sequence=1),
            request_at("parent", 3, 3, family_id="fam", sequence=2),
            request_at("child", 3, 3, family_id="fam", priority=PriorityTier.MEDICAL, sequence=3),
        ], deadline_s=60)
        assert result.sub_batches[0] == ["parent", "child"]

    def test_pinned_family_only_gets_its_destination(self):
        graph = build_grid_city(5, 5, shelters=[
            ShelterSpec("near", 2, 2, 50),
            ShelterSpec("home", 4, 4, 50),
        ])
        solver = create_solver(graph)
        result = solver.assign([request_at("late", 2, 2, family_id="fam", sequence=1),
                                request_at("solo", 2, 2, sequence=2)],
                               deadline_s=60, pinned={"fam": "home"})

        assert result.get("late").destination_id == "home"
        assert result.get("solo").destination_id == "near"

    def test_pinned_destination_without_room_fails(self):
        graph = build_grid_city(5, 5, shelters=[
            ShelterSpec("near", 2, 2, 50),
            ShelterSpec("home", 4, 4, 1),
        ])
        solver = create_solver(graph)
        solver.registry.reserve("home", 1)
        result = solver.assign([request_at("late", 2, 2, family_id="fam", sequence=1)],
                               deadline_s=60, pinned={"fam": "home"})

        assert result.assignments == []
        assert result.failed_requester_ids == ["late"]
        assert solver.registry.status("near").occupancy == 0


class TestLoadBalance:

    def test_three_small_shelters(self):
        shelters = [ShelterSpec("s_west", 5, 0, 100, features=WHEELCHAIR),
                    ShelterSpec("s_center", 5, 5, 100, features=WHEELCHAIR),
                    ShelterSpec("s_east", 5, 9, 100, features=WHEELCHAIR)]
        graph = build_grid_city(10, 10, shelters=shelters)
        solver = create_solver(graph)
        requests = generate_requests(250, graph, seed=3, family_share=0.0)
        result = solver.assign(requests, deadline_s=60)

        counts = result.destination_counts()
        assert sum(counts.values()) == 250
        for shelter in shelters:
            assert 25 <= counts.get(shelter.id, 0) <= 125

    def test_no_runaway_destination(self):
        shelters = [ShelterSpec("s_sw", 0, 0, 10000),
                    ShelterSpec("s_center", 4, 4, 10000),
                    ShelterSpec("s_ne", 9, 9, 10000)]
        graph = build_grid_city(10, 10, shelters=shelters)
        solver = create_solver(graph)
        requests = generate_requests(300, graph, seed=11, family_share=0.0,
                                     accessibility_share=0.0)
        result = solver.assign(requests, deadline_s=60)

        counts = [result.destination_counts().get(s.id, 0) for s in shelters]
        mean = sum(counts) / len(counts)
        assert sum(counts) == 300
        assert max(counts) <= 1.5 * mean
        assert not (max(counts) > 1.5 * mean and min(counts) < 0.5 * mean)

    def test_ledger_carries_counts_across_epochs(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 10000),
                                                ShelterSpec("s2", 4, 4, 10000)])
        solver = create_solver(graph)
        first = solver.assign([request_at(f"a{i}", 0, 1, sequence=i) for i in range(10)],
                              deadline_s=60)
        assert solver.ledger.counts() == first.destination_counts()

        second = solver.assign([request_at("b0", 0, 1)], deadline_s=60)
        assert second.epoch == first.epoch + 1
        assert sum(solver.ledger.counts().values()) == 11


class TestExclusion:

    def test_closed_destination_gets_nothing(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("closed", 2, 2, 100),
                                                ShelterSpec("open", 4, 4, 100)])
        solver = create_solver(graph)
        solver.registry.close("closed")
        result = solver.assign([request_at(f"r{i}", 2, 2, sequence=i) for i in range(5)],
                               deadline_s=60)
        assert result.destination_counts() == {"open": 5}

    def test_fill_imminent_destination_gets_nothing(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("filling", 2, 2, 1000),
                                                ShelterSpec("spare", 4, 4, 1000)])
        solver = create_solver(graph)
        # 300 arrivals in the window leave 700 places for 700 s
        solver.registry.reserve("filling", 300)
        result = solver.assign([request_at(f"r{i}", 2, 2, sequence=i) for i in range(5)],
                               deadline_s=60)
        assert result.destination_counts() == {"spare": 5}


class TestFallbacks:

    def test_widened_radius(self):
        graph = create_line_graph(15.0)
        solver = create_solver(graph)
        result = solver.assign([EvacuationRequest("r1", 10.70, 106.60)], deadline_s=60)
        assignment = result.get("r1")
        assert assignment.destination_id == "far"
        assert assignment.degraded_reasons == [DegradedReason.WIDENED_RADIUS]
        assert not assignment.needs_manual_intervention

    def test_nearest_fit_beyond_widened_radius(self):
        events = EventManager()
        graph = create_line_graph(40.0)
        solver = create_solver(graph, events=events)
        result = solver.assign([EvacuationRequest("r1", 10.70, 106.60)], deadline_s=60)
        assignment = result.get("r1")
        assert assignment.destination_id == "far"
        assert assignment.degraded_reasons == [DegradedReason.NEAREST_FIT]
        assert assignment.path.edge_indices == (0,)
        assert events.get_history(EventType.DEGRADED_ASSIGNMENT)

    def test_straight_line_when_graph_disconnected(self):
        events = EventManager()
        graph = create_line_graph(2.0, connected=False)
        solver = create_solver(graph, events=events)
        result = solver.assign([EvacuationRequest("r1", 10.70, 106.60)], deadline_s=60)
        assignment = result.get("r1")
        assert assignment.destination_id == "far"
        assert DegradedReason.STRAIGHT_LINE in assignment.degraded_reasons
        assert assignment.path.straight_line
        assert assignment.needs_manual_intervention

        warnings = events.get_history(EventType.SOLVER_WARNING)
        assert warnings[0].data['reason_code'] == "graph_unreachable"
        assert warnings[0].data['reason_code'] in FROZEN_REASON_CODES

    def test_deadline_returns_quick_placements(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 100)])
        solver = create_solver(graph)
        requests = [request_at(f"r{i}", 2, 2, sequence=i) for i in range(3)]
        result = solver.assign(requests, deadline_s=0)

        assert result.metrics.deadline_hit
        assert len(result.assignments) == 3
        assert all(DegradedReason.OVERLOAD_TIMEOUT in a.degraded_reasons
                   for a in result.assignments)
        assert sorted(result.rerun_requester_ids) == ["r0", "r1", "r2"]
        assert any(w['reason_code'] == "overload_timeout" for w in result.warnings)


class TestParallelZones:

    def test_zones_solved_concurrently(self):
        shelters = [ShelterSpec("s_sw", 0, 0, 10000),
                    ShelterSpec("s_center", 5, 5, 10000),
                    ShelterSpec("s_ne", 9, 9, 10000)]
        graph = build_grid_city(10, 10, shelters=shelters)
        solver = create_solver(graph, parallel_batch_threshold=20, max_workers=4,
                               zone_size_km=1.0)
        requests = generate_requests(120, graph, seed=5, accessibility_share=0.0)
        result = solver.assign(requests, deadline_s=60)

        assert result.metrics.zones > 1
        assert len(result.assignments) == 120
        placed = sum(solver.registry.status(s.id).occupancy for s in shelters)
        assert placed == 120
        assert solver.ledger.counts() == result.destination_counts()

        medical = {r.requester_id for r in requests if r.priority == PriorityTier.MEDICAL}
        if medical:
            assert set(result.sub_batches[0]) >= medical


class TestRollback:

    def test_rollback_returns_everything(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 100)])
        solver = create_solver(graph)
        result = solver.assign([request_at(f"r{i}", 4, 4, sequence=i) for i in range(4)],
                               deadline_s=60)
        edges = result.assignments[0].path.edge_indices
        assert solver.estimator.state(edges[0]).assigned_load == 4

        solver.rollback(result)
        assert solver.registry.status("s1").occupancy == 0
        assert solver.estimator.state(edges[0]).assigned_load == 0
        assert solver.ledger.counts() == {"s1": 0}

    def test_lost_edge_race_is_retried(self, monkeypatch):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 100)])
        solver = create_solver(graph)
        original = solver.estimator.add_assignment_load
        writes = []

        def flaky_load(edge_indices, people, now=None):
            writes.append(people)
            if len(writes) == 2:
                raise StaleStateConflict("edge written concurrently")
            return original(edge_indices, people, now)

        monkeypatch.setattr(solver.estimator, "add_assignment_load", flaky_load)
        result = solver.assign([request_at("r0", 4, 4, sequence=1)], deadline_s=60)

        path = result.get("r0").path
        assert result.failures == []
        assert all(solver.estimator.state(e).assigned_load == 1 for e in path.edge_indices)

    def test_edge_conflict_that_persists_fails_the_unit(self, monkeypatch):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 100)])
        solver = create_solver(graph)
        original = solver.estimator.add_assignment_load
        writes = []

        def contended_load(edge_indices, people, now=None):
            if people > 0 and writes:
                raise StaleStateConflict("edge written concurrently")
            writes.append(people)
            return original(edge_indices, people, now)

        monkeypatch.setattr(solver.estimator, "add_assignment_load", contended_load)
        result = solver.assign([request_at("r0", 4, 4, sequence=1)], deadline_s=60)

        assert result.assignments == []
        assert result.failures[0].error.reason_code == "stale_state_conflict"
        assert solver.registry.status("s1").occupancy == 0
        assert all(solver.estimator.state(e.index).assigned_load == 0 for e in graph.get_edges())

    def test_failed_batch_gives_back_partial_work(self, monkeypatch):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 100)])
        solver = create_solver(graph)
        original = solver.registry.reserve
        calls = []

        def failing_reserve(destination_id, n, now=None):
            calls.append(destination_id)
            if len(calls) == 3:
                raise RuntimeError("registry offline")
            return original(destination_id, n, now)

        monkeypatch.setattr(solver.registry, "reserve", failing_reserve)
        with pytest.raises(RuntimeError):
            solver.assign([request_at(f"r{i}", 4, 4, sequence=i + 1) for i in range(4)],
                          deadline_s=60)

        assert solver.registry.status("s1").occupancy == 0
        assert all(solver.estimator.state(e.index).assigned_load == 0 for e in graph.get_edges())


class TestScoring:

    def test_load_imbalance(self):
        assert load_imbalance(150, 300, 3) == pytest.approx(0.5)
        assert load_imbalance(50, 300, 3) == 0.0
        assert load_imbalance(0, 0, 3) == 0.0

    def test_weighted_sum(self):
        terms = CandidateTerms(distance=1.0, congestion=0.5, load_imbalance=0.2, accessibility=0.1)
        weights = ScoringWeights(distance=1.0, congestion=2.0, load_imbalance=3.0, accessibility=4.0)
        assert score_candidate(terms, weights) == pytest.approx(1.0 + 1.0 + 0.6 + 0.4)

    def test_equal_scores_rank_by_id(self):
        path = PathResult(origin=0, target=1, node_indices=[0, 1], edge_indices=[0],
                          distance_km=1.0, cost=1.0)
        ranked = rank_candidates({"b": path, "a": path}, {}, ["a", "b"], ScoringWeights())
        assert [c.destination_id for c in ranked] == ["a", "b"]

    def test_overloaded_destination_ranks_lower(self):
        near = PathResult(0, 1, [0, 1], [0], 1.0, 1.0)
        far = PathResult(0, 2, [0, 2], [1], 2.0, 2.0)
        ranked = rank_candidates({"near": near, "far": far}, {"near": 9, "far": 1},
                                 ["near", "far"], ScoringWeights())
        assert ranked[0].destination_id == "far"
        assert ranked[1].terms.load_imbalance == pytest.approx(0.8)

    def test_retuned_weights_change_ranking(self):
        graph = build_grid_city(5, 5, shelters=[ShelterSpec("s1", 0, 0, 10000),
                                                ShelterSpec("s2", 4, 4, 10000)])
        solver = create_solver(graph)
        solver.set_weights(ScoringWeights(load_imbalance=0.0))
        result = solver.assign([request_at(f"r{i}", 0, 1, sequence=i) for i in range(6)],
                               deadline_s=60)
        assert result.destination_counts() == {"s1": 6}
