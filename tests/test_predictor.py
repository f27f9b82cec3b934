"""
Tests for bottleneck, zone-completion and destination-fill predictions.
"""

import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from evacflow.config import EngineConfig
from evacflow.control import EvacuationEngine
from evacflow.data import ShelterSpec, build_grid_city, grid_position
from evacflow.events import EventType
from evacflow.models.request import EvacuationRequest
from evacflow.state.congestion import Trend

ORIGIN = (10.70, 106.60)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def create_engine(clock: FakeClock, ewma_alpha: float = 1.0) -> EvacuationEngine:
    config = EngineConfig()
    config.congestion.ewma_alpha = ewma_alpha
    graph = build_grid_city(3, 4, shelters=[ShelterSpec("west", 0, 0, 1000),
                                            ShelterSpec("east", 2, 3, 1000)])
    engine = EvacuationEngine(graph, config, clock)
    engine.start_event("test")
    return engine


def residential_edge(engine: EvacuationEngine) -> int:
    """An edge on row 2 (400 people/hour)."""
    return engine.graph.get_edge_between(2 * 4 + 1, 2 * 4 + 2).index


def feed_flows(engine: EvacuationEngine, clock: FakeClock, edge: int, flows, step: float = 60.0):
    for i, flow in enumerate(flows):
        clock.now = i * step
        engine.record_edge_flow(edge, flow)


class TestBottlenecks:

    def test_rising_edge_flagged(self):
        clock = FakeClock()
        engine = create_engine(clock)
        edge = residential_edge(engine)
        # Levels 0.25, 0.40, 0.55, 0.70 one minute apart
        feed_flows(engine, clock, edge, [100, 160, 220, 280])

        risks = engine.predict_bottlenecks(900)
        assert [r.edge_index for r in risks] == [edge]
        risk = risks[0]
        assert risk.trend == Trend.INCREASING
        assert risk.current_level == pytest.approx(0.7)
        assert risk.seconds_to_threshold == pytest.approx(40.0)
        assert risk.projected_level >= 0.8

    def test_short_window_not_flagged(self):
        clock = FakeClock()
        engine = create_engine(clock)
        feed_flows(engine, clock, residential_edge(engine), [100, 160, 220, 280])
        assert engine.predict_bottlenecks(30) == []

    def test_already_congested_reported_now(self):
        clock = FakeClock()
        engine = create_engine(clock)
        edge = residential_edge(engine)
        engine.record_edge_flow(edge, 360)
        risks = engine.predict_bottlenecks(900)
        assert risks[0].seconds_to_threshold == 0.0

    def test_congested_but_clearing_not_reported(self):
        clock = FakeClock()
        engine = create_engine(clock)
        feed_flows(engine, clock, residential_edge(engine), [400, 360])
        assert engine.predict_bottlenecks(900) == []

    def test_risk_event_published_once(self):
        clock = FakeClock()
        engine = create_engine(clock)
        feed_flows(engine, clock, residential_edge(engine), [100, 160, 220, 280])
        engine.predict_bottlenecks(900)
        engine.predict_bottlenecks(900)
        assert len(engine.events.get_history(EventType.BOTTLENECK_RISK)) == 1


class TestZoneCompletion:

    def requests(self, count: int, **kwargs):
        lat, lon = grid_position(ORIGIN, 0.5, 1, 1)
        return [EvacuationRequest(f"z{i}", lat, lon, arrival_time=1.0, sequence=i + 1, **kwargs)
                for i in range(count)]

    def test_estimate_from_arrival_rate(self):
        clock = FakeClock()
        engine = create_engine(clock)
        requests = self.requests(4)
        engine.assign_batch(requests)
        zone = engine.zone_of(requests[0].lat, requests[0].lon)

        clock.now = 1800.0
        engine.check_in("z0")
        engine.check_in("z1")

        completion = engine.predict_zone_completion(zone)
        assert completion.arrived == 2
        assert completion.in_transit == 2
        assert completion.arrivals_per_hour == pytest.approx(4.0)
        assert completion.estimated_hours == pytest.approx(0.5)
        assert not completion.high_risk

    def test_no_throughput_is_high_risk(self):
        clock = FakeClock()
        engine = create_engine(clock)
        requests = self.requests(3)
        engine.assign_batch(requests)
        zone = engine.zone_of(requests[0].lat, requests[0].lon)
        clock.now = 600.0

        completion = engine.predict_zone_completion(zone)
        assert completion.high_risk
        assert completion.estimated_hours is None
        engine.predict_zone_completion(zone)
        assert len(engine.events.get_history(EventType.ZONE_HIGH_RISK)) == 1

    def test_unplaced_requesters_count_as_unassigned(self):
        clock = FakeClock()
        engine = create_engine(clock)
        requests = self.requests(2, required_features={"helipad"})
        engine.assign_batch(requests)
        zone = engine.zone_of(requests[0].lat, requests[0].lon)

        completion = engine.predict_zone_completion(zone)
        assert completion.unassigned == 2
        assert completion.in_transit == 0
        assert completion.outstanding == 2

    def test_empty_zone_is_done(self):
        clock = FakeClock()
        engine = create_engine(clock)
        completion = engine.predict_zone_completion("r0c0")
        assert completion.estimated_hours == 0.0
        assert not completion.high_risk


class TestDestinationFill:

    def test_soonest_first_and_idle_last(self):
        clock = FakeClock()
        engine = create_engine(clock)
        engine.registry.reserve("east", 100)

        predictions = engine.predict_destination_fill()
        assert [p.destination_id for p in predictions] == ["east", "west"]
        assert predictions[0].seconds_to_full == pytest.approx(2700.0)
        assert predictions[1].seconds_to_full is None
