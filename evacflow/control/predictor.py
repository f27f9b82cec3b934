"""
Short-horizon predictions for the coordination layer.

- Bottlenecks: linear projection of each edge's recent congestion samples
- Zone completion: people still outstanding over recent arrival throughput
- Destination fill: time to capacity at the trailing reservation rate
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set
import time

from ..algorithms.zones import ZonePartitioner
from ..config import PredictorConfig
from ..events import EventManager, EventPriority, EventType
from ..logging_utils import log_event
from ..models.assignment import AssignmentStatus
from ..models.network import SpatialGraph
from ..models.node import DestinationStatus
from ..state.assignments import AssignmentStore
from ..state.capacity import CapacityRegistry
from ..state.congestion import CongestionEstimator, Trend


@dataclass
class BottleneckRisk:
    """An edge expected to reach the congested level within the window."""
    edge_index: int
    current_level: float
    projected_level: float
    seconds_to_threshold: float
    trend: Trend
    assigned_load: int

    def to_dict(self) -> Dict:
        return {
            'edge_index': self.edge_index,
            'current_level': self.current_level,
            'projected_level': self.projected_level,
            'seconds_to_threshold': self.seconds_to_threshold,
            'trend': self.trend.value,
            'assigned_load': self.assigned_load,
        }


@dataclass
class ZoneCompletion:
    """Estimated time until everyone from a zone has arrived."""
    zone_id: str
    unassigned: int
    in_transit: int
    arrived: int
    arrivals_per_hour: float
    estimated_hours: Optional[float]
    high_risk: bool

    @property
    def outstanding(self) -> int:
        return self.unassigned + self.in_transit


@dataclass
class FillPrediction:
    destination_id: str
    occupancy: int
    max_capacity: int
    status: DestinationStatus
    seconds_to_full: Optional[float]


class Predictor:
    """Reads engine state and produces risk records; never writes state."""

    def __init__(self, graph: SpatialGraph, registry: CapacityRegistry,
                 estimator: CongestionEstimator, store: AssignmentStore,
                 zones: ZonePartitioner,
                 config: Optional[PredictorConfig] = None,
                 events: Optional[EventManager] = None,
                 clock: Callable[[], float] = time.time):
        self.graph = graph
        self.registry = registry
        self.estimator = estimator
        self.store = store
        self.zones = zones
        self.config = config or PredictorConfig()
        self.events = events
        self.clock = clock
        self.started_at: Optional[float] = None
        self._flagged_edges: Set[int] = set()
        self._flagged_zones: Set[str] = set()

    # ==================== Bottlenecks ====================

    def predict_bottlenecks(self, window_s: float) -> List[BottleneckRisk]:
        """
        Edges whose congestion is projected to reach the bottleneck level
        within `window_s` seconds. Edges already at that level are reported
        with zero seconds to threshold unless their trend is decreasing.
        """
        threshold = self.config.bottleneck_level
        risks = []
        for edge_index in self.estimator.edge_indices():
            if self.graph.get_edge(edge_index).closed:
                continue
            state = self.estimator.state(edge_index)
            slope = self.estimator.slope(edge_index)
            trend = self.estimator.trend(edge_index)
            projected = max(0.0, state.level + slope * window_s)

            if state.level >= threshold:
                if trend == Trend.DECREASING:
                    continue
                seconds = 0.0
            elif slope > 0 and projected >= threshold:
                seconds = (threshold - state.level) / slope
            else:
                continue

            risks.append(BottleneckRisk(
                edge_index=edge_index,
                current_level=state.level,
                projected_level=projected,
                seconds_to_threshold=seconds,
                trend=trend,
                assigned_load=state.assigned_load,
            ))

        risks.sort(key=lambda r: (r.seconds_to_threshold, r.edge_index))
        self._report_bottlenecks(risks)
        return risks

    def _report_bottlenecks(self, risks: List[BottleneckRisk]) -> None:
        current = {r.edge_index for r in risks}
        for risk in risks:
            if risk.edge_index in self._flagged_edges:
                continue
            log_event("bottleneck_risk", **risk.to_dict())
            if self.events:
                self.events.publish(EventType.BOTTLENECK_RISK, EventPriority.NORMAL,
                                    **risk.to_dict())
        self._flagged_edges = current

    # ==================== Zone completion ====================

    def zone_ids(self) -> List[str]:
        return sorted({self.zones.zone_id(a.request.lat, a.request.lon)
                       for a in self.store.active()})

    def predict_zone_completion(self, zone_id: str) -> ZoneCompletion:
        """
        (unassigned + in transit) / arrivals per hour over the trailing window.

        Unassigned counts requesters holding an unplaced record; in transit
        counts everyone with a destination who has not arrived yet.
        """
        now = self.clock()
        window = self.config.throughput_window_s
        if self.started_at is not None:
            window = max(1.0, min(window, now - self.started_at))
        cutoff = now - window

        unassigned = in_transit = arrived = recent = 0
        for assignment in self.store.active():
            request = assignment.request
            if self.zones.zone_id(request.lat, request.lon) != zone_id:
                continue
            if assignment.status == AssignmentStatus.ARRIVED:
                arrived += 1
                if assignment.arrived_at is not None and assignment.arrived_at > cutoff:
                    recent += 1
            elif assignment.destination_id is None:
                unassigned += 1
            else:
                in_transit += 1

        rate = recent / (window / 3600.0)
        outstanding = unassigned + in_transit
        if outstanding == 0:
            hours: Optional[float] = 0.0
            high_risk = False
        elif rate <= 0:
            hours = None
            high_risk = True
        else:
            hours = outstanding / rate
            high_risk = hours > self.config.high_risk_hours

        completion = ZoneCompletion(
            zone_id=zone_id, unassigned=unassigned, in_transit=in_transit,
            arrived=arrived, arrivals_per_hour=rate, estimated_hours=hours,
            high_risk=high_risk,
        )
        self._report_zone(completion)
        return completion

    def _report_zone(self, completion: ZoneCompletion) -> None:
        if not completion.high_risk:
            self._flagged_zones.discard(completion.zone_id)
            return
        if completion.zone_id in self._flagged_zones:
            return
        self._flagged_zones.add(completion.zone_id)
        log_event("zone_high_risk", zone_id=completion.zone_id,
                  outstanding=completion.outstanding,
                  estimated_hours=completion.estimated_hours)
        if self.events:
            self.events.publish(EventType.ZONE_HIGH_RISK, EventPriority.HIGH,
                                zone_id=completion.zone_id,
                                outstanding=completion.outstanding,
                                estimated_hours=completion.estimated_hours)

    # ==================== Destination fill ====================

    def predict_destination_fill(self) -> List[FillPrediction]:
        """Fill predictions for every destination, soonest first."""
        now = self.clock()
        predictions = []
        for destination_id in self.registry.destination_ids():
            state = self.registry.status(destination_id)
            predictions.append(FillPrediction(
                destination_id=destination_id,
                occupancy=state.occupancy,
                max_capacity=state.max_capacity,
                status=state.status,
                seconds_to_full=self.registry.predict_fill_time(destination_id, now),
            ))
        predictions.sort(key=lambda p: (p.seconds_to_full is None,
                                        p.seconds_to_full or 0.0, p.destination_id))
        return predictions
