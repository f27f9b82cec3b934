"""
Congestion estimator.

Keeps an exponentially weighted moving average of observed flow per edge,
adds the load implied by current assignments, and exposes the ratio to the
edge's expected hourly throughput as the congestion level.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import time

import numpy as np

from ..config import CongestionConfig
from ..events import EventManager, EventPriority, EventType
from ..logging_utils import log_event
from ..models.edge import EdgeStatus
from .versioned import VersionedMap


class Trend(Enum):
    """Direction of the recent congestion level."""
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


@dataclass(frozen=True)
class CongestionSample:
    """One point of the rolling window."""
    timestamp: float
    level: float


@dataclass(frozen=True)
class EdgeCongestionState:
    """Immutable congestion state of one edge."""
    edge_index: int
    expected_capacity: float
    ewma_flow: Optional[float] = None   # people/hour from movement samples
    assigned_load: int = 0              # people currently routed over the edge
    level: float = 0.0
    samples: Tuple[CongestionSample, ...] = ()

    @property
    def observed_flow(self) -> float:
        return self.ewma_flow or 0.0


@dataclass
class CongestionSnapshot:
    """Point-in-time congestion levels used by one solver epoch."""
    levels: Dict[int, float]
    taken_at: float

    def get(self, edge_index: int, default: float = 0.0) -> float:
        return self.levels.get(edge_index, default)

    def congested(self, threshold: float) -> List[int]:
        return sorted(e for e, level in self.levels.items() if level >= threshold)


class CongestionEstimator:
    """
    Per-edge congestion tracking with EWMA smoothing and trend detection.

    Status mapping: level < congested_level is open, otherwise congested.
    Administrative closure is owned by the graph and always overrides.
    """

    def __init__(self, config: Optional[CongestionConfig] = None,
                 events: Optional[EventManager] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or CongestionConfig()
        self.events = events
        self.clock = clock
        self._cells: VersionedMap[EdgeCongestionState] = VersionedMap(self.config.max_cas_retries)

    def register_edge(self, edge_index: int, expected_capacity: float) -> None:
        self._cells.register(edge_index, EdgeCongestionState(
            edge_index=edge_index, expected_capacity=max(1e-9, float(expected_capacity))))

    def register_graph(self, graph) -> None:
        """Register every edge of a spatial graph."""
        for edge in graph.get_edges():
            self.register_edge(edge.index, edge.expected_capacity_per_hour)

    # ==================== Updates ====================

    def _level(self, ewma_flow: Optional[float], load: int, capacity: float) -> float:
        flow = (ewma_flow or 0.0) + load / self.config.load_horizon_hours
        return max(0.0, flow / capacity)

    def _with_sample(self, state: EdgeCongestionState, level: float, ts: float) -> Tuple[CongestionSample, ...]:
        samples = state.samples + (CongestionSample(ts, level),)
        return samples[-self.config.trend_samples:]

    def _write(self, edge_index: int, fn, now: Optional[float]) -> EdgeCongestionState:
        ts = self.clock() if now is None else now

        def apply(state: EdgeCongestionState):
            ewma, load = fn(state)
            level = self._level(ewma, load, state.expected_capacity)
            new_state = replace(state, ewma_flow=ewma, assigned_load=load, level=level,
                                samples=self._with_sample(state, level, ts))
            return new_state, (state, new_state)

        old, new = self._cells.update(edge_index, apply)
        self._notify(old, new)
        return new

    def record_flow(self, edge_index: int, observed_per_hour: float,
                    now: Optional[float] = None) -> float:
        """
        Fold a movement sample into the EWMA.

        Returns:
            The new congestion level.
        """
        alpha = self.config.ewma_alpha
        observed = max(0.0, float(observed_per_hour))

        def fn(state: EdgeCongestionState):
            if state.ewma_flow is None:
                return observed, state.assigned_load
            return alpha * observed + (1 - alpha) * state.ewma_flow, state.assigned_load

        return self._write(edge_index, fn, now).level

    def add_assignment_load(self, edge_indices: Iterable[int], people: int,
                            now: Optional[float] = None) -> None:
        """Add (or with negative `people`, remove) routed load on each edge."""
        if people == 0:
            return
        for edge_index in edge_indices:
            self._write(edge_index,
                        lambda s: (s.ewma_flow, max(0, s.assigned_load + people)),
                        now)

    # ==================== Reads ====================

    def state(self, edge_index: int) -> EdgeCongestionState:
        return self._cells.get(edge_index)

    def level(self, edge_index: int) -> float:
        return self._cells.get(edge_index).level

    def status(self, edge_index: int, closed: bool = False) -> EdgeStatus:
        if closed:
            return EdgeStatus.CLOSED
        if self.level(edge_index) >= self.config.congested_level:
            return EdgeStatus.CONGESTED
        return EdgeStatus.OPEN

    def slope(self, edge_index: int) -> float:
        """Least-squares slope of the recent samples in level per second."""
        samples = self._cells.get(edge_index).samples
        if len(samples) < 2:
            return 0.0
        t = np.array([s.timestamp for s in samples], dtype=float)
        y = np.array([s.level for s in samples], dtype=float)
        if np.ptp(t) <= 0:
            return 0.0
        coeffs = np.polyfit(t - t[0], y, 1)
        return float(coeffs[0])

    def trend(self, edge_index: int) -> Trend:
        slope = self.slope(edge_index)
        if slope > self.config.trend_epsilon:
            return Trend.INCREASING
        if slope < -self.config.trend_epsilon:
            return Trend.DECREASING
        return Trend.STABLE

    def snapshot(self, now: Optional[float] = None) -> CongestionSnapshot:
        """Per-key point-in-time read of every edge level."""
        now = self.clock() if now is None else now
        return CongestionSnapshot(
            levels={edge: state.level for edge, state in self._cells.items()},
            taken_at=now,
        )

    def congested_edges(self) -> List[int]:
        threshold = self.config.congested_level
        return sorted(e for e, s in self._cells.items() if s.level >= threshold)

    def edge_indices(self) -> List[int]:
        return sorted(self._cells.keys())

    # ==================== Notifications ====================

    def _notify(self, old: EdgeCongestionState, new: EdgeCongestionState) -> None:
        threshold = self.config.congested_level
        was = old.level >= threshold
        now_congested = new.level >= threshold
        if was == now_congested:
            return

        status = EdgeStatus.CONGESTED if now_congested else EdgeStatus.OPEN
        log_event("edge_status_changed", edge_index=new.edge_index,
                  status=status.value, level=round(new.level, 3))
        if self.events:
            self.events.publish(EventType.EDGE_STATUS_CHANGED,
                                EventPriority.HIGH if now_congested else EventPriority.NORMAL,
                                edge_index=new.edge_index, status=status.value,
                                level=new.level)
