"""
Capacity registry for destinations.

The registry is the only writer of destination occupancy. Every update is a
compare-and-set on that destination's own versioned cell, so concurrent
check-ins and solver reservations never lose updates.
"""

from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple
import time

from ..config import CapacityConfig
from ..events import EventManager, EventPriority, EventType
from ..logging_utils import log_event, log_warning
from ..models.node import Destination, DestinationStatus
from .versioned import VersionedMap


@dataclass(frozen=True)
class DestinationState:
    """Immutable point-in-time state of one destination."""
    destination_id: str
    max_capacity: int
    occupancy: int = 0
    status: DestinationStatus = DestinationStatus.ACTIVE
    features: FrozenSet[str] = field(default_factory=frozenset)
    # (timestamp, delta) of reservations/releases inside the trailing window
    history: Tuple[Tuple[float, int], ...] = ()
    closed_reason: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.max_capacity - self.occupancy)

    @property
    def utilization(self) -> float:
        if self.max_capacity <= 0:
            return 1.0
        return self.occupancy / self.max_capacity

    @property
    def overflow(self) -> int:
        """People beyond capacity (only possible through occupancy telemetry)."""
        return max(0, self.occupancy - self.max_capacity)


@dataclass
class CapacitySnapshot:
    """Registry state captured at one instant for a solver epoch."""
    states: Dict[str, DestinationState]
    excluded: FrozenSet[str]
    taken_at: float

    def is_candidate(self, destination_id: str) -> bool:
        state = self.states.get(destination_id)
        return (state is not None and
                state.status != DestinationStatus.CLOSED and
                destination_id not in self.excluded)

    @property
    def active_ids(self) -> List[str]:
        return sorted(d for d in self.states if self.is_candidate(d))


class CapacityRegistry:
    """
    Tracks occupancy, status and fill-rate of every destination.

    Threshold behaviour:
    - utilization >= warning level emits a capacity warning
    - utilization >= 100% or predicted fill within the imminent window marks
      the destination FULL and excludes it from candidate sets
    """

    def __init__(self, config: Optional[CapacityConfig] = None,
                 events: Optional[EventManager] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or CapacityConfig()
        self.events = events
        self.clock = clock
        self._cells: VersionedMap[DestinationState] = VersionedMap(self.config.max_cas_retries)

    # ==================== Registration ====================

    def add_destination(self, destination: Destination, occupancy: int = 0) -> DestinationState:
        state = DestinationState(
            destination_id=destination.id,
            max_capacity=destination.max_capacity,
            occupancy=occupancy,
            features=destination.features,
        )
        state = replace(state, status=self._derive_status(state, self.clock()))
        return self._cells.register(destination.id, state).value

    def destination_ids(self) -> List[str]:
        return sorted(self._cells.keys())

    def __contains__(self, destination_id: str) -> bool:
        return destination_id in self._cells

    # ==================== Fill prediction ====================

    def _trim(self, history: Iterable[Tuple[float, int]], now: float) -> Tuple[Tuple[float, int], ...]:
        cutoff = now - self.config.fill_window_s
        return tuple(item for item in history if item[0] > cutoff)

    def _fill_time(self, state: DestinationState, now: float) -> Optional[float]:
        net = sum(delta for _, delta in self._trim(state.history, now))
        rate = net / self.config.fill_window_s
        if rate <= 0:
            return None
        return state.remaining / rate

    def _derive_status(self, state: DestinationState, now: float) -> DestinationStatus:
        if state.status == DestinationStatus.CLOSED:
            return DestinationStatus.CLOSED
        if state.occupancy >= state.max_capacity:
            return DestinationStatus.FULL
        fill = self._fill_time(state, now)
        if fill is not None and fill <= self.config.imminent_fill_s:
            return DestinationStatus.FULL
        return DestinationStatus.ACTIVE

    def predict_fill_time(self, destination_id: str, now: Optional[float] = None) -> Optional[float]:
        """
        Seconds until the destination fills at the trailing-window net rate.

        Returns:
            None when the trailing rate is <= 0.
        """
        now = self.clock() if now is None else now
        return self._fill_time(self._cells.get(destination_id), now)

    # ==================== Atomic updates ====================

    def _write(self, destination_id: str, change: Callable[[DestinationState, float], Tuple[DestinationState, int]],
               now: Optional[float]) -> int:
        now = self.clock() if now is None else now

        def apply(state: DestinationState):
            new_state, amount = change(state, now)
            if new_state is state:
                return state, (amount, state, state)
            new_state = replace(new_state, history=self._trim(new_state.history, now))
            new_state = replace(new_state, status=self._derive_status(new_state, now))
            return new_state, (amount, state, new_state)

        amount, old, new = self._cells.update(destination_id, apply)
        if new is not old:
            self._notify(old, new)
        return amount

    def reserve(self, destination_id: str, n: int, now: Optional[float] = None) -> int:
        """
        Atomically reserve up to `n` places.

        Returns:
            The number actually reserved (0..n), clamped at capacity.
            Closed destinations accept nothing.
        """
        def change(state: DestinationState, ts: float):
            if n <= 0 or state.status == DestinationStatus.CLOSED:
                return state, 0
            amount = max(0, min(n, state.max_capacity - state.occupancy))
            if amount == 0:
                return state, 0
            return replace(state, occupancy=state.occupancy + amount,
                           history=state.history + ((ts, amount),)), amount

        return self._write(destination_id, change, now)

    def release(self, destination_id: str, n: int, now: Optional[float] = None) -> int:
        """Atomically release up to `n` places; occupancy never goes below 0."""
        def change(state: DestinationState, ts: float):
            amount = max(0, min(n, state.occupancy))
            if amount == 0:
                return state, 0
            return replace(state, occupancy=state.occupancy - amount,
                           history=state.history + ((ts, -amount),)), amount

        return self._write(destination_id, change, now)

    def sync_occupancy(self, destination_id: str, observed: int, now: Optional[float] = None) -> int:
        """
        Overwrite occupancy with a head count from check-in telemetry.
        May exceed capacity (walk-ins); the excess is reported as overflow.
        """
        observed = max(0, int(observed))

        def change(state: DestinationState, ts: float):
            if observed == state.occupancy:
                return state, observed
            return replace(state, occupancy=observed), observed

        return self._write(destination_id, change, now)

    def set_capacity(self, destination_id: str, max_capacity: int, now: Optional[float] = None) -> None:
        def change(state: DestinationState, ts: float):
            return replace(state, max_capacity=max(0, int(max_capacity))), 0

        self._write(destination_id, change, now)

    def close(self, destination_id: str, reason: str = "", now: Optional[float] = None) -> bool:
        """Administratively close a destination. Returns True if it was not closed."""
        def change(state: DestinationState, ts: float):
            if state.status == DestinationStatus.CLOSED:
                return state, 0
            return replace(state, status=DestinationStatus.CLOSED, closed_reason=reason), 1

        return bool(self._write(destination_id, change, now))

    def reopen(self, destination_id: str, now: Optional[float] = None) -> bool:
        def change(state: DestinationState, ts: float):
            if state.status != DestinationStatus.CLOSED:
                return state, 0
            return replace(state, status=DestinationStatus.ACTIVE, closed_reason=None), 1

        return bool(self._write(destination_id, change, now))

    # ==================== Reads ====================

    def status(self, destination_id: str) -> DestinationState:
        """Current state of a destination."""
        return self._cells.get(destination_id)

    def is_excluded(self, destination_id: str, now: Optional[float] = None) -> bool:
        """
        True when the destination must not receive new assignments:
        closed, at capacity, or predicted to fill imminently.
        """
        now = self.clock() if now is None else now
        state = self._cells.get(destination_id)
        if state.status == DestinationStatus.CLOSED:
            return True
        return self._derive_status(state, now) == DestinationStatus.FULL

    def snapshot(self, now: Optional[float] = None) -> CapacitySnapshot:
        """Per-key point-in-time read of every destination."""
        now = self.clock() if now is None else now
        states = dict(self._cells.items())
        excluded = frozenset(
            d for d, s in states.items()
            if s.status == DestinationStatus.CLOSED or
            self._derive_status(s, now) == DestinationStatus.FULL
        )
        return CapacitySnapshot(states=states, excluded=excluded, taken_at=now)

    def refresh(self, now: Optional[float] = None) -> List[str]:
        """
        Re-derive statuses as the trailing window slides.

        Returns:
            Ids whose status changed.
        """
        changed = []
        for destination_id in self.destination_ids():
            def change(state: DestinationState, ts: float):
                status = self._derive_status(state, ts)
                if status == state.status:
                    return state, 0
                return replace(state, status=status), 1

            if self._write(destination_id, change, now):
                changed.append(destination_id)
        return changed

    # ==================== Notifications ====================

    def _notify(self, old: DestinationState, new: DestinationState) -> None:
        warn_at = self.config.warning_utilization
        if new.utilization >= warn_at > old.utilization:
            log_warning("capacity_warning", destination_id=new.destination_id,
                        utilization=round(new.utilization, 3))
            if self.events:
                self.events.publish(EventType.CAPACITY_WARNING, EventPriority.HIGH,
                                    destination_id=new.destination_id,
                                    utilization=new.utilization,
                                    occupancy=new.occupancy,
                                    max_capacity=new.max_capacity)

        if new.status != old.status:
            log_event("destination_status_changed", destination_id=new.destination_id,
                      old_status=old.status.value, new_status=new.status.value)
            if self.events:
                priority = (EventPriority.CRITICAL if new.status == DestinationStatus.CLOSED
                            else EventPriority.HIGH)
                self.events.publish(EventType.DESTINATION_STATUS_CHANGED, priority,
                                    destination_id=new.destination_id,
                                    old_status=old.status.value,
                                    new_status=new.status.value,
                                    occupancy=new.occupancy,
                                    overflow=new.overflow)
