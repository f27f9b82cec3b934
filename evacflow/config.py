"""
Configuration for the assignment engine.

Every tunable lives in a plain dataclass with to_dict/from_dict so it can be
loaded from JSON and retuned between events.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict
import json

from .errors import InvalidConfig


@dataclass
class ScoringWeights:
    """Weight table for the multi-factor destination score (lower score wins)."""
    distance: float = 1.0
    congestion: float = 0.3
    load_imbalance: float = 3.0
    accessibility: float = 0.5

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, (int, float)) or value < 0:
                raise InvalidConfig(
                    f"Scoring weight '{f.name}' must be a non-negative number",
                    details={'factor': f.name, 'value': value},
                )

    def to_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScoringWeights':
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise InvalidConfig(
                "Unknown scoring factors",
                details={'factors': sorted(unknown)},
            )
        return cls(**data)


@dataclass
class SolverConfig:
    """Parameters of the assignment solver."""
    search_radius_km: float = 10.0
    widened_radius_km: float = 25.0
    max_candidates: int = 8
    deadline_s: float = 3.0
    # Batches at least this large are solved zone-parallel
    parallel_batch_threshold: int = 500
    max_workers: int = 4
    zone_size_km: float = 2.0
    # Edges at or above this level are avoided when an alternative exists
    congestion_threshold: float = 0.8
    congestion_penalty_factor: float = 2.0
    inaccessibility_penalty_factor: float = 4.0
    # Edges rated below this are impassable for requesters needing access
    min_accessible_rating: float = 0.2
    max_reserve_retries: int = 3


@dataclass
class CapacityConfig:
    """Parameters of the capacity registry."""
    warning_utilization: float = 0.9
    fill_window_s: float = 300.0
    imminent_fill_s: float = 900.0
    max_cas_retries: int = 8


@dataclass
class CongestionConfig:
    """Parameters of the congestion estimator."""
    ewma_alpha: float = 0.3
    congested_level: float = 0.8
    trend_samples: int = 6
    # Slope magnitude (level per second) below which the trend is stable
    trend_epsilon: float = 1e-5
    # Assigned people are expected to cross an edge within this horizon
    load_horizon_hours: float = 1.0
    max_cas_retries: int = 8


@dataclass
class ReroutingConfig:
    """Parameters of the rerouting controller."""
    scheduled_interval_s: float = 120.0
    max_workers: int = 2


@dataclass
class PredictorConfig:
    """Parameters of the predictor."""
    bottleneck_level: float = 0.8
    throughput_window_s: float = 1800.0
    high_risk_hours: float = 4.0


@dataclass
class EngineConfig:
    """Aggregate configuration for the whole engine."""
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    solver: SolverConfig = field(default_factory=SolverConfig)
    capacity: CapacityConfig = field(default_factory=CapacityConfig)
    congestion: CongestionConfig = field(default_factory=CongestionConfig)
    rerouting: ReroutingConfig = field(default_factory=ReroutingConfig)
    predictor: PredictorConfig = field(default_factory=PredictorConfig)
    log_level: str = "INFO"

    _SECTIONS = {
        'weights': ScoringWeights,
        'solver': SolverConfig,
        'capacity': CapacityConfig,
        'congestion': CongestionConfig,
        'rerouting': ReroutingConfig,
        'predictor': PredictorConfig,
    }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dictionary."""
        data: Dict[str, Any] = {'log_level': self.log_level}
        for name in self._SECTIONS:
            section = getattr(self, name)
            data[name] = {f.name: getattr(section, f.name) for f in fields(section)}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EngineConfig':
        """Create from a dictionary, ignoring unknown keys inside sections."""
        kwargs: Dict[str, Any] = {}
        for name, section_cls in cls._SECTIONS.items():
            section_data = data.get(name)
            if section_data is None:
                continue
            if section_cls is ScoringWeights:
                kwargs[name] = ScoringWeights.from_dict(section_data)
            else:
                known = section_cls.__dataclass_fields__
                kwargs[name] = section_cls(**{k: v for k, v in section_data.items() if k in known})
        if 'log_level' in data:
            kwargs['log_level'] = data['log_level']
        return cls(**kwargs)

    @classmethod
    def load_from_file(cls, filepath: str) -> 'EngineConfig':
        """Load configuration from a JSON file."""
        with open(filepath, 'r') as f:
            return cls.from_dict(json.load(f))

    def save_to_file(self, filepath: str) -> None:
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
