"""
Error taxonomy for the assignment engine.

Every error carries a stable reason code so the coordination layer can act
on it without parsing messages.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet


FROZEN_REASON_CODES: FrozenSet[str] = frozenset(
    {
        "constraint_unsatisfiable",
        "graph_unreachable",
        "stale_state_conflict",
        "overload_timeout",
        "invalid_transition",
        "engine_state",
        "unknown_resource",
        "invalid_config",
    }
)


@dataclass(eq=False)
class EngineError(Exception):
    """Base class for all engine errors."""
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    reason_code: str = "engine_state"

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dictionary for warnings and log records."""
        return {
            'reason_code': self.reason_code,
            'message': self.message,
            'details': dict(self.details),
        }


@dataclass(eq=False)
class ConstraintUnsatisfiable(EngineError):
    """No destination meets the hard constraints within the searched radius."""
    reason_code: str = "constraint_unsatisfiable"


@dataclass(eq=False)
class GraphUnreachable(EngineError):
    """No open path reaches any candidate destination."""
    reason_code: str = "graph_unreachable"


@dataclass(eq=False)
class StaleStateConflict(EngineError):
    """A versioned write kept losing a concurrent race."""
    reason_code: str = "stale_state_conflict"


@dataclass(eq=False)
class OverloadTimeout(EngineError):
    """The solver ran past its latency deadline."""
    reason_code: str = "overload_timeout"


@dataclass(eq=False)
class InvalidTransition(EngineError, ValueError):
    """An assignment lifecycle transition that is not allowed."""
    reason_code: str = "invalid_transition"


@dataclass(eq=False)
class EngineStateError(EngineError):
    """Operation not allowed in the engine's current state."""
    reason_code: str = "engine_state"


@dataclass(eq=False)
class UnknownResource(EngineError, KeyError):
    """Referenced destination, edge, node or requester does not exist."""
    reason_code: str = "unknown_resource"

    def __str__(self) -> str:
        return self.message


@dataclass(eq=False)
class InvalidConfig(EngineError, ValueError):
    """Configuration values out of range."""
    reason_code: str = "invalid_config"


def normalize_reason_code(reason_code: str, *, default: str = "engine_state") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
