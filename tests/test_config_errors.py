"""
Tests for configuration, the error taxonomy and structured logging.
"""

import json
import logging
import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from evacflow.config import EngineConfig, ScoringWeights
from evacflow.errors import (
    ConstraintUnsatisfiable, EngineError, FROZEN_REASON_CODES, GraphUnreachable,
    InvalidConfig, InvalidTransition, OverloadTimeout, StaleStateConflict,
    UnknownResource, normalize_reason_code
)
from evacflow.logging_utils import LOGGER_NAME, get_logger, log_event, log_warning


class TestScoringWeights:

    def test_defaults(self):
        weights = ScoringWeights()
        assert weights.to_dict() == {
            'distance': 1.0, 'congestion': 0.3, 'load_imbalance': 3.0, 'accessibility': 0.5,
        }

    def test_negative_weight_rejected(self):
        with pytest.raises(InvalidConfig) as exc_info:
            ScoringWeights(congestion=-0.1)
        assert exc_info.value.details['factor'] == "congestion"
        assert exc_info.value.reason_code == "invalid_config"

    def test_unknown_factor_rejected(self):
        with pytest.raises(InvalidConfig):
            ScoringWeights.from_dict({'distance': 1.0, 'weather': 2.0})

    def test_non_numeric_rejected(self):
        with pytest.raises(InvalidConfig):
            ScoringWeights(distance="far")


class TestEngineConfig:

    def test_round_trip(self):
        config = EngineConfig()
        config.weights = ScoringWeights(distance=2.0)
        config.solver.search_radius_km = 7.5
        config.capacity.imminent_fill_s = 600.0

        restored = EngineConfig.from_dict(config.to_dict())
        assert restored.weights.distance == 2.0
        assert restored.solver.search_radius_km == 7.5
        assert restored.capacity.imminent_fill_s == 600.0
        assert restored.to_dict() == config.to_dict()

    def test_partial_dict_keeps_defaults(self):
        config = EngineConfig.from_dict({'solver': {'deadline_s': 1.5, 'unknown': True}})
        assert config.solver.deadline_s == 1.5
        assert config.solver.search_radius_km == 10.0
        assert config.weights.load_imbalance == 3.0

    def test_file_io(self, tmp_path):
        path = tmp_path / "engine.json"
        config = EngineConfig(log_level="DEBUG")
        config.rerouting.scheduled_interval_s = 60.0
        config.save_to_file(str(path))

        with open(path) as f:
            assert json.load(f)['rerouting']['scheduled_interval_s'] == 60.0
        loaded = EngineConfig.load_from_file(str(path))
        assert loaded.log_level == "DEBUG"
        assert loaded.rerouting.scheduled_interval_s == 60.0


class TestErrors:

    def test_reason_codes_are_frozen(self):
        for error_cls in (ConstraintUnsatisfiable, GraphUnreachable, StaleStateConflict,
                          OverloadTimeout, InvalidTransition, UnknownResource, InvalidConfig):
            assert error_cls("x").reason_code in FROZEN_REASON_CODES

    def test_to_dict(self):
        error = GraphUnreachable("no path", details={'origin': 3})
        assert error.to_dict() == {
            'reason_code': "graph_unreachable",
            'message': "no path",
            'details': {'origin': 3},
        }
        assert str(error) == "no path"

    def test_builtin_bases(self):
        assert isinstance(UnknownResource("missing"), KeyError)
        assert isinstance(InvalidTransition("bad"), ValueError)
        assert isinstance(InvalidConfig("bad"), ValueError)
        assert str(UnknownResource("missing edge 4")) == "missing edge 4"

    def test_catchable_as_engine_error(self):
        with pytest.raises(EngineError):
            raise StaleStateConflict("lost the race")

    def test_normalize_reason_code(self):
        assert normalize_reason_code("overload_timeout") == "overload_timeout"
        assert normalize_reason_code(" graph_unreachable ") == "graph_unreachable"
        assert normalize_reason_code("made_up") == "engine_state"
        assert normalize_reason_code("", default="unknown_resource") == "unknown_resource"


class TestLogging:

    def test_structured_fields(self, caplog):
        get_logger("INFO")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            log_event("batch_assigned", epoch=3, assigned=12)
        record = caplog.records[-1]
        assert record.getMessage() == "batch_assigned"
        assert record.event == "batch_assigned"
        assert record.epoch == 3
        assert record.assigned == 12

    def test_reserved_keys_are_prefixed(self, caplog):
        get_logger("INFO")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            log_warning("solver_warning", message="no path", name="unit")
        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.field_message == "no path"
        assert record.field_name == "unit"

    def test_logger_configured_once(self):
        first = get_logger()
        handlers = list(first.handlers)
        second = get_logger("DEBUG")
        assert second is first
        assert second.handlers == handlers
        assert second.level == logging.DEBUG
        get_logger("INFO")
