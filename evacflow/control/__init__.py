"""
Control layer: rerouting triggers and controller, predictor and engine facade.
"""

from .triggers import RerouteTrigger, ResourceClosure, ResourceType, TriggerKind
from .rerouting import ReroutingController
from .predictor import BottleneckRisk, FillPrediction, Predictor, ZoneCompletion
from .engine import EngineState, EvacuationEngine

__all__ = [
    'RerouteTrigger', 'ResourceClosure', 'ResourceType', 'TriggerKind',
    'ReroutingController',
    'BottleneckRisk', 'FillPrediction', 'Predictor', 'ZoneCompletion',
    'EngineState', 'EvacuationEngine',
]
