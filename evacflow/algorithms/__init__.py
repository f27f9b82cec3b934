"""
Assignment algorithms: candidate scoring, zone partitioning and the solver.
"""

from .base import AssignmentBatchResult, AssignmentFailure, EpochLedger, SolverMetrics
from .scoring import CandidateTerms, ScoredCandidate, load_imbalance, rank_candidates, score_candidate
from .zones import ZonePartitioner
from .solver import AssignmentSolver, PriorityMarker

__all__ = [
    'AssignmentBatchResult', 'AssignmentFailure', 'EpochLedger', 'SolverMetrics',
    'CandidateTerms', 'ScoredCandidate', 'load_imbalance', 'rank_candidates', 'score_candidate',
    'ZonePartitioner',
    'AssignmentSolver', 'PriorityMarker',
]
