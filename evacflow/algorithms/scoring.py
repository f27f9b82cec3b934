"""
Multi-factor destination scoring.

The score is an explicit weighted sum; lower is better. Every function here
is pure so identical inputs always rank candidates identically.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence

from ..config import ScoringWeights
from ..models.pathfinding import PathResult


@dataclass(frozen=True)
class CandidateTerms:
    """Normalized factor values for one candidate destination."""
    distance: float
    congestion: float
    load_imbalance: float
    accessibility: float

    def to_dict(self) -> Dict[str, float]:
        return {
            'distance': self.distance,
            'congestion': self.congestion,
            'load_imbalance': self.load_imbalance,
            'accessibility': self.accessibility,
        }


@dataclass
class ScoredCandidate:
    destination_id: str
    score: float
    terms: CandidateTerms
    path: PathResult


def load_imbalance(count: int, total: int, active_destinations: int) -> float:
    """
    How far a destination's share of assignments sits above its target share,
    relative to the target: max(0, share / target - 1).

    With a uniform target of 1/M this equals max(0, count / mean - 1), so a
    destination at 150% of the mean scores 0.5.
    """
    if total <= 0 or active_destinations <= 0:
        return 0.0
    share = count / total
    target = 1.0 / active_destinations
    return max(0.0, share / target - 1.0)


def score_candidate(terms: CandidateTerms, weights: ScoringWeights) -> float:
    """Weighted sum of the factor terms."""
    return (weights.distance * terms.distance +
            weights.congestion * terms.congestion +
            weights.load_imbalance * terms.load_imbalance +
            weights.accessibility * terms.accessibility)


def rank_candidates(paths: Dict[str, PathResult], counts: Dict[str, int],
                    active_destinations: Sequence[str], weights: ScoringWeights,
                    requires_accessibility: bool = False) -> List[ScoredCandidate]:
    """
    Score every reachable candidate and sort by (score, destination id).

    Args:
        paths: destination id -> path to it
        counts: assignment count per destination for the current epoch
        active_destinations: ids that share the load (define the mean)
        weights: factor weights
        requires_accessibility: include the accessibility penalty term
    """
    if not paths:
        return []

    max_distance = max(p.distance_km for p in paths.values())
    total = sum(counts.get(d, 0) for d in active_destinations)
    active_count = len(active_destinations)

    ranked = []
    for destination_id, path in paths.items():
        terms = CandidateTerms(
            distance=path.distance_km / max_distance if max_distance > 0 else 0.0,
            congestion=min(1.0, path.congestion_exposure),
            load_imbalance=load_imbalance(counts.get(destination_id, 0), total, active_count),
            accessibility=path.inaccessibility if requires_accessibility else 0.0,
        )
        ranked.append(ScoredCandidate(
            destination_id=destination_id,
            score=score_candidate(terms, weights),
            terms=terms,
            path=path,
        ))

    ranked.sort(key=lambda c: (c.score, c.destination_id))
    return ranked
