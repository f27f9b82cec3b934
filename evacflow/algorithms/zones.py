"""
Geographic zone partitioning.

Zones are square cells on an equirectangular projection. The solver solves
zones concurrently and the predictor aggregates population per zone.
"""

from typing import Dict, Iterable, List, Tuple
import math

from ..models.node import to_planar_km
from ..models.request import AssignmentUnit


class ZonePartitioner:
    """Maps coordinates to zone ids like 'r12c-3'."""

    def __init__(self, zone_size_km: float = 2.0, ref_lat: float = 0.0):
        if zone_size_km <= 0:
            raise ValueError("zone_size_km must be positive")
        self.zone_size_km = zone_size_km
        self.ref_lat = ref_lat

    def cell(self, lat: float, lon: float) -> Tuple[int, int]:
        x, y = to_planar_km(lat, lon, self.ref_lat)
        return (math.floor(y / self.zone_size_km), math.floor(x / self.zone_size_km))

    def zone_id(self, lat: float, lon: float) -> str:
        row, col = self.cell(lat, lon)
        return f"r{row}c{col}"

    def partition(self, units: Iterable[AssignmentUnit]) -> Dict[str, List[AssignmentUnit]]:
        """Group units by the zone of their anchor member, keeping input order."""
        zones: Dict[str, List[AssignmentUnit]] = {}
        for unit in units:
            anchor = unit.anchor
            zones.setdefault(self.zone_id(anchor.lat, anchor.lon), []).append(unit)
        return dict(sorted(zones.items()))
