"""
Scenario builders and network loading.
"""

from .scenarios import (
    Scenario, ShelterSpec, add_shelter, build_grid_city, demo_scenario,
    generate_requests, grid_position, load_scenario, request_from_dict
)

__all__ = [
    'Scenario', 'ShelterSpec', 'add_shelter', 'build_grid_city', 'demo_scenario',
    'generate_requests', 'grid_position', 'load_scenario', 'request_from_dict',
]
