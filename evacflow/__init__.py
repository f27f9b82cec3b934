"""
EvacFlow - Capacity-aware Evacuation Flow Assignment

Real-time assignment of evacuees to shelters and paths over a road
network with live congestion, capacity tracking and rerouting.
"""

__version__ = '1.0.0'
__author__ = 'EvacFlow Team'
