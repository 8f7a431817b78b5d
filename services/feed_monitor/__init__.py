"""
Feed spike monitor service.

Tracks listener counts per feed, keeps a spike-resistant baseline and
surfaces feeds whose listeners jump well above it.
"""

from .average import BoundedAverage
from .baseline import BaselineState, BaselineTracker, UnskewedAverageConfig
from .listener_stats import ListenerStats
from .spike import SpikeThresholds, is_spiking

__all__ = [
    "BaselineState",
    "BaselineTracker",
    "BoundedAverage",
    "ListenerStats",
    "SpikeThresholds",
    "UnskewedAverageConfig",
    "is_spiking",
]
