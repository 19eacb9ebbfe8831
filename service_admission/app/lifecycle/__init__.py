"""
Process lifecycle management: drain and shutdown.
"""

from .shutdown import ShutdownCoordinator, ShutdownState

__all__ = [
    "ShutdownCoordinator",
    "ShutdownState",
]
