"""
Projection of events into the denormalized order view.
"""

from viewkeeper.projection.projector import OrderProjector, ViewProjector
from viewkeeper.projection.row import OrderLine, ViewRow

__all__ = [
    "OrderLine",
    "OrderProjector",
    "ViewProjector",
    "ViewRow",
]
