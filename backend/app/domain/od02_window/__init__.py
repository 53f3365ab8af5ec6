"""OD-02 window scheduler package."""

from .scheduler import SweepReport, WindowScheduler

__all__ = ["SweepReport", "WindowScheduler"]
