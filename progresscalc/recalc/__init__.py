"""Batch recalculation of cached percent complete."""

from progresscalc.recalc.engine import RecalculationEngine

__all__ = ["RecalculationEngine"]
