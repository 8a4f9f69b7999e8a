"""Component progress calculation."""

from progresscalc.progress.calculator import calculate_percent

__all__ = ["calculate_percent"]
