"""ProgressCalc - milestone weight templates and component progress."""

__version__ = "1.0.0"
