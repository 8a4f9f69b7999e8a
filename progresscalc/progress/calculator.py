"""Weighted percent-complete calculation.

Pure and deterministic: the same (milestone_state, template) pair always
yields the same integer. Keys in milestone_state that the template does not
define (left over from an earlier template version) are ignored.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from progresscalc.models import MilestoneDefinition, Template

_ZERO = Decimal(0)
_HUNDRED = Decimal(100)


def calculate_percent(milestone_state: Mapping[str, Any], template: Template) -> int:
    """Compute a component's percent complete from its milestone state.

    Discrete milestones contribute their full weight when complete; partial
    milestones contribute weight * (fraction / 100). The sum is clamped to
    [0, 100] and rounded half-up to a whole percent.

    Args:
        milestone_state: Milestone name -> bool (discrete) or 0-100 (partial)
        template: Effective template snapshot

    Returns:
        Integer percent complete in [0, 100]
    """
    total = sum(
        (milestone_contribution(m, milestone_state.get(m.name)) for m in template.milestones),
        _ZERO,
    )
    total = min(max(total, _ZERO), _HUNDRED)
    return int(total.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def milestone_contribution(milestone: MilestoneDefinition, value: Any) -> Decimal:
    """Weight earned by one milestone for the given state value."""
    progress = milestone_value(value)
    if progress is None:
        return _ZERO

    weight = Decimal(milestone.weight)
    if milestone.is_partial:
        return weight * progress / _HUNDRED
    return weight if progress >= _HUNDRED else _ZERO


def milestone_value(value: Any) -> Decimal | None:
    """Normalise a stored milestone value to a 0-100 percentage.

    Booleans map to 100/0, numbers are clamped to [0, 100]; anything else
    (missing, text, NaN) counts as not started.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return _HUNDRED if value else _ZERO
    if isinstance(value, (int, float, Decimal)):
        number = Decimal(str(value))
        if not number.is_finite():
            return None
        return min(max(number, _ZERO), _HUNDRED)
    return None


def validate_milestone_value(milestone: MilestoneDefinition, value: Any) -> str | None:
    """Return an error message when value cannot be written for milestone."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = Decimal(str(value))
        if not number.is_finite() or not _ZERO <= number <= _HUNDRED:
            return f"{milestone.name}: value {value!r} must be between 0 and 100"
        if not milestone.is_partial and number not in (_ZERO, _HUNDRED):
            return f"{milestone.name}: discrete milestone accepts true/false or 0/100, got {value!r}"
        return None
    return f"{milestone.name}: value {value!r} must be a boolean or a number"
