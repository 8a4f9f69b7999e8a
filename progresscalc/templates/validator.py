"""Milestone weight validation.

A template is valid when every weight is an integer in [0, 100], the weights
sum to exactly 100 and at least one weight is positive. Individual zero
weights are allowed alongside positive ones.

Pure functions: no I/O, safe to call before persistence and on every stored
template that is loaded.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from progresscalc.exceptions import WeightValidationError
from progresscalc.models import MilestoneDefinition, MilestoneWeight

REQUIRED_TOTAL = 100
MIN_WEIGHT = 0
MAX_WEIGHT = 100


@dataclass
class WeightValidationResult:
    """Outcome of validating one set of weights."""

    total: int | float
    out_of_range: list[str] = field(default_factory=list)
    duplicate_names: list[str] = field(default_factory=list)
    blank_names: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def fields(self) -> list[str]:
        return self.out_of_range + self.duplicate_names

    def raise_for_errors(self) -> None:
        if self.errors:
            raise WeightValidationError(self.errors, total=self.total, fields=self.fields)


def validate(weights: Iterable[Any]) -> WeightValidationResult:
    """Validate (milestone_name, weight) pairs.

    Args:
        weights: MilestoneWeight / MilestoneDefinition models, mappings with
            milestone_name + weight, or (name, weight) tuples

    Returns:
        WeightValidationResult listing every violation found
    """
    pairs = as_pairs(weights)

    out_of_range: list[str] = []
    total: Decimal = Decimal(0)
    any_positive = False

    for name, weight in pairs:
        numeric = _as_integer_weight(weight)
        if numeric is None or not MIN_WEIGHT <= numeric <= MAX_WEIGHT:
            out_of_range.append(name)
        if numeric is not None:
            total += numeric
            if numeric > 0:
                any_positive = True
        else:
            # Still count finite non-integral numbers so the reported sum is the real one
            as_number = _as_number(weight)
            if as_number is not None:
                total += as_number

    counts = Counter(name for name, _ in pairs if name)
    duplicates = sorted(name for name, count in counts.items() if count > 1)
    blank_names = sum(1 for name, _ in pairs if not name)

    reported_total: int | float = int(total) if total == total.to_integral_value() else float(total)

    errors: list[str] = []
    if not pairs:
        errors.append("template has no milestones")
    if out_of_range:
        errors.append(
            f"weights must be integers between {MIN_WEIGHT} and {MAX_WEIGHT}: "
            + ", ".join(
                f"{name}={weight!r}" for name, weight in pairs if name in out_of_range
            )
        )
    if pairs and total != REQUIRED_TOTAL:
        errors.append(f"sum={reported_total}, expected {REQUIRED_TOTAL}")
    if pairs and not any_positive:
        errors.append("at least one weight must be greater than 0")
    if duplicates:
        errors.append("duplicate milestone names: " + ", ".join(duplicates))
    if blank_names:
        errors.append(f"{blank_names} milestone(s) without a name")

    return WeightValidationResult(
        total=reported_total,
        out_of_range=out_of_range,
        duplicate_names=duplicates,
        blank_names=blank_names,
        errors=errors,
    )


def ensure_valid(weights: Iterable[Any]) -> WeightValidationResult:
    """Validate and raise WeightValidationError on any violation."""
    result = validate(weights)
    result.raise_for_errors()
    return result


def as_pairs(weights: Iterable[Any]) -> list[tuple[str, Any]]:
    """Normalise weight entries to (stripped name, raw weight) pairs."""
    return [_as_pair(entry) for entry in weights]


def _as_pair(entry: Any) -> tuple[str, Any]:
    if isinstance(entry, MilestoneWeight):
        return entry.milestone_name.strip(), entry.weight
    if isinstance(entry, MilestoneDefinition):
        return entry.name.strip(), entry.weight
    if isinstance(entry, Mapping):
        name = entry.get("milestone_name", entry.get("name", ""))
        return str(name or "").strip(), entry.get("weight")
    name, weight = entry
    return str(name or "").strip(), weight


def _as_integer_weight(value: Any) -> int | None:
    # bool is an int subclass but never a weight
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Decimal) and value.is_finite() and value == value.to_integral_value():
        return int(value)
    return None


def _as_number(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = Decimal(str(value))
        # NaN and infinities are out of range and have no meaningful sum
        return number if number.is_finite() else None
    return None
