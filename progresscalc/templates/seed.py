"""System template seeding from YAML.

The seed file maps each component type to its ordered milestone list:

    field_weld:
      - {name: Fit-Up, weight: 10}
      - {name: Weld Made, weight: 60, requires_welder: true}
      ...

Seeding is idempotent: types that already have an active system template
are skipped. Platform-level weight changes go through write_system_template.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from sqlalchemy.ext.asyncio import AsyncSession

from progresscalc.exceptions import ConfigurationError, WeightValidationError
from progresscalc.models import MilestoneDefinition
from progresscalc.templates.store import TemplateStore
from progresscalc.templates.validator import ensure_valid

logger = logging.getLogger(__name__)


@dataclass
class SeedResult:
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def load_seed_file(path: Path) -> dict[str, list[MilestoneDefinition]]:
    """Parse and validate the seed file.

    Raises:
        ConfigurationError: If the file is missing, malformed or has invalid weights
    """
    if not path.exists():
        raise ConfigurationError(f"System template file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict) or not data:
        raise ConfigurationError(f"Expected mapping of component types in {path}")

    templates: dict[str, list[MilestoneDefinition]] = {}
    for component_type, entries in data.items():
        if not isinstance(entries, list):
            raise ConfigurationError(f"{component_type}: expected a list of milestones")
        milestones = [
            _to_milestone(component_type, index, entry)
            for index, entry in enumerate(entries, start=1)
        ]
        try:
            ensure_valid(milestones)
        except WeightValidationError as e:
            raise ConfigurationError(f"{component_type}: {e}") from e
        templates[str(component_type)] = milestones

    logger.info(f"Loaded {len(templates)} system template(s) from {path}")
    return templates


def _to_milestone(component_type: str, order: int, entry: Any) -> MilestoneDefinition:
    if not isinstance(entry, dict) or "name" not in entry or "weight" not in entry:
        raise ConfigurationError(
            f"{component_type}: milestone {order} needs 'name' and 'weight'"
        )
    weight = entry["weight"]
    if isinstance(weight, bool) or not isinstance(weight, int):
        raise ConfigurationError(
            f"{component_type}: weight for {entry['name']!r} must be an integer"
        )
    return MilestoneDefinition(
        name=str(entry["name"]),
        weight=weight,
        order=order,
        is_partial=bool(entry.get("partial", False)),
        requires_welder=bool(entry.get("requires_welder", False)),
    )


async def seed_system_templates(session: AsyncSession, path: Path) -> SeedResult:
    """Write every template in the seed file. Caller commits."""
    store = TemplateStore(session)
    result = SeedResult()

    for component_type, milestones in load_seed_file(path).items():
        if await store.get_system_template(component_type) is not None:
            result.skipped.append(component_type)
            continue

        await store.write_system_template(component_type, milestones, created_by="seed")
        result.created.append(component_type)

    logger.info(
        f"Seeded system templates: {len(result.created)} created, "
        f"{len(result.skipped)} already present"
    )
    return result
