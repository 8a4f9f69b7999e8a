"""Component registration and milestone updates.

Every write recomputes percent_complete against the current effective
template. Stored milestone_state may keep keys from earlier template
versions; the calculator ignores them.

Milestone updates never take the template lock. Instead the write is a
compare-and-swap on the component's row_version: if a recalculation (or
another update) changed the row after it was read, the update re-reads the
component and the effective template and tries again.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from progresscalc.db.models import ComponentModel
from progresscalc.exceptions import (
    ComponentNotFoundError,
    ConcurrencyConflict,
    MilestoneStateError,
)
from progresscalc.models import ComponentProgress, Template
from progresscalc.progress.calculator import calculate_percent, validate_milestone_value
from progresscalc.templates.store import TemplateStore

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 3


class ProgressService:
    """Write path for component milestone state. Caller commits."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.store = TemplateStore(session)

    async def register_component(
        self,
        project_id: str,
        component_type: str,
        milestone_state: Mapping[str, Any] | None = None,
        component_id: UUID | None = None,
    ) -> ComponentProgress:
        """Create a component and store its computed percent complete.

        Raises:
            TemplateNotFoundError: Unknown component type
            MilestoneStateError: State names unknown milestones or has bad values
        """
        template = await self.store.get_effective_template(project_id, component_type)
        state = dict(milestone_state or {})
        _check_changes(template, state)

        component = ComponentModel(
            project_id=project_id,
            component_type=component_type,
            milestone_state=state,
            percent_complete=calculate_percent(state, template),
            last_updated_at=datetime.now(timezone.utc),
        )
        if component_id is not None:
            component.id = component_id

        self.session.add(component)
        await self.session.flush()
        return _to_progress(component)

    async def apply_milestone_update(
        self,
        component_id: UUID,
        changes: Mapping[str, Any],
        project_id: str | None = None,
    ) -> ComponentProgress:
        """Merge milestone changes into a component and recompute its percent.

        Args:
            component_id: Component to update
            changes: Milestone name -> bool (discrete) or 0-100 (partial)
            project_id: When given, the component must belong to this project

        Raises:
            ComponentNotFoundError: Unknown component id
            MilestoneStateError: Changes name unknown milestones or have bad values
            ConcurrencyConflict: The component kept changing between read and write
        """
        for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
            component = await self._load(component_id, project_id, for_update=True)
            template = await self.store.get_effective_template(
                component.project_id, component.component_type
            )
            _check_changes(template, changes)

            state = {**(component.milestone_state or {}), **changes}
            percent = calculate_percent(state, template)
            if await self._swap(component, state, percent):
                logger.debug(
                    f"Component {component_id}: {component.percent_complete}% -> {percent}% "
                    f"({', '.join(changes)}, template v{template.revision})"
                )
                return await self.get_component_progress(component_id)

            logger.info(
                f"Component {component_id} changed during update, retrying "
                f"({attempt}/{MAX_UPDATE_ATTEMPTS})"
            )

        raise ConcurrencyConflict(
            component.project_id,
            component.component_type,
            f"component {component_id} kept changing during update",
        )

    async def get_component_progress(
        self, component_id: UUID, project_id: str | None = None
    ) -> ComponentProgress:
        return _to_progress(await self._load(component_id, project_id))

    async def _load(
        self, component_id: UUID, project_id: str | None = None, for_update: bool = False
    ) -> ComponentModel:
        # populate_existing: bulk recalculation writes bypass the identity map
        stmt = (
            select(ComponentModel)
            .where(ComponentModel.id == component_id)
            .execution_options(populate_existing=True)
        )
        if project_id is not None:
            stmt = stmt.where(ComponentModel.project_id == project_id)
        if for_update:
            stmt = stmt.with_for_update()
        component = (await self.session.execute(stmt)).scalar_one_or_none()
        if component is None:
            raise ComponentNotFoundError(f"Component {component_id} not found")
        return component

    async def _swap(self, component: ComponentModel, state: dict, percent: int) -> bool:
        """Write state and percent if the row is still at the version that was read."""
        stmt = (
            update(ComponentModel)
            .where(
                ComponentModel.id == component.id,
                ComponentModel.row_version == component.row_version,
            )
            .values(
                milestone_state=state,
                percent_complete=percent,
                row_version=ComponentModel.row_version + 1,
                last_updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1


def _check_changes(template: Template, changes: Mapping[str, Any]) -> None:
    milestones = {m.name: m for m in template.milestones}
    errors = []
    for name, value in changes.items():
        milestone = milestones.get(name)
        if milestone is None:
            errors.append(f"unknown milestone '{name}' for {template.component_type}")
            continue
        error = validate_milestone_value(milestone, value)
        if error:
            errors.append(error)
    if errors:
        raise MilestoneStateError(errors)


def _to_progress(component: ComponentModel) -> ComponentProgress:
    return ComponentProgress(
        id=component.id,
        project_id=component.project_id,
        component_type=component.component_type,
        milestone_state=dict(component.milestone_state or {}),
        percent_complete=component.percent_complete,
        last_updated_at=component.last_updated_at,
    )
