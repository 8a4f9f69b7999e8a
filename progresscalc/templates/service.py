"""Template administration operations.

Composes the validator, the template store, the recalculation engine and the
audit logger. Every mutating call:

1. checks the actor's role (the permission service already authenticated it)
2. validates the weights before touching storage
3. holds the (project_id, component_type) single-writer section
4. runs in one transaction that is committed on success and rolled back on
   any failure, so callers never observe half-applied state
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Iterable, Sequence
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from progresscalc.config import get_config
from progresscalc.core import audit_logger
from progresscalc.core.locking import TemplateLock, get_template_lock
from progresscalc.exceptions import (
    ConcurrencyConflict,
    TemplatePermissionError,
    WeightValidationError,
)
from progresscalc.models import (
    Actor,
    CloneResult,
    ComponentTypeSummary,
    MilestoneDefinition,
    ProjectTemplateSummary,
    Template,
    TemplateChangeRecord,
    TemplateScope,
    UpdateResult,
)
from progresscalc.recalc.engine import RecalculationEngine
from progresscalc.templates.store import TemplateStore
from progresscalc.templates.validator import as_pairs, validate

logger = logging.getLogger(__name__)

RECALCULATION_OWNER = "recalculation"


class TemplateService:
    """Entry points used by the template administration UI and the CLI."""

    def __init__(
        self,
        session: AsyncSession,
        lock: TemplateLock | None = None,
        chunk_size: int | None = None,
        editor_roles: Sequence[str] | None = None,
    ):
        config = get_config()
        self.session = session
        self.lock = lock or get_template_lock()
        self.chunk_size = chunk_size or config.recalc.chunk_size
        self.editor_roles = tuple(editor_roles or config.templates.editor_roles)
        self.store = TemplateStore(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_effective_template(self, project_id: str, component_type: str) -> Template:
        return await self.store.get_effective_template(project_id, component_type)

    async def preview_affected_count(self, project_id: str, component_type: str) -> int:
        """Components an apply-to-existing update would recalculate."""
        # Unknown types are a configuration defect, not a zero count
        await self.store.get_effective_template(project_id, component_type)
        engine = RecalculationEngine(self.session, self.chunk_size)
        return await engine.count_components(project_id, component_type)

    async def get_history(
        self, project_id: str, component_type: str | None = None, limit: int = 50
    ) -> list[TemplateChangeRecord]:
        return await audit_logger.fetch_changes(self.session, project_id, component_type, limit)

    async def get_last_change(
        self, project_id: str, component_type: str
    ) -> TemplateChangeRecord | None:
        return await audit_logger.fetch_last_change(self.session, project_id, component_type)

    async def get_template_summary(self, project_id: str) -> ProjectTemplateSummary:
        """Effective template overview for every component type."""
        overridden = set(await self.store.list_project_component_types(project_id))

        lines: list[ComponentTypeSummary] = []
        for component_type in await self.store.list_component_types():
            template = await self.store.get_effective_template(project_id, component_type)
            lines.append(
                ComponentTypeSummary(
                    component_type=component_type,
                    scope=template.scope,
                    version=template.version,
                    milestone_count=len(template.milestones),
                    total_weight=template.total_weight,
                    workflow_type=template.workflow_type,
                    last_updated=template.valid_from,
                )
            )

        return ProjectTemplateSummary(
            project_id=project_id,
            has_templates=bool(overridden),
            component_types=lines,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update_template(
        self,
        project_id: str,
        component_type: str,
        new_weights: Iterable[Any],
        actor: Actor,
        apply_to_existing: bool = False,
        *,
        expected_version: int,
    ) -> UpdateResult:
        """Swap in new weights for (project, type) and record the change.

        Args:
            project_id: Project to update
            component_type: Component type to update
            new_weights: (milestone_name, weight) pairs covering every milestone
            actor: Pre-authorized caller
            apply_to_existing: Recalculate existing components before returning
            expected_version: Revision the caller edited (project version, or 0
                for the system fallback); a save against a moved revision conflicts

        Raises:
            TemplatePermissionError: Actor role may not edit templates
            WeightValidationError: Weights invalid or milestone names mismatch
            TemplateNotFoundError: Unknown component type
            ConcurrencyConflict: Key held by another writer, or revision moved
            TransactionFailure: Recalculation failed; nothing was applied
        """
        self.authorize(actor)

        weights = list(new_weights)
        validate(weights).raise_for_errors()

        async with self.lock.hold([(project_id, component_type)], owner=actor.user_id):
            async with self._transaction():
                current = await self.store.get_effective_template(project_id, component_type)
                if current.revision != expected_version:
                    raise ConcurrencyConflict(
                        project_id,
                        component_type,
                        f"expected revision {expected_version}, found {current.revision}",
                    )

                milestones = _apply_weights(current, weights)
                new_template = await self.store.replace_project_template(
                    project_id, component_type, milestones, created_by=actor.user_id
                )

                affected = 0
                if apply_to_existing:
                    engine = RecalculationEngine(self.session, self.chunk_size)
                    affected = await engine.recalculate_for_template(
                        project_id, component_type, template=new_template
                    )

                audit_id = await audit_logger.record_change(
                    self.session,
                    project_id=project_id,
                    component_type=component_type,
                    actor=actor.user_id,
                    old_weights=current.weights_as_dicts(),
                    new_weights=new_template.weights_as_dicts(),
                    applied_to_existing=apply_to_existing,
                    affected_count=affected,
                    old_version=current.revision,
                    new_version=new_template.version,
                )

        logger.info(
            f"Template {project_id}/{component_type} updated to v{new_template.version} "
            f"by {actor.user_id} (apply_to_existing={apply_to_existing}, affected={affected})"
        )
        return UpdateResult(
            template=new_template,
            previous_version=current.revision,
            applied_to_existing=apply_to_existing,
            affected_count=affected,
            audit_id=audit_id,
        )

    async def recalculate_for_template(self, project_id: str, component_type: str) -> int:
        """Recompute every component of the type in one all-or-nothing pass."""
        async with self.lock.hold([(project_id, component_type)], owner=RECALCULATION_OWNER):
            async with self._transaction():
                engine = RecalculationEngine(self.session, self.chunk_size)
                return await engine.recalculate_for_template(project_id, component_type)

    async def clone_system_templates(
        self, project_id: str, actor: Actor, force: bool = False
    ) -> CloneResult:
        """Copy the system templates into project scope.

        No-op when the project already has templates unless force is set.
        A forced re-clone is a weight mutation and is audited per type.
        """
        self.authorize(actor)

        component_types = await self.store.list_component_types()
        keys = [(project_id, component_type) for component_type in component_types]

        async with self.lock.hold(keys, owner=actor.user_id):
            async with self._transaction():
                previous = {}
                if force:
                    for component_type in component_types:
                        previous[component_type] = await self.store.get_effective_template(
                            project_id, component_type
                        )

                cloned = await self.store.clone_system_templates(
                    project_id, created_by=actor.user_id, force=force
                )

                for template in cloned:
                    old = previous.get(template.component_type)
                    if old is None or old.scope != TemplateScope.PROJECT:
                        continue
                    await audit_logger.record_change(
                        self.session,
                        project_id=project_id,
                        component_type=template.component_type,
                        actor=actor.user_id,
                        old_weights=old.weights_as_dicts(),
                        new_weights=template.weights_as_dicts(),
                        applied_to_existing=False,
                        affected_count=0,
                        old_version=old.revision,
                        new_version=template.version,
                    )

        return CloneResult(
            project_id=project_id,
            cloned_types=[t.component_type for t in cloned],
            skipped=not cloned and not force,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def authorize(self, actor: Actor) -> None:
        """Raise TemplatePermissionError unless the role may edit templates."""
        if actor.role not in self.editor_roles:
            raise TemplatePermissionError(actor.user_id, actor.role, self.editor_roles)

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[None, None]:
        """Commit on success; roll back on any error, cancellation included."""
        try:
            yield
            await self.session.commit()
        except BaseException:
            await self.session.rollback()
            raise


def _apply_weights(current: Template, weights: Sequence[Any]) -> list[MilestoneDefinition]:
    """New milestone list: current names, order and flags with the new weights.

    Raises:
        WeightValidationError: If names are missing from or unknown to the template
    """
    new_weights = dict(as_pairs(weights))
    known = current.milestone_names

    unknown = [name for name in new_weights if name not in known]
    missing = [name for name in known if name not in new_weights]
    errors = []
    if unknown:
        errors.append("invalid milestone name(s): " + ", ".join(unknown))
    if missing:
        errors.append("missing weight for milestone(s): " + ", ".join(missing))
    if errors:
        raise WeightValidationError(
            errors, total=sum(int(w) for w in new_weights.values()), fields=unknown + missing
        )

    return [
        MilestoneDefinition(
            name=m.name,
            weight=int(new_weights[m.name]),
            order=m.order,
            is_partial=m.is_partial,
            requires_welder=m.requires_welder,
        )
        for m in current.milestones
    ]
