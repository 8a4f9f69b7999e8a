"""SCD Type-2 milestone template storage.

Resolves the effective template for (project, component type) through an
ordered lookup chain: the active project override first, then the active
system template. Writes close the active version and insert the next one in
the same transaction, so there is never more than one active version.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from progresscalc.db.models import ProjectTemplateModel, SystemTemplateModel
from progresscalc.exceptions import ConcurrencyConflict, TemplateNotFoundError
from progresscalc.models import MilestoneDefinition, Template, TemplateScope
from progresscalc.templates.validator import ensure_valid

logger = logging.getLogger(__name__)

TemplateRow = SystemTemplateModel | ProjectTemplateModel


class TemplateStore:
    """Read and write milestone templates at system and project scope."""

    def __init__(self, session: AsyncSession):
        """Initialize template store with database session.

        Args:
            session: SQLAlchemy async session
        """
        self.session = session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_effective_template(self, project_id: str, component_type: str) -> Template:
        """Return the project override if active, else the system template.

        Raises:
            TemplateNotFoundError: If the component type has no system template
        """
        chain: list[Callable[[], Awaitable[Template | None]]] = [
            lambda: self.get_project_template(project_id, component_type),
            lambda: self.get_system_template(component_type),
        ]
        for resolve in chain:
            template = await resolve()
            if template is not None:
                return template

        raise TemplateNotFoundError(component_type)

    async def get_system_template(self, component_type: str) -> Template | None:
        """Active system template for a component type, or None."""
        stmt = (
            select(SystemTemplateModel)
            .where(
                and_(
                    SystemTemplateModel.component_type == component_type,
                    SystemTemplateModel.valid_to.is_(None),
                )
            )
            .order_by(SystemTemplateModel.milestone_order.asc())
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return _to_template(rows, TemplateScope.SYSTEM, component_type)

    async def get_project_template(
        self, project_id: str, component_type: str
    ) -> Template | None:
        """Active project override for (project, type), or None."""
        stmt = (
            select(ProjectTemplateModel)
            .where(
                and_(
                    ProjectTemplateModel.project_id == project_id,
                    ProjectTemplateModel.component_type == component_type,
                    ProjectTemplateModel.valid_to.is_(None),
                )
            )
            .order_by(ProjectTemplateModel.milestone_order.asc())
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return _to_template(rows, TemplateScope.PROJECT, component_type, project_id)

    async def list_component_types(self) -> list[str]:
        """Component types that have an active system template."""
        stmt = (
            select(SystemTemplateModel.component_type)
            .where(SystemTemplateModel.valid_to.is_(None))
            .distinct()
            .order_by(SystemTemplateModel.component_type)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_project_component_types(self, project_id: str) -> list[str]:
        """Component types with an active override in the project."""
        stmt = (
            select(ProjectTemplateModel.component_type)
            .where(
                ProjectTemplateModel.project_id == project_id,
                ProjectTemplateModel.valid_to.is_(None),
            )
            .distinct()
            .order_by(ProjectTemplateModel.component_type)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def project_has_templates(self, project_id: str) -> bool:
        stmt = select(func.count()).where(ProjectTemplateModel.project_id == project_id)
        return (await self.session.execute(stmt)).scalar_one() > 0

    async def current_project_version(self, project_id: str, component_type: str) -> int:
        """Highest project version ever written (0 = never overridden)."""
        stmt = select(func.max(ProjectTemplateModel.version)).where(
            ProjectTemplateModel.project_id == project_id,
            ProjectTemplateModel.component_type == component_type,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def replace_project_template(
        self,
        project_id: str,
        component_type: str,
        milestones: Sequence[MilestoneDefinition],
        created_by: str,
    ) -> Template:
        """Atomic SCD2 swap: close the active project version, insert the next.

        Nothing is committed; the caller owns the transaction.

        Raises:
            WeightValidationError: If the milestones violate the weight invariant
            ConcurrencyConflict: If another writer inserted the same version
        """
        ensure_valid(milestones)

        previous_version = await self.current_project_version(project_id, component_type)
        new_version = previous_version + 1
        now = datetime.now(timezone.utc)

        await self.session.execute(
            update(ProjectTemplateModel)
            .where(
                and_(
                    ProjectTemplateModel.project_id == project_id,
                    ProjectTemplateModel.component_type == component_type,
                    ProjectTemplateModel.valid_to.is_(None),
                )
            )
            .values(valid_to=now)
        )

        rows = [
            ProjectTemplateModel(
                project_id=project_id,
                component_type=component_type,
                version=new_version,
                milestone_name=m.name,
                milestone_order=m.order,
                weight=m.weight,
                is_partial=m.is_partial,
                requires_welder=m.requires_welder,
                valid_from=now,
                valid_to=None,
                created_by=created_by,
            )
            for m in milestones
        ]
        self.session.add_all(rows)

        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflict(
                project_id, component_type, f"version {new_version} already exists"
            ) from exc

        logger.info(
            f"Project template {project_id}/{component_type}: "
            f"v{previous_version} -> v{new_version} by {created_by}"
        )

        template = _to_template(rows, TemplateScope.PROJECT, component_type, project_id)
        assert template is not None
        return template

    async def write_system_template(
        self,
        component_type: str,
        milestones: Sequence[MilestoneDefinition],
        created_by: str = "system",
    ) -> Template:
        """Insert a new active system template version (seeding/platform edits)."""
        ensure_valid(milestones)

        stmt = select(func.max(SystemTemplateModel.version)).where(
            SystemTemplateModel.component_type == component_type
        )
        previous_version = (await self.session.execute(stmt)).scalar_one_or_none() or 0
        now = datetime.now(timezone.utc)

        await self.session.execute(
            update(SystemTemplateModel)
            .where(
                and_(
                    SystemTemplateModel.component_type == component_type,
                    SystemTemplateModel.valid_to.is_(None),
                )
            )
            .values(valid_to=now)
        )

        rows = [
            SystemTemplateModel(
                component_type=component_type,
                version=previous_version + 1,
                milestone_name=m.name,
                milestone_order=m.order,
                weight=m.weight,
                is_partial=m.is_partial,
                requires_welder=m.requires_welder,
                valid_from=now,
                valid_to=None,
                created_by=created_by,
            )
            for m in milestones
        ]
        self.session.add_all(rows)
        await self.session.flush()

        template = _to_template(rows, TemplateScope.SYSTEM, component_type)
        assert template is not None
        return template

    async def clone_system_templates(
        self, project_id: str, created_by: str, force: bool = False
    ) -> list[Template]:
        """Copy every active system template into project scope.

        Idempotent: returns [] when the project already has templates, unless
        force is set, in which case every type is swapped to a fresh clone.
        """
        if not force and await self.project_has_templates(project_id):
            logger.info(f"Project {project_id} already has templates; clone skipped")
            return []

        cloned: list[Template] = []
        for component_type in await self.list_component_types():
            system_template = await self.get_system_template(component_type)
            if system_template is None:
                continue
            cloned.append(
                await self.replace_project_template(
                    project_id,
                    component_type,
                    system_template.milestones,
                    created_by=created_by,
                )
            )

        logger.info(f"Cloned {len(cloned)} system template(s) into project {project_id}")
        return cloned


def _to_template(
    rows: Sequence[TemplateRow],
    scope: TemplateScope,
    component_type: str,
    project_id: str | None = None,
) -> Template | None:
    """Build a Template from the rows of one version.

    Stored templates are re-validated on the way out.
    """
    if not rows:
        return None

    ordered = sorted(rows, key=lambda row: row.milestone_order)
    milestones = tuple(
        MilestoneDefinition(
            name=row.milestone_name,
            weight=row.weight,
            order=row.milestone_order,
            is_partial=bool(row.is_partial),
            requires_welder=bool(row.requires_welder),
        )
        for row in ordered
    )
    ensure_valid(milestones)

    first = ordered[0]
    return Template(
        component_type=component_type,
        scope=scope,
        project_id=project_id,
        version=first.version,
        milestones=milestones,
        valid_from=first.valid_from,
        created_by=first.created_by,
    )
