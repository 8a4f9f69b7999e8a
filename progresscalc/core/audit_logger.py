"""Append-only audit trail of template weight changes.

Records are only ever inserted; the ORM rejects updates and deletes of
TemplateChangeModel rows.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from progresscalc.db.models import TemplateChangeModel
from progresscalc.models import TemplateChangeRecord


async def record_change(
    session: AsyncSession,
    project_id: str,
    component_type: str,
    actor: str,
    old_weights: Sequence[dict[str, Any]],
    new_weights: Sequence[dict[str, Any]],
    applied_to_existing: bool,
    affected_count: int,
    old_version: int = 0,
    new_version: int = 0,
) -> int:
    """Append one immutable template change record.

    Args:
        session: Active DB session. Caller is responsible for commit.
        project_id: Project whose template changed
        component_type: Component type whose template changed
        actor: User id of the operator
        old_weights: [{"milestone_name", "weight"}] before the change
        new_weights: [{"milestone_name", "weight"}] after the change
        applied_to_existing: Whether existing components were recalculated
        affected_count: Components recalculated (0 when not applied)
        old_version: Project version replaced (0 = system fallback)
        new_version: Project version now active

    Returns:
        Audit record id
    """
    entry = TemplateChangeModel(
        project_id=project_id,
        component_type=component_type,
        changed_by=actor,
        old_weights=[dict(w) for w in old_weights],
        new_weights=[dict(w) for w in new_weights],
        old_version=old_version,
        new_version=new_version,
        applied_to_existing=applied_to_existing,
        affected_component_count=affected_count,
        created_at=datetime.now(timezone.utc),
    )
    session.add(entry)
    await session.flush()  # Get ID without committing
    return entry.id


async def fetch_changes(
    session: AsyncSession,
    project_id: str,
    component_type: str | None = None,
    limit: int = 50,
) -> list[TemplateChangeRecord]:
    """Return change records, newest first."""
    stmt = select(TemplateChangeModel).where(TemplateChangeModel.project_id == project_id)
    if component_type is not None:
        stmt = stmt.where(TemplateChangeModel.component_type == component_type)
    stmt = stmt.order_by(TemplateChangeModel.id.desc()).limit(limit)

    rows = (await session.execute(stmt)).scalars().all()
    return [_to_record(row) for row in rows]


async def fetch_last_change(
    session: AsyncSession, project_id: str, component_type: str
) -> TemplateChangeRecord | None:
    """Most recent change for (project, type): "last modified by X at T"."""
    changes = await fetch_changes(session, project_id, component_type, limit=1)
    return changes[0] if changes else None


def _to_record(row: TemplateChangeModel) -> TemplateChangeRecord:
    return TemplateChangeRecord(
        id=row.id,
        project_id=row.project_id,
        component_type=row.component_type,
        actor=row.changed_by,
        old_weights=row.old_weights,
        new_weights=row.new_weights,
        old_version=row.old_version,
        new_version=row.new_version,
        applied_to_existing=row.applied_to_existing,
        affected_component_count=row.affected_component_count,
        timestamp=row.created_at,
    )
