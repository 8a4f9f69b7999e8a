"""Batch recalculation of percent_complete for one (project, component type).

One template snapshot is resolved before the pass and used for every
component. Components are read in keyset-paginated chunks and each chunk is
flushed with a bulk UPDATE, all inside the caller's transaction. Chunk rows are
read FOR UPDATE and their row_version is bumped, so a concurrent milestone
update either waits for the pass or retries against the new template:

- success: the caller commits once, every component moves together
- failure: TransactionFailure is raised; the caller rolls back, and every
  flushed chunk disappears with it
- cancellation: CancelledError propagates unchanged; the rollback leaves
  exactly the state that existed before the pass started

No chunk is ever committed on its own, so a retry always starts from the
pre-pass state and produces the same result for the same snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from progresscalc.db.models import ComponentModel
from progresscalc.exceptions import TransactionFailure
from progresscalc.models import Template
from progresscalc.progress.calculator import calculate_percent
from progresscalc.templates.store import TemplateStore

logger = logging.getLogger(__name__)


@dataclass
class RecalculationStats:
    """Counters for one recalculation pass."""

    processed: int = 0
    changed: int = 0
    chunks: int = 0


class RecalculationEngine:
    """Recompute cached percent_complete values with a fixed template snapshot."""

    def __init__(self, session: AsyncSession, chunk_size: int = 500):
        """Initialize engine.

        Args:
            session: Active async session; the caller owns commit/rollback
            chunk_size: Components per read/flush chunk
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.session = session
        self.chunk_size = chunk_size
        self.stats = RecalculationStats()

    async def count_components(self, project_id: str, component_type: str) -> int:
        """Components a pass would touch (pre-commit preview)."""
        stmt = select(func.count()).where(
            ComponentModel.project_id == project_id,
            ComponentModel.component_type == component_type,
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def recalculate_for_template(
        self,
        project_id: str,
        component_type: str,
        template: Template | None = None,
    ) -> int:
        """Recompute percent_complete for every component of the type.

        Args:
            project_id: Project to recalculate
            component_type: Component type to recalculate
            template: Snapshot to use; resolved once from the store when omitted

        Returns:
            Number of components recalculated

        Raises:
            TemplateNotFoundError: If no template exists for the type
            TransactionFailure: If any component fails; nothing may be committed
        """
        if template is None:
            template = await TemplateStore(self.session).get_effective_template(
                project_id, component_type
            )

        self.stats = RecalculationStats()
        logger.info(
            f"Recalculating {project_id}/{component_type} with "
            f"{template.scope.value} template v{template.version}"
        )

        last_id: UUID | None = None
        try:
            while True:
                chunk = await self._load_chunk(project_id, component_type, last_id)
                if not chunk:
                    break

                await self._write_chunk(chunk, template)
                last_id = chunk[-1][0]
        except asyncio.CancelledError:
            logger.warning(
                f"Recalculation of {project_id}/{component_type} cancelled after "
                f"{self.stats.processed} component(s); pending chunks will be rolled back"
            )
            raise
        except Exception as exc:
            logger.error(
                f"Recalculation of {project_id}/{component_type} failed after "
                f"{self.stats.processed} component(s): {exc}",
                exc_info=True,
            )
            raise TransactionFailure(
                project_id, component_type, self.stats.processed, str(exc)
            ) from exc

        logger.info(
            f"Recalculated {self.stats.processed} {component_type} component(s) in "
            f"{project_id} ({self.stats.changed} changed, {self.stats.chunks} chunk(s))"
        )
        return self.stats.processed

    async def _load_chunk(
        self, project_id: str, component_type: str, after_id: UUID | None
    ) -> list[tuple[UUID, dict, int, int]]:
        stmt = select(
            ComponentModel.id,
            ComponentModel.milestone_state,
            ComponentModel.percent_complete,
            ComponentModel.row_version,
        ).where(
            ComponentModel.project_id == project_id,
            ComponentModel.component_type == component_type,
        )
        if after_id is not None:
            stmt = stmt.where(ComponentModel.id > after_id)
        stmt = (
            stmt.order_by(ComponentModel.id.asc())
            .limit(self.chunk_size)
            .with_for_update(of=ComponentModel)
        )

        result = await self.session.execute(stmt)
        return [tuple(row) for row in result.all()]

    async def _write_chunk(
        self, chunk: list[tuple[UUID, dict, int, int]], template: Template
    ) -> None:
        now = datetime.now(timezone.utc)
        params = []
        for component_id, milestone_state, previous, row_version in chunk:
            percent = calculate_percent(milestone_state or {}, template)
            if percent != previous:
                self.stats.changed += 1
            params.append(
                {
                    "id": component_id,
                    "percent_complete": percent,
                    "row_version": row_version + 1,
                    "last_updated_at": now,
                }
            )
            self.stats.processed += 1

        await self.session.execute(update(ComponentModel), params)
        await self.session.flush()
        self.stats.chunks += 1
