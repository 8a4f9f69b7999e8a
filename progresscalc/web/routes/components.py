"""Component milestone routes.

Routes:
- GET  /api/projects/{project_id}/components/{component_id}            - Progress
- POST /api/projects/{project_id}/components/{component_id}/milestones - Update milestones
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from progresscalc.models import ComponentProgress
from progresscalc.progress.service import ProgressService
from progresscalc.web.dependencies import get_progress_service
from progresscalc.web.models import MilestoneUpdateRequest

router = APIRouter(prefix="/api/projects/{project_id}", tags=["components"])


@router.get("/components/{component_id}", response_model=ComponentProgress)
async def get_component(
    project_id: str,
    component_id: UUID,
    service: ProgressService = Depends(get_progress_service),
):
    return await service.get_component_progress(component_id, project_id)


@router.post("/components/{component_id}/milestones", response_model=ComponentProgress)
async def update_milestones(
    project_id: str,
    component_id: UUID,
    request: MilestoneUpdateRequest,
    service: ProgressService = Depends(get_progress_service),
):
    """Merge milestone values and return the recomputed percent complete."""
    progress = await service.apply_milestone_update(
        component_id, request.changes, project_id=project_id
    )
    await service.session.commit()
    return progress
