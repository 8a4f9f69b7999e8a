"""Template administration routes for the ProgressCalc JSON API.

Routes:
- GET  /api/projects/{project_id}/templates                              - Template summary
- GET  /api/projects/{project_id}/templates/{component_type}             - Effective template
- GET  /api/projects/{project_id}/templates/{component_type}/preview     - Affected count
- PUT  /api/projects/{project_id}/templates/{component_type}             - Update weights
- POST /api/projects/{project_id}/templates/{component_type}/recalculate - Recalculate
- POST /api/projects/{project_id}/templates/clone                        - Clone system templates
- GET  /api/projects/{project_id}/template-changes                       - Audit history
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from progresscalc.models import (
    Actor,
    CloneResult,
    ProjectTemplateSummary,
    TemplateChangeRecord,
)
from progresscalc.templates.service import TemplateService
from progresscalc.web.dependencies import get_actor, get_template_service
from progresscalc.web.models import (
    CloneRequest,
    PreviewResponse,
    RecalculateResponse,
    TemplateUpdateRequest,
    TemplateUpdateResponse,
    TemplateView,
)

router = APIRouter(prefix="/api/projects/{project_id}", tags=["templates"])


@router.get("/templates", response_model=ProjectTemplateSummary)
async def get_template_summary(
    project_id: str,
    service: TemplateService = Depends(get_template_service),
):
    return await service.get_template_summary(project_id)


# Registered before the {component_type} routes so "clone" is not taken as a type
@router.post("/templates/clone", response_model=CloneResult)
async def clone_templates(
    project_id: str,
    request: Optional[CloneRequest] = None,
    actor: Actor = Depends(get_actor),
    service: TemplateService = Depends(get_template_service),
):
    """Copy system templates into the project (no-op if it already has them)."""
    force = request.force if request is not None else False
    return await service.clone_system_templates(project_id, actor, force=force)


@router.get("/templates/{component_type}", response_model=TemplateView)
async def get_template(
    project_id: str,
    component_type: str,
    service: TemplateService = Depends(get_template_service),
):
    template = await service.get_effective_template(project_id, component_type)
    return TemplateView.from_template(template)


@router.get("/templates/{component_type}/preview", response_model=PreviewResponse)
async def preview_update(
    project_id: str,
    component_type: str,
    service: TemplateService = Depends(get_template_service),
):
    """Number of components an apply-to-existing save would recalculate."""
    count = await service.preview_affected_count(project_id, component_type)
    return PreviewResponse(
        project_id=project_id, component_type=component_type, affected_count=count
    )


@router.put("/templates/{component_type}", response_model=TemplateUpdateResponse)
async def update_template(
    project_id: str,
    component_type: str,
    request: TemplateUpdateRequest,
    actor: Actor = Depends(get_actor),
    service: TemplateService = Depends(get_template_service),
):
    """Save new weights.

    Returns 422 with the computed sum when weights are invalid, 409 when
    another save got there first (refresh and retry), 503 when recalculation
    failed and nothing was applied.
    """
    result = await service.update_template(
        project_id,
        component_type,
        request.weights,
        actor,
        apply_to_existing=request.apply_to_existing,
        expected_version=request.expected_version,
    )
    return TemplateUpdateResponse.from_result(result)


@router.post(
    "/templates/{component_type}/recalculate", response_model=RecalculateResponse
)
async def recalculate(
    project_id: str,
    component_type: str,
    actor: Actor = Depends(get_actor),
    service: TemplateService = Depends(get_template_service),
):
    service.authorize(actor)
    count = await service.recalculate_for_template(project_id, component_type)
    return RecalculateResponse(
        project_id=project_id, component_type=component_type, affected_count=count
    )


@router.get("/template-changes", response_model=list[TemplateChangeRecord])
async def template_changes(
    project_id: str,
    component_type: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    service: TemplateService = Depends(get_template_service),
):
    """Audit history, newest first."""
    return await service.get_history(project_id, component_type, limit)
