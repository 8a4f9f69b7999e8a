"""Request/response models for the ProgressCalc JSON API.

Domain models (ProjectTemplateSummary, TemplateChangeRecord, CloneResult,
ComponentProgress) are returned as-is; the models here cover request bodies
and template views that add the revision token.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from progresscalc.models import (
    MilestoneDefinition,
    MilestoneWeight,
    Template,
    TemplateScope,
    UpdateResult,
    WorkflowType,
)


# ============================================================================
# Template Models
# ============================================================================


class TemplateView(BaseModel):
    """Effective template as shown in the admin UI.

    Used by: GET /api/projects/{project_id}/templates/{component_type}
    """

    component_type: str
    scope: TemplateScope
    project_id: Optional[str] = None
    version: int
    revision: int  # Send back as expected_version when saving
    workflow_type: WorkflowType
    total_weight: int
    milestones: list[MilestoneDefinition]
    valid_from: Optional[datetime] = None
    created_by: Optional[str] = None

    @classmethod
    def from_template(cls, template: Template) -> TemplateView:
        return cls(
            component_type=template.component_type,
            scope=template.scope,
            project_id=template.project_id,
            version=template.version,
            revision=template.revision,
            workflow_type=template.workflow_type,
            total_weight=template.total_weight,
            milestones=list(template.milestones),
            valid_from=template.valid_from,
            created_by=template.created_by,
        )


class TemplateUpdateRequest(BaseModel):
    """Used by: PUT /api/projects/{project_id}/templates/{component_type}"""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "weights": [
                    {"milestone_name": "Fit-Up", "weight": 15},
                    {"milestone_name": "Weld Made", "weight": 55},
                    {"milestone_name": "Punch", "weight": 10},
                    {"milestone_name": "Test", "weight": 15},
                    {"milestone_name": "Restore", "weight": 5},
                ],
                "apply_to_existing": True,
                "expected_version": 0,
            }
        }
    )

    weights: list[MilestoneWeight]
    apply_to_existing: bool = False
    # Revision the edit was based on; a moved revision is a 409
    expected_version: int = Field(..., ge=0)


class TemplateUpdateResponse(BaseModel):
    template: TemplateView
    previous_version: int
    applied_to_existing: bool
    affected_count: int
    audit_id: int

    @classmethod
    def from_result(cls, result: UpdateResult) -> TemplateUpdateResponse:
        return cls(
            template=TemplateView.from_template(result.template),
            previous_version=result.previous_version,
            applied_to_existing=result.applied_to_existing,
            affected_count=result.affected_count,
            audit_id=result.audit_id,
        )


class PreviewResponse(BaseModel):
    """Components an apply-to-existing save would recalculate."""

    project_id: str
    component_type: str
    affected_count: int


class RecalculateResponse(BaseModel):
    project_id: str
    component_type: str
    affected_count: int


class CloneRequest(BaseModel):
    force: bool = False


# ============================================================================
# Component Models
# ============================================================================


class MilestoneUpdateRequest(BaseModel):
    """Used by: POST /api/projects/{project_id}/components/{component_id}/milestones"""

    changes: dict[str, Any] = Field(..., min_length=1)
