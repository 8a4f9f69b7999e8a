"""ProgressCalc Pydantic models for type-safe data validation.

Templates are immutable snapshots: a recalculation pass holds one instance
for its whole duration, so nothing can change the weights under it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class TemplateScope(str, Enum):
    """Where a template lives."""

    SYSTEM = "system"
    PROJECT = "project"


class WorkflowType(str, Enum):
    """Discrete templates only have done/not-done milestones."""

    DISCRETE = "discrete"
    HYBRID = "hybrid"


class Actor(BaseModel):
    """Caller identity, pre-authorized by the permission service."""

    model_config = ConfigDict(
        json_schema_extra={"example": {"user_id": "pm@acme.ie", "role": "project_manager"}}
    )

    user_id: str
    role: str


class MilestoneWeight(BaseModel):
    """One (milestone, weight) pair as entered by an operator."""

    model_config = ConfigDict(
        json_schema_extra={"example": {"milestone_name": "Weld Made", "weight": 60}}
    )

    milestone_name: str
    weight: Any  # Range and type are checked by the weight validator


class MilestoneDefinition(BaseModel):
    """A milestone entry inside a template."""

    model_config = ConfigDict(frozen=True)

    name: str
    weight: int
    order: int
    is_partial: bool = False
    requires_welder: bool = False


class Template(BaseModel):
    """Milestone weight template for one component type at one scope."""

    model_config = ConfigDict(frozen=True)

    component_type: str
    scope: TemplateScope
    project_id: str | None = None
    version: int
    milestones: tuple[MilestoneDefinition, ...]
    valid_from: datetime | None = None
    created_by: str | None = None

    @property
    def milestone_names(self) -> list[str]:
        return [m.name for m in self.milestones]

    @property
    def weights(self) -> list[MilestoneWeight]:
        return [
            MilestoneWeight(milestone_name=m.name, weight=m.weight)
            for m in self.milestones
        ]

    @property
    def total_weight(self) -> int:
        return sum(m.weight for m in self.milestones)

    @property
    def workflow_type(self) -> WorkflowType:
        if any(m.is_partial for m in self.milestones):
            return WorkflowType.HYBRID
        return WorkflowType.DISCRETE

    @property
    def revision(self) -> int:
        """Token for the optimistic check: project version, or 0 on system fallback."""
        return self.version if self.scope == TemplateScope.PROJECT else 0

    def weights_as_dicts(self) -> list[dict[str, Any]]:
        return [{"milestone_name": m.name, "weight": m.weight} for m in self.milestones]


class UpdateResult(BaseModel):
    """Outcome of a successful template update."""

    template: Template
    previous_version: int  # 0 when the project had no override
    applied_to_existing: bool
    affected_count: int
    audit_id: int


class CloneResult(BaseModel):
    """Outcome of cloning system templates into a project."""

    project_id: str
    cloned_types: list[str] = Field(default_factory=list)
    skipped: bool = False  # Project already had templates and force was not set


class TemplateChangeRecord(BaseModel):
    """Immutable audit entry for one template mutation."""

    id: int
    project_id: str
    component_type: str
    actor: str
    old_weights: list[dict[str, Any]]
    new_weights: list[dict[str, Any]]
    old_version: int
    new_version: int
    applied_to_existing: bool
    affected_component_count: int
    timestamp: datetime


class ComponentProgress(BaseModel):
    """Component milestone state with its cached percent complete."""

    id: UUID
    project_id: str
    component_type: str
    milestone_state: dict[str, Any] = Field(default_factory=dict)
    percent_complete: int
    last_updated_at: datetime | None = None


class ComponentTypeSummary(BaseModel):
    """Per-type line of the project template summary."""

    component_type: str
    scope: TemplateScope
    version: int
    milestone_count: int
    total_weight: int
    workflow_type: WorkflowType
    last_updated: datetime | None = None


class ProjectTemplateSummary(BaseModel):
    """Settings-page overview of a project's templates."""

    project_id: str
    has_templates: bool
    component_types: list[ComponentTypeSummary] = Field(default_factory=list)
