"""SQLAlchemy async database models for ProgressCalc.

Templates are stored one row per milestone per version with SCD Type-2
validity columns. The active version is the set of rows with valid_to IS NULL.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Text,
    DDL,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

from progresscalc.exceptions import AuditLogImmutableError


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class SystemTemplateModel(Base):
    """System-wide milestone template row (one per milestone per version)."""

    __tablename__ = "system_milestone_templates"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    component_type: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    milestone_name: Mapped[str] = mapped_column(Text, nullable=False)
    milestone_order: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False)
    is_partial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_welder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # SCD2 temporal fields
    valid_from: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    valid_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_by: Mapped[str] = mapped_column(Text, nullable=False, default="system")

    __table_args__ = (
        UniqueConstraint(
            "component_type", "version", "milestone_name", name="uq_system_template_version"
        ),
        CheckConstraint("weight >= 0 AND weight <= 100", name="check_system_weight_range"),
        CheckConstraint(
            "valid_to IS NULL OR valid_to >= valid_from", name="check_system_valid_period"
        ),
        # At most one active row per (component_type, milestone_name)
        Index(
            "idx_system_template_active",
            "component_type",
            "milestone_name",
            unique=True,
            postgresql_where=text("valid_to IS NULL"),
            sqlite_where=text("valid_to IS NULL"),
        ),
    )


class ProjectTemplateModel(Base):
    """Project override template row (one per milestone per version)."""

    __tablename__ = "project_milestone_templates"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    component_type: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    milestone_name: Mapped[str] = mapped_column(Text, nullable=False)
    milestone_order: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False)
    is_partial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_welder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # SCD2 temporal fields
    valid_from: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    valid_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_by: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        # Two writers racing to the same next version collide here
        UniqueConstraint(
            "project_id",
            "component_type",
            "version",
            "milestone_name",
            name="uq_project_template_version",
        ),
        CheckConstraint("weight >= 0 AND weight <= 100", name="check_project_weight_range"),
        CheckConstraint(
            "valid_to IS NULL OR valid_to >= valid_from", name="check_project_valid_period"
        ),
        # At most one active row per (project_id, component_type, milestone_name)
        Index(
            "idx_project_template_active",
            "project_id",
            "component_type",
            "milestone_name",
            unique=True,
            postgresql_where=text("valid_to IS NULL"),
            sqlite_where=text("valid_to IS NULL"),
        ),
    )


class ComponentModel(Base):
    """Tracked component with cached percent complete."""

    __tablename__ = "components"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False)
    component_type: Mapped[str] = mapped_column(Text, nullable=False)

    # {"Fit-Up": true, "Fabricate": 40, ...}; may carry stale keys
    milestone_state: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    percent_complete: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Bumped by every write; milestone updates compare-and-swap on it
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    last_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "percent_complete >= 0 AND percent_complete <= 100",
            name="check_percent_complete_range",
        ),
        Index("idx_components_project_type", "project_id", "component_type"),
    )


class TemplateChangeModel(Base):
    """Append-only audit trail of template weight changes."""

    __tablename__ = "template_changes"

    # Integer key gives the log a total order
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(Text, nullable=False)
    component_type: Mapped[str] = mapped_column(Text, nullable=False)
    changed_by: Mapped[str] = mapped_column(Text, nullable=False)

    old_weights: Mapped[list] = mapped_column(JSON, nullable=False)
    new_weights: Mapped[list] = mapped_column(JSON, nullable=False)
    old_version: Mapped[int] = mapped_column(Integer, nullable=False)
    new_version: Mapped[int] = mapped_column(Integer, nullable=False)

    applied_to_existing: Mapped[bool] = mapped_column(Boolean, nullable=False)
    affected_component_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "affected_component_count >= 0", name="check_affected_count_non_negative"
        ),
        Index("idx_template_changes_lookup", "project_id", "component_type", "created_at"),
    )


@event.listens_for(TemplateChangeModel, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:
    raise AuditLogImmutableError(f"Template change #{target.id} is immutable")


@event.listens_for(TemplateChangeModel, "before_delete")
def _reject_audit_delete(mapper, connection, target) -> None:
    raise AuditLogImmutableError(f"Template change #{target.id} cannot be deleted")


# The ORM guards above only see unit-of-work flushes. These triggers also
# reject Core update()/delete() statements and raw SQL.
_SQLITE_AUDIT_TRIGGERS = [
    DDL(
        "CREATE TRIGGER IF NOT EXISTS template_changes_no_update "
        "BEFORE UPDATE ON template_changes "
        "BEGIN SELECT RAISE(ABORT, 'template_changes is append-only'); END"
    ),
    DDL(
        "CREATE TRIGGER IF NOT EXISTS template_changes_no_delete "
        "BEFORE DELETE ON template_changes "
        "BEGIN SELECT RAISE(ABORT, 'template_changes is append-only'); END"
    ),
]

_POSTGRES_AUDIT_TRIGGERS = [
    DDL(
        "CREATE OR REPLACE FUNCTION reject_template_change_mutation() RETURNS trigger AS $$ "
        "BEGIN RAISE EXCEPTION 'template_changes is append-only'; END; "
        "$$ LANGUAGE plpgsql"
    ),
    DDL(
        "CREATE TRIGGER template_changes_append_only "
        "BEFORE UPDATE OR DELETE ON template_changes "
        "FOR EACH ROW EXECUTE FUNCTION reject_template_change_mutation()"
    ),
]

for _ddl in _SQLITE_AUDIT_TRIGGERS:
    event.listen(TemplateChangeModel.__table__, "after_create", _ddl.execute_if(dialect="sqlite"))
for _ddl in _POSTGRES_AUDIT_TRIGGERS:
    event.listen(
        TemplateChangeModel.__table__, "after_create", _ddl.execute_if(dialect="postgresql")
    )
