"""Error taxonomy for the progress engine.

Validation and permission errors are local and need caller correction.
Concurrency conflicts and transaction failures are retryable: a retry always
observes the state as it was before the failed call.
"""

from __future__ import annotations

from collections.abc import Sequence


class ProgressCalcError(Exception):
    """Base exception for ProgressCalc."""

    retryable = False


class ConfigurationError(ProgressCalcError):
    """Configuration file is invalid or missing."""

    pass


class WeightValidationError(ProgressCalcError, ValueError):
    """Milestone weights violate the template invariant.

    Raised before any persistence. Carries the computed sum and the
    offending milestone names so the admin UI can show the exact problem.
    """

    def __init__(
        self,
        errors: Sequence[str],
        total: int | float | None = None,
        fields: Sequence[str] = (),
    ):
        self.errors = list(errors)
        self.total = total
        self.fields = list(fields)
        super().__init__("; ".join(self.errors))


class TemplateNotFoundError(ProgressCalcError, LookupError):
    """No system template exists for a component type (configuration defect)."""

    def __init__(self, component_type: str):
        self.component_type = component_type
        super().__init__(f"No system template for component type '{component_type}'")


class ComponentNotFoundError(ProgressCalcError, LookupError):
    """Component id does not exist."""

    pass


class TemplatePermissionError(ProgressCalcError, PermissionError):
    """Actor is not authorized to mutate templates."""

    def __init__(self, actor_id: str, role: str, allowed: Sequence[str]):
        self.actor_id = actor_id
        self.role = role
        super().__init__(
            f"Permission denied for {actor_id}: role '{role}' is not one of "
            f"{', '.join(allowed)}"
        )


class ConcurrencyConflict(ProgressCalcError):
    """Another writer holds or changed the (project, component type) template.

    Refetch the template and retry.
    """

    retryable = True

    def __init__(self, project_id: str, component_type: str, detail: str):
        self.project_id = project_id
        self.component_type = component_type
        super().__init__(
            f"Template {project_id}/{component_type} was modified concurrently: "
            f"{detail}. Refresh and try again."
        )


class TransactionFailure(ProgressCalcError):
    """A recalculation pass failed partway and was rolled back."""

    retryable = True

    def __init__(
        self, project_id: str, component_type: str, processed: int, cause: str
    ):
        self.project_id = project_id
        self.component_type = component_type
        self.processed = processed
        super().__init__(
            f"Recalculation of {project_id}/{component_type} failed after "
            f"{processed} component(s): {cause}; no changes applied"
        )


class MilestoneStateError(ProgressCalcError, ValueError):
    """Milestone state names unknown milestones or carries invalid values."""

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class AuditLogImmutableError(ProgressCalcError):
    """Attempt to modify or delete an audit record."""

    pass
