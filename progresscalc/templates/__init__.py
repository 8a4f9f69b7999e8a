"""Milestone weight templates: validation, storage and administration."""

from progresscalc.templates.service import TemplateService
from progresscalc.templates.store import TemplateStore
from progresscalc.templates.validator import validate

__all__ = ["TemplateService", "TemplateStore", "validate"]
