"""Database layer for ProgressCalc with async SQLAlchemy."""

from progresscalc.db.connection import get_session, init_db
from progresscalc.db.models import (
    Base,
    ComponentModel,
    ProjectTemplateModel,
    SystemTemplateModel,
    TemplateChangeModel,
)

__all__ = [
    "Base",
    "ComponentModel",
    "ProjectTemplateModel",
    "SystemTemplateModel",
    "TemplateChangeModel",
    "get_session",
    "init_db",
]
