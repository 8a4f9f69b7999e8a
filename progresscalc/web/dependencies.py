"""Shared dependencies for ProgressCalc web routes.

The upstream permission service authenticates callers and forwards their
identity in headers; routes receive it as an Actor.

Usage:
    from fastapi import Depends
    from progresscalc.web.dependencies import get_actor, get_template_service

    @router.put("/templates/{component_type}")
    async def update(
        actor: Actor = Depends(get_actor),
        service: TemplateService = Depends(get_template_service),
    ):
        ...
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from progresscalc.db.connection import get_session
from progresscalc.models import Actor
from progresscalc.progress.service import ProgressService
from progresscalc.templates.service import TemplateService


def get_actor(
    x_actor_id: str = Header(..., min_length=1),
    x_actor_role: str = Header(..., min_length=1),
) -> Actor:
    """Caller identity from the X-Actor-Id / X-Actor-Role headers."""
    return Actor(user_id=x_actor_id, role=x_actor_role.strip().lower())


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_session() as session:
        yield session


def get_template_service(session: AsyncSession = Depends(get_db_session)) -> TemplateService:
    return TemplateService(session)


def get_progress_service(session: AsyncSession = Depends(get_db_session)) -> ProgressService:
    return ProgressService(session)
