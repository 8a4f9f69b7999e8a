"""Integration tests for all-or-nothing batch recalculation."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import select

from progresscalc.core.locking import LocalTemplateLock
from progresscalc.db.models import ComponentModel
from progresscalc.exceptions import ConcurrencyConflict, TransactionFailure
from progresscalc.recalc import engine as engine_module
from progresscalc.recalc.engine import RecalculationEngine
from progresscalc.templates.service import TemplateService
from progresscalc.templates.store import TemplateStore

pytestmark = pytest.mark.integration

NEW_SPOOL = [("Receive", 10), ("Erect", 30), ("Connect", 40), ("Punch", 10), ("Test", 5), ("Restore", 5)]


@pytest_asyncio.fixture()
async def spools(seeded_session, add_components, test_project_id):
    states = [
        {"Receive": True},
        {"Receive": True, "Erect": True},
        {"Receive": True, "Erect": True, "Connect": True},
        {"Receive": True, "Erect": True, "Connect": True, "Punch": True},
        {"Receive": True, "Erect": True, "Connect": True, "Punch": True, "Test": True},
    ]
    # Stored values deliberately stale so a pass is observable
    return await add_components(seeded_session, test_project_id, "spool", states, percent_complete=1)


@pytest.fixture
def lock() -> LocalTemplateLock:
    return LocalTemplateLock()


@pytest.fixture
def service(seeded_session, lock) -> TemplateService:
    return TemplateService(seeded_session, lock=lock, chunk_size=2)


def fail_on_call(monkeypatch, n: int, exc: BaseException) -> None:
    """Make the n-th percent calculation raise exc; later calls succeed."""
    real = engine_module.calculate_percent
    calls = {"count": 0}

    def flaky(state, template):
        calls["count"] += 1
        if calls["count"] == n:
            raise exc
        return real(state, template)

    monkeypatch.setattr(engine_module, "calculate_percent", flaky)


@pytest.mark.asyncio
async def test_recalculate_updates_every_component(
    service, seeded_session, spools, read_percents, test_project_id
):
    count = await service.recalculate_for_template(test_project_id, "spool")

    assert count == 5
    stored = await read_percents(seeded_session, test_project_id, "spool")
    assert sorted(stored.values()) == [5, 45, 85, 90, 95]

    versions = await seeded_session.execute(
        select(ComponentModel.row_version).where(ComponentModel.component_type == "spool")
    )
    assert set(versions.scalars()) == {2}


@pytest.mark.asyncio
async def test_recalculation_is_idempotent(
    service, seeded_session, spools, read_percents, test_project_id
):
    await service.recalculate_for_template(test_project_id, "spool")
    first = await read_percents(seeded_session, test_project_id, "spool")

    await service.recalculate_for_template(test_project_id, "spool")
    second = await read_percents(seeded_session, test_project_id, "spool")

    assert first == second


@pytest.mark.asyncio
async def test_failure_mid_pass_rolls_back_everything(
    service, seeded_session, spools, read_percents, monkeypatch, admin, test_project_id
):
    fail_on_call(monkeypatch, 4, RuntimeError("disk full"))

    with pytest.raises(TransactionFailure) as exc_info:
        await service.update_template(
            test_project_id, "spool", NEW_SPOOL, admin, apply_to_existing=True, expected_version=0
        )

    assert exc_info.value.retryable
    assert exc_info.value.processed == 3
    assert "no changes applied" in str(exc_info.value)

    stored = await read_percents(seeded_session, test_project_id, "spool")
    assert set(stored.values()) == {1}
    template = await service.get_effective_template(test_project_id, "spool")
    assert template.revision == 0
    assert await service.get_history(test_project_id) == []


@pytest.mark.asyncio
async def test_retry_after_failure_succeeds(
    service, seeded_session, spools, read_percents, monkeypatch, admin, test_project_id
):
    fail_on_call(monkeypatch, 3, RuntimeError("connection reset"))
    with pytest.raises(TransactionFailure):
        await service.update_template(
            test_project_id, "spool", NEW_SPOOL, admin, apply_to_existing=True, expected_version=0
        )
    result = await service.update_template(
        test_project_id, "spool", NEW_SPOOL, admin, apply_to_existing=True, expected_version=0
    )

    assert result.affected_count == 5
    assert result.template.version == 1
    stored = await read_percents(seeded_session, test_project_id, "spool")
    assert sorted(stored.values()) == [10, 40, 80, 90, 95]


@pytest.mark.asyncio
async def test_cancellation_rolls_back_and_propagates(
    service, seeded_session, spools, read_percents, monkeypatch, lock, test_project_id
):
    fail_on_call(monkeypatch, 3, asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        await service.recalculate_for_template(test_project_id, "spool")

    stored = await read_percents(seeded_session, test_project_id, "spool")
    assert set(stored.values()) == {1}
    assert await lock.is_locked((test_project_id, "spool")) is None


@pytest.mark.asyncio
async def test_recalculation_blocked_while_template_change_in_progress(
    service, lock, spools, test_project_id
):
    async with lock.hold([(test_project_id, "spool")], owner="pm@acme.ie"):
        with pytest.raises(ConcurrencyConflict):
            await service.recalculate_for_template(test_project_id, "spool")


@pytest.mark.asyncio
async def test_engine_uses_given_snapshot(seeded_session, spools, read_percents, test_project_id):
    store = TemplateStore(seeded_session)
    system = await store.get_system_template("spool")
    snapshot = system.model_copy(
        update={
            "milestones": tuple(
                m.model_copy(update={"weight": w})
                for m, w in zip(system.milestones, [100, 0, 0, 0, 0, 0])
            )
        }
    )
    engine = RecalculationEngine(seeded_session, chunk_size=3)

    count = await engine.recalculate_for_template(test_project_id, "spool", template=snapshot)
    await seeded_session.commit()

    assert count == 5
    assert engine.stats.chunks == 2
    stored = await read_percents(seeded_session, test_project_id, "spool")
    assert set(stored.values()) == {100}


@pytest.mark.asyncio
async def test_engine_counts_nothing_for_empty_type(seeded_session, test_project_id):
    engine = RecalculationEngine(seeded_session)

    assert await engine.recalculate_for_template(test_project_id, "valve") == 0
    assert await engine.count_components(test_project_id, "valve") == 0


def test_engine_rejects_bad_chunk_size():
    with pytest.raises(ValueError):
        RecalculationEngine(None, chunk_size=0)
