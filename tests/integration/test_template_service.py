"""Integration tests for template administration: update, clone, history, summary."""

from __future__ import annotations

import pytest
import pytest_asyncio

from progresscalc.core.locking import LocalTemplateLock
from progresscalc.exceptions import (
    ConcurrencyConflict,
    TemplateNotFoundError,
    TemplatePermissionError,
    WeightValidationError,
)
from progresscalc.models import MilestoneWeight, TemplateScope
from progresscalc.templates.service import TemplateService

pytestmark = pytest.mark.integration

NEW_FIELD_WELD = [
    ("Fit-Up", 20),
    ("Weld Made", 50),
    ("Punch", 10),
    ("Test", 15),
    ("Restore", 5),
]


@pytest.fixture
def lock() -> LocalTemplateLock:
    return LocalTemplateLock()


@pytest.fixture
def service(seeded_session, lock) -> TemplateService:
    return TemplateService(seeded_session, lock=lock, chunk_size=2)


@pytest_asyncio.fixture()
async def field_welds(seeded_session, add_components, test_project_id):
    return await add_components(
        seeded_session,
        test_project_id,
        "field_weld",
        [
            {"Fit-Up": True},
            {"Fit-Up": True, "Weld Made": True},
            {"Fit-Up": True, "Weld Made": True, "Punch": True, "Test": True, "Restore": True},
        ],
    )


class TestUpdateTemplate:
    @pytest.mark.asyncio
    async def test_apply_to_existing_recalculates_all_and_audits(
        self, service, seeded_session, field_welds, read_percents, admin, test_project_id
    ):
        result = await service.update_template(
            test_project_id,
            "field_weld",
            NEW_FIELD_WELD,
            admin,
            apply_to_existing=True,
            expected_version=0,
        )

        assert result.affected_count == 3
        assert result.previous_version == 0
        assert result.template.version == 1
        assert result.template.scope == TemplateScope.PROJECT

        stored = await read_percents(seeded_session, test_project_id, "field_weld")
        assert sorted(stored.values()) == [20, 70, 100]

        history = await service.get_history(test_project_id, "field_weld")
        assert len(history) == 1
        record = history[0]
        assert record.id == result.audit_id
        assert record.actor == admin.user_id
        assert record.applied_to_existing is True
        assert record.affected_component_count == 3
        assert record.old_version == 0 and record.new_version == 1
        assert [w["weight"] for w in record.old_weights] == [10, 60, 10, 15, 5]
        assert [w["weight"] for w in record.new_weights] == [20, 50, 10, 15, 5]

    @pytest.mark.asyncio
    async def test_without_apply_leaves_components_alone(
        self, service, seeded_session, field_welds, read_percents, admin, test_project_id
    ):
        result = await service.update_template(
            test_project_id, "field_weld", NEW_FIELD_WELD, admin, expected_version=0
        )

        assert result.affected_count == 0
        stored = await read_percents(seeded_session, test_project_id, "field_weld")
        assert set(stored.values()) == {0}

        last = await service.get_last_change(test_project_id, "field_weld")
        assert last.applied_to_existing is False
        assert last.affected_component_count == 0

    @pytest.mark.asyncio
    async def test_sum_of_95_rejected_without_side_effects(
        self, service, admin, test_project_id
    ):
        weights = [
            MilestoneWeight(milestone_name=name, weight=weight)
            for name, weight in [("Fit-Up", 10), ("Weld Made", 55), ("Punch", 10), ("Test", 15), ("Restore", 5)]
        ]

        with pytest.raises(WeightValidationError) as exc_info:
            await service.update_template(
                test_project_id, "field_weld", weights, admin, expected_version=0
            )

        assert "sum=95, expected 100" in str(exc_info.value)
        template = await service.get_effective_template(test_project_id, "field_weld")
        assert template.scope == TemplateScope.SYSTEM
        assert await service.get_history(test_project_id) == []

    @pytest.mark.asyncio
    async def test_infinite_weight_rejected_as_out_of_range(self, service, admin, test_project_id):
        weights = [("Fit-Up", float("inf")), ("Weld Made", 60), ("Punch", 10), ("Test", 15), ("Restore", 5)]

        with pytest.raises(WeightValidationError) as exc_info:
            await service.update_template(
                test_project_id, "field_weld", weights, admin, expected_version=0
            )

        assert exc_info.value.fields == ["Fit-Up"]
        assert await service.get_history(test_project_id) == []

    @pytest.mark.asyncio
    async def test_expected_version_is_required(self, service, admin, test_project_id):
        with pytest.raises(TypeError):
            await service.update_template(test_project_id, "field_weld", NEW_FIELD_WELD, admin)

    @pytest.mark.asyncio
    async def test_missing_milestone_rejected(self, service, admin, test_project_id):
        weights = [("Fit-Up", 15), ("Weld Made", 60), ("Punch", 10), ("Test", 15)]

        with pytest.raises(WeightValidationError) as exc_info:
            await service.update_template(
                test_project_id, "field_weld", weights, admin, expected_version=0
            )

        assert exc_info.value.fields == ["Restore"]

    @pytest.mark.asyncio
    async def test_unknown_milestone_rejected(self, service, admin, test_project_id):
        weights = [("Fit-Up", 10), ("Weld Made", 60), ("Punch", 10), ("Test", 15), ("Paint", 5)]

        with pytest.raises(WeightValidationError) as exc_info:
            await service.update_template(
                test_project_id, "field_weld", weights, admin, expected_version=0
            )

        assert "Paint" in exc_info.value.fields
        assert "invalid milestone name" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_flags_and_order_carried_over(self, service, admin, test_project_id):
        result = await service.update_template(
            test_project_id, "field_weld", NEW_FIELD_WELD, admin, expected_version=0
        )

        weld_made = result.template.milestones[1]
        assert weld_made.name == "Weld Made"
        assert weld_made.order == 2
        assert weld_made.requires_welder

    @pytest.mark.asyncio
    async def test_unknown_type(self, service, admin, test_project_id):
        with pytest.raises(TemplateNotFoundError):
            await service.update_template(
                test_project_id, "rocket", [("Launch", 100)], admin, expected_version=0
            )

    @pytest.mark.asyncio
    async def test_role_not_allowed(self, service, foreman, test_project_id):
        with pytest.raises(TemplatePermissionError):
            await service.update_template(
                test_project_id, "field_weld", NEW_FIELD_WELD, foreman, expected_version=0
            )

        assert await service.get_history(test_project_id) == []

    @pytest.mark.asyncio
    async def test_editor_roles_configurable(self, seeded_session, lock, foreman, test_project_id):
        service = TemplateService(seeded_session, lock=lock, editor_roles=["foreman"])

        result = await service.update_template(
            test_project_id, "field_weld", NEW_FIELD_WELD, foreman, expected_version=0
        )

        assert result.template.version == 1


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_stale_expected_version_conflicts(self, service, admin, test_project_id):
        await service.update_template(
            test_project_id, "spool", _spool(10, 35, 40, 5, 5, 5), admin, expected_version=0
        )

        with pytest.raises(ConcurrencyConflict) as exc_info:
            await service.update_template(
                test_project_id, "spool", _spool(5, 45, 35, 5, 5, 5), admin, expected_version=0
            )

        assert exc_info.value.retryable
        template = await service.get_effective_template(test_project_id, "spool")
        assert template.version == 1
        assert len(await service.get_history(test_project_id, "spool")) == 1

    @pytest.mark.asyncio
    async def test_refetch_and_retry_succeeds(self, service, admin, test_project_id):
        await service.update_template(
            test_project_id, "spool", _spool(10, 35, 40, 5, 5, 5), admin, expected_version=0
        )
        current = await service.get_effective_template(test_project_id, "spool")

        result = await service.update_template(
            test_project_id,
            "spool",
            _spool(5, 45, 35, 5, 5, 5),
            admin,
            expected_version=current.revision,
        )

        assert result.template.version == 2

    @pytest.mark.asyncio
    async def test_second_writer_blocked_while_key_held(self, service, lock, admin, test_project_id):
        async with lock.hold([(test_project_id, "spool")], owner="other-admin"):
            with pytest.raises(ConcurrencyConflict):
                await service.update_template(
                    test_project_id, "spool", _spool(10, 35, 40, 5, 5, 5), admin, expected_version=0
                )

        template = await service.get_effective_template(test_project_id, "spool")
        assert template.scope == TemplateScope.SYSTEM

    @pytest.mark.asyncio
    async def test_other_types_not_blocked(self, service, lock, admin, test_project_id):
        async with lock.hold([(test_project_id, "spool")], owner="other-admin"):
            result = await service.update_template(
                test_project_id, "field_weld", NEW_FIELD_WELD, admin, expected_version=0
            )

        assert result.template.version == 1


class TestCloneAndSummary:
    @pytest.mark.asyncio
    async def test_clone_is_idempotent(self, service, admin, test_project_id):
        first = await service.clone_system_templates(test_project_id, admin)
        second = await service.clone_system_templates(test_project_id, admin)

        assert len(first.cloned_types) == 11
        assert not first.skipped
        assert second.skipped
        assert second.cloned_types == []
        assert await service.get_history(test_project_id) == []

    @pytest.mark.asyncio
    async def test_forced_reclone_audits_each_replaced_type(self, service, admin, test_project_id):
        await service.clone_system_templates(test_project_id, admin)
        await service.update_template(
            test_project_id, "field_weld", NEW_FIELD_WELD, admin, expected_version=1
        )

        result = await service.clone_system_templates(test_project_id, admin, force=True)

        assert len(result.cloned_types) == 11
        restored = await service.get_effective_template(test_project_id, "field_weld")
        assert [m.weight for m in restored.milestones] == [10, 60, 10, 15, 5]
        assert restored.version == 3

        history = await service.get_history(test_project_id, limit=100)
        assert len(history) == 12
        assert history[0].id > history[-1].id

    @pytest.mark.asyncio
    async def test_clone_requires_editor_role(self, service, foreman, test_project_id):
        with pytest.raises(TemplatePermissionError):
            await service.clone_system_templates(test_project_id, foreman)

    @pytest.mark.asyncio
    async def test_summary_reports_overrides(self, service, admin, test_project_id):
        before = await service.get_template_summary(test_project_id)
        await service.update_template(
            test_project_id, "field_weld", NEW_FIELD_WELD, admin, expected_version=0
        )
        after = await service.get_template_summary(test_project_id)

        assert not before.has_templates
        assert after.has_templates
        assert len(after.component_types) == 11

        lines = {line.component_type: line for line in after.component_types}
        assert lines["field_weld"].scope == TemplateScope.PROJECT
        assert lines["field_weld"].version == 1
        assert lines["spool"].scope == TemplateScope.SYSTEM
        assert lines["threaded_pipe"].workflow_type.value == "hybrid"
        assert all(line.total_weight == 100 for line in after.component_types)

    @pytest.mark.asyncio
    async def test_preview_counts_components(self, service, field_welds, test_project_id):
        assert await service.preview_affected_count(test_project_id, "field_weld") == 3
        assert await service.preview_affected_count(test_project_id, "spool") == 0
        assert await service.preview_affected_count("proj-beta", "field_weld") == 0

        with pytest.raises(TemplateNotFoundError):
            await service.preview_affected_count(test_project_id, "rocket")


def _spool(*weights: int) -> list[tuple[str, int]]:
    names = ["Receive", "Erect", "Connect", "Punch", "Test", "Restore"]
    return list(zip(names, weights))
