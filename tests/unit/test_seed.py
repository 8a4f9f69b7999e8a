"""Unit tests for system template seed file loading."""

from __future__ import annotations

import pytest

from progresscalc.config import get_config
from progresscalc.exceptions import ConfigurationError
from progresscalc.templates.seed import load_seed_file

EXPECTED_TYPES = {
    "spool",
    "field_weld",
    "support",
    "valve",
    "fitting",
    "flange",
    "instrument",
    "tubing",
    "hose",
    "misc_component",
    "threaded_pipe",
}


@pytest.fixture
def packaged():
    return load_seed_file(get_config().seed_templates_path)


def test_packaged_file_has_all_types(packaged):
    assert set(packaged) == EXPECTED_TYPES


def test_every_packaged_template_sums_to_100(packaged):
    for component_type, milestones in packaged.items():
        assert sum(m.weight for m in milestones) == 100, component_type


def test_orders_follow_file_position(packaged):
    assert [m.order for m in packaged["spool"]] == [1, 2, 3, 4, 5, 6]


def test_threaded_pipe_is_hybrid(packaged):
    partial = [m.name for m in packaged["threaded_pipe"] if m.is_partial]

    assert partial == ["Fabricate", "Install", "Erect", "Connect", "Support"]


def test_field_weld_requires_welder(packaged):
    weld_made = next(m for m in packaged["field_weld"] if m.name == "Weld Made")

    assert weld_made.requires_welder


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_seed_file(tmp_path / "missing.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("spool: [unclosed\n")

    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_seed_file(path)


def test_bad_weights_rejected(tmp_path):
    path = tmp_path / "templates.yaml"
    path.write_text("spool:\n  - {name: Erect, weight: 60}\n  - {name: Test, weight: 35}\n")

    with pytest.raises(ConfigurationError, match="sum=95, expected 100"):
        load_seed_file(path)


def test_milestone_without_weight_rejected(tmp_path):
    path = tmp_path / "templates.yaml"
    path.write_text("spool:\n  - {name: Erect}\n")

    with pytest.raises(ConfigurationError, match="needs 'name' and 'weight'"):
        load_seed_file(path)
