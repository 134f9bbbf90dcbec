import json

import pytest

from chaindeploy.layout import (
    StorageVariable,
    check_storage_layouts,
    compare_storage_layouts,
    optional_layout_check,
    parse_storage_layout,
)
from chaindeploy.pipeline import Pipeline


def _layout(*variables):
    return {
        "storageLayout": {
            "storage": [
                {"label": label, "slot": str(slot), "offset": offset, "type": type_}
                for label, slot, offset, type_ in variables
            ]
        }
    }


V1 = _layout(("owner", 0, 0, "t_address"), ("price", 1, 0, "t_uint256"))


@pytest.fixture
def layout_files(tmp_path):
    def write(previous, current):
        previous_filepath, current_filepath = tmp_path / "v1.json", tmp_path / "v2.json"
        previous_filepath.write_text(json.dumps(previous))
        current_filepath.write_text(json.dumps(current))
        return previous_filepath, current_filepath

    return write


def test_parse_storage_layout():
    bare = V1["storageLayout"]
    assert parse_storage_layout(V1) == parse_storage_layout(bare)
    assert parse_storage_layout(V1)[1] == StorageVariable("price", 1, 0, "t_uint256")


def test_appended_variables_are_compatible():
    v2 = _layout(
        ("owner", 0, 0, "t_address"), ("price", 1, 0, "t_uint256"), ("paused", 2, 0, "t_bool")
    )
    assert compare_storage_layouts(parse_storage_layout(V1), parse_storage_layout(v2)) == []


def test_incompatible_layouts():
    v2 = _layout(("admin", 0, 0, "t_address"), ("price", 1, 0, "t_uint128"))
    warnings = compare_storage_layouts(parse_storage_layout(V1), parse_storage_layout(v2))
    assert len(warnings) == 2
    assert "renamed" in warnings[0]
    assert "changed type" in warnings[1]

    removed = compare_storage_layouts(parse_storage_layout(V1), parse_storage_layout(_layout()))
    assert len(removed) == 2


def test_check_prints_warnings(layout_files, capsys):
    previous, current = layout_files(V1, _layout(("owner", 0, 0, "t_address")))

    warnings = check_storage_layouts(previous, current)

    assert len(warnings) == 1
    assert "WARNING: storage layout: 'price'" in capsys.readouterr().out


def test_check_is_optional():
    assert optional_layout_check(None, None) == []


def test_upgrade_step_checks_layout(layout_files, orchestrator, chain, store, capsys):
    previous, current = layout_files(V1, _layout(("owner", 0, 0, "t_address")))
    proxy = chain.deploy_proxy("ClockAuction")
    store.set("live", "ClockAuction", proxy)
    config = {
        "deployment": {"environment": "live"},
        "contracts": [
            {
                "ClockAuction": {
                    "upgrade": {"layout": {"previous": str(previous), "current": str(current)}}
                }
            }
        ],
    }

    report = orchestrator.run(Pipeline.from_config(config))

    # differences are reported, not enforced
    assert report.succeeded
    assert "WARNING: storage layout" in capsys.readouterr().out
    assert store.get("live", "ClockAuction#logic") == chain.implementation(proxy)
