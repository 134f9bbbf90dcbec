"""
Best-effort comparison of solc ``storageLayout`` outputs for proxy upgrades.

The proxy owns all storage, so a new logic contract must keep every variable of
the old one at the same slot and offset with the same type, and may only append
new variables after them. This module only reports differences; keeping layouts
compatible remains the responsibility of whoever prepares the upgrade.
"""
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from chaindeploy.utils import _load_json


class StorageVariable(NamedTuple):
    label: str
    slot: int
    offset: int
    type: str


def parse_storage_layout(data: Dict) -> List[StorageVariable]:
    """Accepts either a full compiler output entry or the bare ``storageLayout`` object."""
    layout = data.get("storageLayout", data)
    variables = list()
    for item in layout.get("storage", []):
        variables.append(
            StorageVariable(
                label=item["label"],
                slot=int(item["slot"]),
                offset=int(item.get("offset", 0)),
                type=item["type"],
            )
        )
    return sorted(variables, key=lambda v: (v.slot, v.offset))


def load_storage_layout(filepath: Path) -> List[StorageVariable]:
    return parse_storage_layout(_load_json(filepath))


def compare_storage_layouts(
    previous: List[StorageVariable], current: List[StorageVariable]
) -> List[str]:
    """Returns a warning for every previous variable not preserved in place."""
    warnings = list()
    current_by_position = {(v.slot, v.offset): v for v in current}
    for variable in previous:
        position = (variable.slot, variable.offset)
        replacement = current_by_position.get(position)
        if replacement is None:
            warnings.append(
                f"'{variable.label}' (slot {variable.slot}, offset {variable.offset}) "
                f"is no longer declared"
            )
        elif replacement.type != variable.type:
            warnings.append(
                f"'{variable.label}' at slot {variable.slot} changed type "
                f"from {variable.type} to {replacement.type} ('{replacement.label}')"
            )
        elif replacement.label != variable.label:
            warnings.append(
                f"'{variable.label}' at slot {variable.slot} was renamed to "
                f"'{replacement.label}'"
            )
    return warnings


def check_storage_layouts(previous_filepath: Path, current_filepath: Path) -> List[str]:
    """Compares two layout files and prints any incompatibilities found."""
    warnings = compare_storage_layouts(
        previous=load_storage_layout(previous_filepath),
        current=load_storage_layout(current_filepath),
    )
    for warning in warnings:
        print(f"WARNING: storage layout: {warning}")
    return warnings


def optional_layout_check(
    previous_filepath: Optional[Path], current_filepath: Optional[Path]
) -> List[str]:
    if previous_filepath is None or current_filepath is None:
        return []
    return check_storage_layouts(previous_filepath, current_filepath)
