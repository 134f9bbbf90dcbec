import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import yaml
from eth_typing import ChecksumAddress
from eth_utils import is_address, to_checksum_address

from chaindeploy.constants import EMPTY_BYTES32, LOCK_SUFFIX, ZERO_ADDRESS


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def _write_json_atomic(data: Any, filepath: Path, **json_format) -> Path:
    """
    Writes JSON to a temporary file next to ``filepath`` and moves it into place,
    so that readers never observe a partially written file.
    """
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        prefix=f".{filepath.name}.", suffix=".tmp", dir=filepath.parent
    )
    try:
        with os.fdopen(fd, "w") as file:
            json.dump(data, file, **json_format)
            file.write("\n")
            file.flush()
            os.fsync(file.fileno())
        os.replace(temp_name, filepath)
    except BaseException:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise
    return filepath


def lock_filepath(filepath: Path, qualifier: Optional[str] = None) -> Path:
    """Returns the lock file path guarding ``filepath`` (optionally per qualifier)."""
    name = filepath.name if qualifier is None else f"{filepath.name}.{qualifier}"
    return filepath.absolute().parent / (name + LOCK_SUFFIX)


def address_from_word(word: bytes) -> Optional[ChecksumAddress]:
    """Extracts the address stored in the low 20 bytes of a 32-byte storage word."""
    word = bytes(word).rjust(32, b"\x00")
    if word == EMPTY_BYTES32:
        return None
    return to_checksum_address(word[-20:])


def is_zero_address(value: Any) -> bool:
    return isinstance(value, str) and value.lower() == ZERO_ADDRESS


def checksum(address: str) -> ChecksumAddress:
    if not is_address(address):
        raise ValueError(f"'{address}' is not a valid address.")
    return to_checksum_address(address)
