from collections import OrderedDict, defaultdict
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, NamedTuple, Optional

from eth_typing import ChecksumAddress
from filelock import FileLock, Timeout

from chaindeploy.constants import (
    COMPLETED_KEY_SUFFIX,
    LEGACY_LOGIC_KEY,
    LEGACY_PROXY_KEY,
    LOGIC_NAME_SUFFIX,
    PENDING_JOURNAL_SUFFIX,
)
from chaindeploy.errors import EnvironmentLocked, RecordNotFound, RecordWriteFailed
from chaindeploy.utils import _load_json, _write_json_atomic, checksum, lock_filepath

Environment = str
ContractName = str


STANDARD_RECORD_JSON_FORMAT = {"indent": 4, "separators": (",", ": "), "sort_keys": True}


class RecordEntry(NamedTuple):
    """Represents the current address of a single contract in one environment."""

    environment: Environment
    name: ContractName
    address: ChecksumAddress


def logic_name(name: ContractName) -> ContractName:
    """Returns the record name mirroring the logic contract behind a proxy."""
    return f"{name}{LOGIC_NAME_SUFFIX}"


def _flatten_environment(environment: Environment, entries: dict) -> List[RecordEntry]:
    """Flattens an environment mapping, unpacking legacy nested proxy entries."""
    records = list()
    for name, value in entries.items():
        if isinstance(value, dict):
            # legacy layout: {"LotteryProxy": {"proxy": "0x...", "logic": "0x..."}}
            if LEGACY_PROXY_KEY in value:
                records.append(RecordEntry(environment, name, checksum(value[LEGACY_PROXY_KEY])))
            if LEGACY_LOGIC_KEY in value:
                records.append(
                    RecordEntry(environment, logic_name(name), checksum(value[LEGACY_LOGIC_KEY]))
                )
            continue
        records.append(RecordEntry(environment, name, checksum(value)))
    return records


def read_records(filepath: Path) -> List[RecordEntry]:
    data = _load_json(filepath)
    records = list()
    for environment, entries in data.items():
        records.extend(_flatten_environment(environment, entries))
    return records


def _records_to_data(entries: List[RecordEntry]) -> Dict[Environment, Dict[ContractName, str]]:
    data = defaultdict(dict)
    for entry in entries:
        data[entry.environment][entry.name] = entry.address
    return dict(data)


def write_records(entries: List[RecordEntry], filepath: Path, silent: bool = False) -> Path:
    """Writes a deployment record file, replacing any existing content."""
    if not silent:
        action = "Updating existing" if filepath.exists() else "Creating new"
        print(f"{action} deployment record at {filepath}.")
    data = _records_to_data(entries)
    _write_json_atomic(data, filepath, **STANDARD_RECORD_JSON_FORMAT)
    return filepath


class ConflictResolution(Enum):
    USE_1 = 1
    USE_2 = 2


def _select_conflict_resolution(
    record_1_entry, record_1_filepath, record_2_entry, record_2_filepath
) -> ConflictResolution:
    print(
        f"\n! Conflict detected for {record_1_entry.name} "
        f"in environment {record_1_entry.environment}:"
    )
    print(f"[1]: {record_1_entry.name} at {record_1_entry.address} for {record_1_filepath}")
    print(f"[2]: {record_2_entry.name} at {record_2_entry.address} for {record_2_filepath}")
    print("[A]: Abort merge")

    valid_str_answers = [
        str(ConflictResolution.USE_1.value),
        str(ConflictResolution.USE_2.value),
        "A",
    ]
    answer = None
    while answer not in valid_str_answers:
        answer = input(f"Merge resolution, {valid_str_answers}? ")

    if answer == "A":
        print("Merge Aborted!")
        exit(-1)
    return ConflictResolution(int(answer))


def merge_records(
    record_1_filepath: Path,
    record_2_filepath: Path,
    output_filepath: Path,
    deprecated_contracts: Optional[List[ContractName]] = None,
) -> Path:
    """Merges two deployment record files; conflicting addresses are resolved interactively."""
    deprecated_contracts = deprecated_contracts or []

    rec1 = defaultdict(OrderedDict)
    rec2 = defaultdict(OrderedDict)

    for e in read_records(record_1_filepath):
        if e.name in deprecated_contracts:
            continue
        rec1[e.environment][e.name] = e

    for e in read_records(record_2_filepath):
        if e.name in deprecated_contracts:
            continue
        rec2[e.environment][e.name] = e

    merged: List[RecordEntry] = list()
    for environment in set(rec1) | set(rec2):
        rec1_entries, rec2_entries = rec1.get(environment, {}), rec2.get(environment, {})
        for name in set(rec1_entries) | set(rec2_entries):
            entry_1, entry_2 = rec1_entries.get(name), rec2_entries.get(name)
            if entry_1 and entry_2 and entry_1.address != entry_2.address:
                resolution = _select_conflict_resolution(
                    record_1_entry=entry_1,
                    record_2_entry=entry_2,
                    record_1_filepath=record_1_filepath,
                    record_2_filepath=record_2_filepath,
                )
                selected_entry = entry_1 if resolution == ConflictResolution.USE_1 else entry_2
            else:
                selected_entry = entry_1 or entry_2
            merged.append(selected_entry)

    write_records(entries=merged, filepath=output_filepath)
    print(f"Merged deployment record output to {output_filepath}")
    return output_filepath


def normalize_records(filepath: Path):
    """Rewrites a potentially legacy or non-standard record file in the flat form."""
    try:
        entries = read_records(filepath=filepath)
    except Exception:
        print(f"Error when reading deployment record at {filepath}.")
        raise

    try:
        write_records(entries=entries, filepath=filepath, silent=True)
        print(f"Successfully normalized deployment record at {filepath}.")
    except Exception:
        print(f"Error when normalizing deployment record at {filepath}.")
        raise


class DeploymentRecordStore:
    """
    Durable, environment-partitioned mapping of contract name to current address,
    backed by a single JSON file.

    Every write re-reads the file under a file lock and atomically replaces it,
    so environments sharing a file can be written from parallel runs. Within one
    environment a single writer is expected; see ``lock_environment``.
    """

    def __init__(self, filepath: Path, lock_timeout: float = 30):
        self.filepath = Path(filepath)
        self.lock_timeout = lock_timeout
        self._lock = FileLock(lock_filepath(self.filepath), timeout=lock_timeout)

    def _read(self) -> Dict[Environment, Dict[ContractName, ChecksumAddress]]:
        if not self.filepath.exists():
            return dict()
        data = _records_to_data(read_records(self.filepath))
        return data

    def environments(self) -> List[Environment]:
        return sorted(self._read())

    def snapshot(self, environment: Environment) -> Dict[ContractName, ChecksumAddress]:
        """Returns a copy of the current record of a single environment."""
        return dict(self._read().get(environment, {}))

    def find(self, environment: Environment, name: ContractName) -> Optional[ChecksumAddress]:
        return self.snapshot(environment).get(name)

    def get(self, environment: Environment, name: ContractName) -> ChecksumAddress:
        address = self.find(environment, name)
        if address is None:
            raise RecordNotFound(
                f"'{name}' is not recorded in {self.filepath}", environment=environment
            )
        return address

    def has(self, environment: Environment, name: ContractName) -> bool:
        return self.find(environment, name) is not None

    def set(self, environment: Environment, name: ContractName, address: str) -> None:
        """Records ``address`` as the current address of ``name``, overwriting any previous one."""
        address = checksum(address)
        try:
            with self._lock:
                data = self._read()
                data.setdefault(environment, dict())[name] = address
                _write_json_atomic(data, self.filepath, **STANDARD_RECORD_JSON_FORMAT)
        except (OSError, Timeout) as e:
            raise RecordWriteFailed(
                f"Failed to record {name} at {address} in {self.filepath}: {e}",
                environment=environment,
                address=address,
            ) from e

    @contextmanager
    def lock_environment(self, environment: Environment) -> Iterator[None]:
        """Holds the single-writer lock of an environment for the duration of a run."""
        lock = FileLock(lock_filepath(self.filepath, qualifier=environment), timeout=0)
        try:
            lock.acquire()
        except Timeout:
            raise EnvironmentLocked(
                f"Another run is already in progress ({lock.lock_file})",
                environment=environment,
            )
        try:
            yield
        finally:
            lock.release()


class PendingTransactionJournal:
    """
    Journal of submitted but not yet persisted transactions, keyed by environment and step.
    A re-run consults it to reconcile orphan transactions instead of resubmitting them.

    Completed upgrades are remembered as well, so that a re-run of the same upgrade
    can be skipped. Completion markers are not pending and survive ``clear``.
    """

    def __init__(self, filepath: Path, lock_timeout: float = 30):
        self.filepath = Path(filepath)
        self._lock = FileLock(lock_filepath(self.filepath), timeout=lock_timeout)

    @classmethod
    def beside(cls, store: DeploymentRecordStore) -> "PendingTransactionJournal":
        """Returns the journal kept next to a record store's file."""
        filepath = store.filepath.with_name(store.filepath.stem + PENDING_JOURNAL_SUFFIX)
        return cls(filepath=filepath, lock_timeout=store.lock_timeout)

    def _read(self) -> Dict[Environment, Dict[str, str]]:
        if not self.filepath.exists():
            return dict()
        return _load_json(self.filepath)

    def _write(self, data: Dict[Environment, Dict[str, str]]) -> None:
        data = {environment: keys for environment, keys in data.items() if keys}
        _write_json_atomic(data, self.filepath, **STANDARD_RECORD_JSON_FORMAT)

    def get(self, environment: Environment, key: str) -> Optional[str]:
        return self._read().get(environment, {}).get(key)

    def pending(self, environment: Environment) -> Dict[str, str]:
        entries = self._read().get(environment, {})
        return {
            key: tx_hash
            for key, tx_hash in entries.items()
            if not key.endswith(COMPLETED_KEY_SUFFIX)
        }

    def set(self, environment: Environment, key: str, tx_hash: str) -> None:
        with self._lock:
            data = self._read()
            data.setdefault(environment, dict())[key] = tx_hash
            self._write(data)

    def clear(self, environment: Environment, key: str) -> None:
        """Drops a key and every key nested under it (``<key>:<purpose>``)."""
        with self._lock:
            data = self._read()
            entries = data.get(environment, {})
            for pending_key in list(entries):
                if pending_key == key or pending_key.startswith(f"{key}:"):
                    del entries[pending_key]
            self._write(data)

    def completed(self, environment: Environment, key: str) -> Optional[str]:
        """Returns the address a completed step left behind, if any."""
        return self.get(environment, f"{key}{COMPLETED_KEY_SUFFIX}")

    def complete(self, environment: Environment, key: str, address: str) -> None:
        self.set(environment, f"{key}{COMPLETED_KEY_SUFFIX}", address)
