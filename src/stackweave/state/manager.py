"""State store for loading, saving, and querying stack state."""

import fcntl
import json
import os
import re
import shutil
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from stackweave.state.models import PendingOperation, StackState, StateRecord
from stackweave.utils.errors import StateError, StateLockError
from stackweave.utils.logging import get_logger

logger = get_logger(__name__)

STACK_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9-]{0,127}$")


class StateStore:
    """Durable record of resource state for one stack.

    Every mutation is written through to disk (temp file + atomic rename),
    so a crashed run can resume from what was confirmed. Only the Executor
    mutates records; the Planner and Drift Detector work on snapshots.
    """

    def __init__(self, state_dir: str, stack_name: str):
        """
        Initialize StateStore.

        Args:
            state_dir: Directory holding one JSON document per stack
            stack_name: Stack this store is keyed by

        Raises:
            StateError: If the stack name is not valid
        """
        if not STACK_NAME_PATTERN.match(stack_name):
            raise StateError(
                f"Invalid stack name '{stack_name}': must start with a letter and contain "
                "only letters, digits and hyphens"
            )
        self.state_dir = Path(state_dir)
        self.stack_name = stack_name
        self.state_path = self.state_dir / f"{stack_name}.json"
        self._mutex = threading.RLock()
        self._lock_file: Optional[int] = None
        self._state: Optional[StackState] = None

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    def load(self) -> StackState:
        """
        Load state from file, initializing an empty document if none exists.

        Returns:
            StackState object

        Raises:
            StateError: If state file is corrupted or invalid
        """
        with self._mutex:
            if not self.exists():
                self._state = StackState(stack_name=self.stack_name, lineage=uuid.uuid4().hex)
                return self._state

            self._state = self._read(self.state_path)
            if self._state.stack_name != self.stack_name:
                raise StateError(
                    f"State file {self.state_path} belongs to stack '{self._state.stack_name}'"
                )
            return self._state

    def _read(self, path: Path) -> StackState:
        try:
            with open(path, "r") as f:
                return StackState.model_validate(json.load(f))
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {path}: {e}")
        except ValidationError as e:
            raise StateError(f"State file {path} is invalid: {e}")
        except OSError as e:
            raise StateError(f"Failed to load state file {path}: {e}")

    def _document(self) -> StackState:
        if self._state is None:
            self.load()
        return self._state

    def _draft(self) -> StackState:
        """Copy of the current document for a mutation to work on."""
        return self._document().model_copy(deep=True)

    def _persist(self, state: StackState) -> None:
        """Write a changed document and make it current, keeping the previous file as a backup.

        The in-memory document is only replaced once the file is on disk.
        """
        state.serial += 1
        state.updated_at = datetime.utcnow()

        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            if self.state_path.exists():
                shutil.copyfile(self.state_path, self.state_path.with_name(self.state_path.name + ".backup"))

            temp_path = self.state_path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                json.dump(state.model_dump(mode="json"), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())

            temp_path.replace(self.state_path)
        except OSError as e:
            raise StateError(f"Failed to save state file: {e}")

        self._state = state
        logger.debug(f"Saved state for stack {self.stack_name} (serial {state.serial})")

    # Record access

    def get(self, resource_id: str) -> Optional[StateRecord]:
        """Get a copy of the record for a resource, or None."""
        with self._mutex:
            record = self._document().records.get(resource_id)
            return record.model_copy(deep=True) if record else None

    def put(self, resource_id: str, record: StateRecord) -> None:
        """
        Store the record for a resource and persist.

        Any pending create operation for the resource is cleared, since the
        record now confirms it.
        """
        if record.logical_id != resource_id:
            raise StateError(f"Record for '{record.logical_id}' stored under '{resource_id}'")
        with self._mutex:
            state = self._draft()
            state.records[resource_id] = record.model_copy(deep=True)
            state.pending.pop(resource_id, None)
            self._persist(state)

    def swap(self, resource_id: str, record: StateRecord, retired: PendingOperation) -> None:
        """
        Store the record of a replacement and mark the old resource for deletion.

        Both changes land in one write, so the old physical ID is never lost.
        """
        if record.logical_id != resource_id:
            raise StateError(f"Record for '{record.logical_id}' stored under '{resource_id}'")
        with self._mutex:
            state = self._draft()
            state.records[resource_id] = record.model_copy(deep=True)
            state.pending.pop(resource_id, None)
            state.pending[retired.entry_id] = retired.model_copy()
            self._persist(state)

    def delete(self, resource_id: str) -> Optional[StateRecord]:
        """Remove the record for a confirmed-deleted resource and persist."""
        with self._mutex:
            state = self._draft()
            record = state.records.pop(resource_id, None)
            state.pending.pop(resource_id, None)
            self._persist(state)
            return record

    def snapshot(self) -> Dict[str, StateRecord]:
        """Get a deep copy of all records, keyed by logical ID."""
        with self._mutex:
            return {
                resource_id: record.model_copy(deep=True)
                for resource_id, record in self._document().records.items()
            }

    def document(self) -> StackState:
        """Get a deep copy of the whole state document."""
        with self._mutex:
            return self._document().model_copy(deep=True)

    # Stack-level values

    @property
    def template_hash(self) -> Optional[str]:
        with self._mutex:
            return self._document().template_hash

    def set_template_hash(self, template_hash: Optional[str]) -> None:
        with self._mutex:
            state = self._draft()
            state.template_hash = template_hash
            self._persist(state)

    def outputs(self) -> Dict[str, Any]:
        with self._mutex:
            return dict(self._document().outputs)

    def set_outputs(self, outputs: Dict[str, Any], exports: Dict[str, Any]) -> None:
        """Replace the stack outputs and exported values."""
        with self._mutex:
            state = self._draft()
            state.outputs = dict(outputs)
            state.exports = dict(exports)
            self._persist(state)

    def exports(self) -> Dict[str, Any]:
        """
        Collect exported values from every other stack in the state directory.

        Returns:
            Mapping of export name to value

        Raises:
            StateError: If two stacks export the same name
        """
        exports: Dict[str, Any] = {}
        owners: Dict[str, str] = {}
        if not self.state_dir.exists():
            return exports

        for path in sorted(self.state_dir.glob("*.json")):
            if path == self.state_path:
                continue
            other = self._read(path)
            for name, value in other.exports.items():
                if name in owners:
                    raise StateError(
                        f"Export '{name}' is defined by both '{owners[name]}' and '{other.stack_name}'"
                    )
                owners[name] = other.stack_name
                exports[name] = value
        return exports

    # Pending provider operations

    def record_pending(self, operation: PendingOperation) -> None:
        with self._mutex:
            state = self._draft()
            state.pending[operation.entry_id] = operation.model_copy()
            self._persist(state)

    def clear_pending(self, entry_id: str) -> None:
        with self._mutex:
            if entry_id in self._document().pending:
                state = self._draft()
                del state.pending[entry_id]
                self._persist(state)

    def pending_operation(self, entry_id: str) -> Optional[PendingOperation]:
        with self._mutex:
            operation = self._document().pending.get(entry_id)
            return operation.model_copy() if operation else None

    def pending_operations(self) -> Dict[str, PendingOperation]:
        with self._mutex:
            return {k: v.model_copy() for k, v in self._document().pending.items()}

    # Cross-process locking

    def lock(self, timeout: int = 30) -> None:
        """
        Acquire exclusive lock on state file.

        Args:
            timeout: Lock timeout in seconds

        Raises:
            StateLockError: If lock cannot be acquired
        """
        lock_path = self.state_path.with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock_file = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        start_time = time.time()
        try:
            while True:
                try:
                    fcntl.flock(self._lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.time() - start_time > timeout:
                        raise StateLockError(
                            f"Failed to acquire lock on state for stack '{self.stack_name}' "
                            f"after {timeout}s; another run may be in progress"
                        )
                    time.sleep(0.1)
        except Exception:
            os.close(self._lock_file)
            self._lock_file = None
            raise

    def unlock(self) -> None:
        """Release lock on state file."""
        if self._lock_file is not None:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_UN)
                os.close(self._lock_file)
            finally:
                self._lock_file = None

    def __enter__(self):
        """Context manager entry - acquire lock and load state."""
        self.lock()
        self.load()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release lock."""
        self.unlock()
