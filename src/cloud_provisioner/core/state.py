"""State management for tracking provisioned resources."""

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import threading
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def _canonical_json(obj: Any) -> str:
    # Stable encoding for hashes/digests. `default=str` keeps it robust for
    # datetimes/paths/etc while staying deterministic enough for our use.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def compute_attributes_hash(attrs: Mapping[str, Any]) -> str:
    """Compute a stable hash for a resource's stored attributes."""
    payload = _canonical_json(attrs)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def make_address(kind: str, name: str) -> str:
    return f"{kind}.{name}"


class ResourceInstance(BaseModel):
    """A tracked resource instance in the state file.

    Attributes:
        address: Unique resource address (e.g., "instance.web")
        kind: Kind of the resource (e.g., "instance")
        name: Resource name (e.g., "web")
        attributes: Last-applied attribute values, references resolved
        computed: Provider-assigned outputs (e.g., ``id``)
        attributes_hash: SHA256 hash for change detection
        dependencies: Addresses of dependencies
        created_at: When the resource was created
        updated_at: When the resource was last updated
    """

    address: str
    kind: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    computed: dict[str, Any] = Field(default_factory=dict)
    attributes_hash: str = ""
    dependencies: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def resource_id(self) -> str | None:
        return self.computed.get("id")

    def values(self) -> dict[str, Any]:
        """Attributes overlaid with computed outputs, as seen by references."""
        return {**self.attributes, **self.computed}


class State(BaseModel):
    """Terraform-style state file for tracking provisioned resources.

    Attributes:
        version: State file format version
        serial: Incremented on every persisted change
        lineage: Identity of this state's history
        resources: Mapping of resource addresses to instances
    """

    version: int = STATE_VERSION
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: dict[str, ResourceInstance] = Field(default_factory=dict)

    def save(self, path: Path) -> None:
        """Save state to a JSON file.

        - Writes atomically (temp file + rename)
        - Writes a `.backup` copy of the previous state when overwriting
        """
        path.parent.mkdir(parents=True, exist_ok=True)

        backup_path = Path(str(path) + ".backup")
        # Avoid TOCTOU race between exists() and read_bytes().
        with contextlib.suppress(FileNotFoundError):
            backup_path.write_bytes(path.read_bytes())

        data = self.model_dump(mode="json")
        content = json.dumps(data, indent=2, sort_keys=True) + "\n"

        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        tmp_file = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_file.unlink()
        logger.debug("State saved: serial=%d path=%s", self.serial, path)

    @classmethod
    def load(cls, path: Path) -> "State":
        """Load state from a JSON file."""
        state = cls.model_validate_json(path.read_text(encoding="utf-8"))
        logger.debug("State loaded from %s", path)
        return state

    @classmethod
    def load_or_create(cls, path: Path) -> "State":
        """Load existing state or create a new one."""
        if path.exists():
            return cls.load(path)
        logger.debug("Created new state for %s", path)
        return cls()


def compute_state_digest(state: State) -> str:
    """Compute a stable digest of state content (excluding timestamps).

    Used for stale-plan detection. Excludes fields that should not force a
    re-plan (e.g., `created_at`/`updated_at` timestamps).
    """
    resources = []
    for address, inst in sorted(state.resources.items(), key=lambda kv: kv[0]):
        resources.append(
            {
                "address": address,
                "kind": inst.kind,
                "name": inst.name,
                "attributes_hash": inst.attributes_hash,
                "computed": inst.computed,
                "dependencies": sorted(inst.dependencies),
            }
        )

    digestable = {
        "version": state.version,
        "lineage": state.lineage,
        "serial": state.serial,
        "resources": resources,
    }
    payload = _canonical_json(digestable)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class StateStore:
    """Per-key access to a :class:`State` shared by concurrent apply workers.

    Every mutation is an atomic read-modify-write under one lock, bumps the
    serial and, when the store has a path, is persisted immediately.
    Concurrent writers in other processes are kept out by ``StateLock``, not
    by this class.
    """

    def __init__(self, state: State, path: Path | None = None) -> None:
        self._state = state
        self._path = path
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: Path) -> "StateStore":
        return cls(State.load_or_create(path), path)

    def snapshot(self) -> State:
        with self._lock:
            return self._state.model_copy(deep=True)

    def get(self, kind: str, name: str) -> ResourceInstance | None:
        with self._lock:
            inst = self._state.resources.get(make_address(kind, name))
            return None if inst is None else inst.model_copy(deep=True)

    def put(self, kind: str, name: str, record: ResourceInstance) -> None:
        self.update(kind, name, lambda _prior: record)

    def delete(self, kind: str, name: str) -> bool:
        """Remove a record; returns whether one existed."""
        existed = False

        def _drop(prior: ResourceInstance | None) -> None:
            nonlocal existed
            existed = prior is not None

        self.update(kind, name, _drop)
        return existed

    def update(
        self,
        kind: str,
        name: str,
        fn: Callable[[ResourceInstance | None], ResourceInstance | None],
    ) -> ResourceInstance | None:
        """Atomically replace the record for ``(kind, name)`` with ``fn(prior)``.

        ``fn`` receives a copy of the current record (or ``None``) and returns
        the new record, or ``None`` to remove it.
        """
        address = make_address(kind, name)
        with self._lock:
            prior = self._state.resources.get(address)
            new = fn(None if prior is None else prior.model_copy(deep=True))
            if new is None:
                if prior is None:
                    return None
                del self._state.resources[address]
            else:
                if new.address != address or new.kind != kind or new.name != name:
                    raise ValueError(f"Record {new.address} stored under {address}")
                self._state.resources[address] = new.model_copy(deep=True)
            self._commit()
            return new

    def _commit(self) -> None:
        self._state.serial += 1
        if self._path is not None:
            self._state.save(self._path)
