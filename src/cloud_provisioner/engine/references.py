"""Reference resolution.

References use ``${kind.name.field}`` syntax. At plan time a reference to a
resource that is about to be created has no value yet; it resolves to the
:data:`UNKNOWN` placeholder. At apply time values come from
:class:`OutputCell` objects, one per resource, each assigned exactly once
when the resource's action completes.
"""

from __future__ import annotations

import re
import threading
from typing import TYPE_CHECKING, Any

from cloud_provisioner.resources.markers import REFERENCE_PATTERN, Reference, whole_reference

if TYPE_CHECKING:
    from collections.abc import Callable

UNKNOWN = "(known after apply)"


class UnresolvedOutputError(RuntimeError):
    """Raised when reading a cell whose resource failed to produce outputs."""


class OutputCell:
    """Single-assignment container for one resource's field values."""

    def __init__(self, address: str) -> None:
        self.address = address
        self._ready = threading.Event()
        self._lock = threading.Lock()
        self._values: dict[str, Any] | None = None
        self._failure: str | None = None

    @classmethod
    def resolved(cls, address: str, values: dict[str, Any]) -> OutputCell:
        cell = cls(address)
        cell.set(values)
        return cell

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def set(self, values: dict[str, Any]) -> None:
        with self._lock:
            if self._ready.is_set():
                raise RuntimeError(f"Output cell for {self.address} is already assigned")
            self._values = dict(values)
            self._ready.set()

    def fail(self, reason: str) -> None:
        with self._lock:
            if self._ready.is_set():
                raise RuntimeError(f"Output cell for {self.address} is already assigned")
            self._failure = reason
            self._ready.set()

    def get(self, timeout: float | None = None) -> dict[str, Any]:
        """Block until the cell is assigned and return its values."""
        if not self._ready.wait(timeout):
            raise TimeoutError(f"Timed out waiting for outputs of {self.address}")
        if self._failure is not None:
            raise UnresolvedOutputError(f"{self.address} has no outputs: {self._failure}")
        assert self._values is not None
        return dict(self._values)


def contains_unknown(value: Any) -> bool:
    """Whether *value* holds the :data:`UNKNOWN` placeholder anywhere."""
    if isinstance(value, str):
        return value == UNKNOWN
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def resolve_references(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace ``${kind.name.field}`` references in *value*, recursively.

    A string that is exactly one reference takes the looked-up value as-is
    (keeping its type). References embedded in longer strings are
    interpolated; if any of them is :data:`UNKNOWN` the whole string is.
    """
    if isinstance(value, str):
        ref = whole_reference(value)
        if ref is not None:
            return lookup(ref)
        unknown = False

        def _sub(m: re.Match[str]) -> str:
            nonlocal unknown
            resolved = lookup(Reference(kind=m["kind"], name=m["name"], field=m["field"]))
            if resolved == UNKNOWN:
                unknown = True
            return "" if resolved is None else str(resolved)

        text = REFERENCE_PATTERN.sub(_sub, value)
        return UNKNOWN if unknown else text
    if isinstance(value, dict):
        return {k: resolve_references(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, lookup) for v in value]
    return value


def cell_lookup(cells: dict[str, OutputCell]) -> Callable[[Reference], Any]:
    """Apply-time lookup: block on the referenced resource's output cell."""

    def _lookup(ref: Reference) -> Any:
        return cells[ref.address].get().get(ref.field)

    return _lookup
