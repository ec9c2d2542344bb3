"""Declarative field markers and reference parsing for resource models.

Two markers attach to Pydantic fields via ``Annotated``:

- ``Compare``: field-level comparison strategy used by the planner
- ``Immutable``: changing the field cannot be done in place; the planner
  schedules a replacement (delete, then create) instead of an update

References are plain string values of the form ``${kind.name.field}``.
They may appear anywhere inside an attribute value (nested lists and dicts
included) and are collected by :func:`collect_references`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, TypeAlias, TypeVar

if TYPE_CHECKING:
    from collections.abc import Iterator

    from pydantic.fields import FieldInfo

M = TypeVar("M")
CompareStrategy: TypeAlias = Literal["partial", "exact", "set"]

REFERENCE_PATTERN = re.compile(
    r"\$\{(?P<kind>[a-z][a-z0-9_]*)\.(?P<name>[A-Za-z0-9_-]+)\.(?P<field>[A-Za-z_][A-Za-z0-9_]*)\}"
)


@dataclass(frozen=True, slots=True)
class Reference:
    """Pointer from an attribute value to another resource's field."""

    kind: str
    name: str
    field: str

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    def __str__(self) -> str:
        return f"${{{self.kind}.{self.name}.{self.field}}}"


# ── Marker dataclasses ──────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Compare:
    """How the planner should compare the field.

    - ``"partial"``: for dict values, only keys declared in desired are compared
    - ``"exact"``: strict equality comparison
    - ``"set"``: order-insensitive list comparison
    """

    strategy: CompareStrategy


@dataclass(frozen=True, slots=True)
class Immutable:
    """Field cannot be changed in place; a change forces replacement."""


# ── Shared introspection primitives ─────────────────────────────────


def _find_marker(field_info: FieldInfo, marker_type: type[M]) -> M | None:
    """Return the first marker of *marker_type* on a field, or ``None``."""
    return next((m for m in field_info.metadata if isinstance(m, marker_type)), None)


def _iter_marked_fields(
    model_or_cls: Any,
    marker_type: type[M],
) -> list[tuple[str, FieldInfo, M]]:
    """Return ``(field_name, field_info, marker)`` for every field carrying *marker_type*."""
    cls = model_or_cls if isinstance(model_or_cls, type) else type(model_or_cls)
    return [
        (name, fi, marker)
        for name, fi in cls.model_fields.items()
        if (marker := _find_marker(fi, marker_type)) is not None
    ]


# ── Public helpers ──────────────────────────────────────────────────


def collect_compare_strategies(resource_or_cls: Any) -> dict[str, CompareStrategy]:
    """Collect per-field compare strategies from ``Compare`` markers."""
    return {
        name: marker.strategy for name, _, marker in _iter_marked_fields(resource_or_cls, Compare)
    }


def collect_immutable_fields(resource_or_cls: Any) -> frozenset[str]:
    """Names of fields carrying the ``Immutable`` marker."""
    return frozenset(name for name, _, _ in _iter_marked_fields(resource_or_cls, Immutable))


def parse_references(text: str) -> list[Reference]:
    """All references embedded in *text*, in order of appearance."""
    return [
        Reference(kind=m["kind"], name=m["name"], field=m["field"])
        for m in REFERENCE_PATTERN.finditer(text)
    ]


def whole_reference(text: str) -> Reference | None:
    """The reference if *text* consists of exactly one reference, else ``None``."""
    m = REFERENCE_PATTERN.fullmatch(text)
    if m is None:
        return None
    return Reference(kind=m["kind"], name=m["name"], field=m["field"])


def iter_references(value: Any, path: str = "") -> Iterator[tuple[str, Reference]]:
    """Yield ``(attribute_path, reference)`` pairs found anywhere in *value*."""
    if isinstance(value, str):
        for ref in parse_references(value):
            yield path, ref
    elif isinstance(value, dict):
        for k, v in value.items():
            yield from iter_references(v, f"{path}.{k}" if path else str(k))
    elif isinstance(value, list):
        for i, v in enumerate(value):
            yield from iter_references(v, f"{path}[{i}]")


def collect_references(value: Any) -> list[Reference]:
    """Unique references found in *value*, first occurrence first."""
    seen: dict[Reference, None] = {}
    for _, ref in iter_references(value):
        seen.setdefault(ref, None)
    return list(seen)
