"""Resource kind registry for handler dispatch."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from cloud_provisioner.engine.errors import UnknownResourceTypeError

if TYPE_CHECKING:
    from cloud_provisioner.engine.handlers import ResourceHandler
    from cloud_provisioner.resources.base import Resource


@dataclass(frozen=True)
class ResourceTypeRegistration:
    kind: str
    model: type[Resource]
    handler: ResourceHandler[Any]


class ResourceTypeRegistry:
    """Registry mapping kind -> (model, handler)."""

    def __init__(self) -> None:
        self._registrations: dict[str, ResourceTypeRegistration] = {}

    def register(self, model: type[Resource], handler: ResourceHandler[Any]) -> None:
        kind = getattr(model, "kind", None)
        if not isinstance(kind, str) or not kind:
            raise ValueError("Resource model must define a non-empty classvar `kind`")

        if kind in self._registrations:
            raise ValueError(f"Resource kind already registered: {kind}")

        self._registrations[kind] = ResourceTypeRegistration(
            kind=kind,
            model=model,
            handler=handler,
        )

    def get(self, kind: str) -> ResourceTypeRegistration:
        try:
            return self._registrations[kind]
        except KeyError as e:
            raise UnknownResourceTypeError(kind) from e

    def kinds(self) -> list[str]:
        return sorted(self._registrations)
