"""Engine-facing handler interfaces."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from cloud_provisioner.engine.errors import ProviderError
from cloud_provisioner.resources.base import Resource

if TYPE_CHECKING:
    from cloud_provisioner.core import AwsProvider
    from cloud_provisioner.core.state import ResourceInstance

R = TypeVar("R", bound=Resource)


@dataclass(frozen=True)
class EngineContext:
    """Context passed to handlers."""

    provider: AwsProvider


class ResourceHandler(Generic[R]):
    """Base class for resource handlers (the provider API of one kind).

    Handlers translate resources into provider API calls. Subclass and
    override the CRUD methods. ``validate`` and ``is_transient`` are optional.
    """

    def validate(self, ctx: EngineContext, desired: R) -> list[str]:
        """Single-resource validation. Return list of error messages (empty = valid)."""
        _ = ctx, desired
        return []

    def is_transient(self, exc: BaseException) -> bool:
        """Whether a failed call is worth retrying (rate limiting, brief outages)."""
        return isinstance(exc, ProviderError) and exc.transient

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        """Read the resource's attributes. Return None if it no longer exists."""
        raise NotImplementedError

    def create(self, ctx: EngineContext, desired: R) -> dict[str, Any]:
        """Create the resource. Return its computed outputs (must include ``id``)."""
        raise NotImplementedError

    def update(
        self,
        ctx: EngineContext,
        desired: R,
        prior: ResourceInstance,
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        """Apply *diff* (``{field: {"from": ..., "to": ...}}``) in place.

        Return computed outputs.
        """
        raise NotImplementedError

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        """Delete the resource."""
        raise NotImplementedError
