"""Engine error types."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cloud_provisioner.engine.types import ApplyResult


class EngineError(Exception):
    """Base exception for engine errors."""


# ── Configuration errors: raised before any plan is produced ─────────


class ConfigurationError(EngineError):
    """The declared configuration cannot be planned at all."""


class UnknownResourceTypeError(ConfigurationError):
    """Raised when a resource kind has no registration/handler."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"Unknown resource kind: {kind}")
        self.kind = kind


class DuplicateAddressError(ConfigurationError):
    """Raised when multiple desired resources share the same address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Duplicate resource address: {address}")
        self.address = address


class UnresolvedReferenceError(ConfigurationError):
    """Raised when a resource references something not in the configuration."""

    def __init__(self, address: str, target: str, *, attribute: str | None = None) -> None:
        where = f"'{address}'" if attribute is None else f"'{address}' (attribute {attribute})"
        super().__init__(f"Resource {where} references unknown target '{target}'")
        self.address = address
        self.target = target
        self.attribute = attribute


class DependencyCycleError(ConfigurationError):
    """Raised when dependencies contain a cycle."""

    def __init__(self, addresses: list[str]) -> None:
        msg = "Dependency cycle detected"
        if addresses:
            msg += f": {' -> '.join([*addresses, addresses[0]])}"
        super().__init__(msg)
        self.addresses = addresses


CycleError = DependencyCycleError


class ValidationError(ConfigurationError):
    """One or more resources failed validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        msg = "Validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(msg)


# ── Planning errors: fatal for one resource's plan entry only ────────


class PlanningError(EngineError):
    """A single resource cannot be planned (e.g. forbidden replacement)."""

    def __init__(self, address: str, message: str) -> None:
        super().__init__(f"{address}: {message}")
        self.address = address


# ── Provider / execution errors ──────────────────────────────────────


class ProviderError(EngineError):
    """Raised by handlers for failed provider calls.

    ``transient`` errors (rate limiting, temporary unavailability) are
    retried by the executor; everything else fails the resource immediately.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class TransientProviderError(ProviderError):
    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class PermanentProviderError(ProviderError):
    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


# ── State / apply errors ─────────────────────────────────────────────


class StateVersionError(EngineError):
    """Raised when the on-disk state uses an unsupported format version."""

    def __init__(self, expected: int, got: int) -> None:
        super().__init__(f"Unsupported state version: expected {expected}, got {got}")
        self.expected = expected
        self.got = got


class StalePlanError(EngineError):
    """Raised when applying a plan against a different state than planned."""


class StateLockError(EngineError):
    """Raised when the state lock cannot be acquired or released."""


class ApplyCanceled(EngineError):
    """Raised when an apply is canceled (e.g., Ctrl-C).

    Carries the partial result: actions that finished before the cancel are
    reported with their real status, unscheduled ones as ``canceled``.
    """

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        super().__init__("Apply canceled")
