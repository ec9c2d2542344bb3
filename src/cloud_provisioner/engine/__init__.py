"""Plan and apply engine for cloud resources."""

from cloud_provisioner.engine.engine import ProvisionEngine
from cloud_provisioner.engine.errors import (
    ApplyCanceled,
    ConfigurationError,
    CycleError,
    DependencyCycleError,
    DuplicateAddressError,
    EngineError,
    PlanningError,
    ProviderError,
    StalePlanError,
    StateLockError,
    StateVersionError,
    UnknownResourceTypeError,
    UnresolvedReferenceError,
    ValidationError,
)
from cloud_provisioner.engine.handlers import EngineContext, ResourceHandler
from cloud_provisioner.engine.registry import ResourceTypeRegistration, ResourceTypeRegistry
from cloud_provisioner.engine.types import (
    Action,
    ApplyResult,
    Plan,
    PlanMetadata,
    ResourceChange,
    ResourceResult,
    RetryPolicy,
    Status,
)

__all__ = [
    "Action",
    "ApplyCanceled",
    "ApplyResult",
    "ConfigurationError",
    "CycleError",
    "DependencyCycleError",
    "DuplicateAddressError",
    "EngineContext",
    "EngineError",
    "Plan",
    "PlanMetadata",
    "PlanningError",
    "ProviderError",
    "ProvisionEngine",
    "ResourceChange",
    "ResourceHandler",
    "ResourceResult",
    "ResourceTypeRegistration",
    "ResourceTypeRegistry",
    "RetryPolicy",
    "StalePlanError",
    "StateLockError",
    "StateVersionError",
    "Status",
    "UnknownResourceTypeError",
    "UnresolvedReferenceError",
    "ValidationError",
]
