"""Default resource type registry factory."""

from __future__ import annotations

from cloud_provisioner.engine.instance_handler import InstanceHandler
from cloud_provisioner.engine.key_pair_handler import KeyPairHandler
from cloud_provisioner.engine.registry import ResourceTypeRegistry
from cloud_provisioner.engine.security_group_handler import SecurityGroupHandler
from cloud_provisioner.resources.instance import InstanceResource
from cloud_provisioner.resources.key_pair import KeyPairResource
from cloud_provisioner.resources.security_group import SecurityGroupResource


def default_registry() -> ResourceTypeRegistry:
    """Create a fresh registry with all built-in resource types and handlers."""
    registry = ResourceTypeRegistry()

    registry.register(KeyPairResource, KeyPairHandler())
    registry.register(SecurityGroupResource, SecurityGroupHandler())
    registry.register(InstanceResource, InstanceHandler())

    return registry
