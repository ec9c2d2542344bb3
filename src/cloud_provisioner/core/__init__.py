"""Core infrastructure components for cloud-provisioner."""

from cloud_provisioner.core.provider import AwsProvider
from cloud_provisioner.core.state import ResourceInstance, State, StateStore

__all__ = ["AwsProvider", "ResourceInstance", "State", "StateStore"]
