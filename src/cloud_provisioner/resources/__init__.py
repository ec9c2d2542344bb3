"""Cloud resource definitions."""

from cloud_provisioner.resources.base import Resource
from cloud_provisioner.resources.instance import InstanceResource
from cloud_provisioner.resources.key_pair import KeyPairResource
from cloud_provisioner.resources.markers import Reference
from cloud_provisioner.resources.security_group import SecurityGroupResource, SecurityGroupRule

__all__ = [
    "InstanceResource",
    "KeyPairResource",
    "Reference",
    "Resource",
    "SecurityGroupResource",
    "SecurityGroupRule",
]
