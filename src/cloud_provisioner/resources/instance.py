"""Virtual machine instance resource model."""

from __future__ import annotations

from typing import Annotated, ClassVar

from pydantic import Field

from cloud_provisioner.resources.base import Resource
from cloud_provisioner.resources.markers import Compare, Immutable


class InstanceResource(Resource):
    """A single virtual machine.

    ``key_name`` and ``security_group_ids`` usually reference the outputs of
    a ``key_pair`` and ``security_group`` declared alongside, e.g.
    ``${key_pair.dove-key.key_name}``. Changing the image, key, subnet or
    user data replaces the instance; type and security groups change in place.
    """

    kind: ClassVar[str] = "instance"
    outputs: ClassVar[tuple[str, ...]] = ("id", "public_ip", "private_ip", "public_dns", "state")

    ami: Annotated[str, Immutable()] = Field(min_length=1)
    instance_type: str = "t3.micro"
    key_name: Annotated[str | None, Immutable()] = None
    security_group_ids: Annotated[list[str], Compare("set")] = Field(default_factory=list)
    subnet_id: Annotated[str | None, Immutable()] = None
    user_data: Annotated[str | None, Immutable()] = None
