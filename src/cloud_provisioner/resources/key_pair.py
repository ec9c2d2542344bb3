"""Key pair resource model."""

from __future__ import annotations

from typing import Annotated, ClassVar

from pydantic import Field

from cloud_provisioner.resources.base import Resource
from cloud_provisioner.resources.markers import Immutable


class KeyPairResource(Resource):
    """An SSH key pair registered with the cloud under the resource name.

    The public key material is supplied by the user; key generation is not
    the provisioner's business.
    """

    kind: ClassVar[str] = "key_pair"
    outputs: ClassVar[tuple[str, ...]] = ("id", "key_name", "fingerprint")

    public_key: Annotated[str, Immutable()] = Field(min_length=1)
