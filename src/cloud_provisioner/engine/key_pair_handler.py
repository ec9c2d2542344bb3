"""Key pair handler implementing CRUD via the EC2 key pair API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from cloud_provisioner.engine.ec2 import Ec2Handler, aws_tags, error_code, tags_from_aws

if TYPE_CHECKING:
    from cloud_provisioner.core.state import ResourceInstance
    from cloud_provisioner.engine.handlers import EngineContext
    from cloud_provisioner.resources.key_pair import KeyPairResource

logger = logging.getLogger(__name__)

_PUBLIC_KEY_PREFIXES = ("ssh-rsa ", "ssh-ed25519 ", "ecdsa-sha2-")


class KeyPairHandler(Ec2Handler["KeyPairResource"]):
    """CRUD handler for EC2 key pairs (imported public keys)."""

    def validate(self, ctx: EngineContext, desired: KeyPairResource) -> list[str]:
        _ = ctx
        if desired.public_key.startswith("${"):
            return []
        if not desired.public_key.startswith(_PUBLIC_KEY_PREFIXES):
            return ["public_key must be an OpenSSH public key (ssh-rsa, ssh-ed25519 or ecdsa)"]
        return []

    def create(self, ctx: EngineContext, desired: KeyPairResource) -> dict[str, Any]:
        """Import the public key under the resource name."""
        resp = ctx.provider.ec2.import_key_pair(
            KeyName=desired.name,
            PublicKeyMaterial=desired.public_key.encode("utf-8"),
            TagSpecifications=[
                {"ResourceType": "key-pair", "Tags": aws_tags(desired.tags, desired.name)}
            ],
        )
        logger.info("Imported key pair %s (%s)", resp["KeyName"], resp["KeyPairId"])
        return {
            "id": resp["KeyPairId"],
            "key_name": resp["KeyName"],
            "fingerprint": resp.get("KeyFingerprint"),
        }

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        """Read a key pair. Returns None if it no longer exists."""
        try:
            resp = ctx.provider.ec2.describe_key_pairs(KeyPairIds=[prior.resource_id])
        except Exception as exc:
            if error_code(exc) == "InvalidKeyPair.NotFound":
                return None
            raise
        pairs = resp.get("KeyPairs", [])
        if not pairs:
            return None
        kp = pairs[0]
        return {
            "name": prior.name,
            "tags": tags_from_aws(kp.get("Tags"), prior.name),
            # EC2 normalizes the stored key material; echo what was applied so
            # refresh doesn't report phantom drift.
            "public_key": prior.attributes.get("public_key"),
        }

    def update(
        self,
        ctx: EngineContext,
        desired: KeyPairResource,
        prior: ResourceInstance,
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        """Only tags change in place; the key material is immutable."""
        if "tags" in diff:
            self._sync_tags(
                ctx.provider.ec2, prior.resource_id, prior.attributes.get("tags"), desired.tags
            )
        return dict(prior.computed)

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        """Delete the key pair."""
        try:
            ctx.provider.ec2.delete_key_pair(KeyPairId=prior.resource_id)
        except Exception as exc:
            if error_code(exc) == "InvalidKeyPair.NotFound":
                # Already gone.
                return
            raise
