"""Instance handler implementing CRUD via the EC2 instances API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from cloud_provisioner.engine.ec2 import Ec2Handler, aws_tags, error_code, tags_from_aws

if TYPE_CHECKING:
    from cloud_provisioner.core.state import ResourceInstance
    from cloud_provisioner.engine.handlers import EngineContext
    from cloud_provisioner.resources.instance import InstanceResource

logger = logging.getLogger(__name__)

_GONE_STATES = frozenset({"shutting-down", "terminated"})


def _outputs(instance: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": instance["InstanceId"],
        "public_ip": instance.get("PublicIpAddress"),
        "private_ip": instance.get("PrivateIpAddress"),
        "public_dns": instance.get("PublicDnsName") or None,
        "state": instance.get("State", {}).get("Name"),
    }


class InstanceHandler(Ec2Handler["InstanceResource"]):
    """CRUD handler for EC2 instances."""

    # Freshly created key pairs and groups take a moment to become visible.
    transient_codes = frozenset({"InvalidKeyPair.NotFound", "InvalidGroup.NotFound"})

    def __init__(self, *, wait: bool = True) -> None:
        self.wait = wait

    def validate(self, ctx: EngineContext, desired: InstanceResource) -> list[str]:
        _ = ctx
        errors: list[str] = []
        if not desired.ami.startswith(("ami-", "${")):
            errors.append(f"ami must be an image id (ami-...), got '{desired.ami}'")
        if "." not in desired.instance_type:
            errors.append(
                f"instance_type must look like 'family.size', got '{desired.instance_type}'"
            )
        return errors

    def _describe(self, ec2: Any, instance_id: str) -> dict[str, Any] | None:
        try:
            resp = ec2.describe_instances(InstanceIds=[instance_id])
        except Exception as exc:
            if error_code(exc) == "InvalidInstanceID.NotFound":
                return None
            raise
        for reservation in resp.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        return None

    def _wait(self, ec2: Any, waiter: str, instance_id: str) -> None:
        if self.wait:
            ec2.get_waiter(waiter).wait(InstanceIds=[instance_id])

    def create(self, ctx: EngineContext, desired: InstanceResource) -> dict[str, Any]:
        """Launch the instance and wait until it is running."""
        ec2 = ctx.provider.ec2
        kwargs: dict[str, Any] = {
            "ImageId": desired.ami,
            "InstanceType": desired.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": aws_tags(desired.tags, desired.name)}
            ],
        }
        if desired.key_name:
            kwargs["KeyName"] = desired.key_name
        if desired.security_group_ids:
            kwargs["SecurityGroupIds"] = list(desired.security_group_ids)
        if desired.subnet_id:
            kwargs["SubnetId"] = desired.subnet_id
        if desired.user_data:
            kwargs["UserData"] = desired.user_data

        instance_id = ec2.run_instances(**kwargs)["Instances"][0]["InstanceId"]
        logger.info("Launched instance %s (%s)", desired.name, instance_id)
        self._wait(ec2, "instance_running", instance_id)

        instance = self._describe(ec2, instance_id)
        if instance is None:
            msg = f"Instance {instance_id} disappeared right after launch"
            raise RuntimeError(msg)
        return _outputs(instance)

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        """Read an instance. Returns None if it is gone or terminating."""
        instance = self._describe(ctx.provider.ec2, prior.resource_id)
        if instance is None or instance.get("State", {}).get("Name") in _GONE_STATES:
            return None
        attrs: dict[str, Any] = {
            "name": prior.name,
            "tags": tags_from_aws(instance.get("Tags"), prior.name),
            "ami": instance["ImageId"],
            "instance_type": instance["InstanceType"],
        }
        # Without explicit groups EC2 attaches the VPC default one; don't report that as drift.
        groups = [g["GroupId"] for g in instance.get("SecurityGroups", [])]
        attrs["security_group_ids"] = groups if prior.attributes.get("security_group_ids") else []
        if instance.get("KeyName"):
            attrs["key_name"] = instance["KeyName"]
        if prior.attributes.get("subnet_id") is not None:
            attrs["subnet_id"] = instance.get("SubnetId")
        # User data is write-only as far as describe_instances is concerned.
        if prior.attributes.get("user_data") is not None:
            attrs["user_data"] = prior.attributes["user_data"]
        return attrs

    def update(
        self,
        ctx: EngineContext,
        desired: InstanceResource,
        prior: ResourceInstance,
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        """Resize (stop, modify, start), swap security groups, and sync tags."""
        ec2 = ctx.provider.ec2
        instance_id = prior.resource_id
        if "instance_type" in diff:
            logger.info("Resizing %s to %s", instance_id, desired.instance_type)
            ec2.stop_instances(InstanceIds=[instance_id])
            self._wait(ec2, "instance_stopped", instance_id)
            ec2.modify_instance_attribute(
                InstanceId=instance_id, InstanceType={"Value": desired.instance_type}
            )
            ec2.start_instances(InstanceIds=[instance_id])
            self._wait(ec2, "instance_running", instance_id)
        if "security_group_ids" in diff:
            ec2.modify_instance_attribute(
                InstanceId=instance_id, Groups=list(desired.security_group_ids)
            )
        if "tags" in diff:
            self._sync_tags(ec2, instance_id, prior.attributes.get("tags"), desired.tags)

        instance = self._describe(ec2, instance_id)
        # A restart hands out a new public address.
        return _outputs(instance) if instance is not None else dict(prior.computed)

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        """Terminate the instance and wait until it is gone."""
        ec2 = ctx.provider.ec2
        try:
            ec2.terminate_instances(InstanceIds=[prior.resource_id])
        except Exception as exc:
            if error_code(exc) == "InvalidInstanceID.NotFound":
                return
            raise
        self._wait(ec2, "instance_terminated", prior.resource_id)
