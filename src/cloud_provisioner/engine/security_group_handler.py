"""Security group handler implementing CRUD via the EC2 security group API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from cloud_provisioner.engine.ec2 import Ec2Handler, aws_tags, error_code, tags_from_aws

if TYPE_CHECKING:
    from cloud_provisioner.core.state import ResourceInstance
    from cloud_provisioner.engine.handlers import EngineContext
    from cloud_provisioner.resources.security_group import SecurityGroupResource

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"InvalidGroup.NotFound", "InvalidGroupId.NotFound"})


def rules_to_permissions(rules: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Rule dicts (as dumped from ``SecurityGroupRule``) → EC2 ``IpPermissions``."""
    permissions = []
    for rule in rules:
        extra = {"Description": rule["description"]} if rule.get("description") else {}
        perm: dict[str, Any] = {
            "IpProtocol": rule["protocol"],
            "IpRanges": [{"CidrIp": cidr, **extra} for cidr in rule["cidr_blocks"]],
        }
        if rule.get("from_port") is not None:
            perm["FromPort"] = rule["from_port"]
            perm["ToPort"] = rule["to_port"]
        permissions.append(perm)
    return permissions


def permissions_to_rules(permissions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """EC2 ``IpPermissions`` → rule dicts comparable with the desired ones.

    EC2 groups every range sharing protocol and ports into one permission;
    each range becomes its own rule, matching ``split_rules``.
    """
    rules = []
    for perm in permissions:
        # IPv6 / prefix-list / group-sourced entries are outside our allow-list model.
        for ip_range in perm.get("IpRanges", []):
            rule: dict[str, Any] = {
                "protocol": perm["IpProtocol"],
                "cidr_blocks": [ip_range["CidrIp"]],
                "description": ip_range.get("Description", ""),
            }
            if perm["IpProtocol"] != "-1":
                rule["from_port"] = perm.get("FromPort")
                rule["to_port"] = perm.get("ToPort")
            rules.append(rule)
    return rules


class SecurityGroupHandler(Ec2Handler["SecurityGroupResource"]):
    """CRUD handler for EC2 security groups."""

    # Deleting a group still attached to a terminating instance fails until
    # the instance is gone.
    transient_codes = frozenset({"DependencyViolation"})

    def _rules(self, desired: SecurityGroupResource, field: str) -> list[dict[str, Any]]:
        rules = getattr(desired, field) or []
        return [r.model_dump(exclude_none=True) for r in rules]

    def create(self, ctx: EngineContext, desired: SecurityGroupResource) -> dict[str, Any]:
        """Create the group, then authorize its rules."""
        ec2 = ctx.provider.ec2
        kwargs: dict[str, Any] = {
            "GroupName": desired.name,
            "Description": desired.description,
            "TagSpecifications": [
                {"ResourceType": "security-group", "Tags": aws_tags(desired.tags, desired.name)}
            ],
        }
        if desired.vpc_id:
            kwargs["VpcId"] = desired.vpc_id
        group_id = ec2.create_security_group(**kwargs)["GroupId"]
        logger.info("Created security group %s (%s)", desired.name, group_id)

        ingress = self._rules(desired, "ingress")
        if ingress:
            ec2.authorize_security_group_ingress(
                GroupId=group_id, IpPermissions=rules_to_permissions(ingress)
            )
        if desired.egress is not None:
            self._replace_egress(ec2, group_id, self._current_egress(ec2, group_id), desired)
        return {"id": group_id, "group_name": desired.name}

    def _describe(self, ec2: Any, group_id: str) -> dict[str, Any] | None:
        try:
            resp = ec2.describe_security_groups(GroupIds=[group_id])
        except Exception as exc:
            if error_code(exc) in _NOT_FOUND_CODES:
                return None
            raise
        groups = resp.get("SecurityGroups", [])
        return groups[0] if groups else None

    def _current_egress(self, ec2: Any, group_id: str) -> list[dict[str, Any]]:
        group = self._describe(ec2, group_id)
        return list(group.get("IpPermissionsEgress", [])) if group else []

    def _replace_egress(
        self,
        ec2: Any,
        group_id: str,
        current: list[dict[str, Any]],
        desired: SecurityGroupResource,
    ) -> None:
        if current:
            ec2.revoke_security_group_egress(GroupId=group_id, IpPermissions=current)
        egress = self._rules(desired, "egress")
        if egress:
            ec2.authorize_security_group_egress(
                GroupId=group_id, IpPermissions=rules_to_permissions(egress)
            )

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        """Read a security group. Returns None if it no longer exists."""
        group = self._describe(ctx.provider.ec2, prior.resource_id)
        if group is None:
            return None
        attrs: dict[str, Any] = {
            "name": prior.name,
            "tags": tags_from_aws(group.get("Tags"), prior.name),
            "description": group.get("Description", ""),
            "ingress": permissions_to_rules(group.get("IpPermissions", [])),
        }
        if prior.attributes.get("vpc_id") is not None:
            attrs["vpc_id"] = group.get("VpcId")
        # Egress is only tracked when the configuration manages it.
        if "egress" in prior.attributes:
            attrs["egress"] = permissions_to_rules(group.get("IpPermissionsEgress", []))
        return attrs

    def update(
        self,
        ctx: EngineContext,
        desired: SecurityGroupResource,
        prior: ResourceInstance,
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        """Swap changed rule sets and tags in place."""
        ec2 = ctx.provider.ec2
        group_id = prior.resource_id
        if "ingress" in diff:
            old = prior.attributes.get("ingress") or []
            if old:
                ec2.revoke_security_group_ingress(
                    GroupId=group_id, IpPermissions=rules_to_permissions(old)
                )
            new = self._rules(desired, "ingress")
            if new:
                ec2.authorize_security_group_ingress(
                    GroupId=group_id, IpPermissions=rules_to_permissions(new)
                )
        if "egress" in diff:
            old_egress = rules_to_permissions(prior.attributes.get("egress") or [])
            self._replace_egress(ec2, group_id, old_egress, desired)
        if "tags" in diff:
            self._sync_tags(ec2, group_id, prior.attributes.get("tags"), desired.tags)
        return dict(prior.computed)

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        """Delete the security group."""
        try:
            ctx.provider.ec2.delete_security_group(GroupId=prior.resource_id)
        except Exception as exc:
            if error_code(exc) in _NOT_FOUND_CODES:
                return
            raise
