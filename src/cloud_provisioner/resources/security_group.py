"""Security group resource model."""

from __future__ import annotations

from typing import Annotated, ClassVar, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cloud_provisioner.resources.base import Resource
from cloud_provisioner.resources.markers import Compare, Immutable


class SecurityGroupRule(BaseModel):
    """One allow-list entry: traffic of *protocol* on a port range from a set of CIDRs.

    ``protocol="-1"`` means all traffic, in which case ports must be omitted.
    """

    model_config = ConfigDict(extra="forbid")

    protocol: str = "tcp"
    from_port: int | None = Field(default=None, ge=0, le=65535)
    to_port: int | None = Field(default=None, ge=0, le=65535)
    cidr_blocks: list[str] = Field(default_factory=lambda: ["0.0.0.0/0"], min_length=1)
    description: str = ""

    @model_validator(mode="after")
    def _check_ports(self) -> Self:
        if self.protocol == "-1":
            if self.from_port is not None or self.to_port is not None:
                msg = "Ports must be omitted when protocol is '-1' (all traffic)"
                raise ValueError(msg)
            return self
        if self.from_port is None:
            msg = f"from_port is required for protocol '{self.protocol}'"
            raise ValueError(msg)
        if self.to_port is None:
            self.to_port = self.from_port
        if self.to_port < self.from_port:
            msg = f"to_port ({self.to_port}) must be >= from_port ({self.from_port})"
            raise ValueError(msg)
        return self


def split_rules(rules: list[SecurityGroupRule]) -> list[SecurityGroupRule]:
    """One rule per CIDR block, repeats dropped.

    EC2 reports ranges that share protocol and ports as a single permission,
    so rules are kept in this flat shape on both sides of a comparison.
    """
    seen: set[tuple[str, int | None, int | None, str]] = set()
    flat: list[SecurityGroupRule] = []
    for rule in rules:
        for cidr in rule.cidr_blocks:
            key = (rule.protocol, rule.from_port, rule.to_port, cidr)
            if key in seen:
                continue
            seen.add(key)
            flat.append(rule.model_copy(update={"cidr_blocks": [cidr]}))
    return flat


class SecurityGroupResource(Resource):
    """A security group holding ingress (and optionally egress) allow rules.

    ``egress=None`` leaves the provider's default outbound rule untouched.
    """

    kind: ClassVar[str] = "security_group"
    outputs: ClassVar[tuple[str, ...]] = ("id", "group_name")

    description: Annotated[str, Immutable()] = "Managed by cloud-provisioner"
    vpc_id: Annotated[str | None, Immutable()] = None
    ingress: Annotated[list[SecurityGroupRule], Compare("set")] = Field(default_factory=list)
    egress: Annotated[list[SecurityGroupRule] | None, Compare("set")] = None

    @field_validator("ingress", "egress")
    @classmethod
    def _one_rule_per_cidr(
        cls, rules: list[SecurityGroupRule] | None
    ) -> list[SecurityGroupRule] | None:
        return None if rules is None else split_rules(rules)
