from __future__ import annotations

import pytest
from pydantic import ValidationError

from cloud_provisioner.resources import (
    InstanceResource,
    KeyPairResource,
    SecurityGroupResource,
    SecurityGroupRule,
)


class TestSecurityGroupRule:
    def test_to_port_defaults_to_from_port(self) -> None:
        rule = SecurityGroupRule(from_port=443)
        assert rule.to_port == 443
        assert rule.protocol == "tcp"
        assert rule.cidr_blocks == ["0.0.0.0/0"]

    def test_port_range(self) -> None:
        rule = SecurityGroupRule(protocol="udp", from_port=1000, to_port=2000)
        assert (rule.from_port, rule.to_port) == (1000, 2000)

    def test_all_traffic_takes_no_ports(self) -> None:
        assert SecurityGroupRule(protocol="-1").from_port is None
        with pytest.raises(ValidationError, match="Ports must be omitted"):
            SecurityGroupRule(protocol="-1", from_port=22)

    def test_from_port_required(self) -> None:
        with pytest.raises(ValidationError, match="from_port is required"):
            SecurityGroupRule(protocol="tcp")

    def test_inverted_range_rejected(self) -> None:
        with pytest.raises(ValidationError, match="must be >="):
            SecurityGroupRule(from_port=80, to_port=22)

    def test_port_bounds(self) -> None:
        with pytest.raises(ValidationError):
            SecurityGroupRule(from_port=70000)

    def test_empty_cidrs_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SecurityGroupRule(from_port=22, cidr_blocks=[])

    def test_group_rules_split_per_cidr(self) -> None:
        sg = SecurityGroupResource(
            name="ssh",
            ingress=[
                SecurityGroupRule(from_port=22, cidr_blocks=["10.0.0.0/8", "192.168.0.0/16"]),
                SecurityGroupRule(from_port=22, cidr_blocks=["10.0.0.0/8"]),
            ],
            egress=[SecurityGroupRule(protocol="-1", cidr_blocks=["0.0.0.0/0", "::/0"])],
        )
        assert [r.cidr_blocks for r in sg.ingress] == [["10.0.0.0/8"], ["192.168.0.0/16"]]
        assert sg.egress is not None
        assert [r.cidr_blocks for r in sg.egress] == [["0.0.0.0/0"], ["::/0"]]


class TestResourceBase:
    def test_address(self) -> None:
        assert KeyPairResource(name="dove-key", public_key="x").address == "key_pair.dove-key"

    def test_invalid_name_rejected(self) -> None:
        with pytest.raises(ValidationError):
            KeyPairResource(name="has space", public_key="x")

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            InstanceResource(name="web", ami="ami-1", colour="blue")  # type: ignore[call-arg]

    def test_attributes_exclude_lifecycle_and_unset(self) -> None:
        web = InstanceResource(name="web", ami="ami-1", depends_on=["key_pair.k"])
        assert web.attributes() == {
            "name": "web",
            "tags": {},
            "ami": "ami-1",
            "instance_type": "t3.micro",
            "security_group_ids": [],
        }

    def test_security_group_defaults(self) -> None:
        sg = SecurityGroupResource(name="sg")
        assert sg.description == "Managed by cloud-provisioner"
        assert sg.egress is None
        assert "egress" not in sg.attributes()

    def test_model_roundtrip_through_dump(self) -> None:
        sg = SecurityGroupResource(
            name="sg", ingress=[SecurityGroupRule(from_port=22)], depends_on=["key_pair.k"]
        )
        dumped = sg.model_dump(exclude_none=True, exclude={"address"})
        assert SecurityGroupResource.model_validate(dumped) == sg
