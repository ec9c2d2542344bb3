"""Shared fixtures for unit tests."""

from __future__ import annotations

import itertools
import threading
import time
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock

import pytest

from cloud_provisioner.config import load
from cloud_provisioner.core.provider import AwsProvider
from cloud_provisioner.engine.engine import ProvisionEngine
from cloud_provisioner.engine.handlers import ResourceHandler
from cloud_provisioner.engine.registry import ResourceTypeRegistry
from cloud_provisioner.engine.types import RetryPolicy
from cloud_provisioner.resources import (
    InstanceResource,
    KeyPairResource,
    SecurityGroupResource,
    SecurityGroupRule,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from cloud_provisioner.config.schema import Config
    from cloud_provisioner.core.state import ResourceInstance
    from cloud_provisioner.engine.handlers import EngineContext
    from cloud_provisioner.resources.base import Resource

_ENV_VARS = (
    "AWS_REGION",
    "AWS_DEFAULT_REGION",
    "AWS_PROFILE",
    "AWS_ENDPOINT_URL",
    "CLOUD_PROVISIONER_LOG",
    "NO_COLOR",
)


@pytest.fixture(autouse=True)
def _clean_aws_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove AWS_* env vars so unit tests don't leak account config."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory fixture: write YAML + optional .env, return loaded Config."""

    def _make(yaml_str: str, *, dotenv: str | None = None) -> Config:
        (tmp_path / "config.yaml").write_text(yaml_str)
        if dotenv is not None:
            (tmp_path / ".env").write_text(dotenv)
        return load(tmp_path / "config.yaml")

    return _make


# ── In-memory provider ──────────────────────────────────────────────


class FakeCloud:
    """Thread-safe in-memory stand-in for the provider.

    ``fail(op, address, *errors)`` queues errors raised by the next calls of
    *op* on *address*, one per call.
    """

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self._failures: dict[tuple[str, str], list[BaseException]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def fail(self, op: str, address: str, *errors: BaseException) -> None:
        self._failures[(op, address)] = list(errors)

    def new_id(self, kind: str) -> str:
        with self._lock:
            return f"{kind}-{next(self._ids)}"

    def call(self, op: str, address: str) -> None:
        with self._lock:
            self.calls.append((op, address))
            pending = self._failures.get((op, address))
            error = pending.pop(0) if pending else None
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if error is not None:
                raise error
        finally:
            with self._lock:
                self.active -= 1

    def ops(self, op: str) -> list[str]:
        return [addr for o, addr in self.calls if o == op]


def _extra_outputs(resource: Resource, rid: str) -> dict[str, Any]:
    if isinstance(resource, KeyPairResource):
        return {"key_name": resource.name, "fingerprint": f"fp:{resource.name}"}
    if isinstance(resource, SecurityGroupResource):
        return {"group_name": resource.name}
    if isinstance(resource, InstanceResource):
        n = rid.rsplit("-", 1)[1]
        return {
            "public_ip": f"203.0.113.{n}",
            "private_ip": f"10.0.0.{n}",
            "public_dns": f"ec2-{n}.example.com",
            "state": "running",
        }
    return {}


class FakeHandler(ResourceHandler[Any]):
    """Handler backed by a :class:`FakeCloud`."""

    def __init__(self, cloud: FakeCloud) -> None:
        self.cloud = cloud
        self.validation_errors: list[str] = []

    def validate(self, ctx: EngineContext, desired: Any) -> list[str]:
        _ = ctx, desired
        return list(self.validation_errors)

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        _ = ctx
        attrs = self.cloud.objects.get(prior.resource_id or "")
        return None if attrs is None else dict(attrs)

    def create(self, ctx: EngineContext, desired: Any) -> dict[str, Any]:
        _ = ctx
        self.cloud.call("create", desired.address)
        rid = self.cloud.new_id(desired.kind)
        self.cloud.objects[rid] = desired.attributes()
        return {"id": rid, **_extra_outputs(desired, rid)}

    def update(
        self,
        ctx: EngineContext,
        desired: Any,
        prior: ResourceInstance,
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        _ = ctx, diff
        self.cloud.call("update", desired.address)
        self.cloud.objects[prior.resource_id] = desired.attributes()
        return {}

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        _ = ctx
        self.cloud.call("delete", prior.address)
        self.cloud.objects.pop(prior.resource_id, None)


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def handler(cloud: FakeCloud) -> FakeHandler:
    return FakeHandler(cloud)


@pytest.fixture
def registry(handler: FakeHandler) -> ResourceTypeRegistry:
    reg = ResourceTypeRegistry()
    reg.register(KeyPairResource, handler)
    reg.register(SecurityGroupResource, handler)
    reg.register(InstanceResource, handler)
    return reg


@pytest.fixture
def make_engine(tmp_path: Path, registry: ResourceTypeRegistry) -> Callable[..., ProvisionEngine]:
    """Factory fixture: engine over the fake cloud with instant retries."""

    def _make(*, parallelism: int = 4, max_attempts: int = 3) -> ProvisionEngine:
        return ProvisionEngine(
            provider=AwsProvider.from_client(MagicMock()),
            state_path=tmp_path / "state.json",
            registry=registry,
            parallelism=parallelism,
            retry=RetryPolicy(max_attempts=max_attempts, base_delay=0, jitter=0),
            sleep=lambda _s: None,
        )

    return _make


@pytest.fixture
def engine(make_engine: Callable[..., ProvisionEngine]) -> ProvisionEngine:
    return make_engine()


def _dove_stack(
    *, instance_type: str = "t3.micro", public_key: str = "ssh-ed25519 AAAA dove"
) -> list[Resource]:
    return [
        KeyPairResource(name="dove-key", public_key=public_key),
        SecurityGroupResource(
            name="dove-sg",
            description="SSH and HTTP",
            ingress=[
                SecurityGroupRule(from_port=22, cidr_blocks=["203.0.113.0/24"]),
                SecurityGroupRule(from_port=80),
            ],
        ),
        InstanceResource(
            name="web",
            ami="ami-0123456789abcdef0",
            instance_type=instance_type,
            key_name="${key_pair.dove-key.key_name}",
            security_group_ids=["${security_group.dove-sg.id}"],
        ),
    ]


@pytest.fixture
def dove_stack() -> Callable[..., list[Resource]]:
    """Factory fixture: a key pair, a security group and an instance using both."""
    return _dove_stack
