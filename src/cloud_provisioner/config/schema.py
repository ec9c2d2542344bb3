"""Configuration models for YAML-based provisioning."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cloud_provisioner.engine.types import RetryPolicy
from cloud_provisioner.resources.base import (
    Resource,  # noqa: TC001 Pydantic needs this at runtime
)
from cloud_provisioner.resources.instance import (
    InstanceResource,  # noqa: TC001 Pydantic needs this at runtime
)
from cloud_provisioner.resources.key_pair import (
    KeyPairResource,  # noqa: TC001 Pydantic needs this at runtime
)
from cloud_provisioner.resources.security_group import (
    SecurityGroupResource,  # noqa: TC001 Pydantic needs this at runtime
)


class ProviderConfig(BaseSettings):
    """AWS provider connection settings.

    Fields can be set via YAML (constructor kwargs) or environment variables
    with the ``AWS_`` prefix.  Constructor kwargs take precedence.

    Credentials are never part of the configuration; boto3 picks them up
    from its usual chain (environment, shared files, instance profile).
    """

    model_config = SettingsConfigDict(env_prefix="AWS_")

    region: str | None = None
    profile: str | None = None
    endpoint_url: str | None = None


def _none_to_list(v: Any) -> Any:
    return v if v is not None else []


class Config(BaseModel):
    """Provisioning configuration; validates YAML structure directly."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    state_path: Path = Path(".cloud-state.json")
    parallelism: int = Field(default=4, ge=1)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    key_pairs: Annotated[list[KeyPairResource], BeforeValidator(_none_to_list)] = []
    security_groups: Annotated[list[SecurityGroupResource], BeforeValidator(_none_to_list)] = []
    instances: Annotated[list[InstanceResource], BeforeValidator(_none_to_list)] = []
    config_dir: Path = Path()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def resources(self) -> list[Resource]:
        """All declared resources; ordering is not significant."""
        return [*self.key_pairs, *self.security_groups, *self.instances]
