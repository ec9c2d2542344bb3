"""AWS Provider - Connection configuration for the EC2 API."""

from functools import cached_property
from typing import Any, Self

import boto3
from botocore.config import Config
from pydantic import BaseModel, ConfigDict


class AwsProvider(BaseModel):
    """Connection configuration for an AWS account/region.

    Credentials come from the standard boto3 chain (environment, shared
    config, instance profile); the provisioner never handles them. Use
    `from_client` to inject a pre-built client, e.g. in tests.

    Examples:
        provider = AwsProvider(region="eu-west-1")

        # LocalStack or another EC2-compatible endpoint
        provider = AwsProvider(region="us-east-1", endpoint_url="http://localhost:4566")
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    region: str | None = None
    profile: str | None = None
    endpoint_url: str | None = None

    # Injected client (for testing)
    _injected_client: Any = None

    @classmethod
    def from_client(cls, client: Any) -> Self:
        """Create a provider with an injected EC2 client.

        Args:
            client: A pre-configured ``boto3`` EC2 client (or a test double)
        """
        provider = cls.model_construct()
        provider._injected_client = client
        return provider

    @cached_property
    def ec2(self) -> Any:
        """Get the EC2 client."""
        if self._injected_client is not None:
            return self._injected_client

        session = boto3.Session(profile_name=self.profile, region_name=self.region)
        # Throttling is retried by the engine; keep botocore's own retries short.
        config = Config(retries={"max_attempts": 2, "mode": "standard"})
        return session.client("ec2", endpoint_url=self.endpoint_url, config=config)
