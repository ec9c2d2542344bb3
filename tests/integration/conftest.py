"""Pytest fixtures for integration tests against LocalStack."""

import time
from collections.abc import Generator
from pathlib import Path

import pytest
import requests
from testcontainers.core.container import DockerContainer
from testcontainers.core.waiting_utils import wait_for_logs

from cloud_provisioner.core import AwsProvider

REGION = "us-east-1"


class LocalStackContainer(DockerContainer):
    """Testcontainer for LocalStack with only the EC2 service enabled."""

    EDGE_PORT = 4566

    def __init__(self, image: str = "localstack/localstack:latest") -> None:
        super().__init__(image)
        self.with_exposed_ports(self.EDGE_PORT)
        self.with_env("SERVICES", "ec2")
        self.with_env("AWS_DEFAULT_REGION", REGION)

    def get_endpoint_url(self) -> str:
        host = self.get_container_host_ip()
        port = self.get_exposed_port(self.EDGE_PORT)
        return f"http://{host}:{port}"

    def _wait_for_ec2(self, timeout: int = 60) -> None:
        url = f"{self.get_endpoint_url()}/_localstack/health"
        deadline = time.time() + timeout
        while time.time() < deadline:
            try:
                resp = requests.get(url, timeout=5)
                if resp.ok and resp.json().get("services", {}).get("ec2") in (
                    "available",
                    "running",
                ):
                    return
            except requests.RequestException:
                pass
            time.sleep(1)
        raise TimeoutError(f"LocalStack EC2 did not become ready at {url}")

    def start(self) -> "LocalStackContainer":
        super().start()
        wait_for_logs(self, "Ready.", timeout=120)
        self._wait_for_ec2()
        return self


@pytest.fixture(scope="session")
def localstack() -> Generator[LocalStackContainer]:
    """Start a LocalStack container for the test session."""
    with LocalStackContainer() as container:
        yield container


@pytest.fixture(autouse=True)
def _dummy_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "test")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "test")
    monkeypatch.delenv("AWS_PROFILE", raising=False)


@pytest.fixture
def aws_provider(localstack: LocalStackContainer) -> AwsProvider:
    return AwsProvider(region=REGION, endpoint_url=localstack.get_endpoint_url())


@pytest.fixture
def config_file(localstack: LocalStackContainer, tmp_path: Path) -> Path:
    """Write the dove stack configuration pointed at the container."""
    path = tmp_path / "cloud-provisioner.yaml"
    path.write_text(
        f"""\
provider:
  region: {REGION}
  endpoint_url: {localstack.get_endpoint_url()}
state_path: {tmp_path / "state.json"}
key_pairs:
  - name: dove-key
    public_key: "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIC2i integration"
security_groups:
  - name: dove-sg
    description: SSH and HTTP
    ingress:
      - {{from_port: 22, cidr_blocks: ["10.0.0.0/8"]}}
      - {{from_port: 80}}
instances:
  - name: web
    ami: ami-ff0fea8310f3
    instance_type: t3.micro
    key_name: ${{key_pair.dove-key.key_name}}
    security_group_ids: ["${{security_group.dove-sg.id}}"]
"""
    )
    return path
