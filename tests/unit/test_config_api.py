from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest

from cloud_provisioner.config import ConfigError, _engine_from_config, plan, save_state
from cloud_provisioner.config.registry import default_registry
from cloud_provisioner.core.state import State
from cloud_provisioner.engine.errors import UnresolvedReferenceError, ValidationError
from cloud_provisioner.engine.instance_handler import InstanceHandler
from cloud_provisioner.engine.key_pair_handler import KeyPairHandler
from cloud_provisioner.engine.security_group_handler import SecurityGroupHandler
from cloud_provisioner.engine.types import Action

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from cloud_provisioner.config.schema import Config


def _yaml(tmp_path: Path, body: str) -> str:
    return f"provider:\n  region: eu-west-1\nstate_path: {tmp_path / 'state.json'}\n{body}"


def test_default_registry() -> None:
    registry = default_registry()
    assert registry.kinds() == ["instance", "key_pair", "security_group"]
    assert isinstance(registry.get("key_pair").handler, KeyPairHandler)
    assert isinstance(registry.get("security_group").handler, SecurityGroupHandler)
    assert isinstance(registry.get("instance").handler, InstanceHandler)


def test_engine_requires_region(make_config: Callable[..., Config]) -> None:
    cfg = make_config("key_pairs: []\n")
    with pytest.raises(ConfigError, match="region"):
        _engine_from_config(cfg)


def test_engine_from_config(make_config: Callable[..., Config]) -> None:
    cfg = make_config("provider: {region: eu-west-1, profile: ops}\nparallelism: 2\n")
    with patch("cloud_provisioner.config.ProvisionEngine") as engine_cls:
        _engine_from_config(cfg)

    kwargs = engine_cls.call_args.kwargs
    assert kwargs["provider"].region == "eu-west-1"
    assert kwargs["provider"].profile == "ops"
    assert kwargs["parallelism"] == 2
    assert kwargs["state_path"] == cfg.state_path


def test_plan_without_refresh_makes_no_provider_calls(
    make_config: Callable[..., Config], tmp_path: Path
) -> None:
    cfg = make_config(
        _yaml(
            tmp_path,
            """\
key_pairs:
  - {name: dove-key, public_key: "ssh-ed25519 AAAA"}
instances:
  - name: web
    ami: ami-1
    key_name: ${key_pair.dove-key.key_name}
""",
        )
    )
    with patch("cloud_provisioner.core.provider.boto3") as boto3_mod:
        plan_obj = plan(cfg, refresh=False)

    boto3_mod.Session.assert_not_called()
    assert [(c.address, c.action) for c in plan_obj.changes] == [
        ("key_pair.dove-key", Action.CREATE),
        ("instance.web", Action.CREATE),
    ]


def test_plan_surfaces_handler_validation(
    make_config: Callable[..., Config], tmp_path: Path
) -> None:
    cfg = make_config(_yaml(tmp_path, "instances: [{name: web, ami: ubuntu-22.04}]\n"))

    with pytest.raises(ValidationError, match="ami must be an image id"):
        plan(cfg, refresh=False)


def test_plan_rejects_dangling_reference(
    make_config: Callable[..., Config], tmp_path: Path
) -> None:
    cfg = make_config(
        _yaml(
            tmp_path,
            "instances: [{name: web, ami: ami-1, key_name: '${key_pair.gone.key_name}'}]\n",
        )
    )

    with pytest.raises(UnresolvedReferenceError, match="key_pair.gone"):
        plan(cfg, refresh=False)


def test_save_state_bumps_serial(make_config: Callable[..., Config], tmp_path: Path) -> None:
    cfg = make_config(_yaml(tmp_path, ""))
    state = State(serial=4)

    save_state(cfg, state)

    assert State.load(cfg.state_path).serial == 5


def test_refresh_reports_drift(make_config: Callable[..., Config], tmp_path: Path) -> None:
    from cloud_provisioner.config import refresh

    cfg = make_config(_yaml(tmp_path, ""))
    old = State(lineage="l")
    new = State(lineage="l")
    engine = MagicMock()
    engine.refresh.return_value = (old, new)

    with patch("cloud_provisioner.config._engine_from_config", return_value=engine):
        changes, state = refresh(cfg)

    assert changes == []
    assert state is new
    engine.refresh.assert_called_once_with()
