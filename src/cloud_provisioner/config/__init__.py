"""YAML configuration loading and convenience plan/apply API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from cloud_provisioner.config.loader import ConfigError, load_config
from cloud_provisioner.config.registry import default_registry
from cloud_provisioner.config.schema import Config, ProviderConfig
from cloud_provisioner.core.provider import AwsProvider
from cloud_provisioner.core.state import State
from cloud_provisioner.engine.engine import ProgressCallback, ProvisionEngine
from cloud_provisioner.engine.lock import StateLock
from cloud_provisioner.engine.types import Action, ResourceChange

if TYPE_CHECKING:
    from pathlib import Path

    from cloud_provisioner.engine.types import ApplyResult, Plan

__all__ = [
    "Config",
    "ConfigError",
    "ProviderConfig",
    "State",
    "apply",
    "load",
    "load_config",
    "plan",
    "plan_and_apply",
    "refresh",
    "save_state",
]


def load(path: Path | str) -> Config:
    """Load a YAML configuration file."""
    return load_config(path)


def _engine_from_config(config: Config) -> ProvisionEngine:
    """Build a ``ProvisionEngine`` from a ``Config`` instance."""
    if not config.provider.region:
        raise ConfigError("provider.region is required (set in YAML or AWS_REGION env var)")
    provider = AwsProvider(
        region=config.provider.region,
        profile=config.provider.profile,
        endpoint_url=config.provider.endpoint_url,
    )
    return ProvisionEngine(
        provider=provider,
        state_path=config.state_path,
        registry=default_registry(),
        parallelism=config.parallelism,
        retry=config.retry,
    )


def plan(config: Config, *, destroy: bool = False, refresh: bool = True) -> Plan:
    """Plan changes for the given configuration."""
    engine = _engine_from_config(config)
    return engine.plan(config.resources, destroy=destroy, refresh=refresh)


def apply(
    plan_obj: Plan, config: Config, *, progress: ProgressCallback | None = None
) -> ApplyResult:
    """Apply a previously computed plan."""
    engine = _engine_from_config(config)
    return engine.apply(plan_obj, progress=progress)


def plan_and_apply(config: Config, *, destroy: bool = False, refresh: bool = True) -> ApplyResult:
    """Plan and apply in one step."""
    plan_obj = plan(config, destroy=destroy, refresh=refresh)
    return apply(plan_obj, config)


def refresh(config: Config) -> tuple[list[ResourceChange], State]:
    """Refresh state from the live provider (not persisted).

    Returns the list of drift changes and the new state. Call
    :func:`save_state` to persist the returned state to disk.
    """
    engine = _engine_from_config(config)
    old_state, new_state = engine.refresh()
    return _build_drift_changes(old_state, new_state), new_state


def save_state(config: Config, state: State) -> None:
    """Persist state to disk."""
    with StateLock(config.state_path):
        state.serial += 1
        state.save(config.state_path)


def _build_drift_changes(old_state: State, new_state: State) -> list[ResourceChange]:
    """Compare old vs new state and return a list of drift changes."""
    changes: list[ResourceChange] = []
    for addr, inst in sorted(new_state.resources.items()):
        old_inst = old_state.resources.get(addr)
        if old_inst is None:
            continue
        old = old_inst.attributes
        if old != inst.attributes:
            all_keys = set(old) | set(inst.attributes)
            diff = {
                k: {"from": old.get(k), "to": inst.attributes.get(k)}
                for k in sorted(all_keys)
                if old.get(k) != inst.attributes.get(k)
            }
            changes.append(
                ResourceChange(
                    address=addr,
                    kind=inst.kind,
                    action=Action.UPDATE,
                    prior=dict(old),
                    planned=dict(inst.attributes),
                    diff=diff,
                )
            )
    for addr in sorted(set(old_state.resources) - set(new_state.resources)):
        old_inst = old_state.resources[addr]
        changes.append(
            ResourceChange(
                address=addr,
                kind=old_inst.kind,
                action=Action.DELETE,
                prior=dict(old_inst.attributes),
            )
        )
    return changes
