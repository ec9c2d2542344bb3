"""Attribute comparison used by the planner and by in-place updates."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from cloud_provisioner.engine.references import contains_unknown

if TYPE_CHECKING:
    from collections.abc import Mapping

    from cloud_provisioner.resources.markers import CompareStrategy


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def values_differ(
    desired: Any,
    prior: Any,
    *,
    strategy: CompareStrategy | None = None,
) -> bool:
    """Check whether a desired value differs from the prior (stored) value.

    Comparison semantics depend on *strategy*:

    - ``strategy="set"``:
      - If both values are lists, they are compared as sets (order-insensitive).
        Unhashable items (rules, dicts) are compared by canonical JSON.
      - Other types fall back to strict equality.
    - ``strategy="exact"``:
      - Values are compared with strict equality.
      - For dicts, extra or missing keys are treated as differences.
    - ``strategy=None`` or ``"partial"``:
      - For dict values, only keys present in *desired* are compared.
      - Extra keys present only in *prior* (provider-added defaults) are ignored.
      - Non-dict values use strict equality.

    A value still waiting on a reference (see ``UNKNOWN``) always differs.
    """
    if contains_unknown(desired):
        return True

    if strategy == "set":
        if isinstance(desired, list) and isinstance(prior, list):
            return {_canonical(v) for v in desired} != {_canonical(v) for v in prior}
        return desired != prior

    if strategy == "exact":
        return desired != prior

    if isinstance(desired, dict) and isinstance(prior, dict):
        return any(values_differ(v, prior.get(k), strategy="partial") for k, v in desired.items())
    return desired != prior


def compute_diff(
    planned: Mapping[str, Any],
    prior: Mapping[str, Any],
    strategies: Mapping[str, CompareStrategy],
) -> dict[str, dict[str, Any]]:
    """``{field: {"from": prior, "to": planned}}`` for every differing declared field."""
    return {
        k: {"from": prior.get(k), "to": v}
        for k, v in planned.items()
        if values_differ(v, prior.get(k), strategy=strategies.get(k))
    }
