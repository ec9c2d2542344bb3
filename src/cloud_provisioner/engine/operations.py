"""Apply operations.

Terraform runs apply by executing a graph of operations (resource nodes + other
nodes). This module implements a minimal version of that idea: each operation
knows how to apply itself and lists dependencies on other operations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from cloud_provisioner.core.state import ResourceInstance, compute_attributes_hash
from cloud_provisioner.engine.diff import compute_diff
from cloud_provisioner.engine.references import cell_lookup, resolve_references
from cloud_provisioner.engine.types import Action
from cloud_provisioner.resources.markers import collect_compare_strategies

if TYPE_CHECKING:
    from collections.abc import Callable

    from cloud_provisioner.core.state import State, StateStore
    from cloud_provisioner.engine.handlers import EngineContext, ResourceHandler
    from cloud_provisioner.engine.references import OutputCell
    from cloud_provisioner.engine.registry import ResourceTypeRegistration, ResourceTypeRegistry
    from cloud_provisioner.engine.types import Plan, ResourceChange
    from cloud_provisioner.resources.base import Resource

T = TypeVar("T")

BARRIER_KEY = "__engine__.apply_barrier"


class ProviderCall(Protocol):
    """Invokes one provider call (with retries) on behalf of an operation."""

    def __call__(self, handler: ResourceHandler[Any], description: str, fn: Callable[[], T]) -> T:
        ...


@dataclass
class OperationContext:
    """Everything an operation needs while it runs on a worker thread."""

    ctx: EngineContext
    registry: ResourceTypeRegistry
    store: StateStore
    cells: dict[str, OutputCell]
    call: ProviderCall


class Operation(Protocol):
    key: str
    deps: list[str]
    change: ResourceChange | None
    # Whether a failed dependency makes this operation skip (False for ordering-only nodes).
    skips_on_failure: bool
    # False for the first half of a replace: its success does not finish the change.
    final: bool

    def run(self, octx: OperationContext) -> None:
        """Execute this operation; raise on failure."""


@dataclass
class BarrierOperation:
    """A no-op node used to enforce ordering between operation phases."""

    key: str
    deps: list[str] = field(default_factory=list)
    change: ResourceChange | None = None
    skips_on_failure: bool = False
    final: bool = True

    def run(self, octx: OperationContext) -> None:
        _ = octx


def _desired_object(
    change: ResourceChange, reg: ResourceTypeRegistration, cells: dict[str, OutputCell]
) -> Resource:
    """Rebuild the desired resource with every reference resolved from output cells."""
    if change.desired is None:
        raise ValueError(f"Missing desired config for {change.action.value}: {change.address}")

    resolved = resolve_references(change.desired, cell_lookup(cells))
    desired_obj = reg.model.model_validate(resolved)
    if desired_obj.address != change.address:
        raise ValueError(
            f"Desired address mismatch for {change.action.value}: "
            f"{change.address} != {desired_obj.address}"
        )
    return desired_obj


def _dependencies(change: ResourceChange) -> list[str]:
    assert change.desired is not None
    return list(change.desired.get("depends_on") or [])


def _create(octx: OperationContext, change: ResourceChange) -> None:
    reg = octx.registry.get(change.kind)
    desired_obj = _desired_object(change, reg, octx.cells)
    attrs = desired_obj.attributes()

    computed = octx.call(
        reg.handler, f"create {change.address}", lambda: reg.handler.create(octx.ctx, desired_obj)
    )
    now = datetime.now(UTC)
    inst = ResourceInstance(
        address=change.address,
        kind=change.kind,
        name=desired_obj.name,
        attributes=attrs,
        computed=dict(computed),
        attributes_hash=compute_attributes_hash(attrs),
        dependencies=_dependencies(change),
        created_at=now,
        updated_at=now,
    )
    octx.store.put(change.kind, desired_obj.name, inst)
    octx.cells[change.address].set(inst.values())


def _delete(octx: OperationContext, change: ResourceChange, name: str) -> bool:
    reg = octx.registry.get(change.kind)
    prior_inst = octx.store.get(change.kind, name)
    if prior_inst is None:
        return False
    octx.call(
        reg.handler, f"delete {change.address}", lambda: reg.handler.delete(octx.ctx, prior_inst)
    )
    octx.store.delete(change.kind, name)
    return True


def _name_of(change: ResourceChange) -> str:
    if change.desired is not None:
        return str(change.desired["name"])
    if change.prior is not None and "name" in change.prior:
        return str(change.prior["name"])
    return change.address.split(".", 1)[1]


@dataclass
class CreateOperation:
    key: str
    change: ResourceChange | None
    deps: list[str] = field(default_factory=list)
    skips_on_failure: bool = True
    final: bool = True

    def run(self, octx: OperationContext) -> None:
        assert self.change is not None
        _create(octx, self.change)


@dataclass
class UpdateOperation:
    key: str
    change: ResourceChange | None
    deps: list[str] = field(default_factory=list)
    skips_on_failure: bool = True
    final: bool = True

    def run(self, octx: OperationContext) -> None:
        assert self.change is not None
        change = self.change
        reg = octx.registry.get(change.kind)
        desired_obj = _desired_object(change, reg, octx.cells)
        attrs = desired_obj.attributes()

        prior_inst = octx.store.get(change.kind, desired_obj.name)
        if prior_inst is None:
            raise ValueError(f"Missing state for update operation: {change.address}")
        diff = compute_diff(attrs, prior_inst.attributes, collect_compare_strategies(desired_obj))
        computed = octx.call(
            reg.handler,
            f"update {change.address}",
            lambda: reg.handler.update(octx.ctx, desired_obj, prior_inst, diff),
        )

        def _apply(prior: ResourceInstance | None) -> ResourceInstance:
            inst = prior if prior is not None else prior_inst
            inst.attributes = attrs
            inst.attributes_hash = compute_attributes_hash(attrs)
            inst.computed = {**inst.computed, **computed}
            inst.dependencies = _dependencies(change)
            inst.updated_at = datetime.now(UTC)
            return inst

        inst = octx.store.update(change.kind, desired_obj.name, _apply)
        assert inst is not None
        octx.cells[change.address].set(inst.values())


@dataclass
class DeleteOperation:
    """Destroy a resource; for a replace this is the first of two nodes."""

    key: str
    change: ResourceChange | None
    deps: list[str] = field(default_factory=list)
    skips_on_failure: bool = True
    final: bool = True

    def run(self, octx: OperationContext) -> None:
        assert self.change is not None
        _delete(octx, self.change, _name_of(self.change))


def replace_delete_key(address: str) -> str:
    """Operation key of the delete half of a replace."""
    return f"{address}#delete"


def _checked_depends_on(change: ResourceChange) -> list[str]:
    if change.desired is None:
        raise ValueError(f"Missing desired config for {change.action.value}: {change.address}")
    deps = change.desired.get("depends_on") or []
    if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
        raise ValueError(f"Invalid depends_on for {change.address}: expected list[str]")
    return deps


def build_operations(plan: Plan, state: State) -> dict[str, Operation]:
    """Turn plan changes into operation nodes with ordering edges.

    A replace becomes two nodes: a delete ordered like any other delete
    (dependents first) and a create ordered like any other create
    (dependencies first) that also waits for its own delete.
    """
    ops: dict[str, Operation] = {}
    create_update_set: set[str] = set()
    # Address -> key of the node that destroys it (pure deletes and replace halves).
    delete_nodes: dict[str, str] = {}
    replace_set: set[str] = set()

    def _add(op: Operation) -> None:
        if op.key in ops:
            raise ValueError(f"Duplicate operation key in plan: {op.key}")
        ops[op.key] = op

    for c in plan.changes:
        match c.action:
            case Action.NOOP:
                continue
            case Action.CREATE:
                _add(CreateOperation(key=c.address, change=c))
                create_update_set.add(c.address)
            case Action.UPDATE:
                _add(UpdateOperation(key=c.address, change=c))
                create_update_set.add(c.address)
            case Action.REPLACE:
                delete_key = replace_delete_key(c.address)
                _add(DeleteOperation(key=delete_key, change=c, final=False))
                _add(CreateOperation(key=c.address, change=c, deps=[delete_key]))
                create_update_set.add(c.address)
                delete_nodes[c.address] = delete_key
                replace_set.add(c.address)
            case Action.DELETE:
                _add(DeleteOperation(key=c.address, change=c))
                delete_nodes[c.address] = c.address
            case _:
                raise ValueError(f"Unknown action: {c.action}")

    # create/update: dependencies must run before dependents
    for addr in create_update_set:
        change = ops[addr].change
        assert change is not None
        deps = _checked_depends_on(change)
        ops[addr].deps.extend(d for d in deps if d in create_update_set)

    # deletes: dependents must be deleted before dependencies (invert edges)
    for addr, key in delete_nodes.items():
        inst = state.resources.get(addr)
        if inst is None:
            if addr in replace_set:
                continue
            raise ValueError(f"Missing state for delete operation: {addr}")
        for dep in inst.dependencies:
            if dep in delete_nodes:
                ops[delete_nodes[dep]].deps.append(key)

    # Pure deletes that a replace's delete waits on cannot also wait for the creates.
    early: set[str] = set()
    stack = [delete_nodes[a] for a in replace_set]
    while stack:
        for dep in ops[stack.pop()].deps:
            if dep not in early:
                early.add(dep)
                stack.append(dep)

    # Ensure create/update runs before the remaining deletes (Terraform-like ordering).
    late = [
        key
        for addr, key in delete_nodes.items()
        if addr not in replace_set and key not in early
    ]
    if create_update_set and late:
        if BARRIER_KEY in ops:
            raise ValueError(f"Barrier operation key conflicts with plan: {BARRIER_KEY}")

        ops[BARRIER_KEY] = BarrierOperation(key=BARRIER_KEY, deps=sorted(create_update_set))
        for key in late:
            ops[key].deps.append(BARRIER_KEY)

    return ops
