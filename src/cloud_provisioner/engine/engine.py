"""Plan/apply engine."""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from cloud_provisioner import __version__
from cloud_provisioner.core.state import (
    STATE_VERSION,
    State,
    StateStore,
    compute_attributes_hash,
    compute_state_digest,
)
from cloud_provisioner.engine.diff import compute_diff
from cloud_provisioner.engine.errors import (
    PlanningError,
    StalePlanError,
    StateVersionError,
    ValidationError,
)
from cloud_provisioner.engine.executor import Executor
from cloud_provisioner.engine.graph import DependencyGraph, build_graph
from cloud_provisioner.engine.handlers import EngineContext
from cloud_provisioner.engine.lock import StateLock
from cloud_provisioner.engine.references import UNKNOWN, resolve_references
from cloud_provisioner.engine.retry import call_with_retry
from cloud_provisioner.engine.types import (
    Action,
    ApplyResult,
    Plan,
    PlanMetadata,
    ResourceChange,
    RetryPolicy,
)
from cloud_provisioner.resources.markers import (
    collect_compare_strategies,
    collect_immutable_fields,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ResourceChange, Literal["start", "done", "failed"]], None]

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from cloud_provisioner.core import AwsProvider
    from cloud_provisioner.engine.graph import ResourceGraph
    from cloud_provisioner.engine.registry import ResourceTypeRegistry
    from cloud_provisioner.resources.base import Resource
    from cloud_provisioner.resources.markers import Reference


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def _sha256_hex(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _compute_config_digest(resources: Sequence[Resource]) -> str:
    items: list[dict[str, Any]] = [
        {"address": r.address, "kind": r.kind, "attributes": r.attributes()} for r in resources
    ]
    items.sort(key=lambda x: x["address"])
    return _sha256_hex(_canonical_json(items))


class ProvisionEngine:
    """Terraform-like plan/apply engine for cloud resources."""

    def __init__(
        self,
        *,
        provider: AwsProvider,
        state_path: Path,
        registry: ResourceTypeRegistry,
        parallelism: int = 4,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._provider = provider
        self._state_path = state_path
        self._registry = registry
        self._parallelism = parallelism
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._executor: Executor | None = None

    @property
    def state_path(self) -> Path:
        return self._state_path

    def _ctx(self) -> EngineContext:
        return EngineContext(provider=self._provider)

    def _load_state(self) -> State:
        state = State.load_or_create(self._state_path)
        if state.version != STATE_VERSION:
            raise StateVersionError(STATE_VERSION, state.version)
        logger.debug("State loaded: serial=%d, %d resources", state.serial, len(state.resources))
        return state

    def _load_state_for_apply(self, plan: Plan) -> State:
        if self._state_path.exists():
            return self._load_state()
        # If no state exists, bootstrap from the plan metadata (saved-plan semantics).
        return State(lineage=plan.metadata.state_lineage, serial=plan.metadata.state_serial)

    # ── Refresh ─────────────────────────────────────────────────────

    def _retrying(self, handler: Any, description: str, fn: Callable[[], Any]) -> Any:
        kwargs: dict[str, Any] = {} if self._sleep is None else {"sleep": self._sleep}
        return call_with_retry(
            fn,
            policy=self._retry,
            is_transient=handler.is_transient,
            description=description,
            **kwargs,
        )

    def _refresh_state_in_place(self, state: State) -> bool:
        logger.debug("Refreshing state from provider")
        changed = False
        ctx = self._ctx()

        for address, inst in list(state.resources.items()):
            handler = self._registry.get(inst.kind).handler
            attrs = self._retrying(
                handler, f"read {address}", lambda h=handler, i=inst: h.read(ctx, i)
            )
            if attrs is None:
                logger.info("%s no longer exists; dropping it from state", address)
                del state.resources[address]
                changed = True
                continue

            new_hash = compute_attributes_hash(attrs)
            if attrs != inst.attributes or new_hash != inst.attributes_hash:
                inst.attributes = attrs
                inst.attributes_hash = new_hash
                inst.updated_at = datetime.now(UTC)
                changed = True

        logger.debug("State refreshed, changed=%s", changed)
        return changed

    def refresh(self, *, persist: bool = False) -> tuple[State, State]:
        """Refresh state from the provider. Returns (pre_refresh, post_refresh)."""
        with StateLock(self._state_path):
            state = self._load_state()
            snapshot = state.model_copy(deep=True)
            changed = self._refresh_state_in_place(state)
            if changed and persist:
                state.serial += 1
                state.save(self._state_path)
            return snapshot, state

    # ── Plan ────────────────────────────────────────────────────────

    def _plan_lookup(
        self,
        graph: ResourceGraph,
        state: State,
        pending: set[str],
        planned_by_addr: dict[str, dict[str, Any]],
    ) -> Callable[[Reference], Any]:
        """Plan-time reference lookup; outputs of pending resources are UNKNOWN."""

        def _lookup(ref: Reference) -> Any:
            target = graph.resources[ref.address]
            if ref.field not in target.outputs:
                planned = planned_by_addr.get(ref.address)
                return UNKNOWN if planned is None else planned.get(ref.field)
            if ref.address in pending:
                return UNKNOWN
            inst = state.resources.get(ref.address)
            if inst is None:
                return UNKNOWN
            return inst.values().get(ref.field)

        return _lookup

    def _classify_change(
        self,
        resource: Resource,
        deps: list[str],
        state: State,
        lookup: Callable[[Reference], Any],
    ) -> ResourceChange:
        """Classify a single resource as CREATE, UPDATE, REPLACE, or NOOP."""
        addr = resource.address
        desired_dump = resource.model_dump(exclude_none=True, exclude={"address"})
        desired_dump["depends_on"] = deps
        planned = resolve_references(resource.attributes(), lookup)

        prior_inst = state.resources.get(addr)
        if prior_inst is None:
            logger.debug("Classified %s as create", addr)
            return ResourceChange(
                address=addr,
                kind=resource.kind,
                action=Action.CREATE,
                desired=desired_dump,
                planned=planned,
            )

        prior = dict(prior_inst.attributes)
        diff = compute_diff(planned, prior, collect_compare_strategies(resource))
        replace_fields = sorted(k for k in diff if k in collect_immutable_fields(resource))

        if replace_fields:
            action = Action.REPLACE
        elif diff:
            action = Action.UPDATE
        else:
            action = Action.NOOP
        logger.debug("Classified %s as %s", addr, action.value)
        change = ResourceChange(
            address=addr,
            kind=resource.kind,
            action=action,
            desired=desired_dump,
            prior=prior,
            planned=planned,
            diff=diff or None,
            replace_fields=replace_fields,
        )
        if action == Action.REPLACE:
            self._check_replace(resource, change)
        return change

    @staticmethod
    def _check_replace(resource: Resource, change: ResourceChange) -> None:
        fields = ", ".join(change.replace_fields)
        if not type(resource).replace_on_change:
            raise PlanningError(
                change.address,
                f"immutable field(s) {fields} changed and {resource.kind} resources "
                "cannot be replaced",
            )
        if resource.prevent_destroy:
            raise PlanningError(
                change.address,
                f"immutable field(s) {fields} changed, which requires replacement, "
                "but prevent_destroy is set",
            )

    def _plan_deletes(
        self,
        state: State,
        addrs: set[str],
        protected: set[str] | None = None,
    ) -> list[ResourceChange]:
        """Plan delete changes for the given addresses in reverse dependency order."""
        order = self._delete_order(state, addrs)
        changes: list[ResourceChange] = []
        for addr in order:
            inst = state.resources[addr]
            self._registry.get(inst.kind)  # fail early if unknown
            error = None
            if protected and addr in protected:
                error = str(PlanningError(addr, "cannot destroy: prevent_destroy is set"))
            changes.append(
                ResourceChange(
                    address=addr,
                    kind=inst.kind,
                    action=Action.DELETE,
                    prior=dict(inst.attributes),
                    error=error,
                )
            )
        return changes

    def _delete_order(self, state: State, delete_set: set[str]) -> list[str]:
        dep_map = {
            addr: [d for d in state.resources[addr].dependencies if d in delete_set]
            for addr in delete_set
        }
        return DependencyGraph(delete_set, dep_map).reverse_topological_order()

    def _validate(self, resources: Sequence[Resource]) -> None:
        ctx = self._ctx()
        errors: list[str] = []
        for r in resources:
            reg = self._registry.get(r.kind)
            errors.extend(f"{r.address}: {e}" for e in reg.handler.validate(ctx, r))
        if errors:
            raise ValidationError(errors)

    def plan(
        self, resources: Sequence[Resource], *, destroy: bool = False, refresh: bool = True
    ) -> Plan:
        """Diff *resources* against state and return the ordered plan.

        Raises:
            ConfigurationError: Duplicates, unresolved references, cycles,
                unknown kinds or failed validation; nothing is planned.
        """
        logger.info(
            "Planning %d resources (destroy=%s, refresh=%s)", len(resources), destroy, refresh
        )
        # Only lock when refresh may write state.
        lock_cm = StateLock(self._state_path) if refresh else contextlib.nullcontext()
        with lock_cm:
            state = self._load_state()

            for r in resources:
                self._registry.get(r.kind)
            graph = build_graph(resources)
            if not destroy:
                self._validate(resources)

            if refresh:
                changed = self._refresh_state_in_place(state)
                if changed:
                    state.serial += 1
                    state.save(self._state_path)

            state_addrs = set(state.resources)
            if destroy:
                protected = {a for a, r in graph.resources.items() if r.prevent_destroy}
                changes = self._plan_deletes(state, state_addrs, protected)
            else:
                changes = self._plan_desired(graph, state)
                changes.extend(self._plan_deletes(state, state_addrs - set(graph.resources)))

            metadata = PlanMetadata(
                created_at=datetime.now(UTC),
                destroy=destroy,
                refresh=refresh,
                state_lineage=state.lineage,
                state_serial=state.serial,
                state_digest=compute_state_digest(state),
                config_digest=_compute_config_digest([] if destroy else resources),
                engine_version=__version__,
            )

            plan = Plan(metadata=metadata, changes=changes)
            logger.info("Plan: %s", plan.summary())
            return plan

    def _plan_desired(self, graph: ResourceGraph, state: State) -> list[ResourceChange]:
        pending: set[str] = set()
        planned_by_addr: dict[str, dict[str, Any]] = {}
        lookup = self._plan_lookup(graph, state, pending, planned_by_addr)

        changes: list[ResourceChange] = []
        for addr in graph.topological_order():
            resource = graph.resources[addr]
            deps = graph.dependencies[addr]
            try:
                change = self._classify_change(resource, deps, state, lookup)
            except PlanningError as e:
                logger.warning("Cannot plan %s: %s", addr, e)
                change = ResourceChange(
                    address=addr,
                    kind=resource.kind,
                    action=Action.REPLACE,
                    desired={
                        **resource.model_dump(exclude_none=True, exclude={"address"}),
                        "depends_on": deps,
                    },
                    prior=dict(state.resources[addr].attributes),
                    error=str(e),
                )
            if change.action in (Action.CREATE, Action.REPLACE):
                pending.add(addr)
            if change.planned is not None:
                planned_by_addr[addr] = change.planned
            changes.append(change)
        return changes

    # ── Apply ───────────────────────────────────────────────────────

    def cancel(self) -> None:
        """Ask a running :meth:`apply` to stop scheduling new actions."""
        if self._executor is not None:
            self._executor.cancel()

    def apply(self, plan: Plan, *, progress: ProgressCallback | None = None) -> ApplyResult:
        """Execute *plan*. Per-resource failures are reported in the result, not raised.

        Raises:
            StalePlanError: State changed since the plan was made.
            ApplyCanceled: Canceled midway; carries the partial result.
        """
        with StateLock(self._state_path):
            state = self._load_state_for_apply(plan)

            # Stale plan detection
            if state.lineage != plan.metadata.state_lineage:
                raise StalePlanError("State lineage changed; re-run plan")
            if state.serial != plan.metadata.state_serial:
                raise StalePlanError("State serial changed; re-run plan")
            if compute_state_digest(state) != plan.metadata.state_digest:
                raise StalePlanError("State digest changed; re-run plan")

            store = StateStore(state, self._state_path)
            kwargs: dict[str, Any] = {} if self._sleep is None else {"sleep": self._sleep}
            self._executor = Executor(
                ctx=self._ctx(),
                registry=self._registry,
                store=store,
                parallelism=self._parallelism,
                retry=self._retry,
                progress=progress,
                **kwargs,
            )
            logger.info("Applying plan with %d changes", len(plan.changes))
            try:
                return self._executor.run(plan)
            finally:
                self._executor = None
