"""Concurrent plan executor.

Operations whose dependencies have all finished are submitted to a bounded
thread pool. A failed operation marks every operation that depends on it,
directly or transitively, as skipped; independent branches keep running.
"""

from __future__ import annotations

import dataclasses
import heapq
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Any, Literal

from cloud_provisioner.engine.errors import ApplyCanceled
from cloud_provisioner.engine.graph import DependencyGraph
from cloud_provisioner.engine.operations import OperationContext, build_operations
from cloud_provisioner.engine.references import OutputCell
from cloud_provisioner.engine.retry import Attempts, RetryExhaustedError, call_with_retry
from cloud_provisioner.engine.types import (
    Action,
    ApplyResult,
    ErrorKind,
    ResourceResult,
    RetryPolicy,
    Status,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from cloud_provisioner.core.state import StateStore
    from cloud_provisioner.engine.handlers import EngineContext, ResourceHandler
    from cloud_provisioner.engine.operations import Operation
    from cloud_provisioner.engine.registry import ResourceTypeRegistry
    from cloud_provisioner.engine.types import Plan, ResourceChange

logger = logging.getLogger(__name__)

ProgressEvent = Literal["start", "done", "failed"]


class _Outcome:
    """What a worker reports back for one operation."""

    __slots__ = ("attempts", "error", "error_kind")

    def __init__(
        self, *, error: str | None = None, error_kind: ErrorKind | None = None, attempts: int = 0
    ) -> None:
        self.error = error
        self.error_kind = error_kind
        self.attempts = attempts


class Executor:
    """Runs a plan's operations, at most *parallelism* at a time."""

    def __init__(
        self,
        *,
        ctx: EngineContext,
        registry: ResourceTypeRegistry,
        store: StateStore,
        parallelism: int = 4,
        retry: RetryPolicy | None = None,
        progress: Callable[[ResourceChange, ProgressEvent], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        self._ctx = ctx
        self._registry = registry
        self._store = store
        self._parallelism = parallelism
        self._retry = retry or RetryPolicy()
        self._progress = progress
        self._sleep = sleep
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop scheduling new operations; in-flight ones run to completion."""
        logger.info("Cancel requested; waiting for in-flight operations")
        self._cancel.set()

    @property
    def canceled(self) -> bool:
        return self._cancel.is_set()

    # ── Scheduling ──────────────────────────────────────────────────

    def run(self, plan: Plan) -> ApplyResult:
        state = self._store.snapshot()
        ops = build_operations(plan, state)
        graph = DependencyGraph(ops.keys(), {k: op.deps for k, op in ops.items()})
        position = {k: i for i, k in enumerate(graph.topological_order())}

        cells = self._seed_cells(plan)
        octx = OperationContext(
            ctx=self._ctx,
            registry=self._registry,
            store=self._store,
            cells=cells,
            call=self._call,
        )

        results: dict[str, ResourceResult] = {}
        for c in plan.changes:
            if c.action == Action.NOOP:
                results[c.address] = self._result(c, Status.NOOP)

        remaining = {k: len(graph.dependencies_of(k)) for k in ops}
        blocked: dict[str, str] = {}  # op key -> address of the originating failure
        ready: list[tuple[int, str]] = [(position[k], k) for k, n in remaining.items() if n == 0]
        heapq.heapify(ready)
        running: dict[Future[_Outcome], str] = {}

        def _finish(key: str, *, failed_origin: str | None) -> None:
            for child in graph.dependents_of(key):
                if failed_origin is not None and ops[child].skips_on_failure:
                    blocked.setdefault(child, failed_origin)
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, (position[child], child))

        started: set[str] = set()
        attempts: dict[str, int] = {}

        def _record(key: str, outcome: _Outcome) -> None:
            op = ops[key]
            change = op.change
            if change is None:
                _finish(key, failed_origin=None)
                return
            addr = change.address
            attempts[addr] = attempts.get(addr, 0) + outcome.attempts
            if outcome.error is None:
                if not op.final:
                    _finish(key, failed_origin=None)
                    return
                results[addr] = self._result(change, Status.APPLIED, attempts=attempts[addr])
                self._notify(change, "done")
                _finish(key, failed_origin=None)
                return
            results[addr] = self._result(
                change,
                Status.FAILED,
                error=outcome.error,
                error_kind=outcome.error_kind,
                attempts=attempts[addr],
            )
            self._fail_cell(cells, addr, outcome.error)
            self._notify(change, "failed")
            _finish(key, failed_origin=addr)

        with ThreadPoolExecutor(
            max_workers=self._parallelism, thread_name_prefix="apply"
        ) as pool:
            try:
                while ready or running:
                    while ready and len(running) < self._parallelism and not self.canceled:
                        _, key = heapq.heappop(ready)
                        op = ops[key]
                        if key in blocked:
                            self._skip(op, blocked[key], results, cells)
                            _finish(key, failed_origin=blocked[key])
                            continue
                        if op.change is not None and op.change.error is not None:
                            _record(key, _Outcome(error=op.change.error, error_kind="planning"))
                            continue
                        if op.change is not None:
                            logger.debug("Applying %s: %s", key, type(op).__name__)
                            if op.change.address not in started:
                                started.add(op.change.address)
                                self._notify(op.change, "start")
                        running[pool.submit(self._run_op, op, octx)] = key
                    if not running:
                        if self.canceled:
                            break
                        continue
                    done, _ = wait(running, return_when=FIRST_COMPLETED)
                    for fut in done:
                        _record(running.pop(fut), fut.result())
            except KeyboardInterrupt:
                self.cancel()
                for fut in list(running):
                    _record(running.pop(fut), fut.result())
                self._mark_canceled(plan, results)
                raise ApplyCanceled(self._collect(plan, results)) from None

        if self.canceled:
            self._mark_canceled(plan, results)
        result = self._collect(plan, results)
        logger.info("Apply finished: %s", result.status_counts())
        return result

    # ── Workers ─────────────────────────────────────────────────────

    def _run_op(self, op: Operation, octx: OperationContext) -> _Outcome:
        attempts = Attempts()
        op_ctx = dataclasses.replace(
            octx,
            call=lambda handler, description, fn: self._call(
                handler, description, fn, attempts=attempts
            ),
        )
        try:
            op.run(op_ctx)
        except RetryExhaustedError as exc:
            kind: ErrorKind = "transient" if exc.transient else "permanent"
            return _Outcome(error=str(exc), error_kind=kind, attempts=attempts.count)
        except Exception as exc:
            logger.exception("Operation %s failed", op.key)
            return _Outcome(error=str(exc), error_kind="permanent", attempts=attempts.count)
        return _Outcome(attempts=attempts.count)

    def _call(
        self,
        handler: ResourceHandler[Any],
        description: str,
        fn: Callable[[], Any],
        *,
        attempts: Attempts | None = None,
    ) -> Any:
        return call_with_retry(
            fn,
            policy=self._retry,
            is_transient=handler.is_transient,
            description=description,
            sleep=self._sleep,
            attempts=attempts,
        )

    # ── Bookkeeping ─────────────────────────────────────────────────

    def _seed_cells(self, plan: Plan) -> dict[str, OutputCell]:
        """One cell per address; resources not being (re)written resolve from state."""
        state = self._store.snapshot()
        pending = {
            c.address
            for c in plan.changes
            if c.action in (Action.CREATE, Action.UPDATE, Action.REPLACE)
        }
        cells: dict[str, OutputCell] = {}
        for addr, inst in state.resources.items():
            if addr not in pending:
                cells[addr] = OutputCell.resolved(addr, inst.values())
        for addr in pending:
            cells[addr] = OutputCell(addr)
        return cells

    @staticmethod
    def _fail_cell(cells: dict[str, OutputCell], key: str, reason: str) -> None:
        cell = cells.get(key)
        if cell is not None and not cell.ready:
            cell.fail(reason)

    def _skip(
        self,
        op: Operation,
        origin: str,
        results: dict[str, ResourceResult],
        cells: dict[str, OutputCell],
    ) -> None:
        if op.change is None or op.change.address in results:
            return
        addr = op.change.address
        logger.info("Skipping %s: depends on failed %s", addr, origin)
        results[addr] = self._result(op.change, Status.SKIPPED, blocked_by=origin)
        self._fail_cell(cells, addr, f"skipped because {origin} failed")

    def _mark_canceled(self, plan: Plan, results: dict[str, ResourceResult]) -> None:
        for c in plan.changes:
            if c.address not in results:
                results[c.address] = self._result(c, Status.CANCELED)

    @staticmethod
    def _collect(plan: Plan, results: dict[str, ResourceResult]) -> ApplyResult:
        return ApplyResult(
            results=[results[c.address] for c in plan.changes if c.address in results]
        )

    def _notify(self, change: ResourceChange, event: ProgressEvent) -> None:
        if self._progress is not None:
            self._progress(change, event)

    @staticmethod
    def _result(change: ResourceChange, status: Status, **kwargs: Any) -> ResourceResult:
        return ResourceResult(
            address=change.address,
            kind=change.kind,
            action=change.action,
            status=status,
            **kwargs,
        )
