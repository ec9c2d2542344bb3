from __future__ import annotations

from typing import TYPE_CHECKING, Literal

import pytest

from cloud_provisioner.core.state import State
from cloud_provisioner.engine.errors import (
    ApplyCanceled,
    PermanentProviderError,
    TransientProviderError,
)
from cloud_provisioner.engine.types import Action, Status
from cloud_provisioner.resources import InstanceResource, KeyPairResource

if TYPE_CHECKING:
    from collections.abc import Callable

    from conftest import FakeCloud

    from cloud_provisioner.engine.engine import ProvisionEngine
    from cloud_provisioner.engine.types import ResourceChange
    from cloud_provisioner.resources.base import Resource


def _key(name: str) -> KeyPairResource:
    return KeyPairResource(name=name, public_key=f"ssh-ed25519 AAAA {name}")


def test_failure_skips_only_dependents(
    engine: ProvisionEngine, cloud: FakeCloud, dove_stack: Callable[..., list[Resource]]
) -> None:
    resources = [*dove_stack(), _key("other")]
    cloud.fail("create", "security_group.dove-sg", PermanentProviderError("InvalidParameterValue"))

    result = engine.apply(engine.plan(resources))

    assert not result.ok
    sg = result.get("security_group.dove-sg")
    web = result.get("instance.web")
    assert sg is not None and web is not None
    assert sg.status == Status.FAILED
    assert sg.error_kind == "permanent"
    assert sg.error == "InvalidParameterValue"
    assert sg.attempts == 1
    assert web.status == Status.SKIPPED
    assert web.blocked_by == "security_group.dove-sg"
    assert {r.address for r in result.applied} == {"key_pair.dove-key", "key_pair.other"}
    assert "instance.web" not in cloud.ops("create")

    state = State.load(engine.state_path)
    assert set(state.resources) == {"key_pair.dove-key", "key_pair.other"}

    # Once the cause is gone, a new plan picks up exactly what is missing.
    plan = engine.plan(resources)
    actions = {c.address: c.action for c in plan.changes}
    assert actions == {
        "key_pair.dove-key": Action.NOOP,
        "key_pair.other": Action.NOOP,
        "security_group.dove-sg": Action.CREATE,
        "instance.web": Action.CREATE,
    }
    assert engine.apply(plan).ok


def test_skip_propagates_transitively(engine: ProvisionEngine, cloud: FakeCloud) -> None:
    resources = [
        _key("k"),
        InstanceResource(name="web", ami="ami-1", key_name="${key_pair.k.key_name}"),
        InstanceResource(name="worker", ami="ami-2", depends_on=["instance.web"]),
        InstanceResource(name="solo", ami="ami-3"),
    ]
    cloud.fail("create", "key_pair.k", PermanentProviderError("denied"))

    result = engine.apply(engine.plan(resources))

    statuses = {r.address: (r.status, r.blocked_by) for r in result.results}
    assert statuses == {
        "key_pair.k": (Status.FAILED, None),
        "instance.web": (Status.SKIPPED, "key_pair.k"),
        "instance.worker": (Status.SKIPPED, "key_pair.k"),
        "instance.solo": (Status.APPLIED, None),
    }


def test_transient_errors_are_retried(engine: ProvisionEngine, cloud: FakeCloud) -> None:
    cloud.fail(
        "create",
        "key_pair.k",
        TransientProviderError("RequestLimitExceeded"),
        TransientProviderError("RequestLimitExceeded"),
    )

    result = engine.apply(engine.plan([_key("k")]))

    res = result.get("key_pair.k")
    assert res is not None
    assert res.status == Status.APPLIED
    assert res.attempts == 3
    assert cloud.ops("create") == ["key_pair.k"] * 3


def test_transient_errors_exhaust_retries(engine: ProvisionEngine, cloud: FakeCloud) -> None:
    cloud.fail("create", "key_pair.k", *[TransientProviderError("Throttling")] * 3)

    result = engine.apply(engine.plan([_key("k")]))

    res = result.get("key_pair.k")
    assert res is not None
    assert res.status == Status.FAILED
    assert res.error_kind == "transient"
    assert res.attempts == 3
    assert "key_pair.k" not in State.load_or_create(engine.state_path).resources


def test_permanent_errors_are_not_retried(engine: ProvisionEngine, cloud: FakeCloud) -> None:
    cloud.fail("create", "key_pair.k", PermanentProviderError("InvalidKey.Format"))

    result = engine.apply(engine.plan([_key("k")]))

    assert cloud.ops("create") == ["key_pair.k"]
    res = result.get("key_pair.k")
    assert res is not None
    assert res.error_kind == "permanent"


def test_failed_create_does_not_block_unrelated_delete(
    engine: ProvisionEngine, cloud: FakeCloud
) -> None:
    engine.apply(engine.plan([_key("old")]))
    cloud.fail("create", "key_pair.new", PermanentProviderError("denied"))

    plan = engine.plan([_key("new")])
    assert {c.address: c.action for c in plan.changes} == {
        "key_pair.new": Action.CREATE,
        "key_pair.old": Action.DELETE,
    }
    result = engine.apply(plan)

    old = result.get("key_pair.old")
    assert old is not None and old.status == Status.APPLIED
    # Creates still run before deletes.
    assert cloud.calls[-2:] == [("create", "key_pair.new"), ("delete", "key_pair.old")]


@pytest.mark.parametrize(("parallelism", "expect_overlap"), [(1, False), (4, True)])
def test_parallelism_bounds_concurrent_calls(
    make_engine: Callable[..., ProvisionEngine],
    cloud: FakeCloud,
    parallelism: int,
    expect_overlap: bool,
) -> None:
    engine = make_engine(parallelism=parallelism)
    cloud.delay = 0.05

    result = engine.apply(engine.plan([_key(f"k{i}") for i in range(4)]))

    assert result.ok
    assert cloud.max_active <= parallelism
    assert (cloud.max_active > 1) is expect_overlap


def test_cancel_stops_scheduling(
    make_engine: Callable[..., ProvisionEngine], cloud: FakeCloud
) -> None:
    engine = make_engine(parallelism=1)

    def on_progress(change: ResourceChange, event: Literal["start", "done", "failed"]) -> None:
        _ = change
        if event == "done":
            engine.cancel()

    result = engine.apply(engine.plan([_key("a"), _key("b"), _key("c")]), progress=on_progress)

    assert [(r.address, r.status) for r in result.results] == [
        ("key_pair.a", Status.APPLIED),
        ("key_pair.b", Status.CANCELED),
        ("key_pair.c", Status.CANCELED),
    ]
    assert cloud.ops("create") == ["key_pair.a"]
    assert set(State.load(engine.state_path).resources) == {"key_pair.a"}


def test_interrupt_raises_apply_canceled(
    make_engine: Callable[..., ProvisionEngine], cloud: FakeCloud
) -> None:
    engine = make_engine(parallelism=1)

    def on_progress(change: ResourceChange, event: Literal["start", "done", "failed"]) -> None:
        _ = change, event
        raise KeyboardInterrupt

    plan = engine.plan([_key("a"), _key("b")])
    with pytest.raises(ApplyCanceled) as excinfo:
        engine.apply(plan, progress=on_progress)

    assert [r.status for r in excinfo.value.result.results] == [Status.CANCELED] * 2
    assert cloud.calls == []


def test_progress_events(engine: ProvisionEngine, cloud: FakeCloud) -> None:
    cloud.fail("create", "key_pair.bad", PermanentProviderError("denied"))
    events: list[tuple[str, str]] = []

    def on_progress(change: ResourceChange, event: Literal["start", "done", "failed"]) -> None:
        events.append((change.address, event))

    engine.apply(engine.plan([_key("good"), _key("bad")]), progress=on_progress)

    assert sorted(events) == [
        ("key_pair.bad", "failed"),
        ("key_pair.bad", "start"),
        ("key_pair.good", "done"),
        ("key_pair.good", "start"),
    ]
