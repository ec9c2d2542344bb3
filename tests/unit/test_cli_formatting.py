from __future__ import annotations

import re

import typer

from cloud_provisioner.cli.formatting import (
    changes_summary,
    format_apply_summary,
    format_change,
    format_changes,
    format_plan,
    format_plan_summary,
    format_status_table,
    has_actionable_changes,
)
from cloud_provisioner.engine.types import (
    Action,
    ApplyResult,
    Plan,
    PlanMetadata,
    ResourceChange,
    ResourceResult,
    Status,
)

_META = PlanMetadata(
    destroy=False,
    refresh=True,
    state_lineage="lineage-1",
    state_serial=0,
    state_digest="digest",
    config_digest="cdigest",
    engine_version="0.1.0",
)


def _strip_ansi(text: str) -> str:
    return re.sub(r"\x1b\[[0-9;]*m", "", text)


def _result(address: str, action: Action, status: Status, **kwargs: object) -> ResourceResult:
    return ResourceResult(
        address=address, kind=address.split(".")[0], action=action, status=status, **kwargs
    )


class TestFormatPlanSummary:
    def test_all_zeros(self) -> None:
        result = format_plan_summary({"create": 0, "update": 0, "delete": 0}, color=False)
        assert result == "Plan: 0 to add, 0 to change, 0 to destroy."

    def test_replace_counts_as_add_and_destroy(self) -> None:
        result = format_plan_summary(
            {"create": 1, "update": 1, "replace": 2, "delete": 0}, color=False
        )
        assert result == "Plan: 3 to add, 1 to change, 2 to destroy."

    def test_header_and_errors(self) -> None:
        result = format_plan_summary({"create": 1}, color=False, header="Refresh", errors=2)
        assert result == (
            "Refresh: 1 to add, 0 to change, 0 to destroy. 2 resources cannot be planned."
        )

    def test_color_mode_contains_ansi(self) -> None:
        result = format_plan_summary({"create": 1, "update": 0, "delete": 0}, color=True)
        assert "\x1b[" in result
        assert "1 to add" in _strip_ansi(result)


class TestFormatApplySummary:
    def test_all_applied(self) -> None:
        result = ApplyResult(
            results=[
                _result("key_pair.k", Action.CREATE, Status.APPLIED),
                _result("instance.web", Action.REPLACE, Status.APPLIED),
                _result("security_group.sg", Action.NOOP, Status.NOOP),
            ]
        )
        assert format_apply_summary(result, color=False) == (
            "Apply complete! Resources: 2 added, 0 changed, 1 destroyed."
        )

    def test_with_failures(self) -> None:
        result = ApplyResult(
            results=[
                _result("key_pair.k", Action.CREATE, Status.APPLIED),
                _result("security_group.sg", Action.CREATE, Status.FAILED, error="boom"),
                _result("instance.web", Action.CREATE, Status.SKIPPED),
                _result("instance.db", Action.UPDATE, Status.CANCELED),
            ]
        )
        assert format_apply_summary(result, color=False) == (
            "Apply finished with errors. Resources: 1 added, 0 changed, 0 destroyed; "
            "1 failed, 1 skipped, 1 canceled."
        )

    def test_color_mode_contains_ansi(self) -> None:
        result = ApplyResult(results=[_result("key_pair.k", Action.CREATE, Status.APPLIED)])
        assert "\x1b[" in format_apply_summary(result, color=True)


class TestFormatStatusTable:
    def test_rows_are_aligned(self) -> None:
        result = ApplyResult(
            results=[
                _result("key_pair.k", Action.CREATE, Status.APPLIED),
                _result(
                    "security_group.sg",
                    Action.DELETE,
                    Status.FAILED,
                    error="DependencyViolation",
                    error_kind="transient",
                ),
                _result(
                    "instance.web", Action.UPDATE, Status.SKIPPED, blocked_by="security_group.sg"
                ),
            ]
        )
        lines = format_status_table(result, color=False).splitlines()
        assert lines == [
            "  key_pair.k         create  applied",
            "  security_group.sg  delete  failed (transient): DependencyViolation",
            "  instance.web       update  skipped: blocked by security_group.sg",
        ]

    def test_noops_listed(self) -> None:
        result = ApplyResult(
            results=[
                _result("key_pair.k", Action.NOOP, Status.NOOP),
                _result("instance.web", Action.CREATE, Status.APPLIED),
            ]
        )
        assert format_status_table(result, color=False).splitlines() == [
            "  key_pair.k    no-op   no-op",
            "  instance.web  create  applied",
        ]

    def test_noop_styled_dim(self) -> None:
        result = ApplyResult(results=[_result("key_pair.k", Action.NOOP, Status.NOOP)])
        table = format_status_table(result, color=True)
        assert table.endswith(typer.style("no-op", fg="bright_black"))

    def test_empty(self) -> None:
        assert format_status_table(ApplyResult(), color=False) == ""


class TestFormatChange:
    def test_create(self) -> None:
        change = ResourceChange(
            address="instance.web",
            kind="instance",
            action=Action.CREATE,
            planned={"ami": "ami-1", "instance_type": "t3.micro", "subnet_id": None},
        )
        text = format_change(change, color=False)
        assert "# instance.web will be created" in text
        assert '+ resource "instance" "web" {' in text
        assert '+ ami           = "ami-1"' in text
        assert "+ subnet_id     = null" in text

    def test_replace_marks_forcing_fields(self) -> None:
        change = ResourceChange(
            address="instance.web",
            kind="instance",
            action=Action.REPLACE,
            diff={
                "ami": {"from": "ami-1", "to": "ami-2"},
                "tags": {"from": {}, "to": {"env": "prod"}},
            },
            replace_fields=["ami"],
        )
        text = format_change(change, color=False)
        assert "# instance.web must be replaced" in text
        assert '-/+ ami  = "ami-1" -> "ami-2" # forces replacement' in text
        assert "-/+ tags = {} -> {'env': 'prod'}" in text
        assert "tags = {} -> {'env': 'prod'} #" not in text

    def test_delete(self) -> None:
        change = ResourceChange(
            address="key_pair.k", kind="key_pair", action=Action.DELETE, prior={"name": "k"}
        )
        text = format_change(change, color=False)
        assert "# key_pair.k will be destroyed" in text
        assert '- resource "key_pair" "k" {' in text

    def test_planning_error(self) -> None:
        change = ResourceChange(
            address="instance.web",
            kind="instance",
            action=Action.CREATE,
            error="cannot read security_group.sg: AccessDenied",
        )
        assert format_change(change, color=False) == (
            "  # instance.web cannot be planned\n"
            "    Error: cannot read security_group.sg: AccessDenied"
        )


class TestFormatPlan:
    def test_noop_only(self) -> None:
        plan = Plan(
            metadata=_META,
            changes=[ResourceChange(address="key_pair.k", kind="key_pair", action=Action.NOOP)],
        )
        assert format_plan(plan, color=False) == "No changes. Resources are up-to-date."
        assert not has_actionable_changes(plan)

    def test_noops_skipped(self) -> None:
        changes = [
            ResourceChange(address="key_pair.k", kind="key_pair", action=Action.NOOP),
            ResourceChange(
                address="instance.web",
                kind="instance",
                action=Action.CREATE,
                planned={"ami": "ami-1"},
            ),
        ]
        text = format_changes(changes, color=False)
        assert "key_pair.k" not in text
        assert "instance.web" in text
        assert has_actionable_changes(Plan(metadata=_META, changes=changes))


def test_changes_summary() -> None:
    changes = [
        ResourceChange(address=f"instance.i{i}", kind="instance", action=action)
        for i, action in enumerate(
            [Action.CREATE, Action.CREATE, Action.REPLACE, Action.DELETE, Action.NOOP]
        )
    ]
    assert changes_summary(changes) == {"create": 2, "update": 0, "replace": 1, "delete": 1}
