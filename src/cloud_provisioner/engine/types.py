"""Engine types (plan, changes, results, metadata)."""

from __future__ import annotations

import json
import random
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "no-op"


class Status(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOOP = "no-op"
    CANCELED = "canceled"


ErrorKind = Literal["transient", "permanent", "planning"]


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient provider errors."""

    max_attempts: int = Field(default=4, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.25, ge=0, le=1)

    def delay(self, attempt: int) -> float:
        """Delay before retrying after *attempt* (1-based) failed."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return delay + random.uniform(0, delay * self.jitter)


class PlanMetadata(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    destroy: bool
    refresh: bool
    state_lineage: str
    state_serial: int
    state_digest: str
    config_digest: str
    engine_version: str


class ResourceChange(BaseModel):
    address: str
    kind: str
    action: Action
    desired: dict[str, Any] | None = None
    prior: dict[str, Any] | None = None
    planned: dict[str, Any] | None = None
    diff: dict[str, Any] | None = None
    replace_fields: list[str] = Field(default_factory=list)
    error: str | None = None


class Plan(BaseModel):
    metadata: PlanMetadata
    changes: list[ResourceChange]

    @property
    def errors(self) -> list[ResourceChange]:
        """Changes that could not be planned; they fail on apply without provider calls."""
        return [c for c in self.changes if c.error is not None]

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.changes:
            if c.error is None:
                counts[c.action.value] += 1
        return counts

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Plan:
        path = Path(path)
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class ResourceResult(BaseModel):
    """Final outcome of one resource's planned action."""

    address: str
    kind: str
    action: Action
    status: Status
    error: str | None = None
    error_kind: ErrorKind | None = None
    blocked_by: str | None = None
    attempts: int = 0


class ApplyResult(BaseModel):
    results: list[ResourceResult] = Field(default_factory=list)

    @property
    def applied(self) -> list[ResourceResult]:
        return [r for r in self.results if r.status == Status.APPLIED]

    @property
    def failed(self) -> list[ResourceResult]:
        return [r for r in self.results if r.status == Status.FAILED]

    @property
    def ok(self) -> bool:
        return all(r.status in (Status.APPLIED, Status.NOOP) for r in self.results)

    def get(self, address: str) -> ResourceResult | None:
        return next((r for r in self.results if r.address == address), None)

    def summary(self) -> dict[str, int]:
        """Applied actions per kind of action (create/update/replace/delete)."""
        counts = {a.value: 0 for a in Action if a != Action.NOOP}
        for r in self.applied:
            counts[r.action.value] += 1
        return counts

    def status_counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in Status}
        for r in self.results:
            counts[r.status.value] += 1
        return counts
