"""Collect terminal results of one run and derive the exit code."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from ..exit_codes import ExitCode
from .models import ActionKind, ActionResult, FailureCause, ResultStatus


@dataclass
class RunOutcome:
    """Mutable accumulator filled as actions complete.

    ``unchanged`` holds entities that needed nothing, ``deferred`` entities
    skipped because their resource was busy in CI mode. Only ``failed``
    influences the exit code. Entities are keyed by their owner-qualified
    identifier so that equal names in different resources stay apart.
    """

    succeeded: set[str] = field(default_factory=set)
    failed: dict[str, FailureCause] = field(default_factory=dict)
    deferred: set[str] = field(default_factory=set)
    unchanged: set[str] = field(default_factory=set)
    planned: set[str] = field(default_factory=set)
    records: list[ActionResult] = field(default_factory=list)

    def record(self, result: ActionResult) -> None:
        """Register the terminal *result* of one entity."""
        self.records.append(result)
        if result.status is ResultStatus.SUCCEEDED:
            self.succeeded.add(result.key)
        elif result.status is ResultStatus.SKIPPED:
            self.unchanged.add(result.key)
        elif result.status is ResultStatus.PLANNED:
            self.planned.add(result.key)
        elif result.status is ResultStatus.DEFERRED:
            self.deferred.add(result.key)
        else:
            self.failed[result.key] = result.cause or FailureCause.REMOTE_ERROR

    def extend(self, results: Iterable[ActionResult]) -> None:
        for result in results:
            self.record(result)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> ExitCode:
        """Return ``OK`` unless at least one entity failed."""
        return ExitCode.OK if self.ok else ExitCode.PROVIDER

    @property
    def changed(self) -> int:
        return len(self.succeeded)

    def totals(self) -> Mapping[str, int]:
        """Return counts for the summary line."""
        created = sum(
            1
            for record in self.records
            if record.status is ResultStatus.SUCCEEDED and record.action is ActionKind.CREATE
        )
        updated = sum(
            1
            for record in self.records
            if record.status is ResultStatus.SUCCEEDED and record.action is not ActionKind.CREATE
        )
        return {
            "created": created,
            "updated": updated,
            "unchanged": len(self.unchanged),
            "planned": len(self.planned),
            "deferred": len(self.deferred),
            "failed": len(self.failed),
        }

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation for structured logs."""
        return {
            "totals": dict(self.totals()),
            "deferred": sorted(self.deferred),
            "failed": {identifier: cause.value for identifier, cause in self.failed.items()},
        }


__all__ = ["RunOutcome"]
