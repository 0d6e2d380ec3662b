"""Execute action plans through the busy-state coordinator."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence

from ..codec import EncryptedValue, MissingEncryptionKey, SecretCodec
from .coordinator import BusyStateCoordinator
from .models import (
    ActionKind,
    ActionResult,
    DesiredVariable,
    FailureCause,
    ReconciliationAction,
    RemoteStateGateway,
    ResourceRef,
)
from .outcome import RunOutcome
from .planner import plan_variables

LOGGER = logging.getLogger(__name__)


class ReconcileEngine:
    """Plan and apply desired state for one CLI invocation."""

    def __init__(
        self,
        gateway: RemoteStateGateway,
        coordinator: BusyStateCoordinator,
        codec: SecretCodec,
    ) -> None:
        self._gateway = gateway
        self._coordinator = coordinator
        self._codec = codec

    def plan_resource(
        self,
        resource: ResourceRef,
        desired: Sequence[DesiredVariable],
    ) -> list[ReconciliationAction]:
        """Fetch the variables of *resource* and diff *desired* against them."""
        remote = self._gateway.fetch_variables(resource)
        LOGGER.debug("%s has %d remote variable(s)", resource, len(remote))
        return plan_variables(resource, desired, remote)

    def apply_plan(
        self,
        plan: Sequence[ReconciliationAction],
        *,
        ci_mode: bool = False,
        dry_run: bool = False,
        outcome: RunOutcome | None = None,
    ) -> RunOutcome:
        """Apply *plan* in order and return the accumulated outcome.

        Consecutive variable actions of the same resource are written with a
        single request. Processing stops after an interruption; results
        recorded until then are kept.
        """
        result_sink = outcome if outcome is not None else RunOutcome()
        if not dry_run:
            self.ensure_key_available(plan)

        for group in _group_actions(plan):
            if dry_run:
                result_sink.extend(_dry_run_result(action) for action in group)
                continue
            if len(group) > 1:
                results = self._coordinator.apply_batch(group, ci_mode)
            else:
                results = [self._coordinator.apply(group[0], ci_mode)]
            for result in results:
                _log_result(result)
            result_sink.extend(results)
            if self._coordinator.cancelled:
                LOGGER.warning("Run interrupted; remaining actions were not processed.")
                break
        return result_sink

    def ensure_key_available(self, plan: Sequence[ReconciliationAction]) -> None:
        """Raise when a pending write needs decryption but no key is loaded."""
        if self._codec.has_key:
            return
        for action in plan:
            entity = action.entity
            if (
                action.kind.mutating
                and isinstance(entity, DesiredVariable)
                and isinstance(entity.value, EncryptedValue)
            ):
                raise MissingEncryptionKey(
                    f"{action.identifier} holds an encrypted value but no encryption key "
                    "is configured."
                )


def _group_actions(
    plan: Sequence[ReconciliationAction],
) -> Iterator[list[ReconciliationAction]]:
    group: list[ReconciliationAction] = []
    for action in plan:
        batchable = action.kind.mutating and isinstance(action.entity, DesiredVariable)
        if group and batchable and group[-1].resource == action.resource:
            group.append(action)
            continue
        if group:
            yield group
        group = [action] if batchable else []
        if not batchable:
            yield [action]
    if group:
        yield group


def _dry_run_result(action: ReconciliationAction) -> ActionResult:
    if action.kind.mutating:
        return ActionResult.planned(action)
    if action.kind is ActionKind.SKIP:
        return ActionResult.skipped(action)
    if action.kind is ActionKind.DEFERRED:
        return ActionResult.deferred(action, action.reason or "")
    cause = action.cause or FailureCause.REMOTE_ERROR
    return ActionResult.failed(action, cause, action.reason or "")


def _log_result(result: ActionResult) -> None:
    if result.cause is not None:
        LOGGER.warning("%s failed (%s): %s", result.key, result.cause.value, result.message)
    else:
        LOGGER.info("%s: %s", result.key, result.status.value)


__all__ = ["ReconcileEngine"]
