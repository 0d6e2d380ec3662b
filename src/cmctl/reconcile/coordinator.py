"""Serialise mutations against resources that may be busy.

Cloud Manager rejects variable writes while an environment is updating and
pipeline commands while a pipeline is running. The coordinator reads the
resource's readiness before each mutation and either proceeds, waits and
re-checks, or defers the action when running in CI mode.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Protocol

from ..codec import CodecError
from .models import (
    ActionKind,
    ActionResult,
    FailureCause,
    ReconciliationAction,
    RemoteError,
    RemoteErrorKind,
    RemoteStateGateway,
    ResourceReadiness,
    ResourceRef,
    VariableWrite,
)

LOGGER = logging.getLogger(__name__)

CI_DEFERRED_MESSAGE = "resource busy, skipped in CI mode"


class CancelToken:
    """Interruptible sleep shared between the signal handler and the coordinator."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return ``True`` when cancelled meanwhile."""
        return self._event.wait(max(seconds, 0.0))


class Dispatcher(Protocol):
    """Turns planned actions into gateway calls."""

    def bind(self, action: ReconciliationAction) -> Callable[[], None]:
        """Resolve the payload for *action* and return the call that applies it."""

    def prepare_variable(self, action: ReconciliationAction) -> VariableWrite:
        """Resolve the write payload of a variable action."""

    def write_variables(self, resource: ResourceRef, writes: Sequence[VariableWrite]) -> None:
        """Write several variables of one resource in one request."""


class _Gate(Enum):
    READY = "ready"
    DEFERRED = "deferred"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"


class BusyStateCoordinator:
    """Apply actions once their owning resource accepts mutations."""

    def __init__(
        self,
        gateway: RemoteStateGateway,
        dispatcher: Dispatcher,
        *,
        poll_interval: float = 60.0,
        max_wait: float = 3600.0,
        cancel_token: CancelToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        notify: Callable[[str], None] | None = None,
    ) -> None:
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._cancel = cancel_token or CancelToken()
        self._clock = clock
        self._notify = notify

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once the run has been interrupted."""
        return self._cancel.cancelled

    def apply(self, action: ReconciliationAction, ci_mode: bool) -> ActionResult:
        """Apply one Create or Update action and return its terminal result."""
        if action.kind is ActionKind.SKIP:
            return ActionResult.skipped(action)
        if action.kind is ActionKind.DEFERRED:
            return ActionResult.deferred(action, action.reason or "")
        if action.kind is ActionKind.FAILED:
            return ActionResult.failed(
                action,
                action.cause or FailureCause.REMOTE_ERROR,
                action.reason or "",
            )
        try:
            operation = self._dispatcher.bind(action)
        except CodecError as exc:
            return ActionResult.failed(action, FailureCause.DECRYPTION, str(exc))
        except OSError as exc:
            return ActionResult.failed(action, FailureCause.PREFLIGHT_MISSING_FILE, str(exc))
        return self._guarded(action.resource, [action], operation, ci_mode)[0]

    def apply_batch(
        self,
        actions: Sequence[ReconciliationAction],
        ci_mode: bool,
    ) -> list[ActionResult]:
        """Apply the variable actions of one resource with a single write.

        The resource is checked once; every action still receives its own
        result. Actions whose value cannot be resolved fail individually and
        are left out of the write.
        """
        results: dict[int, ActionResult] = {}
        writable: list[tuple[int, ReconciliationAction]] = []
        writes: list[VariableWrite] = []
        resource: ResourceRef | None = None
        for index, action in enumerate(actions):
            if not action.kind.mutating:
                results[index] = self.apply(action, ci_mode)
                continue
            if resource is None:
                resource = action.resource
            elif action.resource != resource:
                raise ValueError("apply_batch() requires actions of a single resource.")
            try:
                writes.append(self._dispatcher.prepare_variable(action))
            except CodecError as exc:
                results[index] = ActionResult.failed(action, FailureCause.DECRYPTION, str(exc))
                continue
            writable.append((index, action))

        if writable and resource is not None:
            pending = [action for _, action in writable]
            target = resource
            batch_results = self._guarded(
                target,
                pending,
                lambda: self._dispatcher.write_variables(target, writes),
                ci_mode,
            )
            for (index, _), result in zip(writable, batch_results, strict=True):
                results[index] = result
        return [results[index] for index in range(len(actions))]

    def execute(
        self,
        resource: ResourceRef,
        identifier: str,
        operation: Callable[[], None],
        ci_mode: bool,
    ) -> ActionResult:
        """Run an arbitrary mutation of *resource* under the busy-state protocol."""
        action = ReconciliationAction(ActionKind.UPDATE, identifier, resource=resource)
        return self._guarded(resource, [action], operation, ci_mode)[0]

    def _guarded(
        self,
        resource: ResourceRef | None,
        actions: Sequence[ReconciliationAction],
        operation: Callable[[], None],
        ci_mode: bool,
    ) -> list[ActionResult]:
        try:
            gate = self._wait_until_ready(resource, ci_mode)
        except RemoteError as exc:
            return [self._remote_failure(action, exc) for action in actions]

        if gate is _Gate.DEFERRED:
            LOGGER.info("%s is busy; deferring %d action(s) in CI mode", resource, len(actions))
            return [ActionResult.deferred(action, CI_DEFERRED_MESSAGE) for action in actions]
        if gate is _Gate.TIMEOUT:
            message = f"{resource} still busy after {self._max_wait:.0f}s"
            return [ActionResult.failed(action, FailureCause.TIMEOUT, message) for action in actions]
        if gate is _Gate.INTERRUPTED:
            return [
                ActionResult.failed(action, FailureCause.INTERRUPTED, "interrupted by user")
                for action in actions
            ]

        try:
            operation()
        except RemoteError as exc:
            return [self._remote_failure(action, exc) for action in actions]
        return [ActionResult.succeeded(action) for action in actions]

    def _wait_until_ready(self, resource: ResourceRef | None, ci_mode: bool) -> _Gate:
        if resource is None:
            return _Gate.INTERRUPTED if self._cancel.cancelled else _Gate.READY

        deadline = self._clock() + self._max_wait
        while True:
            if self._cancel.cancelled:
                return _Gate.INTERRUPTED
            state = self._gateway.readiness(resource)
            if state is ResourceReadiness.READY:
                return _Gate.READY
            if ci_mode:
                return _Gate.DEFERRED
            remaining = deadline - self._clock()
            if remaining <= 0:
                return _Gate.TIMEOUT
            delay = min(self._poll_interval, remaining)
            LOGGER.info("%s is %s; re-checking in %.0fs", resource, state.value, delay)
            if self._notify is not None:
                self._notify(f"{resource} is {state.value}, waiting {delay:.0f}s before retrying")
            try:
                if self._cancel.wait(delay):
                    return _Gate.INTERRUPTED
            except KeyboardInterrupt:
                self._cancel.cancel()
                return _Gate.INTERRUPTED

    @staticmethod
    def _remote_failure(action: ReconciliationAction, exc: RemoteError) -> ActionResult:
        if exc.kind is RemoteErrorKind.ALREADY_IN_USE:
            return ActionResult.failed(action, FailureCause.ALREADY_IN_USE, str(exc))
        return ActionResult.failed(action, FailureCause.REMOTE_ERROR, str(exc))


__all__ = [
    "BusyStateCoordinator",
    "CI_DEFERRED_MESSAGE",
    "CancelToken",
    "Dispatcher",
]
