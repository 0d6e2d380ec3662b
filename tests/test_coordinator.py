"""Busy-state coordinator tests."""
from __future__ import annotations

import pytest

from cmctl.codec import EncryptedValue, PlainValue, SecretCodec, VariableKind
from cmctl.reconcile.coordinator import CI_DEFERRED_MESSAGE, BusyStateCoordinator, CancelToken
from cmctl.reconcile.dispatch import GatewayDispatcher
from cmctl.reconcile.models import (
    ActionKind,
    DesiredVariable,
    FailureCause,
    ReconciliationAction,
    RemoteError,
    RemoteErrorKind,
    RemoteVariable,
    ResourceKind,
    ResourceReadiness,
    ResourceRef,
    ResultStatus,
)

ENV = ResourceRef(ResourceKind.ENVIRONMENT, 1, 2)
OTHER_ENV = ResourceRef(ResourceKind.ENVIRONMENT, 1, 3)
PIPELINE = ResourceRef(ResourceKind.PIPELINE, 1, 9)
BUSY = ResourceReadiness.BUSY
READY = ResourceReadiness.READY


class FakeClock:
    """Monotonic clock advancing by *step* on every read."""

    def __init__(self, step: float = 1.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


class InterruptingToken(CancelToken):
    def wait(self, seconds: float) -> bool:
        raise KeyboardInterrupt


def _coordinator(gateway, *, token=None, clock=None, max_wait=3600.0, notify=None, codec=None):
    return BusyStateCoordinator(
        gateway,
        GatewayDispatcher(gateway, codec or SecretCodec(None)),
        poll_interval=0,
        max_wait=max_wait,
        cancel_token=token,
        clock=clock or FakeClock(),
        notify=notify,
    )


def _create(name: str, resource: ResourceRef = ENV, value: str = "v") -> ReconciliationAction:
    return ReconciliationAction.create(
        name,
        DesiredVariable(name, PlainValue(value)),
        resource=resource,
    )


def test_ready_resource_is_mutated_immediately(fake_gateway) -> None:
    """A ready resource is written without waiting."""
    coordinator = _coordinator(fake_gateway)

    result = coordinator.apply(_create("FOO"), ci_mode=False)

    assert result.status is ResultStatus.SUCCEEDED
    assert fake_gateway.readiness_calls == 1
    ((_, resource, write),) = fake_gateway.calls_to("create_variable")
    assert resource == ENV
    assert (write.name, write.value, write.kind) == ("FOO", "v", VariableKind.STRING)


def test_update_action_uses_update_call(fake_gateway) -> None:
    """Update actions call the update endpoint."""
    coordinator = _coordinator(fake_gateway)
    desired = DesiredVariable("FOO", PlainValue("new"))
    remote = RemoteVariable("FOO", VariableKind.STRING, "old")
    action = ReconciliationAction.update("FOO", desired, remote, resource=ENV)

    result = coordinator.apply(action, ci_mode=False)

    assert result.status is ResultStatus.SUCCEEDED
    assert len(fake_gateway.calls_to("update_variable")) == 1


def test_busy_resource_is_polled_until_ready(fake_gateway) -> None:
    """A busy resource is re-checked until it is ready."""
    fake_gateway.states[ENV] = [BUSY, BUSY, READY]
    messages: list[str] = []
    coordinator = _coordinator(fake_gateway, notify=messages.append)

    result = coordinator.apply(_create("FOO"), ci_mode=False)

    assert result.status is ResultStatus.SUCCEEDED
    assert fake_gateway.readiness_calls == 3
    assert len(messages) == 2
    assert "busy" in messages[0]


def test_unknown_state_is_treated_as_not_ready(fake_gateway) -> None:
    """Unrecognised states count as busy."""
    fake_gateway.states[ENV] = [ResourceReadiness.UNKNOWN, READY]
    coordinator = _coordinator(fake_gateway)

    result = coordinator.apply(_create("FOO"), ci_mode=False)

    assert result.status is ResultStatus.SUCCEEDED
    assert fake_gateway.readiness_calls == 2


def test_ci_mode_defers_busy_resource_without_mutation(fake_gateway) -> None:
    """CI mode defers instead of waiting."""
    fake_gateway.states[ENV] = [BUSY]
    coordinator = _coordinator(fake_gateway)

    result = coordinator.apply(_create("FOO"), ci_mode=True)

    assert result.status is ResultStatus.DEFERRED
    assert result.message == CI_DEFERRED_MESSAGE
    assert result.cause is None
    assert fake_gateway.readiness_calls == 1
    assert fake_gateway.calls == []


def test_ci_mode_applies_when_ready(fake_gateway) -> None:
    """CI mode still writes to ready resources."""
    coordinator = _coordinator(fake_gateway)

    result = coordinator.apply(_create("FOO"), ci_mode=True)

    assert result.status is ResultStatus.SUCCEEDED


def test_wait_gives_up_after_max_wait(fake_gateway) -> None:
    """Waiting ends in a timeout failure after max_wait."""
    fake_gateway.states[ENV] = [BUSY]
    coordinator = _coordinator(fake_gateway, clock=FakeClock(step=30), max_wait=100)

    result = coordinator.apply(_create("FOO"), ci_mode=False)

    assert result.status is ResultStatus.FAILED
    assert result.cause is FailureCause.TIMEOUT
    assert "still busy after 100s" in result.message
    assert fake_gateway.readiness_calls == 4
    assert fake_gateway.calls == []


def test_cancelled_token_interrupts_before_any_check(fake_gateway) -> None:
    """A cancelled run makes no readiness call."""
    token = CancelToken()
    token.cancel()
    coordinator = _coordinator(fake_gateway, token=token)

    result = coordinator.apply(_create("FOO"), ci_mode=False)

    assert result.status is ResultStatus.FAILED
    assert result.cause is FailureCause.INTERRUPTED
    assert coordinator.cancelled is True
    assert fake_gateway.readiness_calls == 0


def test_keyboard_interrupt_during_wait_cancels_run(fake_gateway) -> None:
    """Ctrl-C during a wait interrupts the action."""
    fake_gateway.states[ENV] = [BUSY]
    token = InterruptingToken()
    coordinator = _coordinator(fake_gateway, token=token)

    result = coordinator.apply(_create("FOO"), ci_mode=False)

    assert result.cause is FailureCause.INTERRUPTED
    assert result.message == "interrupted by user"
    assert token.cancelled is True
    assert fake_gateway.calls == []


def test_already_in_use_maps_to_failure_cause(fake_gateway) -> None:
    """Conflicts become already-in-use failures."""
    fake_gateway.failures["create_variable"] = RemoteError(
        "name already in use",
        kind=RemoteErrorKind.ALREADY_IN_USE,
        status=409,
    )
    coordinator = _coordinator(fake_gateway)

    result = coordinator.apply(_create("FOO"), ci_mode=False)

    assert result.cause is FailureCause.ALREADY_IN_USE


def test_readiness_error_fails_action(fake_gateway) -> None:
    """A failing readiness call fails the action."""
    fake_gateway.failures["readiness"] = RemoteError("boom", status=500)
    coordinator = _coordinator(fake_gateway)

    result = coordinator.apply(_create("FOO"), ci_mode=False)

    assert result.cause is FailureCause.REMOTE_ERROR
    assert fake_gateway.calls == []


def test_skip_and_failed_actions_pass_through(fake_gateway) -> None:
    """Non-mutating actions are returned untouched."""
    coordinator = _coordinator(fake_gateway)
    skip = ReconciliationAction.skip("FOO", "unchanged", resource=ENV)
    failed = ReconciliationAction.failed(
        "certificate c",
        FailureCause.INVALID_CERTIFICATE,
        "expired",
    )

    assert coordinator.apply(skip, ci_mode=False).status is ResultStatus.SKIPPED
    failed_result = coordinator.apply(failed, ci_mode=False)
    assert failed_result.cause is FailureCause.INVALID_CERTIFICATE
    assert failed_result.message == "expired"
    assert fake_gateway.readiness_calls == 0


def test_deferred_action_is_not_dispatched(fake_gateway) -> None:
    """A planned deferral is reported as deferred without touching the resource."""
    coordinator = _coordinator(fake_gateway)
    deferred = ReconciliationAction(
        ActionKind.DEFERRED,
        "FOO",
        resource=ENV,
        entity=DesiredVariable("FOO", PlainValue("bar")),
        reason="environment locked",
    )

    result = coordinator.apply(deferred, ci_mode=True)

    assert result.status is ResultStatus.DEFERRED
    assert result.message == "environment locked"
    assert fake_gateway.calls == []
    assert fake_gateway.readiness_calls == 0


def test_missing_key_fails_with_decryption_cause(fake_gateway) -> None:
    """An undecryptable value fails with the decryption cause."""
    coordinator = _coordinator(fake_gateway)
    action = ReconciliationAction.create(
        "PASS",
        DesiredVariable("PASS", EncryptedValue("tok"), VariableKind.SECRET_STRING),
        resource=ENV,
    )

    result = coordinator.apply(action, ci_mode=False)

    assert result.cause is FailureCause.DECRYPTION
    assert fake_gateway.readiness_calls == 0


def test_batch_checks_once_and_writes_once(fake_gateway) -> None:
    """A batch needs one readiness check and one write."""
    fake_gateway.states[ENV] = [BUSY, READY]
    coordinator = _coordinator(fake_gateway)
    actions = [_create("A"), _create("B"), _create("C")]

    results = coordinator.apply_batch(actions, ci_mode=False)

    assert [result.identifier for result in results] == ["A", "B", "C"]
    assert all(result.status is ResultStatus.SUCCEEDED for result in results)
    assert fake_gateway.readiness_calls == 2
    ((_, resource, writes),) = fake_gateway.calls_to("write_variables")
    assert resource == ENV
    assert [write.name for write in writes] == ["A", "B", "C"]


def test_batch_isolates_unresolvable_values(fake_gateway) -> None:
    """A bad value fails alone and the rest are written."""
    coordinator = _coordinator(fake_gateway)
    secret = ReconciliationAction.create(
        "PASS",
        DesiredVariable("PASS", EncryptedValue("tok"), VariableKind.SECRET_STRING),
        resource=ENV,
    )

    results = coordinator.apply_batch([_create("A"), secret, _create("B")], ci_mode=False)

    assert [result.status for result in results] == [
        ResultStatus.SUCCEEDED,
        ResultStatus.FAILED,
        ResultStatus.SUCCEEDED,
    ]
    assert results[1].cause is FailureCause.DECRYPTION
    ((_, _, writes),) = fake_gateway.calls_to("write_variables")
    assert [write.name for write in writes] == ["A", "B"]


def test_batch_deferred_in_ci_mode(fake_gateway) -> None:
    """A busy resource defers the whole batch in CI mode."""
    fake_gateway.states[ENV] = [BUSY]
    coordinator = _coordinator(fake_gateway)

    results = coordinator.apply_batch([_create("A"), _create("B")], ci_mode=True)

    assert [result.status for result in results] == [ResultStatus.DEFERRED] * 2
    assert fake_gateway.calls == []


def test_batch_rejects_mixed_resources(fake_gateway) -> None:
    """Batches must target one resource."""
    coordinator = _coordinator(fake_gateway)

    with pytest.raises(ValueError):
        coordinator.apply_batch([_create("A"), _create("B", OTHER_ENV)], ci_mode=False)


def test_execute_runs_pipeline_command(fake_gateway) -> None:
    """Pipeline commands run under the readiness protocol."""
    coordinator = _coordinator(fake_gateway)

    result = coordinator.execute(
        PIPELINE,
        "pipeline 9 run",
        lambda: fake_gateway.run_pipeline(1, 9),
        ci_mode=False,
    )

    assert result.status is ResultStatus.SUCCEEDED
    assert fake_gateway.calls_to("run_pipeline") == [("run_pipeline", 1, 9)]


def test_execute_defers_busy_pipeline_in_ci_mode(fake_gateway) -> None:
    """A busy pipeline is deferred in CI mode."""
    fake_gateway.states[PIPELINE] = [BUSY]
    coordinator = _coordinator(fake_gateway)

    result = coordinator.execute(
        PIPELINE,
        "pipeline 9 run",
        lambda: fake_gateway.run_pipeline(1, 9),
        ci_mode=True,
    )

    assert result.status is ResultStatus.DEFERRED
    assert fake_gateway.calls == []
