"""Diff planner tests."""
from __future__ import annotations

import pytest

from cmctl.codec import EncryptedValue, PlainValue, VariableKind
from cmctl.reconcile.models import (
    ActionKind,
    DesiredVariable,
    RemoteVariable,
    ResourceKind,
    ResourceRef,
)
from cmctl.reconcile.planner import PlanValidationError, plan_variables

ENV = ResourceRef(ResourceKind.ENVIRONMENT, 1, 2)
PIPELINE = ResourceRef(ResourceKind.PIPELINE, 1, 3)


def _plain(name: str, value: str, scope: str | None = None) -> DesiredVariable:
    return DesiredVariable(name, PlainValue(value), VariableKind.STRING, scope)


def test_missing_remote_variable_is_created() -> None:
    """Absent variables are planned as creates."""
    (action,) = plan_variables(ENV, [_plain("FOO", "bar")], [])

    assert action.kind is ActionKind.CREATE
    assert action.identifier == "FOO"
    assert action.resource == ENV


def test_equal_plain_value_is_skipped() -> None:
    """Unchanged plain values are skipped."""
    remote = [RemoteVariable("FOO", VariableKind.STRING, "bar")]

    (action,) = plan_variables(ENV, [_plain("FOO", "bar")], remote)

    assert action.kind is ActionKind.SKIP
    assert action.reason == "unchanged"


def test_different_plain_value_is_updated() -> None:
    """Changed plain values are updated."""
    remote = [RemoteVariable("FOO", VariableKind.STRING, "old")]

    (action,) = plan_variables(ENV, [_plain("FOO", "new")], remote)

    assert action.kind is ActionKind.UPDATE
    assert action.reason == "value differs"
    assert action.remote == remote[0]


def test_kind_change_is_an_update() -> None:
    """Switching between plain and secret is an update."""
    remote = [RemoteVariable("FOO", VariableKind.SECRET_STRING)]

    (action,) = plan_variables(ENV, [_plain("FOO", "bar")], remote)

    assert action.kind is ActionKind.UPDATE
    assert "type changes" in (action.reason or "")


@pytest.mark.parametrize(
    "value",
    [PlainValue("same"), EncryptedValue("token")],
)
def test_secret_variables_are_always_rewritten(value: PlainValue | EncryptedValue) -> None:
    """Existing secrets are rewritten since values cannot be compared."""
    desired = DesiredVariable("PASS", value, VariableKind.SECRET_STRING)
    remote = [RemoteVariable("PASS", VariableKind.SECRET_STRING)]

    (action,) = plan_variables(ENV, [desired], remote)

    assert action.kind is ActionKind.UPDATE


def test_matching_uses_name_and_scope() -> None:
    """Variables match on name and scope together."""
    remote = [
        RemoteVariable("FOO", VariableKind.STRING, "a", scope="author"),
        RemoteVariable("FOO", VariableKind.STRING, "b", scope=None),
    ]
    desired = [_plain("FOO", "a", "author"), _plain("FOO", "b"), _plain("FOO", "c", "publish")]

    actions = plan_variables(ENV, desired, remote)

    assert [action.kind for action in actions] == [
        ActionKind.SKIP,
        ActionKind.SKIP,
        ActionKind.CREATE,
    ]
    assert [action.identifier for action in actions] == ["FOO[author]", "FOO", "FOO[publish]"]


def test_environment_all_scope_matches_unscoped_remote() -> None:
    """The all scope matches unscoped remote variables."""
    remote = [RemoteVariable("FOO", VariableKind.STRING, "bar", scope=None)]

    (action,) = plan_variables(ENV, [_plain("FOO", "bar", "all")], remote)

    assert action.kind is ActionKind.SKIP


def test_pipeline_variables_default_to_build_scope() -> None:
    """Unscoped pipeline variables belong to build."""
    remote = [RemoteVariable("OPTS", VariableKind.STRING, "-X", scope="build")]

    (action,) = plan_variables(PIPELINE, [_plain("OPTS", "-X")], remote)

    assert action.kind is ActionKind.SKIP
    assert action.identifier == "OPTS[build]"


def test_unmanaged_remote_variables_are_left_alone() -> None:
    """Remote variables absent from the file are not deleted."""
    remote = [RemoteVariable("OTHER", VariableKind.STRING, "x")]

    actions = plan_variables(ENV, [_plain("FOO", "bar")], remote)

    assert len(actions) == 1
    assert actions[0].identifier == "FOO"


def test_plan_preserves_input_order() -> None:
    """Actions follow the order of the desired variables."""
    desired = [_plain("Z", "1"), _plain("A", "2"), _plain("M", "3")]

    actions = plan_variables(ENV, desired, [])

    assert [action.identifier for action in actions] == ["Z", "A", "M"]


def test_duplicates_raise_plan_validation_error() -> None:
    """Duplicate desired variables are rejected."""
    desired = [_plain("FOO", "1"), _plain("FOO", "2", "all")]

    with pytest.raises(PlanValidationError) as excinfo:
        plan_variables(ENV, desired, [])

    assert excinfo.value.duplicates == ("FOO",)
