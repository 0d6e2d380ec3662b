"""Diff desired variables against the remote state of one resource."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from ..codec import PlainValue, VariableKind
from .models import (
    DesiredVariable,
    ReconciliationAction,
    RemoteVariable,
    ResourceRef,
    variable_identifier,
)


class PlanValidationError(RuntimeError):
    """Raised when the desired state cannot be planned."""

    def __init__(self, message: str, *, duplicates: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.duplicates = tuple(duplicates)


def check_duplicates(resource: ResourceRef, desired: Iterable[DesiredVariable]) -> None:
    """Raise :class:`PlanValidationError` when a name repeats within one scope."""
    seen: set[tuple[str, str | None]] = set()
    duplicates: list[str] = []
    for variable in desired:
        key = (variable.name, resource.kind.normalise_scope(variable.scope))
        if key in seen:
            duplicates.append(variable_identifier(*key))
            continue
        seen.add(key)
    if duplicates:
        joined = ", ".join(duplicates)
        raise PlanValidationError(
            f"Duplicate variable names for {resource}: {joined}.",
            duplicates=duplicates,
        )


def plan_variables(
    resource: ResourceRef,
    desired: Sequence[DesiredVariable],
    remote: Sequence[RemoteVariable],
) -> list[ReconciliationAction]:
    """Return one action per desired variable, in input order.

    Variables are matched on ``(name, scope)``. Remote variables with no
    desired counterpart are left alone.
    """
    check_duplicates(resource, desired)

    remote_index: dict[tuple[str, str | None], RemoteVariable] = {}
    for item in remote:
        key = (item.name, resource.kind.normalise_scope(item.scope))
        remote_index.setdefault(key, item)

    actions: list[ReconciliationAction] = []
    for variable in desired:
        scope = resource.kind.normalise_scope(variable.scope)
        identifier = variable_identifier(variable.name, scope)
        existing = remote_index.get((variable.name, scope))
        actions.append(_decide(resource, identifier, variable, existing))
    return actions


def _decide(
    resource: ResourceRef,
    identifier: str,
    desired: DesiredVariable,
    existing: RemoteVariable | None,
) -> ReconciliationAction:
    if existing is None:
        return ReconciliationAction.create(identifier, desired, resource=resource)
    if existing.kind is not desired.kind:
        return ReconciliationAction.update(
            identifier,
            desired,
            existing,
            resource=resource,
            reason=f"type changes from {existing.kind.value} to {desired.kind.value}",
        )
    if desired.kind is VariableKind.SECRET_STRING:
        # Remote secrets are write-only, so equality cannot be established.
        return ReconciliationAction.update(
            identifier,
            desired,
            existing,
            resource=resource,
            reason="secret values are always rewritten",
        )
    if isinstance(desired.value, PlainValue) and desired.value.text == existing.value:
        return ReconciliationAction.skip(
            identifier,
            "unchanged",
            resource=resource,
            entity=desired,
            remote=existing,
        )
    return ReconciliationAction.update(
        identifier,
        desired,
        existing,
        resource=resource,
        reason="value differs",
    )


__all__ = ["PlanValidationError", "check_duplicates", "plan_variables"]
