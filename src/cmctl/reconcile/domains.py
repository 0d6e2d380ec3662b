"""Plan domain-name registrations for a program."""

from __future__ import annotations

from collections.abc import Sequence

from .models import DesiredDomain, ReconciliationAction, RemoteDomain


def plan_domains(
    desired: Sequence[DesiredDomain],
    remote: Sequence[RemoteDomain],
) -> list[ReconciliationAction]:
    """Return Create for unknown names and Skip for names already registered."""
    existing = {domain.name: domain for domain in remote}
    actions: list[ReconciliationAction] = []
    for domain in desired:
        match = existing.get(domain.name)
        if match is not None:
            actions.append(
                ReconciliationAction.skip(
                    domain.identifier,
                    "already exists",
                    entity=domain,
                    remote=match,
                )
            )
            continue
        actions.append(ReconciliationAction.create(domain.identifier, domain))
    return actions


def verification_record(domain: str, program_id: int, environment_id: int, token: str) -> str:
    """Return the TXT record value proving ownership of *domain*."""
    return f"adobe-aem-verification={domain}/{program_id}/{environment_id}/{token}"


__all__ = ["plan_domains", "verification_record"]
