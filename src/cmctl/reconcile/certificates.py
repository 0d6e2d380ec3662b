"""Match desired certificate bundles with the certificates of a program."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from ..tls import (
    TLSValidationFinding,
    TLSValidationReport,
    TLSValidator,
    inspect_certificate,
    normalise_serial,
)
from .models import (
    DesiredCertificate,
    FailureCause,
    ReconciliationAction,
    RemoteCertificate,
)

LOGGER = logging.getLogger(__name__)


class PreflightError(RuntimeError):
    """Raised when certificate files are missing or unreadable."""

    def __init__(
        self,
        issues: Sequence[TLSValidationFinding],
        reports: Sequence[TLSValidationReport] = (),
    ) -> None:
        self.issues = tuple(issues)
        self.reports = tuple(reports)
        summary = "; ".join(str(issue) for issue in self.issues)
        super().__init__(f"Certificate preflight failed: {summary}")


def preflight(
    desired: Sequence[DesiredCertificate],
    validator: TLSValidator | None = None,
) -> None:
    """Validate every bundle before any network call.

    All issues across the batch are collected and raised together.
    """
    checker = validator or TLSValidator()
    reports = checker.validate_all(desired)
    issues = [issue for report in reports for issue in report.errors]
    if issues:
        raise PreflightError(issues, reports)


def find_match(
    desired: DesiredCertificate,
    remote: Sequence[RemoteCertificate],
) -> RemoteCertificate | None:
    """Return the remote certificate *desired* refers to.

    An explicit id wins. Otherwise the first certificate with exactly the same
    name is used, even when the program holds several with that name.
    """
    if desired.id is not None:
        for candidate in remote:
            if candidate.id == desired.id:
                return candidate
        return None
    for candidate in remote:
        if candidate.name == desired.name:
            return candidate
    return None


def plan_certificates(
    desired: Sequence[DesiredCertificate],
    remote: Sequence[RemoteCertificate],
    *,
    now: datetime | None = None,
) -> list[ReconciliationAction]:
    """Return one action per desired certificate, in input order.

    Call :func:`preflight` first; this function expects readable files.
    """
    moment = now or datetime.now(UTC)
    actions: list[ReconciliationAction] = []
    for certificate in desired:
        identifier = certificate.identifier
        validity = inspect_certificate(certificate.certificate)
        if not validity.covers(moment):
            actions.append(
                ReconciliationAction.failed(
                    identifier,
                    FailureCause.INVALID_CERTIFICATE,
                    (
                        "certificate is not valid now "
                        f"({validity.not_before.isoformat()} - {validity.not_after.isoformat()})"
                    ),
                    entity=certificate,
                )
            )
            continue

        match = find_match(certificate, remote)
        if match is None:
            if certificate.id is not None:
                LOGGER.debug("No remote certificate with id %s; planning create", certificate.id)
            actions.append(ReconciliationAction.create(identifier, certificate))
            continue

        local_serial = normalise_serial(validity.serial_number)
        if local_serial == normalise_serial(match.serial_number):
            actions.append(
                ReconciliationAction.skip(
                    identifier,
                    "already current",
                    entity=certificate,
                    remote=match,
                )
            )
            continue
        actions.append(
            ReconciliationAction.update(
                identifier,
                certificate,
                match,
                reason=f"serial {match.serial_number} -> {local_serial}",
            )
        )
    return actions


__all__ = ["PreflightError", "find_match", "plan_certificates", "preflight"]
