"""TLS helpers for cmctl certificate commands."""
from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography import x509

if TYPE_CHECKING:
    from .reconcile.models import DesiredCertificate


class TLSValidationSeverity(Enum):
    """Validation severities for TLS checks."""

    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True)
class TLSValidationFinding:
    """Individual validation check outcome."""

    scope: str
    check: str
    severity: TLSValidationSeverity
    message: str
    path: Path | None = None

    def __str__(self) -> str:
        location = f" ({self.path})" if self.path is not None else ""
        return f"{self.scope} {self.check}: {self.message}{location}"


@dataclass(frozen=True)
class CertificateValidity:
    """Serial number and validity window read from a certificate file."""

    serial_number: str
    not_before: datetime
    not_after: datetime

    def covers(self, moment: datetime) -> bool:
        return self.not_before <= moment <= self.not_after


@dataclass(frozen=True)
class TLSValidationReport:
    """Aggregate preflight results for one certificate bundle."""

    certificate: DesiredCertificate
    findings: tuple[TLSValidationFinding, ...]

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is classified as an error."""
        return any(f.severity is TLSValidationSeverity.ERROR for f in self.findings)

    @property
    def errors(self) -> tuple[TLSValidationFinding, ...]:
        return tuple(f for f in self.findings if f.severity is TLSValidationSeverity.ERROR)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "name": self.certificate.name,
            "paths": {
                "certificate": str(self.certificate.certificate),
                "chain": str(self.certificate.chain),
                "key": str(self.certificate.key),
            },
            "status": "error" if self.has_errors else "ok",
            "findings": [
                {
                    "scope": finding.scope,
                    "check": finding.check,
                    "severity": finding.severity.value,
                    "message": finding.message,
                    "path": str(finding.path) if finding.path is not None else None,
                }
                for finding in self.findings
            ],
        }


class TLSValidator:
    """Check that certificate bundles are present and parseable."""

    def validate(self, certificate: DesiredCertificate) -> TLSValidationReport:
        """Validate the files of *certificate* and return a structured report."""
        findings: list[TLSValidationFinding] = []

        cert_exists = self._check_file(certificate.certificate, "certificate", findings)
        chain_exists = self._check_file(certificate.chain, "chain", findings)
        self._check_file(certificate.key, "key", findings)

        if cert_exists:
            self._check_parse(certificate.certificate, "certificate", findings)
        if chain_exists:
            self._check_parse(certificate.chain, "chain", findings)

        return TLSValidationReport(certificate=certificate, findings=tuple(findings))

    def validate_all(
        self,
        certificates: Iterable[DesiredCertificate],
    ) -> list[TLSValidationReport]:
        return [self.validate(certificate) for certificate in certificates]

    def _check_file(
        self,
        path: Path,
        scope: str,
        findings: list[TLSValidationFinding],
    ) -> bool:
        if not path.exists():
            findings.append(
                TLSValidationFinding(
                    scope=scope,
                    check="exists",
                    severity=TLSValidationSeverity.ERROR,
                    message="File does not exist.",
                    path=path,
                )
            )
            return False
        if not path.is_file():
            findings.append(
                TLSValidationFinding(
                    scope=scope,
                    check="type",
                    severity=TLSValidationSeverity.ERROR,
                    message="Path is not a regular file.",
                    path=path,
                )
            )
            return False
        if not os.access(path, os.R_OK):
            findings.append(
                TLSValidationFinding(
                    scope=scope,
                    check="readable",
                    severity=TLSValidationSeverity.ERROR,
                    message="File is not readable by the current user.",
                    path=path,
                )
            )
            return False
        findings.append(
            TLSValidationFinding(
                scope=scope,
                check="exists",
                severity=TLSValidationSeverity.OK,
                message="File present and readable.",
                path=path,
            )
        )
        return True

    def _check_parse(
        self,
        path: Path,
        scope: str,
        findings: list[TLSValidationFinding],
    ) -> None:
        try:
            cert_obj = _load_certificate(path)
        except (OSError, ValueError) as exc:
            findings.append(
                TLSValidationFinding(
                    scope=scope,
                    check="parse",
                    severity=TLSValidationSeverity.ERROR,
                    message=f"Failed to parse certificate: {exc}",
                    path=path,
                )
            )
            return
        findings.append(
            TLSValidationFinding(
                scope=scope,
                check="parse",
                severity=TLSValidationSeverity.OK,
                message=f"Loaded certificate (serial {format_serial(cert_obj.serial_number)})",
                path=path,
            )
        )


def inspect_certificate(path: Path) -> CertificateValidity:
    """Return the serial number and validity window of the certificate at *path*."""
    cert_obj = _load_certificate(path)
    not_before_attr = getattr(cert_obj, "not_valid_before_utc", None)
    not_after_attr = getattr(cert_obj, "not_valid_after_utc", None)
    if isinstance(not_before_attr, datetime) and isinstance(not_after_attr, datetime):
        not_before = not_before_attr
        not_after = not_after_attr
    else:  # pragma: no cover - compatibility fallback
        not_before = _as_utc(cert_obj.not_valid_before)
        not_after = _as_utc(cert_obj.not_valid_after)
    return CertificateValidity(
        serial_number=format_serial(cert_obj.serial_number),
        not_before=not_before,
        not_after=not_after,
    )


def format_serial(serial: int) -> str:
    """Render a serial number the way Cloud Manager reports it (decimal)."""
    return str(serial)


def normalise_serial(value: object) -> str:
    """Return a decimal serial for comparison.

    The server reports decimal strings; hex forms (``0x..`` or colon
    separated) are accepted as well. Leading zero bytes carry no meaning.
    """
    text = str(value).strip()
    if not text:
        return ""
    lowered = text.lower()
    try:
        if lowered.startswith("0x"):
            return str(int(lowered[2:], 16))
        if ":" in lowered:
            return str(int(lowered.replace(":", ""), 16))
        return str(int(lowered, 10))
    except ValueError:
        return text


def read_pem_single_line(path: Path) -> str:
    """Return the PEM contents of *path* with line breaks removed."""
    return path.read_text(encoding="utf-8").replace("\r", "").replace("\n", "")


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "CertificateValidity",
    "TLSValidationFinding",
    "TLSValidationReport",
    "TLSValidationSeverity",
    "TLSValidator",
    "format_serial",
    "inspect_certificate",
    "normalise_serial",
    "read_pem_single_line",
]
