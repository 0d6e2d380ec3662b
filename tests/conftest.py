"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from cmctl.reconcile.models import (
    CertificatePayload,
    DomainPayload,
    RemoteCertificate,
    RemoteDomain,
    RemoteError,
    RemoteErrorKind,
    RemoteVariable,
    ResourceReadiness,
    ResourceRef,
    VariableWrite,
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeGateway:
    """In-memory stand-in for the Cloud Manager API with call recording.

    Reads and mutations land in ``calls``; readiness checks are counted in
    ``readiness_calls``.
    """

    READS = frozenset(
        {"fetch_variables", "fetch_certificates", "fetch_domains", "download_log", "log_tail_url"}
    )

    def __init__(self) -> None:
        self.variables: dict[ResourceRef, list[RemoteVariable]] = {}
        self.certificates: dict[int, list[RemoteCertificate]] = {}
        self.domains: dict[int, list[RemoteDomain]] = {}
        self.states: dict[ResourceRef, list[ResourceReadiness]] = {}
        self.failures: dict[str, RemoteError] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.readiness_calls = 0
        self.programs: list[dict[str, Any]] = []
        self.environments: list[dict[str, Any]] = []
        self.pipelines: list[dict[str, Any]] = []
        self.executions: list[dict[str, Any]] = []
        self.logs: dict[tuple[int, str, str, str], bytes] = {}
        self.log_chunks: list[bytes] = []
        self.closed = False

    def calls_to(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    @property
    def mutations(self) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] not in self.READS]

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        error = self.failures.get(name)
        if error is not None:
            raise error

    # Reads
    def access_token(self) -> str:
        return "token-123"

    def readiness(self, resource: ResourceRef) -> ResourceReadiness:
        self.readiness_calls += 1
        error = self.failures.get("readiness")
        if error is not None:
            raise error
        script = self.states.get(resource)
        if not script:
            return ResourceReadiness.READY
        if len(script) > 1:
            return script.pop(0)
        return script[0]

    def fetch_variables(self, resource: ResourceRef) -> list[RemoteVariable]:
        self._record("fetch_variables", resource)
        return list(self.variables.get(resource, []))

    def fetch_certificates(self, program_id: int) -> list[RemoteCertificate]:
        self._record("fetch_certificates", program_id)
        return list(self.certificates.get(program_id, []))

    def fetch_domains(self, program_id: int) -> list[RemoteDomain]:
        self._record("fetch_domains", program_id)
        return list(self.domains.get(program_id, []))

    def list_programs(self) -> list[dict[str, Any]]:
        return list(self.programs)

    def list_environments(self, program_id: int) -> list[dict[str, Any]]:
        return list(self.environments)

    def list_pipelines(self, program_id: int) -> list[dict[str, Any]]:
        return list(self.pipelines)

    def list_executions(self, program_id: int, pipeline_id: int) -> list[dict[str, Any]]:
        return list(self.executions)

    def download_log(
        self, program_id: int, environment_id: int, service: str, name: str, day: date
    ) -> bytes:
        self._record("download_log", environment_id, service, name, day)
        try:
            return self.logs[(environment_id, service, name, day.isoformat())]
        except KeyError:
            raise RemoteError("missing", status=404, kind=RemoteErrorKind.NOT_FOUND) from None

    def log_tail_url(self, program_id: int, environment_id: int, service: str, name: str) -> str:
        self._record("log_tail_url", environment_id, service, name)
        return f"https://logs.test/{environment_id}/{service}/{name}"

    def log_size(self, url: str) -> int:
        return 0

    def read_log_range(self, url: str, start: int) -> bytes:
        # An exhausted script stands in for Ctrl-C.
        if not self.log_chunks:
            raise KeyboardInterrupt
        return self.log_chunks.pop(0)

    def close(self) -> None:
        self.closed = True

    # Mutations
    def create_variable(self, resource: ResourceRef, variable: VariableWrite) -> None:
        self._record("create_variable", resource, variable)

    def update_variable(self, resource: ResourceRef, variable: VariableWrite) -> None:
        self._record("update_variable", resource, variable)

    def write_variables(self, resource: ResourceRef, variables: Sequence[VariableWrite]) -> None:
        self._record("write_variables", resource, list(variables))

    def create_certificate(self, program_id: int, payload: CertificatePayload) -> None:
        self._record("create_certificate", program_id, payload)

    def update_certificate(
        self,
        program_id: int,
        certificate_id: int,
        payload: CertificatePayload,
    ) -> None:
        self._record("update_certificate", program_id, certificate_id, payload)

    def create_domain(self, program_id: int, payload: DomainPayload) -> None:
        self._record("create_domain", program_id, payload)

    def run_pipeline(self, program_id: int, pipeline_id: int) -> None:
        self._record("run_pipeline", program_id, pipeline_id)

    def invalidate_pipeline_cache(self, program_id: int, pipeline_id: int) -> None:
        self._record("invalidate_pipeline_cache", program_id, pipeline_id)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    """Return an empty in-memory gateway."""
    return FakeGateway()


CertificateFactory = Callable[..., tuple[Path, Path, Path, int]]


@pytest.fixture
def make_certificate(tmp_path: Path) -> CertificateFactory:
    """Return a factory writing a self-signed bundle (cert, chain, key, serial)."""

    def _factory(
        name: str = "www.example.test",
        *,
        serial: int | None = None,
        valid_from: datetime | None = None,
        valid_to: datetime | None = None,
    ) -> tuple[Path, Path, Path, int]:
        now = datetime.now(UTC)
        valid_from = valid_from or (now - timedelta(days=1))
        valid_to = valid_to or (now + timedelta(days=90))
        serial_number = serial or x509.random_serial_number()
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(key.public_key())
            .serial_number(serial_number)
            .not_valid_before(valid_from)
            .not_valid_after(valid_to)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(key, hashes.SHA256())
        )
        safe = name.replace(".", "_")
        cert_path = tmp_path / f"{safe}.pem"
        chain_path = tmp_path / f"{safe}.chain.pem"
        key_path = tmp_path / f"{safe}.key"
        pem = cert.public_bytes(serialization.Encoding.PEM)
        cert_path.write_bytes(pem)
        chain_path.write_bytes(pem)
        key_path.write_bytes(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        return cert_path, chain_path, key_path, serial_number

    return _factory
