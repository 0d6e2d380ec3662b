"""Data models shared by the reconciliation components."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from ..codec import VariableKind, VariableValue

ENVIRONMENT_SERVICES: tuple[str, ...] = ("all", "author", "publish", "preview")
PIPELINE_SERVICES: tuple[str, ...] = ("build", "uiTest", "functionalTest")


class ResourceKind(str, Enum):
    """Owner type of a variable set."""

    ENVIRONMENT = "environment"
    PIPELINE = "pipeline"

    @property
    def default_scope(self) -> str | None:
        """Return the scope applied when a variable names none."""
        return "build" if self is ResourceKind.PIPELINE else None

    @property
    def allowed_scopes(self) -> tuple[str, ...]:
        if self is ResourceKind.PIPELINE:
            return PIPELINE_SERVICES
        return ENVIRONMENT_SERVICES

    def normalise_scope(self, scope: str | None) -> str | None:
        """Map the user-facing service tag onto the match key used for diffing.

        Environment variables without a service (or with ``all``) apply to all
        services and share one scope. Pipeline variables default to ``build``.
        """
        if scope is None or scope == "":
            return self.default_scope
        if self is ResourceKind.ENVIRONMENT and scope == "all":
            return None
        return scope


@dataclass(frozen=True)
class ResourceRef:
    """Pipeline or environment that owns variables and has a busy state."""

    kind: ResourceKind
    program_id: int
    resource_id: int

    def __str__(self) -> str:
        return f"{self.kind.value} {self.program_id}/{self.resource_id}"


class ResourceReadiness(str, Enum):
    """Coarse mutability state of a resource."""

    READY = "ready"
    BUSY = "busy"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DesiredVariable:
    """Variable as declared in the input manifest."""

    name: str
    value: VariableValue
    kind: VariableKind = VariableKind.STRING
    scope: str | None = None

    @property
    def identifier(self) -> str:
        return variable_identifier(self.name, self.scope)


@dataclass(frozen=True)
class RemoteVariable:
    """Variable as reported by the server.

    ``value`` is ``None`` for secret variables since the server never returns
    them.
    """

    name: str
    kind: VariableKind
    value: str | None = None
    scope: str | None = None


@dataclass(frozen=True)
class DesiredCertificate:
    """Certificate bundle declared in the input manifest."""

    program_id: int
    name: str
    certificate: Path
    chain: Path
    key: Path
    id: int | None = None

    @property
    def identifier(self) -> str:
        return f"certificate {self.name}"


@dataclass(frozen=True)
class RemoteCertificate:
    """Certificate summary returned by the server."""

    id: int
    name: str
    serial_number: str
    expire_at: str | None = None


@dataclass(frozen=True)
class DesiredDomain:
    """Domain name to be attached to an environment."""

    program_id: int
    environment_id: int
    name: str
    certificate_id: int

    @property
    def identifier(self) -> str:
        return f"domain {self.name}"


@dataclass(frozen=True)
class RemoteDomain:
    """Domain name already registered on the program."""

    id: int
    name: str
    status: str | None = None
    environment_id: int | None = None
    certificate_id: int | None = None


class ActionKind(str, Enum):
    """Kind of a planned reconciliation step."""

    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    DEFERRED = "deferred"
    FAILED = "failed"

    @property
    def mutating(self) -> bool:
        return self in {ActionKind.CREATE, ActionKind.UPDATE}


class FailureCause(str, Enum):
    """Reason an entity ended in a failed state."""

    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    ALREADY_IN_USE = "already-in-use"
    REMOTE_ERROR = "remote-error"
    PREFLIGHT_MISSING_FILE = "preflight-missing-file"
    DECRYPTION = "decryption"
    INVALID_CERTIFICATE = "invalid-certificate"


Entity = DesiredVariable | DesiredCertificate | DesiredDomain
Remote = RemoteVariable | RemoteCertificate | RemoteDomain


@dataclass(frozen=True)
class ReconciliationAction:
    """One planned step for one desired entity.

    ``resource`` names the pipeline or environment whose busy state gates the
    mutation. It is ``None`` for program-level entities such as certificates
    and domains.
    """

    kind: ActionKind
    identifier: str
    resource: ResourceRef | None = None
    entity: Entity | None = None
    remote: Remote | None = None
    reason: str | None = None
    cause: FailureCause | None = None

    @property
    def owner(self) -> str | None:
        """Return the resource or program the entity belongs to."""
        if self.resource is not None:
            return str(self.resource)
        if isinstance(self.entity, (DesiredCertificate, DesiredDomain)):
            return f"program {self.entity.program_id}"
        return None

    @classmethod
    def create(
        cls,
        identifier: str,
        entity: Entity,
        *,
        resource: ResourceRef | None = None,
    ) -> ReconciliationAction:
        return cls(ActionKind.CREATE, identifier, resource=resource, entity=entity)

    @classmethod
    def update(
        cls,
        identifier: str,
        entity: Entity,
        remote: Remote,
        *,
        resource: ResourceRef | None = None,
        reason: str | None = None,
    ) -> ReconciliationAction:
        return cls(
            ActionKind.UPDATE,
            identifier,
            resource=resource,
            entity=entity,
            remote=remote,
            reason=reason,
        )

    @classmethod
    def skip(
        cls,
        identifier: str,
        reason: str,
        *,
        resource: ResourceRef | None = None,
        entity: Entity | None = None,
        remote: Remote | None = None,
    ) -> ReconciliationAction:
        return cls(
            ActionKind.SKIP,
            identifier,
            resource=resource,
            entity=entity,
            remote=remote,
            reason=reason,
        )

    @classmethod
    def failed(
        cls,
        identifier: str,
        cause: FailureCause,
        reason: str,
        *,
        resource: ResourceRef | None = None,
        entity: Entity | None = None,
    ) -> ReconciliationAction:
        return cls(
            ActionKind.FAILED,
            identifier,
            resource=resource,
            entity=entity,
            reason=reason,
            cause=cause,
        )


class ResultStatus(str, Enum):
    """Terminal state of one processed action."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    PLANNED = "planned"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass(frozen=True)
class ActionResult:
    """Terminal result reported by the coordinator for one action."""

    identifier: str
    status: ResultStatus
    action: ActionKind
    message: str = ""
    cause: FailureCause | None = None
    owner: str | None = None

    @property
    def key(self) -> str:
        """Return the identifier qualified by its owner, unique within a run."""
        return f"{self.owner} {self.identifier}" if self.owner else self.identifier

    @classmethod
    def succeeded(cls, action: ReconciliationAction, message: str = "") -> ActionResult:
        return cls(
            action.identifier, ResultStatus.SUCCEEDED, action.kind, message, owner=action.owner
        )

    @classmethod
    def skipped(cls, action: ReconciliationAction) -> ActionResult:
        return cls(
            action.identifier,
            ResultStatus.SKIPPED,
            action.kind,
            action.reason or "",
            owner=action.owner,
        )

    @classmethod
    def planned(cls, action: ReconciliationAction) -> ActionResult:
        return cls(
            action.identifier, ResultStatus.PLANNED, action.kind, "dry run", owner=action.owner
        )

    @classmethod
    def deferred(cls, action: ReconciliationAction, message: str) -> ActionResult:
        return cls(
            action.identifier, ResultStatus.DEFERRED, action.kind, message, owner=action.owner
        )

    @classmethod
    def failed(
        cls,
        action: ReconciliationAction,
        cause: FailureCause,
        message: str,
    ) -> ActionResult:
        return cls(
            action.identifier,
            ResultStatus.FAILED,
            action.kind,
            message,
            cause,
            owner=action.owner,
        )


@dataclass(frozen=True)
class VariableWrite:
    """Resolved variable payload handed to the gateway."""

    name: str
    kind: VariableKind
    value: str
    scope: str | None = None


class RemoteErrorKind(str, Enum):
    """Classification of a rejected remote request."""

    ALREADY_IN_USE = "already-in-use"
    UNAUTHORIZED = "unauthorized"
    MALFORMED_REQUEST = "malformed-request"
    NOT_FOUND = "not-found"
    OTHER = "other"


class RemoteError(RuntimeError):
    """Raised by gateways when the server rejects or fails a request."""

    def __init__(
        self,
        message: str,
        *,
        kind: RemoteErrorKind = RemoteErrorKind.OTHER,
        status: int | None = None,
        details: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.details = tuple(details)


class RemoteStateGateway(Protocol):
    """Remote operations consumed by the reconciliation core.

    Mutations return on success and raise :class:`RemoteError` otherwise.
    """

    def fetch_variables(self, resource: ResourceRef) -> list[RemoteVariable]:
        """Return the variables currently set on *resource*."""

    def fetch_certificates(self, program_id: int) -> list[RemoteCertificate]:
        """Return every certificate of *program_id*."""

    def fetch_domains(self, program_id: int) -> list[RemoteDomain]:
        """Return every domain name of *program_id*."""

    def readiness(self, resource: ResourceRef) -> ResourceReadiness:
        """Return whether *resource* accepts mutations right now."""

    def create_variable(self, resource: ResourceRef, variable: VariableWrite) -> None:
        """Create one variable on *resource*."""

    def update_variable(self, resource: ResourceRef, variable: VariableWrite) -> None:
        """Overwrite one variable on *resource*."""

    def write_variables(self, resource: ResourceRef, variables: Sequence[VariableWrite]) -> None:
        """Create or overwrite several variables on *resource* in one request."""

    def create_certificate(self, program_id: int, payload: CertificatePayload) -> None:
        """Upload a new certificate."""

    def update_certificate(
        self,
        program_id: int,
        certificate_id: int,
        payload: CertificatePayload,
    ) -> None:
        """Replace an existing certificate."""

    def create_domain(self, program_id: int, payload: DomainPayload) -> None:
        """Register a new domain name."""


@dataclass(frozen=True)
class CertificatePayload:
    """Certificate upload body; PEM contents have their newlines removed."""

    name: str
    certificate: str
    chain: str
    private_key: str
    id: int | None = None

    def __repr__(self) -> str:
        return f"CertificatePayload(name={self.name!r}, id={self.id!r}, private_key='***')"

    def to_json(self) -> dict[str, object]:
        body: dict[str, object] = {
            "name": self.name,
            "certificate": self.certificate,
            "chain": self.chain,
            "privateKey": {"value": self.private_key},
        }
        if self.id is not None:
            body["id"] = self.id
        return body


@dataclass(frozen=True)
class DomainPayload:
    """Domain registration body."""

    name: str
    environment_id: int
    certificate_id: int
    dns_txt_record: str
    dns_zone: str = "adobe.com."

    def to_json(self) -> dict[str, object]:
        return {
            "name": self.name,
            "dnsTxtRecord": self.dns_txt_record,
            "environmentId": self.environment_id,
            "certificateId": self.certificate_id,
            "dnsZone": self.dns_zone,
        }


def variable_identifier(name: str, scope: str | None) -> str:
    """Return ``name`` or ``name[scope]`` for reporting."""
    return f"{name}[{scope}]" if scope else name


__all__ = [
    "ActionKind",
    "ActionResult",
    "CertificatePayload",
    "DesiredCertificate",
    "DesiredDomain",
    "DesiredVariable",
    "DomainPayload",
    "ENVIRONMENT_SERVICES",
    "Entity",
    "FailureCause",
    "PIPELINE_SERVICES",
    "ReconciliationAction",
    "Remote",
    "RemoteCertificate",
    "RemoteDomain",
    "RemoteError",
    "RemoteErrorKind",
    "RemoteStateGateway",
    "RemoteVariable",
    "ResourceKind",
    "ResourceReadiness",
    "ResourceRef",
    "ResultStatus",
    "VariableKind",
    "VariableWrite",
    "variable_identifier",
]
