"""Translate planned actions into gateway calls."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence

from ..codec import SecretCodec
from ..tls import read_pem_single_line
from .domains import verification_record
from .models import (
    ActionKind,
    CertificatePayload,
    DesiredCertificate,
    DesiredDomain,
    DesiredVariable,
    DomainPayload,
    ReconciliationAction,
    RemoteCertificate,
    RemoteStateGateway,
    ResourceRef,
    VariableWrite,
)


class GatewayDispatcher:
    """Resolve payloads for actions and bind them to gateway mutations."""

    def __init__(
        self,
        gateway: RemoteStateGateway,
        codec: SecretCodec,
        *,
        token_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._gateway = gateway
        self._codec = codec
        self._token_factory = token_factory

    def prepare_variable(self, action: ReconciliationAction) -> VariableWrite:
        entity = action.entity
        if not isinstance(entity, DesiredVariable):
            raise TypeError(f"{action.identifier} is not a variable action.")
        resolved = self._codec.resolve(entity.value, entity.kind)
        scope = entity.scope if entity.scope not in ("", "all") else None
        return VariableWrite(name=entity.name, kind=entity.kind, value=resolved.text, scope=scope)

    def write_variables(self, resource: ResourceRef, writes: Sequence[VariableWrite]) -> None:
        self._gateway.write_variables(resource, writes)

    def bind(self, action: ReconciliationAction) -> Callable[[], None]:
        entity = action.entity
        if isinstance(entity, DesiredVariable):
            return self._bind_variable(action)
        if isinstance(entity, DesiredCertificate):
            return self._bind_certificate(action, entity)
        if isinstance(entity, DesiredDomain):
            return self._bind_domain(entity)
        raise TypeError(f"Cannot dispatch {action.identifier}: no entity attached.")

    def _bind_variable(self, action: ReconciliationAction) -> Callable[[], None]:
        resource = action.resource
        if resource is None:
            raise TypeError(f"{action.identifier} has no owning resource.")
        write = self.prepare_variable(action)
        if action.kind is ActionKind.CREATE:
            return lambda: self._gateway.create_variable(resource, write)
        return lambda: self._gateway.update_variable(resource, write)

    def _bind_certificate(
        self,
        action: ReconciliationAction,
        entity: DesiredCertificate,
    ) -> Callable[[], None]:
        remote = action.remote if isinstance(action.remote, RemoteCertificate) else None
        payload = CertificatePayload(
            name=entity.name,
            certificate=read_pem_single_line(entity.certificate),
            chain=read_pem_single_line(entity.chain),
            private_key=read_pem_single_line(entity.key),
            id=remote.id if remote is not None else None,
        )
        if action.kind is ActionKind.CREATE or remote is None:
            return lambda: self._gateway.create_certificate(entity.program_id, payload)
        certificate_id = remote.id
        return lambda: self._gateway.update_certificate(entity.program_id, certificate_id, payload)

    def _bind_domain(self, entity: DesiredDomain) -> Callable[[], None]:
        payload = DomainPayload(
            name=entity.name,
            environment_id=entity.environment_id,
            certificate_id=entity.certificate_id,
            dns_txt_record=verification_record(
                entity.name,
                entity.program_id,
                entity.environment_id,
                self._token_factory(),
            ),
        )
        return lambda: self._gateway.create_domain(entity.program_id, payload)


__all__ = ["GatewayDispatcher"]
