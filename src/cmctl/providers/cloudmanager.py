"""HTTP gateway for the Adobe Cloud Manager API."""
from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from datetime import date
from typing import Any

import httpx

from ..codec import VariableKind
from ..reconcile.models import (
    CertificatePayload,
    DomainPayload,
    RemoteCertificate,
    RemoteDomain,
    RemoteError,
    RemoteErrorKind,
    RemoteVariable,
    ResourceKind,
    ResourceReadiness,
    ResourceRef,
    VariableWrite,
)
from ..config import AppConfig
from .auth import TokenProvider

LOGGER = logging.getLogger(__name__)

ENVIRONMENT_READY = {"ready"}
ENVIRONMENT_BUSY = {"creating", "updating", "deleting"}
PIPELINE_READY = {"IDLE"}
PIPELINE_BUSY = {"BUSY", "WAITING"}

LOG_TAIL_REL = "http://ns.adobe.com/adobecloud/rel/logs/tail"

_ALREADY_IN_USE_MARKERS = ("already in use", "already exists", "already_in_use", "duplicate")


class CloudManagerGateway:
    """Remote state gateway backed by the Cloud Manager REST API."""

    def __init__(
        self,
        http: httpx.Client,
        tokens: TokenProvider,
        *,
        host: str,
        organization_id: str,
        api_key: str,
        page_size: int = 100,
    ) -> None:
        self._http = http
        self._tokens = tokens
        self._host = host.rstrip("/")
        self._organization_id = organization_id
        self._api_key = api_key
        self._page_size = page_size

    def access_token(self) -> str:
        """Return the bearer token used for API calls."""
        return self._tokens.access_token()

    def close(self) -> None:
        """Release the pooled HTTP connections."""
        self._http.close()

    # ------------------------------------------------------------------
    # Read-only listings used by the CLI
    def list_programs(self) -> list[dict[str, Any]]:
        """Return all programs visible to the technical account."""
        return self._embedded(self._get("/api/programs"), "programs")

    def list_environments(self, program_id: int) -> list[dict[str, Any]]:
        return self._embedded(
            self._get(f"/api/program/{program_id}/environments"), "environments"
        )

    def get_environment(self, program_id: int, environment_id: int) -> dict[str, Any]:
        return self._get(f"/api/program/{program_id}/environment/{environment_id}")

    def list_pipelines(self, program_id: int) -> list[dict[str, Any]]:
        return self._embedded(self._get(f"/api/program/{program_id}/pipelines"), "pipelines")

    def get_pipeline(self, program_id: int, pipeline_id: int) -> dict[str, Any]:
        return self._get(f"/api/program/{program_id}/pipeline/{pipeline_id}")

    def list_executions(self, program_id: int, pipeline_id: int) -> list[dict[str, Any]]:
        return self._embedded(
            self._get(f"/api/program/{program_id}/pipeline/{pipeline_id}/executions"),
            "executions",
        )

    # ------------------------------------------------------------------
    # Pipeline commands
    def run_pipeline(self, program_id: int, pipeline_id: int) -> None:
        """Start a new execution of *pipeline_id*."""
        self._request(
            "PUT",
            f"/api/program/{program_id}/pipeline/{pipeline_id}/execution",
            json={},
            expected=(200, 201, 202),
        )

    def invalidate_pipeline_cache(self, program_id: int, pipeline_id: int) -> None:
        """Drop the build cache of *pipeline_id*."""
        self._request(
            "DELETE",
            f"/api/program/{program_id}/pipeline/{pipeline_id}/cache",
            expected=(200, 204),
        )

    # ------------------------------------------------------------------
    # Environment logs
    def download_log(
        self,
        program_id: int,
        environment_id: int,
        service: str,
        name: str,
        day: date,
    ) -> bytes:
        """Return the gzipped log file of *service* for *day*."""
        response = self._request(
            "GET",
            f"/api/program/{program_id}/environment/{environment_id}/logs/download",
            params={"service": service, "name": name, "date": day.isoformat()},
            expected=(200,),
            follow_redirects=True,
        )
        return response.content

    def log_tail_url(self, program_id: int, environment_id: int, service: str, name: str) -> str:
        """Return the pre-signed URL that serves the live end of a log."""
        path = f"/api/program/{program_id}/environment/{environment_id}/logs"
        payload = self._get(path, params={"service": service, "name": name, "days": 2})
        for download in self._embedded(payload, "downloads"):
            links = download.get("_links")
            tail = links.get(LOG_TAIL_REL) if isinstance(links, Mapping) else None
            if isinstance(tail, Mapping) and tail.get("href"):
                return str(tail["href"])
        raise RemoteError(
            f"No tail link for {service}/{name} logs of environment {environment_id}.",
            kind=RemoteErrorKind.NOT_FOUND,
        )

    def log_size(self, url: str) -> int:
        """Return the current length in bytes of the log behind *url*."""
        response = self._external("HEAD", url, expected=(200,))
        return int(response.headers.get("content-length", "0"))

    def read_log_range(self, url: str, start: int) -> bytes:
        """Return the bytes appended to the log since offset *start*."""
        response = self._external(
            "GET",
            url,
            headers={"Range": f"bytes={start}-"},
            expected=(200, 206, 416),
        )
        if response.status_code == 416:
            return b""
        if response.status_code == 200:
            return response.content[start:]
        return response.content

    # ------------------------------------------------------------------
    # RemoteStateGateway
    def readiness(self, resource: ResourceRef) -> ResourceReadiness:
        if resource.kind is ResourceKind.ENVIRONMENT:
            environment = self.get_environment(resource.program_id, resource.resource_id)
            status = str(environment.get("status", ""))
            if status in ENVIRONMENT_READY:
                return ResourceReadiness.READY
            if status in ENVIRONMENT_BUSY:
                return ResourceReadiness.BUSY
        else:
            pipeline = self.get_pipeline(resource.program_id, resource.resource_id)
            status = str(pipeline.get("status", ""))
            if status in PIPELINE_READY:
                return ResourceReadiness.READY
            if status in PIPELINE_BUSY:
                return ResourceReadiness.BUSY
        LOGGER.debug("%s reports unrecognised status %r", resource, status)
        return ResourceReadiness.UNKNOWN

    def fetch_variables(self, resource: ResourceRef) -> list[RemoteVariable]:
        payload = self._get(self._variables_path(resource))
        variables: list[RemoteVariable] = []
        for item in self._embedded(payload, "variables"):
            try:
                kind = VariableKind(str(item.get("type", VariableKind.STRING.value)))
            except ValueError:
                LOGGER.debug("Ignoring variable %r with unknown type", item.get("name"))
                continue
            service = item.get("service")
            value = None if kind is VariableKind.SECRET_STRING else item.get("value")
            variables.append(
                RemoteVariable(
                    name=str(item.get("name", "")),
                    kind=kind,
                    value=_optional_str(value),
                    scope=resource.kind.normalise_scope(_optional_str(service)),
                )
            )
        return variables

    def create_variable(self, resource: ResourceRef, variable: VariableWrite) -> None:
        self.write_variables(resource, [variable])

    def update_variable(self, resource: ResourceRef, variable: VariableWrite) -> None:
        self.write_variables(resource, [variable])

    def write_variables(self, resource: ResourceRef, variables: Sequence[VariableWrite]) -> None:
        body = [_variable_json(variable) for variable in variables]
        self._request("PATCH", self._variables_path(resource), json=body, expected=(200, 204))

    def fetch_certificates(self, program_id: int) -> list[RemoteCertificate]:
        certificates: list[RemoteCertificate] = []
        for item in self._paged(f"/api/program/{program_id}/certificates", "certificates"):
            identifier = item.get("id")
            if identifier is None:
                continue
            certificates.append(
                RemoteCertificate(
                    id=int(identifier),
                    name=str(item.get("name", "")),
                    serial_number=str(item.get("serialNumber", "")),
                    expire_at=_optional_str(item.get("expireAt")),
                )
            )
        return certificates

    def create_certificate(self, program_id: int, payload: CertificatePayload) -> None:
        self._request(
            "POST",
            f"/api/program/{program_id}/certificates",
            json=payload.to_json(),
            expected=(201,),
        )

    def update_certificate(
        self,
        program_id: int,
        certificate_id: int,
        payload: CertificatePayload,
    ) -> None:
        self._request(
            "PUT",
            f"/api/program/{program_id}/certificate/{certificate_id}",
            json=payload.to_json(),
            expected=(200,),
        )

    def fetch_domains(self, program_id: int) -> list[RemoteDomain]:
        domains: list[RemoteDomain] = []
        for item in self._paged(f"/api/program/{program_id}/domainNames", "domainNames"):
            domains.append(
                RemoteDomain(
                    id=int(item.get("id") or 0),
                    name=str(item.get("name", "")),
                    status=_optional_str(item.get("status")),
                    environment_id=_optional_int(item.get("environmentId")),
                    certificate_id=_optional_int(item.get("certificateId")),
                )
            )
        return domains

    def create_domain(self, program_id: int, payload: DomainPayload) -> None:
        self._request(
            "POST",
            f"/api/program/{program_id}/domainNames",
            json=payload.to_json(),
            expected=(201,),
        )

    # ------------------------------------------------------------------
    def _variables_path(self, resource: ResourceRef) -> str:
        segment = "environment" if resource.kind is ResourceKind.ENVIRONMENT else "pipeline"
        return f"/api/program/{resource.program_id}/{segment}/{resource.resource_id}/variables"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._tokens.access_token()}",
            "x-gw-ims-org-id": self._organization_id,
            "x-api-key": self._api_key,
        }

    def _get(self, path: str, params: Mapping[str, object] | None = None) -> dict[str, Any]:
        response = self._request("GET", path, params=params, expected=(200,))
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteError(
                f"GET {path} returned a non-JSON body.",
                status=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise RemoteError(
                f"GET {path} returned an unexpected payload.",
                status=response.status_code,
            )
        return data

    def _paged(self, path: str, key: str) -> Iterator[dict[str, Any]]:
        start = 0
        while True:
            payload = self._get(path, params={"start": start, "limit": self._page_size})
            items = self._embedded(payload, key)
            yield from items
            start += len(items)
            total = payload.get("_totalNumberOfItems")
            if not items or not isinstance(total, int) or start >= total:
                return

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, object] | None = None,
        json: object | None = None,
        expected: Sequence[int],
        follow_redirects: bool = False,
    ) -> httpx.Response:
        url = f"{self._host}{path}"
        LOGGER.debug("%s %s", method, url)
        try:
            response = self._http.request(
                method,
                url,
                params=dict(params) if params else None,
                json=json,
                headers=self._headers(),
                follow_redirects=follow_redirects,
            )
        except httpx.HTTPError as exc:
            raise RemoteError(f"{method} {path} failed: {exc}") from exc
        if response.status_code not in expected:
            raise decode_problem(method, path, response)
        return response

    def _external(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        expected: Sequence[int],
    ) -> httpx.Response:
        # Pre-signed URLs carry their own credentials.
        LOGGER.debug("%s %s", method, url.split("?", 1)[0])
        try:
            response = self._http.request(method, url, headers=dict(headers or {}))
        except httpx.HTTPError as exc:
            raise RemoteError(f"{method} log stream failed: {exc}") from exc
        if response.status_code not in expected:
            raise decode_problem(method, url.split("?", 1)[0], response)
        return response

    @staticmethod
    def _embedded(payload: Mapping[str, Any], key: str) -> list[dict[str, Any]]:
        embedded = payload.get("_embedded")
        if not isinstance(embedded, Mapping):
            return []
        items = embedded.get(key)
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]


def build_gateway(config: AppConfig, *, http: httpx.Client | None = None) -> CloudManagerGateway:
    """Return a gateway wired with credentials from *config*."""
    config.credentials.require()
    client = http or httpx.Client(timeout=httpx.Timeout(config.http.timeout))
    tokens = TokenProvider(
        credentials=config.credentials,
        ims_endpoint=config.ims_endpoint,
        http=client,
    )
    return CloudManagerGateway(
        client,
        tokens,
        host=config.host,
        organization_id=config.credentials.organization_id or "",
        api_key=config.credentials.client_id or "",
        page_size=config.http.page_size,
    )


def decode_problem(method: str, path: str, response: httpx.Response) -> RemoteError:
    """Translate an error response into a :class:`RemoteError`."""
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = None
    details: list[str] = []
    title = ""
    if isinstance(body, Mapping):
        title = str(body.get("title") or body.get("message") or "")
        details.extend(_problem_details(body))
        additional = body.get("additionalProperties")
        if isinstance(additional, Mapping):
            details.extend(_problem_details(additional))
    summary = title or response.reason_phrase or "request failed"
    message = f"{method} {path} returned HTTP {status}: {summary}"
    if details:
        message = f"{message} ({'; '.join(details)})"
    kind = _classify(status, [title, *details])
    return RemoteError(message, kind=kind, status=status, details=details)


def _problem_details(body: Mapping[str, Any]) -> list[str]:
    details: list[str] = []
    errors = body.get("errors")
    if isinstance(errors, list):
        for error in errors:
            if isinstance(error, Mapping):
                parts = [str(error[key]) for key in ("field", "code", "message") if error.get(key)]
                details.append(": ".join(parts))
            else:
                details.append(str(error))
    for param in body.get("invalidParams") or []:
        if isinstance(param, Mapping):
            details.append(f"invalid {param.get('name')}: {param.get('reason')}")
    for param in body.get("missingParams") or []:
        if isinstance(param, Mapping):
            details.append(f"missing {param.get('name')} ({param.get('type')})")
    return details


def _classify(status: int, texts: Sequence[str]) -> RemoteErrorKind:
    lowered = " ".join(texts).lower()
    if status == 409 or any(marker in lowered for marker in _ALREADY_IN_USE_MARKERS):
        return RemoteErrorKind.ALREADY_IN_USE
    if status in (401, 403):
        return RemoteErrorKind.UNAUTHORIZED
    if status == 404:
        return RemoteErrorKind.NOT_FOUND
    if status in (400, 422):
        return RemoteErrorKind.MALFORMED_REQUEST
    return RemoteErrorKind.OTHER


def _variable_json(variable: VariableWrite) -> dict[str, object]:
    body: dict[str, object] = {
        "name": variable.name,
        "value": variable.value,
        "type": variable.kind.value,
    }
    if variable.scope:
        body["service"] = variable.scope
    return body


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value))
    except ValueError:
        return None


__all__ = ["CloudManagerGateway", "LOG_TAIL_REL", "build_gateway", "decode_problem"]
