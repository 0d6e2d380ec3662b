"""Load the declarative YAML input consumed by reconciliation commands.

The same file format serves variables, domains and certificates::

    programs:
      - id: 123
        environments:
          - id: 456
            variables:
              - {name: FOO, value: bar, type: string}
            domains:
              - {domainname: www.example.com, certificate_id: 42}
        pipelines:
          - id: 789
            variables:
              - {name: MAVEN_OPTS, value: "-Xmx1g", service: build}
        certificates:
          - {name: wildcard, certificate: c.pem, chain: chain.pem, key: k.key}

Variable values are classified as plain or encrypted while loading.
"""
from __future__ import annotations

import os
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .codec import CodecError, EncryptedValue, VariableKind, parse_value
from .reconcile.models import (
    DesiredCertificate,
    DesiredDomain,
    DesiredVariable,
    ResourceKind,
    ResourceRef,
)
from .reconcile.planner import PlanValidationError, check_duplicates


class ManifestError(RuntimeError):
    """Raised when the input manifest is malformed."""


@dataclass(frozen=True)
class EnvironmentSpec:
    """Desired state of one environment."""

    program_id: int
    environment_id: int
    variables: tuple[DesiredVariable, ...] = ()
    domains: tuple[DesiredDomain, ...] = ()

    @property
    def resource(self) -> ResourceRef:
        return ResourceRef(ResourceKind.ENVIRONMENT, self.program_id, self.environment_id)


@dataclass(frozen=True)
class PipelineSpec:
    """Desired state of one pipeline."""

    program_id: int
    pipeline_id: int
    variables: tuple[DesiredVariable, ...] = ()

    @property
    def resource(self) -> ResourceRef:
        return ResourceRef(ResourceKind.PIPELINE, self.program_id, self.pipeline_id)


@dataclass(frozen=True)
class ProgramSpec:
    """Desired state of one program."""

    id: int
    environments: tuple[EnvironmentSpec, ...] = ()
    pipelines: tuple[PipelineSpec, ...] = ()
    certificates: tuple[DesiredCertificate, ...] = ()


@dataclass(frozen=True)
class Manifest:
    """Parsed manifest, optionally narrowed to one program or resource."""

    source: Path
    programs: tuple[ProgramSpec, ...] = field(default_factory=tuple)

    def environments(self) -> Iterator[EnvironmentSpec]:
        for program in self.programs:
            yield from program.environments

    def pipelines(self) -> Iterator[PipelineSpec]:
        for program in self.programs:
            yield from program.pipelines

    def certificates(self) -> Iterator[DesiredCertificate]:
        for program in self.programs:
            yield from program.certificates

    def domains(self) -> Iterator[DesiredDomain]:
        for environment in self.environments():
            yield from environment.domains

    def select(
        self,
        *,
        program_id: int | None = None,
        environment_id: int | None = None,
        pipeline_id: int | None = None,
    ) -> Manifest:
        """Return a copy restricted to the given ids; ``None`` keeps everything."""
        programs: list[ProgramSpec] = []
        for program in self.programs:
            if program_id is not None and program.id != program_id:
                continue
            environments = tuple(
                env
                for env in program.environments
                if environment_id is None or env.environment_id == environment_id
            )
            pipelines = tuple(
                pipeline
                for pipeline in program.pipelines
                if pipeline_id is None or pipeline.pipeline_id == pipeline_id
            )
            programs.append(
                ProgramSpec(
                    id=program.id,
                    environments=environments,
                    pipelines=pipelines,
                    certificates=program.certificates,
                )
            )
        return Manifest(source=self.source, programs=tuple(programs))


def load_manifest(path: str | os.PathLike[str]) -> Manifest:
    """Read and validate the manifest at *path*."""
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f"Unable to read {source}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ManifestError(f"Malformed YAML in {source}: {exc}") from exc
    return parse_manifest(data, base_dir=source.parent, source=source)


def parse_manifest(
    data: object,
    *,
    base_dir: Path,
    source: Path | None = None,
) -> Manifest:
    """Build a :class:`Manifest` from already-parsed YAML data."""
    if not isinstance(data, Mapping):
        raise ManifestError("Manifest must contain a mapping at the top level.")
    raw_programs = data.get("programs")
    if raw_programs is None:
        raise ManifestError("Manifest must define a 'programs' list.")
    programs = tuple(
        _parse_program(item, f"programs[{index}]", base_dir)
        for index, item in enumerate(_expect_list(raw_programs, "programs"))
    )
    return Manifest(source=source or base_dir, programs=programs)


def _parse_program(raw: object, label: str, base_dir: Path) -> ProgramSpec:
    mapping = _expect_mapping(raw, label)
    program_id = _expect_id(mapping.get("id"), f"{label}.id")

    environments: list[EnvironmentSpec] = []
    for index, item in enumerate(_expect_list(mapping.get("environments"), f"{label}.environments")):
        env_label = f"{label}.environments[{index}]"
        env_mapping = _expect_mapping(item, env_label)
        env_id = _expect_id(env_mapping.get("id"), f"{env_label}.id")
        resource = ResourceRef(ResourceKind.ENVIRONMENT, program_id, env_id)
        variables = _parse_variables(env_mapping.get("variables"), f"{env_label}.variables", resource)
        domains = tuple(
            _parse_domain(domain, f"{env_label}.domains[{d_index}]", program_id, env_id)
            for d_index, domain in enumerate(
                _expect_list(env_mapping.get("domains"), f"{env_label}.domains")
            )
        )
        environments.append(EnvironmentSpec(program_id, env_id, variables, domains))

    pipelines: list[PipelineSpec] = []
    for index, item in enumerate(_expect_list(mapping.get("pipelines"), f"{label}.pipelines")):
        pipe_label = f"{label}.pipelines[{index}]"
        pipe_mapping = _expect_mapping(item, pipe_label)
        pipeline_id = _expect_id(pipe_mapping.get("id"), f"{pipe_label}.id")
        resource = ResourceRef(ResourceKind.PIPELINE, program_id, pipeline_id)
        variables = _parse_variables(
            pipe_mapping.get("variables"), f"{pipe_label}.variables", resource
        )
        pipelines.append(PipelineSpec(program_id, pipeline_id, variables))

    certificates = tuple(
        _parse_certificate(item, f"{label}.certificates[{index}]", program_id, base_dir)
        for index, item in enumerate(
            _expect_list(mapping.get("certificates"), f"{label}.certificates")
        )
    )
    return ProgramSpec(
        id=program_id,
        environments=tuple(environments),
        pipelines=tuple(pipelines),
        certificates=certificates,
    )


def _parse_variables(
    raw: object,
    label: str,
    resource: ResourceRef,
) -> tuple[DesiredVariable, ...]:
    variables: list[DesiredVariable] = []
    for index, item in enumerate(_expect_list(raw, label)):
        item_label = f"{label}[{index}]"
        mapping = _expect_mapping(item, item_label)
        name = mapping.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ManifestError(f"{item_label}.name must be a non-empty string.")

        type_raw = mapping.get("type", VariableKind.STRING.value)
        try:
            kind = VariableKind(str(type_raw))
        except ValueError as exc:
            allowed = ", ".join(kind.value for kind in VariableKind)
            raise ManifestError(
                f"{item_label}.type '{type_raw}' is not supported. Allowed: {allowed}."
            ) from exc

        service_raw = mapping.get("service")
        scope = None if service_raw is None else str(service_raw)
        if scope and scope not in resource.kind.allowed_scopes:
            allowed = ", ".join(resource.kind.allowed_scopes)
            raise ManifestError(
                f"{item_label}.service '{scope}' is not valid for "
                f"{resource.kind.value} variables. Allowed: {allowed}."
            )

        value_raw = mapping.get("value")
        if value_raw is None:
            raise ManifestError(f"{item_label}.value is required.")
        if not isinstance(value_raw, str):
            # YAML would otherwise turn 1.10 into 1.1 and 0755 into 493.
            raise ManifestError(
                f"{item_label}.value must be a string; quote it in YAML "
                f"(got {type(value_raw).__name__})."
            )
        try:
            value = parse_value(value_raw)
        except CodecError as exc:
            raise ManifestError(f"{item_label}.value: {exc}") from exc
        if isinstance(value, EncryptedValue) and kind is VariableKind.STRING:
            raise ManifestError(
                f"{item_label} '{name}' holds an encrypted value but has type 'string'; "
                "use 'secretString'."
            )
        variables.append(
            DesiredVariable(
                name=name,
                value=value,
                kind=kind,
                scope=resource.kind.normalise_scope(scope),
            )
        )
    try:
        check_duplicates(resource, variables)
    except PlanValidationError as exc:
        raise ManifestError(str(exc)) from exc
    return tuple(variables)


def _parse_domain(
    raw: object,
    label: str,
    program_id: int,
    environment_id: int,
) -> DesiredDomain:
    mapping = _expect_mapping(raw, label)
    name = mapping.get("domainname", mapping.get("name"))
    if not isinstance(name, str) or not name.strip():
        raise ManifestError(f"{label}.domainname must be a non-empty string.")
    certificate_id = _expect_id(mapping.get("certificate_id"), f"{label}.certificate_id")
    return DesiredDomain(
        program_id=program_id,
        environment_id=environment_id,
        name=name.strip(),
        certificate_id=certificate_id,
    )


def _parse_certificate(
    raw: object,
    label: str,
    program_id: int,
    base_dir: Path,
) -> DesiredCertificate:
    mapping = _expect_mapping(raw, label)
    name = mapping.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ManifestError(f"{label}.name must be a non-empty string.")
    paths: dict[str, Path] = {}
    for key in ("certificate", "chain", "key"):
        value = mapping.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ManifestError(f"{label}.{key} must be a file path.")
        candidate = Path(value).expanduser()
        paths[key] = candidate if candidate.is_absolute() else base_dir / candidate
    certificate_id = mapping.get("id")
    return DesiredCertificate(
        program_id=program_id,
        name=name,
        certificate=paths["certificate"],
        chain=paths["chain"],
        key=paths["key"],
        id=None if certificate_id is None else _expect_id(certificate_id, f"{label}.id"),
    )


def _expect_mapping(value: object, label: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ManifestError(f"{label} must be a mapping.")
    return value


def _expect_list(value: object, label: str) -> Sequence[object]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ManifestError(f"{label} must be a list.")
    return value


def _expect_id(value: object, label: str) -> int:
    if value is None:
        raise ManifestError(f"{label} is required.")
    if isinstance(value, bool):
        raise ManifestError(f"{label} must be an integer id.")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ManifestError(f"{label} must be an integer id. Got {value!r}.")


__all__ = [
    "EnvironmentSpec",
    "Manifest",
    "ManifestError",
    "PipelineSpec",
    "ProgramSpec",
    "load_manifest",
    "parse_manifest",
]
