"""Configuration loader for cmctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``./cmctl.yml`` (or an override path). JSON files are accepted as well
   since JSON is valid YAML.
3. Environment variables prefixed with ``CMCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CMCTL_COORDINATION__POLL_INTERVAL=30
    export CMCTL_CREDENTIALS__CLIENT_ID=abc123

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load cmctl configuration. Install with "
        "`pip install cmctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CMCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
CRYPT_KEY_ENV_VAR = f"{ENV_PREFIX}CRYPTKEY"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    CRYPT_KEY_ENV_VAR,
    f"{ENV_PREFIX}PROGRAM_ID",
    f"{ENV_PREFIX}ENVIRONMENT_ID",
    f"{ENV_PREFIX}PIPELINE_ID",
}

ALLOWED_SCOPES = {"ent_cloudmgr_sdk", "ent_aem_cloud_api"}
ALLOWED_AUTH_STRATEGIES = {"oauth2", "jwt"}
ALLOWED_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class CredentialsConfig:
    """Adobe IMS technical account credentials."""

    client_id: str | None = None
    client_secret: str | None = None
    organization_id: str | None = None
    technical_account_id: str | None = None
    private_key: str | None = None
    private_key_file: Path | None = None
    scope: str = "ent_cloudmgr_sdk"
    auth_strategy: str = "oauth2"

    def require(self) -> None:
        """Raise :class:`ConfigError` when mandatory credentials are missing."""
        required = ["client_id", "client_secret", "organization_id"]
        if self.auth_strategy == "jwt":
            required.append("technical_account_id")
        missing = [name for name in required if not getattr(self, name)]
        if self.auth_strategy == "jwt" and not (self.private_key or self.private_key_file):
            missing.append("private_key")
        if missing:
            joined = ", ".join(f"credentials.{name}" for name in missing)
            raise ConfigError(f"Missing Cloud Manager credentials: {joined}.")

    def resolve_private_key(self) -> str:
        """Return the PEM private key used to sign JWT assertions."""
        if self.private_key:
            return self.private_key
        if self.private_key_file is None:
            raise ConfigError("credentials.private_key or credentials.private_key_file is required.")
        try:
            return self.private_key_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(
                f"Unable to read private key file {self.private_key_file}: {exc}"
            ) from exc

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with secrets masked."""
        return {
            "client_id": self.client_id,
            "client_secret": "***" if self.client_secret else None,
            "organization_id": self.organization_id,
            "technical_account_id": self.technical_account_id,
            "private_key": "***" if self.private_key else None,
            "private_key_file": str(self.private_key_file) if self.private_key_file else None,
            "scope": self.scope,
            "auth_strategy": self.auth_strategy,
        }


@dataclass(frozen=True)
class CoordinationConfig:
    """Busy-resource polling policy."""

    poll_interval: float = 60.0
    max_wait: float = 3600.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"poll_interval": self.poll_interval, "max_wait": self.max_wait}


@dataclass(frozen=True)
class HttpConfig:
    """HTTP client tunables."""

    timeout: float = 30.0
    page_size: int = 100

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "page_size": self.page_size}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for cmctl."""

    config_file: Path
    host: str
    ims_endpoint: str
    logs_dir: Path
    log_level: str
    crypt_key_file: Path
    credentials: CredentialsConfig
    coordination: CoordinationConfig
    http: HttpConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "host": self.host,
            "ims_endpoint": self.ims_endpoint,
            "logs_dir": str(self.logs_dir),
            "log_level": self.log_level,
            "crypt_key_file": str(self.crypt_key_file),
            "credentials": self.credentials.to_dict(),
            "coordination": self.coordination.to_dict(),
            "http": self.http.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "./cmctl.yml",
    "host": "https://cloudmanager.adobe.io",
    "ims_endpoint": "ims-na1.adobelogin.com",
    "logs_dir": "~/.local/state/cmctl",
    "log_level": "warning",
    "crypt_key_file": ".cryptkey",
    "credentials": {
        "client_id": None,
        "client_secret": None,
        "organization_id": None,
        "technical_account_id": None,
        "private_key": None,
        "private_key_file": None,
        "scope": "ent_cloudmgr_sdk",
        "auth_strategy": "oauth2",
    },
    "coordination": {
        "poll_interval": 60.0,
        "max_wait": 3600.0,
    },
    "http": {
        "timeout": 30.0,
        "page_size": 100,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_CREDENTIAL_KEYS = set(cast(Mapping[str, object], DEFAULTS["credentials"]).keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path, required=config_file is not None)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path, *, required: bool) -> dict[str, object]:
    if not path.exists():
        if required:
            raise ConfigError(f"Config file {path} does not exist.")
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    log_level = str(raw.get("log_level", "warning")).lower()
    if log_level not in ALLOWED_LOG_LEVELS:
        allowed = ", ".join(sorted(ALLOWED_LOG_LEVELS))
        raise ConfigError(f"Unsupported log_level '{log_level}'. Allowed: {allowed}.")

    credentials = _as_dict(raw.get("credentials"), "credentials")
    unknown = set(credentials.keys()) - _CREDENTIAL_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown credentials configuration keys: {joined}.")
    scope = credentials.get("scope")
    if scope is not None and str(scope) not in ALLOWED_SCOPES:
        allowed = ", ".join(sorted(ALLOWED_SCOPES))
        raise ConfigError(f"Unsupported credentials.scope '{scope}'. Allowed: {allowed}.")
    strategy = credentials.get("auth_strategy")
    if strategy is not None and str(strategy) not in ALLOWED_AUTH_STRATEGIES:
        allowed = ", ".join(sorted(ALLOWED_AUTH_STRATEGIES))
        raise ConfigError(
            f"Unsupported credentials.auth_strategy '{strategy}'. Allowed: {allowed}."
        )

    coordination = _as_dict(raw.get("coordination"), "coordination")
    unknown = set(coordination.keys()) - {"poll_interval", "max_wait"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown coordination configuration keys: {joined}.")

    http = _as_dict(raw.get("http"), "http")
    unknown = set(http.keys()) - {"timeout", "page_size"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown http configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    credentials_mapping = _as_dict(raw.get("credentials"), "credentials")
    private_key_file_value = credentials_mapping.get("private_key_file")
    credentials = CredentialsConfig(
        client_id=_optional_str(credentials_mapping.get("client_id")),
        client_secret=_optional_str(credentials_mapping.get("client_secret")),
        organization_id=_optional_str(credentials_mapping.get("organization_id")),
        technical_account_id=_optional_str(credentials_mapping.get("technical_account_id")),
        private_key=_optional_str(credentials_mapping.get("private_key")),
        private_key_file=_to_path(private_key_file_value) if private_key_file_value else None,
        scope=str(credentials_mapping.get("scope") or "ent_cloudmgr_sdk"),
        auth_strategy=str(credentials_mapping.get("auth_strategy") or "oauth2"),
    )

    coordination_mapping = _as_dict(raw.get("coordination"), "coordination")
    poll_interval = _expect_non_negative_float(
        coordination_mapping.get("poll_interval"),
        "coordination.poll_interval",
        default=60.0,
    )
    max_wait = _expect_non_negative_float(
        coordination_mapping.get("max_wait"),
        "coordination.max_wait",
        default=3600.0,
    )

    http_mapping = _as_dict(raw.get("http"), "http")
    timeout = _expect_non_negative_float(http_mapping.get("timeout"), "http.timeout", default=30.0)
    if timeout == 0:
        raise ConfigError("http.timeout must be greater than zero.")
    page_size = _expect_int(http_mapping.get("page_size"), "http.page_size", default=100)
    if page_size <= 0:
        raise ConfigError("http.page_size must be greater than zero.")

    host = _expect_str(raw.get("host"), "host").rstrip("/")
    if not host.startswith(("http://", "https://")):
        raise ConfigError(f"host must be an http(s) URL. Got {host!r}.")

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        host=host,
        ims_endpoint=_expect_str(raw.get("ims_endpoint"), "ims_endpoint"),
        logs_dir=_to_path(raw.get("logs_dir")),
        log_level=str(raw.get("log_level", "warning")).lower(),
        crypt_key_file=_to_path(raw.get("crypt_key_file")),
        credentials=credentials,
        coordination=CoordinationConfig(poll_interval=poll_interval, max_wait=max_wait),
        http=HttpConfig(timeout=timeout, page_size=page_size),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "CoordinationConfig",
    "CredentialsConfig",
    "HttpConfig",
    "CRYPT_KEY_ENV_VAR",
    "load_config",
]
