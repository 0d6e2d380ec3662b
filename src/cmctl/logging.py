"""Structured operation logging for cmctl.

Every CLI command runs inside an :class:`OperationScope`. When the scope
closes, a single JSON line describing the command, its arguments, the target
resource and the recorded result is appended to ``operations.jsonl`` inside
the configured log directory.

Logging must never break a command: when the directory cannot be created or a
write fails, the logger disables itself and subsequent operations become
no-ops.
"""
from __future__ import annotations

import json
import logging
import os
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def configure_logging(level: str) -> None:
    """Configure module loggers for the current process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class OperationScope:
    """Collects the outcome of a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start a scope for *command*."""
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = datetime.now(UTC)
        self.result: dict[str, object] | None = None

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._record(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that completed with warnings."""
        self._record(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome."""
        self._record(
            "error",
            message,
            changed=changed,
            warnings=None,
            errors=errors if errors is not None else [message],
            context=context,
            rc=rc,
        )

    def _record(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Iterable[str] | None,
        errors: Iterable[str] | None,
        context: Mapping[str, object] | None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in (warnings or [])],
            "errors": [str(item) for item in (errors or [])],
            "context": _sanitise_mapping(context or {}),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-safe record for this scope."""
        finished_at = datetime.now(UTC)
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitise_mapping(self.args),
            "target": _sanitise_mapping(self.target),
            "started_at": self.started_at.isoformat(),
            "finished_at": finished_at.isoformat(),
            "duration_ms": int((finished_at - self.started_at).total_seconds() * 1000),
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSONL logger for CLI operations."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable the logger when it is not writable."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling structured logging; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}")
            raise
        finally:
            if scope.result is None:
                scope.success("Operation finished without an explicit result.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=False)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
            os.chmod(self._operations_log_path, 0o640)
        except OSError as exc:
            LOGGER.debug("Disabling structured logging after write failure: %s", exc)
            self._enabled = False


def _sanitise_mapping(value: Mapping[str, object]) -> dict[str, object]:
    return {str(key): _sanitise(item) for key, item in value.items()}


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return _sanitise_mapping(value)
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


__all__ = ["OperationScope", "StructuredLogger", "configure_logging"]
