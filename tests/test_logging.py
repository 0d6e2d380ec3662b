"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from cmctl.logging import StructuredLogger


def _read_records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("env vars set", args={"file": "vars.yml"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log_path

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("program list") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("program list") as op:
        op.success("done", changed=0)


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("env vars set", args={"file": Path("vars.yml")}) as op:
        op.warning(
            "deferred",
            warnings=("environment 1/2 busy",),
            changed=1,
            context={"path": Path("/tmp/vars.yml"), "obj": Custom()},
        )

    (record,) = _read_records(logger)
    assert record["command"] == "env vars set"
    assert record["args"] == {"file": "vars.yml"}
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "warning"
    assert result["warnings"] == ["environment 1/2 busy"]
    assert result["changed"] == 1
    assert result["context"] == {"path": "/tmp/vars.yml", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("certificate manage") as op:
        op.error("boom", errors=None, rc=4, context={"value": {1, 2}})

    (record,) = _read_records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]
    assert result["rc"] == 4
    assert result["context"] == {"value": "{1, 2}"}


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """Exceptions inside a scope are logged as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("pipeline run"):
            raise ValueError("kaboom")

    (record,) = _read_records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert "kaboom" in str(result["message"])


def test_scope_without_result_defaults_to_success(tmp_path: Path) -> None:
    """A scope closed without a result records success."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("config show"):
        pass

    (record,) = _read_records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert isinstance(record["duration_ms"], int)
