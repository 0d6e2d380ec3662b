"""Environment log downloads and live tailing."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Protocol

from .reconcile.coordinator import CancelToken

LOGGER = logging.getLogger(__name__)

TAIL_INTERVAL = 5.0


class LogService(str, Enum):
    """Services whose logs Cloud Manager exposes."""

    AUTHOR = "author"
    PUBLISH = "publish"
    DISPATCHER = "dispatcher"
    PREVIEW_DISPATCHER = "preview_dispatcher"


class LogName(str, Enum):
    """Log files available per service."""

    AEMACCESS = "aemaccess"
    AEMDISPATCHER = "aemdispatcher"
    AEMERROR = "aemerror"
    AEMREQUEST = "aemrequest"
    CDN = "cdn"
    HTTPDACCESS = "httpdaccess"
    HTTPDERROR = "httpderror"


class LogStream(Protocol):
    def log_size(self, url: str) -> int: ...

    def read_log_range(self, url: str, start: int) -> bytes: ...


def log_filename(environment_id: int, service: str, name: str, day: date) -> str:
    """Return the local file name used for a downloaded log."""
    return f"{day.isoformat()}_{environment_id}-{service}_{name}.log.gz"


def save_log(content: bytes, directory: Path, filename: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / filename
    target.write_bytes(content)
    return target


def follow_log(
    stream: LogStream,
    url: str,
    emit: Callable[[str], None],
    *,
    cancel_token: CancelToken,
    interval: float = TAIL_INTERVAL,
) -> int:
    """Print lines appended to the log at *url* until *cancel_token* fires.

    Reading starts at the current end of the log. Returns the number of
    lines emitted.
    """
    offset = stream.log_size(url)
    LOGGER.debug("Tailing log from offset %d", offset)
    emitted = 0
    try:
        while not cancel_token.cancelled:
            chunk = stream.read_log_range(url, offset)
            offset += len(chunk)
            for line in chunk.decode("utf-8", errors="replace").splitlines():
                if line.strip():
                    emit(line)
                    emitted += 1
            if cancel_token.wait(interval):
                break
    except KeyboardInterrupt:
        cancel_token.cancel()
    return emitted


__all__ = [
    "LogName",
    "LogService",
    "LogStream",
    "TAIL_INTERVAL",
    "follow_log",
    "log_filename",
    "save_log",
]
