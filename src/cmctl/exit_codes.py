"""Process exit codes shared by every cmctl command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit status of a command run.

    ``VALIDATION`` covers bad input: manifests, certificate preflight and
    undecryptable values. ``ENVIRONMENT`` covers the local setup such as
    configuration, credentials and the encryption key. ``PROVIDER`` means
    Cloud Manager rejected or did not complete a request.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


__all__ = ["ExitCode"]
