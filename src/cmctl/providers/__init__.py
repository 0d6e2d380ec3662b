"""Provider interfaces for cmctl."""
from __future__ import annotations

from .auth import AuthError, TokenProvider
from .cloudmanager import CloudManagerGateway, build_gateway, decode_problem

__all__ = [
    "AuthError",
    "CloudManagerGateway",
    "TokenProvider",
    "build_gateway",
    "decode_problem",
]
