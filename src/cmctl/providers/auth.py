"""Obtain Adobe IMS access tokens for the Cloud Manager API."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx
import jwt

from ..config import ConfigError, CredentialsConfig

LOGGER = logging.getLogger(__name__)

OAUTH_SCOPES = (
    "read_pc.dma_aem_ams,openid,AdobeID,read_organizations,"
    "additional_info.projectedProductContext"
)
JWT_LIFETIME_SECONDS = 60


class AuthError(RuntimeError):
    """Raised when IMS refuses to issue an access token."""


@dataclass(slots=True)
class TokenProvider:
    """Exchange configured credentials for a bearer token.

    The token is fetched lazily on first use and cached for the lifetime of
    the process.
    """

    credentials: CredentialsConfig
    ims_endpoint: str
    http: httpx.Client
    clock: Callable[[], float] = time.time
    _token: str | None = None

    def access_token(self) -> str:
        """Return a bearer token, requesting one from IMS when needed."""
        if self._token is None:
            self._token = self._request_token()
        return self._token

    def build_jwt(self) -> str:
        """Return the signed assertion used by the JWT exchange."""
        try:
            private_key = self.credentials.resolve_private_key()
        except ConfigError as exc:
            raise AuthError(str(exc)) from exc
        claims: dict[str, object] = {
            "exp": int(self.clock()) + JWT_LIFETIME_SECONDS,
            "iss": self.credentials.organization_id,
            "sub": self.credentials.technical_account_id,
            "aud": f"https://{self.ims_endpoint}/c/{self.credentials.client_id}",
            f"https://{self.ims_endpoint}/s/ent_cloudmgr_sdk": (
                self.credentials.scope == "ent_cloudmgr_sdk"
            ),
            f"https://{self.ims_endpoint}/s/ent_aem_cloud_api": (
                self.credentials.scope == "ent_aem_cloud_api"
            ),
        }
        try:
            return jwt.encode(claims, private_key, algorithm="RS256")
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            raise AuthError(f"Private key is in the wrong format: {exc}") from exc

    def _request_token(self) -> str:
        try:
            self.credentials.require()
        except ConfigError as exc:
            raise AuthError(str(exc)) from exc
        if self.credentials.auth_strategy == "jwt":
            url = f"https://{self.ims_endpoint}/ims/exchange/jwt/"
            form = {
                "client_id": self.credentials.client_id or "",
                "client_secret": self.credentials.client_secret or "",
                "jwt_token": self.build_jwt(),
            }
        else:
            url = f"https://{self.ims_endpoint}/ims/token/v3/"
            form = {
                "client_id": self.credentials.client_id or "",
                "client_secret": self.credentials.client_secret or "",
                "scope": OAUTH_SCOPES,
                "grant_type": "client_credentials",
            }
        LOGGER.debug("Requesting access token via %s", self.credentials.auth_strategy)
        try:
            response = self.http.post(url, data=form)
        except httpx.HTTPError as exc:
            raise AuthError(f"Unable to reach IMS at {self.ims_endpoint}: {exc}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError(f"Unable to authenticate: {response.text}") from exc
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if response.status_code >= 400 or not isinstance(token, str) or not token:
            detail = ""
            if isinstance(payload, dict):
                detail = str(payload.get("error_description") or payload.get("error") or "")
            raise AuthError(
                f"Unable to authenticate (HTTP {response.status_code}): {detail or response.text}"
            )
        return token


__all__ = ["AuthError", "OAUTH_SCOPES", "TokenProvider"]
