"""IMS token provider tests."""
from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from cmctl.config import CredentialsConfig
from cmctl.providers.auth import OAUTH_SCOPES, AuthError, TokenProvider

IMS = "ims.example.test"


def _client(responses: list[httpx.Response], seen: list[httpx.Request]) -> httpx.Client:
    pending = iter(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return next(pending)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


def _private_key_pem() -> tuple[str, rsa.RSAPrivateKey]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    return pem, key


def test_oauth_token_is_requested_once_and_cached() -> None:
    """Client credentials fetch one token and reuse it."""
    seen: list[httpx.Request] = []
    client = _client([httpx.Response(200, json={"access_token": "abc"})], seen)
    credentials = CredentialsConfig(
        client_id="id",
        client_secret="secret",
        organization_id="org",
    )
    provider = TokenProvider(credentials=credentials, ims_endpoint=IMS, http=client)

    assert provider.access_token() == "abc"
    assert provider.access_token() == "abc"

    (request,) = seen
    assert request.url == httpx.URL(f"https://{IMS}/ims/token/v3/")
    form = _form(request)
    assert form["grant_type"] == "client_credentials"
    assert form["scope"] == OAUTH_SCOPES
    assert form["client_secret"] == "secret"


def test_jwt_exchange_signs_assertion() -> None:
    """The JWT strategy posts an RS256 assertion to the exchange endpoint."""
    pem, key = _private_key_pem()
    seen: list[httpx.Request] = []
    client = _client([httpx.Response(200, json={"access_token": "jwt-token"})], seen)
    credentials = CredentialsConfig(
        client_id="id",
        client_secret="secret",
        organization_id="org@AdobeOrg",
        technical_account_id="tech@techacct.adobe.com",
        private_key=pem,
        auth_strategy="jwt",
        scope="ent_aem_cloud_api",
    )
    provider = TokenProvider(
        credentials=credentials,
        ims_endpoint=IMS,
        http=client,
        clock=lambda: 1_000.0,
    )

    assert provider.access_token() == "jwt-token"

    (request,) = seen
    assert request.url == httpx.URL(f"https://{IMS}/ims/exchange/jwt/")
    assertion = _form(request)["jwt_token"]
    claims = jwt.decode(
        assertion,
        key.public_key(),
        algorithms=["RS256"],
        audience=f"https://{IMS}/c/id",
        options={"verify_exp": False},
    )
    assert claims["exp"] == 1_060
    assert claims["iss"] == "org@AdobeOrg"
    assert claims["sub"] == "tech@techacct.adobe.com"
    assert claims[f"https://{IMS}/s/ent_aem_cloud_api"] is True
    assert claims[f"https://{IMS}/s/ent_cloudmgr_sdk"] is False


def test_bad_private_key_raises_auth_error() -> None:
    """An unreadable private key surfaces as an auth error."""
    credentials = CredentialsConfig(
        client_id="id",
        client_secret="secret",
        organization_id="org",
        technical_account_id="tech",
        private_key="not a key",
        auth_strategy="jwt",
    )
    provider = TokenProvider(credentials=credentials, ims_endpoint=IMS, http=_client([], []))

    with pytest.raises(AuthError, match="wrong format"):
        provider.build_jwt()


def test_rejected_credentials_raise_auth_error() -> None:
    """IMS rejecting the credentials raises an auth error."""
    seen: list[httpx.Request] = []
    client = _client(
        [httpx.Response(400, json={"error": "invalid_client", "error_description": "bad secret"})],
        seen,
    )
    credentials = CredentialsConfig(client_id="id", client_secret="nope", organization_id="org")
    provider = TokenProvider(credentials=credentials, ims_endpoint=IMS, http=client)

    with pytest.raises(AuthError, match="bad secret"):
        provider.access_token()


def test_missing_credentials_raise_auth_error() -> None:
    """Token requests without credentials fail early."""
    provider = TokenProvider(credentials=CredentialsConfig(), ims_endpoint=IMS, http=_client([], []))

    with pytest.raises(AuthError, match="Missing Cloud Manager credentials"):
        provider.access_token()
