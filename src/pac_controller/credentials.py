"""Token credentials for IBM Cloud IAM and Keycloak.

Both credentials implement azure-core's ``TokenCredential`` protocol so they
plug into ``BearerTokenCredentialPolicy`` unchanged. Tokens are cached and
refreshed shortly before they expire; a single credential is shared by every
client built during the controller's lifetime.

SECURITY INVARIANTS:
1. The IBM Cloud API key is read from the environment or a mounted file and
   is never logged or included in reprs.
2. Token endpoints are always HTTPS.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from azure.core.credentials import AccessToken

from .rest import RestClient

logger = logging.getLogger(__name__)

IAM_ENDPOINT = "https://iam.cloud.ibm.com"
IAM_APIKEY_GRANT_TYPE = "urn:ibm:params:oauth:grant-type:apikey"

API_KEY_ENV_VAR = "IBMCLOUD_APIKEY"
API_KEY_FILE_ENV_VAR = "IBMCLOUD_APIKEY_FILE"

# Refresh this long before the token actually expires
TOKEN_REFRESH_MARGIN_SECONDS = 300
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class CredentialError(Exception):
    """Raised when credentials are missing or a token response is unusable."""

    pass


def load_api_key(environ: Mapping[str, str] | None = None) -> str:
    """Load the IBM Cloud API key.

    ``IBMCLOUD_APIKEY`` wins; otherwise the file named by
    ``IBMCLOUD_APIKEY_FILE`` is read (mounted secret).

    Raises:
        CredentialError: If neither source yields a key.
    """
    env = os.environ if environ is None else environ

    key = env.get(API_KEY_ENV_VAR, "").strip()
    if key:
        return key

    key_file = env.get(API_KEY_FILE_ENV_VAR)
    if key_file:
        path = Path(key_file)
        try:
            key = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise CredentialError(f"Cannot read {API_KEY_FILE_ENV_VAR} {path}: {e}") from e
        if key:
            return key

    raise CredentialError(
        f"empty {API_KEY_ENV_VAR}, set the {API_KEY_ENV_VAR} or "
        f"{API_KEY_FILE_ENV_VAR} environment variable"
    )


def _access_token_from_response(body: Any) -> AccessToken:
    if not isinstance(body, dict) or not body.get("access_token"):
        raise CredentialError("token response did not include an access token")

    # IAM returns an absolute "expiration"; OIDC providers only "expires_in"
    expiration = body.get("expiration")
    if expiration is not None:
        expires_on = int(expiration)
    else:
        expires_on = int(time.time()) + int(body.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS))

    return AccessToken(body["access_token"], expires_on)


class CachedTokenCredential:
    """Base class handling token caching for a single token endpoint."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._token: AccessToken | None = None

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        with self._lock:
            if self._token is None or self._needs_refresh(self._token):
                self._token = self._request_token()
            return self._token

    def close(self) -> None:
        pass

    @staticmethod
    def _needs_refresh(token: AccessToken) -> bool:
        return token.expires_on - TOKEN_REFRESH_MARGIN_SECONDS <= time.time()

    def _request_token(self) -> AccessToken:
        raise NotImplementedError


class IAMCredential(CachedTokenCredential):
    """Exchanges an IBM Cloud API key for IAM bearer tokens."""

    def __init__(
        self,
        api_key: str,
        *,
        endpoint: str = IAM_ENDPOINT,
        client: RestClient | None = None,
    ) -> None:
        super().__init__()
        if not api_key:
            raise CredentialError("IBM Cloud API key is empty")
        self._api_key = api_key
        self._client = client or RestClient(endpoint, default_headers={"Accept": "application/json"})

    def __repr__(self) -> str:
        return "IAMCredential(api_key=***)"

    def close(self) -> None:
        self._client.close()

    def _request_token(self) -> AccessToken:
        logger.debug("Requesting IAM token")
        body = self._client.post_form(
            "/identity/token",
            {"grant_type": IAM_APIKEY_GRANT_TYPE, "apikey": self._api_key},
        )
        return _access_token_from_response(body)


class KeycloakPasswordCredential(CachedTokenCredential):
    """Resource-owner password grant against a Keycloak realm.

    ManageIQ sits behind Keycloak, so the mirror authenticates as a
    dedicated ManageIQ user.
    """

    def __init__(
        self,
        keycloak_url: str,
        realm: str,
        client_id: str,
        client_secret: str,
        username: str,
        password: str,
        *,
        client: RestClient | None = None,
    ) -> None:
        super().__init__()
        self._realm = realm
        self._form = {
            "grant_type": "password",
            "client_id": client_id,
            "client_secret": client_secret,
            "username": username,
            "password": password,
        }
        self._client = client or RestClient(keycloak_url, default_headers={"Accept": "application/json"})

    def __repr__(self) -> str:
        return f"KeycloakPasswordCredential(realm={self._realm!r}, username={self._form['username']!r})"

    def close(self) -> None:
        self._client.close()

    def _request_token(self) -> AccessToken:
        logger.debug("Requesting Keycloak token", extra={"realm": self._realm})
        body = self._client.post_form(
            f"/realms/{self._realm}/protocol/openid-connect/token", dict(self._form)
        )
        return _access_token_from_response(body)


def get_iam_credential(environ: Mapping[str, str] | None = None) -> IAMCredential:
    """Build the process-wide IAM credential from the environment.

    Raises:
        CredentialError: If no API key is configured.
    """
    env = os.environ if environ is None else environ
    api_key = load_api_key(env)
    source = "env" if env.get(API_KEY_ENV_VAR, "").strip() else "file"
    logger.info("Using IBM Cloud IAM API key credential", extra={"source": source})
    return IAMCredential(api_key)
