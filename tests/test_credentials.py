"""Tests for IAM and Keycloak token credentials."""

import time
from pathlib import Path
from typing import Any

import pytest

from pac_controller.credentials import (
    IAM_APIKEY_GRANT_TYPE,
    CredentialError,
    IAMCredential,
    KeycloakPasswordCredential,
    get_iam_credential,
    load_api_key,
)


class TokenEndpoint:
    """Records form posts and answers with queued token bodies."""

    def __init__(self, *bodies: Any) -> None:
        self.bodies = list(bodies)
        self.posts: list[tuple[str, dict[str, str]]] = []
        self.closed = False

    def post_form(self, path: str, form: dict[str, str]) -> Any:
        self.posts.append((path, form))
        return self.bodies.pop(0)

    def close(self) -> None:
        self.closed = True


def token_body(token: str, lifetime: int = 3600) -> dict[str, Any]:
    return {"access_token": token, "expiration": int(time.time()) + lifetime}


class TestLoadApiKey:
    """Tests for API key discovery."""

    def test_from_environment(self) -> None:
        """Test that IBMCLOUD_APIKEY is used when set."""
        assert load_api_key({"IBMCLOUD_APIKEY": " key-123 "}) == "key-123"

    def test_from_file(self, tmp_path: Path) -> None:
        """Test that the key is read from the mounted file."""
        key_file = tmp_path / "apikey"
        key_file.write_text("file-key\n")

        assert load_api_key({"IBMCLOUD_APIKEY_FILE": str(key_file)}) == "file-key"

    def test_missing(self) -> None:
        """Test that no source raises CredentialError."""
        with pytest.raises(CredentialError) as exc_info:
            load_api_key({})

        assert "empty IBMCLOUD_APIKEY" in str(exc_info.value)

    def test_unreadable_file(self, tmp_path: Path) -> None:
        """Test that a missing key file raises CredentialError."""
        with pytest.raises(CredentialError):
            load_api_key({"IBMCLOUD_APIKEY_FILE": str(tmp_path / "missing")})


class TestIAMCredential:
    """Tests for IAM token exchange and caching."""

    def test_exchanges_api_key(self) -> None:
        """Test the token request form."""
        endpoint = TokenEndpoint(token_body("tok-1"))
        credential = IAMCredential("key-123", client=endpoint)  # type: ignore[arg-type]

        token = credential.get_token()

        assert token.token == "tok-1"
        path, form = endpoint.posts[0]
        assert path == "/identity/token"
        assert form == {"grant_type": IAM_APIKEY_GRANT_TYPE, "apikey": "key-123"}

    def test_caches_until_near_expiry(self) -> None:
        """Test that a valid token is reused and a nearly expired one refreshed."""
        endpoint = TokenEndpoint(token_body("tok-1"), token_body("tok-2"))
        credential = IAMCredential("key-123", client=endpoint)  # type: ignore[arg-type]

        assert credential.get_token().token == "tok-1"
        assert credential.get_token().token == "tok-1"
        assert len(endpoint.posts) == 1

        endpoint.bodies.insert(0, token_body("tok-short", lifetime=10))
        credential._token = None
        assert credential.get_token().token == "tok-short"
        # Inside the refresh margin
        assert credential.get_token().token == "tok-2"

    def test_missing_access_token(self) -> None:
        """Test that a response without a token raises CredentialError."""
        endpoint = TokenEndpoint({"errorMessage": "bad key"})
        credential = IAMCredential("key-123", client=endpoint)  # type: ignore[arg-type]

        with pytest.raises(CredentialError):
            credential.get_token()

    def test_repr_hides_key(self) -> None:
        """Test that the API key never appears in the repr."""
        credential = IAMCredential("key-123", client=TokenEndpoint())  # type: ignore[arg-type]

        assert "key-123" not in repr(credential)

    def test_empty_key_rejected(self) -> None:
        """Test that an empty key raises immediately."""
        with pytest.raises(CredentialError):
            IAMCredential("", client=TokenEndpoint())  # type: ignore[arg-type]

    def test_get_iam_credential_from_env(self) -> None:
        """Test building the process credential from an environment mapping."""
        credential = get_iam_credential({"IBMCLOUD_APIKEY": "key-123"})

        assert isinstance(credential, IAMCredential)
        credential.close()


class TestKeycloakPasswordCredential:
    """Tests for the Keycloak password grant."""

    def test_password_grant(self) -> None:
        """Test the realm token path and form, with relative expiry."""
        endpoint = TokenEndpoint({"access_token": "kc-1", "expires_in": 300})
        credential = KeycloakPasswordCredential(
            "https://sso.example.com",
            "pac",
            "miq",
            "client-secret",
            "pac-user",
            "pw",
            client=endpoint,  # type: ignore[arg-type]
        )

        token = credential.get_token()

        assert token.token == "kc-1"
        assert token.expires_on > time.time()
        path, form = endpoint.posts[0]
        assert path == "/realms/pac/protocol/openid-connect/token"
        assert form["grant_type"] == "password"
        assert form["username"] == "pac-user"
        assert "pw" not in repr(credential)
