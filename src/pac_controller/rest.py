"""Shared HTTP plumbing for the IBM Cloud and ManageIQ gateways.

Every gateway is a thin wrapper over an azure-core ``PipelineClient`` with
the same policy stack: static headers, user agent, retries for idempotent
requests, bearer token auth and HTTP logging. Status handling is uniform:
404 becomes ``ResourceNotFoundError`` (the not-found sentinel the
reconcilers branch on), 401 becomes ``ClientAuthenticationError``, and any
other non-success status an ``HttpResponseError``.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    map_error,
)
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    HttpLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

logger = logging.getLogger(__name__)

USER_AGENT = "pac-controller/0.1"

# Connection and read deadline for a single HTTP round-trip
DEFAULT_HTTP_TIMEOUT_SECONDS = 30

DEFAULT_RETRY_TOTAL = 3
DEFAULT_RETRY_BACKOFF_FACTOR = 0.8

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE", "OPTIONS"})

ERROR_MAP: dict[int, type[HttpResponseError]] = {
    401: ClientAuthenticationError,
    404: ResourceNotFoundError,
    409: ResourceExistsError,
}


class RestClient:
    """JSON-over-HTTPS client bound to one service endpoint.

    Args:
        base_url: Service root, e.g. ``https://us-south.iaas.cloud.ibm.com/v1``.
        credential: Token source for the Authorization header, or None.
        scopes: Scopes passed to ``credential.get_token``.
        default_params: Query parameters added to every request.
        default_headers: Headers added to every request.
        timeout_seconds: Connection and read timeout per request.
    """

    def __init__(
        self,
        base_url: str,
        credential: TokenCredential | None = None,
        *,
        scopes: tuple[str, ...] = (),
        default_params: dict[str, str] | None = None,
        default_headers: dict[str, str] | None = None,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_params = dict(default_params or {})
        self._timeout = timeout_seconds

        policies: list[Any] = [
            HeadersPolicy(dict(default_headers or {})),
            UserAgentPolicy(user_agent=USER_AGENT),
            RetryPolicy(
                retry_total=DEFAULT_RETRY_TOTAL,
                retry_backoff_factor=DEFAULT_RETRY_BACKOFF_FACTOR,
            ),
        ]
        if credential is not None:
            policies.append(BearerTokenCredentialPolicy(credential, *scopes))
        policies.append(HttpLoggingPolicy())

        self._client = PipelineClient(self._base_url, policies=policies)

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._client.close()

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self._send("GET", path, params=params)

    def post(self, path: str, body: dict[str, Any], params: dict[str, Any] | None = None) -> Any:
        return self._send("POST", path, params=params, json=body)

    def post_form(self, path: str, form: dict[str, str]) -> Any:
        return self._send("POST", path, data=form)

    def delete(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self._send("DELETE", path, params=params)

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        data: dict[str, str] | None = None,
    ) -> Any:
        """Send one request and decode the JSON body.

        POST is not idempotent, so retries are disabled for it: a retried
        create could produce a duplicate instance, pool or listener.

        Raises:
            ResourceNotFoundError: On 404.
            ClientAuthenticationError: On 401.
            ResourceExistsError: On 409.
            HttpResponseError: On any other non-2xx status.
            ServiceRequestError: If the request could not be sent.
            ServiceResponseError: If no valid response arrived in time.
        """
        query = dict(self._default_params)
        if params:
            query.update({k: v for k, v in params.items() if v is not None})

        request = HttpRequest(
            method,
            self._client.format_url(path),
            params=query or None,
            json=json,
            data=data,
        )

        options: dict[str, Any] = {
            "connection_timeout": self._timeout,
            "read_timeout": self._timeout,
        }
        if method not in IDEMPOTENT_METHODS:
            options["retry_total"] = 0

        response = self._client.send_request(request, **options)

        if not 200 <= response.status_code < 300:
            logger.debug(
                "Request failed",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            map_error(status_code=response.status_code, response=response, error_map=ERROR_MAP)
            raise HttpResponseError(response=response)

        if response.status_code == 204:
            return None
        body = response.text()
        if not body:
            return None
        return response.json()
