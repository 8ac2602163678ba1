from __future__ import annotations

import base64
from dataclasses import dataclass, field
import logging
from typing import Any
from urllib.parse import quote

import httpx

from supportai.core.config import get_settings
from supportai.core.errors import ConnectorError
from supportai.domain.types import ApiKeyAuth, BasicAuth, ConnectorEndpoint, DataConnector, OAuthAuth
from supportai.services.templating import resolve_path


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectorRequest:
    method: str
    url: str
    headers: dict[str, str]
    query: dict[str, str] = field(default_factory=dict)
    json_body: dict[str, str] | None = None


@dataclass(frozen=True)
class ConnectorResponse:
    status_code: int
    body: Any


def auth_headers(auth: Any) -> dict[str, str]:
    """Build the auth header from already-decrypted connector credentials."""
    if isinstance(auth, ApiKeyAuth) and auth.api_key:
        if auth.header_name.lower() == "authorization":
            return {"Authorization": f"Bearer {auth.api_key}"}
        return {auth.header_name: auth.api_key}
    if isinstance(auth, BasicAuth) and auth.username:
        token = base64.b64encode(f"{auth.username}:{auth.password}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}
    if isinstance(auth, OAuthAuth) and auth.access_token:
        return {"Authorization": f"Bearer {auth.access_token}"}
    return {}


def _substitute_path(path: str, params: dict[str, str]) -> tuple[str, dict[str, str]]:
    # Params named in the path are URL-encoded into it; the rest are returned.
    remaining: dict[str, str] = {}
    for key, value in params.items():
        encoded = quote(str(value), safe="")
        placeholders = ("{{" + key + "}}", "{" + key + "}")
        if any(placeholder in path for placeholder in placeholders):
            for placeholder in placeholders:
                path = path.replace(placeholder, encoded)
        else:
            remaining[key] = str(value)
    return path, remaining


def build_request(
    connector: DataConnector,
    endpoint: ConnectorEndpoint,
    params: dict[str, str],
    *,
    force_get: bool = False,
) -> ConnectorRequest:
    method = "GET" if force_get else endpoint.method.upper()
    path, remaining = _substitute_path(endpoint.path, params)
    url = f"{connector.base_url.rstrip('/')}/{path.lstrip('/')}"
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    headers.update(endpoint.headers)
    headers.update(auth_headers(connector.auth))
    if method == "GET" or method == "DELETE":
        return ConnectorRequest(method=method, url=url, headers=headers, query=remaining)
    return ConnectorRequest(method=method, url=url, headers=headers, json_body=remaining)


def apply_response_mapping(body: Any, mapping: dict[str, str]) -> dict[str, Any]:
    # mapping: variable name -> JSON path in the response body.
    mapped: dict[str, Any] = {}
    for variable, path in mapping.items():
        value = resolve_path(body, path)
        if value is not None:
            mapped[variable] = value
    return mapped


class ConnectorClient:
    """Executes connector endpoint calls over httpx with a hard timeout."""

    def __init__(
        self,
        *,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout_s = timeout_s if timeout_s is not None else get_settings().connector_timeout_s
        # Tests inject httpx.MockTransport here.
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)

    async def call(
        self,
        connector: DataConnector,
        endpoint_name: str,
        params: dict[str, str],
        *,
        force_get: bool = False,
    ) -> ConnectorResponse:
        if not connector.enabled:
            raise ConnectorError(f"connector {connector.id} is disabled")
        endpoint = connector.endpoint(endpoint_name)
        if endpoint is None:
            raise ConnectorError(f"endpoint {endpoint_name} not found on connector {connector.id}")
        request = build_request(connector, endpoint, params, force_get=force_get)
        try:
            async with self._client() as client:
                response = await client.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    params=request.query or None,
                    json=request.json_body,
                )
        except httpx.TimeoutException as exc:
            raise ConnectorError(f"connector {connector.id} timed out") from exc
        except httpx.HTTPError as exc:
            raise ConnectorError(f"connector {connector.id} request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ConnectorError(f"connector {connector.id} returned HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError:
            body = {}
        logger.info(
            "connector_called connector_id=%s endpoint=%s status=%s",
            connector.id,
            endpoint_name,
            response.status_code,
        )
        return ConnectorResponse(status_code=response.status_code, body=body)

    async def post_webhook(self, url: str, payload: dict[str, Any]) -> int:
        try:
            async with self._client() as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise ConnectorError(f"webhook {url} failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise ConnectorError(f"webhook {url} returned HTTP {response.status_code}")
        return response.status_code
