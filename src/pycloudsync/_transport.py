"""HTTP transport for the PostgREST endpoint of the remote store."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from pycloudsync._constants import USER_AGENT
from pycloudsync._redact import redact_for_log
from pycloudsync.config import CloudSyncConfig
from pycloudsync.exceptions import CloudTransportError

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RestResponse:
    """Status code and decoded JSON body (``None`` for empty bodies)."""

    status: int
    body: Any


class Transport(Protocol):
    """Structural transport interface used by endpoint modules.

    Endpoint modules only depend on this protocol so tests can pass
    simple doubles while production uses :class:`RestTransport`.
    """

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        json_body: Any = None,
    ) -> RestResponse:
        ...


class RestTransport:
    """aiohttp transport that adds Supabase auth headers and decodes JSON."""

    def __init__(self, config: CloudSyncConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._timeout = (
            aiohttp.ClientTimeout(total=config.request_timeout) if config.request_timeout is not None else None
        )

    def _base_headers(self) -> dict[str, str]:
        return {
            "apikey": self._config.supabase_key,
            "authorization": f"Bearer {self._config.bearer_token}",
            "user-agent": USER_AGENT,
            "accept-profile": self._config.schema,
            "content-profile": self._config.schema,
        }

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        json_body: Any = None,
    ) -> RestResponse:
        """Send one request and return its status and decoded body.

        Non-2xx statuses are returned, not raised: PostgREST reports
        "no rows" as an error body that callers must inspect. Only
        network failures and undecodable bodies raise.
        """
        merged = self._base_headers()
        if headers:
            merged.update(headers)

        url = f"{self._config.rest_url}{endpoint}"
        data = json.dumps(json_body, separators=(",", ":")) if json_body is not None else None
        if data is not None:
            merged["content-type"] = "application/json"

        _logger.debug(
            "%s %s params=%s headers=%s",
            method,
            url,
            dict(params or {}),
            redact_for_log(merged),
        )

        kwargs: dict[str, Any] = {"params": dict(params or {}), "headers": merged, "data": data}
        if self._timeout is not None:
            kwargs["timeout"] = self._timeout

        try:
            async with self._http.request(method, url, **kwargs) as resp:
                text = await resp.text()
                status = resp.status
        except aiohttp.ClientError as exc:
            raise CloudTransportError(
                f"Request to {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc
        except TimeoutError as exc:
            raise CloudTransportError(
                f"Request to {endpoint} timed out",
                endpoint=endpoint,
            ) from exc

        _logger.debug("%s %s -> HTTP %s", method, url, status)

        if not text.strip():
            return RestResponse(status=status, body=None)

        try:
            body = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CloudTransportError(
                f"Invalid JSON from {endpoint} (HTTP {status}): {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            ) from exc

        return RestResponse(status=status, body=body)
