"""PostgREST endpoint helpers for the key/value entry table.

It is internal to pycloudsync and may change at any time.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from pycloudsync._constants import NOT_FOUND_CODES
from pycloudsync._transport import RestResponse, Transport
from pycloudsync.config import CloudSyncConfig
from pycloudsync.exceptions import CloudTransportError, RemoteApiError
from pycloudsync.keys import EntryKey, dumps

_OBJECT_ACCEPT = "application/vnd.pgrst.object+json"
_UPSERT_PREFER = "resolution=merge-duplicates,return=minimal"


class PostgrestError(BaseModel):
    """Error body returned by PostgREST."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    code: str = ""
    message: str = ""
    details: str | None = None
    hint: str | None = None


def _endpoint(config: CloudSyncConfig) -> str:
    return f"/{config.table}"


def _parse_error(response: RestResponse) -> PostgrestError | None:
    if not isinstance(response.body, dict):
        return None
    try:
        return PostgrestError.model_validate(response.body)
    except ValidationError:
        return None


def _raise_for_response(*, endpoint: str, response: RestResponse) -> None:
    error = _parse_error(response)
    if error is not None and error.code:
        raise RemoteApiError(
            f"{endpoint} failed: code={error.code} message={error.message}",
            code=error.code,
            endpoint=endpoint,
        )
    raise CloudTransportError(
        f"HTTP {response.status} from {endpoint}",
        status_code=response.status,
        endpoint=endpoint,
    )


def is_not_found(response: RestResponse) -> bool:
    """Whether *response* is PostgREST's way of saying the entry does not exist."""
    if response.status < 400:
        return False
    error = _parse_error(response)
    return error is not None and error.code in NOT_FOUND_CODES


async def fetch_value(
    *,
    config: CloudSyncConfig,
    transport: Transport,
    key: EntryKey,
) -> str | None:
    """Return the serialized value stored at *key*, or ``None`` if absent.

    Raises
    ------
    RemoteApiError
        PostgREST rejected the query with a code other than "not found".
    CloudTransportError
        Network failure, unexpected status or a malformed row.
    """
    endpoint = _endpoint(config)
    response = await transport.request(
        "GET",
        endpoint,
        params={"select": "value", "key": f"eq.{key.composite}"},
        headers={"accept": _OBJECT_ACCEPT},
    )
    if is_not_found(response):
        return None
    if response.status >= 300:
        _raise_for_response(endpoint=endpoint, response=response)

    row: Any = response.body
    if not isinstance(row, dict) or "value" not in row:
        raise CloudTransportError(
            f"{endpoint} returned an unexpected row shape",
            status_code=response.status,
            endpoint=endpoint,
        )
    value = row["value"]
    if value is None:
        return None
    if not isinstance(value, str):
        # jsonb columns come back decoded; normalise to text.
        return dumps(value)
    return value


async def upsert_value(
    *,
    config: CloudSyncConfig,
    transport: Transport,
    key: EntryKey,
    value: str,
) -> None:
    """Insert or overwrite the entry at *key* with the serialized *value*."""
    endpoint = _endpoint(config)
    response = await transport.request(
        "POST",
        endpoint,
        params={"on_conflict": "key"},
        headers={"prefer": _UPSERT_PREFER},
        json_body={"key": key.composite, "value": value, "user_id": key.identity_id},
    )
    if response.status >= 300:
        _raise_for_response(endpoint=endpoint, response=response)
