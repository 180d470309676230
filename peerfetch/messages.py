"""Payloads exchanged with the exit node over the peer tunnel.

The tunnel carries exactly one request and one response, each a JSON
object:

* request: `#!json {"url": "https://..."}`
* response: `#!json {"status": 200, "body": ..., "error": "..."}`
"""
from __future__ import annotations

import dataclasses
import json
from typing import Any


@dataclasses.dataclass
class FetchRequest:
    """Request sent to the exit node.

    Attributes:
        url: URL the exit node should fetch.
    """

    url: str


@dataclasses.dataclass
class FetchResponse:
    """Response returned by the exit node.

    Attributes:
        status: Status code of the fetch performed by the exit node.
        body: Fetched content when the fetch succeeded.
        error: Error message when the fetch failed.
    """

    status: int
    body: Any = None
    error: str | None = None


class FetchMessageError(Exception):
    """Base exception type for tunnel messages."""

    pass


class FetchMessageDecodeError(FetchMessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class FetchMessageEncodeError(FetchMessageError):
    """Exception raised when a message cannot be encoded."""

    pass


def _load_object(message: bytes | str) -> dict[str, Any]:
    if isinstance(message, bytes):
        try:
            message = message.decode()
        except UnicodeDecodeError as e:
            raise FetchMessageDecodeError('Message is not UTF-8.') from e

    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise FetchMessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise FetchMessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )
    return data


def _dump_object(data: dict[str, Any]) -> str:
    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise FetchMessageEncodeError('Error encoding message.') from e


def encode_fetch_request(request: FetchRequest) -> str:
    """Encode a request as a JSON string."""
    return _dump_object(dataclasses.asdict(request))


def decode_fetch_request(message: bytes | str) -> FetchRequest:
    """Decode a request received over the tunnel.

    Raises:
        FetchMessageDecodeError: If the message is not a JSON object with a
            string `url`.
    """
    data = _load_object(message)
    url = data.get('url')
    if not isinstance(url, str):
        raise FetchMessageDecodeError('Request does not contain a url.')
    return FetchRequest(url=url)


def encode_fetch_response(response: FetchResponse) -> str:
    """Encode a response as a JSON string.

    Optional fields that are `None` are omitted.
    """
    data: dict[str, Any] = {'status': response.status}
    if response.body is not None:
        data['body'] = response.body
    if response.error is not None:
        data['error'] = response.error
    return _dump_object(data)


def decode_fetch_response(message: bytes | str) -> FetchResponse:
    """Decode a response received over the tunnel.

    Args:
        message: Raw text or bytes received from the data channel.

    Returns:
        Parsed response.

    Raises:
        FetchMessageDecodeError: If the message is not a JSON object with an
            integer `status`.
    """
    data = _load_object(message)

    status = data.get('status')
    if isinstance(status, bool) or not isinstance(status, int):
        raise FetchMessageDecodeError(
            'Response does not contain an integer status.',
        )

    error = data.get('error')
    if error is not None and not isinstance(error, str):
        error = str(error)

    return FetchResponse(status=status, body=data.get('body'), error=error)
