"""Named events and frame encoding for the control channel."""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any


class ControlEvent(str, enum.Enum):
    """Events exchanged with the signaling service."""

    auth = 'AUTH'
    """Outbound authentication handshake carrying `{token}`."""
    auth_ok = 'AUTH_OK'
    """Inbound handshake acknowledgement."""
    auth_error = 'AUTH_ERROR'
    """Inbound handshake rejection carrying `{message}`."""
    request_peer = 'REQUEST_PEER'
    """Outbound request for an available exit node."""
    peer_found = 'PEER_FOUND'
    """Inbound match result carrying `{targetId}`."""
    no_peers_available = 'NO_PEERS_AVAILABLE'
    """Inbound result when no exit node is available."""
    signal_message = 'SIGNAL_MESSAGE'
    """Outbound negotiation descriptor `{targetId, signal}`."""
    signal_received = 'SIGNAL_RECEIVED'
    """Inbound negotiation descriptor `{senderId, signal}`."""
    ice_config = 'ICE_CONFIG'
    """Inbound relay server configuration `{iceServers}`."""


@dataclasses.dataclass
class ControlMessage:
    """A single frame on the control channel.

    Attributes:
        event: Event name. Usually one of
            [`ControlEvent`][peerfetch.control.events.ControlEvent] but
            unknown names are preserved.
        data: Optional JSON-compatible payload.
    """

    event: str
    data: Any = None


class ControlMessageError(Exception):
    """Base exception type for control channel frames."""

    pass


class ControlMessageDecodeError(ControlMessageError):
    """Exception raised when a frame cannot be decoded."""

    pass


class ControlMessageEncodeError(ControlMessageError):
    """Exception raised when a frame cannot be encoded."""

    pass


def decode_control_message(message: str) -> ControlMessage:
    """Decode a JSON frame into a control message.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        ControlMessageDecodeError: If the frame is not a JSON object with a
            string `event` key.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise ControlMessageDecodeError(
            'Failed to load string as JSON.',
        ) from e

    if not isinstance(data, dict):
        raise ControlMessageDecodeError('Frame is not a JSON object.')

    try:
        event = data['event']
    except KeyError as e:
        raise ControlMessageDecodeError(
            'Frame does not contain an event key.',
        ) from e

    if not isinstance(event, str):
        raise ControlMessageDecodeError(
            f'Frame event must be a string but got {type(event).__name__}.',
        )

    return ControlMessage(event=event, data=data.get('data'))


def encode_control_message(message: ControlMessage) -> str:
    """Encode a control message as a JSON frame.

    Raises:
        ControlMessageEncodeError: If the payload is not JSON serializable.
    """
    if not isinstance(message, ControlMessage):
        raise ControlMessageEncodeError(
            f'Message is not an instance of {ControlMessage.__name__}. '
            f'Got {type(message).__name__}.',
        )

    event = (
        message.event.value
        if isinstance(message.event, ControlEvent)
        else message.event
    )
    try:
        return json.dumps({'event': event, 'data': message.data})
    except (TypeError, ValueError) as e:
        raise ControlMessageEncodeError('Error encoding message.') from e
