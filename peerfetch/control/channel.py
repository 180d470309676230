"""Control channel interface and websocket implementation."""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any
from typing import Protocol
from typing import runtime_checkable

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect
from websockets.protocol import State

from peerfetch.control.events import ControlEvent
from peerfetch.control.events import ControlMessage
from peerfetch.control.events import ControlMessageDecodeError
from peerfetch.control.events import decode_control_message
from peerfetch.control.events import encode_control_message
from peerfetch.exceptions import ControlAuthenticationError
from peerfetch.exceptions import ControlChannelClosedError
from peerfetch.exceptions import ControlConnectionError

logger = logging.getLogger(__name__)


@runtime_checkable
class ControlChannel(Protocol):
    """Bidirectional, named-event channel to the signaling service."""

    async def connect(self, token: str) -> None:
        """Open the channel and authenticate with `token`.

        Raises:
            ControlConnectionError: If the channel cannot be opened or the
                token is rejected.
        """
        ...

    async def send(self, event: str, data: Any = None) -> None:
        """Send a named event.

        Raises:
            ControlChannelClosedError: If the channel has been closed.
        """
        ...

    async def recv(self) -> ControlMessage:
        """Receive the next inbound event.

        Raises:
            ControlChannelClosedError: If the channel has been closed.
            ControlMessageDecodeError: If a frame cannot be decoded.
        """
        ...

    async def close(self) -> None:
        """Close the channel."""
        ...


class WebSocketControlChannel:
    """Control channel over a websocket connection.

    Each frame is a JSON object `#!json {"event": ..., "data": ...}`. After
    opening the socket, the client sends an `AUTH` frame with the token and
    waits for `AUTH_OK` or `AUTH_ERROR`.

    The initial [`connect()`][peerfetch.control.channel.WebSocketControlChannel.connect]
    fails immediately on any error. Once connected, a dropped socket is
    re-opened and re-authenticated with exponential backoff the next time
    the channel is used, unless `reconnect` is `False`.

    Example:
        ```python
        channel = WebSocketControlChannel('wss://signal.example.com')
        await channel.connect(token)
        await channel.send('REQUEST_PEER')
        message = await channel.recv()
        await channel.close()
        ```

    Args:
        address: Address of the signaling service. Must start with `ws://`
            or `wss://`.
        reconnect: Re-open the connection when it drops.
        ssl_context: Custom SSL context passed to
            [`websockets.connect()`][websockets.asyncio.client.connect]. A
            default TLS context is created for `wss://` addresses when not
            provided.
        timeout: Seconds to wait on opening the socket and on the
            authentication reply.
        verify_certificate: Verify the server's SSL certificate. Only used if
            `ssl_context` is `None` and connecting to a `wss://` address.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        *,
        reconnect: bool = True,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Signaling server address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        self._address = address
        self._reconnect = reconnect
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
        self._ssl_context = ssl_context

        self._initial_backoff_seconds = 1.0
        self._max_backoff_seconds = 60.0

        self._connect_lock = asyncio.Lock()
        self._token: str | None = None
        self._closed = False
        self._websocket: ClientConnection | None = None

    @property
    def address(self) -> str:
        """Address of the signaling service."""
        return self._address

    @property
    def connected(self) -> bool:
        """The websocket is currently open."""
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    async def _authenticate(self, token: str) -> ClientConnection:
        """Open a websocket connection and authenticate.

        Raises:
            ControlAuthenticationError: If the server rejects the token.
            ControlConnectionError: If the connection cannot be opened, is
                closed during the handshake, or the server replies with
                something unexpected.
        """
        try:
            websocket = await connect(
                self._address,
                open_timeout=self._timeout,
                ssl=self._ssl_context,
            )
        except (
            OSError,
            asyncio.TimeoutError,
            websockets.exceptions.InvalidHandshake,
            websockets.exceptions.InvalidURI,
        ) as e:
            raise ControlConnectionError(
                f'Failed to connect to signaling server at {self._address}: '
                f'{e}',
            ) from e

        try:
            await websocket.send(
                encode_control_message(
                    ControlMessage(ControlEvent.auth, {'token': token}),
                ),
            )
            reply = await asyncio.wait_for(websocket.recv(), self._timeout)
            if not isinstance(reply, str):
                raise ControlConnectionError(
                    'Received non-string frame from signaling server.',
                )
            message = decode_control_message(reply)
        except (
            asyncio.TimeoutError,
            ControlMessageDecodeError,
            websockets.exceptions.ConnectionClosed,
        ) as e:
            await websocket.close()
            raise ControlConnectionError(
                'Authentication handshake with signaling server at '
                f'{self._address} failed: {e!r}',
            ) from e
        except ControlConnectionError:
            await websocket.close()
            raise

        if message.event == ControlEvent.auth_ok:
            logger.info(
                f'Established control channel with signaling server at '
                f'{self._address}',
            )
            return websocket

        await websocket.close()
        if message.event == ControlEvent.auth_error:
            reason = (
                message.data.get('message')
                if isinstance(message.data, dict)
                else None
            )
            raise ControlAuthenticationError(
                f'Signaling server rejected the API key: '
                f'{reason or "unknown reason"}',
            )
        raise ControlConnectionError(
            'Signaling server replied to authentication with unexpected '
            f'event {message.event}.',
        )

    async def connect(self, token: str) -> None:
        """Open the channel and authenticate.

        Note:
            This method is a no-op if a connection is already open.

        Args:
            token: API key presented to the signaling server.

        Raises:
            ControlAuthenticationError: If the server rejects the token.
            ControlConnectionError: If the connection fails.
        """
        async with self._connect_lock:
            if self.connected:
                return
            self._websocket = await self._authenticate(token)
            self._token = token
            self._closed = False

    async def _ensure_connected(self) -> ClientConnection:
        """Return the open websocket, reconnecting if it has dropped.

        Raises:
            ControlChannelClosedError: If the channel was closed, never
                connected, or reconnection is disabled.
        """
        if self._closed or self._token is None:
            raise ControlChannelClosedError('The control channel is closed.')
        if self._websocket is not None and self.connected:
            return self._websocket
        if not self._reconnect:
            raise ControlChannelClosedError(
                'The control channel was closed by the signaling server.',
            )

        async with self._connect_lock:
            backoff_seconds = self._initial_backoff_seconds
            while not self.connected:
                if self._closed:
                    raise ControlChannelClosedError(
                        'The control channel is closed.',
                    )
                try:
                    self._websocket = await self._authenticate(self._token)
                except ControlAuthenticationError:
                    raise
                except ControlConnectionError as e:
                    logger.warning(
                        f'Reconnection to signaling server at '
                        f'{self._address} failed because of {e}. Retrying '
                        f'connection in {backoff_seconds} seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(
                        backoff_seconds * 2,
                        self._max_backoff_seconds,
                    )

        assert self._websocket is not None
        return self._websocket

    async def send(self, event: str, data: Any = None) -> None:
        """Send a named event.

        Args:
            event: Event name.
            data: JSON-compatible payload.

        Raises:
            ControlChannelClosedError: If the channel is closed.
        """
        message_str = encode_control_message(ControlMessage(event, data))
        while True:
            websocket = await self._ensure_connected()
            try:
                await websocket.send(message_str)
            except websockets.exceptions.ConnectionClosed:
                logger.debug(
                    f'Control channel dropped while sending {event}',
                )
                continue
            return

    async def recv(self) -> ControlMessage:
        """Receive the next inbound event.

        Returns:
            The next decoded message.

        Raises:
            ControlChannelClosedError: If the channel is closed.
            ControlMessageDecodeError: If the frame cannot be decoded.
        """
        while True:
            websocket = await self._ensure_connected()
            try:
                message_str = await websocket.recv()
            except websockets.exceptions.ConnectionClosed:
                if self._closed:
                    raise ControlChannelClosedError(
                        'The control channel is closed.',
                    ) from None
                logger.warning(
                    f'Control channel to {self._address} dropped',
                )
                continue

            if not isinstance(message_str, str):
                raise ControlMessageDecodeError(
                    'Received non-string frame from signaling server.',
                )
            return decode_control_message(message_str)

    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        self._closed = True
        if self._websocket is not None:
            await self._websocket.close()
