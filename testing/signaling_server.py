"""Tools for running a local signaling server for unit tests."""
from __future__ import annotations

from typing import Any
from typing import AsyncGenerator
from typing import NamedTuple

import pytest_asyncio
import websockets.exceptions
from websockets.asyncio.server import Server
from websockets.asyncio.server import serve
from websockets.asyncio.server import ServerConnection

from peerfetch.control.events import ControlEvent
from peerfetch.control.events import ControlMessage
from peerfetch.control.events import decode_control_message
from peerfetch.control.events import encode_control_message
from testing.utils import open_port

VALID_TOKEN = 'sk_test_valid'


class SignalingServer:
    """Minimal signaling server speaking the control channel protocol.

    Clients must authenticate with one of `tokens`. `REQUEST_PEER` is
    answered with `PEER_FOUND` for the first of `exit_nodes` or
    `NO_PEERS_AVAILABLE` when there are none. Every other event is only
    recorded in `received`.

    Args:
        tokens: Accepted API keys.
        ice_config: Optional `ICE_CONFIG` payload sent after authentication.
    """

    def __init__(
        self,
        tokens: set[str] | None = None,
        ice_config: dict[str, Any] | None = None,
    ) -> None:
        self.tokens = {VALID_TOKEN} if tokens is None else tokens
        self.ice_config = ice_config
        self.exit_nodes: list[str] = []
        self.received: list[ControlMessage] = []
        self.clients: list[ServerConnection] = []
        self.auth_count = 0

    async def send(
        self,
        websocket: ServerConnection,
        event: ControlEvent,
        data: Any = None,
    ) -> None:
        message = ControlMessage(event, data)
        await websocket.send(encode_control_message(message))

    async def broadcast(self, event: ControlEvent, data: Any = None) -> None:
        """Send an event to every authenticated client."""
        for websocket in list(self.clients):
            try:
                await self.send(websocket, event, data)
            except websockets.exceptions.ConnectionClosed:
                pass

    async def handler(self, websocket: ServerConnection) -> None:
        try:
            message = decode_control_message(await websocket.recv())
            token = (
                message.data.get('token')
                if isinstance(message.data, dict)
                else None
            )
            if message.event != ControlEvent.auth or token not in self.tokens:
                await self.send(
                    websocket,
                    ControlEvent.auth_error,
                    {'message': 'Invalid API key'},
                )
                return

            self.auth_count += 1
            await self.send(websocket, ControlEvent.auth_ok)
            if self.ice_config is not None:
                await self.send(
                    websocket,
                    ControlEvent.ice_config,
                    self.ice_config,
                )
            self.clients.append(websocket)

            async for frame in websocket:
                assert isinstance(frame, str)
                message = decode_control_message(frame)
                self.received.append(message)
                if message.event == ControlEvent.request_peer:
                    if self.exit_nodes:
                        await self.send(
                            websocket,
                            ControlEvent.peer_found,
                            {'targetId': self.exit_nodes[0]},
                        )
                    else:
                        await self.send(
                            websocket,
                            ControlEvent.no_peers_available,
                        )
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            if websocket in self.clients:
                self.clients.remove(websocket)


class SignalingServerInfo(NamedTuple):
    """NamedTuple returned by signaling_server fixture."""

    signaling_server: SignalingServer
    websocket_server: Server
    host: str
    port: int
    address: str


@pytest_asyncio.fixture()
async def signaling_server() -> AsyncGenerator[SignalingServerInfo, None]:
    """Fixture that runs a signaling server locally.

    Yields:
        `SignalingServerInfo <.SignalingServerInfo>`
    """
    host = 'localhost'
    port = open_port()
    address = f'ws://{host}:{port}'

    signaling_server = SignalingServer()
    async with serve(signaling_server.handler, host, port) as websocket_server:
        yield SignalingServerInfo(
            signaling_server=signaling_server,
            websocket_server=websocket_server,
            host=host,
            port=port,
            address=address,
        )
