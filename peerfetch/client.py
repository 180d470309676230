"""Public client for fetching URLs through exit nodes."""
from __future__ import annotations

import logging
import sys
from types import TracebackType
from typing import Any

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from peerfetch.config import ClientConfig
from peerfetch.control.channel import ControlChannel
from peerfetch.control.channel import WebSocketControlChannel
from peerfetch.control.session import ControlSession
from peerfetch.exceptions import ConfigError
from peerfetch.exceptions import NotConnectedError
from peerfetch.exceptions import SecurityError
from peerfetch.security import Blocked
from peerfetch.security import classify
from peerfetch.session import PeerSession
from peerfetch.transport.protocols import TransportFactory
from peerfetch.transport.webrtc import create_webrtc_transport

logger = logging.getLogger(__name__)


class PeerFetchClient:
    """Fetch URLs through remote exit nodes.

    Each call to [`fetch()`][peerfetch.client.PeerFetchClient.fetch] is
    routed through one exit node matched by the signaling service. Many
    fetches may be in flight concurrently over the same client.

    Example:
        ```python
        from peerfetch import PeerFetchClient

        async with PeerFetchClient(api_key='sk_live_...') as client:
            body = await client.fetch('https://api.ipify.org?format=json')
        ```

    Args:
        config: Client configuration. If `None`, one is built from
            `options`.
        channel: Control channel to use instead of a
            [`WebSocketControlChannel`][peerfetch.control.channel.WebSocketControlChannel]
            to `config.server_url`.
        transport_factory: Factory for peer transports. Defaults to
            [`create_webrtc_transport()`][peerfetch.transport.webrtc.create_webrtc_transport].
        options: Fields of [`ClientConfig`][peerfetch.config.ClientConfig]
            used when `config` is `None`.

    Raises:
        ConfigError: If the configuration is invalid or has no API key.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        channel: ControlChannel | None = None,
        transport_factory: TransportFactory | None = None,
        **options: Any,
    ) -> None:
        if config is None:
            try:
                config = ClientConfig(**options)
            except ValueError as e:
                raise ConfigError(f'Invalid client configuration: {e}') from e
        elif options:
            raise ConfigError(
                'Options cannot be passed alongside a ClientConfig: '
                f'{", ".join(options)}.',
            )

        if not config.api_key:
            raise ConfigError('An API key is required.')

        if channel is None:
            channel = WebSocketControlChannel(
                config.server_url,
                reconnect=config.reconnect,
                timeout=config.connect_timeout,
                verify_certificate=config.verify_certificate,
            )
        if transport_factory is None:
            transport_factory = create_webrtc_transport

        self._config = config
        self._transport_factory = transport_factory
        self._control = ControlSession(channel, relay_config=config.relays)

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(server_url={self._config.server_url!r}'
            f', connected={self.connected})'
        )

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.disconnect()

    @property
    def config(self) -> ClientConfig:
        """Client configuration."""
        return self._config

    @property
    def control(self) -> ControlSession:
        """Session with the signaling service."""
        return self._control

    @property
    def connected(self) -> bool:
        """Client is connected to the signaling service."""
        return self._control.connected

    async def connect(self) -> None:
        """Connect to the signaling service.

        Raises:
            ControlConnectionError: If the connection or authentication
                fails. The call may be retried.
        """
        assert self._config.api_key is not None
        await self._control.connect(self._config.api_key)
        logger.info(
            f'Connected to signaling service at {self._config.server_url}',
        )

    async def fetch(self, url: str) -> Any:
        """Fetch a URL through an exit node.

        Args:
            url: URL for the exit node to fetch.

        Returns:
            Body returned by the exit node.

        Raises:
            NotConnectedError: If the client is not connected.
            SecurityError: If the URL is blocked by the security policy.
            NoPeersError: If no exit node is available.
            FetchTimeoutError: If matching, the handshake, or the response
                takes too long.
            TunnelError: If the peer tunnel fails.
            RemoteError: If the exit node fails to fetch the URL.
        """
        if not self.connected:
            raise NotConnectedError(
                'Client is not connected. Call connect() first.',
            )

        if not isinstance(url, str) or not url:
            raise ValueError('URL must be a non-empty string.')

        verdict = classify(url, self._config.security)
        if isinstance(verdict, Blocked):
            logger.warning(f'Blocked fetch of {url}: {verdict.rule}')
            raise SecurityError(verdict.reason)

        session = PeerSession(
            self._control,
            url,
            transport_factory=self._transport_factory,
            match_timeout=self._config.match_timeout,
            handshake_timeout=self._config.handshake_timeout,
            response_timeout=self._config.response_timeout,
        )
        return await session.run()

    async def disconnect(self) -> None:
        """Disconnect from the signaling service.

        Safe to call when not connected.
        """
        await self._control.disconnect()
