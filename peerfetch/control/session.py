"""Long-lived session with the signaling service."""
from __future__ import annotations

import asyncio
import enum
import logging
import sys
from types import TracebackType
from typing import Any
from typing import Callable

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from peerfetch.control.channel import ControlChannel
from peerfetch.control.events import ControlEvent
from peerfetch.control.events import ControlMessage
from peerfetch.control.events import ControlMessageDecodeError
from peerfetch.control.relays import DEFAULT_RELAY_CONFIG
from peerfetch.control.relays import RelayConfig
from peerfetch.exceptions import ControlChannelClosedError
from peerfetch.exceptions import ControlConnectionError
from peerfetch.exceptions import NotConnectedError
from peerfetch.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]

# Match results carry no request identifier so each one is claimed by the
# oldest outstanding subscriber.
_CLAIMED_EVENTS = frozenset(
    {ControlEvent.peer_found.value, ControlEvent.no_peers_available.value},
)

# Local notification delivered when the session stops receiving events.
# Frames from the signaling service with this name are ignored.
DISCONNECTED_EVENT = 'peerfetch.disconnected'


class ConnectionState(enum.Enum):
    """Connection state of a control session."""

    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'


def _event_name(event: str | ControlEvent) -> str:
    return event.value if isinstance(event, ControlEvent) else event


class Subscription:
    """Handle to a registered event handler.

    Disposing the subscription unregisters the handler. Disposal is
    idempotent and the subscription can be used as a context manager.

    Args:
        session: Session the handler is registered with.
        event: Event name.
        handler: Callable invoked with the event payload.
    """

    def __init__(
        self,
        session: ControlSession,
        event: str,
        handler: EventHandler,
    ) -> None:
        self._session = session
        self._event = event
        self._handler = handler
        self._active = True

    def __repr__(self) -> str:
        state = 'active' if self._active else 'disposed'
        return f'{self.__class__.__name__}(event={self._event!r}, {state})'

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        self.dispose()

    @property
    def active(self) -> bool:
        """Handler is still registered."""
        return self._active

    @property
    def event(self) -> str:
        """Name of the subscribed event."""
        return self._event

    def dispose(self) -> None:
        """Unregister the handler."""
        if self._active:
            self._active = False
            self._session._remove(self)

    def _deliver(self, data: Any) -> None:
        self._handler(data)


class ControlSession:
    """Session with the signaling service.

    The session owns a
    [`ControlChannel`][peerfetch.control.channel.ControlChannel], tracks the
    latest relay configuration, and dispatches inbound events to
    [`Subscription`][peerfetch.control.session.Subscription]s.

    `PEER_FOUND` and `NO_PEERS_AVAILABLE` are delivered to the oldest
    active subscriber only and that subscription is consumed. Every other
    event is delivered to all subscribers in registration order.
    Subscribers registered with
    [`on_disconnected()`][peerfetch.control.session.ControlSession.on_disconnected]
    are notified once when the session is disconnected or its channel fails.

    Example:
        ```python
        from peerfetch.control import ControlSession
        from peerfetch.control import WebSocketControlChannel

        session = ControlSession(WebSocketControlChannel(address))
        await session.connect(api_key)

        with session.on_peer_found(print):
            await session.request_peer()
            ...

        await session.disconnect()
        ```

    Args:
        channel: Unconnected control channel.
        relay_config: Bootstrap relay configuration used until the signaling
            service publishes one.
    """

    def __init__(
        self,
        channel: ControlChannel,
        *,
        relay_config: RelayConfig = DEFAULT_RELAY_CONFIG,
    ) -> None:
        self._channel = channel
        self._relay_config = relay_config
        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._dispatch_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.disconnect()

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def connected(self) -> bool:
        """Session is connected to the signaling service."""
        return self._state is ConnectionState.CONNECTED

    @property
    def relay_config(self) -> RelayConfig:
        """Latest relay configuration snapshot."""
        return self._relay_config

    async def connect(self, token: str) -> None:
        """Connect and authenticate with the signaling service.

        Args:
            token: API key presented during the handshake.

        Raises:
            ControlConnectionError: If the handshake fails.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            return

        self._state = ConnectionState.CONNECTING
        try:
            await self._channel.connect(token)
        except ControlConnectionError:
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as e:
            self._state = ConnectionState.DISCONNECTED
            raise ControlConnectionError(
                f'Failed to connect to the signaling service: {e}',
            ) from e

        self._state = ConnectionState.CONNECTED
        self._dispatch_task = spawn_guarded_background_task(
            self._dispatch_messages,
            name='control-session-dispatch',
        )

    async def disconnect(self) -> None:
        """Close the session. Safe to call when not connected."""
        if self._state is ConnectionState.DISCONNECTED and (
            self._dispatch_task is None
        ):
            return

        self._mark_disconnected('The control session was disconnected.')
        task, self._dispatch_task = self._dispatch_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._channel.close()
        logger.info('Control session disconnected')

    def subscribe(
        self,
        event: str | ControlEvent,
        handler: EventHandler,
    ) -> Subscription:
        """Register a handler for a named event.

        Args:
            event: Event name.
            handler: Callable invoked with the event payload. Handlers must
                not block; long running work should be scheduled as a task.

        Returns:
            Subscription whose disposal unregisters the handler.
        """
        name = _event_name(event)
        subscription = Subscription(self, name, handler)
        self._subscriptions.setdefault(name, []).append(subscription)
        return subscription

    def on_peer_found(self, handler: EventHandler) -> Subscription:
        """Subscribe to the next `PEER_FOUND` match result."""
        return self.subscribe(ControlEvent.peer_found, handler)

    def on_no_peers_available(self, handler: EventHandler) -> Subscription:
        """Subscribe to the next `NO_PEERS_AVAILABLE` match result."""
        return self.subscribe(ControlEvent.no_peers_available, handler)

    def on_signal_received(self, handler: EventHandler) -> Subscription:
        """Subscribe to relayed negotiation descriptors."""
        return self.subscribe(ControlEvent.signal_received, handler)

    def on_disconnected(self, handler: EventHandler) -> Subscription:
        """Subscribe to loss of the session.

        The handler is called once with a reason string when
        [`disconnect()`][peerfetch.control.session.ControlSession.disconnect]
        is called or the channel fails.
        """
        return self.subscribe(DISCONNECTED_EVENT, handler)

    def listener_count(self, event: str | ControlEvent) -> int:
        """Number of active subscriptions for an event."""
        return len(self._subscriptions.get(_event_name(event), []))

    async def request_peer(self) -> None:
        """Ask the signaling service for an available exit node.

        Raises:
            NotConnectedError: If the session is not connected.
        """
        await self._send(ControlEvent.request_peer)

    async def send_signal(self, target_id: str, signal: Any) -> None:
        """Relay a negotiation descriptor to a peer.

        Args:
            target_id: Identifier of the peer assigned by the signaling
                service.
            signal: Negotiation descriptor.

        Raises:
            NotConnectedError: If the session is not connected.
        """
        await self._send(
            ControlEvent.signal_message,
            {'targetId': target_id, 'signal': signal},
        )

    async def _send(self, event: ControlEvent, data: Any = None) -> None:
        if not self.connected:
            raise NotConnectedError(
                'The control session is not connected to the signaling '
                'service.',
            )
        try:
            await self._channel.send(event.value, data)
        except ControlChannelClosedError as e:
            raise NotConnectedError(str(e)) from e

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.event, [])
        try:
            subscriptions.remove(subscription)
        except ValueError:
            pass
        if not subscriptions:
            self._subscriptions.pop(subscription.event, None)

    def _update_relay_config(self, data: Any) -> None:
        relay_config = RelayConfig.from_payload(data)
        if relay_config is None:
            logger.warning(
                'Ignoring empty or invalid ICE_CONFIG update from signaling '
                'service',
            )
            return
        self._relay_config = relay_config
        logger.info(
            f'Relay configuration updated with {len(relay_config.servers)} '
            'server(s)',
        )

    def dispatch(self, message: ControlMessage) -> None:
        """Deliver an inbound message to subscribers.

        Args:
            message: Message received from the channel.
        """
        event = message.event
        if event == DISCONNECTED_EVENT:
            logger.warning(f'Ignoring reserved {event} event from the wire')
            return
        if event == ControlEvent.ice_config:
            self._update_relay_config(message.data)

        subscriptions = list(self._subscriptions.get(event, []))
        if event in _CLAIMED_EVENTS:
            subscriptions = subscriptions[:1]
            for subscription in subscriptions:
                subscription.dispose()

        if not subscriptions and event != ControlEvent.ice_config:
            logger.debug(f'No subscribers for {event} event')

        self._deliver(event, subscriptions, message.data)

    def _deliver(
        self,
        event: str,
        subscriptions: list[Subscription],
        data: Any,
    ) -> None:
        for subscription in subscriptions:
            try:
                subscription._deliver(data)
            except Exception:
                logger.exception(
                    f'Subscriber for {event} event raised an exception',
                )

    def _mark_disconnected(self, reason: str) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            return
        self._state = ConnectionState.DISCONNECTED
        subscriptions = list(self._subscriptions.get(DISCONNECTED_EVENT, []))
        self._deliver(DISCONNECTED_EVENT, subscriptions, reason)

    async def _dispatch_messages(self) -> None:
        logger.info('Listening for events from signaling service')
        while True:
            try:
                message = await self._channel.recv()
            except ControlChannelClosedError:
                break
            except ControlConnectionError as e:
                logger.error(f'Control channel failed: {e}')
                break
            except ControlMessageDecodeError as e:
                logger.error(
                    f'Error decoding message from signaling service: {e} '
                    '...skipping message',
                )
                continue
            logger.debug(f'Received {message.event} event')
            self.dispatch(message)

        self._mark_disconnected(
            'The control channel to the signaling service closed.',
        )
        logger.info('Stopped listening for events from signaling service')
