"""Per-request state machine that tunnels a single fetch through a peer."""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any
from typing import Awaitable

from peerfetch.control.session import ControlSession
from peerfetch.control.session import Subscription
from peerfetch.exceptions import FetchTimeoutError
from peerfetch.exceptions import NoPeersError
from peerfetch.exceptions import NotConnectedError
from peerfetch.exceptions import PeerFetchError
from peerfetch.exceptions import RemoteError
from peerfetch.exceptions import TunnelError
from peerfetch.messages import decode_fetch_response
from peerfetch.messages import encode_fetch_request
from peerfetch.messages import FetchMessageDecodeError
from peerfetch.messages import FetchRequest
from peerfetch.transport.protocols import PeerTransport
from peerfetch.transport.protocols import TransportFactory
from peerfetch.transport.signals import is_usable_signal

logger = logging.getLogger(__name__)

MATCH_TIMEOUT = 45.0
HANDSHAKE_TIMEOUT = 40.0
RESPONSE_TIMEOUT = 60.0
GENERIC_REMOTE_ERROR = 'Fetch Failed'


class SessionState(enum.Enum):
    """States of a [`PeerSession`][peerfetch.session.PeerSession]."""

    IDLE = 'idle'
    AWAITING_PEER = 'awaiting-peer'
    SIGNALING = 'signaling'
    TUNNEL_OPEN = 'tunnel-open'
    RESOLVED = 'resolved'
    REJECTED = 'rejected'


SETTLED_STATES = frozenset({SessionState.RESOLVED, SessionState.REJECTED})


class _Event(enum.Enum):
    PEER_FOUND = 'peer-found'
    NO_PEERS = 'no-peers'
    REMOTE_SIGNAL = 'remote-signal'
    LOCAL_SIGNAL = 'local-signal'
    OPEN = 'open'
    MESSAGE = 'message'
    ERROR = 'error'
    DISCONNECTED = 'disconnected'
    TIMEOUT = 'timeout'


class PeerSession:
    """Fetch a single URL through an exit node.

    The session is an explicit state machine:

    ```
    IDLE -> AWAITING_PEER -> SIGNALING -> TUNNEL_OPEN -> RESOLVED
                 |               |              |
                 +---------------+--------------+------> REJECTED
    ```

    Control channel subscriptions and transport callbacks only post events
    to a queue which [`run()`][peerfetch.session.PeerSession.run] consumes
    one at a time, so the first event to arrive decides each transition and
    events posted after settlement are dropped. Each phase has a single
    deadline which also bounds the control channel sends and transport calls
    awaited during that phase. Losing the control session rejects the
    session immediately. Subscriptions are disposed and the transport is
    closed exactly once, on every terminal path.

    Args:
        control: Connected control session.
        url: Target URL, already checked against the security policy.
        transport_factory: Creates the transport once a peer is matched.
        match_timeout: Seconds to wait for a match result.
        handshake_timeout: Seconds to wait for the tunnel to open once a
            peer is matched.
        response_timeout: Seconds to wait for the exit node's response once
            the tunnel is open. `None` waits indefinitely.
    """

    def __init__(
        self,
        control: ControlSession,
        url: str,
        *,
        transport_factory: TransportFactory,
        match_timeout: float = MATCH_TIMEOUT,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        response_timeout: float | None = RESPONSE_TIMEOUT,
    ) -> None:
        self._control = control
        self._url = url
        self._transport_factory = transport_factory
        self._match_timeout = match_timeout
        self._handshake_timeout = handshake_timeout
        self._response_timeout = response_timeout

        # Later ICE_CONFIG updates do not affect an in-flight session
        self._relay_config = control.relay_config

        self._state = SessionState.IDLE
        self._events: asyncio.Queue[tuple[_Event, Any]] = asyncio.Queue()
        self._deadline: float | None = None
        self._match_subscriptions: list[Subscription] = []
        self._signal_subscription: Subscription | None = None
        self._disconnect_subscription: Subscription | None = None
        self._transport: PeerTransport | None = None
        self._target_id: str | None = None
        self._cleaned_up = False

        self._result: Any = None
        self._error: BaseException | None = None

    @property
    def _log_prefix(self) -> str:
        target = 'pending' if self._target_id is None else self._target_id
        return f'{self.__class__.__name__}[{target} < {self._url}]'

    @property
    def state(self) -> SessionState:
        """Current state."""
        return self._state

    @property
    def settled(self) -> bool:
        """Session has resolved or rejected."""
        return self._state in SETTLED_STATES

    @property
    def target_id(self) -> str | None:
        """Identifier of the matched peer, if any."""
        return self._target_id

    @property
    def url(self) -> str:
        """Target URL."""
        return self._url

    async def run(self) -> Any:
        """Run the session to completion.

        Returns:
            Body returned by the exit node.

        Raises:
            NoPeersError: If no exit node is available.
            FetchTimeoutError: If a phase deadline elapses.
            TunnelError: If the tunnel fails.
            RemoteError: If the exit node reports a failed fetch.
            NotConnectedError: If the control session disconnects.
            RuntimeError: If the session has already been run.
        """
        if self._state is not SessionState.IDLE:
            raise RuntimeError(f'{self._log_prefix}: session already ran.')

        try:
            self._disconnect_subscription = self._control.on_disconnected(
                self._on_disconnected,
            )
            self._match_subscriptions = [
                self._control.on_peer_found(self._on_peer_found),
                self._control.on_no_peers_available(self._on_no_peers),
            ]
            self._transition(SessionState.AWAITING_PEER, self._match_timeout)
            if await self._step(self._control.request_peer()):
                logger.info(f'{self._log_prefix}: requested exit node')

            while not self.settled:
                event, payload = await self._next_event()
                await self._handle(event, payload)
        except BaseException as e:
            if not self.settled:
                self._reject(e)
            raise
        finally:
            await self._cleanup()

        if self._state is SessionState.RESOLVED:
            return self._result
        assert self._error is not None
        raise self._error

    def _transition(
        self,
        state: SessionState,
        timeout: float | None = None,
    ) -> None:
        logger.debug(
            f'{self._log_prefix}: {self._state.value} -> {state.value}',
        )
        self._state = state
        self._deadline = (
            None
            if timeout is None
            else asyncio.get_running_loop().time() + timeout
        )

    def _resolve(self, result: Any) -> None:
        if self.settled:
            return
        self._result = result
        self._transition(SessionState.RESOLVED)
        logger.info(f'{self._log_prefix}: fetch completed')

    def _reject(self, error: BaseException) -> None:
        if self.settled:
            return
        self._error = error
        self._transition(SessionState.REJECTED)
        if isinstance(error, PeerFetchError):
            logger.warning(f'{self._log_prefix}: fetch failed: {error}')

    def _post(self, event: _Event, payload: Any = None) -> None:
        # Errors raised while cleanup closes the transport arrive after
        # settlement and are dropped here.
        if self.settled or self._cleaned_up:
            logger.debug(
                f'{self._log_prefix}: dropping {event.value} event after '
                'session settled',
            )
            return
        self._events.put_nowait((event, payload))

    async def _next_event(self) -> tuple[_Event, Any]:
        if self._deadline is None:
            return await self._events.get()
        remaining = self._deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(
                self._events.get(),
                max(0.0, remaining),
            )
        except asyncio.TimeoutError:
            return _Event.TIMEOUT, None

    async def _step(self, awaitable: Awaitable[Any]) -> bool:
        """Await a step of the current phase within the phase deadline.

        Returns:
            `False` if the deadline elapsed and the session was rejected.
        """
        if self._deadline is None:
            await awaitable
            return True
        remaining = self._deadline - asyncio.get_running_loop().time()
        try:
            await asyncio.wait_for(awaitable, max(0.0, remaining))
        except asyncio.TimeoutError:
            self._reject(self._timeout_error())
            return False
        return True

    def _timeout_error(self) -> FetchTimeoutError:
        if self._state is SessionState.AWAITING_PEER:
            message = (
                f'Timed out after {self._match_timeout}s waiting for an exit '
                'node.'
            )
        elif self._state is SessionState.SIGNALING:
            message = (
                'Connection handshake timed out after '
                f'{self._handshake_timeout}s.'
            )
        else:
            message = (
                f'Exit node did not respond within {self._response_timeout}s.'
            )
        return FetchTimeoutError(message)

    def _release_match_subscriptions(self) -> None:
        for subscription in self._match_subscriptions:
            subscription.dispose()
        self._match_subscriptions = []

    def _on_peer_found(self, data: Any) -> None:
        self._release_match_subscriptions()
        self._post(_Event.PEER_FOUND, data)

    def _on_no_peers(self, data: Any) -> None:
        self._release_match_subscriptions()
        self._post(_Event.NO_PEERS, data)

    def _on_disconnected(self, reason: Any) -> None:
        self._post(_Event.DISCONNECTED, reason)

    def _on_signal_received(self, data: Any) -> None:
        if not isinstance(data, dict) or self._target_id is None:
            return
        if data.get('senderId') != self._target_id:
            return
        self._post(_Event.REMOTE_SIGNAL, data.get('signal'))

    async def _handle(self, event: _Event, payload: Any) -> None:
        if event is _Event.DISCONNECTED:
            self._reject(NotConnectedError(str(payload)))
        elif self._state is SessionState.AWAITING_PEER:
            await self._handle_awaiting_peer(event, payload)
        elif self._state is SessionState.SIGNALING:
            await self._handle_signaling(event, payload)
        elif self._state is SessionState.TUNNEL_OPEN:
            await self._handle_tunnel_open(event, payload)
        else:
            raise AssertionError(f'Unexpected state {self._state}')

    async def _handle_awaiting_peer(self, event: _Event, payload: Any) -> None:
        if event is _Event.PEER_FOUND:
            target_id = (
                payload.get('targetId') if isinstance(payload, dict) else None
            )
            if not target_id:
                self._reject(
                    NoPeersError(
                        'Signaling service matched an exit node without an '
                        'identifier.',
                    ),
                )
                return
            await self._start_signaling(str(target_id))
        elif event is _Event.NO_PEERS:
            self._reject(NoPeersError('No exit nodes are available.'))
        elif event is _Event.TIMEOUT:
            self._reject(self._timeout_error())
        else:
            logger.debug(
                f'{self._log_prefix}: ignoring {event.value} event while '
                'awaiting peer',
            )

    async def _start_signaling(self, target_id: str) -> None:
        self._target_id = target_id
        logger.info(f'{self._log_prefix}: matched exit node')

        transport = self._transport_factory(self._relay_config)
        self._transport = transport
        transport.on_local_signal(
            lambda signal: self._post(_Event.LOCAL_SIGNAL, signal),
        )
        transport.on_open(lambda: self._post(_Event.OPEN))
        transport.on_message(lambda data: self._post(_Event.MESSAGE, data))
        transport.on_error(lambda error: self._post(_Event.ERROR, error))
        self._signal_subscription = self._control.on_signal_received(
            self._on_signal_received,
        )

        self._transition(SessionState.SIGNALING, self._handshake_timeout)
        try:
            await self._step(transport.start())
        except Exception as e:
            raise TunnelError(f'Failed to start negotiation: {e}') from e

    async def _handle_signaling(self, event: _Event, payload: Any) -> None:
        if event is _Event.OPEN:
            assert self._transport is not None
            logger.info(f'{self._log_prefix}: tunnel open, sending request')
            self._transition(SessionState.TUNNEL_OPEN, self._response_timeout)
            try:
                await self._step(
                    self._transport.send(
                        encode_fetch_request(FetchRequest(url=self._url)),
                    ),
                )
            except Exception as e:
                raise TunnelError(f'Failed to send request: {e}') from e
        elif event is _Event.TIMEOUT:
            self._reject(self._timeout_error())
        else:
            await self._handle_tunnel_event(event, payload)

    async def _handle_tunnel_open(self, event: _Event, payload: Any) -> None:
        if event is _Event.MESSAGE:
            self._settle_response(payload)
        elif event is _Event.TIMEOUT:
            self._reject(self._timeout_error())
        else:
            await self._handle_tunnel_event(event, payload)

    async def _handle_tunnel_event(self, event: _Event, payload: Any) -> None:
        if event is _Event.LOCAL_SIGNAL:
            assert self._target_id is not None
            await self._step(
                self._control.send_signal(self._target_id, payload),
            )
        elif event is _Event.REMOTE_SIGNAL:
            await self._apply_remote_signal(payload)
        elif event is _Event.ERROR:
            self._handle_transport_error(payload)
        else:
            logger.debug(
                f'{self._log_prefix}: ignoring {event.value} event in '
                f'{self._state.value} state',
            )

    async def _apply_remote_signal(self, signal: Any) -> None:
        if not is_usable_signal(signal):
            logger.debug(f'{self._log_prefix}: dropping empty descriptor')
            return
        assert self._transport is not None
        try:
            await self._step(self._transport.apply_remote_signal(signal))
        except Exception as e:
            logger.warning(
                f'{self._log_prefix}: ignoring descriptor that could not be '
                f'applied: {e!r}',
            )

    def _handle_transport_error(self, error: Exception) -> None:
        if isinstance(error, TunnelError):
            self._reject(error)
        else:
            self._reject(TunnelError(f'Peer tunnel failed: {error}'))

    def _settle_response(self, data: Any) -> None:
        try:
            response = decode_fetch_response(data)
        except FetchMessageDecodeError as e:
            self._reject(
                TunnelError(f'Exit node sent a malformed response: {e}'),
            )
            return

        if response.status == 200:
            self._resolve(response.body)
        else:
            self._reject(
                RemoteError(
                    response.error or GENERIC_REMOTE_ERROR,
                    status=response.status,
                ),
            )

    async def _cleanup(self) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self._deadline = None

        self._release_match_subscriptions()
        if self._signal_subscription is not None:
            self._signal_subscription.dispose()
            self._signal_subscription = None
        if self._disconnect_subscription is not None:
            self._disconnect_subscription.dispose()
            self._disconnect_subscription = None

        if self._transport is not None:
            try:
                await self._transport.close()
            except Exception as e:
                logger.warning(
                    f'{self._log_prefix}: error closing transport: {e!r}',
                )

        while not self._events.empty():
            self._events.get_nowait()
        logger.debug(f'{self._log_prefix}: cleaned up')
