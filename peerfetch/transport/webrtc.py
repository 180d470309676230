"""WebRTC peer transport built on aiortc."""
from __future__ import annotations

import logging
import warnings
from typing import Any
from typing import Callable

from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceCandidate
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from cryptography.utils import CryptographyDeprecationWarning

from peerfetch.control.relays import RelayConfig
from peerfetch.exceptions import DataChannelClosedError
from peerfetch.exceptions import TunnelError
from peerfetch.transport.protocols import Payload
from peerfetch.transport.protocols import Signal

warnings.simplefilter('ignore', CryptographyDeprecationWarning)

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = 'peerfetch'


def ice_servers(relay_config: RelayConfig) -> list[RTCIceServer]:
    """Convert a relay configuration to aiortc ICE servers."""
    return [
        RTCIceServer(
            urls=server.url_list(),
            username=server.username,
            credential=server.credential,
        )
        for server in relay_config.servers
    ]


def description_to_signal(description: RTCSessionDescription) -> Signal:
    """Convert a session description to a descriptor."""
    return {'type': description.type, 'sdp': description.sdp}


def signal_to_candidate(signal: Signal) -> RTCIceCandidate:
    """Parse a candidate descriptor.

    Raises:
        ValueError: If the descriptor does not contain a parsable candidate.
    """
    data = signal['candidate']
    if isinstance(data, str):
        data = {'candidate': data}
    if not isinstance(data, dict) or not isinstance(
        data.get('candidate'),
        str,
    ):
        raise ValueError(f'Malformed candidate descriptor: {signal!r}')

    sdp = data['candidate']
    if sdp.startswith('candidate:'):
        sdp = sdp.split(':', 1)[1]
    # foundation component protocol priority ip port "typ" type
    if len(sdp.split()) < 8:
        raise ValueError(f'Malformed candidate descriptor: {signal!r}')
    try:
        candidate = candidate_from_sdp(sdp)
    except (IndexError, ValueError) as e:
        raise ValueError(f'Malformed candidate descriptor: {signal!r}') from e
    candidate.sdpMid = data.get('sdpMid')
    candidate.sdpMLineIndex = data.get('sdpMLineIndex')
    return candidate


class WebRTCPeerTransport:
    """Data channel to a peer negotiated with WebRTC.

    aiortc gathers all local ICE candidates before the local description is
    set, so the initiator emits a single offer containing its candidates.
    Remote descriptors may still arrive as separate candidates which are
    applied with `addIceCandidate()`.

    Example:
        ```python
        offerer = WebRTCPeerTransport(relay_config)
        answerer = WebRTCPeerTransport(relay_config, initiator=False)

        offerer.on_local_signal(relay_to_answerer)
        answerer.on_local_signal(relay_to_offerer)
        offerer.on_open(lambda: print('open'))

        await offerer.start()
        ```

    Args:
        relay_config: STUN/TURN servers used for connectivity checks.
        initiator: Create the data channel and send the offer. Otherwise,
            wait for an offer and reply with an answer.
        label: Label of the data channel.
    """

    def __init__(
        self,
        relay_config: RelayConfig,
        *,
        initiator: bool = True,
        label: str = DATA_CHANNEL_LABEL,
    ) -> None:
        self._initiator = initiator
        self._label = label
        self._pc = RTCPeerConnection(
            configuration=RTCConfiguration(
                iceServers=ice_servers(relay_config),
            ),
        )
        self._channel: RTCDataChannel | None = None
        self._closing = False

        self._local_signal_callback: Callable[[Signal], None] | None = None
        self._open_callback: Callable[[], None] | None = None
        self._message_callback: Callable[[Payload], None] | None = None
        self._error_callback: Callable[[Exception], None] | None = None

        self._pc.on('connectionstatechange', self._on_connection_state)
        if not initiator:
            self._pc.on('datachannel', self._attach_channel)

    @property
    def state(self) -> str:
        """Get the current connection state.

        Returns:
            One of 'connected', 'connecting', 'closed', 'failed', or 'new'.
        """
        return self._pc.connectionState

    def on_local_signal(self, callback: Callable[[Signal], None]) -> None:
        """Register the callback for locally generated descriptors."""
        self._local_signal_callback = callback

    def on_open(self, callback: Callable[[], None]) -> None:
        """Register the callback for when the data channel opens."""
        self._open_callback = callback

    def on_message(self, callback: Callable[[Payload], None]) -> None:
        """Register the callback for data received from the peer."""
        self._message_callback = callback

    def on_error(self, callback: Callable[[Exception], None]) -> None:
        """Register the callback for transport failures."""
        self._error_callback = callback

    def _emit_signal(self, signal: Signal) -> None:
        if self._local_signal_callback is not None:
            self._local_signal_callback(signal)

    def _emit_error(self, error: Exception) -> None:
        if self._closing:
            logger.debug(f'Ignoring transport error during close: {error}')
            return
        if self._error_callback is not None:
            self._error_callback(error)

    def _attach_channel(self, channel: RTCDataChannel) -> None:
        self._channel = channel

        @channel.on('open')
        def _on_open() -> None:
            logger.debug(f'Data channel {channel.label} open')
            if self._open_callback is not None:
                self._open_callback()

        @channel.on('message')
        def _on_message(data: Any) -> None:
            if self._message_callback is not None:
                self._message_callback(data)

        @channel.on('close')
        def _on_close() -> None:
            self._emit_error(
                DataChannelClosedError(
                    f'Data channel {channel.label} closed',
                ),
            )

        # The answerer receives a channel which is already open
        if not self._initiator and channel.readyState == 'open':
            _on_open()

    async def _on_connection_state(self) -> None:
        logger.debug(f'Peer connection entered {self.state} state')
        if self.state == 'failed':
            self._emit_error(TunnelError('Peer connection failed'))

    async def start(self) -> None:
        """Begin negotiation.

        The initiator opens the data channel and emits its offer. This is a
        no-op for the answerer.
        """
        if not self._initiator:
            return
        self._attach_channel(
            self._pc.createDataChannel(self._label, ordered=True),
        )
        await self._pc.setLocalDescription(await self._pc.createOffer())
        self._emit_signal(description_to_signal(self._pc.localDescription))

    async def apply_remote_signal(self, signal: Signal) -> None:
        """Apply a descriptor received from the peer.

        Raises:
            ValueError: If the descriptor is not an offer, answer, or
                candidate, or cannot be parsed.
        """
        signal_type = signal.get('type')
        if signal_type in ('offer', 'answer') and 'sdp' in signal:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=signal['sdp'], type=signal_type),
            )
            if signal_type == 'offer':
                await self._pc.setLocalDescription(
                    await self._pc.createAnswer(),
                )
                self._emit_signal(
                    description_to_signal(self._pc.localDescription),
                )
        elif 'candidate' in signal:
            await self._pc.addIceCandidate(signal_to_candidate(signal))
        else:
            raise ValueError(f'Unsupported descriptor: {signal!r}')

    async def send(self, data: Payload) -> None:
        """Send data over the open data channel.

        Raises:
            TunnelError: If the data channel is not open.
        """
        if self._channel is None or self._channel.readyState != 'open':
            raise TunnelError('Data channel is not open.')
        self._channel.send(data)

    async def close(self) -> None:
        """Close the data channel and the peer connection."""
        self._closing = True
        if self._channel is not None:
            self._channel.close()
        await self._pc.close()


def create_webrtc_transport(relay_config: RelayConfig) -> WebRTCPeerTransport:
    """Create an initiator transport.

    This is the default
    [`TransportFactory`][peerfetch.transport.protocols.TransportFactory].
    """
    return WebRTCPeerTransport(relay_config, initiator=True)
