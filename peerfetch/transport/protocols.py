"""Peer transport interface protocol."""
from __future__ import annotations

from typing import Any
from typing import Callable
from typing import Dict
from typing import Protocol
from typing import runtime_checkable
from typing import Union

from peerfetch.control.relays import RelayConfig

Signal = Dict[str, Any]
"""Opaque negotiation descriptor (offer, answer, or candidate)."""
Payload = Union[bytes, str]


@runtime_checkable
class PeerTransport(Protocol):
    """Direct data channel to a single peer.

    Callbacks are plain functions invoked from the event loop. They must not
    block.
    """

    def on_local_signal(self, callback: Callable[[Signal], None]) -> None:
        """Register the callback for locally generated descriptors."""
        ...

    def on_open(self, callback: Callable[[], None]) -> None:
        """Register the callback for when the data channel opens."""
        ...

    def on_message(self, callback: Callable[[Payload], None]) -> None:
        """Register the callback for data received from the peer."""
        ...

    def on_error(self, callback: Callable[[Exception], None]) -> None:
        """Register the callback for transport failures."""
        ...

    async def start(self) -> None:
        """Begin negotiation.

        The initiator creates its data channel and emits an offer through the
        local signal callback.
        """
        ...

    async def apply_remote_signal(self, signal: Signal) -> None:
        """Apply a descriptor received from the peer.

        Raises:
            Exception: If the descriptor is malformed or cannot be applied in
                the current negotiation state.
        """
        ...

    async def send(self, data: Payload) -> None:
        """Send data over the open data channel."""
        ...

    async def close(self) -> None:
        """Close the data channel and the peer connection."""
        ...


TransportFactory = Callable[[RelayConfig], PeerTransport]
"""Creates an initiator transport seeded with a relay configuration."""
