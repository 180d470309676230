"""Control channel to the signaling service.

The control channel is a long-lived connection over which the client
authenticates, asks for exit nodes, receives relay (ICE) configuration, and
relays WebRTC negotiation descriptors to and from its matched peer.

* [`ControlChannel`][peerfetch.control.channel.ControlChannel] is the
  transport interface and
  [`WebSocketControlChannel`][peerfetch.control.channel.WebSocketControlChannel]
  is its [websockets](https://websockets.readthedocs.io){target=_blank}
  implementation.
* [`ControlSession`][peerfetch.control.session.ControlSession] owns a
  channel and demultiplexes named events to subscribers.
"""
from __future__ import annotations

from peerfetch.control.channel import ControlChannel
from peerfetch.control.channel import WebSocketControlChannel
from peerfetch.control.relays import RelayConfig
from peerfetch.control.session import ControlSession
from peerfetch.control.session import Subscription
