"""Peer-to-peer transports that carry the tunnel payload.

A [`PeerTransport`][peerfetch.transport.protocols.PeerTransport] negotiates
a direct data channel with an exit node using descriptors relayed by the
signaling service. The default implementation,
[`WebRTCPeerTransport`][peerfetch.transport.webrtc.WebRTCPeerTransport], is
built on [aiortc](https://aiortc.readthedocs.io/){target=_blank}.
"""
from __future__ import annotations

from peerfetch.transport.protocols import PeerTransport
from peerfetch.transport.protocols import TransportFactory
