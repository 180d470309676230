"""peerfetch routes single HTTP fetches through remote exit nodes.

Requests are carried over a WebRTC data channel that is negotiated through
a central signaling service. The main entry point is
[`PeerFetchClient`][peerfetch.client.PeerFetchClient].
"""
from __future__ import annotations

import importlib.metadata as importlib_metadata

from peerfetch.client import PeerFetchClient
from peerfetch.config import ClientConfig

__version__ = importlib_metadata.version('peerfetch')
