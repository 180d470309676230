"""Sanitisation of negotiation descriptors received from peers.

Descriptors follow the browser convention used by most WebRTC peers:

* `#!json {"type": "offer" | "answer", "sdp": "..."}`
* `#!json {"type": "candidate", "candidate": {"candidate": "...",
  "sdpMid": "0", "sdpMLineIndex": 0}}`

Peers also emit an empty candidate to mark the end of gathering. Forwarding
these, or null descriptors, to a transport corrupts negotiation on some
implementations so they are dropped before being applied.
"""
from __future__ import annotations

from typing import Any


def is_end_of_candidates(signal: dict[str, Any]) -> bool:
    """Check if a descriptor is an empty or terminal candidate marker."""
    if 'candidate' not in signal:
        return False
    candidate = signal['candidate']
    if isinstance(candidate, dict):
        candidate = candidate.get('candidate')
    return not candidate


def is_usable_signal(signal: Any) -> bool:
    """Check if a descriptor should be applied to a transport.

    Args:
        signal: Descriptor relayed by the signaling service.

    Returns:
        `False` for `None`, non-mappings, empty mappings, and empty or \
        terminal candidate markers.
    """
    if not isinstance(signal, dict) or len(signal) == 0:
        return False
    return not is_end_of_candidates(signal)
