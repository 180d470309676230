from __future__ import annotations

# Fixtures defined in testing/ must be imported here to be discovered
from testing.channel import control_session
from testing.channel import memory_channel
from testing.signaling_server import signaling_server
from testing.transport import transports
