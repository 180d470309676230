"""Client configuration."""
from __future__ import annotations

import pathlib
import sys
from typing import Optional

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from peerfetch.control.relays import DEFAULT_RELAY_CONFIG
from peerfetch.control.relays import RelayConfig
from peerfetch.security import SecurityPolicy
from peerfetch.session import HANDSHAKE_TIMEOUT
from peerfetch.session import MATCH_TIMEOUT
from peerfetch.session import RESPONSE_TIMEOUT
from peerfetch.utils.config import dump
from peerfetch.utils.config import load

DEFAULT_SERVER_URL = 'wss://openrag-grid.koyeb.app'


class ClientConfig(BaseModel):
    """Client configuration.

    Passed to [`PeerFetchClient`][peerfetch.client.PeerFetchClient].

    Attributes:
        api_key: API key presented to the signaling service. Excluded from
            the [`repr()`][repr] because it is a secret.
        server_url: Address of the signaling service. Must start with
            `ws://` or `wss://`.
        verify_certificate: Validate the signaling service's SSL
            certificate. This should only be disabled when testing against
            local servers using self-signed certificates.
        reconnect: Re-open the control channel if it drops after the
            initial connection.
        connect_timeout: Seconds to wait on opening the control channel and
            on the authentication reply.
        match_timeout: Seconds to wait for the signaling service to match an
            exit node.
        handshake_timeout: Seconds to wait for the tunnel to open once an
            exit node is matched.
        response_timeout: Seconds to wait for the exit node's response once
            the tunnel is open. `None` waits indefinitely.
        relays: Bootstrap relay servers used until the signaling service
            publishes its own.
        security: URL deny rules.
    """

    model_config = ConfigDict(extra='forbid')

    api_key: Optional[str] = Field(default=None, repr=False)  # noqa: UP007
    server_url: str = DEFAULT_SERVER_URL
    verify_certificate: bool = True
    reconnect: bool = True
    connect_timeout: float = 10
    match_timeout: float = MATCH_TIMEOUT
    handshake_timeout: float = HANDSHAKE_TIMEOUT
    response_timeout: Optional[float] = RESPONSE_TIMEOUT  # noqa: UP007
    relays: RelayConfig = DEFAULT_RELAY_CONFIG
    security: SecurityPolicy = Field(default_factory=SecurityPolicy)

    @field_validator('server_url')
    @classmethod
    def _server_url_validator(cls, v: str) -> str:
        if not (v.startswith('ws://') or v.startswith('wss://')):
            raise ValueError('Server must start with ws:// or wss://.')
        return v

    @field_validator(
        'connect_timeout',
        'match_timeout',
        'handshake_timeout',
        'response_timeout',
    )
    @classmethod
    def _timeout_validator(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError('Timeouts must be positive.')
        return v

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="peerfetch.toml"
            api_key = "sk_live_..."
            server_url = "wss://signal.example.com"
            match_timeout = 30

            [[relays.servers]]
            urls = "stun:stun.l.google.com:19302"

            [security]
            blocked_extensions = [".exe", ".msi"]
            ```

            ```python
            from peerfetch.config import ClientConfig

            config = ClientConfig.from_toml('peerfetch.toml')
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)

    def write_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the configuration to a TOML file.

        Warning:
            The API key is written in plain text.
        """
        filepath = pathlib.Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'wb') as f:
            dump(self, f)
