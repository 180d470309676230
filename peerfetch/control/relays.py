"""Relay (STUN/TURN) server configuration used to seed peer connections.

The signaling service may publish short-lived TURN credentials at any time
with an `ICE_CONFIG` event. Each update produces a new immutable
[`RelayConfig`][peerfetch.control.relays.RelayConfig] snapshot; a session
keeps using the snapshot it captured when it started.
"""
from __future__ import annotations

from typing import Any
from typing import List
from typing import Optional
from typing import Tuple
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator
from pydantic import ValidationError


class IceServer(BaseModel):
    """A single STUN or TURN server.

    Attributes:
        urls: One or more `stun:`/`turn:`/`turns:` URLs.
        username: Optional TURN username.
        credential: Optional TURN credential. Excluded from the
            [`repr()`][repr] because it is a secret.
    """

    model_config = ConfigDict(extra='ignore', frozen=True)

    urls: Union[str, Tuple[str, ...]]  # noqa: UP006,UP007
    username: Optional[str] = None  # noqa: UP007
    credential: Optional[str] = Field(default=None, repr=False)  # noqa: UP007

    @field_validator('urls')
    @classmethod
    def _urls_validator(
        cls,
        v: str | tuple[str, ...],
    ) -> str | tuple[str, ...]:
        urls = (v,) if isinstance(v, str) else v
        if len(urls) == 0 or not all(urls):
            raise ValueError('At least one non-empty URL is required.')
        return v

    def url_list(self) -> List[str]:  # noqa: UP006
        """Return the server URLs as a list."""
        return [self.urls] if isinstance(self.urls, str) else list(self.urls)


class RelayConfig(BaseModel):
    """Immutable, non-empty set of relay servers.

    Attributes:
        servers: Relay servers in priority order.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    servers: Tuple[IceServer, ...]  # noqa: UP006

    @field_validator('servers')
    @classmethod
    def _servers_validator(
        cls,
        v: tuple[IceServer, ...],
    ) -> tuple[IceServer, ...]:
        if len(v) == 0:
            raise ValueError('A relay configuration cannot be empty.')
        return v

    @classmethod
    def from_payload(cls, data: Any) -> RelayConfig | None:
        """Parse an `ICE_CONFIG` payload.

        Args:
            data: Payload of the form `#!json {"iceServers": [...]}`.

        Returns:
            A new configuration or `None` if the payload is missing, empty, \
            or invalid.
        """
        if not isinstance(data, dict):
            return None
        servers = data.get('iceServers')
        if not isinstance(servers, list) or len(servers) == 0:
            return None
        try:
            return cls(servers=tuple(servers))
        except ValidationError:
            return None


DEFAULT_RELAY_CONFIG = RelayConfig(
    servers=(IceServer(urls='stun:stun.l.google.com:19302'),),
)
