from __future__ import annotations

import io
import pathlib
from typing import Optional

from pydantic import BaseModel

from peerfetch.control.relays import RelayConfig
from peerfetch.security import SecurityPolicy
from peerfetch.utils.config import dump
from peerfetch.utils.config import load
from peerfetch.utils.config import loads


class _Timeouts(BaseModel):
    match: float
    handshake: float


class _Config(BaseModel):
    server_url: str
    reconnect: bool
    timeouts: _Timeouts


TEST_CONFIG = _Config(
    server_url='wss://signal.example.com',
    reconnect=False,
    timeouts=_Timeouts(match=45.0, handshake=40.0),
)
TEST_CONFIG_REPR = """\
server_url = "wss://signal.example.com"
reconnect = false

[timeouts]
match = 45.0
handshake = 40.0
"""


def test_dump(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'test.toml'

    with open(filepath, 'wb') as f:
        dump(TEST_CONFIG, f)

    with open(filepath) as f:
        assert f.read() == TEST_CONFIG_REPR


def test_dump_drops_none_values(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'test.toml'

    class _Config(BaseModel):
        api_key: Optional[str] = None  # noqa: UP007
        server_url: str = 'wss://signal.example.com'

    with open(filepath, 'wb') as fw:
        dump(_Config(), fw)

    with open(filepath) as fr:
        data = fr.read()

    assert 'api_key' not in data
    assert 'server_url' in data


def test_load(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'test.toml'

    with open(filepath, 'w') as f:
        f.write(TEST_CONFIG_REPR)

    with open(filepath, 'rb') as f:
        assert load(_Config, f) == TEST_CONFIG


def test_loads() -> None:
    assert loads(_Config, TEST_CONFIG_REPR) == TEST_CONFIG


def _round_trip(model: BaseModel) -> BaseModel:
    buffer = io.BytesIO()
    dump(model, buffer)
    buffer.seek(0)
    return load(type(model), buffer)


def test_tuple_fields_load_from_arrays() -> None:
    policy = SecurityPolicy(blocked_fragments=('a.example',))
    assert _round_trip(policy) == policy


def test_nested_tables_load_from_arrays() -> None:
    relays = RelayConfig(
        servers=(
            {'urls': 'stun:stun.example.com'},
            {'urls': ('turn:a', 'turn:b'), 'username': 'u', 'credential': 'c'},
        ),
    )
    assert _round_trip(relays) == relays
