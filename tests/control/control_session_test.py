from __future__ import annotations

import logging
from typing import Any

import pytest

from peerfetch.control.events import ControlEvent
from peerfetch.control.events import ControlMessage
from peerfetch.control.events import ControlMessageDecodeError
from peerfetch.control.relays import DEFAULT_RELAY_CONFIG
from peerfetch.control.relays import IceServer
from peerfetch.control.relays import RelayConfig
from peerfetch.control.session import ConnectionState
from peerfetch.control.session import ControlSession
from peerfetch.control.session import DISCONNECTED_EVENT
from peerfetch.exceptions import ControlAuthenticationError
from peerfetch.exceptions import ControlConnectionError
from peerfetch.exceptions import NotConnectedError
from testing.channel import MemoryControlChannel
from testing.channel import TEST_TOKEN
from testing.utils import wait_until

TURN_CONFIG = {
    'iceServers': [
        {
            'urls': 'turn:turn.example.com:3478',
            'username': 'user',
            'credential': 'secret',
        },
    ],
}


@pytest.mark.asyncio()
async def test_connect_and_disconnect(memory_channel) -> None:
    session = ControlSession(memory_channel)
    assert session.state is ConnectionState.DISCONNECTED
    assert session.relay_config == DEFAULT_RELAY_CONFIG

    await session.connect(TEST_TOKEN)
    assert session.connected
    assert memory_channel.token == TEST_TOKEN

    # Connecting again is a no-op
    await session.connect('other')
    assert memory_channel.token == TEST_TOKEN

    await session.disconnect()
    assert session.state is ConnectionState.DISCONNECTED
    assert memory_channel.closed

    await session.disconnect()


@pytest.mark.asyncio()
async def test_disconnect_never_connected(memory_channel) -> None:
    session = ControlSession(memory_channel)
    await session.disconnect()
    assert not memory_channel.closed


@pytest.mark.asyncio()
async def test_context_manager(memory_channel) -> None:
    async with ControlSession(memory_channel) as session:
        await session.connect(TEST_TOKEN)
        assert session.connected
    assert not session.connected


@pytest.mark.asyncio()
async def test_connect_error_passthrough() -> None:
    error = ControlAuthenticationError('Invalid API key')
    session = ControlSession(MemoryControlChannel(connect_error=error))

    with pytest.raises(ControlAuthenticationError) as exc_info:
        await session.connect(TEST_TOKEN)
    assert exc_info.value is error
    assert session.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio()
async def test_connect_error_wrapped() -> None:
    session = ControlSession(
        MemoryControlChannel(connect_error=RuntimeError('boom')),
    )

    with pytest.raises(ControlConnectionError, match='boom'):
        await session.connect(TEST_TOKEN)
    assert session.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio()
async def test_send_when_disconnected(memory_channel) -> None:
    session = ControlSession(memory_channel)

    with pytest.raises(NotConnectedError):
        await session.request_peer()
    with pytest.raises(NotConnectedError):
        await session.send_signal('peer', {'type': 'offer', 'sdp': ''})
    assert memory_channel.sent == []


@pytest.mark.asyncio()
async def test_send_on_closed_channel(control_session, memory_channel) -> None:
    await memory_channel.close()

    with pytest.raises(NotConnectedError):
        await control_session.request_peer()


@pytest.mark.asyncio()
async def test_request_peer_and_send_signal(
    control_session,
    memory_channel,
) -> None:
    await control_session.request_peer()
    await control_session.send_signal('peer-1', {'type': 'offer', 'sdp': 'x'})

    assert memory_channel.sent == [
        ControlMessage('REQUEST_PEER', None),
        ControlMessage(
            'SIGNAL_MESSAGE',
            {'targetId': 'peer-1', 'signal': {'type': 'offer', 'sdp': 'x'}},
        ),
    ]


@pytest.mark.asyncio()
async def test_subscription_dispose(control_session) -> None:
    received: list[Any] = []
    subscription = control_session.on_signal_received(received.append)
    assert subscription.active
    assert subscription.event == 'SIGNAL_RECEIVED'
    assert control_session.listener_count(ControlEvent.signal_received) == 1

    subscription.dispose()
    subscription.dispose()
    assert not subscription.active
    assert control_session.listener_count(ControlEvent.signal_received) == 0
    assert 'disposed' in repr(subscription)

    control_session.dispatch(ControlMessage('SIGNAL_RECEIVED', {'x': 1}))
    assert received == []


@pytest.mark.asyncio()
async def test_subscription_context_manager(control_session) -> None:
    with control_session.subscribe('CUSTOM', lambda data: None) as sub:
        assert control_session.listener_count('CUSTOM') == 1
    assert not sub.active
    assert control_session.listener_count('CUSTOM') == 0


@pytest.mark.asyncio()
async def test_broadcast_events_fan_out(control_session) -> None:
    first: list[Any] = []
    second: list[Any] = []
    control_session.on_signal_received(first.append)
    control_session.on_signal_received(second.append)

    control_session.dispatch(ControlMessage('SIGNAL_RECEIVED', 1))
    control_session.dispatch(ControlMessage('SIGNAL_RECEIVED', 2))

    assert first == [1, 2]
    assert second == [1, 2]


@pytest.mark.asyncio()
async def test_match_events_are_claimed_in_order(control_session) -> None:
    first: list[Any] = []
    second: list[Any] = []
    first_sub = control_session.on_peer_found(first.append)
    second_sub = control_session.on_peer_found(second.append)

    control_session.dispatch(ControlMessage('PEER_FOUND', {'targetId': 'a'}))
    assert first == [{'targetId': 'a'}]
    assert second == []
    assert not first_sub.active
    assert second_sub.active

    control_session.dispatch(ControlMessage('PEER_FOUND', {'targetId': 'b'}))
    assert first == [{'targetId': 'a'}]
    assert second == [{'targetId': 'b'}]
    assert control_session.listener_count(ControlEvent.peer_found) == 0

    # Unclaimed results are dropped
    control_session.dispatch(ControlMessage('PEER_FOUND', {'targetId': 'c'}))
    assert second == [{'targetId': 'b'}]


@pytest.mark.asyncio()
async def test_no_peers_claimed_once(control_session) -> None:
    received: list[Any] = []
    control_session.on_no_peers_available(received.append)
    control_session.on_no_peers_available(received.append)

    control_session.dispatch(ControlMessage('NO_PEERS_AVAILABLE'))
    assert received == [None]
    assert (
        control_session.listener_count(ControlEvent.no_peers_available) == 1
    )


@pytest.mark.asyncio()
async def test_handler_error_does_not_stop_dispatch(
    control_session,
    caplog,
) -> None:
    caplog.set_level(logging.ERROR)
    received: list[Any] = []

    def _bad(data: Any) -> None:
        raise RuntimeError('handler failed')

    control_session.on_signal_received(_bad)
    control_session.on_signal_received(received.append)
    control_session.dispatch(ControlMessage('SIGNAL_RECEIVED', 'x'))

    assert received == ['x']
    assert any(
        'SIGNAL_RECEIVED' in record.message for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_ice_config_replaces_snapshot(
    control_session,
    memory_channel,
) -> None:
    before = control_session.relay_config
    memory_channel.push(ControlEvent.ice_config, TURN_CONFIG)
    await wait_until(lambda: control_session.relay_config != before)

    assert control_session.relay_config == RelayConfig(
        servers=(
            IceServer(
                urls='turn:turn.example.com:3478',
                username='user',
                credential='secret',
            ),
        ),
    )
    assert before == DEFAULT_RELAY_CONFIG


@pytest.mark.asyncio()
@pytest.mark.parametrize(
    'payload',
    (None, {}, {'iceServers': []}, {'iceServers': [{'urls': ''}]}),
)
async def test_ice_config_invalid_keeps_snapshot(
    control_session,
    payload: Any,
    caplog,
) -> None:
    caplog.set_level(logging.WARNING)
    control_session.dispatch(ControlMessage('ICE_CONFIG', payload))

    assert control_session.relay_config == DEFAULT_RELAY_CONFIG
    assert any('ICE_CONFIG' in record.message for record in caplog.records)


@pytest.mark.asyncio()
async def test_ice_config_delivered_to_subscribers(control_session) -> None:
    received: list[Any] = []
    control_session.subscribe(ControlEvent.ice_config, received.append)
    control_session.dispatch(ControlMessage('ICE_CONFIG', TURN_CONFIG))
    assert received == [TURN_CONFIG]


@pytest.mark.asyncio()
async def test_dispatch_loop_delivers_channel_events(
    control_session,
    memory_channel,
) -> None:
    received: list[Any] = []
    control_session.on_peer_found(received.append)

    memory_channel.push(ControlEvent.peer_found, {'targetId': 'abc'})
    await wait_until(lambda: len(received) == 1)
    assert received == [{'targetId': 'abc'}]


@pytest.mark.asyncio()
async def test_dispatch_loop_skips_undecodable_frames(
    control_session,
    memory_channel,
) -> None:
    received: list[Any] = []
    control_session.on_signal_received(received.append)

    memory_channel.fail(ControlMessageDecodeError('bad frame'))
    memory_channel.push(ControlEvent.signal_received, 'after')
    await wait_until(lambda: received == ['after'])
    assert control_session.connected


@pytest.mark.asyncio()
async def test_dispatch_loop_stops_when_channel_fails(
    control_session,
    memory_channel,
) -> None:
    memory_channel.fail(ControlConnectionError('lost'))
    await wait_until(lambda: not control_session.connected)

    with pytest.raises(NotConnectedError):
        await control_session.request_peer()


@pytest.mark.asyncio()
async def test_subscribe_by_event_or_name(control_session) -> None:
    by_event = control_session.subscribe(
        ControlEvent.signal_received,
        lambda data: None,
    )
    by_name = control_session.subscribe('SIGNAL_RECEIVED', lambda data: None)

    assert by_event.event == by_name.event == 'SIGNAL_RECEIVED'
    assert control_session.listener_count(ControlEvent.signal_received) == 2
    assert control_session.listener_count('SIGNAL_RECEIVED') == 2


@pytest.mark.asyncio()
async def test_disconnect_notifies_subscribers_once(control_session) -> None:
    received: list[Any] = []
    control_session.on_disconnected(received.append)

    await control_session.disconnect()
    await control_session.disconnect()

    assert len(received) == 1
    assert 'disconnected' in received[0]


@pytest.mark.asyncio()
async def test_channel_failure_notifies_subscribers(
    control_session,
    memory_channel,
) -> None:
    received: list[Any] = []
    control_session.on_disconnected(received.append)

    memory_channel.fail(ControlConnectionError('lost'))
    await wait_until(lambda: len(received) == 1)
    assert not control_session.connected

    await control_session.disconnect()
    assert len(received) == 1


@pytest.mark.asyncio()
async def test_disconnected_event_from_wire_is_ignored(
    control_session,
    caplog,
) -> None:
    caplog.set_level(logging.WARNING)
    received: list[Any] = []
    control_session.on_disconnected(received.append)

    control_session.dispatch(ControlMessage(DISCONNECTED_EVENT, 'spoofed'))

    assert received == []
    assert control_session.connected
    assert any('reserved' in record.message for record in caplog.records)
