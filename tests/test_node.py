# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import asyncio
import socket
import unittest
from collections.abc import Callable

from meshrelay.configuration import BootstrapPeer, NodeConfiguration
from meshrelay.events import ConnectionFailed, MessageReceived, NodeEvent, PeerDiscovered, PeerJoined, PeerLeft
from meshrelay.link import FrameBuffer, FramingError, PeerConnectionError
from meshrelay.messages import Message, MessageType
from meshrelay.node import MeshNode
from meshrelay.peers import PeerKey


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


class TestMeshNode(unittest.IsolatedAsyncioTestCase):

    def setUp(self) -> None:
        self._nodes: list[MeshNode] = []

    async def asyncTearDown(self) -> None:
        await asyncio.gather(*(node.stop() for node in self._nodes))

    def _create_node(self, nickname: str | None, *, clock: Callable[[], float] | None = None, **settings: object) -> MeshNode:
        configuration = NodeConfiguration(nickname=nickname, port=0, listen_address='127.0.0.1', **({'ping_interval': 0} | settings))  # type: ignore[arg-type]
        node = MeshNode(configuration) if clock is None else MeshNode(configuration, clock=clock)
        self._nodes.append(node)
        return node

    async def _start_node(self, nickname: str | None, *, clock: Callable[[], float] | None = None, **settings: object) -> MeshNode:
        node = self._create_node(nickname, clock=clock, **settings)
        await node.start()
        return node

    @staticmethod
    async def _next_event[E: NodeEvent](node: MeshNode, event_type: type[E]) -> E:
        async with asyncio.timeout(5):
            async for event in node.events:
                if isinstance(event, event_type):
                    return event
        raise AssertionError(f'the events channel was closed before a {event_type.__name__} event')

    @staticmethod
    async def _wait_for(condition: Callable[[], bool]) -> None:
        async with asyncio.timeout(5):
            while not condition():
                await asyncio.sleep(0.01)

    async def test_chat_between_two_nodes(self) -> None:
        node_a = await self._start_node('A')
        node_b = await self._start_node('B')
        assert node_b.listening_port is not None

        peer = await node_a.connect_to_peer('127.0.0.1', node_b.listening_port)
        assert peer.key == PeerKey('127.0.0.1', node_b.listening_port)
        joined = await self._next_event(node_a, PeerJoined)
        assert joined.peer.key == peer.key
        await self._next_event(node_b, PeerJoined)

        message = node_a.send_message('hi')
        assert message.ttl == 3
        assert await self._next_event(node_a, MessageReceived) == MessageReceived('A', 'hi', is_own=True)
        assert await self._next_event(node_b, MessageReceived) == MessageReceived('A', 'hi', is_own=False)

        # connecting again to a connected peer does nothing
        assert (await node_a.connect_to_peer('127.0.0.1', node_b.listening_port)).key == peer.key
        assert len(node_a.get_peer_list()) == 1

    async def test_default_nickname(self) -> None:
        node = await self._start_node(None)
        assert node.nickname == f'node_{node.listening_port}'

    async def test_relay_through_middle_node(self) -> None:
        node_a = await self._start_node('A')
        node_b = await self._start_node('B')
        node_c = await self._start_node('C')
        assert node_b.listening_port is not None

        await node_a.connect_to_peer('127.0.0.1', node_b.listening_port)
        await node_c.connect_to_peer('127.0.0.1', node_b.listening_port)
        await self._next_event(node_b, PeerJoined)
        await self._next_event(node_b, PeerJoined)

        node_a.send_message('across', ttl=1)
        received = await self._next_event(node_c, MessageReceived)
        assert received.text == 'across'
        assert not received.is_own
        received = await self._next_event(node_b, MessageReceived)
        assert received == MessageReceived('A', 'across', is_own=False)

    async def test_ping_refreshes_last_seen(self) -> None:
        clock = FakeClock()
        node_a = await self._start_node('A', clock=clock)
        node_b = await self._start_node('B')
        assert node_b.listening_port is not None

        peer = await node_a.connect_to_peer('127.0.0.1', node_b.listening_port)
        assert peer.last_seen == 1000.0
        clock.now = 1100.0
        node_a.send_ping(peer.key)
        await self._wait_for(lambda: node_a.get_peer_list()[0].last_seen == 1100.0)

    async def test_peer_discovery(self) -> None:
        node_a = await self._start_node('A')
        node_b = await self._start_node('B')
        assert node_b.listening_port is not None

        await node_a.connect_to_peer('127.0.0.1', node_b.listening_port)
        await self._next_event(node_b, PeerJoined)
        message = node_a.announce_discovery()
        assert (message.type, message.ttl) == (MessageType.peer_discovery, 2)

        discovered = await self._next_event(node_b, PeerDiscovered)
        assert discovered.record.nickname == 'A'
        assert discovered.record.port == node_a.listening_port
        assert discovered.record.platform == 'python'

    async def test_connection_failure(self) -> None:
        node = await self._start_node('A')
        port = unused_port()
        with self.assertRaises(PeerConnectionError):
            await node.connect_to_peer('127.0.0.1', port)
        failure = await self._next_event(node, ConnectionFailed)
        assert failure.key == PeerKey('127.0.0.1', port)
        assert isinstance(failure.error, PeerConnectionError)
        assert node.get_peer_list() == []

    async def test_bootstrap_peers(self) -> None:
        node_b = await self._start_node('B')
        assert node_b.listening_port is not None
        unreachable_port = unused_port()
        bootstrap_peers = [BootstrapPeer(address='127.0.0.1', port=node_b.listening_port), BootstrapPeer(address='127.0.0.1', port=unreachable_port)]
        node_a = await self._start_node('A', bootstrap_peers=bootstrap_peers)

        assert [peer.key for peer in node_a.get_peer_list()] == [PeerKey('127.0.0.1', node_b.listening_port)]
        failure = await self._next_event(node_a, ConnectionFailed)
        assert failure.key == PeerKey('127.0.0.1', unreachable_port)

    async def test_stale_peer_eviction(self) -> None:
        clock = FakeClock()
        node_a = await self._start_node('A', clock=clock, stale_timeout=30)
        node_b = await self._start_node('B')
        assert node_a.listening_port is not None

        await node_b.connect_to_peer('127.0.0.1', node_a.listening_port)
        await self._next_event(node_a, PeerJoined)
        await self._wait_for(lambda: [peer.nickname for peer in node_a.get_peer_list()] == ['B'])

        assert node_a.manager.sweep_stale_peers() == []
        clock.now += 31
        evicted = node_a.manager.sweep_stale_peers()
        assert [peer.nickname for peer in evicted] == ['B']
        assert node_a.get_peer_list() == []
        left = await self._next_event(node_a, PeerLeft)
        assert left.peer.nickname == 'B'
        assert node_a.manager.sweep_stale_peers() == []

        # the other side notices the connection going away
        await self._next_event(node_b, PeerLeft)
        assert node_b.get_peer_list() == []

    async def test_remote_disconnect(self) -> None:
        node_a = await self._start_node('A')
        node_b = await self._start_node('B')
        assert node_b.listening_port is not None

        await node_a.connect_to_peer('127.0.0.1', node_b.listening_port)
        await self._next_event(node_b, PeerJoined)
        await self._wait_for(lambda: [peer.nickname for peer in node_b.get_peer_list()] == ['A'])
        await node_a.stop()
        left = await self._next_event(node_b, PeerLeft)
        assert left.peer.nickname == 'A'
        assert node_b.get_peer_list() == []

    async def test_no_events_after_stop(self) -> None:
        node_a = await self._start_node('A')
        node_b = await self._start_node('B')
        assert node_b.listening_port is not None

        await node_a.connect_to_peer('127.0.0.1', node_b.listening_port)
        await node_a.stop()
        assert node_a.events.closed
        assert node_a.get_peer_list() == []
        events = [event async for event in node_a.events]
        assert [type(event) for event in events] == [PeerJoined]
        node_a.send_message('nobody listens')
        assert len(node_a.events) == 0

    async def test_malformed_input(self) -> None:
        node = await self._start_node('A')
        assert node.listening_port is not None

        _, writer = await asyncio.open_connection('127.0.0.1', node.listening_port)
        try:
            await self._next_event(node, PeerJoined)
            # an undecodable message is dropped without affecting the connection
            writer.write(FrameBuffer.frame(b'\x05\x03\x00\x00'))
            writer.write(FrameBuffer.frame(Message.chat('still here').to_wire()))
            await writer.drain()
            received = await self._next_event(node, MessageReceived)
            assert received.text == 'still here'

            # a peer record nested too deeply to parse is dropped as well
            nested = Message(type=MessageType.peer_announcement, ttl=0, id=0x0102, payload=b'[' * 60000)
            writer.write(FrameBuffer.frame(nested.to_wire()))
            writer.write(FrameBuffer.frame(Message.chat('after nesting').to_wire()))
            await writer.drain()
            received = await self._next_event(node, MessageReceived)
            assert received.text == 'after nesting'
            assert len(node.get_peer_list()) == 1

            # a frame that can never hold a message drops the connection
            writer.write(b'\xff\xff\xff\xff')
            await writer.drain()
            failure = await self._next_event(node, ConnectionFailed)
            assert isinstance(failure.error, FramingError)
            await self._next_event(node, PeerLeft)
            assert node.get_peer_list() == []
        finally:
            writer.close()

    async def test_message_handler_failure(self) -> None:
        node = self._create_node('A')

        def handle_message(message: Message, key: PeerKey) -> None:
            if message.payload == b'boom':
                raise RuntimeError('boom')
            node.router.on_message_decoded(message, key)

        node.manager.set_message_handler(handle_message)
        await node.start()
        assert node.listening_port is not None

        _, writer = await asyncio.open_connection('127.0.0.1', node.listening_port)
        try:
            await self._next_event(node, PeerJoined)
            writer.write(FrameBuffer.frame(Message.chat('boom').to_wire()))
            writer.write(FrameBuffer.frame(Message.chat('survived').to_wire()))
            await writer.drain()
            received = await self._next_event(node, MessageReceived)
            assert received.text == 'survived'
            assert len(node.get_peer_list()) == 1
        finally:
            writer.close()

    async def test_connect_to_unencodable_host(self) -> None:
        node = await self._start_node('A')
        address = 'x' * 64 + '.example'
        with self.assertRaises(PeerConnectionError):
            await node.connect_to_peer(address, 8888)
        failure = await self._next_event(node, ConnectionFailed)
        assert failure.key == PeerKey(address, 8888)
        assert node.get_peer_list() == []

    async def test_periodic_stale_sweep(self) -> None:
        clock = FakeClock()
        node_a = await self._start_node('A', clock=clock, stale_timeout=30, sweep_interval=0.05)
        node_b = await self._start_node('B')
        assert node_a.listening_port is not None

        await node_b.connect_to_peer('127.0.0.1', node_a.listening_port)
        await self._wait_for(lambda: [peer.nickname for peer in node_a.get_peer_list()] == ['B'])

        clock.now += 31
        left = await self._next_event(node_a, PeerLeft)
        assert left.peer.nickname == 'B'
        assert node_a.get_peer_list() == []

        # the aborted connection is not reported a second time
        await asyncio.sleep(0.2)
        remaining = []
        while len(node_a.events):
            remaining.append(node_a.events.receive_nowait())
        assert not any(isinstance(event, PeerLeft) for event in remaining)

    async def test_keepalive_pings(self) -> None:
        clock = FakeClock()
        node_a = await self._start_node('A', clock=clock, ping_interval=0.05)
        node_b = await self._start_node('B')
        assert node_b.listening_port is not None

        peer = await node_a.connect_to_peer('127.0.0.1', node_b.listening_port)
        assert peer.last_seen == 1000.0
        # only the pong answering a keep-alive ping refreshes the peer after this
        clock.now = 1100.0
        await self._wait_for(lambda: [peer.last_seen for peer in node_a.get_peer_list()] == [1100.0])
