# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import replace
from typing import Any, ClassVar

from meshrelay import aio
from meshrelay.configuration import BootstrapPeer, NodeConfiguration
from meshrelay.events import ConnectionFailed, EventSink, NodeEvent, PeerJoined, PeerLeft
from meshrelay.messages import Message, PeerRecord
from meshrelay.peers import PeerInfo, PeerKey, PeerRegistry

from .common import FrameBuffer, LinkDirection
from .transport import PeerLink

__all__ = 'ConnectionManager', 'PeerConnectionError'


logger = logging.getLogger(__name__)


type MessageHandler = Callable[[Message, PeerKey], None]


class ConnectionManager:
    """
    Own the listening socket and the connections with the peers.

    Every connection has a record in the peer registry for as long as it
    exists. Decoded messages are passed to the message handler, which must
    be set before the manager is started.
    """

    registry: PeerRegistry

    platform: ClassVar[str] = 'python'

    # Internal attributes

    _message_handler: MessageHandler
    _links: dict[PeerKey, PeerLink]

    _task_list: set[asyncio.Task[None]]
    _server: asyncio.Server
    _listening_port: int | None

    def __init__(self, configuration: NodeConfiguration, registry: PeerRegistry, *, emit: EventSink) -> None:
        self.configuration = configuration
        self.registry = registry
        self._emit_event = emit
        self._started = False
        self._stopped = False
        self._links = {}
        self._task_list = set()
        self._listening_port = None
        self._message_handler = NotImplemented  # should be set before start
        self._server = NotImplemented           # will be set upon start

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(configuration={self.configuration!r})'

    @property
    def listening_port(self) -> int | None:
        return self._listening_port

    @property
    def nickname(self) -> str:
        return self.configuration.nickname or f'node_{self._listening_port or self.configuration.port}'

    @property
    def connected_peers(self) -> list[PeerKey]:
        return list(self._links)

    def is_connected(self, key: PeerKey) -> bool:
        return key in self._links

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    async def start(self, port: int | None = None) -> None:
        if self._message_handler is NotImplemented:
            raise RuntimeError('The message handler must be set before starting the connection manager')
        if self._started:
            return
        listen_port = self.configuration.port if port is None else port
        self._server = await asyncio.start_server(self._client_connected_callback, host=self.configuration.listen_address, port=listen_port)
        self._started = True
        self._listening_port = self._server.sockets[0].getsockname()[1]
        logger.info('Listening for peers on %s:%d', self.configuration.listen_address, self._listening_port)
        self._spawn(self._sweep_loop(), name='stale peer sweeper')
        if self.configuration.ping_interval > 0:
            self._spawn(self._keepalive_loop(), name='keep-alive pinger')
        await self._connect_to_bootstrap_peers()

    async def stop(self) -> None:
        """Close everything immediately. No events are emitted after this returns."""
        if not self._started or self._stopped:
            return
        self._stopped = True
        self._server.close()
        for link in self._links.values():
            link.abort()
        self._links.clear()
        self.registry.clear()
        current_task = asyncio.current_task()
        tasks = [task for task in self._task_list if task is not current_task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._server.wait_closed()
        logger.info('Stopped listening for peers')

    async def connect_to(self, address: str, port: int) -> PeerInfo:
        """
        Connect to the peer listening on address and port.

        Return the record of the peer. Connecting to a peer that is already
        connected returns its existing record. Raises PeerConnectionError if
        the connection cannot be established.
        """
        key = PeerKey(address, port)
        if (peer := self._connected_peer(key)) is not None:
            return peer
        if not self._started or self._stopped:
            raise PeerConnectionError(f'Cannot connect to {key!s}: the connection manager is not running')
        try:
            async with asyncio.timeout(self.configuration.connect_timeout):
                reader, writer = await asyncio.open_connection(host=address, port=port)
        except (OSError, ValueError) as exc:  # this includes TimeoutError and the UnicodeError of unencodable host names
            reason = str(exc) or exc.__class__.__name__
            logger.warning('Failed to connect to %s: %s', key, reason)
            raise PeerConnectionError(f'Failed to connect to {key!s}: {reason}') from exc
        link = PeerLink(reader, writer, key=key, direction=LinkDirection.outbound)
        if self._stopped:
            link.abort()
            raise PeerConnectionError(f'Cannot connect to {key!s}: the connection manager was stopped')
        if (peer := self._connected_peer(key)) is not None:
            # another connection attempt to the same peer won the race
            link.abort()
            return peer
        peer = self._add_link(link)
        logger.info('Connected to peer %s', key)
        self._write(link, FrameBuffer.frame(Message.peer_announcement(self._local_record()).to_wire()))
        self._emit(PeerJoined(replace(peer)))
        self._spawn(self._link_handler(link), name=f'link handler [{key!s}]')
        return replace(peer)

    def send(self, message: Message, key: PeerKey) -> None:
        link = self._links.get(key)
        if link is None:
            logger.debug('Cannot send %r to %s: not connected', message, key)
            return
        self._write(link, FrameBuffer.frame(message.to_wire()))

    def broadcast(self, message: Message, exclude: PeerKey | None = None) -> None:
        data = FrameBuffer.frame(message.to_wire())
        for key, link in list(self._links.items()):
            if key != exclude:
                self._write(link, data)

    def sweep_stale_peers(self) -> list[PeerInfo]:
        """Disconnect the peers that were not heard from within the stale timeout and return them"""
        stale_peers = self.registry.stale_peers(self.configuration.stale_timeout)
        for peer in stale_peers:
            logger.info('Disconnecting stale peer %s (last seen %.0f seconds ago)', peer.key, self.registry.clock() - peer.last_seen)
            link = self._links.pop(peer.key, None)
            if link is not None:
                link.abort()
            self.registry.remove(peer.key)
            self._emit(PeerLeft(peer))
        return stale_peers

    def _connected_peer(self, key: PeerKey) -> PeerInfo | None:
        if key not in self._links:
            return None
        peer = self.registry.get(key)
        return None if peer is None else replace(peer)

    def _local_record(self) -> PeerRecord:
        return PeerRecord.now(nickname=self.nickname, port=self._listening_port, platform=self.platform)

    def _emit(self, event: NodeEvent) -> None:
        if not self._stopped:
            self._emit_event(event)

    def _spawn(self, coroutine: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coroutine, name=name)
        self._task_list.add(task)
        task.add_done_callback(self._task_list.discard)

    @staticmethod
    def _write(link: PeerLink, data: bytes) -> None:
        try:
            link.send(data)
        except aio.ClosedResourceError:
            logger.warning('Failed to send to %s: the connection is closed', link.key)
        except aio.BrokenResourceError as exc:
            logger.warning('Failed to send to %s: %s', link.key, exc.__cause__ or 'the connection is broken')

    def _add_link(self, link: PeerLink) -> PeerInfo:
        self._links[link.key] = link
        return self.registry.add(link.key)

    def _drop_link(self, link: PeerLink, *, error: Exception | None = None) -> None:
        link.abort()
        if self._links.get(link.key) is not link:
            return  # already dropped
        del self._links[link.key]
        peer = self.registry.remove(link.key)
        if error is not None:
            self._emit(ConnectionFailed(error, link.key))
        if peer is not None:
            self._emit(PeerLeft(peer))

    async def _client_connected_callback(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        address, port = writer.get_extra_info('peername')[:2]
        key = PeerKey(address, port)  # the remote port of an inbound connection is ephemeral
        link = PeerLink(reader, writer, key=key, direction=LinkDirection.inbound)
        if self._stopped or key in self._links:
            link.abort()
            return
        peer = self._add_link(link)
        logger.info('Accepted connection from %s', key)
        self._emit(PeerJoined(replace(peer)))
        self._spawn(self._link_handler(link), name=f'link handler [{key!s}]')

    async def _link_handler(self, link: PeerLink) -> None:
        error: Exception | None = None
        try:
            async for message in link:
                self.registry.touch(link.key)
                try:
                    self._message_handler(message, link.key)
                except Exception:
                    logger.exception('Failed to handle %r from %s', message, link.key)
        except aio.BrokenResourceError as exc:
            error = exc.__cause__ if isinstance(exc.__cause__, Exception) else exc
            logger.warning('Connection with %s failed: %s', link.key, error)
        else:
            logger.info('Connection with %s closed', link.key)
        finally:
            self._drop_link(link, error=error)

    async def _connect_to_bootstrap_peers(self) -> None:
        async with asyncio.TaskGroup() as group:
            for peer in self.configuration.bootstrap_peers:
                group.create_task(self._connect_to_bootstrap_peer(peer))

    async def _connect_to_bootstrap_peer(self, peer: BootstrapPeer) -> None:
        port = peer.port or self.configuration.port
        try:
            await self.connect_to(peer.address, port)
        except PeerConnectionError as exc:
            self._emit(ConnectionFailed(exc, PeerKey(peer.address, port)))

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.configuration.sweep_interval)
            self.sweep_stale_peers()

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.configuration.ping_interval)
            if self._links:
                self.broadcast(Message.ping())


class PeerConnectionError(ConnectionError):
    pass
