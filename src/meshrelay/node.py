# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
import time
from collections.abc import Callable
from typing import Self

from meshrelay import aio
from meshrelay.configuration import NodeConfiguration
from meshrelay.events import ConnectionFailed, MessageReceived, NodeEvent
from meshrelay.link import ConnectionManager, PeerConnectionError
from meshrelay.messages import Message, PeerRecord
from meshrelay.peers import PeerInfo, PeerKey, PeerRegistry
from meshrelay.routing import Router

__all__ = 'MeshNode',  # noqa: COM818


logger = logging.getLogger(__name__)


class MeshNode:
    """
    A node in the mesh.

    Events (received messages, peers joining and leaving, connection errors
    and peer discoveries) are delivered through the events channel, which
    is closed when the node stops:

        async for event in node.events:
            ...

    """

    events: aio.Channel[NodeEvent]

    def __init__(self, configuration: NodeConfiguration | None = None, *, clock: Callable[[], float] = time.time) -> None:
        self.configuration = configuration if configuration is not None else NodeConfiguration()
        self.events = aio.Channel[NodeEvent]()
        self.registry = PeerRegistry(clock=clock)
        self.manager = ConnectionManager(self.configuration, self.registry, emit=self._emit)
        self.router = Router(self.manager, self.registry, emit=self._emit, dedup_capacity=self.configuration.dedup_capacity)
        self.manager.set_message_handler(self.router.on_message_decoded)

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.nickname!r} port={self.listening_port}>'

    @property
    def nickname(self) -> str:
        return self.manager.nickname

    @property
    def listening_port(self) -> int | None:
        return self.manager.listening_port

    async def start(self, port: int | None = None) -> None:
        await self.manager.start(port)
        logger.info('Mesh node %r started', self.nickname)

    async def stop(self) -> None:
        await self.manager.stop()
        self.events.close()
        logger.info('Mesh node %r stopped', self.nickname)

    async def connect_to_peer(self, address: str, port: int) -> PeerInfo:
        try:
            return await self.manager.connect_to(address, port)
        except PeerConnectionError as exc:
            self._emit(ConnectionFailed(exc, PeerKey(address, port)))
            raise

    def send_message(self, text: str, ttl: int | None = None) -> Message:
        """Send a chat message to the whole mesh and return it"""
        message = Message.chat(text, ttl=self.configuration.default_ttl if ttl is None else ttl)
        self.router.originate(message)
        self._emit(MessageReceived(self.nickname, text, is_own=True))
        return message

    def send_ping(self, key: PeerKey) -> None:
        self.manager.send(Message.ping(), key)

    def announce_discovery(self) -> Message:
        """Let the peers up to two hops away know about this node"""
        record = PeerRecord.now(nickname=self.nickname, port=self.listening_port, platform=self.manager.platform)
        message = Message.peer_discovery(record)
        self.router.originate(message)
        return message

    def get_peer_list(self) -> list[PeerInfo]:
        return self.registry.snapshot()

    def _emit(self, event: NodeEvent) -> None:
        if self.events.closed:
            return
        self.events.send_nowait(event)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        await self.stop()
