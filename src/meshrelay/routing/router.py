# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
from collections.abc import Callable
from typing import Protocol

from meshrelay.events import EventSink, MessageReceived, PeerDiscovered
from meshrelay.messages import Message, MessageType, PeerRecord
from meshrelay.peers import PeerKey, PeerRegistry

from .dedup import DeduplicationCache

__all__ = 'Router', 'MessageTransport'


logger = logging.getLogger(__name__)


class MessageTransport(Protocol):
    def send(self, message: Message, key: PeerKey, /) -> None: ...

    def broadcast(self, message: Message, /, exclude: PeerKey | None = None) -> None: ...


type MessageHandler = Callable[[Message, PeerKey], None]


class Router:
    """
    Flood router.

    Every message seen for the first time is handled according to its type
    and then relayed to all the other peers with its TTL decreased by one,
    unless its TTL is already 0. Pings are the exception: they are answered
    with a pong to the sender and never relayed.
    """

    def __init__(self, transport: MessageTransport, registry: PeerRegistry, *, emit: EventSink, dedup_capacity: int = DeduplicationCache.default_capacity) -> None:
        self.transport = transport
        self.registry = registry
        self.cache = DeduplicationCache(dedup_capacity)
        self._emit = emit
        self._handlers: dict[MessageType, MessageHandler] = {
            MessageType.ping: self._handle_ping,
            MessageType.pong: self._handle_pong,
            MessageType.peer_discovery: self._handle_peer_discovery,
            MessageType.peer_announcement: self._handle_peer_announcement,
            MessageType.chat_message: self._handle_chat_message,
        }

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {len(self.cache)} known messages>'

    def on_message_decoded(self, message: Message, from_key: PeerKey) -> None:
        if self.cache.check(message.id):
            logger.debug('Dropped duplicate %r from %s', message, from_key)
            return
        handler = self._handlers.get(message.type)  # type: ignore[call-overload]
        if handler is not None:
            handler(message, from_key)
        if message.type is MessageType.ping:
            return
        if message.ttl > 0:
            self.transport.broadcast(message.forwarded(), exclude=from_key)

    def originate(self, message: Message) -> None:
        """Send a message created by this node to all peers"""
        # remember our own message so it is not handled again when it floods back
        self.cache.check(message.id)
        self.transport.broadcast(message)

    def _handle_ping(self, _: Message, from_key: PeerKey) -> None:
        self.transport.send(Message.pong(), from_key)

    def _handle_pong(self, _: Message, from_key: PeerKey) -> None:
        self.registry.touch(from_key)

    def _handle_peer_discovery(self, message: Message, from_key: PeerKey) -> None:
        try:
            record = PeerRecord.from_payload(message.payload)
        except ValueError as exc:
            logger.warning('Invalid peer discovery from %s: %s', from_key, exc)
            return
        logger.debug('Peer discovery from %s: %r', from_key, record)
        self._emit(PeerDiscovered(record, from_key))

    def _handle_peer_announcement(self, message: Message, from_key: PeerKey) -> None:
        try:
            record = PeerRecord.from_payload(message.payload)
        except ValueError as exc:
            logger.warning('Invalid peer announcement from %s: %s', from_key, exc)
            return
        if record.nickname:
            self.registry.set_nickname(from_key, record.nickname)
            self.registry.touch(from_key)

    def _handle_chat_message(self, message: Message, from_key: PeerKey) -> None:
        peer = self.registry.get(from_key)
        sender = peer.display_name if peer is not None else str(from_key)
        self._emit(MessageReceived(sender, message.text(), is_own=False))
