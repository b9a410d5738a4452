# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace
from typing import NamedTuple

__all__ = 'PeerKey', 'PeerInfo', 'PeerRegistry'


class PeerKey(NamedTuple):
    """The identity of a peer: the address and port of its end of the connection"""

    address: str
    port: int

    def __str__(self) -> str:
        return f'{self.address}:{self.port}'


@dataclass(slots=True)
class PeerInfo:
    address: str
    port: int
    nickname: str | None = None
    last_seen: float = 0.0
    hop_count: int = 1  # informational, routing never adjusts it

    @property
    def key(self) -> PeerKey:
        return PeerKey(self.address, self.port)

    @property
    def display_name(self) -> str:
        return self.nickname or str(self.key)


class PeerRegistry:
    """
    The peers this node has a connection with.

    The registry only keeps the records; the connection manager decides when
    peers are added or removed. Times are taken from the clock given at
    creation (time.time by default).
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._peers: dict[PeerKey, PeerInfo] = {}

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {len(self._peers)} peers>'

    def __contains__(self, key: object) -> bool:
        return key in self._peers

    def __iter__(self) -> Iterator[PeerInfo]:
        return iter(list(self._peers.values()))

    def __len__(self) -> int:
        return len(self._peers)

    def add(self, key: PeerKey) -> PeerInfo:
        if key in self._peers:
            raise KeyError(f'peer {key!s} is already registered')
        peer = self._peers[key] = PeerInfo(key.address, key.port, last_seen=self.clock())
        return peer

    def get(self, key: PeerKey) -> PeerInfo | None:
        return self._peers.get(key)

    def remove(self, key: PeerKey) -> PeerInfo | None:
        return self._peers.pop(key, None)

    def clear(self) -> None:
        self._peers.clear()

    def touch(self, key: PeerKey) -> None:
        """Record that the peer was just heard from"""
        peer = self._peers.get(key)
        if peer is not None:
            peer.last_seen = self.clock()

    def set_nickname(self, key: PeerKey, nickname: str) -> None:
        peer = self._peers.get(key)
        if peer is not None:
            peer.nickname = nickname

    def stale_peers(self, threshold: float) -> list[PeerInfo]:
        """Return the peers that were not heard from for more than threshold seconds"""
        now = self.clock()
        return [peer for peer in self._peers.values() if now - peer.last_seen > threshold]

    def snapshot(self) -> list[PeerInfo]:
        return [replace(peer) for peer in self._peers.values()]
