# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from collections.abc import Callable
from dataclasses import dataclass

from meshrelay.messages import PeerRecord
from meshrelay.peers import PeerInfo, PeerKey

__all__ = 'NodeEvent', 'EventSink', 'MessageReceived', 'PeerJoined', 'PeerLeft', 'ConnectionFailed', 'PeerDiscovered'  # noqa: RUF022


@dataclass(frozen=True, slots=True)
class MessageReceived:
    sender: str
    text: str
    is_own: bool


@dataclass(frozen=True, slots=True)
class PeerJoined:
    peer: PeerInfo


@dataclass(frozen=True, slots=True)
class PeerLeft:
    peer: PeerInfo


@dataclass(frozen=True, slots=True)
class ConnectionFailed:
    error: Exception
    key: PeerKey | None = None


@dataclass(frozen=True, slots=True)
class PeerDiscovered:
    record: PeerRecord
    key: PeerKey


type NodeEvent = MessageReceived | PeerJoined | PeerLeft | ConnectionFailed | PeerDiscovered
type EventSink = Callable[[NodeEvent], None]
