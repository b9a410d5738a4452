# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Message Structure

   Every message exchanged between mesh nodes has a fixed 8 byte header
   followed by a variable length payload. All integers are represented
   in network byte order.

     +--------+--------+--------+--------+--------+--------+--------+--------+
     |  type  |  ttl   |               id                  | payload length  |
     +--------+--------+--------+--------+--------+--------+--------+--------+
     |                        payload (0 - 65535 bytes)                      |
     +--------+--------+--------+--------+--------+--------+--------+--------+

   type:  The message type code. Codes 0x01 to 0x08 are defined, of which
      0x06 to 0x08 are reserved. Unknown codes are carried through as is.

   ttl:  The number of hops the message may still travel. Valid values
      are 0 to 7. A node that receives a message with a non-zero ttl
      relays it to its other peers with the ttl decremented by one.

   id:  A 32-bit identifier used by nodes to recognize and drop messages
      they have already seen.

   payload:  UTF-8 text for chat messages, a JSON encoded peer record for
      discovery and announcement messages, empty for the rest.

   On a stream connection each message is additionally prefixed with its
   own length as a 32-bit unsigned integer (see meshrelay.link.common).

"""

import json
import logging
import struct
import time
from dataclasses import dataclass, fields, replace
from io import BytesIO
from secrets import randbelow
from typing import Any, ClassVar, Self

from .datamodel import MessageType, MessageTypeAdapter, Opaque16, UInt8, UInt32, WireData
from .exceptions import ValidationError

__all__ = 'Message', 'MessageType', 'PeerRecord', 'ValidationError', 'new_message_id'  # noqa: RUF022


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Message:
    header_length: ClassVar[int] = 8
    max_ttl: ClassVar[int] = 7
    max_payload_length: ClassVar[int] = 2**16 - 1
    max_length: ClassVar[int] = header_length + max_payload_length

    default_ttl: ClassVar[int] = 3

    type: MessageType | UInt8
    ttl: int
    id: int
    payload: bytes = b''

    def __post_init__(self) -> None:
        try:
            message_type = MessageTypeAdapter.validate(self.type)
        except ValueError as exc:
            raise ValidationError(f'Invalid message type: {self.type!r}') from exc
        if not 0 <= self.ttl <= self.max_ttl:
            raise ValidationError(f'The message TTL must be between 0 and {self.max_ttl}: {self.ttl!r}')
        if not 0 <= self.id <= 0xffffffff:
            raise ValidationError(f'The message id must be an unsigned 32-bit integer: {self.id!r}')
        if len(self.payload) > self.max_payload_length:
            raise ValidationError(f'The message payload can have at most {self.max_payload_length} bytes ({len(self.payload)} given)')
        object.__setattr__(self, 'type', message_type)
        object.__setattr__(self, 'payload', bytes(self.payload))

    def __repr__(self) -> str:
        type_name = self.type.name if isinstance(self.type, MessageType) else f'{self.type:#04x}'
        return f'{self.__class__.__qualname__}(type={type_name}, ttl={self.ttl}, id={self.id:#010x}, payload={self.payload!r})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        """
        Read a message from the buffer.

        Raises ValueError if the buffer holds too little data for the header
        or for the payload length announced by the header, or if the header
        values are out of range. Any data following the payload is ignored.
        """
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)
        message_type = MessageTypeAdapter.from_wire(buffer)
        ttl = UInt8.from_wire(buffer)
        message_id = UInt32.from_wire(buffer)
        payload = Opaque16.from_wire(buffer)
        return cls(type=message_type, ttl=int(ttl), id=int(message_id), payload=bytes(payload))

    @classmethod
    def decode(cls, data: WireData) -> Self | None:
        """Return the message contained in data, or None if data doesn't hold a valid message"""
        try:
            return cls.from_wire(data)
        except ValueError as exc:
            logger.debug('Dropped undecodable message: %s', exc)
            return None

    def to_wire(self) -> bytes:
        return self.type.to_wire() + UInt8(self.ttl).to_wire() + UInt32(self.id).to_wire() + Opaque16(self.payload).to_wire()

    def wire_length(self) -> int:
        return self.header_length + len(self.payload)

    def forwarded(self) -> Self:
        """Return a copy of this message that has traveled one more hop"""
        if self.ttl == 0:
            raise ValidationError('A message with a TTL of 0 cannot be forwarded')
        return replace(self, ttl=self.ttl - 1)

    def text(self) -> str:
        return self.payload.decode('utf-8', errors='replace')

    # Factories

    @classmethod
    def ping(cls) -> Self:
        return cls(type=MessageType.ping, ttl=1, id=new_message_id())

    @classmethod
    def pong(cls) -> Self:
        return cls(type=MessageType.pong, ttl=0, id=new_message_id())

    @classmethod
    def chat(cls, text: str, ttl: int = default_ttl) -> Self:
        """Create a chat message. Raises ValidationError if the text cannot be encoded as UTF-8."""
        try:
            payload = text.encode()
        except UnicodeEncodeError as exc:
            raise ValidationError(f'The chat text cannot be encoded as UTF-8: {exc.reason}') from exc
        return cls(type=MessageType.chat_message, ttl=ttl, id=new_message_id(text), payload=payload)

    @classmethod
    def peer_discovery(cls, record: 'PeerRecord') -> Self:
        payload = record.to_payload()
        return cls(type=MessageType.peer_discovery, ttl=2, id=new_message_id(payload.decode()), payload=payload)

    @classmethod
    def peer_announcement(cls, record: 'PeerRecord') -> Self:
        return cls(type=MessageType.peer_announcement, ttl=1, id=new_message_id(), payload=record.to_payload())


@dataclass(frozen=True, slots=True, kw_only=True)
class PeerRecord:
    """
    The peer information carried by discovery and announcement messages.

    It is encoded as a JSON object. All fields are optional and the ones
    that are not set are left out of the encoded form. A missing version
    means version 1. Fields this version doesn't know about are ignored.
    """

    current_version: ClassVar[int] = 1

    version: int = current_version
    nickname: str | None = None
    timestamp: int | None = None  # milliseconds since the epoch
    port: int | None = None
    platform: str | None = None

    _field_types: ClassVar[dict[str, type]] = {'version': int, 'nickname': str, 'timestamp': int, 'port': int, 'platform': str}

    @classmethod
    def now(cls, **kw: Any) -> Self:
        return cls(timestamp=time.time_ns() // 1_000_000, **kw)

    @classmethod
    def from_payload(cls, payload: bytes) -> Self:
        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f'Peer record is not valid JSON: {exc!s}') from exc
        except RecursionError as exc:
            raise ValueError('Peer record is nested too deeply') from exc
        if not isinstance(data, dict):
            raise ValueError(f'Peer record must be a JSON object, not {type(data).__name__}')
        values = {}
        for name, value in data.items():
            field_type = cls._field_types.get(name)
            if field_type is None:
                logger.debug('Ignoring unknown peer record field %r', name)
                continue
            if value is None:
                continue
            if not isinstance(value, field_type) or isinstance(value, bool):
                raise ValueError(f'Peer record field {name!r} must be of type {field_type.__name__}, not {type(value).__name__}')
            values[name] = value
        if values.setdefault('version', cls.current_version) < 1:
            raise ValueError(f'Invalid peer record version: {values['version']!r}')
        return cls(**values)

    def to_payload(self) -> bytes:
        data = {field.name: value for field in fields(self) if (value := getattr(self, field.name)) is not None}
        return json.dumps(data, separators=(',', ':'), ensure_ascii=False).encode()


def new_message_id(content: str = '', *, timestamp: int | None = None, nonce: int | None = None) -> int:
    """
    Generate a message id.

    The upper 16 bits are the low 16 bits of the millisecond timestamp and
    the lower 16 bits are a random 16-bit nonce mixed with a hash of the
    content. The hash is computed over the UTF-16 code units of the content
    so that the same text yields the same hash on every implementation.
    """
    if timestamp is None:
        timestamp = time.time_ns() // 1_000_000
    if nonce is None:
        nonce = randbelow(0xffff)
    content_hash = 0
    for (code_unit,) in struct.iter_unpack('!H', content.encode('utf-16-be')):
        content_hash = ((content_hash << 5) - content_hash + code_unit) & 0xffff
    return (((timestamp & 0xffff) << 16) | ((nonce ^ content_hash) & 0xffff)) & 0xffffffff
