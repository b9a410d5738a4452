# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import struct
from collections.abc import Iterator
from enum import StrEnum
from typing import ClassVar, Self

from meshrelay.messages import Message

__all__ = 'LinkDirection', 'FrameBuffer', 'FramingError'


class LinkDirection(StrEnum):
    inbound = 'inbound'
    outbound = 'outbound'


class FrameBuffer(Iterator[bytes]):
    """
    Split a byte stream into length prefixed frames.

    Each frame is a 32-bit big endian length followed by that many bytes.
    Received data is added with write() and complete frames are obtained by
    iterating the buffer. Iteration stops when the buffer doesn't hold a
    complete frame, keeping the partial frame until more data is written.
    """

    _prefix: ClassVar[struct.Struct] = struct.Struct('!I')

    max_frame_length: ClassVar[int] = Message.max_length

    def __init__(self, initial_data: bytes | bytearray = b'', /) -> None:
        self._buffer = bytearray(initial_data)

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({bytes(self._buffer)!r})'

    def __len__(self) -> int:
        return len(self._buffer)

    def __iter__(self) -> Self:
        return self

    def __next__(self) -> bytes:
        prefix_length = self._prefix.size
        buffer_length = len(self._buffer)
        if buffer_length < prefix_length:
            raise StopIteration
        (frame_length,) = self._prefix.unpack_from(self._buffer)
        if frame_length > self.max_frame_length:
            raise FramingError(f'Frame length exceeds the maximum message size ({frame_length} > {self.max_frame_length})')
        total_length = prefix_length + frame_length
        if buffer_length < total_length:
            raise StopIteration
        frame = bytes(self._buffer[prefix_length:total_length])
        self._buffer[0:total_length] = b''
        return frame

    @classmethod
    def frame(cls, data: bytes) -> bytes:
        """Prefix data with its length"""
        return cls._prefix.pack(len(data)) + data

    def clear(self) -> None:
        self._buffer.clear()

    def write(self, data: bytes | bytearray) -> None:
        self._buffer.extend(data)


class FramingError(ValueError):
    """Raised when a stream announces a frame that cannot hold a valid message"""
