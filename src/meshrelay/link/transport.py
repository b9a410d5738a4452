# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

__all__ = 'PeerLink',  # noqa: COM818


import asyncio
import logging
from typing import ClassVar, Self

from meshrelay import aio
from meshrelay.link.common import FrameBuffer, FramingError, LinkDirection
from meshrelay.messages import Message
from meshrelay.peers import PeerKey

logger = logging.getLogger(__name__)


class PeerLink:
    """
    A stream connection with a peer that carries length prefixed messages.

    Received frames that do not decode into a valid message are dropped
    without affecting the connection. A frame whose announced length can
    never hold a message makes the stream unusable, so the link is aborted.

    Writes are not flow controlled: send() hands the data to the transport
    and returns immediately.
    """

    read_size: ClassVar[int] = 16384

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, *, key: PeerKey, direction: LinkDirection) -> None:
        self.key = key
        self.direction = direction
        self._reader = reader
        self._writer = writer
        self._input_buffer = FrameBuffer()
        self._closed = False

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.key!s} {self.direction}>'

    async def receive(self) -> Message:
        """
        Return the next message received from the peer.

        Raises ClosedResourceError when the link was closed by either side
        and BrokenResourceError when the connection failed.
        """
        while True:
            if self._closed:
                raise aio.ClosedResourceError
            try:
                for frame in self._input_buffer:
                    message = Message.decode(frame)
                    if message is not None:
                        return message
            except FramingError as exc:
                logger.warning('Aborting link with %s: %s', self.key, exc)
                self.abort()
                raise aio.BrokenResourceError from exc
            data = await self._read_data()
            self._input_buffer.write(data)

    def send(self, data: bytes) -> None:
        """Write already framed data to the peer"""
        if self._closed:
            raise aio.ClosedResourceError
        if self._writer.is_closing():
            raise aio.BrokenResourceError
        try:
            self._writer.write(data)
        except OSError as exc:
            raise aio.BrokenResourceError from exc

    def abort(self) -> None:
        """Close the connection immediately, discarding any unsent data"""
        self._closed = True
        self._input_buffer.clear()
        self._writer.transport.abort()

    async def _read_data(self) -> bytes:
        try:
            data = await self._reader.read(self.read_size)
        except OSError as exc:  # this includes ConnectionResetError, BrokenPipeError and TimeoutError
            self._closed = True
            raise aio.BrokenResourceError from exc
        if not data:
            self._closed = True
            raise aio.ClosedResourceError
        return data

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> Message:
        try:
            return await self.receive()
        except aio.ClosedResourceError as exc:
            raise StopAsyncIteration from exc
