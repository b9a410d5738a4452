# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import enum
from collections.abc import Buffer, Iterable
from io import BytesIO
from types import UnionType
from typing import ClassVar, Protocol, Self, SupportsBytes, SupportsIndex, SupportsInt, TypeVar, overload, runtime_checkable

__all__ = (  # noqa: RUF022
    # Protocols and types

    'WireData',
    'DataWireProtocol',
    'SizedDataWireProtocol',

    # Adapters

    'CompositeAdapter',

    # Abstract types

    'UnsignedInteger',
    'Enum',
    'Opaque',

    # Concrete types

    'UInt8',
    'UInt16',
    'UInt32',

    'MessageType',
    'MessageTypeAdapter',

    'Opaque16',
)


type WireData = bytes | bytearray | memoryview | BytesIO


# Protocols

@runtime_checkable
class DataWireProtocol(Protocol):
    """The wire protocol for mesh message data elements"""

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self: ...

    def to_wire(self) -> bytes: ...

    def wire_length(self) -> int: ...


class SizedDataWireProtocol(DataWireProtocol, Protocol):
    _size_: ClassVar[int] = NotImplemented


# Helpers

def byte_length(number: int) -> int:
    """Return the number of bytes needed to represent the number"""
    return (number.bit_length() + 7) // 8


# Adapters

class CompositeAdapter[T: SizedDataWireProtocol]:
    """
    Read a fixed size value as the first type in a union that accepts it.

    All the types in the union must have the same byte size. This is used to
    keep values that are not known to a more specific type (like an unknown
    enumeration member) by falling back to a plain integer type.
    """

    _abstract_: ClassVar[bool] = True
    _types_: tuple[type[T], ...] = NotImplemented

    def __init_subclass__(cls, **kw: object) -> None:
        for base in getattr(cls, '__orig_bases__', ()):
            if hasattr(base, '__origin__') and issubclass(base.__origin__, CompositeAdapter):
                match base.__args__[0]:
                    case TypeVar():
                        pass  # new type is still generic
                    case UnionType() as union_type:
                        types: tuple[type[T], ...] = union_type.__args__
                        sizes = {t._size_ for t in types}
                        if NotImplemented in sizes:
                            raise TypeError('All type members must have defined their byte size')
                        if len(sizes) != 1:
                            raise TypeError('All types must have the same byte size')
                        cls._types_ = types
                        cls._abstract_ = False
                    case _:
                        raise TypeError(f'The {cls.__qualname__!r} type can only be parameterized with a union of types or a type variable')
        super().__init_subclass__(**kw)

    @classmethod
    def from_wire(cls, buffer: WireData) -> T:
        size = cls._types_[0]._size_  # all types are of equal size
        if isinstance(buffer, BytesIO):
            data = buffer.read(size)
        else:
            data = buffer[:size]
        if len(data) < size:
            raise ValueError(f'Insufficient data in buffer to extract {' | '.join(_type.__qualname__ for _type in cls._types_)!r}')
        last_error = None
        for item_type in cls._types_:
            try:
                return item_type.from_wire(data)
            except ValueError as exc:
                last_error = exc
        assert last_error is not None  # noqa: S101 (used by type checkers)
        raise last_error from None

    @classmethod
    def to_wire(cls, value: T, /) -> bytes:
        return value.to_wire()

    @classmethod
    def wire_length(cls, value: T, /) -> int:
        return value.wire_length()

    @classmethod
    def validate(cls, value: int, /) -> T:
        for item_type in cls._types_:
            try:
                return item_type(value)  # type: ignore[call-arg]
            except ValueError:
                pass
        raise ValueError(f'Value {value!r} is not valid for {' | '.join(_type.__qualname__ for _type in cls._types_)!r}')


# Data types

type ConvertibleToInt = str | Buffer | SupportsInt | SupportsIndex


# Numeric types

class UnsignedInteger(int):
    _bits_: ClassVar[int] = NotImplemented
    _size_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, bits: int = NotImplemented, **kw: object) -> None:
        if bits is not NotImplemented:
            cls._bits_ = bits
            cls._size_ = bits // 8
        super().__init_subclass__(**kw)

    @overload
    def __new__(cls, x: ConvertibleToInt = ..., /) -> Self: ...

    @overload
    def __new__(cls, x: str | Buffer, /, base: SupportsIndex) -> Self: ...

    def __new__(cls, *args, **kw) -> Self:
        if cls._bits_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract unsigned integer type {cls.__qualname__!r} that does not define its bit length')
        value = super().__new__(cls, *args, **kw)
        if value < 0 or value.bit_length() > cls._bits_:
            raise ValueError(f'Value is out of range for unsigned {cls._bits_}-bits integer: {value!r}')
        return value

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__()})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._size_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract unsigned integer type {cls.__qualname__!r} that does not define its bit length')
        if isinstance(buffer, BytesIO):
            data = buffer.read(cls._size_)
        else:
            data = buffer[:cls._size_]
        if len(data) < cls._size_:
            raise ValueError(f'Insufficient data in buffer to extract {cls.__qualname__!r}')
        return cls.from_bytes(data, byteorder='big')

    def to_wire(self) -> bytes:
        return self.to_bytes(self._size_, byteorder='big')

    def wire_length(self) -> int:
        return self._size_


class UInt8(UnsignedInteger, bits=8):
    pass


class UInt16(UnsignedInteger, bits=16):
    pass


class UInt32(UnsignedInteger, bits=32):
    pass


# Enumeration types

class Enum(enum.IntEnum):
    _size_: ClassVar[int]

    def __init_subclass__(cls, *, size: int = 1, **kw: object) -> None:
        cls._size_ = size
        super().__init_subclass__(**kw)

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if isinstance(buffer, BytesIO):
            data = buffer.read(cls._size_)
        else:
            data = buffer[:cls._size_]
        if len(data) < cls._size_:
            raise ValueError(f'Insufficient data in buffer to extract {cls.__qualname__!r}')
        return cls(int.from_bytes(data, byteorder='big'))

    def to_wire(self) -> bytes:
        return self.to_bytes(self._size_, byteorder='big')

    def wire_length(self) -> int:
        return self._size_


class MessageType(Enum):
    ping = 0x01
    pong = 0x02
    peer_discovery = 0x03
    peer_announcement = 0x04
    chat_message = 0x05
    private_message = 0x06  # reserved, relayed but not handled
    routing_update = 0x07   # reserved, relayed but not handled
    ack = 0x08              # reserved, relayed but not handled


class MessageTypeAdapter(CompositeAdapter[MessageType | UInt8]):
    """Known message types map to MessageType, anything else stays a plain UInt8"""


# Byte strings

class Opaque(bytes):
    """A bytes buffer of up to maxsize bytes, prefixed with its length"""

    _maxsize_: ClassVar[int] = NotImplemented
    _sizelen_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, maxsize: int = NotImplemented, **kw: object) -> None:
        if maxsize is not NotImplemented:
            cls._maxsize_ = maxsize
            cls._sizelen_ = byte_length(maxsize)
        super().__init_subclass__(**kw)

    @overload
    def __new__(cls) -> Self: ...

    @overload
    def __new__(cls, o: Iterable[SupportsIndex] | SupportsIndex | SupportsBytes | Buffer, /) -> Self: ...

    @overload
    def __new__(cls, string: str, /, encoding: str, errors: str = ...) -> Self: ...

    def __new__(cls, *args, **kw):
        if cls._maxsize_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract variable length bytes type {cls.__qualname__!r} that does not define its max size')
        instance = super().__new__(cls, *args, **kw)
        if len(instance) > cls._maxsize_:
            raise ValueError(f'{cls.__qualname__!r} objects can have at most {cls._maxsize_} bytes')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__() if self else ''})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._sizelen_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract variable length bytes type {cls.__qualname__!r} that does not define its max size')
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)
        length_data = buffer.read(cls._sizelen_)
        if len(length_data) < cls._sizelen_:
            raise ValueError(f'Insufficient data in buffer to extract the data length for {cls.__qualname__!r}')
        data_length = int.from_bytes(length_data, byteorder='big')
        opaque_data = buffer.read(data_length)
        if len(opaque_data) < data_length:
            raise ValueError(f'Insufficient data in buffer to extract the data for {cls.__qualname__!r}')
        return cls(opaque_data)

    def to_wire(self) -> bytes:
        return len(self).to_bytes(self._sizelen_, byteorder='big') + self

    def wire_length(self) -> int:
        return self._sizelen_ + len(self)


class Opaque16(Opaque, maxsize=2**16 - 1):
    pass
