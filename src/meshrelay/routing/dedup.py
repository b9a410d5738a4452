# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from typing import ClassVar

__all__ = 'DeduplicationCache',  # noqa: COM818


class DeduplicationCache:
    """
    Remember the ids of the messages seen recently.

    When the number of ids exceeds the capacity, the older half of them is
    forgotten at once. A forgotten id is treated as new if it shows up again.
    """

    default_capacity: ClassVar[int] = 10000

    def __init__(self, capacity: int = default_capacity) -> None:
        if capacity < 1:
            raise ValueError('capacity must be a positive integer')
        self.capacity = capacity
        self._entries: dict[int, None] = {}  # dicts keep insertion order

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(capacity={self.capacity!r})'

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def check(self, message_id: int) -> bool:
        """Return True if the id was seen before, otherwise record it and return False"""
        if message_id in self._entries:
            return True
        self._entries[message_id] = None
        if len(self._entries) > self.capacity:
            entries = list(self._entries)
            self._entries = dict.fromkeys(entries[len(entries) // 2:])
        return False

    def clear(self) -> None:
        self._entries.clear()
