# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later


__all__ = 'WouldBlock', 'ClosedResourceError', 'BrokenResourceError', 'EndOfChannel'


class WouldBlock(Exception):
    """Raised by ``X_nowait`` functions if ``X`` would block."""


class ClosedResourceError(Exception):
    """
    Raised when attempting to use a resource after it has been closed.

    For a peer link this means that either this side closed the link, or
    the remote peer closed their end of the connection in an orderly way.

    """


class BrokenResourceError(Exception):
    """
    Raised when a resource fails due to external causes.

    For example a connection reset, a write on a socket whose remote end is
    gone, or a stream that carries data which cannot possibly be framed.
    The ``__cause__`` attribute usually holds the underlying error.

    """


class EndOfChannel(Exception):
    """
    Raised when trying to receive from an :class:`aio.Channel` that was
    closed and has no more data to deliver.

    """
