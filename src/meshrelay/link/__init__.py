# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from .common import FrameBuffer, FramingError, LinkDirection
from .management import ConnectionManager, PeerConnectionError
from .transport import PeerLink

__all__ = 'ConnectionManager', 'PeerConnectionError', 'PeerLink', 'FrameBuffer', 'FramingError', 'LinkDirection'  # noqa: RUF022
