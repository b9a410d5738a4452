# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from .dedup import DeduplicationCache
from .router import MessageTransport, Router

__all__ = 'DeduplicationCache', 'MessageTransport', 'Router'
