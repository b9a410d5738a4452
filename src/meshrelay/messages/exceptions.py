# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later


__all__ = 'ValidationError',  # noqa: COM818


class ValidationError(ValueError):
    """Raised when a message is built with field values outside of their allowed range."""
