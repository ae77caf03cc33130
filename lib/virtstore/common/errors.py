# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
errors - virtstore internal errors

This module provide internal errors which are not part of the storage api,
helpers for error handling. For public storage errors see
virtstore.storage.exception.
"""


class Base(Exception):
    msg = "Base class for virtstore errors"

    def __str__(self):
        return self.msg.format(self=self)
