# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later


class expose(object):
    def __init__(self, name):
        self.name = name

    def __call__(self, fun):
        fun._virtstore_tool = {"name": self.name}
        return fun


class UsageError(RuntimeError):
    """ Raise on runtime when usage is invalid """
