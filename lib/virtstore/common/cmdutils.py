# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Helpers for running the external tools used by storage backends.
"""

import errno
import os
import re
import shutil

from virtstore.common import errors

# Characters that never need quoting when a command is pasted into a shell.
_unsafe = re.compile(r"[^A-Za-z0-9_%+,\-./:=@]").search


class CommandPath(object):
    """
    Location of a storage tool.

    The first existing path in paths wins. If none exists, the tool is
    looked up in $PATH unless search_path is False. The result is cached
    on first use, so a missing tool fails only when a backend needs it.
    """

    def __init__(self, name, *paths, search_path=True):
        self.name = name
        self.paths = paths
        self._search_path = search_path
        self._cmd = None

    @property
    def cmd(self):
        if self._cmd is None:
            self._cmd = self._lookup()
        return self._cmd

    def _lookup(self):
        for path in self.paths:
            if os.path.exists(path):
                return path
        found = shutil.which(self.name) if self._search_path else None
        if found is None:
            raise OSError(errno.ENOENT,
                          "%s: %s" % (os.strerror(errno.ENOENT), self.name))
        return found

    def __str__(self):
        return str(self.cmd)

    __repr__ = __str__


def command_log_line(args, cwd=None):
    """
    Return a log line for running args in cwd, quoted so it can be copied
    into a shell when debugging a backend.
    """
    words = [_quote(str(a)) for a in args]
    return "%s (cwd %s)" % (" ".join(words), cwd)


def retcode_log_line(code, err=None):
    result = "SUCCESS" if code == 0 else "FAILED"
    return "%s: <err> = %r; <rc> = %r" % (result, err, code)


def _quote(word):
    if word and not _unsafe(word):
        return word
    return "'" + word.replace("'", r"'\''") + "'"


class Error(errors.Base):
    msg = ("Command {self.cmd} failed with rc={self.rc} out={self.out!r} "
           "err={self.err!r}")

    def __init__(self, cmd, rc, out, err):
        self.cmd = cmd
        self.rc = rc
        self.out = out
        self.err = err


class TimeoutExpired(errors.Base):
    msg = "Timeout waiting for process pid={self.pid}"

    def __init__(self, pid):
        self.pid = pid
