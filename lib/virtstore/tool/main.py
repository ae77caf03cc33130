# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
virtstore-tool - manage storages from the command line.

Usage: virtstore-tool [-v] COMMAND [ARGS...]

Exit code is 0 on success, 1 if the command failed, and 2 on usage errors.
"""

import logging
import sys
import textwrap

from virtstore.common.config import config
from virtstore.common.exception import VirtstoreException
from virtstore.tool import UsageError
from virtstore.tool import storage

LOG_FORMAT = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"

_MODULES = (storage,)


def commands():
    """
    Return dict command name -> function of the exposed commands.
    """
    res = {}
    for module in _MODULES:
        for name in dir(module):
            func = getattr(module, name)
            tool = getattr(func, "_virtstore_tool", None)
            if tool is not None:
                res[tool["name"]] = func
    return res


def usage(cmds, out):
    out.write("Usage: virtstore-tool [-v] COMMAND [ARGS...]\n\n")
    out.write("Commands:\n")
    for name in sorted(cmds):
        doc = textwrap.dedent(cmds[name].__doc__ or "").strip()
        lines = doc.splitlines()
        synopsis = lines[0] if lines else name
        out.write("  %s\n" % synopsis)
        for line in lines[1:]:
            out.write("      %s\n" % line)
    out.write("\nUse 'virtstore-tool COMMAND --help' for command options.\n")


def setup_logging(verbose=False):
    level = "DEBUG" if verbose else config.get("logging", "level").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    argv = list(argv)
    cmds = commands()

    verbose = False
    if argv and argv[0] in ("-v", "--verbose"):
        verbose = True
        argv = argv[1:]

    if not argv:
        usage(cmds, sys.stderr)
        return 2

    if argv[0] in ("-h", "--help", "help"):
        usage(cmds, sys.stdout)
        return 0

    name, args = argv[0], argv[1:]
    func = cmds.get(name)
    if func is None:
        sys.stderr.write("virtstore-tool: unknown command %r\n\n" % name)
        usage(cmds, sys.stderr)
        return 2

    setup_logging(verbose)

    try:
        func(*args)
    except UsageError as e:
        sys.stderr.write("virtstore-tool %s: %s\n" % (name, e))
        return 2
    except VirtstoreException as e:
        if not e.expected:
            logging.debug("Command %s failed", name, exc_info=True)
        sys.stderr.write("virtstore-tool %s: %s\n" % (name, e))
        return 1
    except (OSError, ValueError) as e:
        logging.debug("Command %s failed", name, exc_info=True)
        sys.stderr.write("virtstore-tool %s: %s\n" % (name, e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
