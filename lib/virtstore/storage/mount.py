# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

import errno
import logging
import os
import re

from collections import namedtuple

from virtstore.common import cmdutils
from virtstore.common import commands

MountRecord = namedtuple("MountRecord", "fs_spec fs_file fs_vfstype "
                         "fs_mntops fs_freq fs_passno")

_PROC_MOUNTS_PATH = '/proc/mounts'

_DELETED_SUFFIX = ' (deleted)'
_ESCAPED_SPACES = re.compile(r"\\[0-7]{3}")

_mount_cmd = cmdutils.CommandPath("mount", "/usr/bin/mount", "/bin/mount")
_umount_cmd = cmdutils.CommandPath("umount", "/usr/bin/umount",
                                   "/bin/umount")

# Timeout for mount and umount commands. Mounting a hung NFS export may block
# forever.
MOUNT_TIMEOUT = 60


class MountError(cmdutils.Error):
    """
    Raised when "mount" or "umount" command failed.
    """


def _normalize_path(path):
    # NFS4 mounts show the export with a double slash.
    if path.startswith("/"):
        return os.path.normpath(path)
    if ":/" in path:
        host, export = path.split(":", 1)
        return "%s:%s" % (host, os.path.normpath(export))
    return path


def _parse_line(line):
    (fs_spec, fs_file, fs_vfstype, fs_mntops,
     fs_freq, fs_passno) = line.split()[:6]
    fs_mntops = fs_mntops.split(",")
    fs_freq = int(fs_freq)
    fs_passno = int(fs_passno)

    fs_spec = _normalize_path(_unescape_spaces(fs_spec))

    fs_file = _unescape_spaces(fs_file)
    if fs_file.endswith(_DELETED_SUFFIX):
        fs_file = fs_file[:-len(_DELETED_SUFFIX)]

    return MountRecord(fs_spec, fs_file, fs_vfstype, fs_mntops,
                       fs_freq, fs_passno)


def _unescape_spaces(path):
    return _ESCAPED_SPACES.sub(lambda s: chr(int(s.group()[1:], 8)), path)


def iter_mounts(path=None):
    with open(path or _PROC_MOUNTS_PATH, "r") as f:
        for line in f:
            if line.strip():
                yield _parse_line(line)


def read_mounts(path=None):
    """
    Return list of MountRecord. Callers checking many storages pass the
    result to is_mounted, so /proc/mounts is read once per request.
    """
    return list(iter_mounts(path))


def is_mounted(target, mounts=None):
    """
    Check if target is mounted at least once.
    """
    if mounts is None:
        mounts = iter_mounts()
    target = os.path.normpath(target)
    return any(rec.fs_file == target for rec in mounts)


class Mount(object):

    log = logging.getLogger("storage.Mount")

    def __init__(self, fs_spec, fs_file):
        self.fs_spec = fs_spec
        self.fs_file = fs_file

    def __eq__(self, other):
        return (self.__class__ == other.__class__ and
                self.fs_spec == other.fs_spec and
                self.fs_file == other.fs_file)

    def __ne__(self, other):
        return not self == other

    def __hash__(self):
        return hash((self.__class__, self.fs_spec, self.fs_file))

    def mount(self, mntOpts=None, vfstype=None):
        self.log.info("mounting %s at %s", self.fs_spec, self.fs_file)
        cmd = [_mount_cmd.cmd]

        if vfstype is not None:
            cmd.extend(("-t", vfstype))

        if mntOpts:
            cmd.extend(("-o", mntOpts))

        cmd.extend((self.fs_spec, self.fs_file))
        _runcmd(cmd)

    def umount(self, force=False, lazy=False):
        self.log.info("unmounting %s", self.fs_file)
        cmd = [_umount_cmd.cmd]
        if force:
            cmd.append("-f")

        if lazy:
            cmd.append("-l")

        cmd.append(self.fs_file)
        _runcmd(cmd)

    def is_mounted(self, mounts=None):
        try:
            self.get_record(mounts)
        except OSError:
            return False

        return True

    def get_record(self, mounts=None):
        if mounts is None:
            mounts = iter_mounts()
        fs_spec = _normalize_path(self.fs_spec)
        for record in mounts:
            if self.fs_file == record.fs_file and record.fs_spec == fs_spec:
                return record

        raise OSError(errno.ENOENT,
                      "Mount of `%s` at `%s` does not exist" %
                      (self.fs_spec, self.fs_file))

    def __repr__(self):
        return ("<%s fs_spec='%s' fs_file='%s'>" %
                (self.__class__.__name__, self.fs_spec, self.fs_file))


def _runcmd(cmd):
    try:
        commands.run(cmd, timeout=MOUNT_TIMEOUT)
    except cmdutils.Error as e:
        raise MountError(e.cmd, e.rc, e.out, e.err)
