# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

import logging
import os
import re

from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import mount
from virtstore.storage import plugin
from virtstore.storage import volname

_PATH = re.compile(r"^/[-/a-zA-Z0-9_.]+$")

# Options shared by all path based storages.
PATH_OPTIONS = {
    "path": {"fixed": True},
    "content-dirs": {"optional": True},
    "nodes": {"optional": True},
    "disable": {"optional": True},
    "maxfiles": {"optional": True},
    "prune-backups": {"optional": True},
    "max-protected-backups": {"optional": True},
    "content": {"optional": True},
    "format": {"optional": True},
    "mkdir": {"optional": True},
    "create-base-path": {"optional": True},
    "create-subdirs": {"optional": True},
    "bwlimit": {"optional": True},
    "preallocation": {"optional": True},
}


def mountpoint(scfg):
    """
    Return the path expected to be a mount point, or None.

    The is_mountpoint property is either a boolean, meaning the storage path
    itself, or a path.
    """
    value = scfg.get("is_mountpoint")
    if value is None:
        return None
    flag = plugin.parse_boolean(value)
    if flag is None:
        return value
    return scfg["path"] if flag else None


def _path_is_mounted(path, mounts):
    path = os.path.realpath(path)
    if not os.path.exists(path):
        return False
    return mount.is_mounted(path, mounts)


def _mounts(cache):
    if cache is None:
        return mount.read_mounts()
    if "mountdata" not in cache:
        cache["mountdata"] = mount.read_mounts()
    return cache["mountdata"]


class BackupAttributes(object):
    """
    Notes and protection of backup archives, kept in files next to the
    archive.
    """

    def get_volume_notes(self, storeid, scfg, name, timeout=None):
        vol = self.parse_volname(name)
        if vol.vtype != sc.CONTENT_BACKUP:
            return None
        path = self.filesystem_path(scfg, name) + volname.NOTES_EXT
        try:
            with open(path, "rb") as f:
                data = f.read()
        except FileNotFoundError:
            return ""
        return data.decode("utf-8", "replace")

    def update_volume_notes(self, storeid, scfg, name, notes, timeout=None):
        vol = self.parse_volname(name)
        if vol.vtype != sc.CONTENT_BACKUP:
            raise se.UnsupportedOperation(
                "update_volume_notes", "only backups can have notes")
        path = self.filesystem_path(scfg, name) + volname.NOTES_EXT
        if notes:
            plugin.write_file(path, notes.encode("utf-8"))
        else:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

    def get_volume_attribute(self, storeid, scfg, name, attribute):
        if attribute == "notes":
            return self.get_volume_notes(storeid, scfg, name)

        vol = self.parse_volname(name)
        if vol.vtype != sc.CONTENT_BACKUP:
            return None

        if attribute == "protected":
            path = self.filesystem_path(scfg, name)
            return os.path.exists(volname.protection_file_path(path))

        return None

    def update_volume_attribute(self, storeid, scfg, name, attribute, value):
        if attribute == "notes":
            return self.update_volume_notes(storeid, scfg, name, value)

        vol = self.parse_volname(name)
        if vol.vtype != sc.CONTENT_BACKUP:
            raise se.UnsupportedOperation(
                "update_volume_attribute",
                "only backups support attribute %r" % attribute)

        if attribute != "protected":
            raise se.UnsupportedOperation(
                "update_volume_attribute",
                "attribute %r is not supported for %s storage" %
                (attribute, self.type))

        path = volname.protection_file_path(self.filesystem_path(scfg, name))
        if value:
            if not os.path.exists(path):
                with open(path, "w"):
                    pass
        else:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass


def create_base_path(scfg, path):
    create = scfg.get("create-base-path")
    if create is None:
        create = scfg.get("mkdir", True)
    if create:
        os.makedirs(path, exist_ok=True)


@plugin.register
class DirPlugin(BackupAttributes, plugin.Plugin):

    log = logging.getLogger("storage.DirPlugin")

    type = "dir"
    content = frozenset(sc.CONTENT_TYPES + (sc.CONTENT_NONE,))
    default_content = frozenset((sc.CONTENT_IMAGES, sc.CONTENT_ROOTDIR))
    formats = frozenset(sc.FILE_FORMATS)
    default_format = sc.FORMAT_RAW

    options = dict(PATH_OPTIONS, **{
        "shared": {"optional": True},
        "is_mountpoint": {"optional": True},
    })

    def check_config(self, storeid, opts, create):
        if create and not _PATH.match(opts.get("path", "")):
            raise se.ConfigError(
                "path",
                "illegal path for directory storage: %s" % opts.get("path"))
        return opts

    def status(self, storeid, scfg, cache=None):
        mp = mountpoint(scfg)
        if mp is not None and not _path_is_mounted(mp, _mounts(cache)):
            return None
        return super().status(storeid, scfg, cache)

    def activate_storage(self, storeid, scfg, cache=None):
        path = scfg["path"]
        mp = mountpoint(scfg)
        if mp is not None and not _path_is_mounted(mp, _mounts(cache)):
            raise se.StorageNotActive(
                "unable to activate storage %s - directory is expected to "
                "be a mount point but is not mounted: %s" % (storeid, mp))

        create_base_path(scfg, path)
        super().activate_storage(storeid, scfg, cache)
