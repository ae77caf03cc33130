# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Storage plugins.

A plugin implements the storage operations for one storage type. Plugins are
stateless; the storage configuration (scfg) and storage id are passed to
every operation. This module provides the plugin registry and the Plugin
base class implementing the operations for path based storages, where every
volume is a file below the storage path::

    <path>/images/<vmid>/<name>         disk images
    <path>/private/<vmid>               container directories
    <path>/template/iso/<name>          iso images
    <path>/template/cache/<name>        container templates
    <path>/dump/<name>                  backup archives
    <path>/snippets/<name>              snippets

Backends keeping volumes in other systems (zfs, lvm, rbd) override the image
operations, see backends.ToolPlugin.
"""

import collections
import contextlib
import errno
import glob
import logging
import os
import re
import shutil
import stat

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.common.config import config
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import features
from virtstore.storage import prune
from virtstore.storage import qemuimg
from virtstore.storage import streams
from virtstore.storage import volname

log = logging.getLogger("storage.plugin")

SizeInfo = collections.namedtuple(
    "SizeInfo", "size, format, used, parent, ctime")

_plugins = {}


def register(cls):
    """
    Class decorator registering a plugin class for its storage type.
    """
    if cls.type in _plugins:
        raise RuntimeError("Plugin for type %r already registered" % cls.type)
    _plugins[cls.type] = cls
    return cls


def lookup(storage_type):
    try:
        return _plugins[storage_type]
    except KeyError:
        raise se.ConfigError("type", "unknown storage type %r" % storage_type)


def types():
    return sorted(_plugins)


_TRUE = ("1", "yes", "on", "true")
_FALSE = ("0", "no", "off", "false")


def parse_boolean(value):
    """
    Return True or False for a boolean property value, or None if value is
    not a boolean.
    """
    if isinstance(value, bool):
        return value
    value = str(value).lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return None


def locked(lock):
    """
    Return a context holding lock, a callable returning a context manager.
    If lock is None, nothing is locked.
    """
    if lock is None:
        return contextlib.nullcontext()
    return lock()


def write_file(path, data):
    tmp = path + ".tmp"
    with open(tmp, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def file_size_info(path, timeout=None, format=None):
    """
    Return SizeInfo for an image file or a subvol directory.

    Raises:
        OSError if path does not exist.
        cmdutils.Error if qemu-img failed.
    """
    st = os.stat(path)
    if stat.S_ISDIR(st.st_mode):
        return SizeInfo(0, sc.FORMAT_SUBVOL, 0, None, int(st.st_ctime))

    info = qemuimg.info(path, format=format, timeout=timeout)
    return SizeInfo(
        info["virtual-size"],
        info["format"],
        info.get("actual-size", 0),
        info.get("backing-filename"),
        int(st.st_ctime))


def df(path, timeout):
    """
    Return (total, free, used) bytes of the file system mounted at path.

    Uses an external process, so a hung network file system cannot block the
    caller for more than timeout seconds.
    """
    out = commands.run(
        ["stat", "--file-system", "--format", "%S %b %f %a", path],
        timeout=timeout)
    bsize, blocks, bfree, bavail = (int(x) for x in out.split())
    total = bsize * blocks
    return total, bsize * bavail, total - bsize * bfree


def archive_remove(path):
    """
    Remove a backup archive and its log and notes files.
    """
    if os.path.exists(volname.protection_file_path(path)):
        raise se.VolumeProtected(path)

    log.info("Removing backup archive %s", path)
    os.unlink(path)

    info = volname.archive_info(path)
    dirname = os.path.dirname(path)
    for key in ("logfilename", "notesfilename"):
        if key not in info:
            continue
        aux = os.path.join(dirname, info[key])
        try:
            os.unlink(aux)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Cannot remove %s: %s", aux, e)


def _chattr(flag, path):
    try:
        commands.run(["chattr", flag, path])
    except (cmdutils.Error, OSError) as e:
        log.warning("Cannot change attribute %s of %s: %s", flag, path, e)


class Plugin(object):

    log = logging.getLogger("storage.Plugin")

    # Storage type, used in the configuration section header.
    type = None

    # Content types supported by this storage type, may include "none".
    content = frozenset()

    # Content types used when the configuration does not specify content.
    default_content = frozenset()

    # Image formats supported by this storage type.
    formats = frozenset()

    default_format = None

    # Allowed properties: name -> {"fixed": bool, "optional": bool}. Fixed
    # properties cannot be changed after the storage was created.
    options = {}

    grammar = volname.DIR

    # Name of the capability table, defaults to the storage type.
    feature_table = None

    @property
    def feature_backend(self):
        return self.feature_table or self.type

    def check_config(self, storeid, opts, create):
        """
        Storage type specific validation, called after the generic schema
        validation. May modify and must return opts.
        """
        return opts

    def on_add_hook(self, storeid, scfg, **params):
        pass

    def on_update_hook(self, storeid, scfg, **params):
        pass

    def on_delete_hook(self, storeid, scfg):
        pass

    # Volume names

    def parse_volname(self, name):
        return self.grammar.parse(name)

    def encode_volname(self, vol):
        return self.grammar.encode(vol)

    def get_subdir(self, scfg, vtype):
        path = scfg.get("path")
        if not path:
            raise se.UnsupportedOperation(
                "get_subdir", "storage definition has no path")
        if vtype not in sc.VTYPE_SUBDIRS:
            raise se.ParseError("unknown volume type %r" % vtype)
        subdir = scfg.get("content-dirs", {}).get(vtype)
        if subdir is None:
            subdir = sc.VTYPE_SUBDIRS[vtype]
        return os.path.join(path, subdir)

    def filesystem_path(self, scfg, name, snapname=None):
        vol = self.parse_volname(name)
        if snapname and vol.format not in qemuimg.SNAPSHOT_FORMATS:
            raise se.UnsupportedOperation(
                "path", "can't snapshot this image format")
        subdir = self.get_subdir(scfg, vol.vtype)
        if vol.vtype == sc.CONTENT_IMAGES:
            return os.path.join(subdir, vol.vmid, vol.name)
        return os.path.join(subdir, vol.name)

    def path(self, storeid, scfg, name, snapname=None):
        """
        Return (path, vmid, vtype) for volume name.
        """
        vol = self.parse_volname(name)
        return self.filesystem_path(scfg, name, snapname), vol.vmid, vol.vtype

    def _volume_names(self, storeid, scfg, vmid):
        imagedir = os.path.join(self.get_subdir(scfg, sc.CONTENT_IMAGES),
                                str(vmid))
        try:
            return os.listdir(imagedir)
        except FileNotFoundError:
            return []

    def find_free_diskname(self, storeid, scfg, vmid, fmt=None,
                           add_fmt_suffix=False):
        names = self._volume_names(storeid, scfg, vmid)
        return volname.find_free_disk_name(
            names, vmid, fmt=fmt, add_fmt_suffix=add_fmt_suffix)

    # Image lifecycle

    def alloc_image(self, storeid, scfg, vmid, fmt, name, size):
        """
        Allocate a new image.

        Arguments:
            vmid (str): owner of the new image.
            fmt (str): image format.
            name (str): image file name. If None, use the next free disk
                name for vmid.
            size (int): virtual size in KiB.

        Returns:
            The name of the new volume.
        """
        if fmt not in self.formats:
            raise se.UnsupportedOperation(
                "alloc_image", "unsupported format %r" % fmt)

        vmid = str(vmid)
        imagedir = os.path.join(self.get_subdir(scfg, sc.CONTENT_IMAGES),
                                vmid)
        os.makedirs(imagedir, exist_ok=True)

        if name is None:
            name = self.find_free_diskname(
                storeid, scfg, vmid, fmt, add_fmt_suffix=True)

        volname.validate_disk_name(vmid, name, fmt)

        path = os.path.join(imagedir, name)
        if os.path.lexists(path):
            raise se.AlreadyExists(path)

        if fmt == sc.FORMAT_SUBVOL:
            if size != 0:
                raise se.UnsupportedOperation(
                    "alloc_image", "storage does not support subvol quotas")
            old_umask = os.umask(0o022)
            try:
                os.mkdir(path)
            finally:
                os.umask(old_umask)
        else:
            self.log.info("Creating image %s format=%s size=%sK",
                          path, fmt, size)
            preallocation = qemuimg.preallocation_for(
                fmt, scfg.get("preallocation"))
            try:
                qemuimg.create(path, size="%dK" % size, format=fmt,
                               preallocation=preallocation)
            except Exception:
                self._remove_failed_image(path, imagedir)
                raise

        return "%s/%s" % (vmid, name)

    def _remove_failed_image(self, path, imagedir):
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.log.warning("Cannot remove %s: %s", path, e)
        try:
            os.rmdir(imagedir)
        except OSError:
            pass

    def free_image(self, storeid, scfg, name, isbase, format=None):
        """
        Remove a volume, its snapshots, and its image directory if it became
        empty.
        """
        if self.get_volume_attribute(storeid, scfg, name, "protected"):
            raise se.VolumeProtected(volname.volume_id(storeid, name))

        path = self.filesystem_path(scfg, name)
        if format is None:
            format = self.parse_volname(name).format

        if isbase:
            _chattr("-i", path)

        if format == sc.FORMAT_SUBVOL:
            self.log.info("Removing subvolume directory %s", path)
            shutil.rmtree(path)
        else:
            if not os.path.isfile(path) and not os.path.islink(path):
                self.log.warning("Disk image %s does not exist", path)
                return
            self.log.info("Removing image %s", path)
            os.unlink(path)

        # Other images of the same guest keep the directory.
        try:
            os.rmdir(os.path.dirname(path))
        except OSError as e:
            if e.errno not in (errno.ENOTEMPTY, errno.EEXIST, errno.ENOENT):
                self.log.warning("Cannot remove image directory: %s", e)

    def create_base(self, storeid, scfg, name):
        """
        Convert an image to a base image, which can be cloned but not
        modified.

        Returns:
            The name of the base volume.
        """
        vol = self.parse_volname(name)
        if vol.vtype != sc.CONTENT_IMAGES:
            raise se.UnsupportedOperation(
                "create_base", "only images can be converted to base images")
        if vol.isbase:
            raise se.AlreadyBase(volname.volume_id(storeid, name))
        features.require_feature(
            features.TEMPLATE, self.feature_backend, vol.format,
            features.volume_role(vol.isbase))

        path = self.filesystem_path(scfg, name)
        info = file_size_info(path, format=vol.format)

        if vol.basename:
            expected = "../%s/%s" % (vol.basevmid, vol.basename)
            if info.parent != expected:
                raise se.ParseError(
                    "volume %s has wrong parent %r, expected %r" %
                    (name, info.parent, expected))

        if vol.format in qemuimg.SNAPSHOT_FORMATS:
            if qemuimg.snapshot_list(path, format=vol.format):
                raise se.UnsupportedOperation(
                    "create_base", "volume %s has snapshots" % name)

        newname = re.sub(r"^vm-", "base-", vol.name)
        if newname == vol.name:
            raise se.InvalidName(vol.name, "cannot convert to a base name")

        newvol = vol._replace(name=newname, isbase=True)
        newpath = self.filesystem_path(scfg, self.encode_volname(newvol))
        if os.path.lexists(newpath):
            raise se.AlreadyExists(newpath)

        self.log.info("Converting %s to base image %s", path, newpath)
        os.rename(path, newpath)
        os.chmod(newpath, 0o444)
        _chattr("+i", newpath)

        return self.encode_volname(newvol)

    def clone_image(self, storeid, scfg, name, vmid, snap=None):
        """
        Create a linked clone of a base image, owned by vmid.

        Returns:
            The name of the clone, including the base image name.
        """
        vol = self.parse_volname(name)
        if vol.vtype != sc.CONTENT_IMAGES:
            raise se.UnsupportedOperation(
                "clone_image", "clone only works on images")
        features.require_feature(
            features.CLONE, self.feature_backend, vol.format,
            features.volume_role(vol.isbase, snap))

        vmid = str(vmid)
        imagedir = os.path.join(self.get_subdir(scfg, sc.CONTENT_IMAGES),
                                vmid)
        os.makedirs(imagedir, exist_ok=True)

        newname = self.find_free_diskname(
            storeid, scfg, vmid, sc.FORMAT_QCOW2, add_fmt_suffix=True)
        path = os.path.join(imagedir, newname)
        backing = "../%s/%s" % (vol.vmid, vol.name)

        self.log.info("Creating clone %s of %s", path, backing)
        try:
            qemuimg.create(path, format=sc.FORMAT_QCOW2, backing=backing,
                           backingFormat=vol.format)
        except Exception:
            self._remove_failed_image(path, imagedir)
            raise

        return "%s/%s/%s/%s" % (vol.vmid, vol.name, vmid, newname)

    def rename_volume(self, storeid, scfg, source, target_vmid,
                      target_name=None):
        """
        Move a volume to another owner.

        Returns:
            The volume id of the renamed volume.
        """
        vol = self.parse_volname(source)
        features.require_feature(
            features.RENAME, self.feature_backend, vol.format,
            features.volume_role(vol.isbase))

        target_vmid = str(target_vmid)
        if target_name is None:
            target_name = self.find_free_diskname(
                storeid, scfg, target_vmid, vol.format, add_fmt_suffix=True)
        volname.validate_disk_name(target_vmid, target_name, vol.format)

        source_path = self.filesystem_path(scfg, source)
        target_dir = os.path.join(
            self.get_subdir(scfg, sc.CONTENT_IMAGES), target_vmid)
        target_path = os.path.join(target_dir, target_name)
        if os.path.lexists(target_path):
            raise se.AlreadyExists(target_path)

        os.makedirs(target_dir, exist_ok=True)
        self.log.info("Renaming %s to %s", source_path, target_path)
        os.rename(source_path, target_path)

        newvol = vol._replace(vmid=target_vmid, name=target_name)
        return volname.volume_id(storeid, self.encode_volname(newvol))

    # Listing

    def list_images(self, storeid, scfg, vmid=None, vollist=None,
                    cache=None):
        """
        Return list of image info dicts.

        Arguments:
            vmid (str): if set, list only images of vmid.
            vollist (list): if set, list only these volume ids. Cannot be
                used with vmid.
        """
        if vmid is not None and vollist is not None:
            raise ValueError("vmid and vollist are mutually exclusive")

        imagedir = self.get_subdir(scfg, sc.CONTENT_IMAGES)
        exts = "|".join(re.escape(f) for f in sorted(self.formats))
        name_re = re.compile(r"^(\d+)/([^/]+\.(%s))$" % exts)
        parent_re = re.compile(r"^\.\./(\d+)/([^/]+\.(%s))$" % exts)
        wanted = set(vollist) if vollist is not None else None
        timeout = config.getint("storage", "info_timeout")

        res = []
        for fn in sorted(glob.glob(os.path.join(imagedir, "[0-9]*", "*"))):
            relpath = os.path.relpath(fn, imagedir)
            m = name_re.match(relpath)
            if m is None:
                continue
            owner, name, fmt = m.groups()

            if vmid is not None and owner != str(vmid):
                continue

            volid = volname.volume_id(storeid, relpath)
            parent = None
            try:
                info = file_size_info(fn, timeout=timeout)
            except (cmdutils.Error, cmdutils.TimeoutExpired, OSError) as e:
                self.log.warning("Cannot get info for %s: %s", fn, e)
                continue

            if info.parent:
                pm = parent_re.match(info.parent)
                if pm:
                    volid = volname.volume_id(
                        storeid, "%s/%s/%s/%s" % (pm.group(1), pm.group(2),
                                                  owner, name))
                    parent = info.parent

            if wanted is not None and volid not in wanted:
                continue

            res.append({
                "volid": volid,
                "format": fmt,
                "size": info.size,
                "vmid": owner,
                "used": info.used,
                "parent": parent,
                "ctime": info.ctime,
            })

        return res

    def get_subdir_files(self, storeid, scfg, vtype, vmid=None):
        """
        Return info dicts for non image content in the storage sub
        directory of vtype.
        """
        path = self.get_subdir(scfg, vtype)
        try:
            entries = sorted(os.listdir(path))
        except FileNotFoundError:
            return []

        res = []
        for fn in entries:
            fullpath = os.path.join(path, fn)
            try:
                st = os.stat(fullpath)
            except FileNotFoundError:
                continue
            if stat.S_ISDIR(st.st_mode):
                continue

            info = None
            if vtype == sc.CONTENT_ISO:
                if re.match(r"^[^/]+%s$" % volname.ISO_EXT, fn, re.I):
                    info = {"volid": "%s:iso/%s" % (storeid, fn),
                            "format": "iso"}
            elif vtype == sc.CONTENT_VZTMPL:
                if re.match(r"^[^/]+%s$" % volname.VZTMPL_EXT, fn, re.I):
                    info = {"volid": "%s:vztmpl/%s" % (storeid, fn),
                            "format": "tgz"}
            elif vtype == sc.CONTENT_BACKUP:
                info = self._backup_file_info(storeid, scfg, fullpath, vmid)
            elif vtype == sc.CONTENT_SNIPPETS:
                info = {"volid": "%s:snippets/%s" % (storeid, fn),
                        "format": "snippet"}

            if info is None:
                continue
            info["size"] = st.st_size
            info.setdefault("ctime", int(st.st_ctime))
            res.append(info)

        return res

    def _backup_file_info(self, storeid, scfg, path, vmid):
        fn = os.path.basename(path)
        try:
            archive = volname.archive_info(fn)
        except se.ParseError:
            return None
        if vmid is not None and archive.get("vmid") != int(vmid):
            return None

        info = {
            "volid": "%s:backup/%s" % (storeid, fn),
            "format": archive["format"],
            "subtype": archive["type"],
        }
        if archive["is_std_name"]:
            info["ctime"] = archive["ctime"]
            info["vmid"] = archive["vmid"]

        notes_path = path + volname.NOTES_EXT
        try:
            with open(notes_path, "rb") as f:
                notes = f.read().decode("utf-8", "replace")
        except FileNotFoundError:
            pass
        else:
            info["notes"] = notes.split("\n", 1)[0]

        info["protected"] = os.path.exists(
            volname.protection_file_path(path))
        return info

    def list_volumes(self, storeid, scfg, vmid, content_types, guests=None):
        """
        Return info dicts for volumes of the requested content types.

        Arguments:
            vmid (str): if set, list only volumes owned by vmid. iso images
                and templates have no owner and are not listed in this case.
            content_types (iterable): content types to list.
            guests (mapping): read only mapping of vmid to guest info dict,
                used to classify images as "images" (vm disks) or
                "rootdir" (container volumes).
        """
        if guests is None:
            guests = {}

        res = []
        for ct in content_types:
            if ct in (sc.CONTENT_IMAGES, sc.CONTENT_ROOTDIR):
                for info in self.list_images(storeid, scfg, vmid):
                    guest = guests.get(str(info["vmid"]))
                    if guest is not None and guest.get("type") == "lxc":
                        ctype = sc.CONTENT_ROOTDIR
                    else:
                        ctype = sc.CONTENT_IMAGES
                    if ctype != ct:
                        continue
                    info = dict(info, content=ctype)
                    res.append(info)
            elif scfg.get("path"):
                if ct in (sc.CONTENT_ISO, sc.CONTENT_VZTMPL) and \
                        vmid is not None:
                    continue
                if ct not in sc.VTYPE_SUBDIRS:
                    continue
                for info in self.get_subdir_files(storeid, scfg, ct, vmid):
                    info["content"] = ct
                    res.append(info)

        return res

    # Volume information and snapshots

    def volume_size_info(self, storeid, scfg, name, timeout=None):
        """
        Return (size, format, used, parent) of a volume.
        """
        path = self.filesystem_path(scfg, name)
        vol = self.parse_volname(name)
        info = file_size_info(path, timeout=timeout, format=vol.format)
        return info.size, info.format, info.used, info.parent

    def volume_resize(self, storeid, scfg, name, size, running=False):
        """
        Resize a volume to size bytes.

        Returns True if the volume is used by a running guest; the
        hypervisor resizes the image in this case.
        """
        vol = self.parse_volname(name)
        if vol.format not in qemuimg.RESIZE_FORMATS:
            raise se.UnsupportedOperation(
                "volume_resize", "unsupported format %r" % vol.format)
        if running:
            return True
        path = self.filesystem_path(scfg, name)
        qemuimg.resize(path, size, format=vol.format, timeout=10)
        return None

    def _snapshot_path(self, scfg, name):
        vol = self.parse_volname(name)
        features.require_feature(
            features.SNAPSHOT, self.feature_backend, vol.format,
            features.volume_role(vol.isbase))
        return self.filesystem_path(scfg, name)

    def volume_snapshot(self, storeid, scfg, name, snap):
        path = self._snapshot_path(scfg, name)
        self.log.info("Creating snapshot %s of %s", snap, path)
        qemuimg.snapshot_create(path, snap)

    def volume_rollback_is_possible(self, storeid, scfg, name, snap,
                                    blockers=None):
        return True

    def volume_snapshot_rollback(self, storeid, scfg, name, snap):
        path = self._snapshot_path(scfg, name)
        self.volume_rollback_is_possible(storeid, scfg, name, snap)
        self.log.info("Rolling back %s to snapshot %s", path, snap)
        qemuimg.snapshot_apply(path, snap)

    def volume_snapshot_delete(self, storeid, scfg, name, snap,
                               running=False):
        path = self._snapshot_path(scfg, name)
        if running:
            return True
        self.log.info("Deleting snapshot %s of %s", snap, path)
        qemuimg.snapshot_delete(path, snap)
        return None

    def volume_snapshot_list(self, storeid, scfg, name):
        """
        Return list of snapshot names, oldest first.
        """
        vol = self.parse_volname(name)
        if vol.format not in qemuimg.SNAPSHOT_FORMATS:
            return []
        path = self.filesystem_path(scfg, name)
        return qemuimg.snapshot_list(path, format=vol.format)

    def volume_snapshot_info(self, storeid, scfg, name):
        """
        Return dict snapshot name -> {"id": index}, oldest first.
        """
        snaps = self.volume_snapshot_list(storeid, scfg, name)
        return {snap: {"id": i} for i, snap in enumerate(snaps, 1)}

    def volume_has_feature(self, storeid, scfg, feature, name, snapname=None,
                           running=False):
        vol = self.parse_volname(name)
        return features.volume_has_feature(
            feature, self.feature_backend, vol.format,
            features.volume_role(vol.isbase, snapname))

    # Attributes

    def get_volume_notes(self, storeid, scfg, name, timeout=None):
        raise se.UnsupportedOperation(
            "get_volume_notes",
            "notes are not supported for %s storage" % self.type)

    def update_volume_notes(self, storeid, scfg, name, notes, timeout=None):
        raise se.UnsupportedOperation(
            "update_volume_notes",
            "notes are not supported for %s storage" % self.type)

    def get_volume_attribute(self, storeid, scfg, name, attribute):
        """
        Return the value of a volume attribute, or None if the storage
        does not support the attribute.
        """
        if attribute == "notes":
            try:
                return self.get_volume_notes(storeid, scfg, name)
            except se.UnsupportedOperation:
                return None
        return None

    def update_volume_attribute(self, storeid, scfg, name, attribute, value):
        if attribute == "notes":
            return self.update_volume_notes(storeid, scfg, name, value)
        raise se.UnsupportedOperation(
            "update_volume_attribute",
            "attribute %r is not supported for %s storage" %
            (attribute, self.type))

    def remove_backup(self, storeid, scfg, name):
        vol = self.parse_volname(name)
        if vol.vtype != sc.CONTENT_BACKUP:
            raise se.UnsupportedOperation(
                "remove_backup", "%s is not a backup" % name)
        archive_remove(self.filesystem_path(scfg, name))

    def prune_backups(self, storeid, scfg, opts, vmid=None, type=None,
                      dry_run=False):
        return prune.prune_backups(self, storeid, scfg, opts, vmid=vmid,
                                   type=type, dry_run=dry_run)

    # Storage state

    def status(self, storeid, scfg, cache=None):
        """
        Return (total, free, used, active) in bytes, or None if the storage
        is not reachable.
        """
        timeout = config.getint("storage", "status_timeout")
        try:
            total, free, used = df(scfg["path"], timeout)
        except cmdutils.TimeoutExpired:
            self.log.warning("Timeout checking status of storage %s",
                             storeid)
            return None
        except (cmdutils.Error, OSError) as e:
            self.log.warning("Cannot check status of storage %s: %s",
                             storeid, e)
            return None
        if total == 0:
            return None
        return total, free, used, True

    def activate_storage(self, storeid, scfg, cache=None):
        path = scfg["path"]
        if not os.path.isdir(path):
            raise se.StorageNotActive(
                "storage %s path %s does not exist" % (storeid, path))

        subdirs = {}
        for vtype in scfg.get("content", ()):
            if vtype not in sc.VTYPE_SUBDIRS:
                continue
            subdir = self.get_subdir(scfg, vtype)
            if subdir in subdirs:
                raise se.ConfigError(
                    "content-dirs",
                    "%s and %s use the same directory %s" %
                    (subdirs[subdir], vtype, subdir))
            subdirs[subdir] = vtype

        create = scfg.get("create-subdirs")
        if create is None:
            create = scfg.get("mkdir", True)
        if not create:
            return

        for vtype in scfg.get("content", ()):
            if vtype not in sc.VTYPE_SUBDIRS:
                continue
            os.makedirs(self.get_subdir(scfg, vtype), exist_ok=True)
            # Container backups need the dump directory.
            if vtype == sc.CONTENT_ROOTDIR:
                os.makedirs(self.get_subdir(scfg, sc.CONTENT_BACKUP),
                            exist_ok=True)

    def deactivate_storage(self, storeid, scfg, cache=None):
        pass

    def activate_volume(self, storeid, scfg, name, snapname=None,
                        cache=None):
        path = self.filesystem_path(scfg, name, snapname)
        if not os.path.exists(path):
            raise se.NotFound(volname.volume_id(storeid, name))

    def deactivate_volume(self, storeid, scfg, name, snapname=None,
                          cache=None):
        pass

    def check_connection(self, storeid, scfg):
        return True

    # Transfer

    def volume_export_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        if not scfg.get("path") or snapshot or base_snapshot:
            return []
        vol = self.parse_volname(name)
        return streams.file_formats(vol.format, with_snapshots)

    def volume_import_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        if not scfg.get("path") or base_snapshot:
            return []
        vol = self.parse_volname(name)
        return streams.file_formats(vol.format, with_snapshots)

    def volume_export(self, storeid, scfg, fh, name, format, snapshot=None,
                      base_snapshot=None, with_snapshots=False):
        if format not in self.volume_export_formats(
                storeid, scfg, name, snapshot, base_snapshot, with_snapshots):
            raise se.UnsupportedOperation(
                "volume_export",
                "format %s not available for %s storage" %
                (format, self.type))
        path = self.filesystem_path(scfg, name)
        vol = self.parse_volname(name)
        size = file_size_info(path, format=vol.format).size
        streams.export_file(fh, path, vol.format, format, size)

    def volume_import(self, storeid, scfg, fh, name, format, snapshot=None,
                      base_snapshot=None, with_snapshots=False,
                      allow_rename=False, lock=None):
        """
        Import a volume from a transfer stream.

        The volume is allocated and, if the import fails, removed while
        holding lock, a callable returning a context manager. The data is
        copied without holding it.

        Returns:
            The volume id of the imported volume.
        """
        data_format = streams.data_format(format)
        if data_format not in ("raw", "tar", "qcow2", "vmdk"):
            raise se.UnsupportedOperation(
                "volume_import",
                "format %s not available for %s storage" %
                (format, self.type))
        if not with_snapshots and data_format in ("qcow2", "vmdk"):
            raise se.UnsupportedOperation(
                "volume_import",
                "format %s cannot be imported without snapshots" % format)
        if with_snapshots and data_format in ("raw", "tar"):
            raise se.UnsupportedOperation(
                "volume_import",
                "format %s cannot be imported with snapshots" % format)

        vol = self.parse_volname(name)
        if data_format != vol.format and not (
                data_format == "tar" and vol.format == sc.FORMAT_SUBVOL):
            raise se.UnsupportedOperation(
                "volume_import",
                "cannot import format %s into a volume of format %s" %
                (format, vol.format))

        newname = vol.name
        if os.path.lexists(self.filesystem_path(scfg, name)):
            if not allow_rename:
                raise se.AlreadyExists(volname.volume_id(storeid, name))
            self.log.warning("Volume %s already exists, importing with a "
                             "different name", name)
            newname = None

        size = streams.read_header(fh)
        with locked(lock):
            allocated = self.alloc_image(
                storeid, scfg, vol.vmid, vol.format, newname, size // 1024)

        try:
            if newname is not None and allocated != name:
                raise RuntimeError(
                    "unexpected allocated name %r != %r" % (allocated, name))
            path = self.filesystem_path(scfg, allocated)
            streams.import_file(fh, path, data_format, size=size)
        except Exception:
            self.log.warning("Import of %s failed, removing %s",
                             name, allocated)
            try:
                with locked(lock):
                    self.free_image(storeid, scfg, allocated, False,
                                    vol.format)
            except Exception:
                self.log.exception("Cannot remove %s", allocated)
            raise

        return volname.volume_id(storeid, allocated)
