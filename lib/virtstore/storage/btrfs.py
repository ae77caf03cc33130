# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Directory storage on a btrfs file system.

raw and subvol volumes are btrfs subvolumes, snapshots are read only
subvolumes next to the volume::

    images/<vmid>/vm-<vmid>-disk-<n>/disk.raw           raw image
    images/<vmid>/vm-<vmid>-disk-<n>@<snap>/disk.raw    raw snapshot
    images/<vmid>/subvol-<vmid>-disk-<n>.subvol         subvol
    images/<vmid>/subvol-<vmid>-disk-<n>.subvol@<snap>  subvol snapshot

Other formats are plain files handled like a directory storage.
"""

import errno
import glob
import logging
import os
import re
import stat

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.common.config import config
from virtstore.storage import backends
from virtstore.storage import constants as sc
from virtstore.storage import dirplugin
from virtstore.storage import exception as se
from virtstore.storage import features
from virtstore.storage import plugin
from virtstore.storage import streams
from virtstore.storage import volname

log = logging.getLogger("storage.btrfs")

_btrfs = cmdutils.CommandPath("btrfs", "/usr/bin/btrfs", "/bin/btrfs",
                              "/usr/sbin/btrfs", "/sbin/btrfs")

# Inode number of the root directory of a subvolume.
FIRST_FREE_OBJECTID = 256

RAW_FILE = "disk.raw"

SUBVOL_FORMATS = (sc.FORMAT_RAW, sc.FORMAT_SUBVOL)

_VOLUME_SNAPSHOT = re.compile(
    r"^((?:vm|base|subvol|basevol)-\d+-disk-\d+(?:\.subvol)?)(?:@(\S+))?$")

_SUBVOLUME_ID = re.compile(br"^\s*(?:Object|Subvolume) ID:\s*(\d+)$", re.M)


def btrfs(*args, **kwargs):
    return commands.run([_btrfs.cmd, "-q"] + list(args), **kwargs)


def is_subvolume(path):
    st = os.stat(path)
    return stat.S_ISDIR(st.st_mode) and st.st_ino == FIRST_FREE_OBJECTID


def is_btrfs(path):
    out = commands.run(["stat", "--file-system", "--format", "%T", path])
    return out.strip() == b"btrfs"


def subvolume_id(path):
    out = btrfs("subvolume", "show", "--", path)
    m = _SUBVOLUME_ID.search(out)
    if m is None:
        raise se.BackendToolFailure(
            [_btrfs.cmd, "subvolume", "show", path], 0,
            b"cannot find subvolume id in output")
    return int(m.group(1))


def set_readonly(path, readonly=True):
    btrfs("property", "set", path, "ro", "true" if readonly else "false")


def subvol_dir(name):
    """
    Return the name of the subvolume of raw or subvol volume name.
    """
    if name.endswith(".raw"):
        return name[:-len(".raw")]
    if name.endswith(".subvol"):
        return name
    raise se.InvalidName(name, "not a btrfs subvolume volume")


def raw_file_to_subvol(path):
    if os.path.basename(path) != RAW_FILE:
        raise se.InvalidName(path, "not a raw subvolume image")
    return os.path.dirname(path)


def subvolume_snapshots(dirname, subvol):
    """
    Return snapshot names of subvolume subvol in dirname, oldest first.
    """
    snaps = []
    try:
        entries = os.listdir(dirname)
    except FileNotFoundError:
        return []
    for entry in entries:
        m = _VOLUME_SNAPSHOT.match(entry)
        if m is None or m.group(1) != subvol or m.group(2) is None:
            continue
        path = os.path.join(dirname, entry)
        if not is_subvolume(path):
            continue
        snaps.append((os.stat(path).st_ctime, m.group(2)))
    return [snap for ctime, snap in sorted(snaps)]


@plugin.register
class BTRFSPlugin(dirplugin.DirPlugin):

    log = logging.getLogger("storage.BTRFSPlugin")

    type = "btrfs"
    formats = frozenset(sc.FILE_FORMATS)
    default_format = sc.FORMAT_RAW
    options = dict(dirplugin.PATH_OPTIONS, **{
        "shared": {"optional": True},
        "is_mountpoint": {"optional": True},
        "nocow": {"optional": True},
    })

    def _subvol_path(self, scfg, name, snapname=None):
        vol = self.parse_volname(name)
        path = self.filesystem_path(scfg, name, snapname)
        if vol.format == sc.FORMAT_RAW:
            return raw_file_to_subvol(path)
        return path

    def filesystem_path(self, scfg, name, snapname=None):
        vol = self.parse_volname(name)
        if vol.format not in SUBVOL_FORMATS or vol.vtype != sc.CONTENT_IMAGES:
            return super().filesystem_path(scfg, name, snapname)

        path = os.path.join(self.get_subdir(scfg, vol.vtype), vol.vmid,
                            subvol_dir(vol.name))
        if snapname:
            path += "@" + snapname
        if vol.format == sc.FORMAT_RAW:
            path = os.path.join(path, RAW_FILE)
        return path

    def activate_storage(self, storeid, scfg, cache=None):
        path = scfg["path"]
        if scfg.get("mkdir", True):
            os.makedirs(path, exist_ok=True)

        mp = dirplugin.mountpoint(scfg)
        if mp is not None and not dirplugin._path_is_mounted(
                mp, dirplugin._mounts(cache)):
            raise se.StorageNotActive(
                "unable to activate storage %s - directory is expected to "
                "be a mount point but is not mounted: %s" % (storeid, mp))

        if not is_btrfs(path):
            raise se.StorageNotActive(
                "%s is not a btrfs file system" % path)

        plugin.Plugin.activate_storage(self, storeid, scfg, cache)

    # Image lifecycle

    def alloc_image(self, storeid, scfg, vmid, fmt, name, size):
        if fmt not in SUBVOL_FORMATS:
            return super().alloc_image(storeid, scfg, vmid, fmt, name, size)

        vmid = str(vmid)
        imagedir = os.path.join(self.get_subdir(scfg, sc.CONTENT_IMAGES),
                                vmid)
        os.makedirs(imagedir, exist_ok=True)

        if name is None:
            name = self.find_free_diskname(
                storeid, scfg, vmid, fmt, add_fmt_suffix=True)
        volname.validate_disk_name(vmid, name, fmt)

        if fmt == sc.FORMAT_SUBVOL and size:
            # Quotas are lost by send and receive.
            raise se.UnsupportedOperation(
                "alloc_image", "btrfs quotas are not supported, use an "
                "unsized subvolume or a raw image")

        subvol = os.path.join(imagedir, subvol_dir(name))
        if os.path.lexists(subvol):
            raise se.AlreadyExists(subvol)

        self.log.info("Creating subvolume %s format=%s size=%sK",
                      subvol, fmt, size)
        btrfs("subvolume", "create", "--", subvol)
        try:
            if fmt == sc.FORMAT_RAW:
                self._create_raw(scfg, os.path.join(subvol, RAW_FILE), size)
        except Exception:
            try:
                btrfs("subvolume", "delete", "--", subvol)
            except cmdutils.Error as e:
                self.log.warning("Cannot remove subvolume %s: %s", subvol, e)
            raise

        return "%s/%s" % (vmid, name)

    def _create_raw(self, scfg, path, size):
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        try:
            if plugin.parse_boolean(scfg.get("nocow", False)):
                # Must be set while the file is empty.
                commands.run(["chattr", "+C", path])
            os.ftruncate(fd, size * 1024)
        finally:
            os.close(fd)

    def free_image(self, storeid, scfg, name, isbase, format=None):
        vol = self.parse_volname(name)
        if vol.format not in SUBVOL_FORMATS:
            return super().free_image(storeid, scfg, name, isbase, format)

        subvol = self._subvol_path(scfg, name)
        dirname, basename = os.path.split(subvol)
        paths = ["%s@%s" % (subvol, snap)
                 for snap in subvolume_snapshots(dirname, basename)]
        paths.append(subvol)

        self.log.info("Removing subvolumes %s", paths)
        btrfs("subvolume", "delete", "--", *paths)

        try:
            os.rmdir(dirname)
        except OSError as e:
            if e.errno not in (errno.ENOTEMPTY, errno.EEXIST, errno.ENOENT):
                self.log.warning("Cannot remove image directory: %s", e)
        return None

    def create_base(self, storeid, scfg, name):
        vol = self.parse_volname(name)
        if vol.format not in SUBVOL_FORMATS:
            return super().create_base(storeid, scfg, name)
        if vol.isbase:
            raise se.AlreadyBase(volname.volume_id(storeid, name))
        features.require_feature(
            features.TEMPLATE, self.feature_backend, vol.format,
            features.volume_role(vol.isbase))

        subvol = self._subvol_path(scfg, name)
        dirname, basename = os.path.split(subvol)
        # Snapshots are named after the volume and would be left behind.
        if subvolume_snapshots(dirname, basename):
            raise se.UnsupportedOperation(
                "create_base", "volume %s has snapshots" % name)

        newname = backends.base_name(vol.name)
        newvol = vol._replace(name=newname, isbase=True)
        newvolname = self.encode_volname(newvol)
        newsubvol = self._subvol_path(scfg, newvolname)
        if os.path.lexists(newsubvol):
            raise se.AlreadyExists(newsubvol)

        self.log.info("Converting %s to base subvolume %s", subvol, newsubvol)
        os.rename(subvol, newsubvol)
        try:
            set_readonly(newsubvol)
        except cmdutils.Error as e:
            self.log.warning("Cannot make %s read only: %s", newsubvol, e)

        return newvolname

    def clone_image(self, storeid, scfg, name, vmid, snap=None):
        vol = self.parse_volname(name)
        if vol.format not in SUBVOL_FORMATS:
            return super().clone_image(storeid, scfg, name, vmid, snap)

        features.require_feature(
            features.CLONE, self.feature_backend, vol.format,
            features.volume_role(vol.isbase, snap))

        vmid = str(vmid)
        imagedir = os.path.join(self.get_subdir(scfg, sc.CONTENT_IMAGES),
                                vmid)
        os.makedirs(imagedir, exist_ok=True)

        newname = self.find_free_diskname(
            storeid, scfg, vmid, vol.format, add_fmt_suffix=True)
        newvolname = "%s/%s" % (vmid, newname)

        # Snapshots of subvolumes do not depend on the source, so clones do
        # not include the base name.
        subvol = self._subvol_path(scfg, name, snap)
        newsubvol = self._subvol_path(scfg, newvolname)
        self.log.info("Cloning subvolume %s to %s", subvol, newsubvol)
        btrfs("subvolume", "snapshot", "--", subvol, newsubvol)

        return newvolname

    # Listing

    def list_images(self, storeid, scfg, vmid=None, vollist=None,
                    cache=None):
        if vmid is not None and vollist is not None:
            raise ValueError("vmid and vollist are mutually exclusive")

        imagedir = self.get_subdir(scfg, sc.CONTENT_IMAGES)
        # Snapshots contain "@" and are not listed.
        name_re = re.compile(r"^(\d+)/([^/@.]+(?:\.(qcow2|vmdk|subvol))?)$")
        parent_re = re.compile(r"^\.\./(\d+)/([^/]+\.(qcow2|raw|vmdk))$")
        wanted = set(vollist) if vollist is not None else None
        timeout = config.getint("storage", "info_timeout")

        res = []
        for fn in sorted(glob.glob(os.path.join(imagedir, "[0-9]*", "*"))):
            m = name_re.match(os.path.relpath(fn, imagedir))
            if m is None:
                continue
            owner, name, ext = m.groups()
            if vmid is not None and owner != str(vmid):
                continue

            relpath = "%s/%s" % (owner, name)
            parent = None
            try:
                if ext is None:
                    relpath += ".raw"
                    info = plugin.file_size_info(
                        os.path.join(fn, RAW_FILE), timeout=timeout,
                        format=sc.FORMAT_RAW)
                elif ext == sc.FORMAT_SUBVOL:
                    info = plugin.file_size_info(fn)
                else:
                    info = plugin.file_size_info(fn, timeout=timeout)
            except (cmdutils.Error, cmdutils.TimeoutExpired, OSError) as e:
                self.log.warning("Cannot get info for %s: %s", fn, e)
                continue

            volid = volname.volume_id(storeid, relpath)
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
                "format": info.format,
                "size": info.size,
                "vmid": owner,
                "used": info.used,
                "parent": parent,
                "ctime": info.ctime,
            })

        return res

    def _volume_names(self, storeid, scfg, vmid):
        # Snapshot subvolumes use the disk index of their volume.
        return [n for n in super()._volume_names(storeid, scfg, vmid)
                if "@" not in n]

    # Volume information and snapshots

    def volume_resize(self, storeid, scfg, name, size, running=False):
        vol = self.parse_volname(name)
        if vol.format != sc.FORMAT_SUBVOL:
            return super().volume_resize(storeid, scfg, name, size, running)

        path = self.filesystem_path(scfg, name)
        qgroup = "0/%d" % subvolume_id(path)
        self.log.info("Limiting subvolume %s to %s bytes", path, size)
        btrfs("qgroup", "limit", "--", str(size), qgroup, path)
        return None

    def volume_snapshot(self, storeid, scfg, name, snap):
        vol = self.parse_volname(name)
        if vol.format not in SUBVOL_FORMATS:
            return super().volume_snapshot(storeid, scfg, name, snap)

        subvol = self._subvol_path(scfg, name)
        snap_subvol = self._subvol_path(scfg, name, snap)
        self.log.info("Creating snapshot %s of %s", snap, subvol)
        btrfs("subvolume", "snapshot", "-r", "--", subvol, snap_subvol)

    def volume_snapshot_rollback(self, storeid, scfg, name, snap):
        vol = self.parse_volname(name)
        if vol.format not in SUBVOL_FORMATS:
            return super().volume_snapshot_rollback(
                storeid, scfg, name, snap)

        subvol = self._subvol_path(scfg, name)
        snap_subvol = self._subvol_path(scfg, name, snap)
        if not os.path.isdir(snap_subvol):
            raise se.NotFound(
                "snapshot %s of %s" % (snap, volname.volume_id(storeid, name)))

        # Create the new state first, so the volume is never missing.
        tmp = "%s.tmp.%d" % (subvol, os.getpid())
        old = "%s.old.%d" % (subvol, os.getpid())
        self.log.info("Rolling back %s to snapshot %s", subvol, snap)
        btrfs("subvolume", "snapshot", "--", snap_subvol, tmp)
        try:
            os.rename(subvol, old)
            try:
                os.rename(tmp, subvol)
            except OSError:
                os.rename(old, subvol)
                raise
        except OSError:
            self._delete_subvolume(tmp)
            raise

        self._delete_subvolume(old)

    def _delete_subvolume(self, path):
        try:
            btrfs("subvolume", "delete", "--", path)
        except cmdutils.Error as e:
            self.log.warning("Cannot remove subvolume %s: %s", path, e)

    def volume_snapshot_delete(self, storeid, scfg, name, snap,
                               running=False):
        vol = self.parse_volname(name)
        if vol.format not in SUBVOL_FORMATS:
            return super().volume_snapshot_delete(
                storeid, scfg, name, snap, running)

        snap_subvol = self._subvol_path(scfg, name, snap)
        self.log.info("Deleting snapshot subvolume %s", snap_subvol)
        btrfs("subvolume", "delete", "--", snap_subvol)
        return None

    def volume_snapshot_list(self, storeid, scfg, name):
        vol = self.parse_volname(name)
        if vol.format not in SUBVOL_FORMATS:
            return super().volume_snapshot_list(storeid, scfg, name)
        dirname, basename = os.path.split(self._subvol_path(scfg, name))
        return subvolume_snapshots(dirname, basename)

    # Transfer

    def volume_export_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        res = super().volume_export_formats(
            storeid, scfg, name, snapshot, base_snapshot, with_snapshots)

        # Send streams are created from read only snapshots.
        if snapshot is None:
            return res
        # Incremental streams with snapshots need an explicit list.
        if base_snapshot is not None and with_snapshots:
            return res
        if self.parse_volname(name).format not in SUBVOL_FORMATS:
            return res
        return [streams.BTRFS] + res

    def volume_import_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        return self.volume_export_formats(
            storeid, scfg, name, snapshot, base_snapshot, with_snapshots)

    def volume_export(self, storeid, scfg, fh, name, format, snapshot=None,
                      base_snapshot=None, with_snapshots=False):
        if format != streams.BTRFS:
            return super().volume_export(
                storeid, scfg, fh, name, format, snapshot, base_snapshot,
                with_snapshots)

        if format not in self.volume_export_formats(
                storeid, scfg, name, snapshot, base_snapshot, with_snapshots):
            raise se.UnsupportedOperation(
                "volume_export", "format btrfs requires a snapshot of a raw "
                "or subvol volume")

        subvol = self._subvol_path(scfg, name)
        cmd = [_btrfs.cmd, "-q", "send", "-e"]
        if base_snapshot:
            cmd.extend(("-p", self._subvol_path(scfg, name, base_snapshot)))
        cmd.append("--")
        if with_snapshots:
            dirname, basename = os.path.split(subvol)
            for snap in subvolume_snapshots(dirname, basename):
                if snap != snapshot:
                    cmd.append("%s@%s" % (subvol, snap))
        cmd.append("%s@%s" % (subvol, snapshot))

        commands.run(cmd, stdout=fh)

    def volume_import(self, storeid, scfg, fh, name, format, snapshot=None,
                      base_snapshot=None, with_snapshots=False,
                      allow_rename=False, lock=None):
        if format != streams.BTRFS:
            return super().volume_import(
                storeid, scfg, fh, name, format, snapshot, base_snapshot,
                with_snapshots, allow_rename, lock=lock)

        if snapshot is None:
            raise se.UnsupportedOperation(
                "volume_import", "format btrfs only works on snapshots")

        vol = self.parse_volname(name)
        if vol.format not in SUBVOL_FORMATS:
            raise se.UnsupportedOperation(
                "volume_import",
                "cannot receive volume of format %s" % vol.format)

        if base_snapshot is not None:
            base = self._subvol_path(scfg, name, base_snapshot)
            if not os.path.isdir(base) or not is_subvolume(base):
                raise se.NotFound(
                    "base snapshot %s of %s" %
                    (base_snapshot, volname.volume_id(storeid, name)))

        destination = self._subvol_path(scfg, name)
        if base_snapshot is None and os.path.lexists(destination):
            if not allow_rename:
                raise se.AlreadyExists(volname.volume_id(storeid, name))
            newname = self.find_free_diskname(
                storeid, scfg, vol.vmid, vol.format, add_fmt_suffix=True)
            name = self.encode_volname(vol._replace(name=newname))
            destination = self._subvol_path(scfg, name)

        imagedir = os.path.dirname(destination)
        os.makedirs(imagedir, exist_ok=True)
        tmpdir = os.path.join(imagedir, "recv.%s.tmp" % vol.vmid)
        try:
            os.mkdir(tmpdir)
        except FileExistsError:
            raise se.AlreadyExists(
                "temporary receive directory %s, incomplete concurrent "
                "import?" % tmpdir)

        try:
            btrfs("receive", "-e", "--", tmpdir, stdin=fh)
            with plugin.locked(lock):
                self._place_received(tmpdir, destination, snapshot)
        finally:
            self._cleanup_receive(tmpdir)

        return volname.volume_id(storeid, name)

    def _place_received(self, tmpdir, destination, snapshot):
        diskname = None
        found = False
        others = []
        for entry in os.listdir(tmpdir):
            m = _VOLUME_SNAPSHOT.match(entry)
            if m is None:
                continue
            current, snap = m.groups()
            if snap is None:
                raise se.StreamFormatError(
                    "send stream included a non-snapshot subvolume")
            if diskname is None:
                diskname = current
            elif diskname != current:
                raise se.StreamFormatError(
                    "multiple disks contained in stream (%s, %s)" %
                    (diskname, current))
            if snap == snapshot:
                found = True
            else:
                others.append(snap)

        if not found:
            raise se.StreamFormatError(
                "send stream did not contain the expected snapshot %s" %
                snapshot)

        # Received subvolumes are read only, and read only subvolumes
        # cannot be moved to another directory.
        current = os.path.join(tmpdir, "%s@%s" % (diskname, snapshot))
        set_readonly(current, False)
        os.rename(current, destination)
        btrfs("subvolume", "snapshot", "-r", "--", destination,
              "%s@%s" % (destination, snapshot))

        for snap in others:
            src = os.path.join(tmpdir, "%s@%s" % (diskname, snap))
            dst = "%s@%s" % (destination, snap)
            set_readonly(src, False)
            os.rename(src, dst)
            try:
                set_readonly(dst)
            except cmdutils.Error as e:
                self.log.warning("Cannot make %s read only: %s", dst, e)

    def _cleanup_receive(self, tmpdir):
        for entry in os.listdir(tmpdir):
            self._delete_subvolume(os.path.join(tmpdir, entry))
        try:
            os.rmdir(tmpdir)
        except OSError as e:
            self.log.warning("Cannot remove %s: %s", tmpdir, e)
