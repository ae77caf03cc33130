# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Storages managed by an external volume tool.

Volumes on these storages live in a volume manager (zfs, lvm, rbd) and are
created, listed and removed by running the manager command line tools. The
tool is wrapped by a VolumeTool implementation, created per operation by
ToolPlugin.tool().
"""

import collections
import logging
import re

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import features
from virtstore.storage import plugin
from virtstore.storage import volname

log = logging.getLogger("storage.backends")

VolumeEntry = collections.namedtuple(
    "VolumeEntry", "name, size, format, parent, used, ctime",
    defaults=(None, 0, None))


class VolumeTool(object):
    """
    Interface of the volume manager of a storage.

    Volume names are the names in the volume manager, without the storage
    prefix (pool, volume group). Sizes are in bytes, except allocate which
    uses KiB like alloc_image.
    """

    def __init__(self, storeid, scfg):
        self.storeid = storeid
        self.scfg = scfg

    def allocate(self, name, size, fmt):
        raise NotImplementedError

    def delete(self, name):
        raise NotImplementedError

    def resize(self, name, size, fmt):
        raise NotImplementedError

    def rename(self, name, newname):
        raise NotImplementedError

    def snapshot(self, name, snap):
        raise NotImplementedError

    def snapshot_rollback(self, name, snap):
        raise NotImplementedError

    def snapshot_delete(self, name, snap):
        raise NotImplementedError

    def list_snapshots(self, name):
        """
        Return snapshot names of volume name, oldest first.
        """
        raise NotImplementedError

    def make_base(self, name):
        """
        Make volume name read only so it can be cloned.
        """
        self.snapshot(name, sc.BASE_SNAPSHOT)

    def clone(self, name, snap, newname, fmt):
        """
        Create newname as a clone of volume name, or of snapshot snap of
        volume name. If snap is None, name is a base volume.
        """
        raise NotImplementedError

    def list(self):
        """
        Return list of VolumeEntry.
        """
        raise NotImplementedError

    def status(self):
        """
        Return (total, free, used) in bytes.
        """
        raise NotImplementedError

    def _run(self, cmd, timeout=None, input=None):
        return commands.run(cmd, timeout=timeout, input=input)


def base_name(name):
    """
    Return the name of a volume after converting it to a base volume.
    """
    newname = re.sub(r"^vm-", "base-", name)
    newname = re.sub(r"^subvol-", "basevol-", newname)
    if newname == name:
        raise se.InvalidName(name, "cannot convert to a base name")
    return newname


class ToolPlugin(plugin.Plugin):

    # VolumeTool implementation, called with (storeid, scfg).
    tool_class = None

    # Clones of base volumes are named "<base>/<clone>".
    clone_includes_base = True

    def tool(self, storeid, scfg):
        return self.tool_class(storeid, scfg)

    def filesystem_path(self, scfg, name, snapname=None):
        raise NotImplementedError

    def _entries(self, storeid, scfg, cache=None):
        if cache is None:
            return self.tool(storeid, scfg).list()
        key = ("volumes", storeid)
        if key not in cache:
            cache[key] = self.tool(storeid, scfg).list()
        return cache[key]

    def _entry(self, storeid, scfg, name):
        for entry in self._entries(storeid, scfg):
            if entry.name == name:
                return entry
        raise se.NotFound(volname.volume_id(storeid, name))

    def _exists(self, storeid, scfg, name):
        return any(e.name == name for e in self._entries(storeid, scfg))

    def _volume_names(self, storeid, scfg, vmid):
        return [e.name for e in self._entries(storeid, scfg)]

    def alloc_image(self, storeid, scfg, vmid, fmt, name, size):
        if fmt not in self.formats:
            raise se.UnsupportedOperation(
                "alloc_image", "unsupported format %r" % fmt)

        vmid = str(vmid)
        if name is None:
            name = self.find_free_diskname(storeid, scfg, vmid, fmt)
        else:
            volname.check_owner(name, vmid)

        if self._exists(storeid, scfg, name):
            raise se.AlreadyExists(volname.volume_id(storeid, name))

        self.log.info("Allocating volume %s on storage %s format=%s "
                      "size=%sK", name, storeid, fmt, size)
        self.tool(storeid, scfg).allocate(name, size, fmt)
        return name

    def free_image(self, storeid, scfg, name, isbase, format=None):
        vol = self.parse_volname(name)
        tool = self.tool(storeid, scfg)

        # Volumes with snapshots cannot be removed.
        for snap in reversed(tool.list_snapshots(vol.name)):
            self.log.info("Removing snapshot %s of volume %s", snap, vol.name)
            tool.snapshot_delete(vol.name, snap)

        self.log.info("Removing volume %s from storage %s", vol.name, storeid)
        tool.delete(vol.name)

    def create_base(self, storeid, scfg, name):
        vol = self.parse_volname(name)
        if vol.isbase:
            raise se.AlreadyBase(volname.volume_id(storeid, name))
        features.require_feature(
            features.TEMPLATE, self.feature_backend, vol.format,
            features.volume_role(vol.isbase))

        tool = self.tool(storeid, scfg)
        if tool.list_snapshots(vol.name):
            raise se.UnsupportedOperation(
                "create_base", "volume %s has snapshots" % name)

        newname = base_name(vol.name)
        if self._exists(storeid, scfg, newname):
            raise se.AlreadyExists(volname.volume_id(storeid, newname))

        self.log.info("Converting volume %s to base volume %s",
                      vol.name, newname)
        tool.rename(vol.name, newname)
        tool.make_base(newname)

        newvol = vol._replace(name=newname, isbase=True)
        return self.encode_volname(newvol)

    def clone_image(self, storeid, scfg, name, vmid, snap=None):
        vol = self.parse_volname(name)
        features.require_feature(
            features.CLONE, self.feature_backend, vol.format,
            features.volume_role(vol.isbase, snap))

        vmid = str(vmid)
        newname = self.find_free_diskname(storeid, scfg, vmid, vol.format)
        self.log.info("Cloning volume %s snapshot=%s to %s",
                      vol.name, snap, newname)
        self.tool(storeid, scfg).clone(vol.name, snap, newname, vol.format)

        if self.clone_includes_base and vol.isbase and not snap:
            return "%s/%s" % (vol.name, newname)
        return newname

    def rename_volume(self, storeid, scfg, source, target_vmid,
                      target_name=None):
        vol = self.parse_volname(source)
        features.require_feature(
            features.RENAME, self.feature_backend, vol.format,
            features.volume_role(vol.isbase))

        target_vmid = str(target_vmid)
        if target_name is None:
            target_name = self.find_free_diskname(
                storeid, scfg, target_vmid, vol.format)
        volname.check_owner(target_name, target_vmid)

        if self._exists(storeid, scfg, target_name):
            raise se.AlreadyExists(volname.volume_id(storeid, target_name))

        self.tool(storeid, scfg).rename(vol.name, target_name)
        newvol = vol._replace(name=target_name, vmid=target_vmid)
        return volname.volume_id(storeid, self.encode_volname(newvol))

    def list_images(self, storeid, scfg, vmid=None, vollist=None,
                    cache=None):
        if vmid is not None and vollist is not None:
            raise ValueError("vmid and vollist are mutually exclusive")

        wanted = set(vollist) if vollist is not None else None
        res = []
        for entry in self._entries(storeid, scfg, cache):
            # Only clones of base volumes include the parent in the name.
            if entry.parent:
                name = "%s/%s" % (entry.parent, entry.name)
            else:
                name = entry.name
            try:
                vol = self.parse_volname(name)
            except se.ParseError:
                try:
                    vol = self.parse_volname(entry.name)
                except se.ParseError:
                    continue
                name = entry.name

            if vmid is not None and vol.vmid != str(vmid):
                continue

            volid = volname.volume_id(storeid, name)
            if wanted is not None and volid not in wanted:
                continue

            res.append({
                "volid": volid,
                "format": entry.format,
                "size": entry.size,
                "vmid": vol.vmid,
                "used": entry.used,
                "parent": entry.parent,
                "ctime": entry.ctime,
            })

        return res

    def volume_size_info(self, storeid, scfg, name, timeout=None):
        vol = self.parse_volname(name)
        entry = self._entry(storeid, scfg, vol.name)
        return entry.size, entry.format, entry.used, entry.parent

    def volume_resize(self, storeid, scfg, name, size, running=False):
        vol = self.parse_volname(name)
        self.log.info("Resizing volume %s to %s bytes", vol.name, size)
        self.tool(storeid, scfg).resize(vol.name, size, vol.format)
        return None

    def _require_snapshots(self, name):
        vol = self.parse_volname(name)
        features.require_feature(
            features.SNAPSHOT, self.feature_backend, vol.format,
            features.volume_role(vol.isbase))
        return vol

    def volume_snapshot(self, storeid, scfg, name, snap):
        vol = self._require_snapshots(name)
        self.log.info("Creating snapshot %s of volume %s", snap, vol.name)
        self.tool(storeid, scfg).snapshot(vol.name, snap)

    def volume_rollback_is_possible(self, storeid, scfg, name, snap,
                                    blockers=None):
        vol = self.parse_volname(name)
        snaps = self.tool(storeid, scfg).list_snapshots(vol.name)
        if snap not in snaps:
            raise se.NotFound(
                "snapshot %s of %s" %
                (snap, volname.volume_id(storeid, name)))
        return True

    def volume_snapshot_rollback(self, storeid, scfg, name, snap):
        vol = self._require_snapshots(name)
        self.volume_rollback_is_possible(storeid, scfg, name, snap)
        self.log.info("Rolling back volume %s to snapshot %s", vol.name, snap)
        self.tool(storeid, scfg).snapshot_rollback(vol.name, snap)

    def volume_snapshot_delete(self, storeid, scfg, name, snap,
                               running=False):
        vol = self._require_snapshots(name)
        self.log.info("Deleting snapshot %s of volume %s", snap, vol.name)
        self.tool(storeid, scfg).snapshot_delete(vol.name, snap)
        return None

    def volume_snapshot_list(self, storeid, scfg, name):
        vol = self.parse_volname(name)
        snaps = self.tool(storeid, scfg).list_snapshots(vol.name)
        return [s for s in snaps if s != sc.BASE_SNAPSHOT]

    def status(self, storeid, scfg, cache=None):
        try:
            total, free, used = self.tool(storeid, scfg).status()
        except (cmdutils.Error, cmdutils.TimeoutExpired, OSError,
                se.StorageException) as e:
            self.log.warning("Cannot check status of storage %s: %s",
                             storeid, e)
            return None
        return total, free, used, True

    def activate_storage(self, storeid, scfg, cache=None):
        pass

    def activate_volume(self, storeid, scfg, name, snapname=None,
                        cache=None):
        pass
