# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
LVM storages.

The lvm storage keeps raw disk images as logical volumes in a volume group.
The lvmthin storage keeps them as thin volumes in a thin pool, supporting
snapshots, base volumes and linked clones.

Thin snapshots are logical volumes named "snap_<volume>_<snapshot>".
"""

import collections
import logging
import os
import re
import stat

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.storage import backends
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import plugin
from virtstore.storage import streams
from virtstore.storage import volname

log = logging.getLogger("storage.lvm")

_lvm = cmdutils.CommandPath("lvm", "/sbin/lvm", "/usr/sbin/lvm")

# Tag added to logical volumes owned by a guest.
VM_TAG_PREFIX = "pve-vm-"

LVS_FIELDS = ("vg_name", "lv_name", "lv_size", "lv_attr", "pool_lv",
              "data_percent", "lv_time", "lv_tags")

VGS_FIELDS = ("vg_name", "vg_size", "vg_free")

LVInfo = collections.namedtuple(
    "LVInfo", "vg_name, name, size, lv_type, pool_lv, used, time, tags")

VGInfo = collections.namedtuple("VGInfo", "name, size, free")

# Default throughput limit when wiping removed volumes, bytes per second.
SAFEREMOVE_THROUGHPUT = 10 * 1024**2

_OWNED = re.compile(r"^(vm|base)-(\d+)-")


def parse_lvs(text):
    """
    Parse "lvs --separator : --noheadings --units b --nosuffix" output
    with LVS_FIELDS columns, and lv_time in seconds since the epoch.
    """
    lvs = []
    for line in text.splitlines():
        fields = line.strip().split(":")
        if len(fields) < len(LVS_FIELDS):
            continue
        vg_name, lv_name, size, attr, pool_lv, data, lv_time, tags = \
            fields[:len(LVS_FIELDS)]
        if not vg_name or not lv_name:
            continue
        size = int(size)
        lv_type = attr[:1]
        # Thin pools and thin volumes report the used share of their size.
        if lv_type in ("t", "V") and data:
            used = int(float(data) * size / 100)
        else:
            used = size
        tags = tuple(t for t in tags.split(",") if t)
        lvs.append(LVInfo(vg_name, lv_name, size, lv_type, pool_lv or None,
                          used, int(lv_time or 0), tags))
    return lvs


def parse_vgs(text):
    vgs = {}
    for line in text.splitlines():
        fields = line.strip().split(":")
        if len(fields) < len(VGS_FIELDS):
            continue
        name, size, free = fields[:len(VGS_FIELDS)]
        vgs[name] = VGInfo(name, int(size), int(free))
    return vgs


class LvmTool(backends.VolumeTool):

    log = logging.getLogger("storage.LvmTool")

    @property
    def vg(self):
        return self.scfg["vgname"]

    def lvm(self, *args, **kwargs):
        return self._run([_lvm.cmd] + list(args), **kwargs)

    def lvs(self):
        out = self.lvm("lvs", "--separator", ":", "--noheadings", "--units",
                       "b", "--unbuffered", "--nosuffix", "--config",
                       "report/time_format=\"%s\"", "--options",
                       ",".join(LVS_FIELDS), self.vg)
        return parse_lvs(out.decode("utf-8"))

    def vgs(self):
        try:
            out = self.lvm("vgs", "--separator", ":", "--noheadings",
                           "--units", "b", "--unbuffered", "--nosuffix",
                           "--options", ",".join(VGS_FIELDS))
        except cmdutils.Error as e:
            # vgs fails with rc=5 when clustered volume groups are not
            # available, but lists the other volume groups.
            self.log.warning("vgs failed: %s", e)
            out = e.out or b""
        return parse_vgs(out.decode("utf-8"))

    def _vg_info(self):
        vgs = self.vgs()
        if self.vg not in vgs:
            raise se.NotFound("volume group %s" % self.vg)
        return vgs[self.vg]

    def allocate(self, name, size, fmt):
        if fmt != sc.FORMAT_RAW:
            raise se.UnsupportedOperation(
                "allocate", "unsupported format %r" % fmt)
        vg = self._vg_info()
        if vg.free < size * 1024:
            raise se.StorageException(
                "not enough free space in volume group %s (%d < %d)" %
                (self.vg, vg.free, size * 1024))
        m = _OWNED.match(name)
        self.lvm("lvcreate", "-aly", "--addtag", VM_TAG_PREFIX + m.group(2),
                 "--size", "%dk" % size, "--name", name, self.vg)

    def delete(self, name):
        self.lvm("lvchange", "-aly", "%s/%s" % (self.vg, name))
        if plugin.parse_boolean(self.scfg.get("saferemove", False)):
            # Wipe data so a new volume cannot read it.
            delname = "del-" + name
            self.rename(name, delname)
            self._zero_out(delname)
            name = delname
        self.lvm("lvremove", "-f", "%s/%s" % (self.vg, name))

    def _zero_out(self, name):
        throughput = self.scfg.get("saferemove_throughput",
                                   -SAFEREMOVE_THROUGHPUT)
        cmd = ["cstream", "-i", "/dev/zero",
               "-o", "/dev/%s/%s" % (self.vg, name),
               "-T", "10", "-v", "1", "-b", "1048576",
               "-t", str(throughput)]
        try:
            commands.run(cmd)
        except cmdutils.Error as e:
            # cstream fails with ENOSPC when the device is full.
            self.log.info("Zero out of %s finished: %s", name, e)

    def resize(self, name, size, fmt):
        self.lvm("lvextend", "-L", "%dk" % (size // 1024),
                 "%s/%s" % (self.vg, name))

    def rename(self, name, newname):
        self.lvm("lvrename", self.vg, name, newname)

    def snapshot(self, name, snap):
        raise se.UnsupportedOperation(
            "snapshot", "lvm volumes do not support snapshots")

    snapshot_rollback = snapshot_delete = snapshot

    def list_snapshots(self, name):
        return []

    def clone(self, name, snap, newname, fmt):
        raise se.UnsupportedOperation(
            "clone", "lvm volumes cannot be cloned")

    def _include(self, lv):
        if lv.lv_type != "-" or not _OWNED.match(lv.name):
            return False
        if plugin.parse_boolean(self.scfg.get("tagged_only", False)):
            return any(t.startswith(VM_TAG_PREFIX) for t in lv.tags)
        return True

    def list(self):
        return [backends.VolumeEntry(lv.name, lv.size, sc.FORMAT_RAW, None,
                                     lv.used)
                for lv in self.lvs() if self._include(lv)]

    def status(self):
        vg = self._vg_info()
        return vg.size, vg.free, vg.size - vg.free

    def activate(self, path, mode="ey"):
        self.lvm("lvchange", "-a" + mode, path)

    def deactivate(self, path):
        self.lvm("lvchange", "-aln", path)

    def activate_vg(self):
        self.lvm("vgchange", "-aly", self.vg)

    def deactivate_vg(self):
        self.lvm("vgchange", "-aln", self.vg)


def snapshot_lv_name(name, snap):
    return "snap_%s_%s" % (name, snap)


class LvmThinTool(LvmTool):

    log = logging.getLogger("storage.LvmThinTool")

    @property
    def thinpool(self):
        return self.scfg["thinpool"]

    def allocate(self, name, size, fmt):
        if fmt != sc.FORMAT_RAW:
            raise se.UnsupportedOperation(
                "allocate", "unsupported format %r" % fmt)
        self.lvm("lvcreate", "-aly", "-V", "%dk" % size, "--name", name,
                 "--thinpool", "%s/%s" % (self.vg, self.thinpool))

    def delete(self, name):
        self.lvm("lvremove", "-f", "%s/%s" % (self.vg, name))

    def resize(self, name, size, fmt):
        self.lvm("lvresize", "-L", "%dk" % (size // 1024),
                 "%s/%s" % (self.vg, name))

    def snapshot(self, name, snap):
        self.lvm("lvcreate", "-n", snapshot_lv_name(name, snap), "-pr", "-s",
                 "%s/%s" % (self.vg, name))

    def snapshot_rollback(self, name, snap):
        snapvol = snapshot_lv_name(name, snap)
        self.lvm("lvremove", "-f", "%s/%s" % (self.vg, name))
        self.lvm("lvcreate", "-kn", "-n", name, "-s",
                 "%s/%s" % (self.vg, snapvol))

    def snapshot_delete(self, name, snap):
        self.lvm("lvremove", "-f",
                 "%s/%s" % (self.vg, snapshot_lv_name(name, snap)))

    def list_snapshots(self, name):
        regex = re.compile(r"^snap_%s_(\w+)$" % re.escape(name))
        snaps = []
        for lv in self.lvs():
            m = regex.match(lv.name)
            if m:
                snaps.append((lv.time, m.group(1)))
        return [snap for _, snap in sorted(snaps)]

    def make_base(self, name):
        # Base volumes are inactive, read only and skipped on activation.
        try:
            self.lvm("lvchange", "-an", "-pr", "-ky",
                     "%s/%s" % (self.vg, name))
        except cmdutils.Error as e:
            self.log.warning("Cannot make %s read only: %s", name, e)

    def clone(self, name, snap, newname, fmt):
        if snap:
            lv = snapshot_lv_name(name, snap)
        else:
            lv = name
        self.lvm("lvcreate", "-n", newname, "-prw", "-kn", "-s",
                 "%s/%s" % (self.vg, lv))

    def _include(self, lv):
        return (lv.lv_type == "V" and lv.pool_lv == self.thinpool and
                _OWNED.match(lv.name) is not None)

    def status(self):
        for lv in self.lvs():
            if lv.name == self.thinpool and lv.lv_type == "t":
                return lv.size, lv.size - lv.used, lv.used
        raise se.NotFound("thin pool %s/%s" % (self.vg, self.thinpool))


def _device_size(path):
    out = commands.run(["blockdev", "--getsize64", path])
    return int(out.strip())


@plugin.register
class LVMPlugin(backends.ToolPlugin):

    log = logging.getLogger("storage.LVMPlugin")

    type = "lvm"
    content = frozenset((sc.CONTENT_IMAGES, sc.CONTENT_ROOTDIR))
    default_content = frozenset((sc.CONTENT_IMAGES,))
    formats = frozenset((sc.FORMAT_RAW,))
    default_format = sc.FORMAT_RAW

    options = {
        "vgname": {"fixed": True},
        "base": {"fixed": True, "optional": True},
        "nodes": {"optional": True},
        "shared": {"optional": True},
        "disable": {"optional": True},
        "saferemove": {"optional": True},
        "saferemove_throughput": {"optional": True},
        "content": {"optional": True},
        "tagged_only": {"optional": True},
        "bwlimit": {"optional": True},
    }

    grammar = volname.LVM
    tool_class = LvmTool

    def filesystem_path(self, scfg, name, snapname=None):
        if snapname:
            raise se.UnsupportedOperation(
                "path", "lvm snapshots are not supported")
        vol = self.parse_volname(name)
        return "/dev/%s/%s" % (scfg["vgname"], vol.name)

    def alloc_image(self, storeid, scfg, vmid, fmt, name, size):
        if name is not None and not name.startswith("vm-%s-" % vmid):
            raise se.InvalidName(name, "should be 'vm-%s-*'" % vmid)
        return super().alloc_image(storeid, scfg, vmid, fmt, name, size)

    def activate_storage(self, storeid, scfg, cache=None):
        tool = self.tool(storeid, scfg)
        try:
            tool._vg_info()
        except se.NotFound:
            raise se.StorageNotActive(
                "volume group %s of storage %s does not exist" %
                (scfg["vgname"], storeid))
        tool.activate_vg()

    def deactivate_storage(self, storeid, scfg, cache=None):
        self.tool(storeid, scfg).deactivate_vg()

    def activate_volume(self, storeid, scfg, name, snapname=None,
                        cache=None):
        path = self.filesystem_path(scfg, name, snapname)
        self.tool(storeid, scfg).activate(path)

    def deactivate_volume(self, storeid, scfg, name, snapname=None,
                          cache=None):
        path = self.filesystem_path(scfg, name, snapname)
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return
        if stat.S_ISBLK(st.st_mode):
            self.tool(storeid, scfg).deactivate(path)

    def volume_export_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        if snapshot:
            return []
        return self.volume_import_formats(
            storeid, scfg, name, snapshot, base_snapshot, with_snapshots)

    def volume_import_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        if with_snapshots or base_snapshot:
            return []
        return [streams.RAW_SIZE]

    def volume_export(self, storeid, scfg, fh, name, format, snapshot=None,
                      base_snapshot=None, with_snapshots=False):
        if format not in self.volume_export_formats(
                storeid, scfg, name, snapshot, base_snapshot, with_snapshots):
            raise se.UnsupportedOperation(
                "volume_export",
                "format %s not available for %s storage" %
                (format, self.type))
        path = self.filesystem_path(scfg, name)
        # Faster than asking lvm, and checks that the device exists.
        size = _device_size(path)
        streams.export_device(fh, path, size)

    def volume_import(self, storeid, scfg, fh, name, format, snapshot=None,
                      base_snapshot=None, with_snapshots=False,
                      allow_rename=False, lock=None):
        if format not in self.volume_import_formats(
                storeid, scfg, name, snapshot, base_snapshot, with_snapshots):
            raise se.UnsupportedOperation(
                "volume_import",
                "format %s not available for %s storage" %
                (format, self.type))

        vol = self.parse_volname(name)
        newname = vol.name
        if self._exists(storeid, scfg, vol.name):
            if not allow_rename:
                raise se.AlreadyExists(volname.volume_id(storeid, name))
            self.log.warning("Volume %s already exists, importing with a "
                             "different name", name)
            newname = None

        size = streams.read_header(fh)
        with plugin.locked(lock):
            allocated = self.alloc_image(
                storeid, scfg, vol.vmid, sc.FORMAT_RAW, newname, size // 1024)

        try:
            self.activate_volume(storeid, scfg, allocated)
            streams.import_device(fh, self.filesystem_path(scfg, allocated),
                                  size=size)
        except Exception:
            self.log.warning("Import of %s failed, removing %s",
                             name, allocated)
            try:
                with plugin.locked(lock):
                    self.free_image(storeid, scfg, allocated, False)
            except Exception:
                self.log.exception("Cannot remove %s", allocated)
            raise

        return volname.volume_id(storeid, allocated)


@plugin.register
class LvmThinPlugin(LVMPlugin):

    log = logging.getLogger("storage.LvmThinPlugin")

    type = "lvmthin"
    content = frozenset((sc.CONTENT_IMAGES, sc.CONTENT_ROOTDIR))
    default_content = frozenset((sc.CONTENT_IMAGES, sc.CONTENT_ROOTDIR))

    options = {
        "thinpool": {"fixed": True},
        "vgname": {"fixed": True},
        "nodes": {"optional": True},
        "disable": {"optional": True},
        "content": {"optional": True},
        "bwlimit": {"optional": True},
    }

    grammar = volname.LVMTHIN
    tool_class = LvmThinTool

    # Thin clones are independent volumes.
    clone_includes_base = False

    def filesystem_path(self, scfg, name, snapname=None):
        vol = self.parse_volname(name)
        lv = snapshot_lv_name(vol.name, snapname) if snapname else vol.name
        return "/dev/%s/%s" % (scfg["vgname"], lv)

    def activate_volume(self, storeid, scfg, name, snapname=None,
                        cache=None):
        # Only snapshot volumes need activation.
        if snapname:
            vol = self.parse_volname(name)
            self.tool(storeid, scfg).lvm(
                "lvchange", "-ay", "-K",
                "%s/%s" % (scfg["vgname"],
                           snapshot_lv_name(vol.name, snapname)))

    def deactivate_volume(self, storeid, scfg, name, snapname=None,
                          cache=None):
        if snapname:
            vol = self.parse_volname(name)
            self.tool(storeid, scfg).lvm(
                "lvchange", "-an",
                "%s/%s" % (scfg["vgname"],
                           snapshot_lv_name(vol.name, snapname)))
