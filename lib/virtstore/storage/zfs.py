# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
ZFS pool storage.

Disk images are zvols (format raw) and container volumes are file systems
(format subvol) created directly below the configured pool or dataset.
Base volumes carry a "__base__" snapshot, and linked clones are zfs clones
of this snapshot.
"""

import logging
import os
import re
import time

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.storage import backends
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import plugin
from virtstore.storage import streams
from virtstore.storage import volname

log = logging.getLogger("storage.zfs")

_zfs = cmdutils.CommandPath("zfs", "/usr/sbin/zfs", "/sbin/zfs")
_zpool = cmdutils.CommandPath("zpool", "/usr/sbin/zpool", "/sbin/zpool")

_VOLUME_NAME = re.compile(r"^(vm|base|subvol|basevol)-(\d+)-\S+$")

# zfs destroy fails while udev is still probing a new zvol.
DESTROY_RETRIES = 6

LIST_TIMEOUT = 10

# Time to wait until udev creates the zvol device link.
ZVOL_LINK_TIMEOUT = 10


def align_zvol_size(size_kib):
    """
    Align zvol size to 1 MiB, a multiple of any valid volume block size.
    """
    return (size_kib + 1023) // 1024 * 1024


def parse_size(value):
    if value in ("-", "none", ""):
        return 0
    return int(value)


def parse_volume_list(text, pool):
    """
    Parse output of "zfs list -o name,volsize,origin,type,refquota,used
    -Hp".

    Returns:
        list of backends.VolumeEntry
    """
    entries = []
    for line in text.splitlines():
        fields = line.split("\t")
        if len(fields) < 6:
            continue
        dataset, volsize, origin, dstype, refquota, used = fields[:6]

        if not dataset.startswith(pool + "/"):
            continue
        name = dataset[len(pool) + 1:]
        if "/" in name or not _VOLUME_NAME.match(name):
            continue

        if dstype == "filesystem":
            size = parse_size(refquota)
            fmt = sc.FORMAT_SUBVOL
        elif dstype == "volume":
            size = parse_size(volsize)
            fmt = sc.FORMAT_RAW
        else:
            continue

        parent = None
        m = re.match(r"^%s/(\S+)@%s$" % (re.escape(pool), sc.BASE_SNAPSHOT),
                     origin)
        if m:
            parent = m.group(1)

        entries.append(backends.VolumeEntry(
            name, size, fmt, parent, parse_size(used)))

    return entries


class ZfsTool(backends.VolumeTool):

    log = logging.getLogger("storage.ZfsTool")

    @property
    def pool(self):
        return self.scfg["pool"]

    def dataset(self, name, snap=None):
        path = "%s/%s" % (self.pool, name)
        if snap:
            path += "@" + snap
        return path

    def zfs(self, *args, **kwargs):
        return self._run([_zfs.cmd] + list(args), **kwargs)

    def zpool(self, *args, **kwargs):
        return self._run([_zpool.cmd] + list(args), **kwargs)

    def allocate(self, name, size, fmt):
        if fmt == sc.FORMAT_SUBVOL:
            self.zfs("create", "-o", "acltype=posixacl", "-o", "xattr=sa",
                     "-o", "refquota=%dk" % size, self.dataset(name))
            return

        cmd = ["create"]
        if plugin.parse_boolean(self.scfg.get("sparse", False)):
            cmd.append("-s")
        if self.scfg.get("blocksize"):
            cmd.extend(("-b", self.scfg["blocksize"]))
        cmd.extend(("-V", "%dk" % align_zvol_size(size), self.dataset(name)))
        self.zfs(*cmd)

    def delete(self, name):
        for i in range(DESTROY_RETRIES):
            try:
                self.zfs("destroy", "-r", self.dataset(name))
            except cmdutils.Error as e:
                if b"dataset does not exist" in e.err:
                    return
                if b"dataset is busy" not in e.err or \
                        i == DESTROY_RETRIES - 1:
                    raise
                self.log.debug("Dataset %s is busy, retrying", name)
                time.sleep(1)
            else:
                return

    def resize(self, name, size, fmt):
        size_kib = size // 1024
        if fmt == sc.FORMAT_SUBVOL:
            attr = "refquota"
        else:
            attr = "volsize"
            size_kib = align_zvol_size(size_kib)
        self.zfs("set", "%s=%dk" % (attr, size_kib), self.dataset(name))

    def rename(self, name, newname):
        self.zfs("rename", self.dataset(name), self.dataset(newname),
                 timeout=5)

    def snapshot(self, name, snap):
        self.zfs("snapshot", self.dataset(name, snap))

    def snapshot_rollback(self, name, snap):
        self.zfs("rollback", self.dataset(name, snap))

    def snapshot_delete(self, name, snap):
        self.zfs("destroy", self.dataset(name, snap))

    def list_snapshots(self, name):
        # "-S creation" does not reverse snapshots created in the same
        # second.
        out = self.zfs("list", "-Hp", "-d1", "-t", "snapshot", "-o", "name",
                       "-s", "creation", self.dataset(name))
        prefix = self.dataset(name) + "@"
        return [line[len(prefix):]
                for line in out.decode("utf-8").splitlines()
                if line.startswith(prefix)]

    def clone(self, name, snap, newname, fmt):
        origin = self.dataset(name, snap or sc.BASE_SNAPSHOT)
        cmd = ["clone", origin, self.dataset(newname)]
        if fmt == sc.FORMAT_SUBVOL:
            out = self.zfs("list", "-Hp", "-o", "refquota",
                           self.dataset(name))
            cmd.extend(("-o", "refquota=%s" % out.decode("utf-8").strip()))
        self.zfs(*cmd)

    def list(self):
        out = self.zfs("list", "-o", "name,volsize,origin,type,refquota,used",
                       "-t", "volume,filesystem", "-d1", "-Hp", self.pool,
                       timeout=LIST_TIMEOUT)
        return parse_volume_list(out.decode("utf-8"), self.pool)

    def status(self):
        out = self.zfs("get", "-o", "value", "-Hp", "available,used",
                       self.pool)
        available, used = (int(x) for x in out.decode("utf-8").split()[:2])
        return available + used, available, used

    def exists(self, name, snap=None):
        try:
            self.zfs("get", "-H", "name", self.dataset(name, snap))
        except cmdutils.Error:
            return False
        return True

    def send(self, name, snap, fh, base_snapshot=None, with_snapshots=False):
        # A replication stream (-R) removes snapshots missing on the sending
        # side from the receiving side.
        cmd = [_zfs.cmd, "send", "-Rpv"]
        if base_snapshot:
            cmd.extend(("-I" if with_snapshots else "-i", base_snapshot))
        cmd.extend(("--", self.dataset(name, snap)))
        commands.run(cmd, stdout=fh)

    def receive(self, name, fh):
        commands.run([_zfs.cmd, "recv", "-F", "--", self.dataset(name)],
                     stdin=fh)

    def pool_imported(self):
        pool = self.pool.split("/", 1)[0]
        try:
            out = self.zpool("list", "-o", "name", "-H", pool)
        except cmdutils.Error as e:
            self.log.warning("Cannot list pool %s: %s", pool, e)
            return False
        return pool in out.decode("utf-8").split()

    def import_pool(self):
        pool = self.pool.split("/", 1)[0]
        self.zpool("import", "-d", "/dev/disk/by-id/", "-o",
                   "cachefile=none", pool)

    def mount(self, name=None):
        if name is None:
            self.zfs("mount", "-a")
        else:
            self.zfs("mount", self.dataset(name))

    def is_mounted(self, name):
        out = self.zfs("get", "-o", "value", "-H", "mounted",
                       self.dataset(name))
        return out.decode("utf-8").strip() == "yes"


@plugin.register
class ZFSPoolPlugin(backends.ToolPlugin):

    log = logging.getLogger("storage.ZFSPoolPlugin")

    type = "zfspool"
    content = frozenset((sc.CONTENT_IMAGES, sc.CONTENT_ROOTDIR))
    default_content = frozenset((sc.CONTENT_IMAGES, sc.CONTENT_ROOTDIR))
    formats = frozenset((sc.FORMAT_RAW, sc.FORMAT_SUBVOL))
    default_format = sc.FORMAT_RAW

    options = {
        "pool": {"fixed": True},
        "blocksize": {"optional": True},
        "sparse": {"optional": True},
        "mountpoint": {"optional": True},
        "nodes": {"optional": True},
        "disable": {"optional": True},
        "content": {"optional": True},
        "bwlimit": {"optional": True},
    }

    grammar = volname.ZFS
    tool_class = ZfsTool

    def filesystem_path(self, scfg, name, snapname=None):
        vol = self.parse_volname(name)
        if vol.format == sc.FORMAT_SUBVOL:
            mountpoint = scfg.get("mountpoint") or "/" + scfg["pool"]
            path = os.path.join(mountpoint, vol.name)
            if snapname:
                path = os.path.join(path, ".zfs", "snapshot", snapname)
            return path
        path = "/dev/zvol/%s/%s" % (scfg["pool"], vol.name)
        if snapname:
            path += "@" + snapname
        return path

    def alloc_image(self, storeid, scfg, vmid, fmt, name, size):
        if name is not None:
            prefix = "subvol" if fmt == sc.FORMAT_SUBVOL else "vm"
            if not name.startswith("%s-%s-" % (prefix, vmid)):
                raise se.InvalidName(
                    name, "should be '%s-%s-*'" % (prefix, vmid))
        return super().alloc_image(storeid, scfg, vmid, fmt, name, size)

    def volume_rollback_is_possible(self, storeid, scfg, name, snap,
                                    blockers=None):
        """
        zfs can roll back only to the most recent snapshot. Newer snapshots
        are appended to blockers.
        """
        vol = self.parse_volname(name)
        snaps = self.tool(storeid, scfg).list_snapshots(vol.name)
        if blockers is None:
            blockers = []

        found = False
        for s in snaps:
            if s == snap:
                found = True
            elif found:
                blockers.append(s)

        volid = volname.volume_id(storeid, name)
        if not found:
            raise se.NotFound("snapshot %s of %s" % (snap, volid))
        if blockers:
            raise se.NotLatestSnapshot(snap, blockers)
        return True

    def activate_storage(self, storeid, scfg, cache=None):
        tool = self.tool(storeid, scfg)
        if not tool.pool_imported():
            try:
                tool.import_pool()
            except cmdutils.Error as e:
                # Another import may have raced with us.
                if not tool.pool_imported():
                    raise se.StorageNotActive(
                        "could not activate storage %s: %s" % (storeid, e))
        tool.mount()

    def activate_volume(self, storeid, scfg, name, snapname=None,
                        cache=None):
        if snapname:
            return
        vol = self.parse_volname(name)
        tool = self.tool(storeid, scfg)
        if vol.format == sc.FORMAT_SUBVOL:
            if not tool.is_mounted(vol.name):
                tool.mount(vol.name)
            return

        path = self.filesystem_path(scfg, name)
        deadline = time.monotonic() + ZVOL_LINK_TIMEOUT
        while not os.path.exists(path):
            if time.monotonic() >= deadline:
                raise se.Timeout(
                    "no zvol device link %s after %d seconds" %
                    (path, ZVOL_LINK_TIMEOUT))
            time.sleep(0.5)

    def volume_export_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        return [streams.ZFS]

    def volume_import_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        return self.volume_export_formats(
            storeid, scfg, name, snapshot, base_snapshot, with_snapshots)

    def volume_export(self, storeid, scfg, fh, name, format, snapshot=None,
                      base_snapshot=None, with_snapshots=False):
        if format != streams.ZFS:
            raise se.UnsupportedOperation(
                "volume_export", "unsupported stream format %s" % format)
        if snapshot is None:
            raise se.UnsupportedOperation(
                "volume_export", "zfs storage can only export snapshots")
        vol = self.parse_volname(name)
        self.tool(storeid, scfg).send(
            vol.name, snapshot, fh, base_snapshot=base_snapshot,
            with_snapshots=with_snapshots)

    def volume_import(self, storeid, scfg, fh, name, format, snapshot=None,
                      base_snapshot=None, with_snapshots=False,
                      allow_rename=False, lock=None):
        if format != streams.ZFS:
            raise se.UnsupportedOperation(
                "volume_import", "unsupported stream format %s" % format)

        vol = self.parse_volname(name)
        tool = self.tool(storeid, scfg)
        dataset = vol.name

        if base_snapshot:
            if not tool.exists(dataset, base_snapshot):
                raise se.NotFound(
                    "base snapshot %s" % tool.dataset(dataset, base_snapshot))
        elif tool.exists(dataset):
            if not allow_rename:
                raise se.AlreadyExists(tool.dataset(dataset))
            self.log.warning("Volume %s already exists, importing with a "
                             "different name", tool.dataset(dataset))
            dataset = self.find_free_diskname(storeid, scfg, vol.vmid,
                                              vol.format)

        try:
            tool.receive(dataset, fh)
        except Exception:
            self.log.warning("Import of %s failed, cleaning up", dataset)
            try:
                if base_snapshot:
                    tool.zfs("rollback", "-r", "--",
                             tool.dataset(dataset, base_snapshot))
                else:
                    with plugin.locked(lock):
                        tool.zfs("destroy", "-r", "--",
                                 tool.dataset(dataset))
            except cmdutils.Error as e:
                self.log.error("Cannot clean up %s: %s", dataset, e)
            raise

        return volname.volume_id(storeid, dataset)
