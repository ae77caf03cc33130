# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Ceph RBD storage.

Images are rbd images in a pool, optionally in a namespace. Base images
carry a protected "__base__" snapshot, and linked clones are rbd clones of
this snapshot or of any other protected snapshot.
"""

import json
import logging
import math
import os
import re

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.storage import backends
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import plugin
from virtstore.storage import streams
from virtstore.storage import volname

log = logging.getLogger("storage.rbd")

_rbd = cmdutils.CommandPath("rbd", "/usr/bin/rbd")
_ceph = cmdutils.CommandPath("ceph", "/usr/bin/ceph")

CEPH_CONFIG_DIR = "/etc/pve/priv/ceph"

DEFAULT_POOL = "rbd"

# Subcommands failing with a --namespace option.
_NO_NAMESPACE = frozenset(("unmap",))

_OWNER = re.compile(r"^(?:vm|base)-(\d+)-")

_BASE_PARENT = re.compile(r"^(base-\d+-\S+)@%s$" % sc.BASE_SNAPSHOT)

# librbd prefixes errors with a timestamp and thread id.
_LIBRBD_ERROR = re.compile(
    r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d+ [0-9a-f]+ [\-\d]+ librbd: "
    r"(.*)$", re.M)


def _parse_json(out, default):
    text = out.decode("utf-8").strip()
    if not text:
        return default
    return json.loads(text)


def parent_name(parent):
    """
    Return the name of a parent image from "rbd ls -l" parent info, which is
    either "pool/image@snap" or a dict.
    """
    if not parent:
        return None
    if isinstance(parent, dict):
        name = parent.get("image")
        snap = parent.get("snapshot")
        return "%s@%s" % (name, snap) if snap else name
    return parent.rsplit("/", 1)[-1]


class RbdTool(backends.VolumeTool):

    log = logging.getLogger("storage.RbdTool")

    @property
    def pool(self):
        return self.scfg.get("pool") or DEFAULT_POOL

    def connect_options(self):
        opts = []
        keyring = os.path.join(CEPH_CONFIG_DIR, "%s.keyring" % self.storeid)
        conf = os.path.join(CEPH_CONFIG_DIR, "%s.conf" % self.storeid)
        if os.path.exists(conf):
            opts.extend(("-c", conf))
        if self.scfg.get("monhost"):
            hosts = re.split(r"[\s,;]+", self.scfg["monhost"])
            opts.extend(("-m", ",".join(h for h in hosts if h)))
            opts.extend(("--auth_supported",
                         "cephx" if os.path.exists(keyring) else "none"))
        opts.extend(("-n", "client.%s" % self.scfg.get("username", "admin")))
        if os.path.exists(keyring):
            opts.extend(("--keyring", keyring))
        return opts

    def command(self, op, *args):
        cmd = [_rbd.cmd]
        if op == "import":
            cmd.extend(("--dest-pool", self.pool))
        else:
            cmd.extend(("-p", self.pool))
        namespace = self.scfg.get("namespace")
        if namespace is not None and op not in _NO_NAMESPACE:
            cmd.extend(("--namespace", namespace))
        cmd.extend(self.connect_options())
        cmd.append(op)
        cmd.extend(args)
        return cmd

    def rbd(self, op, *args, **kwargs):
        cmd = self.command(op, *args)
        try:
            return self._run(cmd, **kwargs)
        except cmdutils.Error as e:
            m = None
            if e.err:
                for m in _LIBRBD_ERROR.finditer(e.err.decode("utf-8",
                                                            "replace")):
                    pass
            if m is not None:
                raise se.BackendToolFailure(cmd, e.rc, m.group(1))
            raise

    def image_path(self, name):
        namespace = self.scfg.get("namespace")
        if namespace:
            return "%s/%s/%s" % (self.pool, namespace, name)
        return "%s/%s" % (self.pool, name)

    def info(self, name, snap=None):
        spec = "%s@%s" % (name, snap) if snap else name
        return _parse_json(self.rbd("info", spec, "--format", "json"), {})

    def snapshots(self, name):
        out = self.rbd("snap", "ls", name, "--format", "json")
        snaps = []
        for s in _parse_json(out, []):
            protected = s.get("protected") in (True, "true")
            snaps.append((s.get("id", 0), s["name"], protected))
        return sorted(snaps)

    def _protect(self, name, snap):
        if not self.info(name, snap).get("protected") in (True, "true"):
            self.rbd("snap", "protect", name, "--snap", snap)

    def _unprotect(self, name, snap):
        if self.info(name, snap).get("protected") in (True, "true"):
            self.rbd("snap", "unprotect", name, "--snap", snap)

    def allocate(self, name, size, fmt):
        args = ["--image-format", "2", "--size",
                str(int(math.ceil(size / 1024)))]
        if self.scfg.get("data-pool"):
            args.extend(("--data-pool", self.scfg["data-pool"]))
        self.rbd("create", *(args + [name]))

    def delete(self, name):
        for _, snap, protected in self.snapshots(name):
            if protected:
                self.rbd("snap", "unprotect", name, "--snap", snap)
        self.rbd("snap", "purge", name)
        self.rbd("rm", name)

    def resize(self, name, size, fmt):
        self.rbd("resize", "--size", str(int(math.ceil(size / 1024**2))),
                 name)

    def rename(self, name, newname):
        self.rbd("rename", self.image_path(name), self.image_path(newname))

    def snapshot(self, name, snap):
        self.rbd("snap", "create", "--snap", snap, name)

    def snapshot_rollback(self, name, snap):
        self.rbd("snap", "rollback", "--snap", snap, name)

    def snapshot_delete(self, name, snap):
        self._unprotect(name, snap)
        self.rbd("snap", "rm", "--snap", snap, name)

    def list_snapshots(self, name):
        return [snap for _, snap, _ in self.snapshots(name)]

    def make_base(self, name):
        self.snapshot(name, sc.BASE_SNAPSHOT)
        self._protect(name, sc.BASE_SNAPSHOT)

    def clone(self, name, snap, newname, fmt):
        if snap:
            self._protect(name, snap)
        else:
            snap = sc.BASE_SNAPSHOT
        args = [self.image_path(name), "--snap", snap]
        if self.scfg.get("data-pool"):
            args.extend(("--data-pool", self.scfg["data-pool"]))
        args.append(self.image_path(newname))
        self.rbd("clone", *args)

    def list(self):
        out = self.rbd("ls", "-l", "--format", "json")
        entries = []
        for el in _parse_json(out, []):
            if el.get("snapshot") is not None:
                continue
            image = el["image"]
            if not _OWNER.match(image):
                continue
            parent = None
            m = _BASE_PARENT.match(parent_name(el.get("parent")) or "")
            if m:
                parent = m.group(1)
            entries.append(backends.VolumeEntry(
                image, el.get("size", 0), sc.FORMAT_RAW, parent))
        return entries

    def used(self, name):
        out = self.rbd("du", name, "--format", "json")
        images = _parse_json(out, {}).get("images", [])
        return sum(i.get("used_size", 0) for i in images
                   if i.get("name") == name and not i.get("snapshot"))

    def status(self):
        cmd = [_ceph.cmd] + self.connect_options() + ["df", "--format",
                                                       "json"]
        df = _parse_json(commands.run(cmd), {})
        pool = self.scfg.get("data-pool") or self.pool
        for p in df.get("pools", ()):
            if p.get("name") == pool:
                stats = p["stats"]
                free = stats["max_avail"]
                used = stats.get("stored", stats.get("bytes_used", 0))
                return used + free, free, used
        raise se.NotFound("usage stats of pool %s" % pool)

    def export(self, name, fh):
        commands.run(self.command("export", "--export-format", "1", name,
                                  "-"), stdout=fh)

    def import_(self, name, fh):
        commands.run(self.command("import", "--export-format", "1", "-",
                                  name), stdin=fh)

    def map(self, name):
        out = self.rbd("map", name)
        return out.decode("utf-8").strip()

    def unmap(self, device):
        self.rbd("unmap", device)


@plugin.register
class RBDPlugin(backends.ToolPlugin):

    log = logging.getLogger("storage.RBDPlugin")

    type = "rbd"
    content = frozenset((sc.CONTENT_IMAGES, sc.CONTENT_ROOTDIR))
    default_content = frozenset((sc.CONTENT_IMAGES,))
    formats = frozenset((sc.FORMAT_RAW,))
    default_format = sc.FORMAT_RAW

    options = {
        "nodes": {"optional": True},
        "disable": {"optional": True},
        "monhost": {"optional": True},
        "pool": {"optional": True},
        "data-pool": {"optional": True},
        "namespace": {"optional": True},
        "username": {"optional": True},
        "content": {"optional": True},
        "krbd": {"optional": True},
        "keyring": {"optional": True},
        "bwlimit": {"optional": True},
    }

    grammar = volname.RBD
    tool_class = RbdTool

    def on_add_hook(self, storeid, scfg, **params):
        keyring = params.get("keyring")
        if keyring:
            os.makedirs(CEPH_CONFIG_DIR, exist_ok=True)
            plugin.write_file(
                os.path.join(CEPH_CONFIG_DIR, "%s.keyring" % storeid),
                keyring.encode("utf-8"))

    def on_update_hook(self, storeid, scfg, **params):
        if "keyring" in params:
            if params["keyring"]:
                self.on_add_hook(storeid, scfg, **params)
            else:
                self.on_delete_hook(storeid, scfg)

    def on_delete_hook(self, storeid, scfg):
        try:
            os.unlink(os.path.join(CEPH_CONFIG_DIR, "%s.keyring" % storeid))
        except FileNotFoundError:
            pass

    def _krbd(self, scfg):
        return bool(plugin.parse_boolean(scfg.get("krbd", False)))

    def filesystem_path(self, scfg, name, snapname=None):
        vol = self.parse_volname(name)
        image = vol.name
        if snapname:
            image += "@" + snapname
        pool = scfg.get("pool") or DEFAULT_POOL
        namespace = scfg.get("namespace")
        if self._krbd(scfg):
            if namespace:
                return "/dev/rbd/%s/%s/%s" % (pool, namespace, image)
            return "/dev/rbd/%s/%s" % (pool, image)
        if namespace:
            return "rbd:%s/%s/%s" % (pool, namespace, image)
        return "rbd:%s/%s" % (pool, image)

    def alloc_image(self, storeid, scfg, vmid, fmt, name, size):
        if name is not None and not name.startswith("vm-%s-" % vmid):
            raise se.InvalidName(name, "should be 'vm-%s-*'" % vmid)
        return super().alloc_image(storeid, scfg, vmid, fmt, name, size)

    def free_image(self, storeid, scfg, name, isbase, format=None):
        self.deactivate_volume(storeid, scfg, name)
        super().free_image(storeid, scfg, name, isbase, format)

    def volume_size_info(self, storeid, scfg, name, timeout=None):
        vol = self.parse_volname(name)
        tool = self.tool(storeid, scfg)
        info = tool.info(vol.name)
        if not info:
            raise se.NotFound(volname.volume_id(storeid, name))
        parent = info.get("parent")
        if isinstance(parent, dict):
            parent = parent_name(parent)
        return (info.get("size", 0), sc.FORMAT_RAW, tool.used(vol.name),
                parent)

    def volume_resize(self, storeid, scfg, name, size, running=False):
        if running and not self._krbd(scfg):
            return True
        return super().volume_resize(storeid, scfg, name, size, running)

    def volume_snapshot_delete(self, storeid, scfg, name, snap,
                               running=False):
        self.deactivate_volume(storeid, scfg, name, snap)
        return super().volume_snapshot_delete(storeid, scfg, name, snap,
                                              running)

    def activate_volume(self, storeid, scfg, name, snapname=None,
                        cache=None):
        if not self._krbd(scfg):
            return
        path = self.filesystem_path(scfg, name, snapname)
        if os.path.exists(path):
            return
        vol = self.parse_volname(name)
        image = vol.name + ("@" + snapname if snapname else "")
        self.tool(storeid, scfg).map(image)

    def deactivate_volume(self, storeid, scfg, name, snapname=None,
                          cache=None):
        if not self._krbd(scfg):
            return
        path = self.filesystem_path(scfg, name, snapname)
        if os.path.exists(path):
            self.tool(storeid, scfg).unmap(path)

    def volume_export_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
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
        vol = self.parse_volname(name)
        size, _, _, _ = self.volume_size_info(storeid, scfg, name)
        streams.write_header(fh, streams.align_size(size))
        self.tool(storeid, scfg).export(vol.name, fh)

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
        target = vol.name
        if self._exists(storeid, scfg, target):
            if not allow_rename:
                raise se.AlreadyExists(volname.volume_id(storeid, name))
            self.log.warning("Volume %s already exists, importing with a "
                             "different name", name)
            target = self.find_free_diskname(storeid, scfg, vol.vmid,
                                             vol.format)

        streams.read_header(fh)
        try:
            self.tool(storeid, scfg).import_(target, fh)
        except Exception:
            self.log.warning("Import of %s failed, removing %s", name, target)
            try:
                with plugin.locked(lock):
                    self.free_image(storeid, scfg, target, False)
            except Exception:
                self.log.exception("Cannot remove %s", target)
            raise

        return volname.volume_id(storeid, target)
