# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Storage API.

Operations on storages and volumes addressed by storage id and volume id
("<storeid>:<volname>"). Every operation takes the storage Configuration
explicitly; see cfgstore for reading it.

Volume allocation and removal run under the storage lock. Shared storages
use the cluster lock passed by the caller, see clusterlock.storage_lock.

Errors of backend tools are reported as se.BackendToolFailure, and tool
timeouts as se.Timeout.
"""

import functools
import logging
import os
import re
import subprocess

from decorator import decorator

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.common.config import config
from virtstore.storage import cfgstore
from virtstore.storage import clusterlock
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import plugin
from virtstore.storage import schema
from virtstore.storage import streams
from virtstore.storage import volname

log = logging.getLogger("storage.api")


@decorator
def method(func, *args, **kwargs):
    """
    Log a storage API call and convert backend tool errors to storage
    errors.
    """
    log.debug("START %s args=%s kwargs=%s", func.__name__, args[1:], kwargs)
    try:
        ret = func(*args, **kwargs)
    except cmdutils.TimeoutExpired as e:
        log.error("FINISH %s error=%s", func.__name__, e)
        raise se.Timeout(str(e))
    except cmdutils.Error as e:
        log.error("FINISH %s error=%s", func.__name__, e)
        raise se.BackendToolFailure.from_error(e)
    except se.StorageException as e:
        if e.expected:
            log.info("FINISH %s error=%s", func.__name__, e)
        else:
            log.error("FINISH %s error=%s", func.__name__, e)
        raise
    log.debug("FINISH %s return=%s", func.__name__, ret)
    return ret


def storage_plugin(scfg):
    """
    Return the plugin instance for storage configuration scfg.
    """
    return plugin.lookup(scfg["type"])()


def _resolve(cfg, volid):
    storeid, name = volname.parse_volume_id(volid)
    scfg = cfgstore.storage_config(cfg, storeid)
    return storeid, scfg, storage_plugin(scfg), name


# Paths

@method
def path(cfg, volid, snapname=None):
    """
    Return (path, vmid, vtype) of a volume.
    """
    storeid, scfg, p, name = _resolve(cfg, volid)
    return p.path(storeid, scfg, name, snapname)


@method
def parse_volname(cfg, volid):
    _, _, p, name = _resolve(cfg, volid)
    return p.parse_volname(name)


# Volumes of path based storages other than images: content type ->
# (file name in the content directory, volume name format).
_PATH_VOLUMES = (
    (sc.CONTENT_ISO,
     re.compile(r"^([^/]+%s)$" % volname.ISO_EXT, re.I), "iso/%s"),
    (sc.CONTENT_VZTMPL,
     re.compile(r"^([^/]+%s)$" % volname.VZTMPL_EXT, re.I), "vztmpl/%s"),
    (sc.CONTENT_ROOTDIR, re.compile(r"^(\d+)$"), "rootdir/%s"),
    (sc.CONTENT_BACKUP,
     re.compile(r"^([^/]+%s)$" % volname.BACKUP_EXT), "backup/%s"),
    (sc.CONTENT_SNIPPETS, re.compile(r"^([^/]+)$"), "snippets/%s"),
)

_IMAGE_PATH = re.compile(r"^(\d+)/([^/\s]+)$")


@method
def path_to_volume_id(cfg, path):
    """
    Return (vtype, volid) of the volume stored at path, or None if path is
    not a volume of a storage with a path.

    If path is already a volume id of such a storage, (vtype, path) is
    returned.
    """
    try:
        storeid, name = volname.parse_volume_id(path)
    except se.ParseError:
        pass
    else:
        scfg = cfgstore.storage_config(cfg, storeid)
        if not scfg.get("path"):
            return None
        vol = storage_plugin(scfg).parse_volname(name)
        return vol.vtype, path

    path = os.path.abspath(path)

    for storeid, scfg in cfg.items():
        if not scfg.get("path"):
            continue
        p = storage_plugin(scfg)
        found = _find_path_volume(p, storeid, scfg, path)
        if found is not None:
            return found

    return None


def _find_path_volume(p, storeid, scfg, path):
    relpath = _relpath(p.get_subdir(scfg, sc.CONTENT_IMAGES), path)
    if relpath is not None:
        m = _IMAGE_PATH.match(relpath)
        if m is None:
            return None
        # Linked clones are named after their base, so only the listing
        # knows the volume id.
        for info in p.list_images(storeid, scfg, vmid=m.group(1)):
            _, name = volname.parse_volume_id(info["volid"])
            if p.filesystem_path(scfg, name) == path:
                return sc.CONTENT_IMAGES, info["volid"]
        return None

    for vtype, regex, fmt in _PATH_VOLUMES:
        relpath = _relpath(p.get_subdir(scfg, vtype), path)
        if relpath is None:
            continue
        m = regex.match(relpath)
        if m is not None:
            return vtype, volname.volume_id(storeid, fmt % m.group(1))

    return None


def _relpath(directory, path):
    """
    Return path relative to directory, or None if path is not below
    directory.
    """
    directory = os.path.abspath(directory)
    if not path.startswith(directory + "/"):
        return None
    return path[len(directory) + 1:]


# Storage status

@method
def storage_info(cfg, content=None, node=None, cache=None):
    """
    Return dict storeid -> status dict for the storages enabled on node.

    Arguments:
        content (str): if set, only storages supporting this content.
    """
    if cache is None:
        cache = {}

    res = {}
    for storeid, scfg in cfg.items():
        if not cfgstore.storage_check_node(cfg, storeid, node, noerr=True):
            continue
        if content is not None and content not in scfg.get("content", ()):
            continue

        info = {
            "storage": storeid,
            "type": scfg["type"],
            "content": sorted(scfg.get("content", ())),
            "shared": bool(scfg.get("shared")),
            "enabled": not scfg.get("disable"),
            "active": False,
            "total": 0,
            "avail": 0,
            "used": 0,
        }
        res[storeid] = info

        if scfg.get("disable"):
            continue

        status = _storage_status(storeid, scfg, cache)
        if status is not None:
            total, free, used, active = status
            info.update(total=total, avail=free, used=used,
                        active=bool(active))

    return res


def _storage_status(storeid, scfg, cache):
    p = storage_plugin(scfg)
    try:
        p.activate_storage(storeid, scfg, cache)
        return p.status(storeid, scfg, cache)
    except (se.StorageException, cmdutils.Error, OSError) as e:
        log.warning("Cannot get status of storage %s: %s", storeid, e)
        return None


# Activation

@method
def activate_storage(cfg, storeid, cache=None):
    scfg = cfgstore.storage_config(cfg, storeid)
    cfgstore.storage_check_enabled(cfg, storeid)
    p = storage_plugin(scfg)
    if not p.check_connection(storeid, scfg):
        raise se.StorageNotActive(
            "storage %s is not online" % storeid)
    p.activate_storage(storeid, scfg, cache)


@method
def activate_storage_list(cfg, storeids, cache=None):
    if cache is None:
        cache = {}
    for storeid in storeids:
        activate_storage(cfg, storeid, cache)


@method
def deactivate_storage(cfg, storeid, cache=None):
    scfg = cfgstore.storage_config(cfg, storeid)
    storage_plugin(scfg).deactivate_storage(storeid, scfg, cache)


@method
def activate_volumes(cfg, vollist, snapname=None, cache=None):
    if cache is None:
        cache = {}
    storeids = sorted({volname.parse_volume_id(v)[0] for v in vollist})
    activate_storage_list(cfg, storeids, cache)
    for volid in vollist:
        storeid, scfg, p, name = _resolve(cfg, volid)
        p.activate_volume(storeid, scfg, name, snapname, cache)


@method
def deactivate_volumes(cfg, vollist, snapname=None, cache=None):
    if cache is None:
        cache = {}
    failed = []
    for volid in vollist:
        storeid, scfg, p, name = _resolve(cfg, volid)
        try:
            p.deactivate_volume(storeid, scfg, name, snapname, cache)
        except (se.StorageException, cmdutils.Error, OSError) as e:
            log.error("Cannot deactivate volume %s: %s", volid, e)
            failed.append(volid)
    if failed:
        raise se.StorageException(
            "cannot deactivate volumes: %s" % ", ".join(failed))


# Listing

@method
def volume_list(cfg, storeid, vmid=None, content=None, guests=None):
    """
    Return info dicts of the volumes on storage storeid.

    Arguments:
        vmid (str): if set, list only volumes owned by vmid.
        content (str): if set, list only this content type.
        guests (mapping): read only mapping of vmid to guest info, used to
            classify guest images.
    """
    scfg = cfgstore.storage_config(cfg, storeid)
    content_types = sorted(scfg.get("content", ()))
    if content is not None:
        if content not in content_types:
            return []
        content_types = [content]

    p = storage_plugin(scfg)
    p.activate_storage(storeid, scfg)
    res = p.list_volumes(storeid, scfg, vmid, content_types, guests=guests)
    return sorted(res, key=lambda info: info["volid"])


@method
def vdisk_list(cfg, storeid=None, vmid=None, vollist=None, cache=None):
    """
    Return dict storeid -> list of image info dicts.
    """
    if vmid is not None and vollist is not None:
        raise ValueError("vmid and vollist are mutually exclusive")
    if cache is None:
        cache = {}

    if storeid is not None:
        storeids = [storeid]
    elif vollist is not None:
        storeids = sorted({volname.parse_volume_id(v)[0] for v in vollist})
    else:
        storeids = [s for s in cfg
                    if cfgstore.storage_check_enabled(cfg, s, noerr=True)]

    res = {}
    for sid in storeids:
        scfg = cfgstore.storage_config(cfg, sid)
        if sc.CONTENT_IMAGES not in scfg.get("content", ()) and \
                sc.CONTENT_ROOTDIR not in scfg.get("content", ()):
            continue
        p = storage_plugin(scfg)
        p.activate_storage(sid, scfg, cache)
        images = p.list_images(sid, scfg, vmid, vollist, cache)
        res[sid] = sorted(images, key=lambda info: info["volid"])
    return res


# Image lifecycle

@method
def vdisk_alloc(cfg, storeid, vmid, fmt, name, size, cluster_lock=None):
    """
    Allocate a new image of size KiB and return its volume id.

    The name is chosen and the image created while holding the storage
    lock.
    """
    scfg = cfgstore.storage_config(cfg, storeid)
    cfgstore.storage_check_enabled(cfg, storeid)
    p = storage_plugin(scfg)
    vmid = str(vmid)
    if fmt is None:
        fmt = scfg.get("format") or p.default_format

    p.activate_storage(storeid, scfg)

    with clusterlock.storage_lock(storeid, scfg, cluster_lock=cluster_lock):
        name = p.alloc_image(storeid, scfg, vmid, fmt, name, size)

    volid = volname.volume_id(storeid, name)
    log.info("Allocated volume %s", volid)
    return volid


@method
def vdisk_free(cfg, volid, cluster_lock=None):
    """
    Remove a volume and its snapshots.
    """
    storeid, scfg, p, name = _resolve(cfg, volid)
    cfgstore.storage_check_enabled(cfg, storeid)
    vol = p.parse_volname(name)

    p.activate_storage(storeid, scfg)

    with clusterlock.storage_lock(storeid, scfg, cluster_lock=cluster_lock):
        if vol.isbase:
            _check_base_unused(p, storeid, scfg, vol)
        p.free_image(storeid, scfg, name, vol.isbase, vol.format)

    log.info("Removed volume %s", volid)


def _check_base_unused(p, storeid, scfg, vol):
    for info in p.list_images(storeid, scfg):
        _, name = volname.parse_volume_id(info["volid"])
        try:
            other = p.parse_volname(name)
        except se.StorageException:
            continue
        if other.basename == vol.name and other.basevmid == vol.vmid:
            raise se.VolumeProtected(
                "base volume %s is used by linked clone %s" %
                (vol.name, info["volid"]))


@method
def vdisk_create_base(cfg, volid, cluster_lock=None):
    """
    Convert a volume to a base image and return the new volume id.
    """
    storeid, scfg, p, name = _resolve(cfg, volid)
    p.activate_storage(storeid, scfg)
    with clusterlock.storage_lock(storeid, scfg, cluster_lock=cluster_lock):
        newname = p.create_base(storeid, scfg, name)
    return volname.volume_id(storeid, newname)


@method
def vdisk_clone(cfg, volid, vmid, snap=None, cluster_lock=None):
    """
    Create a linked clone of volid owned by vmid and return its volume id.
    """
    storeid, scfg, p, name = _resolve(cfg, volid)
    p.activate_storage(storeid, scfg)
    with clusterlock.storage_lock(storeid, scfg, cluster_lock=cluster_lock):
        newname = p.clone_image(storeid, scfg, name, str(vmid), snap)
    return volname.volume_id(storeid, newname)


@method
def rename_volume(cfg, volid, target_vmid, target_name=None,
                  cluster_lock=None):
    storeid, scfg, p, name = _resolve(cfg, volid)
    p.activate_storage(storeid, scfg)
    with clusterlock.storage_lock(storeid, scfg, cluster_lock=cluster_lock):
        return p.rename_volume(storeid, scfg, name, str(target_vmid),
                               target_name)


# Volume information

@method
def volume_size_info(cfg, volid, timeout=None):
    """
    Return (size, format, used, parent) of a volume.
    """
    if timeout is None:
        timeout = config.getint("storage", "info_timeout")
    storeid, scfg, p, name = _resolve(cfg, volid)
    return p.volume_size_info(storeid, scfg, name, timeout)


@method
def volume_resize(cfg, volid, size, running=False):
    """
    Resize a volume to size bytes.
    """
    storeid, scfg, p, name = _resolve(cfg, volid)
    return p.volume_resize(storeid, scfg, name, size, running)


@method
def volume_has_feature(cfg, feature, volid, snapname=None, running=False):
    storeid, scfg, p, name = _resolve(cfg, volid)
    return p.volume_has_feature(storeid, scfg, feature, name, snapname,
                                running)


@method
def volume_snapshot(cfg, volid, snap):
    storeid, scfg, p, name = _resolve(cfg, volid)
    p.volume_snapshot(storeid, scfg, name, snap)


@method
def volume_rollback_is_possible(cfg, volid, snap, blockers=None):
    storeid, scfg, p, name = _resolve(cfg, volid)
    return p.volume_rollback_is_possible(storeid, scfg, name, snap, blockers)


@method
def volume_snapshot_rollback(cfg, volid, snap):
    storeid, scfg, p, name = _resolve(cfg, volid)
    p.volume_snapshot_rollback(storeid, scfg, name, snap)


@method
def volume_snapshot_delete(cfg, volid, snap, running=False):
    storeid, scfg, p, name = _resolve(cfg, volid)
    return p.volume_snapshot_delete(storeid, scfg, name, snap, running)


@method
def volume_snapshot_list(cfg, volid):
    storeid, scfg, p, name = _resolve(cfg, volid)
    return p.volume_snapshot_list(storeid, scfg, name)


@method
def get_volume_notes(cfg, volid, timeout=None):
    storeid, scfg, p, name = _resolve(cfg, volid)
    return p.get_volume_notes(storeid, scfg, name, timeout)


@method
def update_volume_notes(cfg, volid, notes, timeout=None):
    storeid, scfg, p, name = _resolve(cfg, volid)
    p.update_volume_notes(storeid, scfg, name, notes, timeout)


@method
def get_volume_attribute(cfg, volid, attribute):
    storeid, scfg, p, name = _resolve(cfg, volid)
    return p.get_volume_attribute(storeid, scfg, name, attribute)


@method
def update_volume_attribute(cfg, volid, attribute, value):
    storeid, scfg, p, name = _resolve(cfg, volid)
    p.update_volume_attribute(storeid, scfg, name, attribute, value)


# Transfer

@method
def volume_export_formats(cfg, volid, snapshot=None, base_snapshot=None,
                          with_snapshots=False):
    storeid, scfg, p, name = _resolve(cfg, volid)
    return streams.export_formats(p, storeid, scfg, name, snapshot,
                                  base_snapshot, with_snapshots)


@method
def volume_import_formats(cfg, volid, snapshot=None, base_snapshot=None,
                          with_snapshots=False):
    storeid, scfg, p, name = _resolve(cfg, volid)
    return streams.import_formats(p, storeid, scfg, name, snapshot,
                                  base_snapshot, with_snapshots)


@method
def volume_transfer_formats(cfg, src_volid, dst_volid, snapshot=None,
                            base_snapshot=None, with_snapshots=False):
    """
    Return the formats usable to transfer src_volid to dst_volid.
    """
    export = volume_export_formats(cfg, src_volid, snapshot, base_snapshot,
                                   with_snapshots)
    imports = volume_import_formats(cfg, dst_volid, snapshot, base_snapshot,
                                    with_snapshots)
    return streams.transfer_formats(export, imports)


@method
def volume_export(cfg, fh, volid, format, snapshot=None, base_snapshot=None,
                  with_snapshots=False):
    storeid, scfg, p, name = _resolve(cfg, volid)
    p.activate_storage(storeid, scfg)
    p.activate_volume(storeid, scfg, name, snapshot)
    streams.volume_export(p, storeid, scfg, fh, name, format,
                          snapshot=snapshot, base_snapshot=base_snapshot,
                          with_snapshots=with_snapshots)


@method
def volume_import(cfg, fh, volid, format, snapshot=None, base_snapshot=None,
                  with_snapshots=False, allow_rename=False,
                  cluster_lock=None):
    """
    Import a volume from stream fh and return the volume id of the imported
    volume.

    The storage lock is held only while the volume is allocated, or removed
    after a failed import, so other volumes can be allocated while the data
    is copied.
    """
    storeid, scfg, p, name = _resolve(cfg, volid)
    cfgstore.storage_check_enabled(cfg, storeid)
    p.activate_storage(storeid, scfg)
    lock = functools.partial(clusterlock.storage_lock, storeid, scfg,
                             cluster_lock=cluster_lock)
    return streams.volume_import(
        p, storeid, scfg, fh, name, format, snapshot=snapshot,
        base_snapshot=base_snapshot, with_snapshots=with_snapshots,
        allow_rename=allow_rename, lock=lock)


def import_listen(address, port_min=None, port_max=None):
    """
    Listen for a remote exporter in the migration port range.

    Returns:
        tuple (socket, port)
    """
    if port_min is None:
        port_min = config.getint("migration", "port_min")
    if port_max is None:
        port_max = config.getint("migration", "port_max")
    return streams.listen(address, port_min, port_max)


def import_accept(sock, timeout=None):
    if timeout is None:
        timeout = config.getint("migration", "accept_timeout")
    return streams.accept(sock, timeout)


def _target_volname(cfg, volid, target_storeid):
    """
    Return the volume name of volid on storage target_storeid.
    """
    storeid, scfg, p, name = _resolve(cfg, volid)
    tcfg = cfgstore.storage_config(cfg, target_storeid)
    if scfg["type"] == tcfg["type"]:
        return name

    vol = p.parse_volname(name)
    if vol.format not in storage_plugin(tcfg).formats:
        raise se.UnsupportedOperation(
            "storage_migrate",
            "unsupported format %r for storage type %s" %
            (vol.format, tcfg["type"]))
    basename = re.sub(r"\.%s$" % re.escape(vol.format), "", vol.name)
    if tcfg.get("path"):
        return "%s/%s.%s" % (vol.vmid, basename, vol.format)
    return basename


def needs_migration_snapshot(scfg, with_snapshots=False):
    """
    Return True if volumes of storage scfg are exported from a snapshot.
    """
    if scfg["type"] == "zfspool":
        return True
    return scfg["type"] == "btrfs" and with_snapshots


def _import_command(importer, volid, format, address, snapshot=None,
                    base_snapshot=None, with_snapshots=False,
                    allow_rename=False, delete_snapshot=False):
    cmd = list(importer)
    cmd.extend(("import", volid, format, "tcp://" + address))
    if snapshot is not None:
        cmd.extend(("--snapshot", snapshot))
    if delete_snapshot:
        cmd.append("--delete-snapshot")
    if base_snapshot is not None:
        cmd.extend(("--base", base_snapshot))
    if with_snapshots:
        cmd.append("--with-snapshots")
    if allow_rename:
        cmd.append("--allow-rename")
    return cmd


@method
def storage_migrate(cfg, volid, target_storeid, importer, address,
                    target_volname=None, snapshot=None, base_snapshot=None,
                    with_snapshots=False, allow_rename=False, bwlimit=None):
    """
    Copy volume volid to storage target_storeid on another node, and return
    the volume id of the copy.

    The importer command is run with the "import" arguments of
    virtstore-tool, usually virtstore-tool on the target node run over
    ssh. The importer listens on address and announces the port, and the
    volume is exported to the connection in the first format both storages
    support.

    Volumes of a shared storage are not copied.

    Arguments:
        importer (list): command prefix running virtstore-tool on the
            target node
        address (str): address of the target node the importer listens on
        bwlimit (int): bandwidth limit in KiB/s, see get_bandwidth_limit
    """
    storeid, _ = volname.parse_volume_id(volid)
    scfg = cfgstore.storage_config(cfg, storeid)
    if storeid == target_storeid and scfg.get("shared"):
        log.info("Volume %s is on shared storage, not copying", volid)
        return volid

    if target_volname is None:
        target_volname = _target_volname(cfg, volid, target_storeid)
    target_volid = volname.volume_id(target_storeid, target_volname)

    migration_snapshot = (snapshot is None and
                          needs_migration_snapshot(scfg, with_snapshots))
    if migration_snapshot:
        snapshot = sc.MIGRATION_SNAPSHOT

    formats = volume_transfer_formats(cfg, volid, target_volid, snapshot,
                                      base_snapshot, with_snapshots)
    if not formats:
        tcfg = cfgstore.storage_config(cfg, target_storeid)
        raise se.UnsupportedOperation(
            "storage_migrate",
            "cannot migrate from storage type %s to %s" %
            (scfg["type"], tcfg["type"]))
    format = formats[0]

    cmd = _import_command(importer, target_volid, format, address,
                          snapshot=snapshot, base_snapshot=base_snapshot,
                          with_snapshots=with_snapshots,
                          allow_rename=allow_rename,
                          delete_snapshot=migration_snapshot)

    log.info("Migrating %s to %s format=%s", volid, target_volid, format)

    if migration_snapshot:
        volume_snapshot(cfg, volid, snapshot)
    try:
        return _send_volume(cfg, cmd, volid, format, snapshot=snapshot,
                            base_snapshot=base_snapshot,
                            with_snapshots=with_snapshots, bwlimit=bwlimit)
    finally:
        if migration_snapshot:
            try:
                volume_snapshot_delete(cfg, volid, snapshot)
            except se.StorageException:
                log.exception("Cannot remove snapshot %s of %s",
                              snapshot, volid)


def _send_volume(cfg, cmd, volid, format, snapshot=None, base_snapshot=None,
                 with_snapshots=False, bwlimit=None):
    p = commands.start(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    with commands.terminating(p):
        address, port = streams.read_announce(p.stdout)
        timeout = config.getint("migration", "accept_timeout")
        sock = streams.connect(address, port, timeout=timeout)
        try:
            with sock.makefile("wb", buffering=0) as f:
                with streams.rate_limited(f, bwlimit) as out:
                    volume_export(cfg, out, volid, format,
                                  snapshot=snapshot,
                                  base_snapshot=base_snapshot,
                                  with_snapshots=with_snapshots)
        finally:
            sock.close()
        out, err = p.communicate()

    log.debug(cmdutils.retcode_log_line(p.returncode, err))
    if p.returncode != 0:
        raise cmdutils.Error(cmd, p.returncode, out, err)

    new_volid = streams.imported_volume(out)
    if new_volid is None:
        raise se.StreamFormatError(
            "unable to get the id of the migrated volume from %r" % out)
    log.info("Migrated %s to %s", volid, new_volid)
    return new_volid


# Bandwidth limits

def _storage_limit(limits, operation):
    if not limits:
        return None
    limit = limits.get(operation)
    if limit is None:
        limit = limits.get(sc.BWLIMIT_DEFAULT)
    return limit


def get_bandwidth_limit(cfg, operation, storeids, override=None,
                        global_limits=None):
    """
    Return the bandwidth limit in KiB/s for an operation on storages
    storeids, or None if the operation is not limited.

    The lowest of override and the storages limits wins; an override of 0
    means no limit. If some storage has no limit for the operation, the
    global limits apply too.

    Arguments:
        operation (str): one of sc.BWLIMIT_OPERATIONS. Other operations use
            the default limit.
        global_limits (dict): operation -> limit, default from the
            [storage] bwlimit option.
    """
    def apply(limit):
        if limit is not None and (not override or limit < override):
            return limit
        return override

    use_global = False
    storeids = [s for s in storeids if s is not None]

    for storeid in sorted(set(storeids)):
        scfg = cfgstore.storage_config(cfg, storeid)
        limit = _storage_limit(scfg.get("bwlimit"), operation)
        if limit is None:
            use_global = True
        else:
            override = apply(limit)

    if storeids and not use_global:
        return override

    if global_limits is None:
        global_limits = schema.decode_bwlimit(
            config.get("storage", "bwlimit"))
    return apply(_storage_limit(global_limits, operation))


# Backups

def prune_options(scfg, opts=None):
    """
    Return the prune options to use for a storage: opts if given, else the
    storage prune-backups or legacy maxfiles setting, else keep-all.
    """
    if opts:
        return schema.validate_prune_backups(opts)
    if "prune-backups" in scfg:
        return scfg["prune-backups"]
    if "maxfiles" in scfg:
        return schema.maxfiles_to_prune_backups(scfg["maxfiles"])
    return {sc.PRUNE_KEEP_ALL: 1}


@method
def prune_backups(cfg, storeid, opts=None, vmid=None, type=None,
                  dry_run=False):
    """
    Prune the backups on storage storeid.

    Returns:
        list of PruneItem, marked before removing.
    """
    scfg = cfgstore.storage_config(cfg, storeid)
    if sc.CONTENT_BACKUP not in scfg.get("content", ()):
        raise se.UnsupportedOperation(
            "prune_backups", "storage %s does not hold backups" % storeid)
    opts = prune_options(scfg, opts)
    p = storage_plugin(scfg)
    p.activate_storage(storeid, scfg)
    return p.prune_backups(storeid, scfg, opts, vmid=vmid, type=type,
                           dry_run=dry_run)

