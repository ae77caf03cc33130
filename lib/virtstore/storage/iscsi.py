# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
iSCSI target storage.

The LUNs of the target are used as they are. Volumes cannot be created or
removed; the storage only logs in to the target and lists the LUNs found in
sysfs, named by their stable /dev/disk/by-id name.
"""

import logging
import os
import re
import socket
import time

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import plugin
from virtstore.storage import volname

log = logging.getLogger("storage.iscsi")

_iscsiadm = cmdutils.CommandPath("iscsiadm",
                                 "/usr/bin/iscsiadm", "/sbin/iscsiadm")

DEFAULT_PORT = 3260
PORTAL_TIMEOUT = 2

# Sessions are rescanned at most once in this interval.
RESCAN_INTERVAL = 10
RESCAN_FILE = "/run/virtstore/iscsi-rescan.stamp"

SESSIONS_DIR = "/sys/class/iscsi_session"
SCSI_DEVICES_DIR = "/sys/bus/scsi/devices"
BLOCK_DIR = "/sys/block"
BY_ID_DIR = "/dev/disk/by-id"

# tcp: [1] 192.168.1.10:3260,1 iqn.2003-01.org.example:target (non-flash)
_SESSION = re.compile(r"^tcp:\s+\[(\S+)\]\s+\S+\s+(\S+)(\s+\S+)?\s*$")
_NO_SESSIONS = re.compile(br"No active sessions", re.I)

_DISCOVERY = re.compile(r"^(\S+:\d+),\S+\s+(\S+)\s*$")


def iscsiadm(*args):
    return commands.run([_iscsiadm.cmd] + list(args))


def session_list():
    """
    Return dict target -> list of session ids. A target may have several
    sessions when multipath is used.
    """
    try:
        out = iscsiadm("--mode", "session")
    except cmdutils.Error as e:
        if _NO_SESSIONS.search(e.err or b""):
            return {}
        raise

    res = {}
    for line in out.decode("utf-8").splitlines():
        m = _SESSION.match(line)
        if m:
            session, target = m.group(1), m.group(2)
            res.setdefault(target, []).append(session)
    return res


def parse_portal(portal):
    """
    Return (host, port) of portal "host[:port]", "[ipv6]:port" or "ipv6".
    """
    m = re.match(r"^\[([^\]]+)\](?::(\d+))?$", portal)
    if m:
        return m.group(1), int(m.group(2) or DEFAULT_PORT)
    if portal.count(":") == 1:
        host, port = portal.split(":")
        return host, int(port)
    return portal, DEFAULT_PORT


def test_portal(portal, timeout=PORTAL_TIMEOUT):
    host, port = parse_portal(portal)
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        log.debug("Cannot connect to portal %s: %s", portal, e)
        return False
    sock.close()
    return True


def discovery(portal):
    """
    Return dict target -> list of portals, discovered using sendtargets.
    """
    if not test_portal(portal):
        return {}
    out = iscsiadm("--mode", "discovery", "--type", "sendtargets",
                   "--portal", portal)
    res = {}
    for line in out.decode("utf-8").splitlines():
        m = _DISCOVERY.match(line)
        if m:
            res.setdefault(m.group(2), []).append(m.group(1))
    return res


def login(target, portal):
    try:
        discovery(portal)
    except cmdutils.Error as e:
        log.warning("Discovery on portal %s failed: %s", portal, e)
    log.info("Logging in to target %s", target)
    iscsiadm("--mode", "node", "--targetname", target, "--login")


def logout(target):
    log.info("Logging out of target %s", target)
    iscsiadm("--mode", "node", "--targetname", target, "--logout")


def rescan(sessions):
    try:
        age = time.time() - os.stat(RESCAN_FILE).st_mtime
    except FileNotFoundError:
        age = None
    if age is not None and 0 <= age <= RESCAN_INTERVAL:
        return

    os.makedirs(os.path.dirname(RESCAN_FILE), exist_ok=True)
    with open(RESCAN_FILE, "a"):
        pass
    os.utime(RESCAN_FILE)

    for session in sessions:
        try:
            iscsiadm("--mode", "session", "--sid", session, "--rescan")
        except cmdutils.Error as e:
            log.warning("Cannot rescan session %s: %s", session, e)


def _read_first_line(path):
    try:
        with open(path) as f:
            return f.readline().strip()
    except OSError:
        return None


def _glob_first(dirname, regex):
    try:
        entries = sorted(os.listdir(dirname))
    except OSError:
        return None
    for entry in entries:
        m = re.match(regex, entry)
        if m:
            return m
    return None


def stable_paths():
    """
    Return dict block device name -> stable scsi name in BY_ID_DIR.
    Partitions are ignored.
    """
    res = {}
    try:
        entries = os.listdir(BY_ID_DIR)
    except FileNotFoundError:
        return res
    for entry in entries:
        if not entry.startswith("scsi-") or re.search(r"-part\d+$", entry):
            continue
        try:
            dest = os.readlink(os.path.join(BY_ID_DIR, entry))
        except OSError:
            continue
        m = re.match(r"^\.\./\.\./([^/]+)", dest)
        if m:
            res[m.group(1)] = entry
    return res


def device_list():
    """
    Return dict target -> {lun name -> info dict} for the LUNs of all
    logged in sessions.
    """
    paths = stable_paths()
    res = {}
    try:
        sessions = os.listdir(SESSIONS_DIR)
    except FileNotFoundError:
        return res

    for entry in sessions:
        if not re.match(r"^session\d+$", entry):
            continue
        session_dir = os.path.join(SESSIONS_DIR, entry)
        target = _read_first_line(os.path.join(session_dir, "targetname"))
        if not target:
            continue
        m = _glob_first(os.path.join(session_dir, "device"),
                        r"^target(\d+):")
        if m is None:
            continue
        host = m.group(1)

        try:
            devices = sorted(os.listdir(SCSI_DEVICES_DIR))
        except FileNotFoundError:
            continue
        for dev in devices:
            dm = re.match(r"^%s:(\d+):(\d+):(\d+)$" % host, dev)
            if dm is None:
                continue
            channel, scsi_id, lun = dm.groups()
            info = _lun_info(dev, paths)
            if info is None:
                continue
            name, size = info
            lunname = "%s.%s.%s.%s" % (channel, scsi_id, lun, name)
            res.setdefault(target, {})[lunname] = {
                "format": sc.FORMAT_RAW,
                "size": size,
                "vmid": "0",
                "channel": int(channel),
                "id": int(scsi_id),
                "lun": int(lun),
            }
    return res


def _lun_info(dev, paths):
    dev_dir = os.path.join(SCSI_DEVICES_DIR, dev)
    # Disks only.
    if _read_first_line(os.path.join(dev_dir, "type")) != "0":
        return None

    block_dir = os.path.join(dev_dir, "block")
    if os.path.isdir(block_dir):
        m = _glob_first(block_dir, r"^([A-Za-z]\S*)$")
    else:
        m = _glob_first(dev_dir, r"^block:(\S+)$")
    if m is None:
        return None
    bdev = m.group(1)

    # Multipath device holding the disk.
    holder = _glob_first(os.path.join(BLOCK_DIR, bdev, "holders"),
                         r"^([A-Za-z]\S*)$")
    if holder is not None:
        bdev = holder.group(1)

    name = paths.get(bdev)
    if name is None:
        return None
    sectors = _read_first_line(os.path.join(BLOCK_DIR, bdev, "size"))
    if not sectors:
        return None
    return name, int(sectors) * 512


def _cached(cache, key, func):
    if cache is None:
        return func()
    if key not in cache:
        cache[key] = func()
    return cache[key]


@plugin.register
class ISCSIPlugin(plugin.Plugin):

    log = logging.getLogger("storage.ISCSIPlugin")

    type = "iscsi"
    content = frozenset((sc.CONTENT_IMAGES, sc.CONTENT_NONE))
    default_content = frozenset((sc.CONTENT_IMAGES,))
    formats = frozenset((sc.FORMAT_RAW,))
    default_format = sc.FORMAT_RAW
    options = {
        "portal": {"fixed": True},
        "target": {"fixed": True},
        "nodes": {"optional": True},
        "disable": {"optional": True},
        "content": {"optional": True},
        "bwlimit": {"optional": True},
    }
    grammar = volname.ISCSI

    def filesystem_path(self, scfg, name, snapname=None):
        if snapname:
            raise se.UnsupportedOperation(
                "path", "snapshots are not possible on iscsi storage")
        return os.path.join(BY_ID_DIR, volname.lun_device_id(name))

    def alloc_image(self, storeid, scfg, vmid, fmt, name, size):
        raise se.UnsupportedOperation(
            "alloc_image", "can't allocate space in iscsi storage")

    def free_image(self, storeid, scfg, name, isbase, format=None):
        raise se.UnsupportedOperation(
            "free_image", "can't free space in iscsi storage")

    def create_base(self, storeid, scfg, name):
        raise se.UnsupportedOperation(
            "create_base", "can't create base images in iscsi storage")

    def clone_image(self, storeid, scfg, name, vmid, snap=None):
        raise se.UnsupportedOperation(
            "clone_image", "can't clone images in iscsi storage")

    def rename_volume(self, storeid, scfg, source, target_vmid,
                      target_name=None):
        raise se.UnsupportedOperation(
            "rename_volume", "can't rename volumes in iscsi storage")

    def volume_resize(self, storeid, scfg, name, size, running=False):
        raise se.UnsupportedOperation(
            "volume_resize", "volume resize is not possible on iscsi device")

    def volume_size_info(self, storeid, scfg, name, timeout=None):
        for info in self.list_images(storeid, scfg,
                                     vollist=[volname.volume_id(storeid,
                                                                name)]):
            return info["size"], info["format"], info["size"], None
        raise se.NotFound(volname.volume_id(storeid, name))

    def list_images(self, storeid, scfg, vmid=None, vollist=None,
                    cache=None):
        if vmid is not None and vollist is not None:
            raise ValueError("vmid and vollist are mutually exclusive")

        # LUNs have no owner.
        if vmid is not None:
            return []

        devices = _cached(cache, "iscsi_devices", device_list)
        wanted = set(vollist) if vollist is not None else None
        res = []
        for name, info in sorted(devices.get(scfg["target"], {}).items()):
            volid = volname.volume_id(storeid, name)
            if wanted is not None and volid not in wanted:
                continue
            res.append(dict(info, volid=volid))
        return res

    def status(self, storeid, scfg, cache=None):
        try:
            sessions = _cached(cache, "iscsi_sessions", session_list)
        except (cmdutils.Error, OSError) as e:
            self.log.warning("Cannot list iscsi sessions: %s", e)
            return None
        return 0, 0, 0, scfg["target"] in sessions

    def activate_storage(self, storeid, scfg, cache=None):
        sessions = _cached(cache, "iscsi_sessions", session_list)
        target = scfg["target"]
        if target not in sessions:
            try:
                login(target, scfg["portal"])
            except cmdutils.Error as e:
                self.log.warning("Cannot log in to target %s: %s", target, e)
        else:
            rescan(sessions[target])

    def deactivate_storage(self, storeid, scfg, cache=None):
        sessions = _cached(cache, "iscsi_sessions", session_list)
        if scfg["target"] in sessions:
            logout(scfg["target"])

    def activate_volume(self, storeid, scfg, name, snapname=None,
                        cache=None):
        if snapname:
            raise se.UnsupportedOperation(
                "activate_volume",
                "snapshots are not possible on iscsi storage")

    def check_connection(self, storeid, scfg):
        return test_portal(scfg["portal"])

    def volume_export_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        return []

    def volume_import_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        return []
