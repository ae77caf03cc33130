# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Volume names.

A volume is identified by a volume id "<storage-id>:<volume-name>". The
storage id selects the storage configuration, and the storage backend decides
how the volume name is structured. This module parses volume names into a
Volume tuple and encodes Volume tuples back to names, using one grammar per
backend family.

Every grammar keeps this invariant::

    grammar.encode(grammar.parse(name)) == name
    grammar.parse(grammar.encode(volume)) == volume
"""

import collections
import os
import re
import time

from virtstore.storage import constants as sc
from virtstore.storage import exception as se

Volume = collections.namedtuple(
    "Volume",
    ["vtype", "name", "vmid", "basename", "basevmid", "isbase", "format"],
    defaults=(None, None, None, False, None))

_VOLUME_ID = re.compile(r"^([a-z][a-z0-9\-_.]*[a-z0-9]):(.+)$", re.I)

_STORAGE_ID = re.compile(r"^[a-z][a-z0-9\-_.]*[a-z0-9]$", re.I)

_LVM_NAME = re.compile(r"^[a-z0-9][a-z0-9\-_.]*[a-z0-9]$", re.I)

COMPRESSIONS = ("gz", "lzo", "zst", "bz2")

ISO_EXT = r"\.(?:iso|img)"
VZTMPL_EXT = r"\.tar\.(?:gz|xz|zst|bz2)"
BACKUP_EXT = r"\.(tgz|(?:tar|vma)(?:\.(%s))?)" % "|".join(COMPRESSIONS)

LOG_EXT = ".log"
NOTES_EXT = ".notes"
PROTECTED_EXT = ".protected"


def parse_volume_id(volid):
    """
    Split a volume id to (storeid, volname).

    Raises:
        se.ParseError if volid is not a valid volume id.
    """
    m = _VOLUME_ID.match(volid)
    if m is None:
        raise se.ParseError("unable to parse volume ID %r" % volid)
    return m.group(1), m.group(2)


def volume_id(storeid, volname):
    return "%s:%s" % (storeid, volname)


def is_valid_storage_id(storeid):
    return _STORAGE_ID.match(storeid) is not None


def check_lvm_name(name):
    if not _LVM_NAME.match(name):
        raise se.InvalidName(name, "lvm name contains illegal characters")


class Grammar(object):
    """
    Base class for volume name grammars.
    """

    # Name used in error messages.
    kind = "volume"

    def parse(self, volname):
        raise NotImplementedError

    def encode(self, vol):
        raise NotImplementedError

    def _error(self, volname):
        return se.ParseError(
            "unable to parse %s volume name %r" % (self.kind, volname))


# Directory based storages.

_DIR_IMAGE_NAME = re.compile(
    r"^((base-|basevol-)?[^/\s]+\.(raw|qcow2|vmdk|subvol))$")

_DIR_PATTERNS = [
    ("clone", re.compile(r"^(\d+)/([^/\s]+)/(\d+)/([^/\s]+)$")),
    ("images", re.compile(r"^(\d+)/([^/\s]+)$")),
    (sc.CONTENT_ISO, re.compile(r"^iso/([^/]+%s)$" % ISO_EXT, re.I)),
    (sc.CONTENT_VZTMPL, re.compile(r"^vztmpl/([^/]+%s)$" % VZTMPL_EXT, re.I)),
    (sc.CONTENT_ROOTDIR, re.compile(r"^rootdir/(\d+)$")),
    (sc.CONTENT_BACKUP, re.compile(r"^backup/([^/]+%s)$" % BACKUP_EXT)),
    (sc.CONTENT_SNIPPETS, re.compile(r"^snippets/([^/]+)$")),
]

_BACKUP_VMID = re.compile(r"^vzdump-(?:openvz|lxc|qemu)-(\d+)-")


def parse_name_dir(name):
    """
    Parse an image file name used by directory storages.

    Returns:
        tuple (name, format, isbase)
    """
    m = _DIR_IMAGE_NAME.match(name)
    if m is None:
        raise se.InvalidName(name, "unable to parse volume filename")
    return m.group(1), m.group(3), m.group(2) is not None


class DirGrammar(Grammar):

    kind = "directory"

    def parse(self, volname):
        for kind, regex in _DIR_PATTERNS:
            m = regex.match(volname)
            if m is not None:
                return getattr(self, "_parse_" + kind)(m)
        raise self._error(volname)

    def _parse_clone(self, m):
        basevmid, basename, vmid, name = m.groups()
        parse_name_dir(basename)
        name, fmt, isbase = parse_name_dir(name)
        return Volume(sc.CONTENT_IMAGES, name, vmid, basename, basevmid,
                      isbase, fmt)

    def _parse_images(self, m):
        vmid, name = m.groups()
        name, fmt, isbase = parse_name_dir(name)
        return Volume(sc.CONTENT_IMAGES, name, vmid, None, None, isbase, fmt)

    def _parse_iso(self, m):
        return Volume(sc.CONTENT_ISO, m.group(1), format=sc.FORMAT_RAW)

    def _parse_vztmpl(self, m):
        return Volume(sc.CONTENT_VZTMPL, m.group(1), format=sc.FORMAT_RAW)

    def _parse_rootdir(self, m):
        vmid = m.group(1)
        return Volume(sc.CONTENT_ROOTDIR, vmid, vmid, format=sc.FORMAT_RAW)

    def _parse_backup(self, m):
        name = m.group(1)
        vm = _BACKUP_VMID.match(name)
        vmid = vm.group(1) if vm else None
        return Volume(sc.CONTENT_BACKUP, name, vmid, format=sc.FORMAT_RAW)

    def _parse_snippets(self, m):
        return Volume(sc.CONTENT_SNIPPETS, m.group(1), format=sc.FORMAT_RAW)

    def encode(self, vol):
        if vol.vtype == sc.CONTENT_IMAGES:
            if vol.basename:
                return "%s/%s/%s/%s" % (
                    vol.basevmid, vol.basename, vol.vmid, vol.name)
            return "%s/%s" % (vol.vmid, vol.name)
        if vol.vtype == sc.CONTENT_ROOTDIR:
            return "rootdir/%s" % vol.vmid
        if vol.vtype in (sc.CONTENT_ISO, sc.CONTENT_VZTMPL, sc.CONTENT_BACKUP,
                         sc.CONTENT_SNIPPETS):
            return "%s/%s" % (vol.vtype, vol.name)
        raise se.ParseError("cannot encode volume type %r" % vol.vtype)


# ZFS pools

_ZFS_VOLNAME = re.compile(
    r"^(((base|basevol)-(\d+)-[^/\s]+)/)?"
    r"((base|basevol|vm|subvol)-(\d+)-[^/\s]+)$")


class ZfsGrammar(Grammar):

    kind = "zfs"

    def parse(self, volname):
        m = _ZFS_VOLNAME.match(volname)
        if m is None:
            raise self._error(volname)
        prefix = m.group(6)
        if prefix in ("subvol", "basevol"):
            fmt = sc.FORMAT_SUBVOL
        else:
            fmt = sc.FORMAT_RAW
        return Volume(sc.CONTENT_IMAGES, m.group(5), m.group(7), m.group(2),
                      m.group(4), prefix in ("base", "basevol"), fmt)

    def encode(self, vol):
        if vol.basename:
            return "%s/%s" % (vol.basename, vol.name)
        return vol.name


# LVM volume groups

_LVM_VOLNAME = re.compile(r"^(vm-(\d+)-\S+)$")


class LvmGrammar(Grammar):

    kind = "lvm"

    def parse(self, volname):
        check_lvm_name(volname)
        m = _LVM_VOLNAME.match(volname)
        if m is None:
            raise self._error(volname)
        name = m.group(1)
        fmt = sc.FORMAT_QCOW2 if name.endswith(".qcow2") else sc.FORMAT_RAW
        return Volume(sc.CONTENT_IMAGES, name, m.group(2), format=fmt)

    def encode(self, vol):
        return vol.name


_LVMTHIN_VOLNAME = re.compile(r"^((vm|base)-(\d+)-\S+)$")


class LvmThinGrammar(Grammar):

    kind = "lvm"

    def parse(self, volname):
        check_lvm_name(volname)
        m = _LVMTHIN_VOLNAME.match(volname)
        if m is None:
            raise self._error(volname)
        return Volume(sc.CONTENT_IMAGES, m.group(1), m.group(3),
                      isbase=m.group(2) == "base", format=sc.FORMAT_RAW)

    def encode(self, vol):
        return vol.name


# Ceph RBD pools

_RBD_VOLNAME = re.compile(
    r"^((base-(\d+)-[^/\s]+)/)?((base|vm)-(\d+)-[^/\s]+)$")


class RbdGrammar(Grammar):

    kind = "rbd"

    def parse(self, volname):
        m = _RBD_VOLNAME.match(volname)
        if m is None:
            raise self._error(volname)
        return Volume(sc.CONTENT_IMAGES, m.group(4), m.group(6), m.group(2),
                      m.group(3), m.group(5) == "base", sc.FORMAT_RAW)

    def encode(self, vol):
        if vol.basename:
            return "%s/%s" % (vol.basename, vol.name)
        return vol.name


# iSCSI LUNs

_ISCSI_VOLNAME = re.compile(r"^\d+\.\d+\.\d+\.([^/\s]+)$")


class IscsiGrammar(Grammar):
    """
    LUN volume names are "<channel>.<id>.<lun>.<device-id>". The whole name is
    kept as the volume name; lun_device_id() returns the device id.
    """

    kind = "iscsi"

    def parse(self, volname):
        if _ISCSI_VOLNAME.match(volname) is None:
            raise self._error(volname)
        return Volume(sc.CONTENT_IMAGES, volname, format=sc.FORMAT_RAW)

    def encode(self, vol):
        return vol.name


def lun_device_id(name):
    m = _ISCSI_VOLNAME.match(name)
    if m is None:
        raise se.InvalidName(name, "not a LUN name")
    return m.group(1)


# Backup server snapshots

_PBS_VOLNAME = re.compile(
    r"^backup/([^\s_/]+)/([^\s_/]+)/"
    r"([0-9]{4}-[0-9]{2}-[0-9]{2}T[0-9]{2}:[0-9]{2}:[0-9]{2}Z)$")


class PbsGrammar(Grammar):

    kind = "backup server"

    def parse(self, volname):
        m = _PBS_VOLNAME.match(volname)
        if m is None:
            raise self._error(volname)
        btype, bid, btime = m.groups()
        vmid = bid if bid.isdigit() else None
        return Volume(sc.CONTENT_BACKUP, "%s/%s/%s" % (btype, bid, btime),
                      vmid, format="pbs-" + btype)

    def encode(self, vol):
        return "backup/%s" % vol.name


DIR = DirGrammar()
ZFS = ZfsGrammar()
LVM = LvmGrammar()
LVMTHIN = LvmThinGrammar()
RBD = RbdGrammar()
ISCSI = IscsiGrammar()
PBS = PbsGrammar()


# Disk names

def _disk_index_regex(vmid):
    return re.compile(
        r"(?:^|[/:])(?:vm|base|subvol|basevol)-%s-disk-(\d+)(?:\.|$)" %
        re.escape(str(vmid)))


def disk_name(vmid, index, fmt=None, add_fmt_suffix=False):
    prefix = "subvol" if fmt == sc.FORMAT_SUBVOL else "vm"
    suffix = "." + fmt if add_fmt_suffix else ""
    return "%s-%s-disk-%d%s" % (prefix, vmid, index, suffix)


def find_free_disk_name(existing, vmid, fmt=None, add_fmt_suffix=False):
    """
    Return the disk name with the lowest unused disk index for vmid.

    Arguments:
        existing (iterable): names of existing volumes. Names of other guests
            and names not following the disk naming scheme are ignored.
        vmid (str): owner of the new disk.
        fmt (str): format of the new disk, "subvol" disks use the "subvol-"
            prefix.
        add_fmt_suffix (bool): append ".<fmt>" to the name, used by
            directory based storages.

    Raises:
        se.NoFreeSlot if all disk indexes are used.
    """
    regex = _disk_index_regex(vmid)
    used = set()
    for name in existing:
        m = regex.search(name)
        if m:
            used.add(int(m.group(1)))

    for index in range(1, sc.MAX_DISK_INDEX + 1):
        if index not in used:
            return disk_name(vmid, index, fmt, add_fmt_suffix)

    raise se.NoFreeSlot(vmid)


def check_owner(name, vmid):
    """
    Raises se.InvalidName if name does not belong to vmid.
    """
    if not re.match(r"^(vm|base|subvol|basevol)-%s-" % re.escape(str(vmid)),
                    name):
        raise se.InvalidName(name, "should be 'vm-%s-*'" % vmid)


def validate_disk_name(vmid, name, fmt):
    """
    Validate the name of a new directory storage image.

    Raises:
        se.InvalidName if name does not belong to vmid, or if the name
            extension does not match fmt.
    """
    check_owner(name, vmid)
    _, name_fmt, _ = parse_name_dir(name)
    if name_fmt != fmt:
        raise se.InvalidName(name, "wrong extension for format %s" % fmt)


# Backup archives

_ARCHIVE_NAME = re.compile(
    r"^(vzdump-(lxc|openvz|qemu)-.+%s)$" % BACKUP_EXT)


def archive_info(archive):
    """
    Return information about a backup archive, based on the archive name.

    Standard archive names look like::

        vzdump-qemu-100-2020_01_01-11_18_00.vma.zst

    and include the guest id and the creation time. Other names are accepted
    but have is_std_name=False, and no vmid or ctime.

    Raises:
        se.ParseError if archive is not a backup archive.
    """
    filename = os.path.basename(archive)
    m = _ARCHIVE_NAME.match(filename)
    if m is None:
        raise se.ParseError(
            "couldn't determine archive info from %r" % archive)

    guest_type, extension, compression = m.group(2), m.group(3), m.group(4)
    if extension == "tgz":
        fmt, compression = "tar", "gz"
    else:
        fmt = extension.split(".", 1)[0]

    info = {
        "filename": filename,
        "type": guest_type,
        "format": fmt,
        "compression": compression,
        "is_std_name": False,
    }

    std = re.match(
        r"^(vzdump-%s-([1-9][0-9]{2,8})-(\d{4})_(\d{2})_(\d{2})-"
        r"(\d{2})_(\d{2})_(\d{2}))\.%s$" % (guest_type, re.escape(extension)),
        filename)
    if std:
        year, month, day, hour, minute, second = (
            int(x) for x in std.groups()[2:])
        info["logfilename"] = std.group(1) + LOG_EXT
        info["notesfilename"] = filename + NOTES_EXT
        info["vmid"] = int(std.group(2))
        # Timestamps in archive names are in the local time of the node
        # creating the backup.
        info["ctime"] = int(time.mktime(
            (year, month, day, hour, minute, second, 0, 0, -1)))
        info["is_std_name"] = True

    return info


def protection_file_path(path):
    return path + PROTECTED_EXT
