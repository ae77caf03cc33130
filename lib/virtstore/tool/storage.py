# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

import argparse
import re
import shlex
import sys
import time

from . import expose
from . import UsageError

from virtstore.common import units
from virtstore.storage import api
from virtstore.storage import cfgstore
from virtstore.storage import constants as sc
from virtstore.storage import prune
from virtstore.storage import streams
from virtstore.storage import volname

_SIZE = re.compile(r"^(\d+)([KMGT]?)$", re.I)

_SIZE_UNITS = {
    "": 1,
    "K": 1,
    "M": units.MiB // units.KiB,
    "G": units.GiB // units.KiB,
    "T": units.TiB // units.KiB,
}


def parse_size(value):
    """
    Return size in KiB for value "<number>[K|M|G|T]". A number without unit
    is in KiB.
    """
    m = _SIZE.match(value)
    if m is None:
        raise UsageError("invalid size %r" % value)
    return int(m.group(1)) * _SIZE_UNITS[m.group(2).upper()]


def _parser(name, description):
    parser = argparse.ArgumentParser(prog="virtstore-tool " + name,
                                     description=description)
    parser.add_argument(
        "--config",
        help="storage configuration file (default from virtstore.conf)")
    return parser


def _read_config(args):
    return cfgstore.FileConfigStore(args.config).read()


def _print_table(headers, rows, out=None):
    if out is None:
        out = sys.stdout
    rows = [[str(c) for c in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in rows:
        for i, c in enumerate(row):
            widths[i] = max(widths[i], len(c))
    fmt = " ".join("%%-%ds" % w for w in widths)
    print((fmt % tuple(headers)).rstrip(), file=out)
    for row in rows:
        print((fmt % tuple(row)).rstrip(), file=out)


@expose("status")
def status(*args):
    """
    status [--storage ID] [--content TYPE]
    Show the status of the storages enabled on this node. Sizes are in KiB.
    """
    parser = _parser("status", "Show storage status.")
    parser.add_argument("--storage", help="show only this storage")
    parser.add_argument("--content", choices=sc.CONTENT_TYPES,
                        help="show only storages supporting this content")
    args = parser.parse_args(args)

    cfg = _read_config(args)
    if args.storage is not None:
        cfgstore.storage_config(cfg, args.storage)

    info = api.storage_info(cfg, content=args.content)
    rows = []
    for storeid in sorted(info):
        if args.storage is not None and storeid != args.storage:
            continue
        s = info[storeid]
        if not s["enabled"]:
            state = "disabled"
        elif s["active"]:
            state = "active"
        else:
            state = "inactive"
        if s["total"]:
            percent = "%.2f%%" % (s["used"] * 100.0 / s["total"])
        else:
            percent = "N/A"
        rows.append((storeid, s["type"], state, s["total"] // units.KiB,
                     s["used"] // units.KiB, s["avail"] // units.KiB,
                     percent))

    _print_table(("Name", "Type", "Status", "Total", "Used", "Available",
                  "%"), rows)


@expose("list")
def list_volumes(*args):
    """
    list STORAGE [--vmid N] [--content TYPE]
    List the volumes on a storage.
    """
    parser = _parser("list", "List storage content.")
    parser.add_argument("storage", help="storage id")
    parser.add_argument("--vmid", help="list only volumes of this guest")
    parser.add_argument("--content", choices=sc.CONTENT_TYPES,
                        help="list only this content type")
    args = parser.parse_args(args)

    cfg = _read_config(args)
    volumes = api.volume_list(cfg, args.storage, vmid=args.vmid,
                              content=args.content)
    rows = [(v["volid"], v.get("format", ""), v.get("content", ""),
             v.get("size", 0), v.get("vmid") or "")
            for v in volumes]
    _print_table(("Volid", "Format", "Type", "Size", "VMID"), rows)


@expose("alloc")
def alloc(*args):
    """
    alloc STORAGE VMID NAME SIZE [--format FORMAT]
    Allocate a disk image. Use an empty NAME to pick the next free name.
    SIZE is in KiB, or with a K, M, G or T suffix.
    """
    parser = _parser("alloc", "Allocate a disk image.")
    parser.add_argument("storage", help="storage id")
    parser.add_argument("vmid", help="owner guest id")
    parser.add_argument("name", help="image name, empty for a free name")
    parser.add_argument("size", help="image size")
    parser.add_argument("--format", choices=sc.FILE_FORMATS,
                        help="image format")
    args = parser.parse_args(args)

    if not re.match(r"^\d+$", args.vmid):
        raise UsageError("invalid vmid %r" % args.vmid)
    size = parse_size(args.size)

    cfg = _read_config(args)
    volid = api.vdisk_alloc(cfg, args.storage, args.vmid, args.format,
                            args.name or None, size)
    print("successfully created '%s'" % volid)


@expose("free")
def free(*args):
    """
    free VOLID
    Remove a volume and its snapshots.
    """
    parser = _parser("free", "Remove a volume.")
    parser.add_argument("volid", help="volume id")
    args = parser.parse_args(args)

    cfg = _read_config(args)
    api.vdisk_free(cfg, args.volid)
    print("removed '%s'" % args.volid)


@expose("prune-backups")
def prune_backups(*args):
    """
    prune-backups STORAGE [--dry-run] [--vmid N] [--type qemu|lxc] [--keep-*]
    Prune backups using the given retention options, or the storage
    prune-backups setting if none are given.
    """
    parser = _parser("prune-backups", "Prune backups.")
    parser.add_argument("storage", help="storage id")
    parser.add_argument("--dry-run", action="store_true",
                        help="only show what would be pruned")
    parser.add_argument("--vmid", help="prune only backups of this guest")
    parser.add_argument("--type", choices=("qemu", "lxc"),
                        help="prune only backups of this guest type")
    for option in (sc.PRUNE_KEEP_ALL,) + sc.PRUNE_OPTIONS:
        parser.add_argument("--" + option, type=int, metavar="N",
                            dest=option.replace("-", "_"))
    args = parser.parse_args(args)

    opts = {}
    for option in (sc.PRUNE_KEEP_ALL,) + sc.PRUNE_OPTIONS:
        value = getattr(args, option.replace("-", "_"))
        if value is not None:
            opts[option] = value

    cfg = _read_config(args)
    items = api.prune_backups(cfg, args.storage, opts=opts or None,
                              vmid=args.vmid, type=args.type,
                              dry_run=args.dry_run)

    if not args.dry_run:
        removed = sum(1 for item in items if item.mark == prune.REMOVE)
        print("removed %d backups" % removed)
        return

    rows = []
    for item in items:
        if item.ctime:
            ctime = time.strftime("%Y-%m-%d %H:%M:%S",
                                  time.localtime(item.ctime))
        else:
            ctime = ""
        rows.append((item.volid, item.vmid or "", item.type or "", ctime,
                     item.mark))
    _print_table(("Backup", "Backup-ID", "Type", "Time", "Mark"), rows)


def _tcp_address(value):
    """
    Split "ADDRESS:PORT" to (address, port). IPv6 addresses may be enclosed
    in brackets.
    """
    address, sep, port = value.rpartition(":")
    if not sep or not address or not port.isdigit():
        raise UsageError("invalid address %r, expected ADDRESS:PORT" % value)
    return address.strip("[]"), int(port)


@expose("export")
def export(*args):
    """
    export VOLID FORMAT FILENAME [--snapshot S] [--base S] [--with-snapshots]
    Export a volume to a transfer stream. Use "-" as FILENAME for stdout,
    or "tcp://ADDRESS:PORT" to send the stream to an importer listening on
    ADDRESS and PORT.
    """
    parser = _parser("export", "Export a volume.")
    parser.add_argument("volid", help="volume id")
    parser.add_argument("format", help="transfer format")
    parser.add_argument("filename",
                        help="output file, - for stdout, or "
                        "tcp://ADDRESS:PORT")
    parser.add_argument("--snapshot", help="snapshot to export")
    parser.add_argument("--base", help="base snapshot of an incremental "
                        "stream")
    parser.add_argument("--with-snapshots", action="store_true",
                        help="include snapshots")
    args = parser.parse_args(args)

    cfg = _read_config(args)
    volname.parse_volume_id(args.volid)

    kwargs = {
        "snapshot": args.snapshot,
        "base_snapshot": args.base,
        "with_snapshots": args.with_snapshots,
    }

    if args.filename == "-":
        api.volume_export(cfg, sys.stdout.buffer, args.volid, args.format,
                          **kwargs)
    elif args.filename.startswith("tcp://"):
        address, port = _tcp_address(args.filename[len("tcp://"):])
        sock = streams.connect(address, port)
        try:
            with sock.makefile("wb", buffering=0) as f:
                api.volume_export(cfg, f, args.volid, args.format, **kwargs)
        finally:
            sock.close()
    else:
        with open(args.filename, "wb") as f:
            api.volume_export(cfg, f, args.volid, args.format, **kwargs)


@expose("import")
def import_(*args):
    """
    import VOLID FORMAT FILENAME [--snapshot S] [--delete-snapshot]
           [--base S] [--allow-rename] [--with-snapshots]
    Import a volume from a transfer stream. Use "-" as FILENAME for stdin,
    or "tcp://ADDRESS" to listen for the exporter on ADDRESS. In the latter
    case the address and port are printed to stdout.
    """
    parser = _parser("import", "Import a volume.")
    parser.add_argument("volid", help="volume id")
    parser.add_argument("format", help="transfer format")
    parser.add_argument("filename",
                        help="input file, - for stdin, or tcp://ADDRESS")
    parser.add_argument("--snapshot", help="snapshot included in the stream")
    parser.add_argument("--delete-snapshot", action="store_true",
                        help="remove the snapshot after importing")
    parser.add_argument("--base", help="base snapshot of an incremental "
                        "stream")
    parser.add_argument("--allow-rename", action="store_true",
                        help="pick a new name if the volume exists")
    parser.add_argument("--with-snapshots", action="store_true",
                        help="the stream includes snapshots")
    args = parser.parse_args(args)

    if args.delete_snapshot and args.snapshot is None:
        raise UsageError("--delete-snapshot requires --snapshot")

    cfg = _read_config(args)
    volname.parse_volume_id(args.volid)

    kwargs = {
        "snapshot": args.snapshot,
        "base_snapshot": args.base,
        "with_snapshots": args.with_snapshots,
        "allow_rename": args.allow_rename,
    }

    if args.filename == "-":
        volid = api.volume_import(cfg, sys.stdin.buffer, args.volid,
                                  args.format, **kwargs)
    elif args.filename.startswith("tcp://"):
        address = args.filename[len("tcp://"):]
        sock, port = api.import_listen(address)
        streams.announce(sys.stdout, address, port)
        client = api.import_accept(sock)
        try:
            with client.makefile("rb", buffering=0) as f:
                volid = api.volume_import(cfg, f, args.volid, args.format,
                                          **kwargs)
        finally:
            client.close()
    else:
        with open(args.filename, "rb") as f:
            volid = api.volume_import(cfg, f, args.volid, args.format,
                                      **kwargs)

    if args.delete_snapshot:
        api.volume_snapshot_delete(cfg, volid, args.snapshot)

    print(streams.imported_message(volid))


@expose("migrate")
def migrate(*args):
    """
    migrate VOLID STORAGE ADDRESS --importer CMD [--target-volname NAME]
            [--snapshot S] [--base S] [--with-snapshots] [--allow-rename]
            [--bwlimit KIBPS]
    Copy a volume to STORAGE on the node reachable at ADDRESS. CMD runs
    virtstore-tool on that node, for example "ssh root@node virtstore-tool".
    """
    parser = _parser("migrate", "Copy a volume to another node.")
    parser.add_argument("volid", help="volume id")
    parser.add_argument("storage", help="target storage id")
    parser.add_argument("address", help="address of the target node")
    parser.add_argument("--importer", required=True,
                        help="command running virtstore-tool on the target "
                        "node")
    parser.add_argument("--target-volname", help="volume name on the target")
    parser.add_argument("--snapshot", help="snapshot to copy")
    parser.add_argument("--base", help="base snapshot of an incremental "
                        "copy")
    parser.add_argument("--with-snapshots", action="store_true",
                        help="copy snapshots")
    parser.add_argument("--allow-rename", action="store_true",
                        help="pick a new name if the volume exists")
    parser.add_argument("--bwlimit", type=int,
                        help="bandwidth limit in KiB/s, 0 for no limit")
    args = parser.parse_args(args)

    cfg = _read_config(args)
    storeid, _ = volname.parse_volume_id(args.volid)
    bwlimit = api.get_bandwidth_limit(
        cfg, "migration", [storeid, args.storage], override=args.bwlimit)

    volid = api.storage_migrate(
        cfg, args.volid, args.storage, shlex.split(args.importer),
        args.address, target_volname=args.target_volname,
        snapshot=args.snapshot, base_snapshot=args.base,
        with_snapshots=args.with_snapshots, allow_rename=args.allow_rename,
        bwlimit=bwlimit)
    print("migrated '%s' to '%s'" % (args.volid, volid))
