# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Volume transfer streams.

A volume is transferred between storages as a byte stream in one of the
formats below. Both sides agree on the first format supported by the
exporter and the importer (see transfer_formats).

raw+size
    An 8 bytes little endian header with the image size in bytes, followed
    by the raw image data. Images with a size that is not a multiple of 1024
    are padded with zeros to the size in the header.

tar+size
    The size header followed by a tar archive of a subvol directory, created
    with TAR_FLAGS.

qcow2+size, vmdk+size
    The size header followed by the image file, including internal
    snapshots.

zfs, btrfs
    Native send streams of the backend, without a header.

The size in the header is the virtual size of the volume and must be a
multiple of 1024, since volumes are allocated in KiB.
"""

import errno
import logging
import os
import re
import socket
import struct
import subprocess
from contextlib import contextmanager

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import qemuimg

log = logging.getLogger("storage.streams")

RAW_SIZE = "raw+size"
TAR_SIZE = "tar+size"
QCOW2_SIZE = "qcow2+size"
VMDK_SIZE = "vmdk+size"
ZFS = "zfs"
BTRFS = "btrfs"

KNOWN_FORMATS = (RAW_SIZE, TAR_SIZE, QCOW2_SIZE, VMDK_SIZE, ZFS, BTRFS)

HEADER_SIZE = 8

_HEADER = struct.Struct("<Q")

TAR_FLAGS = (
    "--one-file-system",
    "-p",
    "--sparse",
    "--numeric-owner",
    "--acls",
    "--xattrs",
    "--xattrs-include=user.*",
    "--xattrs-include=security.capability",
    "--warning=no-file-ignored",
    "--warning=no-xattr-write",
)

# Transfer block size used by dd.
BLOCK_SIZE = "64k"

_DD_COPIED = re.compile(br"^(\d+) bytes", re.M)

_IMPORTED = re.compile(br"successfully imported '([^']*)'$", re.M)

_CSTREAM = cmdutils.CommandPath("cstream", "/usr/bin/cstream")


def align_size(size, alignment=1024):
    return (size + alignment - 1) // alignment * alignment


def encode_header(size):
    return _HEADER.pack(size)


def decode_header(data):
    """
    Return the volume size in bytes from a stream header.

    Raises:
        se.StreamFormatError if data is too short or the size is not a
            multiple of 1024.
    """
    if len(data) < HEADER_SIZE:
        raise se.StreamFormatError(
            "no size found in export header (got %d bytes)" % len(data))
    size, = _HEADER.unpack(data[:HEADER_SIZE])
    if size % 1024:
        raise se.StreamFormatError(
            "size %d is not a multiple of 1024" % size)
    return size


def _write(fh, data):
    fd = fh.fileno()
    while data:
        n = os.write(fd, data)
        data = data[n:]


def write_header(fh, size):
    # The header must be written before the data written directly to the
    # file descriptor by the export command.
    fh.flush()
    _write(fh, encode_header(size))


def write_padding(fh, size):
    """
    Pad raw data of size bytes to the size in the header with zeros.
    """
    count = align_size(size) - size
    if count:
        log.debug("Padding stream with %d zero bytes", count)
        _write(fh, b"\0" * count)


def read_header(fh):
    """
    Read the size header from the file descriptor of fh, without using
    python buffers, so the following data is left for the import command.
    """
    fd = fh.fileno()
    data = b""
    while len(data) < HEADER_SIZE:
        chunk = os.read(fd, HEADER_SIZE - len(data))
        if not chunk:
            break
        data += chunk
    return decode_header(data)


def data_format(format):
    """
    Return the data format of a "+size" transfer format.
    """
    m = re.match(r"^(raw|tar|qcow2|vmdk)\+size$", format)
    if m is None:
        return None
    return m.group(1)


def file_formats(file_format, with_snapshots):
    """
    Return the transfer formats for a file of file_format.
    """
    if with_snapshots:
        if file_format in (sc.FORMAT_QCOW2, sc.FORMAT_VMDK):
            return [file_format + "+size"]
        return []
    if file_format == sc.FORMAT_SUBVOL:
        return [TAR_SIZE]
    return [RAW_SIZE]


def export_formats(plugin, storeid, scfg, volname, snapshot=None,
                   base_snapshot=None, with_snapshots=False):
    return plugin.volume_export_formats(
        storeid, scfg, volname, snapshot=snapshot,
        base_snapshot=base_snapshot, with_snapshots=with_snapshots)


def import_formats(plugin, storeid, scfg, volname, snapshot=None,
                   base_snapshot=None, with_snapshots=False):
    return plugin.volume_import_formats(
        storeid, scfg, volname, snapshot=snapshot,
        base_snapshot=base_snapshot, with_snapshots=with_snapshots)


def transfer_formats(export_formats, import_formats):
    """
    Return the formats supported by both sides, in the exporter preference
    order.
    """
    importable = set(import_formats)
    return [f for f in export_formats if f in importable]


def _check_format(format):
    if format not in KNOWN_FORMATS:
        raise se.StreamFormatError("unknown transfer format %r" % format)


def volume_export(plugin, storeid, scfg, fh, volname, format, snapshot=None,
                  base_snapshot=None, with_snapshots=False):
    _check_format(format)
    log.info("Exporting %s:%s format=%s snapshot=%s base=%s",
             storeid, volname, format, snapshot, base_snapshot)
    plugin.volume_export(storeid, scfg, fh, volname, format,
                         snapshot=snapshot, base_snapshot=base_snapshot,
                         with_snapshots=with_snapshots)


def volume_import(plugin, storeid, scfg, fh, volname, format, snapshot=None,
                  base_snapshot=None, with_snapshots=False,
                  allow_rename=False, lock=None):
    _check_format(format)
    log.info("Importing %s:%s format=%s", storeid, volname, format)
    volid = plugin.volume_import(storeid, scfg, fh, volname, format,
                                 snapshot=snapshot,
                                 base_snapshot=base_snapshot,
                                 with_snapshots=with_snapshots,
                                 allow_rename=allow_rename, lock=lock)
    log.info("Successfully imported %s", volid)
    return volid


# File based volumes

def export_file(fh, path, file_format, format, size):
    """
    Write a "+size" stream of the image at path to fh.
    """
    write_header(fh, align_size(size))

    if format == RAW_SIZE:
        if file_format == sc.FORMAT_RAW:
            _dd_out(path, fh)
        else:
            qemuimg.convert(path, "/dev/stdout", srcFormat=file_format,
                            dstFormat=qemuimg.FORMAT.RAW, stdout=fh)
        write_padding(fh, size)
    elif format in (QCOW2_SIZE, VMDK_SIZE):
        _dd_out(path, fh)
    elif format == TAR_SIZE:
        cmd = ["tar"]
        cmd.extend(TAR_FLAGS)
        cmd.extend(("-cf", "-", "-C", path, "."))
        commands.run(cmd, stdout=fh)
    else:
        raise se.StreamFormatError("cannot export %s as %s" % (path, format))


def import_file(fh, path, data_format, size=None):
    """
    Write the data following the stream header in fh to the volume at path.

    Arguments:
        size (int): if set, the number of bytes expected in a raw stream.

    Raises:
        se.StreamFormatError if a raw stream is truncated.
    """
    if data_format in ("raw", "qcow2", "vmdk"):
        copied = _dd_in(fh, path, sparse=True)
        if data_format == "raw" and size is not None and copied < size:
            raise se.StreamFormatError(
                "stream truncated: expected %d bytes, got %d" %
                (size, copied))
    elif data_format == "tar":
        cmd = ["tar"]
        cmd.extend(TAR_FLAGS)
        cmd.extend(("-C", path, "-xf", "-"))
        commands.run(cmd, stdin=fh)
    else:
        raise se.StreamFormatError(
            "cannot import %s data to %s" % (data_format, path))


# Block devices

def export_device(fh, path, size):
    write_header(fh, align_size(size))
    _dd_out(path, fh)
    write_padding(fh, size)


def import_device(fh, path, size=None):
    copied = _dd_in(fh, path, sparse=False)
    if size is not None and copied < size:
        raise se.StreamFormatError(
            "stream truncated: expected %d bytes, got %d" % (size, copied))


def _dd_out(path, fh):
    commands.run(["dd", "if=%s" % path, "bs=%s" % BLOCK_SIZE], stdout=fh)


def _dd_in(fh, path, sparse):
    """
    Copy stdin data to path, returning the number of bytes copied.
    """
    cmd = ["dd", "of=%s" % path, "bs=%s" % BLOCK_SIZE]
    if sparse:
        cmd.append("conv=sparse")

    p = commands.start(cmd, stdin=fh, stdout=subprocess.PIPE,
                       stderr=subprocess.PIPE)
    with commands.terminating(p):
        out, err = p.communicate()
    log.debug(cmdutils.retcode_log_line(p.returncode, err))
    if p.returncode != 0:
        raise cmdutils.Error(cmd, p.returncode, out, err)

    m = _DD_COPIED.search(err)
    if m is None:
        log.warning("Cannot parse dd output: %r", err)
        return 0
    return int(m.group(1))


# Network transport

def listen(address, port_min, port_max):
    """
    Open a listening TCP socket on the first free port in the range.

    Returns:
        tuple (socket, port)
    """
    family = socket.AF_INET6 if ":" in address else socket.AF_INET
    for port in range(port_min, port_max + 1):
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((address, port))
            sock.listen(1)
        except OSError as e:
            sock.close()
            if e.errno != errno.EADDRINUSE:
                raise
            continue
        log.debug("Listening on %s port %d", address, port)
        return sock, port

    raise se.StorageException(
        "no free port in range %d-%d" % (port_min, port_max))


def announce(out, address, port):
    """
    Tell the exporter where to connect.
    """
    out.write("%s\n%d\n" % (address, port))
    out.flush()


def accept(sock, timeout):
    """
    Wait for the exporter to connect, and return the connected socket.

    Raises:
        se.Timeout if no client connected in timeout seconds.
    """
    sock.settimeout(timeout)
    try:
        client, addr = sock.accept()
    except socket.timeout:
        raise se.Timeout("timed out waiting for client after %s seconds" %
                         timeout)
    finally:
        sock.close()
    log.info("Accepted connection from %s", addr[0])
    client.settimeout(None)
    return client


def read_announce(out):
    """
    Read the address and port announced by an importer from out.

    Raises:
        se.StreamFormatError if out does not start with an announce.
    """
    address = out.readline().strip().decode("utf-8", errors="replace")
    port = out.readline().strip().decode("utf-8", errors="replace")
    if not address or not port.isdigit():
        raise se.StreamFormatError(
            "no importer address received, got %r %r" % (address, port))
    return address, int(port)


def connect(address, port, timeout=None):
    """
    Connect to an importer announced by address and port.
    """
    log.info("Connecting to importer at %s port %d", address, port)
    sock = socket.create_connection((address, port), timeout=timeout)
    # The importer never writes to the connection.
    sock.shutdown(socket.SHUT_RD)
    sock.settimeout(None)
    return sock


def imported_message(volid):
    return "successfully imported '%s'" % volid


def imported_volume(out):
    """
    Return the volume id reported by an importer in out, or None.
    """
    m = _IMPORTED.search(out)
    if m is None:
        return None
    return m.group(1).decode("utf-8")


@contextmanager
def rate_limited(fh, bwlimit):
    """
    Return a context yielding a file writing to fh at most bwlimit KiB per
    second. If bwlimit is not set, fh is yielded.
    """
    if not bwlimit:
        yield fh
        return

    log.info("Using a bandwidth limit of %d KiB/s", bwlimit)
    cmd = [_CSTREAM.cmd, "-t", str(bwlimit * 1024)]
    p = commands.start(cmd, stdin=subprocess.PIPE, stdout=fh,
                       stderr=subprocess.PIPE)
    with commands.terminating(p):
        try:
            yield p.stdin
        finally:
            p.stdin.close()
        err = p.stderr.read()
        p.wait()
    log.debug(cmdutils.retcode_log_line(p.returncode, err))
    if p.returncode != 0:
        raise cmdutils.Error(cmd, p.returncode, b"", err)
