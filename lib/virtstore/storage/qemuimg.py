# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

import json
import logging
import os

from virtstore.common import cmdutils
from virtstore.common import commands

_qemuimg = cmdutils.CommandPath(
    "qemu-img", "/usr/local/bin/qemu-img", "/usr/bin/qemu-img")

_log = logging.getLogger("storage.qemuimg")


class FORMAT:
    QCOW2 = "qcow2"
    QED = "qed"
    RAW = "raw"
    VMDK = "vmdk"


class PREALLOCATION:
    """
    Possible preallocation modes for qemu
    """

    # No preallocation at all.
    OFF = "off"

    # Allocates just image metadata. Could be used only with qcow2 format.
    METADATA = "metadata"

    # Preallocates space by calling posix_fallocate().
    FALLOC = "falloc"

    # Preallocates space for image by writing zeros to underlying storage.
    FULL = "full"


# Formats supporting internal snapshots.
SNAPSHOT_FORMATS = (FORMAT.QCOW2, FORMAT.QED)

# Formats that can be resized.
RESIZE_FORMATS = (FORMAT.RAW, FORMAT.QCOW2)

_VALID_PREALLOCATION = {
    FORMAT.QCOW2: (PREALLOCATION.OFF, PREALLOCATION.METADATA,
                   PREALLOCATION.FALLOC, PREALLOCATION.FULL),
    FORMAT.RAW: (PREALLOCATION.OFF, PREALLOCATION.FALLOC,
                 PREALLOCATION.FULL),
}

_DEFAULT_PREALLOCATION = {
    FORMAT.QCOW2: PREALLOCATION.METADATA,
    FORMAT.RAW: PREALLOCATION.OFF,
}


class InvalidOutput(cmdutils.Error):
    msg = ("Command {self.cmd} returned invalid output: {self.out}: "
           "{self.reason}")

    def __init__(self, cmd, out, reason):
        self.cmd = cmd
        self.out = out
        self.reason = reason


def preallocation_for(format, value=None):
    """
    Return the preallocation mode for creating an image of format, or None if
    qemu-img does not support preallocation for format.

    Arguments:
        format (str): image format.
        value (str): configured preallocation mode. If None, use the
            default mode for format. "metadata" falls back to "off" for
            formats without metadata.

    Raises:
        ValueError if value is not supported for format.
    """
    valid = _VALID_PREALLOCATION.get(format)
    if valid is None:
        return None
    if value is None:
        return _DEFAULT_PREALLOCATION[format]
    if value == PREALLOCATION.METADATA and format == FORMAT.RAW:
        return PREALLOCATION.OFF
    if value not in valid:
        raise ValueError("Unsupported preallocation mode %r for format %r" %
                         (value, format))
    return value


def info(image, format=None, timeout=None):
    cmd = [_qemuimg.cmd, "info", "--output", "json"]

    if format:
        cmd.extend(("-f", format))

    cmd.append(image)

    out = _run_cmd(cmd, timeout=timeout)

    try:
        info = _parse_qemuimg_json(out)
    except ValueError as e:
        raise InvalidOutput(
            cmd, out, "Failed to process qemu-img output: %s" % e)

    for key in ("virtual-size", "format"):
        if key not in info:
            raise InvalidOutput(cmd, out, "Missing field: %r" % key)

    return info


def create(image, size=None, format=None, backing=None, backingFormat=None,
           preallocation=None):
    cmd = [_qemuimg.cmd, "create"]
    cwdPath = None

    if backing:
        if not os.path.isabs(backing):
            cwdPath = os.path.dirname(image)
        cmd.extend(("-b", backing))

    if backingFormat:
        cmd.extend(("-F", backingFormat))

    if preallocation:
        cmd.extend(("-o", "preallocation=" + preallocation))

    if format:
        cmd.extend(("-f", format))

    cmd.append(image)

    if size is not None:
        cmd.append(str(size))

    _run_cmd(cmd, cwd=cwdPath)


def convert(srcImage, dstImage, srcFormat=None, dstFormat=None, stdout=None):
    """
    Convert srcImage to dstImage. To write the converted image to a stream,
    use "/dev/stdout" as dstImage and pass the stream as stdout.
    """
    cmd = [_qemuimg.cmd, "convert"]

    if srcFormat:
        cmd.extend(("-f", srcFormat))

    if dstFormat:
        cmd.extend(("-O", dstFormat))

    cmd.append(srcImage)
    cmd.append(dstImage)

    commands.run(cmd, stdout=stdout)


def resize(image, newSize, format=None, timeout=None):
    cmd = [_qemuimg.cmd, "resize"]

    if format:
        cmd.extend(("-f", format))

    cmd.extend((image, str(newSize)))
    _run_cmd(cmd, timeout=timeout)


def snapshot_create(image, name):
    _run_cmd([_qemuimg.cmd, "snapshot", "-c", name, image])


def snapshot_apply(image, name):
    _run_cmd([_qemuimg.cmd, "snapshot", "-a", name, image])


def snapshot_delete(image, name):
    _run_cmd([_qemuimg.cmd, "snapshot", "-d", name, image])


def snapshot_list(image, format=None, timeout=None):
    """
    Return list of internal snapshot names, oldest first.
    """
    snapshots = info(image, format=format, timeout=timeout).get(
        "snapshots", [])
    snapshots.sort(key=lambda s: (s.get("date-sec", 0), s.get("id", "")))
    return [s["name"] for s in snapshots]


def _parse_qemuimg_json(output, expected_type=dict):
    obj = json.loads(output.decode("utf8"))
    if not isinstance(obj, expected_type):
        raise ValueError("Not a %s" % expected_type)
    return obj


def _run_cmd(cmd, cwd=None, timeout=None):
    return commands.run(cmd, cwd=cwd, timeout=timeout)
