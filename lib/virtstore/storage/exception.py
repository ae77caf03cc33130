# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

########################################################
#
#  Set of storage exceptions.
#
########################################################

from virtstore.common.exception import GeneralException


class StorageException(GeneralException):
    code = 200
    message = "General Storage Exception"


#################################################
# Parse and validation exceptions
#################################################

class ParseError(StorageException):
    code = 300
    message = "Parse error"
    expected = True


class InvalidName(ParseError):
    code = 301
    message = "Illegal volume name"

    def __init__(self, name, reason=None):
        if reason is None:
            self.value = "name=%s" % name
        else:
            self.value = "name=%s (%s)" % (name, reason)


class ConfigError(ParseError):
    code = 302
    message = "Invalid storage configuration"

    def __init__(self, key, reason):
        self.value = "%s: %s" % (key, reason)


#################################################
# Volume exceptions
#################################################

class AlreadyExists(StorageException):
    code = 310
    message = "Volume already exists"
    expected = True


class NotFound(StorageException):
    code = 320
    message = "No such volume or storage"
    expected = True


class UnsupportedOperation(StorageException):
    code = 330
    message = "Operation not supported"
    expected = True

    def __init__(self, operation, reason=None):
        if reason is None:
            self.value = operation
        else:
            self.value = "%s: %s" % (operation, reason)


class NoFreeSlot(StorageException):
    code = 340
    message = "Unable to allocate a free disk name"

    def __init__(self, vmid):
        self.value = "vmid=%s" % vmid


class NotLatestSnapshot(StorageException):
    code = 350
    message = "Cannot rollback, snapshot is not the most recent snapshot"

    def __init__(self, snap, blockers):
        self.snap = snap
        self.blockers = blockers
        self.value = "snapshot=%s, newer=%s" % (snap, ", ".join(blockers))


class AlreadyBase(StorageException):
    code = 400
    message = "Volume is already a base image"
    expected = True


class VolumeProtected(StorageException):
    code = 410
    message = "Volume is protected"
    expected = True


#################################################
# Backend and transport exceptions
#################################################

class Timeout(StorageException):
    code = 360
    message = "Operation timed out"


class BackendToolFailure(StorageException):
    code = 370
    message = "Backend tool failed"

    def __init__(self, cmd, rc, err):
        self.cmd = cmd
        self.rc = rc
        self.err = err
        if isinstance(err, bytes):
            err = err.decode("utf-8", "replace")
        self.value = "cmd=%s, rc=%s, err=%s" % (cmd, rc, err.strip())

    @classmethod
    def from_error(cls, e):
        """
        Create from a cmdutils.Error.
        """
        return cls(e.cmd, e.rc, e.err or b"")


class StreamFormatError(StorageException):
    code = 380
    message = "Invalid transfer stream"
    expected = True


class LockTimeout(StorageException):
    code = 390
    message = "Timeout acquiring storage lock"

    def __init__(self, storeid, timeout):
        self.value = "storage=%s, timeout=%s" % (storeid, timeout)


#################################################
# Storage exceptions
#################################################

class StorageDisabled(StorageException):
    code = 420
    message = "Storage is disabled or not available on this node"
    expected = True


class StorageNotActive(StorageException):
    code = 421
    message = "Storage is not online"


class PruneError(StorageException):
    code = 430
    message = "Error pruning backups - check log"
