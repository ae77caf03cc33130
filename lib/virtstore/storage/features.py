# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Capability matrix.

Each backend registers a table mapping feature -> role -> formats. A feature
is available for a volume if the volume format is listed for the volume role.
Backends supporting a feature regardless of the volume format use ANY_FORMAT.

Tables are registered when backend modules are imported and never change
later.
"""

import logging

from virtstore.storage import constants as sc
from virtstore.storage import exception as se

log = logging.getLogger("storage.features")

SNAPSHOT = "snapshot"
CLONE = "clone"
TEMPLATE = "template"
COPY = "copy"
SPARSEINIT = "sparseinit"
REPLICATE = "replicate"
RENAME = "rename"

FEATURES = (SNAPSHOT, CLONE, TEMPLATE, COPY, SPARSEINIT, REPLICATE, RENAME)

ROLES = (sc.ROLE_BASE, sc.ROLE_CURRENT, sc.ROLE_SNAP)

ANY_FORMAT = "*"

_tables = {}


def register(backend, table):
    for feature, roles in table.items():
        if feature not in FEATURES:
            raise ValueError("Unknown feature %r" % feature)
        for role in roles:
            if role not in ROLES:
                raise ValueError("Unknown role %r" % role)
    _tables[backend] = {
        feature: {role: frozenset(formats) for role, formats in roles.items()}
        for feature, roles in table.items()
    }


def table(backend):
    return _tables.get(backend, {})


def volume_role(isbase, snapname=None):
    if snapname:
        return sc.ROLE_SNAP
    return sc.ROLE_BASE if isbase else sc.ROLE_CURRENT


def volume_has_feature(feature, backend, fmt, role):
    """
    Return True if backend supports feature for a volume of format fmt in
    role. Features, roles and formats missing in the backend table are not
    supported.
    """
    formats = _tables.get(backend, {}).get(feature, {}).get(role)
    if not formats:
        return False
    return ANY_FORMAT in formats or fmt in formats


def require_feature(feature, backend, fmt, role):
    if not volume_has_feature(feature, backend, fmt, role):
        raise se.UnsupportedOperation(
            feature, "not supported for %s %s volume on %s storage" %
            (role, fmt, backend))


_ALL = {ANY_FORMAT}

_IMAGE_FORMATS = {sc.FORMAT_QCOW2, sc.FORMAT_RAW, sc.FORMAT_VMDK}

register("dir", {
    SNAPSHOT: {
        sc.ROLE_CURRENT: {sc.FORMAT_QCOW2},
        sc.ROLE_SNAP: {sc.FORMAT_QCOW2},
    },
    CLONE: {
        sc.ROLE_BASE: _IMAGE_FORMATS,
    },
    TEMPLATE: {
        sc.ROLE_CURRENT: _IMAGE_FORMATS | {sc.FORMAT_SUBVOL},
    },
    COPY: {
        sc.ROLE_BASE: _IMAGE_FORMATS,
        sc.ROLE_CURRENT: _IMAGE_FORMATS,
        sc.ROLE_SNAP: {sc.FORMAT_QCOW2},
    },
    SPARSEINIT: {
        sc.ROLE_BASE: _IMAGE_FORMATS,
        sc.ROLE_CURRENT: _IMAGE_FORMATS,
    },
    RENAME: {
        sc.ROLE_CURRENT: _IMAGE_FORMATS,
    },
})

register("btrfs", {
    SNAPSHOT: {
        sc.ROLE_CURRENT: {sc.FORMAT_QCOW2, sc.FORMAT_RAW, sc.FORMAT_SUBVOL},
        sc.ROLE_SNAP: {sc.FORMAT_QCOW2, sc.FORMAT_RAW, sc.FORMAT_SUBVOL},
    },
    CLONE: {
        sc.ROLE_BASE: _IMAGE_FORMATS | {sc.FORMAT_SUBVOL},
        sc.ROLE_CURRENT: {sc.FORMAT_RAW},
        sc.ROLE_SNAP: {sc.FORMAT_RAW},
    },
    TEMPLATE: {
        sc.ROLE_CURRENT: _IMAGE_FORMATS | {sc.FORMAT_SUBVOL},
    },
    COPY: {
        sc.ROLE_BASE: _IMAGE_FORMATS | {sc.FORMAT_SUBVOL},
        sc.ROLE_CURRENT: _IMAGE_FORMATS | {sc.FORMAT_SUBVOL},
        sc.ROLE_SNAP: {sc.FORMAT_QCOW2, sc.FORMAT_RAW, sc.FORMAT_SUBVOL},
    },
    SPARSEINIT: {
        sc.ROLE_BASE: _IMAGE_FORMATS,
        sc.ROLE_CURRENT: _IMAGE_FORMATS,
    },
})

register("zfspool", {
    SNAPSHOT: {sc.ROLE_CURRENT: _ALL, sc.ROLE_SNAP: _ALL},
    CLONE: {sc.ROLE_BASE: _ALL},
    TEMPLATE: {sc.ROLE_CURRENT: _ALL},
    COPY: {sc.ROLE_BASE: _ALL, sc.ROLE_CURRENT: _ALL},
    SPARSEINIT: {sc.ROLE_BASE: _ALL, sc.ROLE_CURRENT: _ALL},
    REPLICATE: {sc.ROLE_BASE: _ALL, sc.ROLE_CURRENT: _ALL},
    RENAME: {sc.ROLE_CURRENT: _ALL},
})

register("lvm", {
    SNAPSHOT: {
        sc.ROLE_CURRENT: {sc.FORMAT_QCOW2},
        sc.ROLE_SNAP: {sc.FORMAT_QCOW2},
    },
    COPY: {
        sc.ROLE_BASE: {sc.FORMAT_QCOW2, sc.FORMAT_RAW},
        sc.ROLE_CURRENT: {sc.FORMAT_QCOW2, sc.FORMAT_RAW},
        sc.ROLE_SNAP: {sc.FORMAT_QCOW2},
    },
    RENAME: {
        sc.ROLE_CURRENT: {sc.FORMAT_QCOW2, sc.FORMAT_RAW},
    },
})

register("lvmthin", {
    SNAPSHOT: {sc.ROLE_CURRENT: _ALL},
    CLONE: {sc.ROLE_BASE: _ALL, sc.ROLE_SNAP: _ALL},
    TEMPLATE: {sc.ROLE_CURRENT: _ALL},
    COPY: {sc.ROLE_BASE: _ALL, sc.ROLE_CURRENT: _ALL, sc.ROLE_SNAP: _ALL},
    SPARSEINIT: {sc.ROLE_BASE: _ALL, sc.ROLE_CURRENT: _ALL},
    RENAME: {sc.ROLE_CURRENT: _ALL},
})

register("rbd", {
    SNAPSHOT: {sc.ROLE_CURRENT: _ALL, sc.ROLE_SNAP: _ALL},
    CLONE: {sc.ROLE_BASE: _ALL, sc.ROLE_SNAP: _ALL},
    TEMPLATE: {sc.ROLE_CURRENT: _ALL},
    COPY: {sc.ROLE_BASE: _ALL, sc.ROLE_CURRENT: _ALL, sc.ROLE_SNAP: _ALL},
    SPARSEINIT: {sc.ROLE_BASE: _ALL, sc.ROLE_CURRENT: _ALL},
    RENAME: {sc.ROLE_CURRENT: _ALL},
})

register("iscsi", {
    COPY: {sc.ROLE_CURRENT: _ALL},
})
