# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

from virtstore.common.config import config

# Content types

CONTENT_IMAGES = "images"
CONTENT_ROOTDIR = "rootdir"
CONTENT_ISO = "iso"
CONTENT_VZTMPL = "vztmpl"
CONTENT_BACKUP = "backup"
CONTENT_SNIPPETS = "snippets"
CONTENT_NONE = "none"

CONTENT_TYPES = (
    CONTENT_IMAGES,
    CONTENT_ROOTDIR,
    CONTENT_VZTMPL,
    CONTENT_ISO,
    CONTENT_BACKUP,
    CONTENT_SNIPPETS,
)

# Default sub directories of path based storages.
VTYPE_SUBDIRS = {
    CONTENT_IMAGES: "images",
    CONTENT_ROOTDIR: "private",
    CONTENT_ISO: "template/iso",
    CONTENT_VZTMPL: "template/cache",
    CONTENT_BACKUP: "dump",
    CONTENT_SNIPPETS: "snippets",
}

# Volume formats

FORMAT_RAW = "raw"
FORMAT_QCOW2 = "qcow2"
FORMAT_VMDK = "vmdk"
FORMAT_SUBVOL = "subvol"

FILE_FORMATS = (FORMAT_RAW, FORMAT_QCOW2, FORMAT_VMDK, FORMAT_SUBVOL)

# Volume roles used by the feature matrix.

ROLE_BASE = "base"
ROLE_CURRENT = "current"
ROLE_SNAP = "snap"

# Storage types that are always visible from all nodes.
SHARED_STORAGE = frozenset((
    "iscsi",
    "nfs",
    "cifs",
    "rbd",
    "cephfs",
    "iscsidirect",
    "glusterfs",
    "zfs",
    "drbd",
    "pbs",
))

LOCAL_STORAGE_ID = "local"
LOCAL_STORAGE_PATH = config.get("storage", "local_path")

MOUNT_BASE = config.get("storage", "mount_base")

LOCK_DIR = config.get("storage", "lock_dir")

# Prune options, in the order they are applied.
PRUNE_OPTIONS = (
    "keep-last",
    "keep-hourly",
    "keep-daily",
    "keep-weekly",
    "keep-monthly",
    "keep-yearly",
)

PRUNE_KEEP_ALL = "keep-all"

# Operations with a bandwidth limit in KiB/s. Operations without a limit
# use the default limit.
BWLIMIT_DEFAULT = "default"
BWLIMIT_OPERATIONS = (
    BWLIMIT_DEFAULT,
    "clone",
    "migration",
    "move",
    "restore",
)

# Snapshot taken while migrating volumes of storages that export snapshots
# only.
MIGRATION_SNAPSHOT = "__migration__"

# Name of the snapshot used for zfs and rbd base images.
BASE_SNAPSHOT = "__base__"

MAX_DISK_INDEX = 99
