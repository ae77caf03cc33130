# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Storage configuration schema.

Section values in the configuration file are strings. This module decodes
them to python values according to the property type, validates them against
the storage type options, and encodes them back for writing.

Decoded values:

- content: frozenset of content types, empty for "none"
- nodes: frozenset of node names
- content-dirs: dict content type -> relative path
- prune-backups: dict option -> count
- bwlimit: dict operation -> KiB/s
- booleans: bool
- integers: int
- anything else: str
"""

import collections
import copy
import hashlib
import logging
import os
import re

from virtstore.common.config import config
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import plugin
from virtstore.storage import sectionconfig
from virtstore.storage import volname

# Register the storage types.
from virtstore.storage import btrfs  # NOQA: F401 (unused import)
from virtstore.storage import dirplugin  # NOQA: F401 (unused import)
from virtstore.storage import iscsi  # NOQA: F401 (unused import)
from virtstore.storage import lvm  # NOQA: F401 (unused import)
from virtstore.storage import netfs  # NOQA: F401 (unused import)
from virtstore.storage import pbs  # NOQA: F401 (unused import)
from virtstore.storage import rbd  # NOQA: F401 (unused import)
from virtstore.storage import zfs  # NOQA: F401 (unused import)

log = logging.getLogger("storage.schema")

Property = collections.namedtuple(
    "Property", "name, type, fixed, optional, default, validator")

STRING = "string"
BOOLEAN = "boolean"
INTEGER = "integer"
CONTENT = "content"
NODES = "nodes"
CONTENT_DIRS = "content-dirs"
PRUNE_BACKUPS = "prune-backups"
BWLIMIT = "bwlimit"
FORMAT = "format"
PREALLOCATION = "preallocation"

_NODE_NAME = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9\-]*[a-zA-Z0-9])?$")

PREALLOCATION_MODES = ("off", "metadata", "falloc", "full")


def _positive(key, value):
    if value < 0:
        raise se.ConfigError(key, "value %d must be positive" % value)


def _port(key, value):
    if not 1 <= value <= 65535:
        raise se.ConfigError(key, "invalid port %d" % value)


def _absolute_path(key, value):
    if not value.startswith("/"):
        raise se.ConfigError(key, "path %r is not absolute" % value)


# Property name -> (type, default, validator). Properties not listed here are
# strings.
_TYPES = {
    "content": (CONTENT, None, None),
    "nodes": (NODES, None, None),
    "content-dirs": (CONTENT_DIRS, None, None),
    "prune-backups": (PRUNE_BACKUPS, None, None),
    "bwlimit": (BWLIMIT, None, None),
    "format": (FORMAT, None, None),
    "preallocation": (PREALLOCATION, "metadata", None),
    "path": (STRING, None, _absolute_path),
    "shared": (BOOLEAN, False, None),
    "disable": (BOOLEAN, False, None),
    "mkdir": (BOOLEAN, True, None),
    "create-base-path": (BOOLEAN, True, None),
    "create-subdirs": (BOOLEAN, True, None),
    "sparse": (BOOLEAN, False, None),
    "krbd": (BOOLEAN, False, None),
    "saferemove": (BOOLEAN, False, None),
    "tagged_only": (BOOLEAN, False, None),
    "nocow": (BOOLEAN, False, None),
    "fuse": (BOOLEAN, False, None),
    "maxfiles": (INTEGER, None, _positive),
    "max-protected-backups": (INTEGER, None, None),
    "port": (INTEGER, None, _port),
}


def properties(plugin_cls):
    """
    Return dict name -> Property of the properties allowed for a storage
    type.
    """
    res = {}
    for name, opts in plugin_cls.options.items():
        ptype, default, validator = _TYPES.get(name, (STRING, None, None))
        res[name] = Property(
            name, ptype, bool(opts.get("fixed")), bool(opts.get("optional")),
            default, validator)
    return res


class Configuration(object):
    """
    Storage configuration: storage id -> dict of decoded properties,
    including the storage "type".
    """

    def __init__(self, ids=None, order=None, digest=None, errors=()):
        self.ids = ids if ids is not None else {}
        self.order = list(order) if order is not None else list(self.ids)
        self.digest = digest
        self.errors = list(errors)

    def __contains__(self, storeid):
        return storeid in self.ids

    def __getitem__(self, storeid):
        return self.ids[storeid]

    def __iter__(self):
        return iter(self.order)

    def __len__(self):
        return len(self.ids)

    def get(self, storeid, default=None):
        return self.ids.get(storeid, default)

    def items(self):
        return [(storeid, self.ids[storeid]) for storeid in self.order]

    def add(self, storeid, scfg):
        if storeid in self.ids:
            raise se.AlreadyExists("storage %s" % storeid)
        self.ids[storeid] = scfg
        self.order.append(storeid)

    def remove(self, storeid):
        del self.ids[storeid]
        self.order.remove(storeid)

    def copy(self):
        return Configuration(copy.deepcopy(self.ids), self.order,
                             self.digest, self.errors)

    def __repr__(self):
        return "<Configuration %s>" % ", ".join(self.order)


# Decoding

def parse_boolean(key, raw):
    value = plugin.parse_boolean(raw)
    if value is None:
        raise se.ConfigError(key, "invalid boolean value %r" % raw)
    return value


def decode_content(plugin_cls, raw, strict=False):
    tokens = [t for t in re.split(r"[,;\s]+", raw or "") if t]
    content = set()
    for token in tokens:
        if token not in plugin_cls.content:
            if strict:
                raise se.ConfigError(
                    "content",
                    "storage type %s does not support content type %r" %
                    (plugin_cls.type, token))
            log.warning("Storage type %s does not support content type %r, "
                        "ignoring", plugin_cls.type, token)
            continue
        content.add(token)

    if sc.CONTENT_NONE in content:
        if len(content) > 1:
            raise se.ConfigError(
                "content", "'none' cannot be combined with other content")
        return frozenset()

    if not content and sc.CONTENT_NONE not in plugin_cls.content:
        raise se.ConfigError(
            "content", "storage type %s requires content" % plugin_cls.type)

    return frozenset(content)


def decode_nodes(raw):
    nodes = set()
    for node in re.split(r"[,;\s]+", raw or ""):
        if not node:
            continue
        if not _NODE_NAME.match(node):
            raise se.ConfigError("nodes", "invalid node name %r" % node)
        nodes.add(node)
    return frozenset(nodes)


def decode_content_dirs(raw):
    res = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise se.ConfigError("content-dirs", "invalid item %r" % item)
        vtype, path = item.split("=", 1)
        if vtype not in sc.VTYPE_SUBDIRS:
            raise se.ConfigError(
                "content-dirs", "unknown content type %r" % vtype)
        path = path.strip()
        if os.path.isabs(path) or ".." in path.split("/") or not path:
            raise se.ConfigError(
                "content-dirs",
                "path %r must be relative and must not contain '..'" % path)
        res[vtype] = path
    return res


def decode_prune_backups(raw):
    opts = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise se.ConfigError("prune-backups", "invalid item %r" % item)
        key, value = item.split("=", 1)
        try:
            opts[key.strip()] = int(value)
        except ValueError:
            raise se.ConfigError(
                "prune-backups", "%s: invalid number %r" % (key, value))
    return validate_prune_backups(opts)


def validate_prune_backups(opts):
    """
    Validate prune options, returning the normalized options.

    Options with a zero value are removed. If no option keeps anything, the
    result is {"keep-all": 1}.

    Raises:
        se.ConfigError if an option is unknown or negative, or keep-all is
            combined with another option.
    """
    res = {}
    for key, value in opts.items():
        if key != sc.PRUNE_KEEP_ALL and key not in sc.PRUNE_OPTIONS:
            raise se.ConfigError(
                "prune-backups", "unknown option %r" % key)
        value = int(value)
        if value < 0:
            raise se.ConfigError(
                "prune-backups", "%s must be positive" % key)
        if value:
            res[key] = value

    if res.get(sc.PRUNE_KEEP_ALL):
        if len(res) > 1:
            raise se.ConfigError(
                "prune-backups",
                "keep-all cannot be set together with other options")
        return {sc.PRUNE_KEEP_ALL: 1}

    if not res:
        return {sc.PRUNE_KEEP_ALL: 1}

    return res


def decode_bwlimit(raw):
    """
    Decode bandwidth limits "<operation>=<KiB/s>[,...]" to a dict.

    Raises:
        se.ConfigError if an operation is unknown or a limit is not a
            positive number.
    """
    limits = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or key not in sc.BWLIMIT_OPERATIONS:
            raise se.ConfigError("bwlimit", "invalid item %r" % item)
        try:
            limits[key] = int(value)
        except ValueError:
            raise se.ConfigError(
                "bwlimit", "%s: invalid number %r" % (key, value))
        if limits[key] < 0:
            raise se.ConfigError("bwlimit", "%s must be positive" % key)
    return limits


def maxfiles_to_prune_backups(maxfiles):
    """
    Convert the legacy maxfiles property to prune options.
    """
    maxfiles = int(maxfiles)
    if maxfiles == 0:
        return {sc.PRUNE_KEEP_ALL: 1}
    return {"keep-last": maxfiles}


def decode_value(plugin_cls, key, raw, strict=False):
    """
    Decode the raw string value of property key of a storage of type
    plugin_cls.

    Raises:
        se.ConfigError if the value is invalid.
    """
    ptype, _, validator = _TYPES.get(key, (STRING, None, None))

    if ptype == CONTENT:
        value = decode_content(plugin_cls, raw, strict)
    elif ptype == NODES:
        value = decode_nodes(raw)
    elif ptype == CONTENT_DIRS:
        value = decode_content_dirs(raw)
    elif ptype == PRUNE_BACKUPS:
        value = decode_prune_backups(raw)
    elif ptype == BWLIMIT:
        value = decode_bwlimit(raw)
    elif ptype == BOOLEAN:
        value = parse_boolean(key, raw if raw is not None else "1")
    elif ptype == INTEGER:
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise se.ConfigError(key, "invalid integer %r" % raw)
    elif ptype == FORMAT:
        value = raw
        if plugin_cls.formats and value not in plugin_cls.formats:
            log.warning("Storage type %s does not support format %r",
                        plugin_cls.type, value)
    elif ptype == PREALLOCATION:
        if raw not in PREALLOCATION_MODES:
            raise se.ConfigError(key, "invalid preallocation %r" % raw)
        value = raw
    else:
        if raw is None:
            raise se.ConfigError(key, "missing value")
        value = raw

    if validator is not None:
        validator(key, value)

    return value


def encode_value(key, value):
    """
    Encode a decoded property value as a configuration file string.
    """
    ptype, _, _ = _TYPES.get(key, (STRING, None, None))

    if ptype == CONTENT:
        if not value:
            return sc.CONTENT_NONE
        return ",".join(sorted(value))
    if ptype == NODES:
        return ",".join(sorted(value))
    if ptype == CONTENT_DIRS:
        return ",".join("%s=%s" % (k, value[k]) for k in sorted(value))
    if ptype == PRUNE_BACKUPS:
        order = (sc.PRUNE_KEEP_ALL,) + sc.PRUNE_OPTIONS
        return ",".join("%s=%d" % (k, value[k]) for k in order if k in value)
    if ptype == BWLIMIT:
        return ",".join("%s=%d" % (k, value[k])
                        for k in sc.BWLIMIT_OPERATIONS if k in value)
    if ptype == BOOLEAN:
        return "1" if value else "0"
    return str(value)


# Reading and writing

def parse_config(text, strict=None):
    """
    Parse the storage configuration file text.

    Sections with an unknown type or invalid values are skipped and logged,
    and reported in Configuration.errors.

    Returns:
        normalized Configuration
    """
    if strict is None:
        strict = config.getboolean("storage", "strict_content")

    sections, errors = sectionconfig.parse(text, volname.is_valid_storage_id)
    errors = [str(e) for e in errors]

    ids = {}
    order = []
    for section in sections:
        try:
            scfg = _decode_section(section, strict)
        except se.StorageException as e:
            log.warning("Ignoring storage %s: %s", section.id, e)
            errors.append("storage %s: %s" % (section.id, e))
            continue
        ids[section.id] = scfg
        order.append(section.id)

    digest = hashlib.sha1(text.encode("utf-8")).hexdigest()
    return normalize(Configuration(ids, order, digest, errors))


def _decode_section(section, strict):
    plugin_cls = plugin.lookup(section.type)
    allowed = plugin_cls.options
    scfg = {"type": section.type}
    for key, raw in section.props:
        if key not in allowed:
            # Kept as is, so newer properties survive a rewrite.
            log.debug("Unknown property %r in storage %s", key, section.id)
            scfg[key] = raw
            continue
        scfg[key] = decode_value(plugin_cls, key, raw, strict)
    return scfg


def write_config(cfg):
    """
    Return configuration file text for Configuration cfg.
    """
    sections = []
    for storeid, scfg in cfg.items():
        props = []
        for key, value in scfg.items():
            if key == "type":
                continue
            props.append((key, encode_value(key, value)))
        sections.append((scfg["type"], storeid, props))
    return sectionconfig.write(sections)


def normalize(cfg):
    """
    Return a normalized copy of Configuration cfg.

    The local storage always exists, is a directory storage on all nodes.
    Storages without content get the default content of their type, and
    storages of shared types are marked shared.
    """
    cfg = cfg.copy()
    local = cfg.get(sc.LOCAL_STORAGE_ID)

    if local is None or local["type"] != "dir" or (
            local.get("path") and local["path"] != sc.LOCAL_STORAGE_PATH):
        if local is not None:
            cfg.remove(sc.LOCAL_STORAGE_ID)
        local = {
            "type": "dir",
            "path": sc.LOCAL_STORAGE_PATH,
            "content": frozenset(sc.CONTENT_TYPES),
            "prune-backups": {sc.PRUNE_KEEP_ALL: 1},
        }
        cfg.ids[sc.LOCAL_STORAGE_ID] = local
        cfg.order.insert(0, sc.LOCAL_STORAGE_ID)

    local.setdefault("path", sc.LOCAL_STORAGE_PATH)
    local.pop("nodes", None)

    for storeid, scfg in cfg.items():
        plugin_cls = plugin.lookup(scfg["type"])
        if "content" not in scfg and plugin_cls.default_content:
            scfg["content"] = frozenset(plugin_cls.default_content)
        if scfg["type"] in sc.SHARED_STORAGE and "shared" not in scfg:
            scfg["shared"] = True

    return cfg


# Validation

def check_config(storeid, proposed, create, skip_schema_check=False,
                 current=None):
    """
    Validate storage properties for adding or updating a storage.

    Arguments:
        storeid (str): storage id.
        proposed (dict): raw string property values. When creating, must
            include "type".
        create (bool): True when adding a storage.
        skip_schema_check (bool): do not check for unknown, missing or fixed
            properties.
        current (dict): decoded properties of the existing storage, required
            when updating.

    Returns:
        dict of decoded properties, including "type".

    Raises:
        se.ConfigError if a property is invalid.
    """
    if not volname.is_valid_storage_id(storeid):
        raise se.ConfigError("storage", "invalid storage id %r" % storeid)

    if create:
        stype = proposed.get("type")
        if stype is None:
            raise se.ConfigError("type", "missing storage type")
    else:
        if current is None:
            raise se.NotFound("storage %s" % storeid)
        stype = current["type"]
        if proposed.get("type", stype) != stype:
            raise se.ConfigError("type", "can't change storage type")

    plugin_cls = plugin.lookup(stype)
    props = properties(plugin_cls)

    opts = {"type": stype}
    for key, raw in proposed.items():
        if key == "type":
            continue
        if key not in props and not skip_schema_check:
            raise se.ConfigError(
                key, "unexpected property for storage type %s" % stype)
        opts[key] = decode_value(plugin_cls, key, raw, strict=True)

    if not skip_schema_check:
        if create:
            opts = plugin_cls().check_config(storeid, opts, create)
            for prop in props.values():
                if not prop.optional and prop.name not in opts:
                    raise se.ConfigError(
                        prop.name, "property is missing and it is not "
                        "optional")
        else:
            for prop in props.values():
                if not prop.fixed or prop.name not in opts:
                    continue
                if opts[prop.name] != current.get(prop.name):
                    raise se.ConfigError(
                        prop.name, "can't change value of fixed parameter")
            opts = plugin_cls().check_config(storeid, opts, create)

    if sc.PRUNE_KEEP_ALL in opts.get("prune-backups", {}) and \
            "maxfiles" in opts:
        log.warning("Storage %s: maxfiles is ignored when prune-backups is "
                    "set", storeid)

    return opts
