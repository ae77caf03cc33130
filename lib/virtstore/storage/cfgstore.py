# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Storage configuration store.

The configuration is shared by all nodes of a cluster. The cluster
filesystem distributing it is provided by the caller as a ConfigStore
implementation. FileConfigStore keeps the configuration in a local file.
"""

from contextlib import contextmanager
import hashlib
import logging
import os
import socket
import tempfile

from virtstore.common.config import config
from virtstore.storage import clusterlock
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import plugin
from virtstore.storage import schema

log = logging.getLogger("storage.cfgstore")

# Lock name for configuration changes. Not a valid storage id, so it cannot
# clash with a storage lock.
CONFIG_LOCK = "_config"


class ConfigStore(object):
    """
    Interface for storage configuration stores.
    """

    def read(self):
        """
        Return the current Configuration.
        """
        raise NotImplementedError

    def write(self, cfg):
        """
        Replace the stored configuration with Configuration cfg.
        """
        raise NotImplementedError

    @contextmanager
    def lock(self, storeid, timeout=None):
        """
        Hold the lock for storeid while the context is active.
        """
        raise NotImplementedError


def atomic_write(filename, data, mode=0o640):
    """
    Write data to filename atomically using a temporary file.
    """
    with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=os.path.dirname(filename),
            prefix=os.path.basename(filename) + ".tmp",
            delete=False) as tmp:
        try:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
            os.chmod(tmp.name, mode)
            os.rename(tmp.name, filename)
        except BaseException:
            os.unlink(tmp.name)
            raise


class FileConfigStore(ConfigStore):

    log = logging.getLogger("storage.FileConfigStore")

    def __init__(self, path=None, lock_dir=None):
        self.path = path or config.get("storage", "config_file")
        self.lock_dir = lock_dir or sc.LOCK_DIR

    def _read_text(self):
        try:
            with open(self.path) as f:
                return f.read()
        except FileNotFoundError:
            return ""

    def read(self):
        cfg = schema.parse_config(self._read_text())
        for error in cfg.errors:
            self.log.warning("%s: %s", self.path, error)
        return cfg

    def write(self, cfg):
        """
        Write Configuration cfg.

        Raises:
            se.ConfigError if cfg was read from a configuration that was
                modified since.
        """
        if cfg.digest is not None:
            text = self._read_text()
            digest = hashlib.sha1(text.encode("utf-8")).hexdigest()
            if digest != cfg.digest:
                raise se.ConfigError(
                    "digest", "configuration file %s was modified by "
                    "another process" % self.path)

        data = schema.write_config(cfg).encode("utf-8")
        dirname = os.path.dirname(self.path)
        if dirname:
            os.makedirs(dirname, exist_ok=True)
        self.log.info("Writing storage configuration %s", self.path)
        atomic_write(self.path, data)

    @contextmanager
    def lock(self, storeid, timeout=None):
        if timeout is None:
            timeout = config.getint("storage", "lock_timeout")
        lock = clusterlock.LocalLock(storeid, lock_dir=self.lock_dir)
        lock.acquire(timeout)
        try:
            yield
        finally:
            lock.release()


@contextmanager
def updating(store, timeout=None):
    """
    Read the configuration under the configuration lock, yield it for
    modification, and write it back if the block succeeds.
    """
    with store.lock(CONFIG_LOCK, timeout):
        cfg = store.read()
        yield cfg
        store.write(cfg)


def add_storage(store, storeid, params, **hook_params):
    """
    Add a storage to the configuration.

    Arguments:
        params (dict): raw property values, including "type".
        hook_params: sensitive parameters (password, encryption-key, ...)
            passed to the storage type hook instead of the configuration.

    Returns:
        The decoded storage configuration.
    """
    opts = schema.check_config(storeid, params, True)
    with updating(store) as cfg:
        if storeid in cfg:
            raise se.AlreadyExists("storage %s" % storeid)
        p = plugin.lookup(opts["type"])()
        p.on_add_hook(storeid, opts, **hook_params)
        cfg.add(storeid, opts)
    log.info("Added storage %s", storeid)
    return opts


def update_storage(store, storeid, params, delete=(), **hook_params):
    """
    Update storage properties, removing the properties in delete.
    """
    with updating(store) as cfg:
        current = storage_config(cfg, storeid)
        opts = schema.check_config(storeid, params, False, current=current)
        scfg = dict(current)
        for key in delete:
            if key in params:
                raise se.ConfigError(
                    key, "cannot set and delete a property at the same time")
            scfg.pop(key, None)
        scfg.update(opts)
        p = plugin.lookup(scfg["type"])()
        p.on_update_hook(storeid, scfg, **hook_params)
        cfg.ids[storeid] = scfg
    log.info("Updated storage %s", storeid)
    return scfg


def remove_storage(store, storeid):
    with updating(store) as cfg:
        scfg = storage_config(cfg, storeid)
        if storeid == sc.LOCAL_STORAGE_ID:
            raise se.ConfigError("storage", "cannot remove local storage")
        p = plugin.lookup(scfg["type"])()
        p.on_delete_hook(storeid, scfg)
        cfg.remove(storeid)
    log.info("Removed storage %s", storeid)


def storage_config(cfg, storeid, noerr=False):
    """
    Return the configuration of storage storeid.

    Raises:
        se.NotFound if the storage does not exist, unless noerr is set, in
            which case None is returned.
    """
    scfg = cfg.get(storeid)
    if scfg is None:
        if noerr:
            return None
        raise se.NotFound("storage %s" % storeid)
    return scfg


def node_name():
    return config.get("storage", "node_name") or socket.gethostname()


def storage_check_node(cfg, storeid, node=None, noerr=False):
    """
    Return True if storeid is available on node.
    """
    scfg = storage_config(cfg, storeid)
    node = node or node_name()
    nodes = scfg.get("nodes")
    if nodes and node not in nodes:
        if noerr:
            return False
        raise se.StorageDisabled(
            "storage %s is not available on node %s" % (storeid, node))
    return True


def storage_check_enabled(cfg, storeid, node=None, noerr=False):
    """
    Return True if storeid is enabled and available on node.

    Raises:
        se.StorageDisabled unless noerr is set, in which case False is
            returned.
    """
    scfg = storage_config(cfg, storeid)
    if scfg.get("disable"):
        if noerr:
            return False
        raise se.StorageDisabled("storage %s is disabled" % storeid)
    return storage_check_node(cfg, storeid, node, noerr)
