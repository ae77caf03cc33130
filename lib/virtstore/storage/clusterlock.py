# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Storage locks.

Volume allocation and deletion, and configuration changes, must be done while
holding the storage lock. Storages visible only on this node use LocalLock,
an flock on a per storage lock file. Shared storages use a cluster lock
provided by the caller, implementing the ClusterLock interface.
"""

from contextlib import contextmanager
import errno
import fcntl
import logging
import os
import time

from virtstore.common.config import config
from virtstore.storage import constants as sc
from virtstore.storage import exception as se

log = logging.getLogger("storage.clusterlock")


class ClusterLock(object):
    """
    Interface for cluster wide storage locks.

    Implementations must serialize lock holders on all nodes of the cluster.
    """

    @contextmanager
    def lock(self, storeid, timeout):
        """
        Hold the cluster lock for storeid while the context is active.

        Raises:
            se.LockTimeout if the lock could not be acquired within timeout
                seconds.
        """
        raise NotImplementedError


class LocalLock(object):
    log = logging.getLogger("storage.LocalLock")

    # Polling interval while waiting for a lock held by another process.
    POLL_INTERVAL = 0.1

    def __init__(self, storeid, lock_dir=None):
        self._storeid = storeid
        self._lock_dir = lock_dir or sc.LOCK_DIR
        self._fd = None

    @property
    def path(self):
        return os.path.join(self._lock_dir, "storage-%s" % self._storeid)

    def acquire(self, timeout):
        """
        Acquire the lock, waiting up to timeout seconds.

        Raises:
            se.LockTimeout if the lock is held by someone else after timeout
                seconds.
        """
        os.makedirs(self._lock_dir, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT | os.O_CLOEXEC, 0o644)
        deadline = time.monotonic() + timeout
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except OSError as e:
                    if e.errno not in (errno.EACCES, errno.EAGAIN):
                        raise
                    if time.monotonic() >= deadline:
                        raise se.LockTimeout(self._storeid, timeout)
                    time.sleep(self.POLL_INTERVAL)
                else:
                    break
        except BaseException:
            os.close(fd)
            raise

        self._fd = fd
        self.log.debug("Local lock for storage %s acquired", self._storeid)

    def release(self):
        if self._fd is None:
            self.log.debug("Local lock already released for storage %s",
                           self._storeid)
            return
        os.close(self._fd)
        self._fd = None
        self.log.debug("Local lock for storage %s released", self._storeid)

    def __enter__(self):
        self.acquire(config.getint("storage", "lock_timeout"))
        return self

    def __exit__(self, t, v, tb):
        self.release()


@contextmanager
def storage_lock(storeid, scfg, timeout=None, cluster_lock=None,
                 lock_dir=None):
    """
    Hold the lock for storage storeid.

    Arguments:
        storeid (str): storage id.
        scfg (dict): storage configuration, used to decide if the storage is
            shared.
        timeout (float): seconds to wait for the lock. If None, use the
            configured storage lock_timeout.
        cluster_lock (ClusterLock): lock used for shared storages. Without a
            cluster lock, shared storages are locked locally, which only
            serializes callers on this node.
        lock_dir (str): directory for local lock files.
    """
    if timeout is None:
        timeout = config.getint("storage", "lock_timeout")

    if scfg.get("shared") and cluster_lock is not None:
        log.debug("Taking cluster lock for storage %s", storeid)
        with cluster_lock.lock(storeid, timeout):
            yield
    else:
        if scfg.get("shared"):
            log.debug("No cluster lock for shared storage %s, using local "
                      "lock", storeid)
        lock = LocalLock(storeid, lock_dir=lock_dir)
        lock.acquire(timeout)
        try:
            yield
        finally:
            lock.release()
