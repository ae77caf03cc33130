# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

from contextlib import contextmanager
import os

import pytest

from virtstore.storage import clusterlock
from virtstore.storage import exception as se


class FakeClusterLock(clusterlock.ClusterLock):

    def __init__(self):
        self.calls = []

    @contextmanager
    def lock(self, storeid, timeout):
        self.calls.append(("lock", storeid, timeout))
        yield
        self.calls.append(("unlock", storeid))


class TestLocalLock:

    def test_acquire_release(self, lock_dir):
        lock = clusterlock.LocalLock("store1", lock_dir=lock_dir)
        lock.acquire(1)
        assert os.path.exists(os.path.join(lock_dir, "storage-store1"))
        lock.release()

    def test_release_twice(self, lock_dir):
        lock = clusterlock.LocalLock("store1", lock_dir=lock_dir)
        lock.acquire(1)
        lock.release()
        lock.release()

    def test_timeout(self, lock_dir):
        first = clusterlock.LocalLock("store1", lock_dir=lock_dir)
        second = clusterlock.LocalLock("store1", lock_dir=lock_dir)
        first.acquire(1)
        try:
            with pytest.raises(se.LockTimeout):
                second.acquire(0.2)
        finally:
            first.release()
        second.acquire(0)
        second.release()

    def test_other_storage(self, lock_dir):
        first = clusterlock.LocalLock("store1", lock_dir=lock_dir)
        second = clusterlock.LocalLock("store2", lock_dir=lock_dir)
        first.acquire(0)
        try:
            second.acquire(0)
            second.release()
        finally:
            first.release()

    def test_context_manager(self, lock_dir):
        with clusterlock.LocalLock("store1", lock_dir=lock_dir):
            other = clusterlock.LocalLock("store1", lock_dir=lock_dir)
            with pytest.raises(se.LockTimeout):
                other.acquire(0)

    def test_default_lock_dir(self, lock_dir):
        lock = clusterlock.LocalLock("store1")
        assert lock.path == os.path.join(lock_dir, "storage-store1")


class TestStorageLock:

    def test_local(self, lock_dir):
        scfg = {"type": "dir"}
        with clusterlock.storage_lock("store1", scfg, timeout=1,
                                      lock_dir=lock_dir):
            other = clusterlock.LocalLock("store1", lock_dir=lock_dir)
            with pytest.raises(se.LockTimeout):
                other.acquire(0)

        other.acquire(0)
        other.release()

    def test_shared_uses_cluster_lock(self, lock_dir):
        scfg = {"type": "nfs", "shared": True}
        cluster_lock = FakeClusterLock()
        with clusterlock.storage_lock("store1", scfg, timeout=5,
                                      cluster_lock=cluster_lock,
                                      lock_dir=lock_dir):
            # Local lock is not taken.
            other = clusterlock.LocalLock("store1", lock_dir=lock_dir)
            other.acquire(0)
            other.release()
        assert cluster_lock.calls == [
            ("lock", "store1", 5),
            ("unlock", "store1"),
        ]

    def test_local_storage_ignores_cluster_lock(self, lock_dir):
        scfg = {"type": "dir"}
        cluster_lock = FakeClusterLock()
        with clusterlock.storage_lock("store1", scfg, timeout=1,
                                      cluster_lock=cluster_lock,
                                      lock_dir=lock_dir):
            pass
        assert cluster_lock.calls == []

    def test_shared_without_cluster_lock(self, lock_dir):
        scfg = {"type": "nfs", "shared": True}
        with clusterlock.storage_lock("store1", scfg, timeout=1,
                                      lock_dir=lock_dir):
            other = clusterlock.LocalLock("store1", lock_dir=lock_dir)
            with pytest.raises(se.LockTimeout):
                other.acquire(0)

    def test_released_on_error(self, lock_dir):
        scfg = {"type": "dir"}
        with pytest.raises(RuntimeError):
            with clusterlock.storage_lock("store1", scfg, timeout=1,
                                          lock_dir=lock_dir):
                raise RuntimeError("fake error")
        other = clusterlock.LocalLock("store1", lock_dir=lock_dir)
        other.acquire(0)
        other.release()
