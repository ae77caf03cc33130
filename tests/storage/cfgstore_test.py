# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

import os

import pytest

from virtstore.storage import cfgstore
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import plugin

LOCAL = (
    "dir: local\n"
    "\tpath %s\n"
    "\tcontent iso,vztmpl,backup\n" % sc.LOCAL_STORAGE_PATH
)


@pytest.fixture
def store(tmpdir, lock_dir):
    path = str(tmpdir.join("etc", "storage.cfg"))
    return cfgstore.FileConfigStore(path, lock_dir=lock_dir)


@pytest.fixture
def hooks(monkeypatch):
    calls = []
    cls = plugin.lookup("dir")

    def on_add_hook(self, storeid, scfg, **params):
        calls.append(("add", storeid, params))

    def on_update_hook(self, storeid, scfg, **params):
        calls.append(("update", storeid, params))

    def on_delete_hook(self, storeid, scfg):
        calls.append(("delete", storeid))

    monkeypatch.setattr(cls, "on_add_hook", on_add_hook)
    monkeypatch.setattr(cls, "on_update_hook", on_update_hook)
    monkeypatch.setattr(cls, "on_delete_hook", on_delete_hook)
    return calls


def test_atomic_write(tmpdir):
    path = str(tmpdir.join("file"))
    cfgstore.atomic_write(path, b"data", mode=0o600)
    with open(path, "rb") as f:
        assert f.read() == b"data"
    assert os.stat(path).st_mode & 0o777 == 0o600
    assert os.listdir(str(tmpdir)) == ["file"]


def test_atomic_write_replace(tmpdir):
    path = str(tmpdir.join("file"))
    cfgstore.atomic_write(path, b"old")
    cfgstore.atomic_write(path, b"new")
    with open(path, "rb") as f:
        assert f.read() == b"new"


def test_read_missing(store):
    cfg = store.read()
    assert list(cfg) == ["local"]


def test_read_write(store):
    os.makedirs(os.path.dirname(store.path))
    with open(store.path, "w") as f:
        f.write(LOCAL + "\ndir: store1\n\tpath /store1\n\tfuture 1\n")
    cfg = store.read()
    assert list(cfg) == ["local", "store1"]
    store.write(cfg)
    assert store.read().ids == cfg.ids
    with open(store.path) as f:
        assert "\tfuture 1\n" in f.read()


def test_write_modified(store):
    cfg = store.read()
    other = store.read()
    store.write(other)
    with pytest.raises(se.ConfigError):
        store.write(cfg)


def test_add_storage(store, hooks):
    opts = cfgstore.add_storage(
        store, "store1", {"type": "dir", "path": "/store1",
                          "content": "images"},
        password="secret")
    assert opts["content"] == frozenset(["images"])
    assert hooks == [("add", "store1", {"password": "secret"})]

    cfg = store.read()
    assert list(cfg) == ["local", "store1"]
    assert cfg["store1"]["path"] == "/store1"
    with open(store.path) as f:
        assert "secret" not in f.read()


def test_add_existing(store, hooks):
    params = {"type": "dir", "path": "/store1"}
    cfgstore.add_storage(store, "store1", params)
    with pytest.raises(se.AlreadyExists):
        cfgstore.add_storage(store, "store1", params)


def test_add_invalid(store, hooks):
    with pytest.raises(se.ConfigError):
        cfgstore.add_storage(store, "store1", {"type": "dir"})
    assert hooks == []
    assert not os.path.exists(store.path)


def test_update_storage(store, hooks):
    cfgstore.add_storage(store, "store1", {
        "type": "dir", "path": "/store1", "shared": "1"})
    scfg = cfgstore.update_storage(
        store, "store1", {"content": "backup"}, delete=["shared"])
    assert scfg == {
        "type": "dir",
        "path": "/store1",
        "content": frozenset(["backup"]),
    }
    assert store.read()["store1"] == scfg
    assert hooks[-1] == ("update", "store1", {})


def test_update_set_and_delete(store, hooks):
    cfgstore.add_storage(store, "store1", {"type": "dir", "path": "/store1"})
    with pytest.raises(se.ConfigError):
        cfgstore.update_storage(
            store, "store1", {"content": "backup"}, delete=["content"])


def test_update_missing(store):
    with pytest.raises(se.NotFound):
        cfgstore.update_storage(store, "store1", {"content": "backup"})


def test_remove_storage(store, hooks):
    cfgstore.add_storage(store, "store1", {"type": "dir", "path": "/store1"})
    cfgstore.remove_storage(store, "store1")
    assert "store1" not in store.read()
    assert hooks[-1] == ("delete", "store1")


def test_remove_local(store):
    with pytest.raises(se.ConfigError):
        cfgstore.remove_storage(store, "local")


class TestStorageCheck:

    @pytest.fixture
    def cfg(self, store, hooks):
        cfgstore.add_storage(store, "store1", {
            "type": "dir", "path": "/store1", "nodes": "node1,node2"})
        cfgstore.add_storage(store, "store2", {
            "type": "dir", "path": "/store2", "disable": "1"})
        return store.read()

    def test_storage_config(self, cfg):
        assert cfgstore.storage_config(cfg, "store1")["path"] == "/store1"
        assert cfgstore.storage_config(cfg, "bogus", noerr=True) is None
        with pytest.raises(se.NotFound):
            cfgstore.storage_config(cfg, "bogus")

    def test_check_node(self, cfg):
        assert cfgstore.storage_check_node(cfg, "store1", node="node1")
        assert cfgstore.storage_check_node(cfg, "local", node="node3")
        assert not cfgstore.storage_check_node(
            cfg, "store1", node="node3", noerr=True)
        with pytest.raises(se.StorageDisabled):
            cfgstore.storage_check_node(cfg, "store1", node="node3")

    def test_check_enabled(self, cfg):
        assert cfgstore.storage_check_enabled(cfg, "store1", node="node2")
        assert not cfgstore.storage_check_enabled(
            cfg, "store2", node="node2", noerr=True)
        with pytest.raises(se.StorageDisabled):
            cfgstore.storage_check_enabled(cfg, "store2", node="node2")
