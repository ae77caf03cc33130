# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

import pytest

from virtstore.common.units import GiB, MiB
from virtstore.storage import backends
from virtstore.storage import exception as se
from virtstore.storage import zfs

STOREID = "tank1"
SCFG = {"type": "zfspool", "pool": "tank/data"}


@pytest.fixture
def tool(fake_tool):
    return fake_tool(zfs.ZFSPoolPlugin, storeid=STOREID, scfg=SCFG)


@pytest.fixture
def plugin():
    return zfs.ZFSPoolPlugin()


class TestBaseName:

    @pytest.mark.parametrize("name,base", [
        ("vm-100-disk-1", "base-100-disk-1"),
        ("subvol-100-disk-1", "basevol-100-disk-1"),
    ])
    def test_base_name(self, name, base):
        assert backends.base_name(name) == base

    def test_base_name_invalid(self):
        with pytest.raises(se.InvalidName):
            backends.base_name("base-100-disk-1")


class TestAlloc:

    def test_free_name(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        name = plugin.alloc_image(STOREID, SCFG, "100", "raw", None, 1024)
        assert name == "vm-100-disk-2"
        assert tool.calls == [("allocate", "vm-100-disk-2", 1024, "raw")]

    def test_subvol_name(self, plugin, tool):
        name = plugin.alloc_image(STOREID, SCFG, "100", "subvol", None, 1024)
        assert name == "subvol-100-disk-1"

    def test_explicit_name(self, plugin, tool):
        name = plugin.alloc_image(
            STOREID, SCFG, 100, "raw", "vm-100-data", 1024)
        assert name == "vm-100-data"

    def test_wrong_owner(self, plugin, tool):
        with pytest.raises(se.InvalidName):
            plugin.alloc_image(STOREID, SCFG, "100", "raw", "vm-101-disk-1",
                               1024)
        assert tool.calls == []

    def test_exists(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        with pytest.raises(se.AlreadyExists):
            plugin.alloc_image(STOREID, SCFG, "100", "raw", "vm-100-disk-1",
                               1024)

    def test_unsupported_format(self, plugin, tool):
        with pytest.raises(se.UnsupportedOperation):
            plugin.alloc_image(STOREID, SCFG, "100", "qcow2", None, 1024)


class TestFree:

    def test_snapshots_removed_first(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB, snapshots=["snap1", "snap2"])
        plugin.free_image(STOREID, SCFG, "vm-100-disk-1", False)
        assert tool.calls == [
            ("snapshot_delete", "vm-100-disk-1", "snap2"),
            ("snapshot_delete", "vm-100-disk-1", "snap1"),
            ("delete", "vm-100-disk-1"),
        ]
        assert tool.volumes == {}

    def test_base(self, plugin, tool):
        tool.add("base-100-disk-1", GiB, snapshots=["__base__"])
        plugin.free_image(STOREID, SCFG, "base-100-disk-1", True)
        assert tool.volumes == {}

    def test_clone(self, plugin, tool):
        tool.add("base-100-disk-1", GiB, snapshots=["__base__"])
        tool.add("vm-101-disk-1", GiB, parent="base-100-disk-1")
        plugin.free_image(STOREID, SCFG, "base-100-disk-1/vm-101-disk-1",
                          False)
        assert list(tool.volumes) == ["base-100-disk-1"]


class TestCreateBase:

    def test_create_base(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        name = plugin.create_base(STOREID, SCFG, "vm-100-disk-1")
        assert name == "base-100-disk-1"
        assert tool.calls == [
            ("rename", "vm-100-disk-1", "base-100-disk-1"),
            ("snapshot", "base-100-disk-1", "__base__"),
        ]

    def test_already_base(self, plugin, tool):
        tool.add("base-100-disk-1", GiB, snapshots=["__base__"])
        with pytest.raises(se.AlreadyBase):
            plugin.create_base(STOREID, SCFG, "base-100-disk-1")

    def test_twice(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        name = plugin.create_base(STOREID, SCFG, "vm-100-disk-1")
        with pytest.raises(se.AlreadyBase):
            plugin.create_base(STOREID, SCFG, name)

    def test_with_snapshots(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB, snapshots=["snap1"])
        with pytest.raises(se.UnsupportedOperation):
            plugin.create_base(STOREID, SCFG, "vm-100-disk-1")
        assert "vm-100-disk-1" in tool.volumes

    def test_base_exists(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        tool.add("base-100-disk-1", GiB)
        with pytest.raises(se.AlreadyExists):
            plugin.create_base(STOREID, SCFG, "vm-100-disk-1")


class TestClone:

    def test_clone_base(self, plugin, tool):
        tool.add("base-100-disk-1", GiB, snapshots=["__base__"])
        name = plugin.clone_image(STOREID, SCFG, "base-100-disk-1", "101")
        assert name == "base-100-disk-1/vm-101-disk-1"
        assert tool.calls == [
            ("clone", "base-100-disk-1", None, "vm-101-disk-1", "raw"),
        ]

    def test_clone_current(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        with pytest.raises(se.UnsupportedOperation):
            plugin.clone_image(STOREID, SCFG, "vm-100-disk-1", "101")
        assert tool.calls == []

    def test_clone_next_free_name(self, plugin, tool):
        tool.add("base-100-disk-1", GiB, snapshots=["__base__"])
        tool.add("vm-101-disk-1", GiB)
        name = plugin.clone_image(STOREID, SCFG, "base-100-disk-1", "101")
        assert name == "base-100-disk-1/vm-101-disk-2"


class TestRename:

    def test_rename(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        volid = plugin.rename_volume(STOREID, SCFG, "vm-100-disk-1", "200")
        assert volid == "tank1:vm-200-disk-1"
        assert list(tool.volumes) == ["vm-200-disk-1"]

    def test_rename_target_exists(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        tool.add("vm-200-disk-5", GiB)
        with pytest.raises(se.AlreadyExists):
            plugin.rename_volume(STOREID, SCFG, "vm-100-disk-1", "200",
                                 "vm-200-disk-5")

    def test_rename_wrong_owner(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        with pytest.raises(se.InvalidName):
            plugin.rename_volume(STOREID, SCFG, "vm-100-disk-1", "200",
                                 "vm-201-disk-1")


class TestListImages:

    @pytest.fixture
    def volumes(self, tool):
        tool.add("vm-100-disk-1", GiB)
        tool.add("base-100-disk-2", 2 * GiB, snapshots=["__base__"])
        tool.add("vm-101-disk-1", 2 * GiB, parent="base-100-disk-2")
        tool.add("subvol-102-disk-1", 8 * GiB, fmt="subvol")
        tool.add("unrelated", MiB)
        return tool

    def test_all(self, plugin, volumes):
        images = plugin.list_images(STOREID, SCFG)
        assert sorted(i["volid"] for i in images) == [
            "tank1:base-100-disk-2",
            "tank1:base-100-disk-2/vm-101-disk-1",
            "tank1:subvol-102-disk-1",
            "tank1:vm-100-disk-1",
        ]

    def test_vmid(self, plugin, volumes):
        images = plugin.list_images(STOREID, SCFG, vmid="101")
        assert images == [{
            "volid": "tank1:base-100-disk-2/vm-101-disk-1",
            "format": "raw",
            "size": 2 * GiB,
            "vmid": "101",
            "used": 0,
            "parent": "base-100-disk-2",
            "ctime": None,
        }]

    def test_vollist(self, plugin, volumes):
        images = plugin.list_images(
            STOREID, SCFG, vollist=["tank1:vm-100-disk-1", "tank1:bogus"])
        assert [i["volid"] for i in images] == ["tank1:vm-100-disk-1"]

    def test_vmid_and_vollist(self, plugin, volumes):
        with pytest.raises(ValueError):
            plugin.list_images(STOREID, SCFG, vmid="100", vollist=[])

    def test_cache(self, plugin, volumes):
        cache = {}
        plugin.list_images(STOREID, SCFG, cache=cache)
        volumes.add("vm-100-disk-3", GiB)
        images = plugin.list_images(STOREID, SCFG, cache=cache)
        assert "tank1:vm-100-disk-3" not in [i["volid"] for i in images]


class TestSnapshots:

    def test_snapshot(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        plugin.volume_snapshot(STOREID, SCFG, "vm-100-disk-1", "snap1")
        assert tool.snapshots["vm-100-disk-1"] == ["snap1"]

    def test_snapshot_list_hides_base(self, plugin, tool):
        tool.add("base-100-disk-1", GiB, snapshots=["__base__"])
        assert plugin.volume_snapshot_list(
            STOREID, SCFG, "base-100-disk-1") == []

    def test_rollback_latest(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB, snapshots=["snap1", "snap2"])
        plugin.volume_snapshot_rollback(STOREID, SCFG, "vm-100-disk-1",
                                        "snap2")
        assert tool.calls == [
            ("snapshot_rollback", "vm-100-disk-1", "snap2"),
        ]

    def test_rollback_not_latest(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB, snapshots=["snap1", "snap2", "snap3"])
        with pytest.raises(se.NotLatestSnapshot) as e:
            plugin.volume_snapshot_rollback(STOREID, SCFG, "vm-100-disk-1",
                                            "snap1")
        assert e.value.blockers == ["snap2", "snap3"]
        assert tool.calls == []

    def test_rollback_is_possible_blockers(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB, snapshots=["snap1", "snap2"])
        blockers = []
        with pytest.raises(se.NotLatestSnapshot):
            plugin.volume_rollback_is_possible(
                STOREID, SCFG, "vm-100-disk-1", "snap1", blockers)
        assert blockers == ["snap2"]

    def test_rollback_missing(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB, snapshots=["snap1"])
        with pytest.raises(se.NotFound):
            plugin.volume_rollback_is_possible(
                STOREID, SCFG, "vm-100-disk-1", "snap2")

    def test_snapshot_delete(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB, snapshots=["snap1"])
        plugin.volume_snapshot_delete(STOREID, SCFG, "vm-100-disk-1", "snap1")
        assert tool.snapshots["vm-100-disk-1"] == []


class TestInfo:

    def test_size_info(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        info = plugin.volume_size_info(STOREID, SCFG, "vm-100-disk-1")
        assert info == (GiB, "raw", 0, None)

    def test_size_info_missing(self, plugin, tool):
        with pytest.raises(se.NotFound):
            plugin.volume_size_info(STOREID, SCFG, "vm-100-disk-1")

    def test_resize(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        plugin.volume_resize(STOREID, SCFG, "vm-100-disk-1", 2 * GiB)
        assert tool.volumes["vm-100-disk-1"].size == 2 * GiB

    def test_status(self, plugin, tool):
        tool.add("vm-100-disk-1", GiB)
        total, free, used, active = plugin.status(STOREID, SCFG)
        assert (total, free, used) == (tool.total, tool.total - GiB, GiB)
        assert active

    def test_status_failure(self, plugin, tool, monkeypatch):
        def status():
            raise OSError("fake error")
        monkeypatch.setattr(tool, "status", status)
        assert plugin.status(STOREID, SCFG) is None
