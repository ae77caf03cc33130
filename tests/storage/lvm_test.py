# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

import pytest

from virtstore.common import cmdutils
from virtstore.common.units import GiB
from virtstore.storage import backends
from virtstore.storage import exception as se
from virtstore.storage import lvm
from virtstore.storage import streams

STOREID = "vg1"
SCFG = {"type": "lvm", "vgname": "vg0"}
THIN_SCFG = {"type": "lvmthin", "vgname": "vg0", "thinpool": "data"}

LVS = (
    "  vg0:data:107374182400:twi-aotz--::25.00:1609495200:\n"
    "  vg0:vm-100-disk-0:1073741824:Vwi-aotz--:data:50.00:"
    "1609581600:pve-vm-100\n"
    "  vg0:snap_vm-100-disk-0_s2:1073741824:Vri---tz-k:data::"
    "1609754400:\n"
    "  vg0:snap_vm-100-disk-0_s1:1073741824:Vri---tz-k:data::"
    "1609668000:\n"
    "  vg0:vm-101-disk-0:2147483648:-wi-a-----:::"
    "1609840800:\n"
    "  vg0:root:8589934592:-wi-ao----:::1609491600:\n"
    "\n"
)

VGS = "  vg0:10737418240:5368709120\n  other:1073741824:0\n"


class TestParse:

    def test_lvs(self):
        lvs = lvm.parse_lvs(LVS)
        assert lvs[0] == lvm.LVInfo(
            "vg0", "data", 100 * GiB, "t", None, 25 * GiB,
            1609495200, ())
        assert lvs[1] == lvm.LVInfo(
            "vg0", "vm-100-disk-0", GiB, "V", "data", GiB // 2,
            1609581600, ("pve-vm-100",))
        assert lvs[4].lv_type == "-"
        assert lvs[4].used == 2 * GiB
        assert len(lvs) == 6

    def test_vgs(self):
        vgs = lvm.parse_vgs(VGS)
        assert vgs == {
            "vg0": lvm.VGInfo("vg0", 10 * GiB, 5 * GiB),
            "other": lvm.VGInfo("other", GiB, 0),
        }


class TestLvmTool:

    def test_allocate(self, fake_commands):
        fake_commands.on("vgs", out=VGS.encode("utf-8"))
        lvm.LvmTool(STOREID, SCFG).allocate("vm-100-disk-0", 1024, "raw")
        assert fake_commands.called("lvcreate")[0][1:] == [
            "lvcreate", "-aly", "--addtag", "pve-vm-100", "--size", "1024k",
            "--name", "vm-100-disk-0", "vg0"]

    def test_allocate_no_space(self, fake_commands):
        fake_commands.on("vgs", out=VGS.encode("utf-8"))
        with pytest.raises(se.StorageException):
            lvm.LvmTool(STOREID, SCFG).allocate(
                "vm-100-disk-0", 6 * GiB // 1024, "raw")
        assert fake_commands.called("lvcreate") == []

    def test_allocate_missing_vg(self, fake_commands):
        fake_commands.on("vgs", out=b"  other:1073741824:0\n")
        with pytest.raises(se.NotFound):
            lvm.LvmTool(STOREID, SCFG).allocate("vm-100-disk-0", 1024, "raw")

    def test_allocate_qcow2(self, fake_commands):
        with pytest.raises(se.UnsupportedOperation):
            lvm.LvmTool(STOREID, SCFG).allocate(
                "vm-100-disk-0.qcow2", 1024, "qcow2")

    def test_vgs_partial_failure(self, fake_commands):
        fake_commands.on("vgs", error=cmdutils.Error(
            ["vgs"], 5, VGS.encode("utf-8"), b"Skipping clustered vg"))
        assert "vg0" in lvm.LvmTool(STOREID, SCFG).vgs()

    def test_delete(self, fake_commands):
        lvm.LvmTool(STOREID, SCFG).delete("vm-100-disk-0")
        assert [c[1:] for c in fake_commands.calls] == [
            ["lvchange", "-aly", "vg0/vm-100-disk-0"],
            ["lvremove", "-f", "vg0/vm-100-disk-0"],
        ]

    def test_delete_saferemove(self, fake_commands):
        scfg = dict(SCFG, saferemove=True)
        lvm.LvmTool(STOREID, scfg).delete("vm-100-disk-0")
        assert fake_commands.called(
            "lvrename", "vg0", "vm-100-disk-0", "del-vm-100-disk-0")
        assert fake_commands.called("cstream", "/dev/vg0/del-vm-100-disk-0")
        assert fake_commands.calls[-1][1:] == [
            "lvremove", "-f", "vg0/del-vm-100-disk-0"]

    def test_snapshots_unsupported(self, fake_commands):
        tool = lvm.LvmTool(STOREID, SCFG)
        assert tool.list_snapshots("vm-100-disk-0") == []
        with pytest.raises(se.UnsupportedOperation):
            tool.snapshot("vm-100-disk-0", "s1")

    def test_list(self, fake_commands):
        fake_commands.on("lvs", out=LVS.encode("utf-8"))
        entries = lvm.LvmTool(STOREID, SCFG).list()
        assert entries == [
            backends.VolumeEntry("vm-101-disk-0", 2 * GiB, "raw", None,
                                 2 * GiB),
        ]

    def test_list_tagged_only(self, fake_commands):
        text = (
            "  vg0:vm-100-disk-0:1073741824:-wi-a-----:::1609459200:"
            "pve-vm-100\n"
            "  vg0:vm-101-disk-0:1073741824:-wi-a-----:::1609459200:\n"
        )
        fake_commands.on("lvs", out=text.encode("utf-8"))
        scfg = dict(SCFG, tagged_only=True)
        entries = lvm.LvmTool(STOREID, scfg).list()
        assert [e.name for e in entries] == ["vm-100-disk-0"]

    def test_status(self, fake_commands):
        fake_commands.on("vgs", out=VGS.encode("utf-8"))
        assert lvm.LvmTool(STOREID, SCFG).status() == (
            10 * GiB, 5 * GiB, 5 * GiB)


class TestLvmThinTool:

    def test_allocate(self, fake_commands):
        lvm.LvmThinTool(STOREID, THIN_SCFG).allocate(
            "vm-100-disk-0", 1024, "raw")
        assert fake_commands.calls[0][1:] == [
            "lvcreate", "-aly", "-V", "1024k", "--name", "vm-100-disk-0",
            "--thinpool", "vg0/data"]

    def test_list(self, fake_commands):
        fake_commands.on("lvs", out=LVS.encode("utf-8"))
        entries = lvm.LvmThinTool(STOREID, THIN_SCFG).list()
        assert entries == [
            backends.VolumeEntry("vm-100-disk-0", GiB, "raw", None, GiB // 2),
        ]

    def test_list_snapshots(self, fake_commands):
        fake_commands.on("lvs", out=LVS.encode("utf-8"))
        snaps = lvm.LvmThinTool(STOREID, THIN_SCFG).list_snapshots(
            "vm-100-disk-0")
        assert snaps == ["s1", "s2"]

    def test_snapshot(self, fake_commands):
        lvm.LvmThinTool(STOREID, THIN_SCFG).snapshot("vm-100-disk-0", "s1")
        assert fake_commands.calls[0][1:] == [
            "lvcreate", "-n", "snap_vm-100-disk-0_s1", "-pr", "-s",
            "vg0/vm-100-disk-0"]

    def test_snapshot_rollback(self, fake_commands):
        lvm.LvmThinTool(STOREID, THIN_SCFG).snapshot_rollback(
            "vm-100-disk-0", "s1")
        assert [c[1:] for c in fake_commands.calls] == [
            ["lvremove", "-f", "vg0/vm-100-disk-0"],
            ["lvcreate", "-kn", "-n", "vm-100-disk-0", "-s",
             "vg0/snap_vm-100-disk-0_s1"],
        ]

    def test_clone_snapshot(self, fake_commands):
        lvm.LvmThinTool(STOREID, THIN_SCFG).clone(
            "vm-100-disk-0", "s1", "vm-101-disk-0", "raw")
        assert fake_commands.calls[0][1:] == [
            "lvcreate", "-n", "vm-101-disk-0", "-prw", "-kn", "-s",
            "vg0/snap_vm-100-disk-0_s1"]

    def test_status(self, fake_commands):
        fake_commands.on("lvs", out=LVS.encode("utf-8"))
        assert lvm.LvmThinTool(STOREID, THIN_SCFG).status() == (
            100 * GiB, 75 * GiB, 25 * GiB)

    def test_status_missing_pool(self, fake_commands):
        scfg = dict(THIN_SCFG, thinpool="bogus")
        fake_commands.on("lvs", out=LVS.encode("utf-8"))
        with pytest.raises(se.NotFound):
            lvm.LvmThinTool(STOREID, scfg).status()


class TestPlugin:

    def test_filesystem_path(self):
        p = lvm.LVMPlugin()
        assert p.filesystem_path(SCFG, "vm-100-disk-0") == \
            "/dev/vg0/vm-100-disk-0"
        with pytest.raises(se.UnsupportedOperation):
            p.filesystem_path(SCFG, "vm-100-disk-0", "s1")

    def test_thin_snapshot_path(self):
        p = lvm.LvmThinPlugin()
        assert p.filesystem_path(THIN_SCFG, "vm-100-disk-0", "s1") == \
            "/dev/vg0/snap_vm-100-disk-0_s1"

    def test_alloc_wrong_owner(self, fake_tool):
        tool = fake_tool(lvm.LVMPlugin)
        with pytest.raises(se.InvalidName):
            lvm.LVMPlugin().alloc_image(
                STOREID, SCFG, "100", "raw", "vm-101-disk-0", 1024)
        assert tool.calls == []

    def test_thin_clone_bare_name(self, fake_tool):
        tool = fake_tool(lvm.LvmThinPlugin)
        tool.add("base-100-disk-0", GiB)
        name = lvm.LvmThinPlugin().clone_image(
            STOREID, THIN_SCFG, "base-100-disk-0", "101")
        assert name == "vm-101-disk-1"

    def test_no_snapshots(self, fake_tool):
        tool = fake_tool(lvm.LVMPlugin)
        tool.add("vm-100-disk-0", GiB)
        with pytest.raises(se.UnsupportedOperation):
            lvm.LVMPlugin().volume_snapshot(
                STOREID, SCFG, "vm-100-disk-0", "s1")

    @pytest.mark.parametrize("kw,formats", [
        ({}, [streams.RAW_SIZE]),
        ({"with_snapshots": True}, []),
        ({"base_snapshot": "s1"}, []),
    ])
    def test_import_formats(self, kw, formats):
        p = lvm.LVMPlugin()
        assert p.volume_import_formats(
            STOREID, SCFG, "vm-100-disk-0", **kw) == formats

    def test_export_snapshot(self):
        p = lvm.LVMPlugin()
        assert p.volume_export_formats(
            STOREID, SCFG, "vm-100-disk-0", snapshot="s1") == []

    def test_activate_missing_vg(self, fake_commands):
        fake_commands.on("vgs", out=b"")
        with pytest.raises(se.StorageNotActive):
            lvm.LVMPlugin().activate_storage(STOREID, SCFG)

    def test_activate(self, fake_commands):
        fake_commands.on("vgs", out=VGS.encode("utf-8"))
        lvm.LVMPlugin().activate_storage(STOREID, SCFG)
        assert fake_commands.called("vgchange", "-aly", "vg0")
