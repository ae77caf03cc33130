# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

import time

import pytest

from virtstore.storage import exception as se
from virtstore.storage import volname
from virtstore.storage.volname import Volume


class TestVolumeId:

    @pytest.mark.parametrize("volid,expected", [
        ("local:100/vm-100-disk-1.raw", ("local", "100/vm-100-disk-1.raw")),
        ("my-store.1:iso/x.iso", ("my-store.1", "iso/x.iso")),
        ("pool:vm-100-disk-1", ("pool", "vm-100-disk-1")),
    ])
    def test_parse(self, volid, expected):
        assert volname.parse_volume_id(volid) == expected

    @pytest.mark.parametrize("volid", [
        "local",
        "1local:100/vm-100-disk-1.raw",
        "local-:100/vm-100-disk-1.raw",
        "local:",
        "",
    ])
    def test_parse_invalid(self, volid):
        with pytest.raises(se.ParseError):
            volname.parse_volume_id(volid)

    def test_volume_id(self):
        assert volname.volume_id("local", "iso/x.iso") == "local:iso/x.iso"

    @pytest.mark.parametrize("storeid,valid", [
        ("local", True),
        ("a1", True),
        ("my_store.b-2", True),
        ("1abc", False),
        ("abc-", False),
        ("a", False),
        ("_config", False),
    ])
    def test_valid_storage_id(self, storeid, valid):
        assert volname.is_valid_storage_id(storeid) == valid


class TestDirGrammar:

    @pytest.mark.parametrize("name,vol", [
        ("100/vm-100-disk-1.raw",
         Volume("images", "vm-100-disk-1.raw", "100", None, None, False,
                "raw")),
        ("100/base-100-disk-1.qcow2",
         Volume("images", "base-100-disk-1.qcow2", "100", None, None, True,
                "qcow2")),
        ("100/base-100-disk-1.qcow2/101/vm-101-disk-1.qcow2",
         Volume("images", "vm-101-disk-1.qcow2", "101",
                "base-100-disk-1.qcow2", "100", False, "qcow2")),
        ("100/subvol-100-disk-0.subvol",
         Volume("images", "subvol-100-disk-0.subvol", "100", None, None,
                False, "subvol")),
        ("100/basevol-100-disk-0.subvol",
         Volume("images", "basevol-100-disk-0.subvol", "100", None, None,
                True, "subvol")),
        ("iso/debian.iso",
         Volume("iso", "debian.iso", format="raw")),
        ("vztmpl/debian-11.tar.zst",
         Volume("vztmpl", "debian-11.tar.zst", format="raw")),
        ("rootdir/100",
         Volume("rootdir", "100", "100", format="raw")),
        ("backup/vzdump-qemu-100-2020_01_01-11_18_00.vma.zst",
         Volume("backup", "vzdump-qemu-100-2020_01_01-11_18_00.vma.zst",
                "100", format="raw")),
        ("backup/custom.tar",
         Volume("backup", "custom.tar", format="raw")),
        ("snippets/hook.pl",
         Volume("snippets", "hook.pl", format="raw")),
    ])
    def test_parse(self, name, vol):
        assert volname.DIR.parse(name) == vol
        assert volname.DIR.encode(vol) == name

    @pytest.mark.parametrize("name", [
        "100/vm-100-disk-1",
        "100/vm-100-disk-1.img",
        "iso/debian.txt",
        "vztmpl/debian.tar",
        "backup/vzdump-qemu-100.zip",
        "images/100/vm-100-disk-1.raw",
        "",
    ])
    def test_parse_invalid(self, name):
        with pytest.raises(se.StorageException):
            volname.DIR.parse(name)


class TestZfsGrammar:

    @pytest.mark.parametrize("name,vol", [
        ("vm-100-disk-0",
         Volume("images", "vm-100-disk-0", "100", None, None, False, "raw")),
        ("base-100-disk-0",
         Volume("images", "base-100-disk-0", "100", None, None, True, "raw")),
        ("subvol-100-disk-0",
         Volume("images", "subvol-100-disk-0", "100", None, None, False,
                "subvol")),
        ("base-100-disk-0/vm-101-disk-0",
         Volume("images", "vm-101-disk-0", "101", "base-100-disk-0", "100",
                False, "raw")),
    ])
    def test_parse(self, name, vol):
        assert volname.ZFS.parse(name) == vol
        assert volname.ZFS.encode(vol) == name

    @pytest.mark.parametrize("name", [
        "disk-0",
        "vm-100-disk-0/vm-101-disk-0",
        "pool/vm-100-disk-0",
    ])
    def test_parse_invalid(self, name):
        with pytest.raises(se.ParseError):
            volname.ZFS.parse(name)


class TestLvmGrammar:

    def test_parse(self):
        vol = volname.LVM.parse("vm-100-disk-0")
        assert vol == Volume("images", "vm-100-disk-0", "100", format="raw")
        assert volname.LVM.encode(vol) == "vm-100-disk-0"

    def test_parse_qcow2(self):
        vol = volname.LVM.parse("vm-100-disk-0.qcow2")
        assert vol.format == "qcow2"

    @pytest.mark.parametrize("name", [
        "base-100-disk-0",
        "vm-100-disk 0",
        "-vm-100-disk-0",
    ])
    def test_parse_invalid(self, name):
        with pytest.raises(se.StorageException):
            volname.LVM.parse(name)

    def test_thin_base(self):
        vol = volname.LVMTHIN.parse("base-100-disk-0")
        assert vol.isbase
        assert vol.vmid == "100"
        assert volname.LVMTHIN.encode(vol) == "base-100-disk-0"


class TestRbdGrammar:

    def test_parse_clone(self):
        name = "base-100-disk-0/vm-101-disk-0"
        vol = volname.RBD.parse(name)
        assert vol == Volume("images", "vm-101-disk-0", "101",
                             "base-100-disk-0", "100", False, "raw")
        assert volname.RBD.encode(vol) == name

    def test_parse_invalid(self):
        with pytest.raises(se.ParseError):
            volname.RBD.parse("subvol-100-disk-0")


class TestIscsiGrammar:

    def test_parse(self):
        name = "0.0.1.scsi-36001405abcdef"
        vol = volname.ISCSI.parse(name)
        assert vol.name == name
        assert vol.vmid is None
        assert volname.ISCSI.encode(vol) == name
        assert volname.lun_device_id(name) == "scsi-36001405abcdef"

    def test_parse_invalid(self):
        with pytest.raises(se.ParseError):
            volname.ISCSI.parse("vm-100-disk-0")

    def test_lun_device_id_invalid(self):
        with pytest.raises(se.InvalidName):
            volname.lun_device_id("lun-1")


class TestPbsGrammar:

    def test_parse(self):
        name = "backup/vm/100/2021-03-01T10:00:00Z"
        vol = volname.PBS.parse(name)
        assert vol.vtype == "backup"
        assert vol.name == "vm/100/2021-03-01T10:00:00Z"
        assert vol.vmid == "100"
        assert vol.format == "pbs-vm"
        assert volname.PBS.encode(vol) == name

    def test_parse_host(self):
        vol = volname.PBS.parse("backup/host/myhost/2021-03-01T10:00:00Z")
        assert vol.vmid is None
        assert vol.format == "pbs-host"

    def test_parse_invalid(self):
        with pytest.raises(se.ParseError):
            volname.PBS.parse("backup/vm/100/yesterday")


class TestFindFreeDiskName:

    def test_empty(self):
        assert volname.find_free_disk_name([], "100") == "vm-100-disk-1"

    def test_lowest_unused(self):
        existing = ["vm-100-disk-1", "vm-100-disk-3", "base-100-disk-2"]
        assert volname.find_free_disk_name(existing, "100") == \
            "vm-100-disk-4"

    def test_gap(self):
        existing = ["vm-100-disk-1", "vm-100-disk-3"]
        assert volname.find_free_disk_name(existing, "100") == \
            "vm-100-disk-2"

    def test_other_guests_ignored(self):
        existing = ["vm-1000-disk-1", "vm-10-disk-1", "vm-100-disk-1"]
        assert volname.find_free_disk_name(existing, "100") == \
            "vm-100-disk-2"

    def test_clone_names(self):
        existing = ["base-200-disk-1/vm-100-disk-1"]
        assert volname.find_free_disk_name(existing, "100") == \
            "vm-100-disk-2"

    def test_extension_ignored(self):
        existing = ["vm-100-disk-1.raw", "vm-100-disk-2.qcow2"]
        name = volname.find_free_disk_name(
            existing, "100", fmt="qcow2", add_fmt_suffix=True)
        assert name == "vm-100-disk-3.qcow2"

    def test_subvol(self):
        name = volname.find_free_disk_name([], "100", fmt="subvol")
        assert name == "subvol-100-disk-1"

    def test_no_free_slot(self):
        existing = ["vm-100-disk-%d" % i for i in range(1, 100)]
        with pytest.raises(se.NoFreeSlot):
            volname.find_free_disk_name(existing, "100")


class TestValidateDiskName:

    def test_valid(self):
        volname.validate_disk_name("100", "vm-100-disk-1.qcow2", "qcow2")

    def test_wrong_owner(self):
        with pytest.raises(se.InvalidName):
            volname.validate_disk_name("100", "vm-101-disk-1.raw", "raw")

    def test_wrong_extension(self):
        with pytest.raises(se.InvalidName):
            volname.validate_disk_name("100", "vm-100-disk-1.raw", "qcow2")


class TestArchiveInfo:

    def test_std_name(self):
        info = volname.archive_info(
            "/dump/vzdump-qemu-100-2020_01_01-11_18_00.vma.zst")
        expected = int(time.mktime((2020, 1, 1, 11, 18, 0, 0, 0, -1)))
        assert info == {
            "filename": "vzdump-qemu-100-2020_01_01-11_18_00.vma.zst",
            "type": "qemu",
            "format": "vma",
            "compression": "zst",
            "is_std_name": True,
            "vmid": 100,
            "ctime": expected,
            "logfilename": "vzdump-qemu-100-2020_01_01-11_18_00.log",
            "notesfilename":
                "vzdump-qemu-100-2020_01_01-11_18_00.vma.zst.notes",
        }

    def test_tgz(self):
        info = volname.archive_info(
            "vzdump-lxc-101-2021_05_01-00_00_00.tgz")
        assert info["format"] == "tar"
        assert info["compression"] == "gz"
        assert info["type"] == "lxc"

    def test_uncompressed(self):
        info = volname.archive_info(
            "vzdump-lxc-101-2021_05_01-00_00_00.tar")
        assert info["format"] == "tar"
        assert info["compression"] is None

    def test_non_std_name(self):
        info = volname.archive_info("vzdump-qemu-my-backup.vma")
        assert not info["is_std_name"]
        assert "vmid" not in info
        assert "ctime" not in info

    @pytest.mark.parametrize("name", [
        "backup.vma",
        "vzdump-qemu-100-2020_01_01-11_18_00.zip",
        "vzdump-kvm-100-2020_01_01-11_18_00.vma",
    ])
    def test_invalid(self, name):
        with pytest.raises(se.ParseError):
            volname.archive_info(name)
