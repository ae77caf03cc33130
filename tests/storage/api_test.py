# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

import io
import os
import threading

import pytest

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.common.config import config
from virtstore.storage import api
from virtstore.storage import clusterlock
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import plugin
from virtstore.storage import prune
from virtstore.storage import schema
from virtstore.storage import streams

OLD_BACKUP = "vzdump-qemu-100-2021_03_01-10_00_00.vma.zst"
NEW_BACKUP = "vzdump-qemu-100-2021_03_02-10_00_00.vma.zst"


def touch(path, data=b""):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


@pytest.fixture
def cfg(dir_storage, lock_dir):
    return schema.Configuration({"local": dir_storage})


@pytest.fixture
def local(cfg):
    return cfg["local"]


@pytest.fixture
def statfs(fake_commands):
    # 4 KiB blocks: 1000 total, 600 free, 500 available.
    fake_commands.on("stat", out=b"4096 1000 600 500\n")
    return fake_commands


class TestStorageInfo:

    def test_active(self, cfg, statfs):
        info = api.storage_info(cfg)["local"]
        assert info["active"]
        assert info["enabled"]
        assert info["type"] == "dir"
        assert info["total"] == 4096 * 1000
        assert info["avail"] == 4096 * 500
        assert info["used"] == 4096 * 400

    def test_disabled(self, cfg, local, statfs):
        local["disable"] = True
        info = api.storage_info(cfg)["local"]
        assert not info["enabled"]
        assert not info["active"]
        assert info["total"] == 0
        assert statfs.calls == []

    def test_other_node(self, cfg, local, statfs):
        local["nodes"] = frozenset(["node-that-does-not-exist"])
        assert api.storage_info(cfg) == {}

    def test_content(self, cfg, local, statfs):
        local["content"] = frozenset([sc.CONTENT_ISO])
        assert api.storage_info(cfg, content=sc.CONTENT_IMAGES) == {}
        assert "local" in api.storage_info(cfg, content=sc.CONTENT_ISO)

    def test_not_mounted(self, cfg, local, statfs):
        local["is_mountpoint"] = "/mnt/not-mounted-here"
        info = api.storage_info(cfg)["local"]
        assert info["enabled"]
        assert not info["active"]


class TestActivate:

    def test_activate_creates_subdirs(self, cfg, local):
        api.activate_storage(cfg, "local")
        assert os.path.isdir(os.path.join(local["path"], "images"))
        assert os.path.isdir(os.path.join(local["path"], "dump"))

    def test_activate_disabled(self, cfg, local):
        local["disable"] = True
        with pytest.raises(se.StorageDisabled):
            api.activate_storage(cfg, "local")

    def test_activate_missing(self, cfg):
        with pytest.raises(se.NotFound):
            api.activate_storage(cfg, "missing")


class TestImages:

    def test_alloc(self, cfg, local, fake_qemuimg):
        volid = api.vdisk_alloc(cfg, "local", 100, None, None, 1024)
        assert volid == "local:100/vm-100-disk-1.raw"
        assert fake_qemuimg[0]["format"] == "raw"

    def test_alloc_default_format(self, cfg, local, fake_qemuimg):
        local["format"] = "qcow2"
        volid = api.vdisk_alloc(cfg, "local", "100", None, None, 1024)
        assert volid == "local:100/vm-100-disk-1.qcow2"

    def test_alloc_concurrent(self, cfg, local, fake_qemuimg):
        results = []

        def alloc():
            results.append(
                api.vdisk_alloc(cfg, "local", "100", "raw", None, 1024))

        threads = [threading.Thread(target=alloc) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(results) == [
            "local:100/vm-100-disk-%d.raw" % i for i in range(1, 5)]

    def test_alloc_disabled(self, cfg, local, fake_qemuimg):
        local["disable"] = True
        with pytest.raises(se.StorageDisabled):
            api.vdisk_alloc(cfg, "local", "100", "raw", None, 1024)

    def test_free(self, cfg, local, fake_qemuimg):
        volid = api.vdisk_alloc(cfg, "local", "100", "raw", None, 1024)
        path, _, _ = api.path(cfg, volid)
        api.vdisk_free(cfg, volid)
        assert not os.path.exists(path)

    def test_free_base_in_use(self, cfg, local, fake_file_info,
                              fake_commands):
        images = os.path.join(local["path"], "images")
        touch(os.path.join(images, "100", "base-100-disk-1.raw"))
        touch(os.path.join(images, "101", "vm-101-disk-1.qcow2"),
              b"../100/base-100-disk-1.raw")
        with pytest.raises(se.VolumeProtected):
            api.vdisk_free(cfg, "local:100/base-100-disk-1.raw")

    def test_free_base_unused(self, cfg, local, fake_file_info,
                              fake_commands):
        path = os.path.join(local["path"], "images", "100",
                            "base-100-disk-1.raw")
        touch(path)
        api.vdisk_free(cfg, "local:100/base-100-disk-1.raw")
        assert not os.path.exists(path)
        assert fake_commands.called("chattr", "-i", path)

    def test_create_base(self, cfg, local, fake_file_info, fake_commands):
        touch(os.path.join(local["path"], "images", "100",
                           "vm-100-disk-1.raw"))
        volid = api.vdisk_create_base(cfg, "local:100/vm-100-disk-1.raw")
        assert volid == "local:100/base-100-disk-1.raw"

    def test_clone(self, cfg, local, fake_qemuimg, fake_file_info):
        touch(os.path.join(local["path"], "images", "100",
                           "base-100-disk-1.raw"))
        volid = api.vdisk_clone(cfg, "local:100/base-100-disk-1.raw", 101)
        assert volid == \
            "local:100/base-100-disk-1.raw/101/vm-101-disk-1.qcow2"

    def test_path(self, cfg, local):
        path, vmid, vtype = api.path(cfg, "local:100/vm-100-disk-1.raw")
        assert path == os.path.join(local["path"], "images", "100",
                                    "vm-100-disk-1.raw")
        assert vmid == "100"
        assert vtype == sc.CONTENT_IMAGES

    def test_invalid_volid(self, cfg):
        with pytest.raises(se.InvalidName):
            api.path(cfg, "no-storage-id")

    def test_vdisk_list(self, cfg, local, fake_qemuimg, fake_file_info):
        api.vdisk_alloc(cfg, "local", "100", "raw", None, 1024)
        api.vdisk_alloc(cfg, "local", "101", "raw", None, 1024)
        res = api.vdisk_list(cfg, vmid="101")
        assert [i["volid"] for i in res["local"]] == [
            "local:101/vm-101-disk-1.raw"]

    def test_vdisk_list_vmid_and_vollist(self, cfg):
        with pytest.raises(ValueError):
            api.vdisk_list(cfg, vmid="100", vollist=[])

    def test_volume_list_content(self, cfg, local):
        local["content"] = frozenset([sc.CONTENT_ISO])
        assert api.volume_list(cfg, "local",
                               content=sc.CONTENT_BACKUP) == []


class TestVolumeActivation:

    def test_activate(self, cfg, local):
        touch(os.path.join(local["path"], "images", "100",
                           "vm-100-disk-1.raw"))
        api.activate_volumes(cfg, ["local:100/vm-100-disk-1.raw"])

    def test_activate_missing(self, cfg):
        with pytest.raises(se.NotFound):
            api.activate_volumes(cfg, ["local:100/vm-100-disk-1.raw"])

    def test_deactivate_tries_all(self, cfg, monkeypatch):
        calls = []

        def deactivate_volume(self, storeid, scfg, name, snapname=None,
                              cache=None):
            calls.append(name)
            if name.endswith("disk-1.raw"):
                raise se.StorageException("device busy")

        monkeypatch.setattr(plugin.lookup("dir"), "deactivate_volume",
                            deactivate_volume)
        with pytest.raises(se.StorageException) as e:
            api.deactivate_volumes(cfg, ["local:100/vm-100-disk-1.raw",
                                         "local:100/vm-100-disk-2.raw"])
        assert calls == ["100/vm-100-disk-1.raw", "100/vm-100-disk-2.raw"]
        assert "local:100/vm-100-disk-1.raw" in str(e.value)
        assert "disk-2" not in str(e.value)


class TestErrors:

    def test_tool_failure(self, cfg, monkeypatch):
        def file_size_info(path, timeout=None, format=None):
            raise cmdutils.Error(["qemu-img", "info", path], 1, b"",
                                 b"cannot open\n")

        monkeypatch.setattr(plugin, "file_size_info", file_size_info)
        with pytest.raises(se.BackendToolFailure) as e:
            api.volume_size_info(cfg, "local:100/vm-100-disk-1.raw")
        assert e.value.rc == 1
        assert "cannot open" in e.value.value

    def test_timeout(self, cfg, monkeypatch):
        def file_size_info(path, timeout=None, format=None):
            raise cmdutils.TimeoutExpired(42)

        monkeypatch.setattr(plugin, "file_size_info", file_size_info)
        with pytest.raises(se.Timeout):
            api.volume_size_info(cfg, "local:100/vm-100-disk-1.raw")


class TestTransfer:

    def test_transfer_formats(self, cfg):
        assert api.volume_transfer_formats(
            cfg, "local:100/vm-100-disk-1.qcow2",
            "local:101/vm-101-disk-1.raw") == [streams.RAW_SIZE]

    def test_transfer_formats_snapshots(self, cfg):
        assert api.volume_transfer_formats(
            cfg, "local:100/vm-100-disk-1.qcow2",
            "local:101/vm-101-disk-1.qcow2",
            with_snapshots=True) == ["qcow2+size"]

    def test_import_listen(self, monkeypatch):
        calls = []

        def listen(address, port_min, port_max):
            calls.append((address, port_min, port_max))
            return None, port_min

        monkeypatch.setattr(streams, "listen", listen)
        assert api.import_listen("10.0.0.1") == (None, 60000)
        assert calls == [("10.0.0.1", 60000, 60050)]


class TestImport:

    VOLID = "local:100/vm-100-disk-1.raw"

    @pytest.fixture
    def stream(self, tmpdir):
        path = tmpdir.join("stream")
        path.write_binary(streams.encode_header(1024) + b"\0" * 1024)
        with open(str(path), "rb") as f:
            yield f

    def test_allocate_while_copying(self, cfg, fake_qemuimg, stream,
                                    monkeypatch):
        allocated = []

        def import_file(fh, path, data_format, size=None):
            lock = clusterlock.LocalLock("local")
            lock.acquire(0)
            lock.release()
            allocated.append(
                api.vdisk_alloc(cfg, "local", "200", "raw", None, 1024))

        monkeypatch.setattr(streams, "import_file", import_file)
        volid = api.volume_import(cfg, stream, self.VOLID, streams.RAW_SIZE)
        assert volid == self.VOLID
        assert allocated == ["local:200/vm-200-disk-1.raw"]

    def test_remove_after_failure(self, cfg, fake_qemuimg, stream,
                                  monkeypatch):
        def import_file(fh, path, data_format, size=None):
            raise se.StreamFormatError("stream truncated")

        monkeypatch.setattr(streams, "import_file", import_file)
        with pytest.raises(se.StreamFormatError):
            api.volume_import(cfg, stream, self.VOLID, streams.RAW_SIZE)
        path, _, _ = api.path(cfg, self.VOLID)
        assert not os.path.exists(path)

    def test_existing(self, cfg, fake_qemuimg, stream):
        api.vdisk_alloc(cfg, "local", "100", "raw", None, 1024)
        with pytest.raises(se.AlreadyExists):
            api.volume_import(cfg, stream, self.VOLID, streams.RAW_SIZE)


class TestPathToVolumeId:

    @pytest.fixture
    def volumes(self, local):
        def create(relpath):
            path = os.path.join(local["path"], relpath)
            if relpath.endswith("/"):
                os.makedirs(path)
            else:
                touch(path)
            return path
        return create

    @pytest.mark.parametrize("relpath,vtype,volname", [
        ("images/16110/vm-16110-disk-0.qcow2", "images",
         "16110/vm-16110-disk-0.qcow2"),
        ("images/16112/vm-16112-disk-0.raw", "images",
         "16112/vm-16112-disk-0.raw"),
        ("images/9004/base-9004-disk-0.qcow2", "images",
         "9004/base-9004-disk-0.qcow2"),
        ("images/1234/subvol-1234-disk-0.subvol/", "images",
         "1234/subvol-1234-disk-0.subvol"),
        ("dump/vzdump-qemu-16110-2020_03_30-21_11_40.vma.gz", "backup",
         "backup/vzdump-qemu-16110-2020_03_30-21_11_40.vma.gz"),
        ("dump/vzdump-qemu-16110-2020_03_30-21_13_55.vma", "backup",
         "backup/vzdump-qemu-16110-2020_03_30-21_13_55.vma"),
        ("dump/vzdump-lxc-16112-2020_03_30-21_39_30.tar.lzo", "backup",
         "backup/vzdump-lxc-16112-2020_03_30-21_39_30.tar.lzo"),
        ("template/iso/installation-disk.iso", "iso",
         "iso/installation-disk.iso"),
        ("template/cache/debian-10.0-standard_10.0-1_amd64.tar.gz",
         "vztmpl", "vztmpl/debian-10.0-standard_10.0-1_amd64.tar.gz"),
        ("template/cache/debian-10.0-standard_10.0-1_amd64.tar.xz",
         "vztmpl", "vztmpl/debian-10.0-standard_10.0-1_amd64.tar.xz"),
        ("private/1234/", "rootdir", "rootdir/1234"),
        ("snippets/userconfig.yaml", "snippets",
         "snippets/userconfig.yaml"),
    ])
    def test_found(self, cfg, volumes, fake_file_info, relpath, vtype,
                   volname):
        path = volumes(relpath)
        assert api.path_to_volume_id(cfg, path) == \
            (vtype, "local:" + volname)

    @pytest.mark.parametrize("relpath", [
        "images/ssss/base-4321-disk-0.raw",
        "images/ssss/vm-1234-disk-0.qcow2",
        "template/iso/installation-disk.dvd",
        "template/cache/debian-10.0-standard_10.0-1_amd64.zip.gz",
        "private/subvol-19254-disk-0/",
        "dump/vzdump-openvz-16112-2020_03_30-21_39_30.zip.gz",
        "dump/vzdump-openvz-16112-2020_03_30-21_39_30.tgz.lzo",
        "dump/vzdump-qemu-16110-2020_03_30-21_12_40.vma.xz",
        "dump/vzdump-qemu-16110-2020_03_30-21_12_40.vms.gz",
    ])
    def test_not_found(self, cfg, volumes, fake_file_info, relpath):
        path = volumes(relpath)
        assert api.path_to_volume_id(cfg, path) is None

    def test_outside_storage(self, cfg, tmpdir):
        path = str(tmpdir.join("vm-100-disk-1.raw"))
        assert api.path_to_volume_id(cfg, path) is None

    def test_linked_clone(self, cfg, fake_qemuimg, fake_file_info,
                          fake_commands):
        base = api.vdisk_alloc(cfg, "local", "100", "qcow2", None, 1024)
        base = api.vdisk_create_base(cfg, base)
        clone = api.vdisk_clone(cfg, base, "101")
        path, _, _ = api.path(cfg, clone)
        assert api.path_to_volume_id(cfg, path) == ("images", clone)

    def test_volume_id(self, cfg):
        volid = "local:iso/installation-disk.iso"
        assert api.path_to_volume_id(cfg, volid) == ("iso", volid)

    def test_volume_id_without_path(self, cfg):
        cfg.add("rbd1", {"type": "rbd", "pool": "rbd",
                         "content": frozenset((sc.CONTENT_IMAGES,))})
        assert api.path_to_volume_id(cfg, "rbd1:vm-100-disk-1") is None


class TestBandwidthLimit:

    GLOBAL = {"default": 100, "move": 80, "restore": 60}

    @pytest.fixture
    def limits_cfg(self):
        storages = {
            "nolimit": None,
            "d50": "default=50",
            "d50m40r30": "default=50,move=40,restore=30",
            "d20m40r30": "default=20,move=40,restore=30",
            "d200m400r300": "default=200,move=400,restore=300",
            "d10": "default=10",
            "m50": "move=50",
            "d200": "default=200",
        }
        cfg = schema.Configuration()
        for storeid, raw in storages.items():
            scfg = {"type": "dir", "path": "/dir/" + storeid}
            if raw is not None:
                scfg["bwlimit"] = schema.decode_bwlimit(raw)
            cfg.add(storeid, scfg)
        return cfg

    @pytest.mark.parametrize("operation,storeids,override,limit", [
        # Global limits.
        ("unknown", ["nolimit"], None, 100),
        ("move", ["nolimit"], None, 80),
        ("restore", ["nolimit"], None, 60),
        ("unknown", [], None, 100),
        ("unknown", [None], None, 100),
        # Storage limits replace the global limits.
        ("unknown", ["d50m40r30"], None, 50),
        ("move", ["d50m40r30"], None, 40),
        ("restore", ["d50m40r30"], None, 30),
        ("unknown", ["d200m400r300"], None, 200),
        ("move", ["d200m400r300"], None, 400),
        ("restore", ["d50"], None, 50),
        # The lowest limit wins.
        ("unknown", ["d50m40r30", "d20m40r30"], None, 20),
        ("move", ["d10", "d20m40r30"], None, 10),
        ("restore", ["d10", "d10"], None, 10),
        ("unknown", ["nolimit", "d200"], None, 100),
        ("restore", ["d20m40r30", "m50"], None, 30),
        ("move", ["d50m40r30", "m50"], None, 40),
        # Overrides are limited too.
        ("restore", ["d10", "d20m40r30"], 5, 5),
        ("restore", ["d200", "d200m400r300"], 65, 65),
        ("restore", ["d200", "d200m400r300"], 400, 200),
        ("restore", ["d200", "d200m400r300"], 0, 200),
        ("restore", ["d200", "d200m400r300"], 1, 1),
        ("unknown", ["nolimit"], 10, 10),
        ("unknown", ["nolimit"], 0, 100),
        ("unknown", ["nolimit"], 500, 100),
    ])
    def test_limit(self, limits_cfg, operation, storeids, override, limit):
        assert api.get_bandwidth_limit(
            limits_cfg, operation, storeids, override=override,
            global_limits=self.GLOBAL) == limit

    def test_no_limits(self, limits_cfg):
        assert api.get_bandwidth_limit(
            limits_cfg, "move", ["nolimit"], global_limits={}) is None

    def test_no_limits_override(self, limits_cfg):
        assert api.get_bandwidth_limit(
            limits_cfg, "move", ["nolimit"], override=0,
            global_limits={}) == 0

    def test_global_config(self, limits_cfg, monkeypatch):
        monkeypatch.setitem(config["storage"], "bwlimit",
                            "default=70,clone=35")
        assert api.get_bandwidth_limit(limits_cfg, "clone", ["nolimit"]) == 35
        assert api.get_bandwidth_limit(limits_cfg, "move", ["nolimit"]) == 70

    def test_missing_storage(self, limits_cfg):
        with pytest.raises(se.NotFound):
            api.get_bandwidth_limit(limits_cfg, "move", ["missing"])


class FakeImporter(object):
    """
    Run "virtstore-tool import ... tcp://ADDRESS" in a thread, with the
    target storages in cfg.
    """

    pid = 0

    def __init__(self, cfg, cmd):
        self.cmd = cmd
        _, _, volid, format, _ = cmd[:5]
        self.sock, port = api.import_listen("127.0.0.1")
        self.stdout = io.BytesIO(b"127.0.0.1\n%d\n" % port)
        self.returncode = None
        self.volid = None
        self.error = None
        self.thread = threading.Thread(
            target=self._run, args=(cfg, volid, format))
        self.thread.start()

    def _run(self, cfg, volid, format):
        try:
            client = api.import_accept(self.sock, timeout=10)
            with client, client.makefile("rb", buffering=0) as f:
                try:
                    self.volid = api.volume_import(cfg, f, volid, format)
                finally:
                    # Drain the stream so the exporter does not fail.
                    while f.read(65536):
                        pass
        except Exception as e:
            self.error = e

    def communicate(self):
        self.thread.join()
        if self.error is not None:
            self.returncode = 1
            return b"", str(self.error).encode("utf-8")
        self.returncode = 0
        out = streams.imported_message(self.volid) + "\n"
        return out.encode("utf-8"), b""

    def poll(self):
        return self.returncode

    def kill(self):
        self.sock.close()

    def wait(self):
        self.thread.join()


class TestStorageMigrate:

    DATA = b"x" * 1024 + b"y" * 1024

    @pytest.fixture
    def target(self, cfg, tmpdir):
        cfg.add("target", {
            "type": "dir",
            "path": str(tmpdir.mkdir("target")),
            "content": frozenset((sc.CONTENT_IMAGES,)),
        })
        return cfg["target"]

    @pytest.fixture
    def importers(self, cfg, monkeypatch):
        started = []
        start = commands.start

        def fake_start(cmd, **kw):
            if cmd[0] != "virtstore-tool":
                return start(cmd, **kw)
            importer = FakeImporter(cfg, cmd)
            started.append(importer)
            return importer

        monkeypatch.setattr(commands, "start", fake_start)
        return started

    @pytest.fixture
    def source(self, cfg, local):
        path = os.path.join(local["path"], "images", "100",
                            "vm-100-disk-1.raw")
        touch(path, self.DATA)
        return "local:100/vm-100-disk-1.raw"

    def test_migrate(self, cfg, target, source, importers, fake_qemuimg,
                     fake_file_info):
        volid = api.storage_migrate(cfg, source, "target",
                                    ["virtstore-tool"], "127.0.0.1")

        assert volid == "target:100/vm-100-disk-1.raw"
        assert importers[0].cmd == [
            "virtstore-tool", "import", volid, streams.RAW_SIZE,
            "tcp://127.0.0.1"]
        path, _, _ = api.path(cfg, volid)
        with open(path, "rb") as f:
            assert f.read() == self.DATA

    def test_migrate_options(self, cfg, target, source, importers,
                             fake_qemuimg, fake_file_info):
        api.storage_migrate(cfg, source, "target", ["virtstore-tool"],
                            "127.0.0.1",
                            target_volname="100/vm-100-disk-5.raw",
                            allow_rename=True)
        assert importers[0].cmd == [
            "virtstore-tool", "import", "target:100/vm-100-disk-5.raw",
            streams.RAW_SIZE, "tcp://127.0.0.1", "--allow-rename"]

    def test_import_failed(self, cfg, target, source, importers,
                           fake_qemuimg, fake_file_info):
        api.vdisk_alloc(cfg, "target", "100", "raw", "vm-100-disk-1.raw", 2)
        with pytest.raises(se.BackendToolFailure):
            api.storage_migrate(cfg, source, "target", ["virtstore-tool"],
                                "127.0.0.1")

    def test_shared(self, cfg, local, source, importers):
        local["shared"] = True
        assert api.storage_migrate(cfg, source, "local", ["virtstore-tool"],
                                   "127.0.0.1") == source
        assert importers == []

    def test_no_common_format(self, cfg, target, importers):
        volid = "local:100/vm-100-disk-1.qcow2"
        with pytest.raises(se.UnsupportedOperation):
            api.storage_migrate(cfg, volid, "target", ["virtstore-tool"],
                                "127.0.0.1", with_snapshots=True,
                                target_volname="100/vm-100-disk-1.raw")
        assert importers == []

    def test_target_volname(self, cfg):
        cfg.add("lvm1", {"type": "lvm", "vgname": "vg1",
                         "content": frozenset((sc.CONTENT_IMAGES,))})
        assert api._target_volname(
            cfg, "local:100/vm-100-disk-1.raw", "lvm1") == "vm-100-disk-1"

    def test_target_volname_unsupported_format(self, cfg):
        cfg.add("lvm1", {"type": "lvm", "vgname": "vg1",
                         "content": frozenset((sc.CONTENT_IMAGES,))})
        with pytest.raises(se.UnsupportedOperation):
            api._target_volname(cfg, "local:100/vm-100-disk-1.qcow2", "lvm1")


class TestPruneOptions:

    def test_explicit(self):
        scfg = {"prune-backups": {"keep-last": 5}}
        opts = api.prune_options(scfg, {"keep-daily": 3, "keep-last": 0})
        assert opts == {"keep-daily": 3}

    def test_storage(self):
        scfg = {"prune-backups": {"keep-last": 5}, "maxfiles": 2}
        assert api.prune_options(scfg) == {"keep-last": 5}

    def test_maxfiles(self):
        assert api.prune_options({"maxfiles": 2}) == {"keep-last": 2}

    def test_default(self):
        assert api.prune_options({}) == {"keep-all": 1}


class TestPruneBackups:

    @pytest.fixture
    def backups(self, local):
        dump = os.path.join(local["path"], "dump")
        touch(os.path.join(dump, OLD_BACKUP))
        touch(os.path.join(dump, NEW_BACKUP))
        return dump

    def test_dry_run(self, cfg, backups):
        items = api.prune_backups(cfg, "local", {"keep-last": 1},
                                  dry_run=True)
        marks = {i.volid: i.mark for i in items}
        assert marks == {
            "local:backup/" + NEW_BACKUP: prune.KEEP,
            "local:backup/" + OLD_BACKUP: prune.REMOVE,
        }
        assert os.path.exists(os.path.join(backups, OLD_BACKUP))

    def test_remove(self, cfg, backups):
        api.prune_backups(cfg, "local", {"keep-last": 1})
        assert os.listdir(backups) == [NEW_BACKUP]

    def test_no_backup_content(self, cfg, local):
        local["content"] = frozenset([sc.CONTENT_IMAGES])
        with pytest.raises(se.UnsupportedOperation):
            api.prune_backups(cfg, "local", {"keep-last": 1})
