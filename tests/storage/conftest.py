# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Common fixtures that can be used without importing anything.
"""

import os
import stat

import pytest

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.storage import constants as sc
from virtstore.storage import plugin
from virtstore.storage import qemuimg

from storagefakelib import FakeCommands
from storagefakelib import FakeVolumeTool


@pytest.fixture
def lock_dir(tmpdir, monkeypatch):
    """
    Use a temporary directory for storage lock files.
    """
    path = str(tmpdir.mkdir("locks"))
    monkeypatch.setattr(sc, "LOCK_DIR", path)
    return path


@pytest.fixture
def dir_storage(tmpdir):
    """
    Configuration of a directory storage in a temporary directory.
    """
    path = str(tmpdir.mkdir("storage"))
    return {
        "type": "dir",
        "path": path,
        "content": frozenset(sc.CONTENT_TYPES),
    }


@pytest.fixture
def fake_qemuimg(monkeypatch):
    """
    Replace qemuimg.create with a fake creating a small file, and record the
    created images.
    """
    created = []

    def create(path, size=None, format=None, preallocation=None,
               backing=None, backingFormat=None, **kw):
        created.append({
            "path": path,
            "size": size,
            "format": format,
            "preallocation": preallocation,
            "backing": backing,
            "backingFormat": backingFormat,
        })
        with open(path, "w") as f:
            f.write(backing or "")

    monkeypatch.setattr(qemuimg, "create", create)
    return created


@pytest.fixture
def fake_tool(monkeypatch):
    """
    Return a function patching a tool plugin class to use one
    FakeVolumeTool for all operations.
    """
    def patch(plugin_class, **kw):
        tool = FakeVolumeTool(**kw)
        monkeypatch.setattr(
            plugin_class, "tool", lambda self, storeid, scfg: tool)
        return tool

    return patch


@pytest.fixture
def fake_file_info(monkeypatch):
    """
    Report image files as raw images with their apparent size, without
    running qemu-img. Files created by fake_qemuimg contain the backing file
    name, reported as parent.
    """
    def file_size_info(path, timeout=None, format=None):
        st = os.stat(path)
        if stat.S_ISDIR(st.st_mode):
            return plugin.SizeInfo(0, "subvol", 0, None, int(st.st_mtime))
        with open(path, errors="replace") as f:
            backing = f.read(256)
        parent = backing if backing.startswith("../") else None
        return plugin.SizeInfo(st.st_size, format or "raw", st.st_size,
                               parent, int(st.st_mtime))

    monkeypatch.setattr(plugin, "file_size_info", file_size_info)


@pytest.fixture
def fake_commands(monkeypatch):
    """
    Replace commands.run with a FakeCommands instance. Commands are run by
    name, so tests do not depend on installed tools.
    """
    fake = FakeCommands()
    monkeypatch.setattr(commands, "run", fake.run)
    monkeypatch.setattr(cmdutils.CommandPath, "cmd",
                        property(lambda self: self.name))
    return fake
