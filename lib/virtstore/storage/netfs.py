# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Network file system storages.

These storages are directory storages mounted from a remote server when the
storage is activated. The mount point defaults to <mount_base>/<storeid>.
"""

import logging
import os
import re
import socket

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.storage import constants as sc
from virtstore.storage import dirplugin
from virtstore.storage import exception as se
from virtstore.storage import mount
from virtstore.storage import plugin

log = logging.getLogger("storage.netfs")

CIFS_CREDENTIALS_DIR = "/etc/pve/priv/storage"
CEPH_SECRETS_DIR = "/etc/pve/priv/ceph"

# Timeout for server availability checks.
CONNECTION_TIMEOUT = 10


def _server_address(server):
    # IPv6 addresses must be bracketed in mount sources.
    if ":" in server and not server.startswith("["):
        return "[%s]" % server
    return server


def tcp_ping(host, port, timeout):
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as e:
        log.debug("Cannot connect to %s port %s: %s", host, port, e)
        return False


class NetworkFSPlugin(dirplugin.BackupAttributes, plugin.Plugin):

    content = frozenset(sc.CONTENT_TYPES)
    default_content = frozenset((sc.CONTENT_IMAGES,))
    formats = frozenset(sc.FILE_FORMATS) - {sc.FORMAT_SUBVOL}
    default_format = sc.FORMAT_RAW
    feature_table = "dir"

    # File system type passed to mount.
    vfstype = None

    def check_config(self, storeid, opts, create):
        if create and not opts.get("path"):
            opts["path"] = os.path.join(sc.MOUNT_BASE, storeid)
        return opts

    def source(self, storeid, scfg):
        raise NotImplementedError

    def mount_options(self, storeid, scfg):
        return scfg.get("options")

    def mount_vfstype(self, scfg):
        return self.vfstype

    def _matches(self, record, storeid, scfg):
        source = self.source(storeid, scfg).rstrip("/")
        return (record.fs_vfstype.startswith(self.vfstype) and
                record.fs_spec.rstrip("/") == source and
                record.fs_file == os.path.normpath(scfg["path"]))

    def is_mounted(self, storeid, scfg, mounts=None):
        if mounts is None:
            mounts = mount.iter_mounts()
        return any(self._matches(rec, storeid, scfg) for rec in mounts)

    def status(self, storeid, scfg, cache=None):
        if not self.is_mounted(storeid, scfg, dirplugin._mounts(cache)):
            return None
        return super().status(storeid, scfg, cache)

    def activate_storage(self, storeid, scfg, cache=None):
        path = scfg["path"]
        if not self.is_mounted(storeid, scfg, dirplugin._mounts(cache)):
            # Creating the mount point of a mounted hung file system blocks.
            dirplugin.create_base_path(scfg, path)
            if not os.path.isdir(path):
                raise se.StorageNotActive(
                    "unable to activate storage %s - directory %s does not "
                    "exist" % (storeid, path))
            m = mount.Mount(self.source(storeid, scfg), path)
            m.mount(mntOpts=self.mount_options(storeid, scfg),
                    vfstype=self.mount_vfstype(scfg))
            if cache is not None:
                cache.pop("mountdata", None)

        super().activate_storage(storeid, scfg, cache)

    def deactivate_storage(self, storeid, scfg, cache=None):
        if self.is_mounted(storeid, scfg, dirplugin._mounts(cache)):
            mount.Mount(self.source(storeid, scfg), scfg["path"]).umount()
            if cache is not None:
                cache.pop("mountdata", None)

    def _check_command(self, cmd):
        try:
            commands.run(cmd, timeout=CONNECTION_TIMEOUT)
        except (cmdutils.Error, cmdutils.TimeoutExpired, OSError) as e:
            log.debug("Connection check failed: %s", e)
            return False
        return True


@plugin.register
class NFSPlugin(NetworkFSPlugin):

    log = logging.getLogger("storage.NFSPlugin")

    type = "nfs"
    vfstype = "nfs"

    options = dict(dirplugin.PATH_OPTIONS, **{
        "server": {"fixed": True},
        "export": {"fixed": True},
        "options": {"optional": True},
    })

    def source(self, storeid, scfg):
        return "%s:%s" % (_server_address(scfg["server"]), scfg["export"])

    def check_connection(self, storeid, scfg):
        server = scfg["server"]
        opts = scfg.get("options") or ""
        if re.search(r"vers=4", opts):
            # NFSv4 servers do not list exports.
            if self._check_command(["rpcinfo", "-T", "tcp", server, "nfs",
                                    "4"]):
                return True
            m = re.search(r"port=(\d+)", opts)
            port = int(m.group(1)) if m else 2049
            if port == 0:
                return False
            return tcp_ping(server, port, 2)

        return self._check_command(
            ["showmount", "--no-headers", "--exports", server])


@plugin.register
class CIFSPlugin(NetworkFSPlugin):

    log = logging.getLogger("storage.CIFSPlugin")

    type = "cifs"
    vfstype = "cifs"

    options = dict(dirplugin.PATH_OPTIONS, **{
        "server": {"fixed": True},
        "share": {"fixed": True},
        "subdir": {"optional": True},
        "username": {"optional": True},
        "domain": {"optional": True},
        "smbversion": {"optional": True},
        "options": {"optional": True},
    })

    credentials_dir = CIFS_CREDENTIALS_DIR

    def credentials_file(self, storeid):
        return os.path.join(self.credentials_dir, "%s.pw" % storeid)

    def set_credentials(self, storeid, password):
        os.makedirs(self.credentials_dir, exist_ok=True)
        path = self.credentials_file(storeid)
        plugin.write_file(path, ("password=%s\n" % password).encode("utf-8"))
        return path

    def delete_credentials(self, storeid):
        try:
            os.unlink(self.credentials_file(storeid))
        except FileNotFoundError:
            pass
        except OSError as e:
            self.log.warning("Removing cifs credentials for %s failed: %s",
                             storeid, e)

    def on_add_hook(self, storeid, scfg, **params):
        password = params.get("password")
        if password is None:
            self.delete_credentials(storeid)
            return
        self.set_credentials(storeid, password)
        if "username" not in scfg:
            self.log.warning("storage %s: ignoring password parameter, no "
                             "user set", storeid)

    def on_update_hook(self, storeid, scfg, **params):
        if "password" in params:
            self.on_add_hook(storeid, scfg, **params)

    def on_delete_hook(self, storeid, scfg):
        self.delete_credentials(storeid)

    def source(self, storeid, scfg):
        return "//%s/%s%s" % (_server_address(scfg["server"]), scfg["share"],
                              scfg.get("subdir", ""))

    def mount_options(self, storeid, scfg):
        opts = ["soft"]
        cred_file = self.credentials_file(storeid)
        if os.path.exists(cred_file):
            opts.append("username=%s" % scfg.get("username", ""))
            opts.append("credentials=%s" % cred_file)
            if scfg.get("domain"):
                opts.append("domain=%s" % scfg["domain"])
        else:
            opts.append("guest,username=guest")
        opts.append("vers=%s" % scfg.get("smbversion", "default"))
        if scfg.get("options"):
            opts.append(scfg["options"])
        return ",".join(opts)

    def check_connection(self, storeid, scfg):
        cmd = ["smbclient", "-d", "0", "-m", "smb3", "-L", scfg["server"]]
        cred_file = self.credentials_file(storeid)
        if os.path.exists(cred_file):
            cmd.extend(("-U", scfg.get("username", ""), "-A", cred_file))
        else:
            cmd.append("-N")
        return self._check_command(cmd)


@plugin.register
class GlusterfsPlugin(NetworkFSPlugin):

    log = logging.getLogger("storage.GlusterfsPlugin")

    type = "glusterfs"
    vfstype = "fuse.glusterfs"

    content = frozenset((sc.CONTENT_IMAGES, sc.CONTENT_VZTMPL,
                         sc.CONTENT_ISO, sc.CONTENT_BACKUP,
                         sc.CONTENT_SNIPPETS))

    options = dict(dirplugin.PATH_OPTIONS, **{
        "server": {"optional": True},
        "server2": {"optional": True},
        "volume": {"fixed": True},
        "transport": {"optional": True},
    })

    GLUSTERD_PORT = 24007

    def source(self, storeid, scfg):
        server = scfg.get("server", "localhost")
        return "%s:%s" % (_server_address(server), scfg["volume"])

    def mount_options(self, storeid, scfg):
        opts = []
        if scfg.get("server2"):
            opts.append("backupvolfile-server=%s" % scfg["server2"])
        if scfg.get("transport") == "rdma":
            opts.append("transport=rdma")
        return ",".join(opts) or None

    def check_connection(self, storeid, scfg):
        return tcp_ping(scfg.get("server", "localhost"), self.GLUSTERD_PORT,
                        2)


@plugin.register
class CephFSPlugin(NetworkFSPlugin):

    log = logging.getLogger("storage.CephFSPlugin")

    type = "cephfs"
    vfstype = "ceph"

    content = frozenset((sc.CONTENT_VZTMPL, sc.CONTENT_ISO,
                         sc.CONTENT_BACKUP, sc.CONTENT_SNIPPETS))
    default_content = frozenset((sc.CONTENT_BACKUP,))

    options = dict(dirplugin.PATH_OPTIONS, **{
        "monhost": {"optional": True},
        "subdir": {"optional": True},
        "username": {"optional": True},
        "keyring": {"optional": True},
        "fuse": {"optional": True},
        "fs-name": {"optional": True},
        "options": {"optional": True},
    })

    secrets_dir = CEPH_SECRETS_DIR

    def secret_file(self, storeid):
        return os.path.join(self.secrets_dir, "%s.secret" % storeid)

    def _fuse(self, scfg):
        return bool(plugin.parse_boolean(scfg.get("fuse", False)))

    def _matches(self, record, storeid, scfg):
        if record.fs_file != os.path.normpath(scfg["path"]):
            return False
        if self._fuse(scfg):
            return record.fs_vfstype == "fuse.ceph-fuse"
        subdir = scfg.get("subdir", "/")
        return (record.fs_vfstype == "ceph" and
                record.fs_spec.endswith(":" + subdir))

    def source(self, storeid, scfg):
        monhost = scfg.get("monhost", "")
        servers = ",".join(_server_address(h)
                           for h in re.split(r"[\s,;]+", monhost) if h)
        return "%s:%s" % (servers, scfg.get("subdir", "/"))

    def mount_options(self, storeid, scfg):
        user = scfg.get("username", "admin")
        secret = self.secret_file(storeid)
        fs_name = scfg.get("fs-name")
        if self._fuse(scfg):
            opts = ["ceph.id=%s" % user]
            if os.path.exists(secret):
                opts.append("ceph.keyfile=%s" % secret)
            if fs_name:
                opts.append("ceph.client_fs=%s" % fs_name)
        else:
            opts = ["name=%s" % user]
            if os.path.exists(secret):
                opts.append("secretfile=%s" % secret)
            if fs_name:
                opts.append("fs=%s" % fs_name)
        if scfg.get("options"):
            opts.append(scfg["options"])
        return ",".join(opts)

    def mount_vfstype(self, scfg):
        return "fuse.ceph" if self._fuse(scfg) else "ceph"
