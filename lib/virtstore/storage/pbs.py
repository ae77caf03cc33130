# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Backup server storage.

Backups are snapshots in a datastore of a backup server, accessed using
proxmox-backup-client. The storage holds only backups; pruning is done by
the server.
"""

import base64
import binascii
import json
import logging
import os
import time

from virtstore.common import cmdutils
from virtstore.common import commands
from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import plugin
from virtstore.storage import prune
from virtstore.storage import volname

log = logging.getLogger("storage.pbs")

_client = cmdutils.CommandPath("proxmox-backup-client",
                               "/usr/bin/proxmox-backup-client")

SECRETS_DIR = "/etc/pve/priv/storage"

DEFAULT_PORT = 8007
DEFAULT_USER = "root@pam"

# Backup types stored for guests.
GUEST_BACKUP_TYPES = ("vm", "ct")


def _secret_path(storeid, ext):
    return os.path.join(SECRETS_DIR, "%s.%s" % (storeid, ext))


def password_file(storeid):
    return _secret_path(storeid, "pw")


def encryption_key_file(storeid):
    return _secret_path(storeid, "enc")


def master_pubkey_file(storeid):
    return _secret_path(storeid, "master.pem")


def _write_secret(path, data):
    os.makedirs(SECRETS_DIR, exist_ok=True)
    plugin.write_file(path, data)


def _remove_secret(path):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def read_password(storeid):
    try:
        with open(password_file(storeid)) as f:
            return f.readline().rstrip("\n")
    except FileNotFoundError:
        return None


def repository(scfg):
    """
    Return the repository string "user@server[:port]:datastore".
    """
    server = scfg["server"]
    if ":" in server:
        server = "[%s]" % server
    port = int(scfg.get("port") or DEFAULT_PORT)
    if port != DEFAULT_PORT:
        server += ":%d" % port
    user = scfg.get("username") or DEFAULT_USER
    return "%s@%s:%s" % (user, server, scfg["datastore"])


def volume_name(btype, bid, btime):
    return "backup/%s/%s/%s" % (
        btype, bid, time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(btime)))


def files_encrypted(files):
    """
    Return True if all data files of a backup snapshot are encrypted.
    """
    encrypted = False
    for f in files or ():
        if f.get("filename") in ("client.log.blob", "index.json.blob"):
            continue
        if f.get("crypt-mode") != "encrypt":
            return False
        encrypted = True
    return encrypted


class BackupClient(object):
    """
    Runs proxmox-backup-client commands on the repository of a storage.
    """

    log = logging.getLogger("storage.BackupClient")

    def __init__(self, storeid, scfg):
        self.storeid = storeid
        self.scfg = scfg

    def env(self):
        env = dict(os.environ)
        password = read_password(self.storeid)
        if password is not None:
            env["PBS_PASSWORD"] = password
        if self.scfg.get("fingerprint"):
            env["PBS_FINGERPRINT"] = self.scfg["fingerprint"]
        env["PROXMOX_OUTPUT_NO_BORDER"] = "1"
        env["PROXMOX_OUTPUT_NO_HEADER"] = "1"
        return env

    def run(self, command, *params, output=True, timeout=None):
        cmd = [_client.cmd, command]
        cmd.extend(params)
        if output:
            cmd.append("--output-format=json")
        cmd.extend(("--repository", repository(self.scfg)))
        out = commands.run(cmd, env=self.env(), timeout=timeout)
        if not output:
            return None
        text = out.decode("utf-8").strip()
        return json.loads(text) if text else None

    def snapshots(self):
        return self.run("snapshots") or []

    def forget(self, name):
        self.run("forget", name, output=False)

    def status(self):
        return self.run("status")

    def files(self, name):
        return self.run("files", name) or []

    def notes(self, name):
        data = self.run("snapshot", "notes", "show", name)
        if isinstance(data, dict):
            return data.get("notes", "")
        return data or ""

    def update_notes(self, name, notes):
        self.run("snapshot", "notes", "update", name, notes, output=False)

    def protected(self, name):
        data = self.run("snapshot", "protected", "show", name)
        if isinstance(data, dict):
            data = data.get("protected")
        return bool(data)

    def update_protected(self, name, value):
        self.run("snapshot", "protected", "update", name,
                 "true" if value else "false", output=False)

    def prune(self, group, params):
        return self.run("prune", group, *params) or []

    def create_key(self, path):
        commands.run([_client.cmd, "key", "create", "--kdf", "none", path])


@plugin.register
class PBSPlugin(plugin.Plugin):

    log = logging.getLogger("storage.PBSPlugin")

    type = "pbs"
    content = frozenset((sc.CONTENT_BACKUP, sc.CONTENT_NONE))
    default_content = frozenset((sc.CONTENT_BACKUP,))
    options = {
        "server": {"fixed": True},
        "datastore": {"fixed": True},
        "port": {"optional": True},
        "nodes": {"optional": True},
        "disable": {"optional": True},
        "content": {"optional": True},
        "username": {"optional": True},
        "password": {"optional": True},
        "encryption-key": {"optional": True},
        "master-pubkey": {"optional": True},
        "maxfiles": {"optional": True},
        "prune-backups": {"optional": True},
        "max-protected-backups": {"optional": True},
        "fingerprint": {"optional": True},
    }
    grammar = volname.PBS

    client_class = BackupClient

    def client(self, storeid, scfg):
        return self.client_class(storeid, scfg)

    # Secrets

    def on_add_hook(self, storeid, scfg, **params):
        """
        Store the secrets passed in params. Returns a dict with the generated
        encryption key, if any.
        """
        res = {}
        password = params.get("password")
        if password is not None:
            _write_secret(password_file(storeid),
                          (password + "\n").encode("utf-8"))
        else:
            _remove_secret(password_file(storeid))

        key = params.get("encryption-key")
        if key is not None:
            res["encryption-key"] = self._set_encryption_key(
                storeid, scfg, key)
        else:
            _remove_secret(encryption_key_file(storeid))

        master = params.get("master-pubkey")
        if master is not None:
            if scfg.get("encryption-key") is None:
                raise se.ConfigError(
                    "master-pubkey",
                    "can only be used together with encryption-key")
            self._set_master_pubkey(storeid, scfg, master)
        else:
            _remove_secret(master_pubkey_file(storeid))

        return res

    def on_update_hook(self, storeid, scfg, **params):
        res = {}
        if "password" in params:
            if params["password"] is not None:
                _write_secret(password_file(storeid),
                              (params["password"] + "\n").encode("utf-8"))
            else:
                _remove_secret(password_file(storeid))

        if "encryption-key" in params:
            key = params["encryption-key"]
            if key is not None:
                res["encryption-key"] = self._set_encryption_key(
                    storeid, scfg, key)
            else:
                _remove_secret(encryption_key_file(storeid))
                scfg.pop("encryption-key", None)

        if "master-pubkey" in params:
            if params["master-pubkey"] is not None:
                self._set_master_pubkey(
                    storeid, scfg, params["master-pubkey"])
            else:
                _remove_secret(master_pubkey_file(storeid))
                scfg.pop("master-pubkey", None)

        return res

    def on_delete_hook(self, storeid, scfg):
        _remove_secret(password_file(storeid))
        _remove_secret(encryption_key_file(storeid))
        _remove_secret(master_pubkey_file(storeid))

    def _set_encryption_key(self, storeid, scfg, key):
        path = encryption_key_file(storeid)
        if key == "autogen":
            if os.path.exists(path):
                os.rename(path, path + ".old")
            os.makedirs(SECRETS_DIR, exist_ok=True)
            self.client(storeid, scfg).create_key(path)
            with open(path) as f:
                key = f.read()
        else:
            try:
                decoded = json.loads(key)
            except ValueError:
                decoded = None
            if not isinstance(decoded, dict) or "data" not in decoded:
                raise se.ConfigError(
                    "encryption-key",
                    "value does not look like a JSON formatted "
                    "encryption key")
            _write_secret(path, key.encode("utf-8"))

        decoded = json.loads(key)
        scfg["encryption-key"] = decoded.get("fingerprint") or "1"
        return key

    def _set_master_pubkey(self, storeid, scfg, value):
        try:
            pem = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise se.ConfigError("master-pubkey", "value is not base64")
        _write_secret(master_pubkey_file(storeid), pem)
        scfg["master-pubkey"] = "1"

    # Volumes

    def filesystem_path(self, scfg, name, snapname=None):
        if snapname:
            raise se.UnsupportedOperation(
                "path", "volume snapshot is not possible on pbs storage")
        vol = self.parse_volname(name)
        return "pbs://%s/%s" % (repository(scfg), vol.name)

    def alloc_image(self, storeid, scfg, vmid, fmt, name, size):
        raise se.UnsupportedOperation(
            "alloc_image", "can't allocate space in pbs storage")

    def free_image(self, storeid, scfg, name, isbase, format=None):
        vol = self.parse_volname(name)
        self.log.info("Forgetting backup snapshot %s", vol.name)
        self.client(storeid, scfg).forget(vol.name)

    def remove_backup(self, storeid, scfg, name):
        if self.get_volume_attribute(storeid, scfg, name, "protected"):
            raise se.VolumeProtected(volname.volume_id(storeid, name))
        self.free_image(storeid, scfg, name, False)

    def create_base(self, storeid, scfg, name):
        raise se.UnsupportedOperation(
            "create_base", "can't create base images in pbs storage")

    def clone_image(self, storeid, scfg, name, vmid, snap=None):
        raise se.UnsupportedOperation(
            "clone_image", "can't clone images in pbs storage")

    def list_images(self, storeid, scfg, vmid=None, vollist=None,
                    cache=None):
        return []

    def list_volumes(self, storeid, scfg, vmid, content_types, guests=None):
        if sc.CONTENT_BACKUP not in content_types:
            return []

        res = []
        for item in self.client(storeid, scfg).snapshots():
            btype = item.get("backup-type")
            bid = str(item.get("backup-id"))
            btime = item.get("backup-time")
            if btype not in GUEST_BACKUP_TYPES or not bid.isdigit():
                continue
            if vmid is not None and bid != str(vmid):
                continue

            info = {
                "volid": volname.volume_id(
                    storeid, volume_name(btype, bid, btime)),
                "format": "pbs-" + btype,
                "size": item.get("size") or 1,
                "content": sc.CONTENT_BACKUP,
                "vmid": int(bid),
                "ctime": btime,
                "subtype": prune.GUEST_TYPES[btype],
                "protected": bool(item.get("protected")),
            }
            if item.get("verification") is not None:
                info["verification"] = item["verification"]
            if item.get("comment") is not None:
                info["notes"] = item["comment"]
            if item.get("fingerprint") is not None:
                info["encrypted"] = item["fingerprint"]
            elif files_encrypted(item.get("files")):
                info["encrypted"] = "1"
            res.append(info)

        return res

    def volume_size_info(self, storeid, scfg, name, timeout=None):
        vol = self.parse_volname(name)
        size = sum(f.get("size") or 0
                   for f in self.client(storeid, scfg).files(vol.name))
        return size, vol.format, size, None

    def volume_resize(self, storeid, scfg, name, size, running=False):
        raise se.UnsupportedOperation(
            "volume_resize", "volume resize is not possible on pbs device")

    def volume_snapshot(self, storeid, scfg, name, snap):
        raise se.UnsupportedOperation(
            "volume_snapshot", "volume snapshot is not possible on pbs device")

    def volume_snapshot_rollback(self, storeid, scfg, name, snap):
        raise se.UnsupportedOperation(
            "volume_snapshot_rollback",
            "volume snapshot rollback is not possible on pbs device")

    def volume_snapshot_delete(self, storeid, scfg, name, snap,
                               running=False):
        raise se.UnsupportedOperation(
            "volume_snapshot_delete",
            "volume snapshot delete is not possible on pbs device")

    def volume_snapshot_list(self, storeid, scfg, name):
        return []

    # Attributes

    def get_volume_notes(self, storeid, scfg, name, timeout=None):
        vol = self.parse_volname(name)
        return self.client(storeid, scfg).notes(vol.name)

    def update_volume_notes(self, storeid, scfg, name, notes, timeout=None):
        vol = self.parse_volname(name)
        self.client(storeid, scfg).update_notes(vol.name, notes)

    def get_volume_attribute(self, storeid, scfg, name, attribute):
        if attribute == "protected":
            vol = self.parse_volname(name)
            return self.client(storeid, scfg).protected(vol.name)
        return super().get_volume_attribute(storeid, scfg, name, attribute)

    def update_volume_attribute(self, storeid, scfg, name, attribute, value):
        if attribute == "protected":
            vol = self.parse_volname(name)
            self.client(storeid, scfg).update_protected(vol.name, value)
            return None
        return super().update_volume_attribute(
            storeid, scfg, name, attribute, value)

    # Retention

    def prune_backups(self, storeid, scfg, opts, vmid=None, type=None,
                      dry_run=False):
        """
        Prune the backup groups on the server. The server marks and removes
        the backups.
        """
        backups = self.list_volumes(storeid, scfg, vmid, [sc.CONTENT_BACKUP])
        groups = set()
        for info in backups:
            btype = info["format"][len("pbs-"):]
            if type is not None and prune.GUEST_TYPES[btype] != type:
                continue
            groups.add("%s/%s" % (btype, info["vmid"]))

        params = []
        if not prune.keeps_all(opts):
            for name in prune.OPTIONS:
                if name != prune.KEEP_ALL and opts.get(name):
                    params.extend(("--" + name, str(opts[name])))
        if dry_run:
            params.append("--dry-run")

        client = self.client(storeid, scfg)
        res = []
        failed = False
        for group in sorted(groups):
            if not dry_run:
                self.log.info("Pruning backup group %s", group)
            try:
                res.extend(self._prune_group(storeid, client, group, params))
            except (cmdutils.Error, cmdutils.TimeoutExpired, ValueError,
                    se.StorageException) as e:
                self.log.error("Cannot prune backup group %s: %s", group, e)
                failed = True

        if failed:
            raise se.PruneError(storeid)
        return res

    def _prune_group(self, storeid, client, group, params):
        items = []
        for backup in client.prune(group, params):
            try:
                btype = backup["backup-type"]
                bid = backup["backup-id"]
                btime = backup["backup-time"]
                keep = backup["keep"]
            except KeyError as e:
                raise se.BackendToolFailure(
                    ["proxmox-backup-client", "prune", group], 0,
                    "unexpected prune result, missing %s" % e)
            if backup.get("protected"):
                mark = prune.PROTECTED
            else:
                mark = prune.KEEP if keep else prune.REMOVE
            items.append(prune.PruneItem(
                volname.volume_id(storeid, volume_name(btype, bid, btime)),
                prune.GUEST_TYPES.get(btype, btype), str(bid), btime,
                mark=mark))
        return items

    # Storage state

    def status(self, storeid, scfg, cache=None):
        try:
            res = self.client(storeid, scfg).status()
        except (cmdutils.Error, cmdutils.TimeoutExpired, OSError,
                ValueError) as e:
            self.log.warning("Cannot check status of storage %s: %s",
                             storeid, e)
            return 0, 0, 0, False
        return res["total"], res["avail"], res["used"], True

    def activate_storage(self, storeid, scfg, cache=None):
        try:
            self.client(storeid, scfg).status()
        except (cmdutils.Error, cmdutils.TimeoutExpired) as e:
            raise se.StorageNotActive(
                "%s: cannot access datastore %s: %s" %
                (storeid, scfg["datastore"], e))

    def deactivate_storage(self, storeid, scfg, cache=None):
        pass

    def activate_volume(self, storeid, scfg, name, snapname=None,
                        cache=None):
        if snapname:
            raise se.UnsupportedOperation(
                "activate_volume",
                "volume snapshot is not possible on pbs device")

    def deactivate_volume(self, storeid, scfg, name, snapname=None,
                          cache=None):
        if snapname:
            raise se.UnsupportedOperation(
                "deactivate_volume",
                "volume snapshot is not possible on pbs device")

    def volume_export_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        return []

    def volume_import_formats(self, storeid, scfg, name, snapshot=None,
                              base_snapshot=None, with_snapshots=False):
        return []
