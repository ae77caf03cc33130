# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Backup retention.

Backups of a guest are pruned according to retention options::

    keep-all=1                      keep everything
    keep-last=N                     keep the N most recent backups
    keep-hourly=N ... keep-yearly=N keep the most recent backup of the last
                                    N hours, days, weeks, months, years
                                    having a backup

Rules are applied in the order above. A backup kept by an earlier rule
covers its period for the later rules, so another backup of the same period
is not kept by a later rule.

Periods are computed in the local time of the host, like the timestamps in
backup archive names.
"""

import datetime
import logging
import os
import time

from virtstore.storage import constants as sc
from virtstore.storage import exception as se
from virtstore.storage import volname

log = logging.getLogger("storage.prune")

KEEP = "keep"
REMOVE = "remove"
PROTECTED = "protected"

KEEP_ALL = "keep-all"
KEEP_LAST = "keep-last"
KEEP_HOURLY = "keep-hourly"
KEEP_DAILY = "keep-daily"
KEEP_WEEKLY = "keep-weekly"
KEEP_MONTHLY = "keep-monthly"
KEEP_YEARLY = "keep-yearly"

# Guest types in backup names, and their names in the backup server.
GUEST_TYPES = {"vm": "qemu", "ct": "lxc"}


def _last(ctime):
    # Backups created in the same second share one keep-last slot, since
    # the timestamp in the archive name cannot tell them apart. The one
    # with the lowest volume id is kept.
    return ctime


def _hourly(ctime):
    t = time.localtime(ctime)
    return t.tm_year, t.tm_mon, t.tm_mday, t.tm_hour


def _daily(ctime):
    t = time.localtime(ctime)
    return t.tm_year, t.tm_mon, t.tm_mday


def _weekly(ctime):
    year, week, _ = datetime.datetime.fromtimestamp(ctime).isocalendar()
    return year, week


def _monthly(ctime):
    t = time.localtime(ctime)
    return t.tm_year, t.tm_mon


def _yearly(ctime):
    return time.localtime(ctime).tm_year


RULES = (
    (KEEP_LAST, _last),
    (KEEP_HOURLY, _hourly),
    (KEEP_DAILY, _daily),
    (KEEP_WEEKLY, _weekly),
    (KEEP_MONTHLY, _monthly),
    (KEEP_YEARLY, _yearly),
)

OPTIONS = (KEEP_ALL,) + tuple(name for name, _ in RULES)


class PruneItem(object):
    """
    A backup considered for pruning.

    mark is None until prune_mark() marks the item as KEEP, REMOVE or
    PROTECTED.
    """

    def __init__(self, volid, type, vmid, ctime, mark=None):
        self.volid = volid
        self.type = type
        self.vmid = vmid
        self.ctime = ctime
        self.mark = mark

    def info(self):
        return {
            "volid": self.volid,
            "type": self.type,
            "vmid": self.vmid,
            "ctime": self.ctime,
            "mark": self.mark,
        }

    def __eq__(self, other):
        return self.__class__ == other.__class__ and \
            self.info() == other.info()

    def __repr__(self):
        return "<PruneItem %s mark=%s>" % (self.volid, self.mark)


def keeps_all(opts):
    """
    Return True if opts does not remove anything.
    """
    if opts.get(KEEP_ALL):
        return True
    return not any(opts.get(name, 0) > 0 for name, _ in RULES)


def _mark(items, count, period):
    if not count:
        return

    covered = {period(item.ctime) for item in items if item.mark == KEEP}
    included = set()

    for item in items:
        if item.mark is not None:
            continue
        key = period(item.ctime)
        if key in covered:
            continue
        if key not in included:
            if len(included) >= count:
                break
            included.add(key)
            item.mark = KEEP
        else:
            item.mark = REMOVE


def prune_mark(items, opts):
    """
    Mark the backups of one guest.

    Items already marked (e.g. PROTECTED) are left as is, and do not count
    for any rule. Remaining items are marked KEEP or REMOVE.

    Returns:
        The items, most recent first.
    """
    items = sorted(items, key=lambda item: item.volid)
    items.sort(key=lambda item: item.ctime, reverse=True)

    if keeps_all(opts):
        for item in items:
            if item.mark is None:
                item.mark = KEEP
        return items

    for name, period in RULES:
        _mark(items, opts.get(name, 0), period)

    for item in items:
        if item.mark is None:
            item.mark = REMOVE

    return items


def backup_items(backups, type=None):
    """
    Create PruneItems from list_volumes() backup info dicts.

    Backups without a standard name, or protected backups, are marked
    PROTECTED.
    """
    items = []
    for info in backups:
        _, name = volname.parse_volume_id(info["volid"])
        guest_type = info.get("subtype")
        vmid = info.get("vmid")
        mark = None

        if guest_type is None:
            try:
                archive = volname.archive_info(os.path.basename(name))
            except se.ParseError:
                archive = {}
            guest_type = archive.get("type")
            if not archive.get("is_std_name"):
                vmid = None

        if type is not None and guest_type != type:
            continue

        if vmid is None or "ctime" not in info:
            mark = PROTECTED
        elif info.get("protected"):
            mark = PROTECTED

        items.append(PruneItem(info["volid"], guest_type,
                               str(vmid) if vmid is not None else None,
                               info.get("ctime", 0), mark=mark))
    return items


def group_items(items):
    """
    Return dict (type, vmid) -> list of items.
    """
    groups = {}
    for item in items:
        groups.setdefault((item.type, item.vmid), []).append(item)
    return groups


def prune_backups(plugin, storeid, scfg, opts, vmid=None, type=None,
                  dry_run=False):
    """
    Prune the backups on a storage, keeping the backups selected by opts.

    Arguments:
        vmid (str): if set, prune only backups of vmid.
        type (str): if set, prune only backups of guests of this type
            ("qemu" or "lxc").
        dry_run (bool): only mark the backups.

    Returns:
        List of PruneItem with the marks computed before removing.

    Raises:
        se.PruneError if removing any backup failed. Other backups are
            removed before the error is raised.
    """
    backups = plugin.list_volumes(storeid, scfg, vmid, [sc.CONTENT_BACKUP])
    items = backup_items(backups, type=type)

    res = []
    for key, group in sorted(group_items(items).items(), key=_group_order):
        res.extend(prune_mark(group, opts))

    if dry_run:
        return res

    failed = False
    for item in res:
        if item.mark != REMOVE:
            continue
        _, name = volname.parse_volume_id(item.volid)
        log.info("Removing backup %s", item.volid)
        try:
            plugin.remove_backup(storeid, scfg, name)
        except (se.StorageException, OSError) as e:
            log.error("Cannot remove backup %s: %s", item.volid, e)
            failed = True

    if failed:
        raise se.PruneError(storeid)

    return res


def _group_order(group):
    (guest_type, vmid), _ = group
    return (guest_type or "", vmid or "")
