# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
This module creates virtstore configuration from the defaults below, the
configuration file under /etc/virtstore/virtstore.conf, and conf files found
in drop-in dirs.

The semantics of the directories and the search order is as follows:

- /etc/virtstore/virtstore.conf - for user configuration.
- /etc/virtstore/virtstore.conf.d/ - for admin drop-in conf files.
- /usr/lib/virtstore/virtstore.conf.d/ - for vendor drop-in configuration
  files.
- /run/virtstore/virtstore.conf.d/ - for admin temporary configuration.

Files with a .conf suffix can be placed into any of the virtstore.conf.d
drop-in directories.

The priority of the configuration files is determined by the number prefix of
each file.
"""

import configparser
import os

_SYSCONFDIR = '/etc'
_DROPPIN_BASES = ('/etc', '/usr/lib', '/run')

parameters = [
    # Section: [storage]
    ('storage', [

        ('config_file', '/etc/pve/storage.cfg',
            'Storage configuration section file.'),

        ('lock_dir', '/var/lock/virtstore',
            'Directory holding per storage lock files, used for storages '
            'which are not shared between nodes.'),

        ('lock_timeout', '60',
            'Seconds to wait for a storage lock before failing.'),

        ('status_timeout', '2',
            'Timeout in seconds for storage status queries.'),

        ('info_timeout', '10',
            'Timeout in seconds for volume information queries.'),

        ('strict_content', 'false',
            'Reject unknown content types in the storage configuration '
            'instead of dropping them with a warning.'),

        ('local_path', '/var/lib/vz',
            'Path of the default local storage.'),

        ('mount_base', '/mnt/pve',
            'Base directory for network storage mount points.'),

        ('node_name', '',
            'Name of this node, used to check storage node restrictions. '
            'Empty value means the host name.'),

        ('bwlimit', '',
            'Default bandwidth limits in KiB/s for storages without a '
            'limit, for example "default=102400,restore=51200". Empty '
            'value means no limit.'),
    ]),

    # Section: [migration]
    ('migration', [

        ('port_min', '60000',
            'First port of the range used for incoming volume transfers.'),

        ('port_max', '60050',
            'Last port of the range used for incoming volume transfers.'),

        ('accept_timeout', '30',
            'Seconds to wait for a remote exporter to connect.'),
    ]),

    # Section: [logging]
    ('logging', [

        ('level', 'WARNING',
            'Log level used by virtstore-tool.'),
    ]),
]


def set_defaults(config):
    for section, keylist in parameters:
        config.add_section(section)
        for key, value, doc in keylist:
            config.set(section, key, value)


def _dropin_files(name):
    files = {}
    for base in _DROPPIN_BASES:
        dropin_dir = os.path.join(base, name, name + '.conf.d')
        try:
            names = os.listdir(dropin_dir)
        except FileNotFoundError:
            continue
        for filename in names:
            if filename.endswith('.conf'):
                # Files in earlier bases override files with the same name in
                # later bases.
                files.setdefault(filename, os.path.join(dropin_dir, filename))
    return [files[filename] for filename in sorted(files)]


def load(name):
    cfg = configparser.ConfigParser()
    set_defaults(cfg)
    cfg.read(os.path.join(_SYSCONFDIR, name, name + '.conf'))
    cfg.read(_dropin_files(name))
    return cfg


config = load('virtstore')
