# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Constants for file/disk sizes.
"""

KiB = 1024
MiB = 1024**2
GiB = 1024**3
TiB = 1024**4
