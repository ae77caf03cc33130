# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Section file format.

The storage configuration file contains one section per storage::

    dir: local
            path /var/lib/vz
            content iso,vztmpl,backup

    nfs: shared
            server 10.0.0.1
            export /export/images
            content images

A section starts with a "<type>: <id>" header line, followed by indented
"<key> <value>" lines. Sections are separated by blank lines. Lines starting
with "#" are comments.

This module parses and formats the file without interpreting the values;
values are decoded by the schema module. Keys are kept in file order, so
unknown keys survive a read-write cycle.
"""

import collections
import logging
import re

log = logging.getLogger("storage.sectionconfig")

Section = collections.namedtuple("Section", "type, id, props, lineno")

_HEADER = re.compile(r"^(\S+):\s*(\S+)\s*$")
_PROPERTY = re.compile(r"^\s+(\S+)(\s+(.*\S))?\s*$")
_TYPE = re.compile(r"^[a-z][a-z0-9]*$")


class Error(object):

    def __init__(self, lineno, section, message):
        self.lineno = lineno
        self.section = section
        self.message = message

    def __str__(self):
        return "line %d (section %r): %s" % (
            self.lineno, self.section, self.message)

    def __repr__(self):
        return "<Error %s>" % self


def parse(text, valid_id):
    """
    Parse section file text.

    Arguments:
        text (str): file contents.
        valid_id (callable): returns True if a section id is valid. Sections
            with invalid ids are skipped.

    Returns:
        tuple (sections, errors). sections is a list of Section, errors is a
        list of Error describing skipped sections and lines. Errors do not
        abort parsing of the following sections.
    """
    sections = []
    errors = []
    seen = set()
    current = None
    skipping = False

    for lineno, line in enumerate(text.splitlines(), 1):
        if line.strip() == "":
            current = None
            skipping = False
            continue

        if line.lstrip().startswith("#"):
            continue

        if current is None and not skipping:
            m = _HEADER.match(line)
            if m is None:
                errors.append(Error(lineno, None,
                                    "unable to parse section header %r" %
                                    line))
                skipping = True
                continue

            stype, sid = m.groups()
            if not _TYPE.match(stype):
                errors.append(Error(lineno, sid,
                                    "invalid section type %r" % stype))
                skipping = True
            elif not valid_id(sid):
                errors.append(Error(lineno, sid,
                                    "invalid section id %r" % sid))
                skipping = True
            elif sid in seen:
                errors.append(Error(lineno, sid, "duplicate section id"))
                skipping = True
            else:
                seen.add(sid)
                current = Section(stype, sid, [], lineno)
                sections.append(current)
            continue

        if skipping:
            continue

        m = _PROPERTY.match(line)
        if m is None:
            errors.append(Error(lineno, current.id,
                                "unable to parse property line %r" % line))
            continue

        key, value = m.group(1), m.group(3)
        if any(k == key for k, _ in current.props):
            errors.append(Error(lineno, current.id,
                                "duplicate property %r" % key))
            continue

        current.props.append((key, value))

    for error in errors:
        log.warning("Ignoring invalid configuration: %s", error)

    return sections, errors


def write(sections):
    """
    Format sections as section file text.

    Arguments:
        sections (iterable): tuples (type, id, props) where props is an
            iterable of (key, value) tuples. A value of None writes a flag
            line with the key only.
    """
    chunks = []
    for section in sections:
        lines = ["%s: %s" % (section[0], section[1])]
        for key, value in section[2]:
            if value is None:
                lines.append("\t%s" % key)
            else:
                lines.append("\t%s %s" % (key, value))
        chunks.append("\n".join(lines) + "\n")
    return "\n".join(chunks)
