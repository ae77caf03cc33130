# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

import pytest

from virtstore.storage import sectionconfig
from virtstore.storage import volname


def parse(text):
    return sectionconfig.parse(text, volname.is_valid_storage_id)


def test_parse():
    text = (
        "# storage configuration\n"
        "dir: local\n"
        "\tpath /var/lib/vz\n"
        "\tcontent iso,vztmpl,backup\n"
        "\n"
        "nfs: shared\n"
        "        server 10.0.0.1\n"
        "        export /export/images\n"
        "        disable\n"
    )
    sections, errors = parse(text)
    assert errors == []
    assert [(s.type, s.id, s.props) for s in sections] == [
        ("dir", "local", [
            ("path", "/var/lib/vz"),
            ("content", "iso,vztmpl,backup"),
        ]),
        ("nfs", "shared", [
            ("server", "10.0.0.1"),
            ("export", "/export/images"),
            ("disable", None),
        ]),
    ]


def test_value_with_spaces():
    sections, errors = parse("dir: a1\n\tcomment  some text  \n")
    assert errors == []
    assert sections[0].props == [("comment", "some text")]


def test_empty():
    assert parse("") == ([], [])


@pytest.mark.parametrize("text,lineno", [
    # Header without a blank line before it.
    ("dir: a1\n\tpath /a\ndir: b1\n\tpath /b\n", 3),
    # Property outside of a section.
    ("\tpath /a\n", 1),
    # Invalid type.
    ("Dir: a1\n\tpath /a\n", 1),
])
def test_invalid_lines(text, lineno):
    sections, errors = parse(text)
    assert errors[0].lineno == lineno


def test_invalid_id_skips_section():
    text = (
        "dir: 1bad\n"
        "\tpath /a\n"
        "\n"
        "dir: good\n"
        "\tpath /b\n"
    )
    sections, errors = parse(text)
    assert [s.id for s in sections] == ["good"]
    assert len(errors) == 1
    assert errors[0].section == "1bad"
    assert errors[0].lineno == 1


def test_duplicate_id():
    text = (
        "dir: a1\n"
        "\tpath /a\n"
        "\n"
        "dir: a1\n"
        "\tpath /b\n"
    )
    sections, errors = parse(text)
    assert len(sections) == 1
    assert sections[0].props == [("path", "/a")]
    assert "duplicate section id" in errors[0].message


def test_duplicate_property():
    sections, errors = parse("dir: a1\n\tpath /a\n\tpath /b\n")
    assert sections[0].props == [("path", "/a")]
    assert errors[0].lineno == 3
    assert errors[0].section == "a1"


def test_error_str():
    error = sectionconfig.Error(3, "a1", "duplicate property 'path'")
    assert str(error) == "line 3 (section 'a1'): duplicate property 'path'"


def test_write():
    text = sectionconfig.write([
        ("dir", "local", [("path", "/var/lib/vz"), ("content", "iso")]),
        ("nfs", "shared", [("disable", None)]),
    ])
    assert text == (
        "dir: local\n"
        "\tpath /var/lib/vz\n"
        "\tcontent iso\n"
        "\n"
        "nfs: shared\n"
        "\tdisable\n"
    )


def test_write_parse():
    sections = [
        ("dir", "local", [("path", "/var/lib/vz"), ("content", "iso")]),
        ("lvm", "vg1", [("vgname", "vg1"), ("shared", "1")]),
    ]
    parsed, errors = parse(sectionconfig.write(sections))
    assert errors == []
    assert [(s.type, s.id, s.props) for s in parsed] == sections
