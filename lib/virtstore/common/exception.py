# SPDX-FileCopyrightText: Red Hat, Inc.
# SPDX-License-Identifier: GPL-2.0-or-later

"""
Public virtstore errors. Every error has a numeric code and a message, and can
be reported to the caller using info().
"""


class VirtstoreException(Exception):
    code = 0
    message = "Virtstore Exception"

    # A flag that is used to mark expected errors. Setting this to True will
    # suppress error logs for the exception. Error subclasses that are always
    # caller errors, should override this to True.
    expected = False

    def __str__(self):
        return self.msg

    def info(self):
        return {'code': self.code, 'message': str(self)}

    @property
    def msg(self):
        return self.message


class GeneralException(VirtstoreException):
    code = 100
    message = "General Exception"

    def __init__(self, *value):
        if len(value) == 1:
            value = value[0]
        self.value = value

    def __str__(self):
        if self.value == ():
            return self.msg
        return "%s: %s" % (self.msg, self.value)
