#+
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import pytest

import dbuswire
from dbuswire import \
    DBUS

@pytest.mark.parametrize \
  (
    "exception, error_name",
    [
        (dbuswire.BufferOverflow, DBUS.ERROR_LIMITS_EXCEEDED),
        (dbuswire.OutOfData, DBUS.ERROR_INCONSISTENT_MESSAGE),
        (dbuswire.InvalidSignature, DBUS.ERROR_INVALID_SIGNATURE),
        (dbuswire.ModeViolation, DBUS.ERROR_FAILED),
        (dbuswire.TypeMismatch, DBUS.ERROR_INVALID_ARGS),
        (dbuswire.ProtocolError, DBUS.ERROR_INCONSISTENT_MESSAGE),
        (dbuswire.IOFailure, DBUS.ERROR_IO_ERROR),
        (dbuswire.AuthFailure, DBUS.ERROR_AUTH_FAILED),
    ]
  )
def test_error_names(exception, error_name) :
    fail = exception("something went wrong")
    assert isinstance(fail, dbuswire.DBusError)
    assert fail.name == error_name
    assert fail.message == "something went wrong"
    assert str(fail) == "%s -- something went wrong" % error_name
#end test_error_names

def test_dbus_error() :
    fail = dbuswire.DBusError(DBUS.ERROR_ACCESS_DENIED, "go away")
    assert fail.name == DBUS.ERROR_ACCESS_DENIED
    assert "go away" in str(fail)
#end test_dbus_error
