#+
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import struct
import pytest

from dbuswire import \
    DBUS, \
    InvalidSignature, \
    OutOfData, \
    ProtocolError, \
    Reader, \
    TypeMismatch, \
    Writer

def test_round_trip_basic_values() :
    for byteorder in (DBUS.LITTLE_ENDIAN, DBUS.BIG_ENDIAN) :
        w = Writer(256, byteorder)
        w.add_byte(7).add_boolean(True).add_int16(-300).add_uint16(60000)
        w.add_int32(-70000).add_uint32(4000000000).add_int64(-2 ** 40).add_uint64(2 ** 63)
        w.add_double(-1.25).add_string("héllo").add_object_path("/a/b").add_signature("a{is}")
        data = w.finish()
        r = Reader(data, byteorder, w.signature)
        assert r.get_byte() == 7
        assert r.get_boolean() is True
        assert r.get_int16() == -300
        assert r.get_uint16() == 60000
        assert r.get_int32() == -70000
        assert r.get_uint32() == 4000000000
        assert r.get_int64() == -2 ** 40
        assert r.get_uint64() == 2 ** 63
        assert r.get_double() == -1.25
        assert r.get_string() == "héllo"
        path = r.get_object_path()
        assert path == "/a/b" and isinstance(path, DBUS.ObjectPath)
        sig = r.get_signature()
        assert sig == "a{is}" and isinstance(sig, DBUS.Signature)
        assert r.offset == w.offset
        assert r.remaining == 0
        assert r.at_end
    #end for
#end test_round_trip_basic_values

def test_round_trip_containers() :
    w = Writer(256, DBUS.LITTLE_ENDIAN)
    w.add_byte(1)
    handle = w.add_array_begin("(sv)")
    w.add_structure().add_string("one").add_variant("i").add_int32(1)
    w.add_structure().add_string("two").add_variant("as")
    inner = w.add_array_begin()
    w.add_string("x")
    w.add_array_end(inner)
    w.add_array_end(handle)
    w.add_uint16(9)
    data = w.finish()
    assert str(w.signature) == "ya(sv)q"
    r = Reader(data, DBUS.LITTLE_ENDIAN, "ya(sv)q")
    assert r.get_byte() == 1
    handle = r.get_array()
    assert r.get_array_left(handle) > 0
    assert r.get_structure() == "sv"
    assert r.get_string() == "one"
    assert r.get_variant() == "i"
    assert r.get_int32() == 1
    assert r.get_structure() == "sv"
    assert r.get_string() == "two"
    assert r.get_variant() == "as"
    inner = r.get_array()
    assert r.get_string() == "x"
    assert r.get_array_left(inner) == 0
    assert r.get_array_left(handle) == 0
    assert r.get_uint16() == 9
    assert r.offset == w.offset
#end test_round_trip_containers

def test_get_object() :
    w = Writer(512, DBUS.BIG_ENDIAN)
    values = ["s", {"k1" : ("u", 1), "k2" : ("s", "v")}, [1, [2, 3]], [True, False]]
    w.add_objects("sa{sv}(iai)ab", values)
    data = w.finish()
    r = Reader(data, DBUS.BIG_ENDIAN, "sa{sv}(iai)ab")
    assert r.get_objects() == values
    assert r.offset == len(data)
#end test_get_object

def test_out_of_data() :
    r = Reader(b"\x01\x00", DBUS.LITTLE_ENDIAN, "i")
    with pytest.raises(OutOfData) :
        r.get_int32()
    #end with
    r = Reader(b"\x05\x00\x00\x00ab", DBUS.LITTLE_ENDIAN, "s")
    with pytest.raises(OutOfData) :
        r.get_string()
    #end with
#end test_out_of_data

def test_declared_length_bounds_reads() :
    data = struct.pack("<ii", 1, 2)
    r = Reader(data, DBUS.LITTLE_ENDIAN, "ii", length = 4)
    assert r.get_int32() == 1
    with pytest.raises(OutOfData) :
        r.get_int32()
    #end with
#end test_declared_length_bounds_reads

def test_huge_array_length() :
    data = struct.pack("<I", 0x7fffffff)
    with pytest.raises(ProtocolError) :
        Reader(data, DBUS.LITTLE_ENDIAN, "ay").get_array()
    #end with
    data = struct.pack("<I", 100) + bytes(4)
    with pytest.raises(OutOfData) :
        Reader(data, DBUS.LITTLE_ENDIAN, "ay").get_array()
    #end with
#end test_huge_array_length

def test_array_overrun() :
    # declared length 2, but the single int32 element takes 4
    data = struct.pack("<Ii", 2, 7)
    r = Reader(data, DBUS.LITTLE_ENDIAN, "ai")
    r.get_array()
    with pytest.raises(TypeMismatch) :
        r.get_int32()
    #end with
#end test_array_overrun

def test_nonzero_padding() :
    r = Reader(b"\x01\x99\x00\x00\x02\x00\x00\x00", DBUS.LITTLE_ENDIAN, "yi")
    assert r.get_byte() == 1
    with pytest.raises(TypeMismatch) :
        r.get_int32()
    #end with
#end test_nonzero_padding

def test_bad_boolean() :
    r = Reader(struct.pack("<I", 2), DBUS.LITTLE_ENDIAN, "b")
    with pytest.raises(TypeMismatch) :
        r.get_boolean()
    #end with
#end test_bad_boolean

@pytest.mark.parametrize \
  (
    "data",
    [
        b"\x02\x00\x00\x00ab\x01", # missing terminator
        b"\x02\x00\x00\x00a\x00\x00", # embedded NUL
        b"\x02\x00\x00\x00\xff\xfe\x00", # not UTF-8
    ]
  )
def test_bad_strings(data) :
    with pytest.raises(TypeMismatch) :
        Reader(data, DBUS.LITTLE_ENDIAN, "s").get_string()
    #end with
#end test_bad_strings

def test_get_disagreeing_with_signature() :
    r = Reader(struct.pack("<i", 1), DBUS.LITTLE_ENDIAN, "i")
    with pytest.raises(TypeMismatch) :
        r.get_uint32()
    #end with
    r = Reader(b"", DBUS.LITTLE_ENDIAN, None)
    with pytest.raises(TypeMismatch) :
        r.get_byte()
    #end with
#end test_get_disagreeing_with_signature

def test_bad_variant_signature() :
    r = Reader(b"\x02ii\x00", DBUS.LITTLE_ENDIAN, "v")
    with pytest.raises(InvalidSignature) :
        r.get_variant()
    #end with
#end test_bad_variant_signature

def test_alignment_relative_to_anchor() :
    # body starts at offset 4 of the buffer; the int32 after the byte is
    # aligned relative to that, not to the buffer start
    data = b"junk" + b"\x01\x00\x00\x00" + struct.pack("<i", 5)
    r = Reader(data, DBUS.LITTLE_ENDIAN, "yi", offset = 4)
    assert r.get_byte() == 1
    assert r.get_int32() == 5
    r = Reader(b"ju" + b"\x01\x00" + struct.pack("<i", 5), DBUS.LITTLE_ENDIAN, "yi", offset = 2, anchor = 0)
    assert r.get_byte() == 1
    assert r.get_int32() == 5
#end test_alignment_relative_to_anchor

def test_at_end_closes_consumed_array() :
    data = struct.pack("<Ii", 4, 5)
    r = Reader(data, DBUS.LITTLE_ENDIAN, "ai")
    r.get_array()
    assert not r.at_end
    assert r.get_int32() == 5
    assert r.at_end
    assert r.depth == 0
#end test_at_end_closes_consumed_array
