#+
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import struct
import pytest

from dbuswire import \
    DBUS, \
    BufferOverflow, \
    InvalidSignature, \
    TypeMismatch, \
    Writer

def le_writer(capacity = 1024, signature = None) :
    return \
        Writer(capacity, DBUS.LITTLE_ENDIAN, signature)
#end le_writer

def test_byte_then_int32_pads_three_bytes() :
    w = le_writer()
    w.add_byte(0x2a).add_int32(-2)
    assert w.finish() == b"\x2a\x00\x00\x00" + struct.pack("<i", -2)
    assert str(w.signature) == "yi"
#end test_byte_then_int32_pads_three_bytes

def test_big_endian() :
    w = Writer(64, DBUS.BIG_ENDIAN)
    w.add_uint16(0x0102).add_uint32(0x03040506).add_int64(-1)
    assert w.finish() == b"\x01\x02\x00\x00\x03\x04\x05\x06" + b"\xff" * 8
#end test_big_endian

def test_all_fixed_types() :
    w = le_writer()
    w.add_byte(255)
    w.add_boolean(True)
    w.add_int16(-3)
    w.add_uint16(3)
    w.add_int32(-5)
    w.add_uint32(5)
    w.add_int64(-7)
    w.add_uint64(7)
    w.add_double(0.5)
    assert w.finish() == \
        (
            b"\xff\x00\x00\x00" # byte, padding to boolean
            b"\x01\x00\x00\x00"
            b"\xfd\xff\x03\x00"
            b"\xfb\xff\xff\xff"
            b"\x05\x00\x00\x00"
            b"\x00\x00\x00\x00" # padding to int64
        +
            struct.pack("<qQd", -7, 7, 0.5)
        )
    assert str(w.signature) == "ybnqiuxtd"
#end test_all_fixed_types

def test_struct_alignment_after_odd_bytes() :
    w = le_writer()
    w.add_byte(1).add_byte(2).add_byte(3)
    w.add_structure("i")
    w.add_int32(9)
    assert w.finish() == b"\x01\x02\x03" + bytes(5) + b"\x09\x00\x00\x00"
    assert str(w.signature) == "yyy(i)"
#end test_struct_alignment_after_odd_bytes

def test_struct_recorded_until_end() :
    w = le_writer()
    w.add_structure()
    w.add_string("x")
    w.add_uint16(1)
    w.add_structure_end()
    w.add_byte(0)
    assert str(w.signature) == "(sq)y"
    w.finish()
#end test_struct_recorded_until_end

def test_open_struct_closed_by_finish() :
    w = le_writer()
    w.add_structure().add_int32(1)
    w.finish()
    assert str(w.signature) == "(i)"
#end test_open_struct_closed_by_finish

def test_empty_struct_rejected() :
    w = le_writer()
    w.add_structure()
    with pytest.raises(InvalidSignature) :
        w.add_structure_end()
    #end with
#end test_empty_struct_rejected

def test_explicit_end_after_self_closing_struct() :
    w = le_writer(signature = "(ii)y")
    w.add_structure().add_int32(1).add_int32(2)
    w.add_structure_end()
    w.add_byte(3)
    w.finish()
    with pytest.raises(InvalidSignature) :
        w.add_structure_end()
    #end with
#end test_explicit_end_after_self_closing_struct

def test_self_closing_struct_inside_recorded_struct() :
    w = le_writer()
    w.add_structure()
    w.add_structure("i").add_int32(1)
    w.add_structure_end()
    w.add_byte(2)
    w.add_structure_end()
    assert str(w.signature) == "((i)y)"
    assert w.finish() == struct.pack("<iB", 1, 2)
#end test_self_closing_struct_inside_recorded_struct

def test_array_of_int64_length_excludes_padding() :
    w = le_writer()
    handle = w.add_array_begin("x")
    w.add_int64(1).add_int64(2)
    w.add_array_end(handle)
    data = w.finish()
    assert struct.unpack_from("<I", data, 0)[0] == 16
    assert len(data) == 24
    assert data[4:8] == bytes(4)
#end test_array_of_int64_length_excludes_padding

def test_array_of_strings() :
    w = le_writer()
    handle = w.add_array_begin("s")
    w.add_string("a").add_string("bb")
    w.add_array_end(handle)
    assert w.finish() == \
        (
            b"\x0f\x00\x00\x00"
            b"\x01\x00\x00\x00a\x00"
            b"\x00\x00"
            b"\x02\x00\x00\x00bb\x00"
        )
    assert str(w.signature) == "as"
#end test_array_of_strings

def test_empty_array_still_pads_to_element() :
    w = le_writer()
    handle = w.add_array_begin("(ii)")
    w.add_array_end(handle)
    assert w.finish() == bytes(8)
#end test_empty_array_still_pads_to_element

def test_dict() :
    w = le_writer()
    handle = w.add_array_begin("{sv}")
    w.add_dict_entry().add_string("k").add_variant("u").add_uint32(7)
    w.add_array_end(handle)
    data = w.finish()
    assert str(w.signature) == "a{sv}"
    assert data == \
        (
            b"\x10\x00\x00\x00" # length 16
            b"\x00\x00\x00\x00" # padding to dict entry
            b"\x01\x00\x00\x00k\x00"
            b"\x01u\x00"
            b"\x00\x00\x00" # padding to uint32
            b"\x07\x00\x00\x00"
        )
#end test_dict

def test_dict_entry_outside_array() :
    w = le_writer()
    with pytest.raises(InvalidSignature) :
        w.add_dict_entry()
    #end with
#end test_dict_entry_outside_array

def test_array_end_without_array() :
    w = le_writer()
    inner = Writer(16, DBUS.LITTLE_ENDIAN).add_array_begin("i")
    with pytest.raises(InvalidSignature) :
        w.add_array_end(inner)
    #end with
    handle = w.add_array_begin("(ii)")
    w.add_structure().add_int32(1)
    with pytest.raises(InvalidSignature) :
        w.add_array_end(handle)
    #end with
#end test_array_end_without_array

def test_unclosed_array_rejected_on_finish() :
    w = le_writer()
    w.add_array_begin("i")
    with pytest.raises(InvalidSignature) :
        w.finish()
    #end with
#end test_unclosed_array_rejected_on_finish

def test_overflow_leaves_buffer_untouched() :
    w = le_writer(capacity = 10)
    w.add_byte(1)
    with pytest.raises(BufferOverflow) :
        w.add_int64(2)
    #end with
    assert w.offset == 1
    assert w.data == b"\x01"
    assert str(w.signature) == "y"
    w.add_int32(3)
    assert len(w) == 8
    with pytest.raises(BufferOverflow) :
        w.add_string("abc")
    #end with
    assert len(w) == 8
#end test_overflow_leaves_buffer_untouched

def test_values_checked_against_fixed_signature() :
    w = le_writer(signature = "ias")
    with pytest.raises(TypeMismatch) :
        w.add_string("no")
    #end with
    w.add_int32(1)
    with pytest.raises(TypeMismatch) :
        w.add_array_begin("i")
    #end with
    handle = w.add_array_begin()
    w.add_string("yes")
    with pytest.raises(TypeMismatch) :
        w.add_int32(2)
    #end with
    w.add_array_end(handle)
    with pytest.raises(TypeMismatch) :
        w.add_byte(0)
    #end with
    w.finish()
#end test_values_checked_against_fixed_signature

def test_missing_values_rejected() :
    w = le_writer(signature = "ii")
    w.add_int32(1)
    with pytest.raises(TypeMismatch) :
        w.finish()
    #end with
#end test_missing_values_rejected

@pytest.mark.parametrize \
  (
    "adder, value",
    [
        ("add_byte", 256),
        ("add_byte", -1),
        ("add_int16", 0x8000),
        ("add_uint32", -1),
        ("add_int32", "1"),
        ("add_boolean", 2),
        ("add_double", "0.5"),
        ("add_double", 10 ** 400),
        ("add_string", b"bytes"),
        ("add_string", "nul\x00inside"),
        ("add_object_path", "not/a/path"),
    ]
  )
def test_bad_values(adder, value) :
    w = le_writer()
    with pytest.raises(TypeMismatch) :
        getattr(w, adder)(value)
    #end with
    assert w.offset == 0
#end test_bad_values

def test_variant_checks_contents() :
    w = le_writer()
    w.add_variant("s")
    with pytest.raises(TypeMismatch) :
        w.add_int32(1)
    #end with
    w.add_string("ok")
    assert str(w.signature) == "v"
    assert w.finish() == b"\x01s\x00\x00\x02\x00\x00\x00ok\x00"
#end test_variant_checks_contents

def test_signature_value() :
    w = le_writer()
    w.add_signature("a{sv}")
    assert w.finish() == b"\x05a{sv}\x00"
    with pytest.raises(InvalidSignature) :
        le_writer().add_signature("a{")
    #end with
#end test_signature_value

def test_add_objects() :
    w = le_writer()
    w.add_objects \
      (
        "sa{sv}(ib)ay",
        [
            "name",
            {"b" : ("i", 2), "a" : ("s", "x")},
            (1, False),
            b"\x01\x02",
        ]
      )
    assert str(w.signature) == "sa{sv}(ib)ay"
    w.finish()
    with pytest.raises(TypeMismatch) :
        le_writer().add_objects("ii", [1])
    #end with
    with pytest.raises(TypeMismatch) :
        le_writer().add_objects("(ii)", [(1,)])
    #end with
#end test_add_objects
