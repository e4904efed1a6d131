"""
Pure-Python implementation of the D-Bus <https://www.freedesktop.org/wiki/Software/dbus/>
wire protocol: type signatures, marshalling and unmarshalling of message
bodies, message framing, and the textual AUTH handshake that precedes
message exchange on a bus connection.

No libdbus is needed: all transfers go through an IOChannel, which wraps
whatever pair of read/write callables the caller supplies (a socket, a pipe,
an in-memory buffer for testing).
"""
#+
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import sys
import enum
import re
import struct
import logging

_log = logging.getLogger(__name__)

class DBUS :
    "useful definitions adapted from the D-Bus protocol specification. You will" \
    " need to use the constants, but apart from that, see the more Pythonic wrappers" \
    " defined outside this class in preference to the raw tables here."

    # Message byte order
    LITTLE_ENDIAN = 'l'
    BIG_ENDIAN = 'B'
    NATIVE_BYTE_ORDER = (BIG_ENDIAN, LITTLE_ENDIAN)[sys.byteorder == "little"]
    struct_order = {LITTLE_ENDIAN : "<", BIG_ENDIAN : ">"}

    # Protocol version.
    MAJOR_PROTOCOL_VERSION = 1

    # Type code that is never equal to a legitimate type code
    TYPE_INVALID = 0

    # Primitive types
    TYPE_BYTE = ord('y') # 8-bit unsigned integer
    TYPE_BOOLEAN = ord('b') # boolean
    TYPE_INT16 = ord('n') # 16-bit signed integer
    TYPE_UINT16 = ord('q') # 16-bit unsigned integer
    TYPE_INT32 = ord('i') # 32-bit signed integer
    TYPE_UINT32 = ord('u') # 32-bit unsigned integer
    TYPE_INT64 = ord('x') # 64-bit signed integer
    TYPE_UINT64 = ord('t') # 64-bit unsigned integer
    TYPE_DOUBLE = ord('d') # 8-byte double in IEEE 754 format
    TYPE_STRING = ord('s') # UTF-8 encoded, nul-terminated Unicode string
    TYPE_OBJECT_PATH = ord('o') # D-Bus object path
    TYPE_SIGNATURE = ord('g') # D-Bus type signature
    TYPE_UNIX_FD = ord('h') # unix file descriptor

    # Compound types
    TYPE_ARRAY = ord('a') # D-Bus array type
    TYPE_VARIANT = ord('v') # D-Bus variant type

    TYPE_STRUCT = ord('r') # a struct; however, type signatures use STRUCT_BEGIN/END_CHAR
    TYPE_DICT_ENTRY = ord('e') # a dict entry; however, type signatures use DICT_ENTRY_BEGIN/END_CHAR

    STRUCT_BEGIN_CHAR = ord('(')
    STRUCT_END_CHAR = ord(')')
    DICT_ENTRY_BEGIN_CHAR = ord('{')
    DICT_ENTRY_END_CHAR = ord('}')

    basic_to_struct = \
        { # struct module format codes for fixed-size basic types
            TYPE_BYTE : "B",
            TYPE_BOOLEAN : "I", # 32 bits on the wire, only 0 or 1 allowed
            TYPE_INT16 : "h",
            TYPE_UINT16 : "H",
            TYPE_INT32 : "i",
            TYPE_UINT32 : "I",
            TYPE_INT64 : "q",
            TYPE_UINT64 : "Q",
            TYPE_DOUBLE : "d",
            TYPE_UNIX_FD : "I", # index into out-of-band fd array
        }

    type_alignment = \
        {
            TYPE_BYTE : 1,
            TYPE_BOOLEAN : 4,
            TYPE_INT16 : 2,
            TYPE_UINT16 : 2,
            TYPE_INT32 : 4,
            TYPE_UINT32 : 4,
            TYPE_INT64 : 8,
            TYPE_UINT64 : 8,
            TYPE_DOUBLE : 8,
            TYPE_STRING : 4, # length word
            TYPE_OBJECT_PATH : 4, # length word
            TYPE_SIGNATURE : 1, # length byte
            TYPE_UNIX_FD : 4,
            TYPE_ARRAY : 4, # length word
            TYPE_VARIANT : 1, # signature length byte
            STRUCT_BEGIN_CHAR : 8,
            DICT_ENTRY_BEGIN_CHAR : 8,
        }

    basic_types = frozenset \
      (
        (
            TYPE_BYTE,
            TYPE_BOOLEAN,
            TYPE_INT16,
            TYPE_UINT16,
            TYPE_INT32,
            TYPE_UINT32,
            TYPE_INT64,
            TYPE_UINT64,
            TYPE_DOUBLE,
            TYPE_STRING,
            TYPE_OBJECT_PATH,
            TYPE_SIGNATURE,
            TYPE_UNIX_FD,
        )
      )
    fixed_types = frozenset(basic_to_struct.keys())
    int_ranges = \
        {
            TYPE_BYTE : (0, 0xff),
            TYPE_INT16 : (- 0x8000, 0x7fff),
            TYPE_UINT16 : (0, 0xffff),
            TYPE_INT32 : (- 0x80000000, 0x7fffffff),
            TYPE_UINT32 : (0, 0xffffffff),
            TYPE_INT64 : (- 0x8000000000000000, 0x7fffffffffffffff),
            TYPE_UINT64 : (0, 0xffffffffffffffff),
            TYPE_UNIX_FD : (0, 0xffffffff),
        }

    def int_convert(typecode, val) :
        "checks that val is an integer that fits in the range for typecode," \
        " raising TypeMismatch if not."
        if isinstance(val, bool) or not isinstance(val, int) :
            raise TypeMismatch("expecting integer for type %s, got %r" % (chr(typecode), val))
        #end if
        lo, hi = DBUS.int_ranges[typecode]
        if val < lo or val > hi :
            raise TypeMismatch("value %d out of range for type %s" % (val, chr(typecode)))
        #end if
        return \
            val
    #end int_convert

    class ObjectPath(str) :
        "use this to pass object path strings to Message.append_objects()."
        pass
    #end ObjectPath

    class Signature(str) :
        "use this to pass signature strings to Message.append_objects()."
        pass
    #end Signature

    # Max length in bytes of a bus name, interface, or member (not object
    # path, paths are unlimited).
    MAXIMUM_NAME_LENGTH = 255

    # Max length of a marshaled type signature; also the capacity of a TypeSignature.
    MAXIMUM_SIGNATURE_LENGTH = 255

    # Maximum length of an array body in bytes
    MAXIMUM_ARRAY_LENGTH = 67108864 # 2 ** 26

    # Maximum length of a whole message
    MAXIMUM_MESSAGE_LENGTH = 134217728 # 2 ** 27

    # Max depth of container type components
    MAXIMUM_TYPE_RECURSION_DEPTH = 32

    # Types of message
    MESSAGE_TYPE_INVALID = 0 # never a valid message type
    MESSAGE_TYPE_METHOD_CALL = 1
    MESSAGE_TYPE_METHOD_RETURN = 2
    MESSAGE_TYPE_ERROR = 3
    MESSAGE_TYPE_SIGNAL = 4

    NUM_MESSAGE_TYPES = 5

    message_type_names = \
        {
            MESSAGE_TYPE_METHOD_CALL : "method_call",
            MESSAGE_TYPE_METHOD_RETURN : "method_return",
            MESSAGE_TYPE_ERROR : "error",
            MESSAGE_TYPE_SIGNAL : "signal",
        }

    # Header flags
    HEADER_FLAG_NO_REPLY_EXPECTED = 0x1
    HEADER_FLAG_NO_AUTO_START = 0x2
    HEADER_FLAG_ALLOW_INTERACTIVE_AUTHORIZATION = 0x4

    # Header fields
    HEADER_FIELD_INVALID = 0
    HEADER_FIELD_PATH = 1
    HEADER_FIELD_INTERFACE = 2
    HEADER_FIELD_MEMBER = 3
    HEADER_FIELD_ERROR_NAME = 4
    HEADER_FIELD_REPLY_SERIAL = 5
    HEADER_FIELD_DESTINATION = 6
    HEADER_FIELD_SENDER = 7
    HEADER_FIELD_SIGNATURE = 8
    HEADER_FIELD_UNIX_FDS = 9

    HEADER_FIELD_LAST = HEADER_FIELD_UNIX_FDS

    header_field_types = \
        { # type code of the variant value for each known header field
            HEADER_FIELD_PATH : TYPE_OBJECT_PATH,
            HEADER_FIELD_INTERFACE : TYPE_STRING,
            HEADER_FIELD_MEMBER : TYPE_STRING,
            HEADER_FIELD_ERROR_NAME : TYPE_STRING,
            HEADER_FIELD_REPLY_SERIAL : TYPE_UINT32,
            HEADER_FIELD_DESTINATION : TYPE_STRING,
            HEADER_FIELD_SENDER : TYPE_STRING,
            HEADER_FIELD_SIGNATURE : TYPE_SIGNATURE,
            HEADER_FIELD_UNIX_FDS : TYPE_UINT32,
        }

    header_field_names = \
        {
            HEADER_FIELD_PATH : "path",
            HEADER_FIELD_INTERFACE : "interface",
            HEADER_FIELD_MEMBER : "member",
            HEADER_FIELD_ERROR_NAME : "error_name",
            HEADER_FIELD_REPLY_SERIAL : "reply_serial",
            HEADER_FIELD_DESTINATION : "destination",
            HEADER_FIELD_SENDER : "sender",
            HEADER_FIELD_SIGNATURE : "signature",
            HEADER_FIELD_UNIX_FDS : "unix_fds",
        }

    header_fields_required = \
        {
            MESSAGE_TYPE_METHOD_CALL :
                (HEADER_FIELD_PATH, HEADER_FIELD_INTERFACE, HEADER_FIELD_MEMBER),
            MESSAGE_TYPE_METHOD_RETURN :
                (HEADER_FIELD_REPLY_SERIAL,),
            MESSAGE_TYPE_ERROR :
                (HEADER_FIELD_ERROR_NAME, HEADER_FIELD_REPLY_SERIAL),
            MESSAGE_TYPE_SIGNAL :
                (HEADER_FIELD_PATH, HEADER_FIELD_INTERFACE, HEADER_FIELD_MEMBER),
        }

    # Header format is defined as a signature:
    #   byte                            byte order
    #   byte                            message type ID
    #   byte                            flags
    #   byte                            protocol version
    #   uint32                          body length
    #   uint32                          serial
    #   array of struct (byte,variant)  (field name, value)
    HEADER_SIGNATURE = b"yyyyuua(yv)"

    # Size of the fixed portion of the header, plus the length word of the field array
    MINIMUM_HEADER_SIZE = 16
    HEADER_ARRAY_LENGTH_OFFSET = 12

    # Errors
    ERROR_PREFIX = "org.freedesktop.DBus.Error"
    ERROR_FAILED = ERROR_PREFIX + ".Failed" # generic error
    ERROR_NO_MEMORY = ERROR_PREFIX + ".NoMemory"
    ERROR_IO_ERROR = ERROR_PREFIX + ".IOError"
    ERROR_BAD_ADDRESS = ERROR_PREFIX + ".BadAddress"
    ERROR_NOT_SUPPORTED = ERROR_PREFIX + ".NotSupported"
    ERROR_LIMITS_EXCEEDED = ERROR_PREFIX + ".LimitsExceeded"
    ERROR_ACCESS_DENIED = ERROR_PREFIX + ".AccessDenied"
    ERROR_AUTH_FAILED = ERROR_PREFIX + ".AuthFailed"
    ERROR_NO_REPLY = ERROR_PREFIX + ".NoReply"
    ERROR_DISCONNECTED = ERROR_PREFIX + ".Disconnected"
    ERROR_INVALID_ARGS = ERROR_PREFIX + ".InvalidArgs"
    ERROR_UNKNOWN_METHOD = ERROR_PREFIX + ".UnknownMethod"
    ERROR_INVALID_SIGNATURE = ERROR_PREFIX + ".InvalidSignature"
    ERROR_INCONSISTENT_MESSAGE = ERROR_PREFIX + ".InconsistentMessage"
    ERROR_PROPERTY_READ_ONLY = ERROR_PREFIX + ".PropertyReadOnly"

    # Standard bus name, object path and interface
    SERVICE_DBUS = "org.freedesktop.DBus"
    PATH_DBUS = "/org/freedesktop/DBus"
    PATH_LOCAL = "/org/freedesktop/DBus/Local"
    INTERFACE_DBUS = "org.freedesktop.DBus"
    INTERFACE_INTROSPECTABLE = "org.freedesktop.DBus.Introspectable"
    INTERFACE_PROPERTIES = "org.freedesktop.DBus.Properties"
    INTERFACE_PEER = "org.freedesktop.DBus.Peer"
    INTERFACE_LOCAL = "org.freedesktop.DBus.Local"

    # Authentication mechanisms
    AUTH_MECHANISM_EXTERNAL = "EXTERNAL"
    AUTH_MECHANISM_COOKIE_SHA1 = "DBUS_COOKIE_SHA1"
    AUTH_MECHANISM_ANONYMOUS = "ANONYMOUS"

    # Longest line either side will accept during authentication
    MAX_AUTH_LINE_LENGTH = 16384

#end DBUS

#+
# Exceptions
#-

class DBusError(Exception) :
    "for raising an exception that reports a D-Bus error name and accompanying message."

    def __init__(self, name, message) :
        self.args = ("%s -- %s" % (name, message),)
        self.name = name
        self.message = message
    #end __init__

#end DBusError

class DBusFailure(DBusError) :
    "base class for the failure categories raised by this module; each subclass" \
    " maps to a fixed D-Bus error name."

    error_name = DBUS.ERROR_FAILED

    def __init__(self, message) :
        super().__init__(self.error_name, message)
    #end __init__

#end DBusFailure

class BufferOverflow(DBusFailure) :
    "a value would not fit in the remaining capacity of a Writer."
    error_name = DBUS.ERROR_LIMITS_EXCEEDED
#end BufferOverflow

class OutOfData(DBusFailure) :
    "a Reader ran off the end of its data."
    error_name = DBUS.ERROR_INCONSISTENT_MESSAGE
#end OutOfData

class InvalidSignature(DBusFailure) :
    "a type signature is malformed, too long, or containers were not properly nested."
    error_name = DBUS.ERROR_INVALID_SIGNATURE
#end InvalidSignature

class ModeViolation(DBusFailure) :
    "a write operation on a received message, or a read on one being built."
    error_name = DBUS.ERROR_FAILED
#end ModeViolation

class TypeMismatch(DBusFailure) :
    "the value being written or read does not agree with the expected type."
    error_name = DBUS.ERROR_INVALID_ARGS
#end TypeMismatch

class ProtocolError(DBusFailure) :
    "a message violates the framing rules, or the connection is in the wrong state."
    error_name = DBUS.ERROR_INCONSISTENT_MESSAGE
#end ProtocolError

class IOFailure(DBusFailure) :
    "the underlying channel could not transfer the requested bytes."
    error_name = DBUS.ERROR_IO_ERROR
#end IOFailure

class AuthFailure(DBusFailure) :
    "the server rejected authentication. The mechanisms attribute lists any" \
    " alternatives the server offered."
    error_name = DBUS.ERROR_AUTH_FAILED

    def __init__(self, message, mechanisms = ()) :
        super().__init__(message)
        self.mechanisms = tuple(mechanisms)
    #end __init__

#end AuthFailure

#+
# Type signatures
#-

def type_is_basic(typecode) :
    "is typecode one of the basic (non-container) types."
    return \
        typecode in DBUS.basic_types
#end type_is_basic

def type_is_fixed(typecode) :
    "is typecode one of the fixed-size basic types."
    return \
        typecode in DBUS.fixed_types
#end type_is_fixed

def type_is_container(typecode) :
    return \
        typecode in (DBUS.TYPE_ARRAY, DBUS.TYPE_VARIANT, DBUS.STRUCT_BEGIN_CHAR, DBUS.DICT_ENTRY_BEGIN_CHAR)
#end type_is_container

def type_is_valid(typecode) :
    return \
        typecode in DBUS.basic_types or type_is_container(typecode)
#end type_is_valid

def _sigstr(codes) :
    return \
        bytes(codes).decode("ascii", "replace")
#end _sigstr

def _to_codes(signature) :
    "converts signature (str, bytes or TypeSignature) to a bytes object of type codes."
    if isinstance(signature, TypeSignature) :
        result = bytes(signature._codes)
    elif isinstance(signature, str) :
        try :
            result = signature.encode("ascii")
        except UnicodeEncodeError as fail :
            raise InvalidSignature("non-ASCII character in signature %r" % signature) from fail
        #end try
    elif isinstance(signature, (bytes, bytearray, memoryview)) :
        result = bytes(signature)
    else :
        raise TypeError("signature must be str, bytes or TypeSignature, not %s" % type(signature).__name__)
    #end if
    return \
        result
#end _to_codes

def _type_end(codes, pos, array_depth = 0, struct_depth = 0, in_array = False) :
    "returns the index just past the single complete type starting at codes[pos]," \
    " raising InvalidSignature if no valid complete type starts there. A dict entry" \
    " is only allowed if in_array."
    if pos >= len(codes) :
        raise InvalidSignature("incomplete type in signature %r" % _sigstr(codes))
    #end if
    code = codes[pos]
    if code in DBUS.basic_types or code == DBUS.TYPE_VARIANT :
        end = pos + 1
    elif code == DBUS.TYPE_ARRAY :
        if array_depth >= DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
            raise InvalidSignature("arrays nested too deeply in %r" % _sigstr(codes))
        #end if
        end = _type_end(codes, pos + 1, array_depth + 1, struct_depth, True)
    elif code == DBUS.STRUCT_BEGIN_CHAR :
        if struct_depth >= DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
            raise InvalidSignature("structs nested too deeply in %r" % _sigstr(codes))
        #end if
        pos += 1
        if pos < len(codes) and codes[pos] == DBUS.STRUCT_END_CHAR :
            raise InvalidSignature("empty struct in %r" % _sigstr(codes))
        #end if
        while True :
            if pos >= len(codes) :
                raise InvalidSignature("unterminated struct in %r" % _sigstr(codes))
            #end if
            if codes[pos] == DBUS.STRUCT_END_CHAR :
                break
            pos = _type_end(codes, pos, array_depth, struct_depth + 1)
        #end while
        end = pos + 1
    elif code == DBUS.DICT_ENTRY_BEGIN_CHAR and in_array :
        if struct_depth >= DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
            raise InvalidSignature("dict entries nested too deeply in %r" % _sigstr(codes))
        #end if
        pos += 1
        if pos >= len(codes) or codes[pos] not in DBUS.basic_types :
            raise InvalidSignature("dict entry key must be a basic type in %r" % _sigstr(codes))
        #end if
        pos = _type_end(codes, pos + 1, array_depth, struct_depth + 1)
        if pos >= len(codes) or codes[pos] != DBUS.DICT_ENTRY_END_CHAR :
            raise InvalidSignature \
              (
                "dict entry must have exactly one key and one value in %r" % _sigstr(codes)
              )
        #end if
        end = pos + 1
    elif code == DBUS.DICT_ENTRY_BEGIN_CHAR :
        raise InvalidSignature("dict entry outside array in %r" % _sigstr(codes))
    else :
        raise InvalidSignature("invalid type code %r in %r" % (chr(code), _sigstr(codes)))
    #end if
    return \
        end
#end _type_end

def _split_codes(codes) :
    "splits a bytes signature into a list of bytes objects, one per complete type."
    result = []
    pos = 0
    while pos < len(codes) :
        end = _type_end(codes, pos)
        result.append(codes[pos:end])
        pos = end
    #end while
    return \
        result
#end _split_codes

def _parse_single(signature, in_array = False) :
    "parses signature as exactly one complete type, returning it as bytes."
    codes = _to_codes(signature)
    if len(codes) == 0 or _type_end(codes, 0, in_array = in_array) != len(codes) :
        raise InvalidSignature("%r is not a single complete type" % _sigstr(codes))
    #end if
    return \
        codes
#end _parse_single

def parse_signature(signature) :
    "validates signature and returns a list of strings, one per complete type."
    codes = _to_codes(signature)
    if len(codes) > DBUS.MAXIMUM_SIGNATURE_LENGTH :
        raise InvalidSignature("signature too long: %d codes" % len(codes))
    #end if
    return \
        list(c.decode() for c in _split_codes(codes))
#end parse_signature

def unparse_signature(signature) :
    "converts a list of type strings back to a single signature string."
    if isinstance(signature, (list, tuple)) :
        signature = "".join(signature)
    #end if
    return \
        signature
#end unparse_signature

def signature_validate(signature) :
    "is signature a valid sequence of zero or more complete types."
    try :
        parse_signature(signature)
        result = True
    except InvalidSignature :
        result = False
    #end try
    return \
        result
#end signature_validate

def signature_validate_single(signature) :
    "is signature a valid single complete type."
    try :
        _parse_single(signature)
        result = True
    except InvalidSignature :
        result = False
    #end try
    return \
        result
#end signature_validate_single

class TypeSignature :
    "an append-only sequence of type codes describing the shape of a message body" \
    " or variant payload, holding at most DBUS.MAXIMUM_SIGNATURE_LENGTH codes. Do" \
    " not instantiate directly for a complete signature; use TypeSignature.parse()," \
    " which validates. Appending code by code is allowed for building up a" \
    " signature, with validate() checking the result."

    __slots__ = ("_codes",) # to forestall typos

    def __init__(self) :
        self._codes = bytearray()
    #end __init__

    @classmethod
    def parse(celf, signature) :
        "returns a new TypeSignature for the validated signature string."
        result = celf()
        codes = _to_codes(signature)
        parse_signature(codes)
        result._codes.extend(codes)
        return \
            result
    #end parse

    @property
    def capacity(self) :
        return \
            DBUS.MAXIMUM_SIGNATURE_LENGTH
    #end capacity

    def append(self, typecode) :
        "appends a single type code; raises InvalidSignature if full or not a" \
        " recognized code."
        if isinstance(typecode, str) :
            typecode = ord(typecode)
        #end if
        if not (type_is_valid(typecode) or typecode in (DBUS.STRUCT_END_CHAR, DBUS.DICT_ENTRY_END_CHAR)) :
            raise InvalidSignature("invalid type code %r" % typecode)
        #end if
        if len(self._codes) >= DBUS.MAXIMUM_SIGNATURE_LENGTH :
            raise InvalidSignature("signature capacity %d exceeded" % DBUS.MAXIMUM_SIGNATURE_LENGTH)
        #end if
        self._codes.append(typecode)
        return \
            self
    #end append

    def extend(self, codes) :
        "appends a whole sequence of type codes, all or nothing."
        codes = _to_codes(codes)
        if len(self._codes) + len(codes) > DBUS.MAXIMUM_SIGNATURE_LENGTH :
            raise InvalidSignature("signature capacity %d exceeded" % DBUS.MAXIMUM_SIGNATURE_LENGTH)
        #end if
        for code in codes :
            if not (type_is_valid(code) or code in (DBUS.STRUCT_END_CHAR, DBUS.DICT_ENTRY_END_CHAR)) :
                raise InvalidSignature("invalid type code %r in %r" % (code, _sigstr(codes)))
            #end if
        #end for
        self._codes.extend(codes)
        return \
            self
    #end extend

    def validate(self) :
        "raises InvalidSignature if the codes so far do not form a sequence of" \
        " complete types."
        _split_codes(bytes(self._codes))
        return \
            self
    #end validate

    def split(self) :
        "returns a list of the complete types in this signature, as strings."
        return \
            list(c.decode() for c in _split_codes(bytes(self._codes)))
    #end split

    def __len__(self) :
        return \
            len(self._codes)
    #end __len__

    def __iter__(self) :
        return \
            iter(self._codes)
    #end __iter__

    def __getitem__(self, index) :
        return \
            self._codes[index]
    #end __getitem__

    def __eq__(self, other) :
        if isinstance(other, TypeSignature) :
            result = self._codes == other._codes
        elif isinstance(other, (str, bytes)) :
            result = bytes(self._codes) == _to_codes(other)
        else :
            result = NotImplemented
        #end if
        return \
            result
    #end __eq__

    __hash__ = None

    def __bytes__(self) :
        return \
            bytes(self._codes)
    #end __bytes__

    def __str__(self) :
        return \
            self._codes.decode()
    #end __str__

    def __repr__(self) :
        return \
            "%s(%r)" % (type(self).__name__, str(self))
    #end __repr__

#end TypeSignature

def _padding(offset, alignment) :
    "number of zero bytes needed to bring offset up to a multiple of alignment."
    return \
        - offset % alignment
#end _padding

def _encode_string(val) :
    if not isinstance(val, str) :
        raise TypeMismatch("expecting str, got %s" % type(val).__name__)
    #end if
    if "\x00" in val :
        raise TypeMismatch("embedded NUL in string %r" % val)
    #end if
    try :
        result = val.encode("utf-8")
    except UnicodeEncodeError as fail :
        raise TypeMismatch("cannot encode %r as UTF-8" % val) from fail
    #end try
    return \
        result
#end _encode_string

#+
# Marshalling and unmarshalling
#-

class _Container :
    "one level of nesting in a Writer or Reader: the body itself, an array, a" \
    " struct, a dict entry or a variant. expect is the list of complete types to" \
    " come (for an array, the single element type), or None if the types are being" \
    " recorded as values are added."

    __slots__ = ("kind", "expect", "pos", "count", "handle", "record") # to forestall typos

    def __init__(self, kind, expect, handle = None, record = None) :
        self.kind = kind
        self.expect = expect
        self.pos = 0
        self.count = 0
        self.handle = handle
        self.record = record
    #end __init__

    def describe(self) :
        return \
            {
                None : "body",
                DBUS.TYPE_ARRAY : "array",
                DBUS.STRUCT_BEGIN_CHAR : "struct",
                DBUS.DICT_ENTRY_BEGIN_CHAR : "dict entry",
                DBUS.TYPE_VARIANT : "variant",
            }[self.kind]
    #end describe

#end _Container

class _TypeCursor :
    "common signature-tracking logic for Writer and Reader. Alignment is always" \
    " computed relative to the anchor offset, which marks the start of the body."

    __slots__ = ("byteorder", "_order", "_offset", "_anchor", "_containers", "_auto_closed")

    def _init_cursor(self, byteorder, signature, offset, anchor) :
        if byteorder not in DBUS.struct_order :
            raise ProtocolError("invalid byte order %r" % (byteorder,))
        #end if
        self.byteorder = byteorder
        self._order = DBUS.struct_order[byteorder]
        self._offset = offset
        self._anchor = anchor
        if signature == None :
            top = _Container(None, None, record = TypeSignature())
        else :
            top = _Container(None, list(c.encode() for c in parse_signature(signature)))
        #end if
        self._containers = [top]
        self._auto_closed = 0
    #end _init_cursor

    @property
    def offset(self) :
        "the current cursor position."
        return \
            self._offset
    #end offset

    @property
    def depth(self) :
        "the number of containers currently open."
        return \
            len(self._containers) - 1
    #end depth

    @property
    def signature(self) :
        "the TypeSignature of the body: recorded so far, or as fixed at creation."
        top = self._containers[0]
        if top.expect == None :
            result = TypeSignature().extend(top.record)
        else :
            result = TypeSignature.parse(b"".join(top.expect))
        #end if
        return \
            result
    #end signature

    def _padding(self, alignment) :
        return \
            _padding(self._offset - self._anchor, alignment)
    #end _padding

    def _expect(self, typecode) :
        "checks that a value with the given type code may come next, returning the" \
        " complete type expected, or None if types are being recorded. Changes no state."
        top = self._containers[-1]
        if top.expect == None :
            result = None
        else :
            if top.kind == DBUS.TYPE_ARRAY :
                result = top.expect[0]
            elif top.pos < len(top.expect) :
                result = top.expect[top.pos]
            else :
                raise TypeMismatch \
                  (
                    "no more values expected in %s, got %s" % (top.describe(), chr(typecode))
                  )
            #end if
            if result[0] != typecode :
                raise TypeMismatch \
                  (
                    "expecting %s in %s, got %s" % (result.decode(), top.describe(), chr(typecode))
                  )
            #end if
        #end if
        return \
            result
    #end _expect

    def _commit(self, codes) :
        "marks a value of complete type codes as started in the current container."
        top = self._containers[-1]
        self._auto_closed = 0
        if top.expect == None :
            top.record.extend(codes)
        elif top.kind == DBUS.TYPE_ARRAY :
            top.count += 1
        else :
            top.pos += 1
        #end if
    #end _commit

    def _push(self, container) :
        if len(self._containers) > 2 * DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
            raise InvalidSignature("containers nested too deeply")
        #end if
        self._auto_closed = 0
        self._containers.append(container)
    #end _push

    def _value_done(self) :
        "closes any struct, dict entry or variant whose last member has now been completed."
        while True :
            top = self._containers[-1]
            if (
                    top.kind in (DBUS.STRUCT_BEGIN_CHAR, DBUS.DICT_ENTRY_BEGIN_CHAR, DBUS.TYPE_VARIANT)
                and
                    top.expect != None
                and
                    top.pos == len(top.expect)
            ) :
                self._containers.pop()
                if top.kind == DBUS.STRUCT_BEGIN_CHAR :
                    self._auto_closed += 1
                #end if
            else :
                break
            #end if
        #end while
    #end _value_done

    def _struct_members(self, expected, signature) :
        "works out the member types of a struct about to be opened."
        if signature != None :
            signature = _to_codes(signature)
            full = _parse_single(b"(" + signature + b")")
            if expected != None and full != expected :
                raise TypeMismatch \
                  (
                    "expecting %s, got struct %s" % (expected.decode(), _sigstr(full))
                  )
            #end if
        elif expected != None :
            full = expected
        else :
            full = None
        #end if
        return \
            full
    #end _struct_members

#end _TypeCursor

class ArrayWriter :
    "handle returned by Writer.add_array_begin(), to be passed to add_array_end()."

    __slots__ = ("length_offset", "start", "element_signature") # to forestall typos

    def __init__(self, length_offset, start, element_signature) :
        self.length_offset = length_offset
        self.start = start
        self.element_signature = element_signature
    #end __init__

    def __repr__(self) :
        return \
            "%s(length_offset = %d, start = %d)" % (type(self).__name__, self.length_offset, self.start)
    #end __repr__

#end ArrayWriter

class ArrayReader :
    "handle returned by Reader.get_array(), bounding iteration over the array contents."

    __slots__ = ("length", "end", "element_signature") # to forestall typos

    def __init__(self, length, end, element_signature) :
        self.length = length
        self.end = end
        self.element_signature = element_signature
    #end __init__

    def __repr__(self) :
        return \
            "%s(length = %d, end = %d)" % (type(self).__name__, self.length, self.end)
    #end __repr__

#end ArrayReader

class Writer(_TypeCursor) :
    "marshals values into a growing buffer that may never exceed capacity bytes." \
    " If signature is given, every value added is checked against it; otherwise" \
    " the signature is recorded from the sequence of add calls. All add_xxx calls" \
    " for basic types return the Writer, so they can be chained. A failing add" \
    " leaves the buffer and cursor unchanged." \
    " Booleans take 4 bytes and variants align to 1, as the wire protocol requires."

    __slots__ = ("capacity", "_buf")

    def __init__(self, capacity, byteorder = DBUS.NATIVE_BYTE_ORDER, signature = None, anchor = 0) :
        if capacity < 0 :
            raise ValueError("capacity must not be negative")
        #end if
        self.capacity = capacity
        self._buf = bytearray()
        self._init_cursor(byteorder, signature, 0, anchor)
    #end __init__

    @property
    def data(self) :
        "the bytes written so far."
        return \
            bytes(self._buf)
    #end data

    def __len__(self) :
        return \
            len(self._buf)
    #end __len__

    def _reserve(self, count) :
        "checks there is room for count more bytes."
        if self._offset + count > self.capacity :
            raise BufferOverflow \
              (
                "need %d bytes at offset %d, capacity is %d" % (count, self._offset, self.capacity)
              )
        #end if
    #end _reserve

    def _put(self, pad, data = b"") :
        self._buf.extend(bytes(pad))
        self._buf.extend(data)
        self._offset += pad + len(data)
    #end _put

    def _add_fixed(self, typecode, val) :
        if typecode == DBUS.TYPE_DOUBLE :
            if isinstance(val, bool) or not isinstance(val, (int, float)) :
                raise TypeMismatch("expecting float, got %r" % (val,))
            #end if
            try :
                val = float(val)
            except OverflowError :
                raise TypeMismatch("value %d too large for a double" % val)
            #end try
        elif typecode == DBUS.TYPE_BOOLEAN :
            if isinstance(val, int) and val in (0, 1) :
                val = int(val)
            else :
                raise TypeMismatch("expecting boolean, got %r" % (val,))
            #end if
        else :
            val = DBUS.int_convert(typecode, val)
        #end if
        data = struct.pack(self._order + DBUS.basic_to_struct[typecode], val)
        pad = self._padding(DBUS.type_alignment[typecode])
        self._reserve(pad + len(data))
        self._expect(typecode)
        self._commit(bytes((typecode,)))
        self._put(pad, data)
        self._value_done()
        return \
            self
    #end _add_fixed

    def add_byte(self, val) :
        return \
            self._add_fixed(DBUS.TYPE_BYTE, val)
    #end add_byte

    def add_boolean(self, val) :
        return \
            self._add_fixed(DBUS.TYPE_BOOLEAN, val)
    #end add_boolean

    def add_int16(self, val) :
        return \
            self._add_fixed(DBUS.TYPE_INT16, val)
    #end add_int16

    def add_uint16(self, val) :
        return \
            self._add_fixed(DBUS.TYPE_UINT16, val)
    #end add_uint16

    def add_int32(self, val) :
        return \
            self._add_fixed(DBUS.TYPE_INT32, val)
    #end add_int32

    def add_uint32(self, val) :
        return \
            self._add_fixed(DBUS.TYPE_UINT32, val)
    #end add_uint32

    def add_int64(self, val) :
        return \
            self._add_fixed(DBUS.TYPE_INT64, val)
    #end add_int64

    def add_uint64(self, val) :
        return \
            self._add_fixed(DBUS.TYPE_UINT64, val)
    #end add_uint64

    def add_double(self, val) :
        return \
            self._add_fixed(DBUS.TYPE_DOUBLE, val)
    #end add_double

    def _add_string_like(self, typecode, data) :
        lenfmt = ("I", "B")[typecode == DBUS.TYPE_SIGNATURE]
        data = struct.pack(self._order + lenfmt, len(data)) + data + b"\x00"
        pad = self._padding(DBUS.type_alignment[typecode])
        self._reserve(pad + len(data))
        self._expect(typecode)
        self._commit(bytes((typecode,)))
        self._put(pad, data)
        self._value_done()
        return \
            self
    #end _add_string_like

    def add_string(self, val) :
        return \
            self._add_string_like(DBUS.TYPE_STRING, _encode_string(val))
    #end add_string

    def add_object_path(self, val) :
        data = _encode_string(val)
        if not validate_path(val) :
            raise TypeMismatch("invalid object path %r" % val)
        #end if
        return \
            self._add_string_like(DBUS.TYPE_OBJECT_PATH, data)
    #end add_object_path

    def add_signature(self, val) :
        "adds a signature value (type code g), not to be confused with the signature of the body."
        if isinstance(val, TypeSignature) :
            val = str(val)
        #end if
        data = _encode_string(val)
        parse_signature(data)
        return \
            self._add_string_like(DBUS.TYPE_SIGNATURE, data)
    #end add_signature

    def add_array_begin(self, element_signature = None) :
        "opens an array with the given element type, which may be omitted if the" \
        " Writer already knows what is expected. Returns an ArrayWriter to pass to" \
        " add_array_end() once all elements have been added."
        expected = self._expect(DBUS.TYPE_ARRAY)
        if element_signature != None :
            full = _parse_single(b"a" + _to_codes(element_signature))
            if expected != None and full != expected :
                raise TypeMismatch("expecting %s, got %s" % (expected.decode(), _sigstr(full)))
            #end if
        elif expected != None :
            full = expected
        else :
            raise InvalidSignature("need element signature for array")
        #end if
        elem = full[1:]
        pad = self._padding(4)
        elem_pad = _padding(self._offset + pad + 4 - self._anchor, DBUS.type_alignment[elem[0]])
        self._reserve(pad + 4 + elem_pad)
        self._commit(full)
        length_offset = self._offset + pad
        self._put(pad, bytes(4))
        self._put(elem_pad)
        handle = ArrayWriter(length_offset, self._offset, elem.decode())
        self._push(_Container(DBUS.TYPE_ARRAY, [elem], handle = handle))
        return \
            handle
    #end add_array_begin

    def add_array_end(self, handle) :
        "closes the innermost open array, filling in its length."
        top = self._containers[-1]
        if top.kind != DBUS.TYPE_ARRAY or top.handle is not handle :
            raise InvalidSignature \
              (
                "add_array_end does not match an open array (innermost container is %s)"
              %
                top.describe()
              )
        #end if
        length = self._offset - handle.start
        if length > DBUS.MAXIMUM_ARRAY_LENGTH :
            raise BufferOverflow("array length %d exceeds limit" % length)
        #end if
        struct.pack_into(self._order + "I", self._buf, handle.length_offset, length)
        self._containers.pop()
        self._value_done()
        return \
            self
    #end add_array_end

    def add_structure(self, signature = None) :
        "opens a struct. If its member types are known, either from the signature" \
        " argument or from an enclosing container, the struct closes itself after the" \
        " last member; otherwise add_structure_end() must be called."
        expected = self._expect(DBUS.STRUCT_BEGIN_CHAR)
        full = self._struct_members(expected, signature)
        pad = self._padding(8)
        self._reserve(pad)
        if full != None :
            self._commit(full)
            container = _Container(DBUS.STRUCT_BEGIN_CHAR, _split_codes(full[1:-1]))
        else :
            container = _Container(DBUS.STRUCT_BEGIN_CHAR, None, record = bytearray())
        #end if
        self._push(container)
        self._put(pad)
        return \
            self
    #end add_structure

    def add_structure_end(self) :
        "closes a struct opened without knowing its member types. Also accepted after" \
        " a struct that has already closed itself."
        top = self._containers[-1]
        if self._auto_closed > 0 :
            # pairs with the begin of a struct that closed itself
            self._auto_closed -= 1
        elif top.kind == DBUS.STRUCT_BEGIN_CHAR and top.expect == None :
            if len(top.record) == 0 :
                raise InvalidSignature("empty struct")
            #end if
            full = _parse_single(b"(" + bytes(top.record) + b")")
            self._containers.pop()
            try :
                self._commit(full)
            except DBusError :
                self._containers.append(top)
                raise
            #end try
            self._value_done()
        elif top.kind == DBUS.STRUCT_BEGIN_CHAR :
            raise InvalidSignature("struct not complete, %d members missing" % (len(top.expect) - top.pos))
        else :
            raise InvalidSignature("no open struct (innermost container is %s)" % top.describe())
        #end if
        return \
            self
    #end add_structure_end

    def add_dict_entry(self) :
        "opens a dict entry within an array of dict entries. The entry closes itself" \
        " once the key and the value have been added."
        expected = self._expect(DBUS.DICT_ENTRY_BEGIN_CHAR)
        if expected == None :
            raise InvalidSignature("dict entry only allowed as array element")
        #end if
        pad = self._padding(8)
        self._reserve(pad)
        self._commit(expected)
        self._push(_Container(DBUS.DICT_ENTRY_BEGIN_CHAR, _split_codes(expected[1:-1])))
        self._put(pad)
        return \
            self
    #end add_dict_entry

    def add_variant(self, signature) :
        "opens a variant holding a single value of the given type. The variant closes" \
        " itself once that value has been added."
        if isinstance(signature, TypeSignature) :
            signature = bytes(signature)
        #end if
        codes = _parse_single(signature)
        data = bytes((len(codes),)) + codes + b"\x00"
        self._reserve(len(data))
        self._expect(DBUS.TYPE_VARIANT)
        self._commit(b"v")
        self._push(_Container(DBUS.TYPE_VARIANT, [codes]))
        self._put(0, data)
        return \
            self
    #end add_variant

    def finish(self) :
        "closes any structs still being recorded, checks that nothing is left" \
        " incomplete, and returns the marshalled bytes."
        while True :
            top = self._containers[-1]
            if top.kind != DBUS.STRUCT_BEGIN_CHAR or top.expect != None :
                break
            self.add_structure_end()
        #end while
        if len(self._containers) > 1 :
            raise InvalidSignature("%s left open" % self._containers[-1].describe())
        #end if
        top = self._containers[0]
        if top.expect != None and top.pos < len(top.expect) :
            raise TypeMismatch \
              (
                "missing values for %s" % b"".join(top.expect[top.pos:]).decode()
              )
        #end if
        return \
            bytes(self._buf)
    #end finish

    def add_objects(self, signature, values) :
        "marshals a sequence of Python values according to signature: lists or" \
        " tuples for arrays and structs, dicts for arrays of dict entries, and" \
        " (signature, value) pairs for variants."
        types = list(c.encode() for c in parse_signature(signature))
        if not isinstance(values, (tuple, list)) or len(values) != len(types) :
            raise TypeMismatch("expecting %d values for %r" % (len(types), _sigstr(_to_codes(signature))))
        #end if
        for codes, val in zip(types, values) :
            self._add_object(codes, val)
        #end for
        return \
            self
    #end add_objects

    def _add_object(self, codes, val) :
        code = codes[0]
        if code in self._basic_adders :
            self._basic_adders[code](self, val)
        elif code == DBUS.TYPE_ARRAY :
            elem = codes[1:]
            handle = self.add_array_begin(elem)
            if elem[0] == DBUS.DICT_ENTRY_BEGIN_CHAR :
                if not isinstance(val, dict) :
                    raise TypeMismatch("dict expected for array of dict entry")
                #end if
                keytype, valuetype = _split_codes(elem[1:-1])
                for key in sorted(val) : # might as well insert in some kind of predictable order
                    self.add_dict_entry()
                    self._add_object(keytype, key)
                    self._add_object(valuetype, val[key])
                #end for
            else :
                if elem == b"y" and isinstance(val, (bytes, bytearray)) :
                    val = list(val)
                #end if
                if not isinstance(val, (tuple, list)) :
                    raise TypeMismatch("expecting sequence of values for array")
                #end if
                for elt in val :
                    self._add_object(elem, elt)
                #end for
            #end if
            self.add_array_end(handle)
        elif code == DBUS.STRUCT_BEGIN_CHAR :
            members = _split_codes(codes[1:-1])
            if not isinstance(val, (tuple, list)) or len(val) != len(members) :
                raise TypeMismatch("expecting %d values for struct %s" % (len(members), codes.decode()))
            #end if
            self.add_structure(codes[1:-1])
            for subcodes, elt in zip(members, val) :
                self._add_object(subcodes, elt)
            #end for
        elif code == DBUS.TYPE_VARIANT :
            if not isinstance(val, (list, tuple)) or len(val) != 2 :
                raise TypeMismatch("sequence of 2 elements expected for variant")
            #end if
            self.add_variant(val[0])
            self._add_object(_parse_single(val[0]), val[1])
        else :
            raise TypeMismatch("unsupported type %s" % chr(code))
        #end if
    #end _add_object

    _basic_adders = \
        {
            DBUS.TYPE_BYTE : add_byte,
            DBUS.TYPE_BOOLEAN : add_boolean,
            DBUS.TYPE_INT16 : add_int16,
            DBUS.TYPE_UINT16 : add_uint16,
            DBUS.TYPE_INT32 : add_int32,
            DBUS.TYPE_UINT32 : add_uint32,
            DBUS.TYPE_INT64 : add_int64,
            DBUS.TYPE_UINT64 : add_uint64,
            DBUS.TYPE_DOUBLE : add_double,
            DBUS.TYPE_STRING : add_string,
            DBUS.TYPE_OBJECT_PATH : add_object_path,
            DBUS.TYPE_SIGNATURE : add_signature,
        }

#end Writer

class Reader(_TypeCursor) :
    "unmarshals values from data, which is not copied. Reading starts at offset and" \
    " may not go beyond offset + length; alignment is computed relative to anchor" \
    " (defaults to offset). The get_xxx calls must follow the order dictated by" \
    " signature."

    __slots__ = ("_data", "_start", "_length")

    def __init__(self, data, byteorder, signature, offset = 0, length = None, anchor = None) :
        data = memoryview(data).cast("B")
        if length == None :
            length = len(data) - offset
        #end if
        if offset < 0 or length < 0 or offset + length > len(data) :
            raise OutOfData("reader bounds %d + %d exceed %d bytes of data" % (offset, length, len(data)))
        #end if
        if anchor == None :
            anchor = offset
        #end if
        self._data = data
        self._start = offset
        self._length = length
        self._init_cursor(byteorder, (signature, "")[signature == None], offset, anchor)
    #end __init__

    @property
    def data(self) :
        return \
            self._data[self._start : self._start + self._length]
    #end data

    @property
    def length(self) :
        "the declared length of the data to be read."
        return \
            self._length
    #end length

    @property
    def remaining(self) :
        "the number of bytes not yet consumed."
        return \
            self._start + self._length - self._offset
    #end remaining

    @property
    def at_end(self) :
        "have all values in the signature been read. Also closes any arrays whose" \
        " contents have been fully consumed, raising TypeMismatch if one overran its" \
        " declared length."
        self._close_arrays()
        top = self._containers[0]
        return \
            len(self._containers) == 1 and top.pos == len(top.expect)
    #end at_end

    def _bound(self) :
        "the offset that reads must not go beyond: the end of the innermost open" \
        " array, if any, else the end of the data."
        result = self._start + self._length
        for container in reversed(self._containers) :
            if container.kind == DBUS.TYPE_ARRAY :
                result = container.handle.end
                break
            #end if
        #end for
        return \
            result
    #end _bound

    def _take(self, alignment, size) :
        "skips padding to the given alignment, checking that it is zero, and returns" \
        " the next size bytes."
        pad = self._padding(alignment)
        end = self._offset + pad + size
        bound = self._bound()
        if end > bound :
            if end <= self._start + self._length :
                raise TypeMismatch("value at offset %d overruns enclosing array" % self._offset)
            #end if
            raise OutOfData \
              (
                "need %d bytes at offset %d, only %d available"
              %
                (pad + size, self._offset, self._start + self._length - self._offset)
              )
        #end if
        if any(self._data[self._offset : self._offset + pad]) :
            raise TypeMismatch("nonzero padding at offset %d" % self._offset)
        #end if
        result = self._data[self._offset + pad : end]
        self._offset = end
        return \
            result
    #end _take

    def _close_arrays(self) :
        "closes any arrays whose contents have now been entirely consumed."
        while True :
            top = self._containers[-1]
            if top.kind != DBUS.TYPE_ARRAY or self._offset < top.handle.end :
                break
            if self._offset > top.handle.end :
                raise TypeMismatch("array contents overrun declared length")
            #end if
            self._containers.pop()
            self._value_done()
        #end while
    #end _close_arrays

    def _begin(self, typecode) :
        self._close_arrays()
        return \
            self._expect(typecode)
    #end _begin

    def _get_fixed(self, typecode) :
        self._begin(typecode)
        fmt = self._order + DBUS.basic_to_struct[typecode]
        result = struct.unpack(fmt, self._take(DBUS.type_alignment[typecode], struct.calcsize(fmt)))[0]
        if typecode == DBUS.TYPE_BOOLEAN :
            if result not in (0, 1) :
                raise TypeMismatch("invalid boolean value %d" % result)
            #end if
            result = result != 0
        #end if
        self._commit(bytes((typecode,)))
        self._value_done()
        return \
            result
    #end _get_fixed

    def get_byte(self) :
        return \
            self._get_fixed(DBUS.TYPE_BYTE)
    #end get_byte

    def get_boolean(self) :
        return \
            self._get_fixed(DBUS.TYPE_BOOLEAN)
    #end get_boolean

    def get_int16(self) :
        return \
            self._get_fixed(DBUS.TYPE_INT16)
    #end get_int16

    def get_uint16(self) :
        return \
            self._get_fixed(DBUS.TYPE_UINT16)
    #end get_uint16

    def get_int32(self) :
        return \
            self._get_fixed(DBUS.TYPE_INT32)
    #end get_int32

    def get_uint32(self) :
        return \
            self._get_fixed(DBUS.TYPE_UINT32)
    #end get_uint32

    def get_int64(self) :
        return \
            self._get_fixed(DBUS.TYPE_INT64)
    #end get_int64

    def get_uint64(self) :
        return \
            self._get_fixed(DBUS.TYPE_UINT64)
    #end get_uint64

    def get_double(self) :
        return \
            self._get_fixed(DBUS.TYPE_DOUBLE)
    #end get_double

    def get_unix_fd(self) :
        "returns the index into the out-of-band descriptor array; the descriptors" \
        " themselves are not handled."
        return \
            self._get_fixed(DBUS.TYPE_UNIX_FD)
    #end get_unix_fd

    def _get_string_like(self, typecode) :
        self._begin(typecode)
        if typecode == DBUS.TYPE_SIGNATURE :
            length = self._take(1, 1)[0]
        else :
            length = struct.unpack(self._order + "I", self._take(4, 4))[0]
        #end if
        raw = self._take(1, length + 1)
        if raw[length] != 0 :
            raise TypeMismatch("string not NUL-terminated")
        #end if
        raw = bytes(raw[:length])
        if b"\x00" in raw :
            raise TypeMismatch("embedded NUL in string")
        #end if
        try :
            result = raw.decode("utf-8")
        except UnicodeDecodeError as fail :
            raise TypeMismatch("invalid UTF-8 in string") from fail
        #end try
        self._commit(bytes((typecode,)))
        self._value_done()
        return \
            result
    #end _get_string_like

    def get_string(self) :
        return \
            self._get_string_like(DBUS.TYPE_STRING)
    #end get_string

    def get_object_path(self) :
        result = self._get_string_like(DBUS.TYPE_OBJECT_PATH)
        if not validate_path(result) :
            raise TypeMismatch("invalid object path %r" % result)
        #end if
        return \
            DBUS.ObjectPath(result)
    #end get_object_path

    def get_signature(self) :
        result = self._get_string_like(DBUS.TYPE_SIGNATURE)
        parse_signature(result)
        return \
            DBUS.Signature(result)
    #end get_signature

    def get_array(self) :
        "enters an array, returning an ArrayReader handle. Elements are then read with" \
        " the usual get calls while get_array_left() reports more to come."
        expected = self._begin(DBUS.TYPE_ARRAY)
        length = struct.unpack(self._order + "I", self._take(4, 4))[0]
        if length > DBUS.MAXIMUM_ARRAY_LENGTH :
            raise ProtocolError("array length %d exceeds limit" % length)
        #end if
        elem = expected[1:]
        self._take(DBUS.type_alignment[elem[0]], 0)
        end = self._offset + length
        if end > self._bound() :
            raise OutOfData("array length %d runs past end of data" % length)
        #end if
        self._commit(expected)
        handle = ArrayReader(length, end, elem.decode())
        self._push(_Container(DBUS.TYPE_ARRAY, [elem], handle = handle))
        return \
            handle
    #end get_array

    def get_array_left(self, handle) :
        "returns the number of bytes of the array contents not yet read. Once this" \
        " reaches zero, the array is closed."
        result = max(handle.end - self._offset, 0)
        top = self._containers[-1]
        if result == 0 and top.kind == DBUS.TYPE_ARRAY and top.handle is handle :
            self._close_arrays()
        #end if
        return \
            result
    #end get_array_left

    def get_structure(self) :
        "enters a struct, returning its member signature. The struct is left" \
        " automatically after its last member has been read."
        expected = self._begin(DBUS.STRUCT_BEGIN_CHAR)
        self._take(8, 0)
        self._commit(expected)
        self._push(_Container(DBUS.STRUCT_BEGIN_CHAR, _split_codes(expected[1:-1])))
        return \
            expected[1:-1].decode()
    #end get_structure

    def get_dict_entry(self) :
        "enters a dict entry, returning its key and value signature."
        expected = self._begin(DBUS.DICT_ENTRY_BEGIN_CHAR)
        self._take(8, 0)
        self._commit(expected)
        self._push(_Container(DBUS.DICT_ENTRY_BEGIN_CHAR, _split_codes(expected[1:-1])))
        return \
            expected[1:-1].decode()
    #end get_dict_entry

    def get_variant(self) :
        "enters a variant, returning the signature of the value it holds, which is to" \
        " be read next."
        self._begin(DBUS.TYPE_VARIANT)
        length = self._take(1, 1)[0]
        raw = self._take(1, length + 1)
        if raw[length] != 0 :
            raise TypeMismatch("variant signature not NUL-terminated")
        #end if
        codes = _parse_single(bytes(raw[:length]))
        self._commit(b"v")
        self._push(_Container(DBUS.TYPE_VARIANT, [codes]))
        return \
            codes.decode()
    #end get_variant

    def get_object(self) :
        "reads the next complete value and returns it as a Python object: lists for" \
        " arrays and structs, dicts for arrays of dict entries, (signature, value)" \
        " tuples for variants."
        self._close_arrays()
        top = self._containers[-1]
        if top.kind == DBUS.TYPE_ARRAY :
            codes = top.expect[0]
        elif top.pos < len(top.expect) :
            codes = top.expect[top.pos]
        else :
            raise TypeMismatch("no more values in %s" % top.describe())
        #end if
        code = codes[0]
        if code in self._basic_getters :
            result = self._basic_getters[code](self)
        elif code == DBUS.TYPE_ARRAY :
            handle = self.get_array()
            if codes[1] == DBUS.DICT_ENTRY_BEGIN_CHAR :
                result = {}
                while self.get_array_left(handle) > 0 :
                    self.get_dict_entry()
                    key = self.get_object()
                    result[key] = self.get_object()
                #end while
            else :
                result = []
                while self.get_array_left(handle) > 0 :
                    result.append(self.get_object())
                #end while
            #end if
        elif code == DBUS.STRUCT_BEGIN_CHAR :
            count = len(_split_codes(self.get_structure().encode()))
            result = list(self.get_object() for i in range(count))
        elif code == DBUS.TYPE_VARIANT :
            signature = self.get_variant()
            result = (signature, self.get_object())
        else :
            raise TypeMismatch("unsupported type %s" % chr(code))
        #end if
        return \
            result
    #end get_object

    def get_objects(self) :
        "reads all remaining values in the body, returning them as a list."
        result = []
        while not self.at_end :
            result.append(self.get_object())
        #end while
        return \
            result
    #end get_objects

    _basic_getters = \
        {
            DBUS.TYPE_BYTE : get_byte,
            DBUS.TYPE_BOOLEAN : get_boolean,
            DBUS.TYPE_INT16 : get_int16,
            DBUS.TYPE_UINT16 : get_uint16,
            DBUS.TYPE_INT32 : get_int32,
            DBUS.TYPE_UINT32 : get_uint32,
            DBUS.TYPE_INT64 : get_int64,
            DBUS.TYPE_UINT64 : get_uint64,
            DBUS.TYPE_DOUBLE : get_double,
            DBUS.TYPE_UNIX_FD : get_unix_fd,
            DBUS.TYPE_STRING : get_string,
            DBUS.TYPE_OBJECT_PATH : get_object_path,
            DBUS.TYPE_SIGNATURE : get_signature,
        }

#end Reader

#+
# Name validation
#-

_path_re = re.compile(r"^/$|^(/[A-Za-z0-9_]+)+$")
_member_re = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_interface_re = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)+$")
_unique_name_re = re.compile(r"^:[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)+$")
_well_known_name_re = re.compile(r"^[A-Za-z_-][A-Za-z0-9_-]*(\.[A-Za-z_-][A-Za-z0-9_-]*)+$")

def _validate_name(pattern, name) :
    return \
        (
            isinstance(name, str)
        and
            len(name) <= DBUS.MAXIMUM_NAME_LENGTH
        and
            pattern.match(name) != None
        )
#end _validate_name

def validate_path(path) :
    "is path a valid D-Bus object path."
    return \
        isinstance(path, str) and _path_re.match(path) != None
#end validate_path

def validate_interface(name) :
    "is name a valid D-Bus interface name."
    return \
        _validate_name(_interface_re, name)
#end validate_interface

def validate_member(name) :
    "is name a valid D-Bus method or signal name."
    return \
        _validate_name(_member_re, name)
#end validate_member

def validate_error_name(name) :
    "is name a valid D-Bus error name (same rules as an interface name)."
    return \
        _validate_name(_interface_re, name)
#end validate_error_name

def validate_bus_name(name) :
    "is name a valid unique or well-known bus name."
    return \
        (
            _validate_name(_unique_name_re, name)
        or
            _validate_name(_well_known_name_re, name)
        )
#end validate_bus_name

def validate_utf8(alleged_utf8) :
    "is alleged_utf8 a UTF-8-encoded bytes object."
    try :
        bytes(alleged_utf8).decode("utf-8")
        result = True
    except UnicodeDecodeError :
        result = False
    #end try
    return \
        result
#end validate_utf8

#+
# I/O channels
#-

class IOChannel :
    "wraps the caller-supplied transport: write(priv, data) must write all of data" \
    " and return a true value on success; read(priv, count) must return exactly" \
    " count bytes, with anything shorter taken as end of file; both may instead raise" \
    " OSError. debug(logpriv, text), if given, receives trace messages, which" \
    " otherwise go to this module’s logger."

    __slots__ = ("priv", "_write", "_read", "_debug", "logpriv", "auth_state") # to forestall typos

    def __init__(self, priv, write, read, debug = None, logpriv = None) :
        self.priv = priv
        self._write = write
        self._read = read
        self._debug = debug
        self.logpriv = logpriv
        self.auth_state = None # not tracked until an Authenticator is attached
    #end __init__

    def write(self, data) :
        "writes all of data, raising IOFailure if this cannot be done."
        data = bytes(data)
        try :
            ok = self._write(self.priv, data)
        except OSError as fail :
            raise IOFailure("write of %d bytes failed: %s" % (len(data), fail)) from fail
        #end try
        if not ok :
            raise IOFailure("write of %d bytes failed" % len(data))
        #end if
    #end write

    def read(self, count) :
        "returns exactly count bytes, raising IOFailure if they are not all forthcoming."
        if count > 0 :
            try :
                data = self._read(self.priv, count)
            except OSError as fail :
                raise IOFailure("read of %d bytes failed: %s" % (count, fail)) from fail
            #end try
            if data == None or len(data) != count :
                raise IOFailure \
                  (
                    "short read: got %d of %d bytes" % (len(data or b""), count)
                  )
            #end if
            data = bytes(data)
        else :
            data = b""
        #end if
        return \
            data
    #end read

    def debug(self, text) :
        if self._debug != None :
            self._debug(self.logpriv, text)
        else :
            _log.debug("%s", text)
        #end if
    #end debug

#end IOChannel

class SocketChannel(IOChannel) :
    "an IOChannel over an already-connected stream socket."

    __slots__ = ()

    def __init__(self, sock, debug = None, logpriv = None) :
        super().__init__(sock, self._sock_write, self._sock_read, debug, logpriv)
    #end __init__

    @staticmethod
    def _sock_write(sock, data) :
        sock.sendall(data)
        return \
            True
    #end _sock_write

    @staticmethod
    def _sock_read(sock, count) :
        result = bytearray()
        while len(result) < count :
            chunk = sock.recv(count - len(result))
            if len(chunk) == 0 :
                break
            result.extend(chunk)
        #end while
        return \
            bytes(result)
    #end _sock_read

    @property
    def sock(self) :
        return \
            self.priv
    #end sock

    def close(self) :
        self.priv.close()
    #end close

#end SocketChannel

class AUTH_STATE(enum.Enum) :
    "states of the authentication handshake on a connection."
    START = 1 # nothing sent yet, or ready to retry
    AWAITING_REPLY = 2
    AUTHENTICATED = 3
    FAILED = 4
#end AUTH_STATE

#+
# Messages
#-

class Message :
    "a D-Bus message. Messages created by the new_xxx methods are for composing" \
    " and sending: set header fields, open the body, add values, then pass to" \
    " send(). Messages returned by recv() or demarshal() are read-only: their" \
    " header fields can be examined and body values retrieved in order. A message" \
    " never changes from one mode to the other."

    __slots__ = \
        (
            "_type",
            "_serial",
            "_flags",
            "_byteorder",
            "_fields",
            "_writing",
            "_signature",
            "_writer",
            "_reader",
        ) # to forestall typos

    def __init__(self, type, serial, byteorder = DBUS.NATIVE_BYTE_ORDER) :
        if byteorder not in DBUS.struct_order :
            raise ProtocolError("invalid byte order %r" % (byteorder,))
        #end if
        self._type = type
        self._serial = serial
        self._flags = 0
        self._byteorder = byteorder
        self._fields = {}
        self._writing = True
        self._signature = None
        self._writer = None
        self._reader = None
    #end __init__

    @classmethod
    def new(celf, serial, type = DBUS.MESSAGE_TYPE_INVALID, byteorder = DBUS.NATIVE_BYTE_ORDER) :
        "creates a new message for sending; type is a MESSAGE_TYPE_xxx value."
        return \
            celf(type, serial, byteorder)
    #end new

    @classmethod
    def new_method_call(celf, serial, destination, path, iface, method, byteorder = DBUS.NATIVE_BYTE_ORDER) :
        "creates a new message representing a method call. destination may be None."
        result = celf(DBUS.MESSAGE_TYPE_METHOD_CALL, serial, byteorder)
        result.destination = destination
        result.path = path
        result.interface = iface
        result.member = method
        return \
            result
    #end new_method_call

    @classmethod
    def new_signal(celf, serial, path, iface, name, byteorder = DBUS.NATIVE_BYTE_ORDER) :
        "creates a new message representing a signal emission."
        result = celf(DBUS.MESSAGE_TYPE_SIGNAL, serial, byteorder)
        result.path = path
        result.interface = iface
        result.member = name
        return \
            result
    #end new_signal

    def new_method_return(self, serial) :
        "creates a new message that is a reply to this message."
        result = type(self)(DBUS.MESSAGE_TYPE_METHOD_RETURN, serial, self._byteorder)
        result.reply_serial = self._serial
        result.destination = self.sender
        return \
            result
    #end new_method_return

    def new_error(self, serial, name, message = None) :
        "creates a new message that is an error reply to this message, optionally" \
        " carrying a human-readable explanation as its single string argument."
        result = type(self)(DBUS.MESSAGE_TYPE_ERROR, serial, self._byteorder)
        result.reply_serial = self._serial
        result.destination = self.sender
        result.error_name = name
        if message != None :
            result.set_signature("s")
            result.body_open(4 + len(_encode_string(message)) + 1)
            result.body_add_string(message)
        #end if
        return \
            result
    #end new_error

    @staticmethod
    def type_from_string(type_str) :
        "returns a MESSAGE_TYPE_xxx value."
        for code, name in DBUS.message_type_names.items() :
            if name == type_str :
                result = code
                break
            #end if
        else :
            result = DBUS.MESSAGE_TYPE_INVALID
        #end for
        return \
            result
    #end type_from_string

    @staticmethod
    def type_to_string(type) :
        "type is a MESSAGE_TYPE_xxx value."
        return \
            DBUS.message_type_names.get(type, "invalid")
    #end type_to_string

    def _check_writable(self) :
        if not self._writing :
            raise ModeViolation("received message is read-only")
        #end if
    #end _check_writable

    @property
    def writing(self) :
        "is this message being composed, as opposed to having been received."
        return \
            self._writing
    #end writing

    @property
    def type(self) :
        "the MESSAGE_TYPE_xxx value."
        return \
            self._type
    #end type

    @type.setter
    def type(self, type) :
        self._check_writable()
        self._type = type
    #end type

    @property
    def serial(self) :
        return \
            self._serial
    #end serial

    @serial.setter
    def serial(self, serial) :
        self._check_writable()
        self._serial = DBUS.int_convert(DBUS.TYPE_UINT32, serial)
    #end serial

    @property
    def flags(self) :
        "the HEADER_FLAG_xxx bits."
        return \
            self._flags
    #end flags

    @flags.setter
    def flags(self, flags) :
        self._check_writable()
        self._flags = DBUS.int_convert(DBUS.TYPE_BYTE, flags)
    #end flags

    def _set_flag(self, flag, on) :
        self._check_writable()
        self._flags = self._flags & ~flag | (0, flag)[bool(on)]
    #end _set_flag

    @property
    def no_reply(self) :
        return \
            self._flags & DBUS.HEADER_FLAG_NO_REPLY_EXPECTED != 0
    #end no_reply

    @no_reply.setter
    def no_reply(self, no_reply) :
        self._set_flag(DBUS.HEADER_FLAG_NO_REPLY_EXPECTED, no_reply)
    #end no_reply

    @property
    def auto_start(self) :
        return \
            self._flags & DBUS.HEADER_FLAG_NO_AUTO_START == 0
    #end auto_start

    @auto_start.setter
    def auto_start(self, auto_start) :
        self._set_flag(DBUS.HEADER_FLAG_NO_AUTO_START, not auto_start)
    #end auto_start

    @property
    def allow_interactive_authorization(self) :
        return \
            self._flags & DBUS.HEADER_FLAG_ALLOW_INTERACTIVE_AUTHORIZATION != 0
    #end allow_interactive_authorization

    @allow_interactive_authorization.setter
    def allow_interactive_authorization(self, allow) :
        self._set_flag(DBUS.HEADER_FLAG_ALLOW_INTERACTIVE_AUTHORIZATION, allow)
    #end allow_interactive_authorization

    @property
    def byteorder(self) :
        "DBUS.LITTLE_ENDIAN or DBUS.BIG_ENDIAN."
        return \
            self._byteorder
    #end byteorder

    @byteorder.setter
    def byteorder(self, byteorder) :
        self._check_writable()
        if self._writer != None :
            raise ModeViolation("cannot change byte order once body is opened")
        #end if
        if byteorder not in DBUS.struct_order :
            raise ProtocolError("invalid byte order %r" % (byteorder,))
        #end if
        self._byteorder = byteorder
    #end byteorder

    def _get_field(self, code) :
        return \
            self._fields.get(code)
    #end _get_field

    def _set_field(self, code, value) :
        self._check_writable()
        if value == None :
            self._fields.pop(code, None)
        else :
            if DBUS.header_field_types[code] == DBUS.TYPE_UINT32 :
                value = DBUS.int_convert(DBUS.TYPE_UINT32, value)
            elif not isinstance(value, str) :
                raise TypeMismatch \
                  (
                    "%s must be a string, not %s" % (DBUS.header_field_names[code], type(value).__name__)
                  )
            elif code == DBUS.HEADER_FIELD_PATH :
                value = DBUS.ObjectPath(value)
            #end if
            self._fields[code] = value
        #end if
    #end _set_field

    @property
    def destination(self) :
        return \
            self._get_field(DBUS.HEADER_FIELD_DESTINATION)
    #end destination

    @destination.setter
    def destination(self, destination) :
        self._set_field(DBUS.HEADER_FIELD_DESTINATION, destination)
    #end destination

    @property
    def path(self) :
        return \
            self._get_field(DBUS.HEADER_FIELD_PATH)
    #end path

    @path.setter
    def path(self, path) :
        self._set_field(DBUS.HEADER_FIELD_PATH, path)
    #end path

    @property
    def interface(self) :
        return \
            self._get_field(DBUS.HEADER_FIELD_INTERFACE)
    #end interface

    @interface.setter
    def interface(self, iface) :
        self._set_field(DBUS.HEADER_FIELD_INTERFACE, iface)
    #end interface

    @property
    def member(self) :
        "the method or signal name."
        return \
            self._get_field(DBUS.HEADER_FIELD_MEMBER)
    #end member

    @member.setter
    def member(self, member) :
        self._set_field(DBUS.HEADER_FIELD_MEMBER, member)
    #end member

    method = member

    @property
    def error_name(self) :
        return \
            self._get_field(DBUS.HEADER_FIELD_ERROR_NAME)
    #end error_name

    @error_name.setter
    def error_name(self, error_name) :
        self._set_field(DBUS.HEADER_FIELD_ERROR_NAME, error_name)
    #end error_name

    @property
    def sender(self) :
        return \
            self._get_field(DBUS.HEADER_FIELD_SENDER)
    #end sender

    @sender.setter
    def sender(self, sender) :
        self._set_field(DBUS.HEADER_FIELD_SENDER, sender)
    #end sender

    @property
    def reply_serial(self) :
        return \
            self._get_field(DBUS.HEADER_FIELD_REPLY_SERIAL)
    #end reply_serial

    @reply_serial.setter
    def reply_serial(self, serial) :
        self._set_field(DBUS.HEADER_FIELD_REPLY_SERIAL, serial)
    #end reply_serial

    @property
    def unix_fds(self) :
        "the number of file descriptors the sender claimed to pass; never sent."
        return \
            self._get_field(DBUS.HEADER_FIELD_UNIX_FDS)
    #end unix_fds

    @property
    def signature(self) :
        "the signature of the body, as a string."
        if not self._writing :
            result = self._get_field(DBUS.HEADER_FIELD_SIGNATURE) or ""
        elif self._writer != None :
            result = str(self._writer.signature)
        elif self._signature != None :
            result = self._signature
        else :
            result = ""
        #end if
        return \
            DBUS.Signature(result)
    #end signature

    @signature.setter
    def signature(self, signature) :
        self.set_signature(signature)
    #end signature

    def set_signature(self, signature) :
        "fixes the body signature in advance; subsequent body_add_xxx calls are" \
        " checked against it. Must be called before body_open()."
        self._check_writable()
        if self._writer != None :
            raise ModeViolation("cannot set signature once body is opened")
        #end if
        if isinstance(signature, TypeSignature) :
            signature = str(signature)
        #end if
        if signature != None :
            signature = unparse_signature(signature)
            parse_signature(signature)
        #end if
        self._signature = signature
    #end set_signature

    def body_open(self, length = None) :
        "opens the body for adding values, with room for at most length bytes" \
        " (defaults to the largest allowed message)."
        self._check_writable()
        if self._writer != None :
            raise ModeViolation("body already opened")
        #end if
        if length == None :
            length = DBUS.MAXIMUM_MESSAGE_LENGTH
        #end if
        self._writer = Writer(length, self._byteorder, self._signature)
        return \
            self._writer
    #end body_open

    def _body_writer(self) :
        self._check_writable()
        if self._writer == None :
            raise ModeViolation("body not opened")
        #end if
        return \
            self._writer
    #end _body_writer

    def _body_reader(self) :
        if self._writing :
            raise ModeViolation("cannot read values from a message being composed")
        #end if
        return \
            self._reader
    #end _body_reader

    @property
    def body(self) :
        "the body bytes: as written so far, or as received."
        if not self._writing :
            result = bytes(self._reader.data)
        elif self._writer != None :
            result = self._writer.data
        else :
            result = b""
        #end if
        return \
            result
    #end body

    def body_add_byte(self, val) :
        self._body_writer().add_byte(val)
        return self
    #end body_add_byte

    def body_add_boolean(self, val) :
        self._body_writer().add_boolean(val)
        return self
    #end body_add_boolean

    def body_add_int16(self, val) :
        self._body_writer().add_int16(val)
        return self
    #end body_add_int16

    def body_add_uint16(self, val) :
        self._body_writer().add_uint16(val)
        return self
    #end body_add_uint16

    def body_add_int32(self, val) :
        self._body_writer().add_int32(val)
        return self
    #end body_add_int32

    def body_add_uint32(self, val) :
        self._body_writer().add_uint32(val)
        return self
    #end body_add_uint32

    def body_add_int64(self, val) :
        self._body_writer().add_int64(val)
        return self
    #end body_add_int64

    def body_add_uint64(self, val) :
        self._body_writer().add_uint64(val)
        return self
    #end body_add_uint64

    def body_add_double(self, val) :
        self._body_writer().add_double(val)
        return self
    #end body_add_double

    def body_add_string(self, val) :
        self._body_writer().add_string(val)
        return self
    #end body_add_string

    def body_add_object_path(self, val) :
        self._body_writer().add_object_path(val)
        return self
    #end body_add_object_path

    def body_add_signature(self, val) :
        self._body_writer().add_signature(val)
        return self
    #end body_add_signature

    def body_add_array_begin(self, element_signature = None) :
        return \
            self._body_writer().add_array_begin(element_signature)
    #end body_add_array_begin

    def body_add_array_end(self, handle) :
        self._body_writer().add_array_end(handle)
        return self
    #end body_add_array_end

    def body_add_structure(self, signature = None) :
        self._body_writer().add_structure(signature)
        return self
    #end body_add_structure

    def body_add_structure_end(self) :
        self._body_writer().add_structure_end()
        return self
    #end body_add_structure_end

    def body_add_dict_entry(self) :
        self._body_writer().add_dict_entry()
        return self
    #end body_add_dict_entry

    def body_add_variant(self, signature) :
        self._body_writer().add_variant(signature)
        return self
    #end body_add_variant

    def body_get_byte(self) :
        return self._body_reader().get_byte()
    #end body_get_byte

    def body_get_boolean(self) :
        return self._body_reader().get_boolean()
    #end body_get_boolean

    def body_get_int16(self) :
        return self._body_reader().get_int16()
    #end body_get_int16

    def body_get_uint16(self) :
        return self._body_reader().get_uint16()
    #end body_get_uint16

    def body_get_int32(self) :
        return self._body_reader().get_int32()
    #end body_get_int32

    def body_get_uint32(self) :
        return self._body_reader().get_uint32()
    #end body_get_uint32

    def body_get_int64(self) :
        return self._body_reader().get_int64()
    #end body_get_int64

    def body_get_uint64(self) :
        return self._body_reader().get_uint64()
    #end body_get_uint64

    def body_get_double(self) :
        return self._body_reader().get_double()
    #end body_get_double

    def body_get_string(self) :
        return self._body_reader().get_string()
    #end body_get_string

    def body_get_object_path(self) :
        return self._body_reader().get_object_path()
    #end body_get_object_path

    def body_get_signature(self) :
        return self._body_reader().get_signature()
    #end body_get_signature

    def body_get_array(self) :
        return self._body_reader().get_array()
    #end body_get_array

    def body_get_array_left(self, handle) :
        return self._body_reader().get_array_left(handle)
    #end body_get_array_left

    def body_get_structure(self) :
        return self._body_reader().get_structure()
    #end body_get_structure

    def body_get_dict_entry(self) :
        return self._body_reader().get_dict_entry()
    #end body_get_dict_entry

    def body_get_variant(self) :
        return self._body_reader().get_variant()
    #end body_get_variant

    def append_objects(self, signature, val) :
        "interprets Python value val (which should be a sequence of objects) according" \
        " to signature and appends converted items to the message body, opening the" \
        " body first if necessary."
        self._check_writable()
        if not isinstance(val, (tuple, list)) :
            val = [val]
        #end if
        if self._writer == None :
            self.body_open()
        #end if
        self._writer.add_objects(signature, val)
        return \
            self
    #end append_objects

    @property
    def objects(self) :
        "yields the body values as Python objects, in the same forms append_objects()" \
        " accepts."

        reader = self._body_reader()

        def each_object() :
            while not reader.at_end :
                yield reader.get_object()
            #end while
        #end each_object

    #begin objects
        return \
            each_object()
    #end objects

    @property
    def all_objects(self) :
        "returns a list of all the body values as Python objects."
        return \
            list(self.objects)
    #end all_objects

    def _check_header(self) :
        "enforces which header fields must be present for the message type, and" \
        " that those present are well formed."
        if self._type not in DBUS.header_fields_required :
            raise ProtocolError("invalid message type %d" % self._type)
        #end if
        if self._serial == 0 :
            raise ProtocolError("message serial must not be zero")
        #end if
        for code in DBUS.header_fields_required[self._type] :
            if code not in self._fields :
                raise ProtocolError \
                  (
                    "%s message requires %s field"
                  %
                    (self.type_to_string(self._type), DBUS.header_field_names[code])
                  )
            #end if
        #end for
        for code, validate in \
            (
                (DBUS.HEADER_FIELD_PATH, validate_path),
                (DBUS.HEADER_FIELD_INTERFACE, validate_interface),
                (DBUS.HEADER_FIELD_MEMBER, validate_member),
                (DBUS.HEADER_FIELD_ERROR_NAME, validate_error_name),
                (DBUS.HEADER_FIELD_DESTINATION, validate_bus_name),
                (DBUS.HEADER_FIELD_SENDER, validate_bus_name),
            ) \
        :
            if code in self._fields and not validate(self._fields[code]) :
                raise ProtocolError \
                  (
                    "invalid %s %r" % (DBUS.header_field_names[code], self._fields[code])
                  )
            #end if
        #end for
        if self._fields.get(DBUS.HEADER_FIELD_REPLY_SERIAL) == 0 :
            raise ProtocolError("reply serial must not be zero")
        #end if
    #end _check_header

    def marshal(self) :
        "serializes the message into a bytes object, ready for sending."
        self._check_header()
        if self._writing :
            if self._writer != None :
                body = self._writer.finish()
                signature = str(self._writer.signature)
            elif self._signature :
                raise TypeMismatch("no body values for signature %r" % self._signature)
            else :
                body = b""
                signature = ""
            #end if
        else :
            body = self.body
            signature = self.signature
        #end if
        fields = dict(self._fields)
        fields.pop(DBUS.HEADER_FIELD_UNIX_FDS, None)
        fields.pop(DBUS.HEADER_FIELD_SIGNATURE, None)
        if signature != "" :
            fields[DBUS.HEADER_FIELD_SIGNATURE] = signature
        #end if
        header = Writer(DBUS.MAXIMUM_MESSAGE_LENGTH, self._byteorder, DBUS.HEADER_SIGNATURE)
        header \
            .add_byte(ord(self._byteorder)) \
            .add_byte(self._type) \
            .add_byte(self._flags) \
            .add_byte(DBUS.MAJOR_PROTOCOL_VERSION) \
            .add_uint32(len(body)) \
            .add_uint32(self._serial)
        handle = header.add_array_begin()
        for code in sorted(fields) :
            typecode = DBUS.header_field_types[code]
            header.add_structure().add_byte(code).add_variant(bytes((typecode,)))
            header._basic_adders[typecode](header, fields[code])
        #end for
        header.add_array_end(handle)
        header = header.finish()
        result = header + bytes(_padding(len(header), 8)) + body
        if len(result) > DBUS.MAXIMUM_MESSAGE_LENGTH :
            raise ProtocolError("message length %d exceeds limit" % len(result))
        #end if
        return \
            result
    #end marshal

    @classmethod
    def demarshal(celf, buf) :
        "deserializes a message from buf, which must hold at least one complete message;" \
        " anything beyond the end of the first message is ignored."
        framing = _parse_fixed_header(buf)
        if len(buf) < framing.total :
            raise ProtocolError("message truncated: %d of %d bytes" % (len(buf), framing.total))
        #end if
        return \
            celf._from_wire(bytes(buf[:framing.total]), framing)
    #end demarshal

    @staticmethod
    def demarshal_bytes_needed(buf) :
        "returns the total length of the message that starts in buf, or 0 if buf" \
        " does not yet hold enough of it to tell."
        if len(buf) < DBUS.MINIMUM_HEADER_SIZE :
            result = 0
        else :
            result = _parse_fixed_header(buf).total
        #end if
        return \
            result
    #end demarshal_bytes_needed

    @classmethod
    def _from_wire(celf, data, framing) :
        "constructs a read-only message from the complete bytes of a message."
        try :
            reader = Reader(data, framing.byteorder, DBUS.HEADER_SIGNATURE, 0, framing.header_end)
            for i in range(3) :
                reader.get_byte()
            #end for
            msgtype = data[1]
            flags = data[2]
            reader.get_byte()
            reader.get_uint32()
            serial = reader.get_uint32()
            fields = {}
            handle = reader.get_array()
            while reader.get_array_left(handle) > 0 :
                reader.get_structure()
                code = reader.get_byte()
                signature = reader.get_variant()
                value = reader.get_object()
                if code in DBUS.header_field_types :
                    if signature != chr(DBUS.header_field_types[code]) :
                        raise ProtocolError \
                          (
                            "header field %s has type %s"
                          %
                            (DBUS.header_field_names[code], signature)
                          )
                    #end if
                    if code in fields :
                        raise ProtocolError("duplicate header field %s" % DBUS.header_field_names[code])
                    #end if
                    fields[code] = value
                else :
                    _log.debug("skipping unknown header field %d", code)
                #end if
            #end while
        except ProtocolError :
            raise
        except DBusError as fail :
            raise ProtocolError("malformed message header: %s" % fail.message) from fail
        #end try
        if any(data[framing.header_end : framing.body_start]) :
            raise ProtocolError("nonzero padding after message header")
        #end if
        signature = fields.get(DBUS.HEADER_FIELD_SIGNATURE, "")
        if framing.body_length != 0 and signature == "" :
            raise ProtocolError("message has a body but no signature")
        #end if
        result = celf.__new__(celf)
        result._type = msgtype
        result._serial = serial
        result._flags = flags
        result._byteorder = framing.byteorder
        result._fields = fields
        result._writing = False
        result._signature = signature
        result._writer = None
        result._reader = Reader \
          (
            data,
            framing.byteorder,
            signature,
            offset = framing.body_start,
            length = framing.body_length,
          )
        result._check_header()
        return \
            result
    #end _from_wire

    def __repr__(self) :
        return \
            (
                "<%s %s serial=%d%s%s>"
            %
                (
                    type(self).__name__,
                    self.type_to_string(self._type),
                    self._serial,
                    "".join
                      (
                        " %s=%r" % (DBUS.header_field_names[code], self._fields[code])
                        for code in sorted(self._fields)
                      ),
                    ("", " (received)")[not self._writing],
                )
            )
    #end __repr__

#end Message

#+
# Framing
#-

class _Framing :
    "sizes decoded from the fixed part of a message header."

    __slots__ = ("byteorder", "header_end", "body_start", "body_length", "total") # to forestall typos

    def __init__(self, byteorder, header_end, body_start, body_length) :
        self.byteorder = byteorder
        self.header_end = header_end
        self.body_start = body_start
        self.body_length = body_length
        self.total = body_start + body_length
    #end __init__

#end _Framing

def _parse_fixed_header(data) :
    "decodes the fixed 16 bytes at the start of a message, returning a _Framing."
    if len(data) < DBUS.MINIMUM_HEADER_SIZE :
        raise ProtocolError("message header truncated: %d bytes" % len(data))
    #end if
    byteorder = chr(data[0])
    if byteorder not in DBUS.struct_order :
        raise ProtocolError("invalid byte order marker %r" % bytes(data[:1]))
    #end if
    if data[1] not in DBUS.header_fields_required :
        raise ProtocolError("invalid message type %d" % data[1])
    #end if
    if data[3] != DBUS.MAJOR_PROTOCOL_VERSION :
        raise ProtocolError("unsupported protocol version %d" % data[3])
    #end if
    body_length, serial, fields_length = struct.unpack_from \
      (
        DBUS.struct_order[byteorder] + "III",
        data,
        4
      )
    if fields_length > DBUS.MAXIMUM_ARRAY_LENGTH :
        raise ProtocolError("header fields length %d exceeds limit" % fields_length)
    #end if
    header_end = DBUS.MINIMUM_HEADER_SIZE + fields_length
    body_start = header_end + _padding(header_end, 8)
    if body_start + body_length > DBUS.MAXIMUM_MESSAGE_LENGTH :
        raise ProtocolError("message length %d exceeds limit" % (body_start + body_length))
    #end if
    return \
        _Framing(byteorder, header_end, body_start, body_length)
#end _parse_fixed_header

def _check_authenticated(io) :
    if io.auth_state != None and io.auth_state != AUTH_STATE.AUTHENTICATED :
        raise ProtocolError("connection not authenticated (%s)" % io.auth_state.name)
    #end if
#end _check_authenticated

def send(io, message) :
    "marshals message and writes it to the IOChannel io. Returns the serial of the" \
    " message sent."
    _check_authenticated(io)
    data = message.marshal()
    io.debug("send %r, %d bytes" % (message, len(data)))
    io.write(data)
    return \
        message.serial
#end send

def recv(io) :
    "reads one complete message from the IOChannel io, returning it as a read-only" \
    " Message."
    _check_authenticated(io)
    header = io.read(DBUS.MINIMUM_HEADER_SIZE)
    framing = _parse_fixed_header(header)
    data = header + io.read(framing.total - DBUS.MINIMUM_HEADER_SIZE)
    result = Message._from_wire(data, framing)
    io.debug("recv %r, %d bytes" % (result, len(data)))
    return \
        result
#end recv

#+
# Authentication
#-

def _hex_encode(data) :
    if isinstance(data, str) :
        data = data.encode()
    #end if
    return \
        bytes(data).hex()
#end _hex_encode

def _hex_decode(text) :
    try :
        result = bytes.fromhex(text)
    except ValueError as fail :
        raise ProtocolError("invalid hex data %r" % text) from fail
    #end try
    return \
        result
#end _hex_decode

class Authenticator :
    "runs the client side of the authentication handshake over the IOChannel io." \
    " Once attached, send() and recv() on io are refused until authentication" \
    " succeeds. After a failure, authenticate() may be called again, for example" \
    " with one of the mechanisms listed in the AuthFailure exception."

    __slots__ = ("io", "guid", "_nul_sent") # to forestall typos

    def __init__(self, io) :
        self.io = io
        self.guid = None
        self._nul_sent = False
        io.auth_state = AUTH_STATE.START
    #end __init__

    @property
    def state(self) :
        "the current AUTH_STATE."
        return \
            self.io.auth_state
    #end state

    def _send_line(self, line) :
        self.io.debug("C: %s" % line)
        self.io.write(line.encode("ascii") + b"\r\n")
    #end _send_line

    def _recv_line(self) :
        line = bytearray()
        while True :
            if len(line) >= DBUS.MAX_AUTH_LINE_LENGTH :
                raise ProtocolError("auth line too long")
            #end if
            line.extend(self.io.read(1))
            if line.endswith(b"\n") :
                break
        #end while
        if not line.endswith(b"\r\n") :
            raise ProtocolError("auth line not terminated by CRLF")
        #end if
        try :
            result = line[:-2].decode("ascii")
        except UnicodeDecodeError as fail :
            raise ProtocolError("non-ASCII characters in auth line") from fail
        #end try
        self.io.debug("S: %s" % result)
        return \
            result
    #end _recv_line

    def authenticate(self, mechanism = DBUS.AUTH_MECHANISM_EXTERNAL, credential = None, respond = None) :
        "tries to authenticate with the given mechanism. credential, if not None," \
        " is sent as the initial response; respond, if not None, is called with each" \
        " DATA challenge from the server (as bytes) and must return the bytes to send" \
        " back. Returns the server GUID on success; raises AuthFailure on rejection."
        if self.io.auth_state == AUTH_STATE.AUTHENTICATED :
            raise ProtocolError("already authenticated")
        #end if
        try :
            if not self._nul_sent :
                self.io.write(b"\x00")
                self._nul_sent = True
            #end if
            line = "AUTH %s" % mechanism
            if credential != None :
                line += " " + _hex_encode(credential)
            #end if
            self._send_line(line)
            self.io.auth_state = AUTH_STATE.AWAITING_REPLY
            while True :
                words = self._recv_line().split(" ")
                command, args = words[0], words[1:]
                if command == "OK" :
                    self.guid = " ".join(args)
                    self._send_line("BEGIN")
                    self.io.auth_state = AUTH_STATE.AUTHENTICATED
                    break
                elif command == "REJECTED" :
                    raise AuthFailure("mechanism %s rejected" % mechanism, args)
                elif command == "ERROR" :
                    raise AuthFailure("server reported error: %s" % " ".join(args))
                elif command == "DATA" :
                    challenge = _hex_decode("".join(args))
                    if respond != None :
                        response = respond(challenge)
                    else :
                        response = b""
                    #end if
                    self._send_line(("DATA", "DATA " + _hex_encode(response))[len(response) != 0])
                else :
                    self._send_line("ERROR unrecognized command")
                #end if
            #end while
        except DBusError :
            self.io.auth_state = AUTH_STATE.FAILED
            raise
        #end try
        return \
            self.guid
    #end authenticate

#end Authenticator

def auth(io, mechanism = DBUS.AUTH_MECHANISM_EXTERNAL, credential = None, respond = None) :
    "one-shot handshake on io; returns the Authenticator, whose guid attribute holds" \
    " the server GUID."
    result = Authenticator(io)
    result.authenticate(mechanism, credential, respond)
    return \
        result
#end auth
