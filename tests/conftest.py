#+
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import socket
import pytest

import dbuswire

class MemoryTransport :
    "in-memory stand-in for a connection: reads come from the incoming buffer," \
    " writes are collected in the outgoing buffer. With loopback set, whatever is" \
    " written becomes available to read."

    def __init__(self, incoming = b"", loopback = False) :
        self.incoming = bytearray(incoming)
        self.outgoing = bytearray()
        self.loopback = loopback
        self.trace = []
    #end __init__

    def feed(self, data) :
        self.incoming.extend(data)
    #end feed

    def write(self, data) :
        self.outgoing.extend(data)
        if self.loopback :
            self.incoming.extend(data)
        #end if
        return \
            True
    #end write

    def read(self, count) :
        result = bytes(self.incoming[:count])
        del self.incoming[:count]
        return \
            result
    #end read

#end MemoryTransport

def make_channel(transport) :
    return \
        dbuswire.IOChannel \
          (
            priv = transport,
            write = lambda priv, data : priv.write(data),
            read = lambda priv, count : priv.read(count),
            debug = lambda logpriv, text : logpriv.append(text),
            logpriv = transport.trace,
          )
#end make_channel

@pytest.fixture
def transport() :
    return \
        MemoryTransport()
#end transport

@pytest.fixture
def channel(transport) :
    return \
        make_channel(transport)
#end channel

@pytest.fixture
def loopback() :
    return \
        make_channel(MemoryTransport(loopback = True))
#end loopback

@pytest.fixture
def socket_pair() :
    left, right = socket.socketpair()
    yield \
        (dbuswire.SocketChannel(left), dbuswire.SocketChannel(right))
    left.close()
    right.close()
#end socket_pair
