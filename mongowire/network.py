# Copyright 2024-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Internal network layer: one socket speaking the legacy wire protocol."""

import datetime
import errno
import socket
import time

from mongowire import helpers, message
from mongowire.common import MAX_MESSAGE_SIZE, MAX_REQUEST_ID, MIN_REQUEST_ID
from mongowire.errors import (
    AutoReconnect,
    ConnectionFailure,
    NetworkTimeout,
    OperationFailure,
    ProtocolDesyncError,
    ProtocolError,
)
from mongowire.logger import (
    _COMMAND_LOGGER,
    _CONNECTION_LOGGER,
    _CommandStatusMessage,
    _ConnectionStatusMessage,
    _debug_log,
)
from mongowire.message import _OpReply

_UNPACK_HEADER = message._UNPACK_HEADER
_SECONDARY_OKAY = message.QUERY_OPTIONS["secondary_okay"]


def receive_message(sock, request_id, max_message_size=MAX_MESSAGE_SIZE):
    """Receive a raw OP_REPLY or raise socket.error.

    Raises ProtocolDesyncError when the reply answers some other request.
    """
    length, _, response_to, op_code = _UNPACK_HEADER(_receive_data_on_socket(sock, 16))
    if op_code != _OpReply.OP_CODE:
        raise ProtocolError("Got opcode %r but expected %r" % (op_code, _OpReply.OP_CODE))
    if request_id != response_to:
        raise ProtocolDesyncError(request_id, response_to)
    if length <= 16:
        raise ProtocolError(
            "Message length (%r) not longer than standard message header size (16)" % (length,)
        )
    if length > max_message_size:
        raise ProtocolError(
            "Message length (%r) is larger than server max "
            "message size (%r)" % (length, max_message_size)
        )

    return _OpReply.unpack(_receive_data_on_socket(sock, length - 16))


def _receive_data_on_socket(sock, length):
    buf = bytearray()
    while length:
        try:
            chunk = sock.recv(length)
        except OSError as exc:
            if _errno_from_exception(exc) == errno.EINTR:
                continue
            raise
        if chunk == b"":
            raise AutoReconnect("connection closed")

        length -= len(chunk)
        buf += chunk

    return bytes(buf)


def _errno_from_exception(exc):
    if hasattr(exc, "errno"):
        return exc.errno
    elif exc.args:
        return exc.args[0]
    else:
        return None


def _raise_connection_failure(address, error, msg_prefix=None):
    """Convert a socket.error to ConnectionFailure and raise it."""
    host, port = address
    msg = "%s:%d: %s" % (host, port, error)
    if msg_prefix:
        msg = msg_prefix + msg
    if isinstance(error, socket.timeout):
        raise NetworkTimeout(msg) from error
    else:
        raise AutoReconnect(msg) from error


def _create_connection(address, options):
    """Given (host, port) and PoolOptions, connect and return a socket object.

    Can raise socket.error.
    """
    host, port = address

    # Don't try IPv6 if we don't support it. Also skip it if host
    # is 'localhost' (::1 is fine).
    family = socket.AF_INET
    if socket.has_ipv6 and host != "localhost":
        family = socket.AF_UNSPEC

    err = None
    for res in socket.getaddrinfo(host, port, family, socket.SOCK_STREAM):
        af, socktype, proto, dummy, sa = res
        sock = socket.socket(af, socktype, proto)
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.settimeout(options.connect_timeout)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, True)
            sock.connect(sa)
            sock.settimeout(options.socket_timeout)
            return sock
        except OSError as e:
            err = e
            sock.close()

    if err is not None:
        raise err
    else:
        raise OSError("getaddrinfo failed")


class Connection:
    """One socket to one server, framing and correlating wire messages.

    A Connection is owned by a single :class:`~mongowire.topology.Topology`
    and is never used by two callers at once, so replies arrive strictly
    in request order.

    :Parameters:
      - `address`: the server's (host, port)
      - `options`: a :class:`~mongowire.settings.PoolOptions` instance
    """

    def __init__(self, address, options):
        self.address = address
        self.opts = options
        self.sock = None
        self.closed = True
        self.max_message_size = MAX_MESSAGE_SIZE
        self.last_use_time = time.monotonic()
        self._next_id = MIN_REQUEST_ID

    def open(self):
        """Connect the socket, or raise ConnectionFailure."""
        try:
            self.sock = self._create_socket()
        except OSError as error:
            _raise_connection_failure(self.address, error)
        self.closed = False
        self.last_use_time = time.monotonic()
        _debug_log(
            _CONNECTION_LOGGER,
            message=_ConnectionStatusMessage.CONN_CREATED,
            serverHost=self.address[0],
            serverPort=self.address[1],
        )
        return self

    def _create_socket(self):
        return _create_connection(self.address, self.opts)

    def next_request_id(self):
        """Return the id for the next outbound message.

        Ids start at 3 and wrap back to 3 once they pass 99,999,999.
        """
        if self._next_id > MAX_REQUEST_ID:
            self._next_id = MIN_REQUEST_ID
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def send_message(self, msg):
        """Send a framed message or raise ConnectionFailure.

        If a network exception is raised, the socket is closed.
        """
        if self.closed:
            raise AutoReconnect("%s:%d: connection closed" % self.address)
        try:
            self.sock.sendall(msg)
        except BaseException as error:
            self._raise_connection_failure(error)
        self.last_use_time = time.monotonic()

    def send(self, op_code, data):
        """Frame `data` as an `op_code` message, send it and return its request id."""
        request_id = self.next_request_id()
        self.send_message(message.pack_message(op_code, data, request_id))
        return request_id

    def receive(self, request_id, timeout=None, cursor_id=None):
        """Read the reply to `request_id` and return a
        :class:`~mongowire.message.Response`.

        A reply that cannot be trusted (wrong opcode, bad length, undecodable
        documents, or a `responseTo` that doesn't match `request_id`) closes
        this connection before the error is raised. Server reported query
        failures leave the connection open.
        """
        if self.closed:
            raise AutoReconnect("%s:%d: connection closed" % self.address)
        if timeout is None:
            timeout = self.opts.socket_timeout
        try:
            self.sock.settimeout(timeout)
            reply = receive_message(self.sock, request_id, self.max_message_size)
        except ProtocolError:
            self.close_socket()
            raise
        except BaseException as error:
            self._raise_connection_failure(error)
        self.last_use_time = time.monotonic()
        try:
            return reply.response(cursor_id, self.opts.codec_options)
        except ProtocolError:
            self.close_socket()
            raise

    def query(self, ns, spec, num_to_skip=0, num_to_return=0, fields=None, flags=0, timeout=None):
        """Send an OP_QUERY and return its :class:`~mongowire.message.Response`.

        The secondary-ok bit is always set.
        """
        data = message.query(
            flags | _SECONDARY_OKAY,
            ns,
            num_to_skip,
            num_to_return,
            spec,
            fields,
            self.opts.codec_options,
        )
        request_id = self.send(message.OP_QUERY, data)
        return self.receive(request_id, timeout)

    def get_more(self, ns, num_to_return, cursor_id, timeout=None):
        """Send an OP_GET_MORE and return its :class:`~mongowire.message.Response`."""
        request_id = self.send(message.OP_GET_MORE, message.get_more(ns, num_to_return, cursor_id))
        return self.receive(request_id, timeout, cursor_id=cursor_id)

    def kill_cursors(self, cursor_ids):
        """Send an OP_KILL_CURSORS. The server does not reply."""
        self.send(message.OP_KILL_CURSORS, message.kill_cursors(list(cursor_ids)))

    def command(self, dbname, spec, check=True, timeout=None):
        """Execute a command or raise an error.

        :Parameters:
          - `dbname`: name of the database on which to run the command
          - `spec`: a command document as a dict, SON, or mapping object
          - `check`: raise OperationFailure if there are errors
          - `timeout`: seconds to wait for the reply
        """
        name = next(iter(spec))
        ns = dbname + ".$cmd"
        data = message.query(_SECONDARY_OKAY, ns, 0, -1, spec, None, self.opts.codec_options)
        request_id = self.next_request_id()
        host, port = self.address
        start = datetime.datetime.now()
        _debug_log(
            _COMMAND_LOGGER,
            message=_CommandStatusMessage.STARTED,
            command=spec,
            commandName=name,
            databaseName=dbname,
            requestId=request_id,
            serverHost=host,
            serverPort=port,
        )
        try:
            self.send_message(message.pack_message(message.OP_QUERY, data, request_id))
            response = self.receive(request_id, timeout)
            if not response.documents:
                raise OperationFailure("Command %r returned no document" % (name,))
            doc = response.documents[0]
            if check:
                helpers._check_command_response(doc)
        except Exception as exc:
            if isinstance(exc, OperationFailure):
                failure = exc.details
            else:
                failure = {"errmsg": str(exc)}
            _debug_log(
                _COMMAND_LOGGER,
                message=_CommandStatusMessage.FAILED,
                durationMS=datetime.datetime.now() - start,
                failure=failure,
                commandName=name,
                databaseName=dbname,
                requestId=request_id,
                serverHost=host,
                serverPort=port,
                isServerSideError=isinstance(exc, OperationFailure),
            )
            raise
        _debug_log(
            _COMMAND_LOGGER,
            message=_CommandStatusMessage.SUCCEEDED,
            durationMS=datetime.datetime.now() - start,
            reply=doc,
            commandName=name,
            databaseName=dbname,
            requestId=request_id,
            serverHost=host,
            serverPort=port,
        )
        return doc

    def write(self, op_code, data, dbname, write_concern, timeout=None):
        """Send a write message, followed by getLastError unless the write
        concern is unacknowledged.

        Both messages leave in a single send. Returns the checked getLastError
        reply, or None for an unacknowledged write.
        """
        request_id = self.next_request_id()
        msg = message.pack_message(op_code, data, request_id)
        gle = message.last_error_query(dbname, write_concern)
        if gle is None:
            self.send_message(msg)
            return None
        gle_id = self.next_request_id()
        self.send_message(msg + message.pack_message(message.OP_QUERY, gle, gle_id))
        response = self.receive(gle_id, timeout)
        if not response.documents:
            raise OperationFailure("getLastError returned no document")
        doc = response.documents[0]
        helpers._check_gle_response(doc)
        return doc

    def close_socket(self):
        """Close this connection."""
        if self.closed:
            return
        self.closed = True
        # Note: We catch exceptions to avoid spurious errors on interpreter
        # shutdown.
        try:
            self.sock.close()
        except Exception:
            pass
        _debug_log(
            _CONNECTION_LOGGER,
            message=_ConnectionStatusMessage.CONN_CLOSED,
            serverHost=self.address[0],
            serverPort=self.address[1],
        )

    close = close_socket

    def idle_time_seconds(self):
        """Seconds since this connection last sent or received a message."""
        return time.monotonic() - self.last_use_time

    def _raise_connection_failure(self, error):
        # Catch *all* exceptions from socket methods and close the socket,
        # including a KeyboardInterrupt raised mid-read.
        self.close_socket()
        if isinstance(error, ConnectionFailure):
            raise
        if isinstance(error, OSError):
            _raise_connection_failure(self.address, error)
        else:
            raise

    def __repr__(self):
        return "Connection(%s:%d%s)" % (
            self.address[0],
            self.address[1],
            " CLOSED" if self.closed else "",
        )
