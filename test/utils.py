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

"""Utilities for testing mongowire without a server."""

import collections
import errno
import functools
import hashlib
import hmac
import socket
import struct
from base64 import standard_b64decode, standard_b64encode

import bson
from bson.binary import Binary

from mongowire import message
from mongowire.network import Connection
from mongowire.settings import PoolOptions
from mongowire.topology import Topology

_UNPACK_INT = struct.Struct("<i").unpack_from
_UNPACK_LONG = struct.Struct("<q").unpack_from
_PACK_REPLY_HEADER = struct.Struct("<iqii").pack

# Returned by a handler to make the server drop the connection.
HANGUP = object()

# Returned by a handler to make the server stop answering.
SILENCE = object()


def _read_cstring(data, pos):
    end = data.index(b"\x00", pos)
    return data[pos:end].decode("utf-8"), end + 1


class Request:
    """A wire message as the server received it."""

    def __init__(self, op_code, request_id, body):
        self.op_code = op_code
        self.request_id = request_id
        self.ns = None
        self.flags = 0
        self.num_to_skip = 0
        self.num_to_return = 0
        self.docs = []
        self.cursor_id = None
        self.cursor_ids = []

        if op_code == message.OP_QUERY:
            (self.flags,) = _UNPACK_INT(body, 0)
            self.ns, pos = _read_cstring(body, 4)
            self.num_to_skip, self.num_to_return = struct.unpack_from("<ii", body, pos)
            self.docs = bson.decode_all(body[pos + 8 :])
        elif op_code == message.OP_GET_MORE:
            self.ns, pos = _read_cstring(body, 4)
            (self.num_to_return,) = _UNPACK_INT(body, pos)
            (self.cursor_id,) = _UNPACK_LONG(body, pos + 4)
        elif op_code == message.OP_INSERT:
            (self.flags,) = _UNPACK_INT(body, 0)
            self.ns, pos = _read_cstring(body, 4)
            self.docs = bson.decode_all(body[pos:])
        elif op_code in (message.OP_UPDATE, message.OP_DELETE):
            self.ns, pos = _read_cstring(body, 4)
            (self.flags,) = _UNPACK_INT(body, pos)
            self.docs = bson.decode_all(body[pos + 4 :])
        elif op_code == message.OP_KILL_CURSORS:
            (count,) = _UNPACK_INT(body, 4)
            self.cursor_ids = [_UNPACK_LONG(body, 8 + 8 * i)[0] for i in range(count)]

    @property
    def spec(self):
        return self.docs[0] if self.docs else None

    @property
    def fields(self):
        return self.docs[1] if len(self.docs) > 1 else None

    @property
    def db(self):
        return self.ns.split(".", 1)[0]

    @property
    def command_name(self):
        if self.op_code == message.OP_QUERY and self.ns.endswith(".$cmd"):
            return next(iter(self.spec))
        return None

    def __repr__(self):
        return "Request(op_code=%d, ns=%r, command=%r)" % (
            self.op_code,
            self.ns,
            self.command_name,
        )


class Reply:
    """A scripted OP_REPLY."""

    def __init__(
        self,
        docs=(),
        cursor_id=0,
        flags=0,
        starting_from=0,
        number_returned=None,
        response_to=None,
        op_code=message.OP_REPLY,
    ):
        self.docs = list(docs)
        self.cursor_id = cursor_id
        self.flags = flags
        self.starting_from = starting_from
        self.number_returned = number_returned
        self.response_to = response_to
        self.op_code = op_code

    def to_bytes(self, request_id, response_to):
        if self.response_to is not None:
            response_to = self.response_to
        number_returned = self.number_returned
        if number_returned is None:
            number_returned = len(self.docs)
        body = _PACK_REPLY_HEADER(
            self.flags, self.cursor_id, self.starting_from, number_returned
        ) + b"".join(bson.encode(doc) for doc in self.docs)
        return message.pack_message(self.op_code, body, request_id, response_to)


class MockServer:
    """An in-process server that parses wire messages and scripts replies.

    Replies come, in order of precedence, from a handler registered in
    :attr:`commands` for the command name, from a collection registered
    with :meth:`add_collection`, or from the :attr:`replies` queue. Any
    other query gets ``{"ok": 1}``. Writes and kill cursors get no reply.
    """

    def __init__(self, address=("localhost", 27017)):
        self.address = address
        self.requests = []
        self.replies = collections.deque()
        self.commands = {}
        self.collections = {}
        self.down = False
        self.connections = 0
        self._cursors = {}
        self._next_cursor_id = 1000
        self._next_reply_id = 1

    def add_reply(self, *docs, **kwargs):
        self.replies.append(Reply(docs, **kwargs))

    def add_collection(self, ns, docs):
        self.collections[ns] = list(docs)

    def command_names(self):
        return [r.command_name for r in self.requests if r.command_name]

    def requests_for(self, op_code):
        return [r for r in self.requests if r.op_code == op_code]

    def receive(self, msg):
        """Handle one complete wire message; return the reply bytes, or
        :data:`HANGUP` or :data:`SILENCE`.
        """
        length, request_id, _, op_code = message.unpack_header(msg[:16])
        request = Request(op_code, request_id, msg[16:length])
        self.requests.append(request)
        result = self.handle(request)
        if result is None:
            return b""
        if result is HANGUP or result is SILENCE:
            return result
        if isinstance(result, bytes):
            return result
        if not isinstance(result, Reply):
            result = Reply([result])
        reply_id = self._next_reply_id
        self._next_reply_id += 1
        return result.to_bytes(reply_id, request.request_id)

    def handle(self, request):
        if request.op_code in (
            message.OP_INSERT,
            message.OP_UPDATE,
            message.OP_DELETE,
            message.OP_KILL_CURSORS,
        ):
            for cursor_id in request.cursor_ids:
                self._cursors.pop(cursor_id, None)
            return None
        name = request.command_name
        if name in self.commands:
            return self.commands[name](request)
        if request.op_code == message.OP_GET_MORE:
            return self._get_more(request)
        if request.ns in self.collections:
            return self._query(request)
        if self.replies:
            return self.replies.popleft()
        return {"ok": 1}

    def _batch(self, ns, start, num_to_return):
        docs = self.collections[ns]
        if num_to_return == 0:
            size = 101
        else:
            size = abs(num_to_return)
        batch = docs[start : start + size]
        end = start + len(batch)
        if num_to_return < 0 or end >= len(docs):
            return Reply(batch, starting_from=start)
        cursor_id = self._next_cursor_id
        self._next_cursor_id += 1
        self._cursors[cursor_id] = (ns, end)
        return Reply(batch, cursor_id=cursor_id, starting_from=start)

    def _query(self, request):
        return self._batch(request.ns, request.num_to_skip, request.num_to_return)

    def _get_more(self, request):
        state = self._cursors.pop(request.cursor_id, None)
        if state is None:
            return Reply(flags=1)
        ns, position = state
        reply = self._batch(ns, position, request.num_to_return)
        if reply.cursor_id:
            # Keep the cursor id stable across batches.
            self._cursors[request.cursor_id] = self._cursors.pop(reply.cursor_id)
            reply.cursor_id = request.cursor_id
        return reply


class MockSocket:
    """A socket connected to a :class:`MockServer`.

    With a `chunk_size`, every ``recv`` returns at most that many bytes.
    """

    def __init__(self, server, chunk_size=None):
        self.server = server
        self.chunk_size = chunk_size
        self.closed = False
        self.timeout = None
        self.sent = []
        self._inbound = bytearray()
        self._outbound = bytearray()
        self._hung_up = False
        self._silent = False

    def settimeout(self, timeout):
        self.timeout = timeout

    def sendall(self, data):
        if self.closed or self._hung_up:
            raise OSError(errno.EPIPE, "Broken pipe")
        self.sent.append(bytes(data))
        self._inbound += data
        while len(self._inbound) >= 16:
            (length,) = _UNPACK_INT(self._inbound, 0)
            if len(self._inbound) < length:
                break
            msg = bytes(self._inbound[:length])
            del self._inbound[:length]
            result = self.server.receive(msg)
            if result is HANGUP:
                self._hung_up = True
            elif result is SILENCE:
                self._silent = True
            else:
                self._outbound += result

    def recv(self, size):
        if self.closed:
            raise OSError(errno.EBADF, "Bad file descriptor")
        if not self._outbound:
            if self._silent:
                raise socket.timeout("timed out")
            return b""
        if self.chunk_size:
            size = min(size, self.chunk_size)
        chunk = bytes(self._outbound[:size])
        del self._outbound[:size]
        return chunk

    def close(self):
        self.closed = True


def mock_connection_class(servers, chunk_size=None):
    """A Connection subclass whose sockets talk to `servers`.

    `servers` maps (host, port) to :class:`MockServer`. Connecting to an
    address that is missing or whose server is down is refused.
    """
    if isinstance(servers, MockServer):
        servers = {servers.address: servers}

    class MockConnection(Connection):
        def _create_socket(self):
            server = servers.get(self.address)
            if server is None or server.down:
                raise ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
            server.connections += 1
            return MockSocket(server, chunk_size)

    return MockConnection


def mock_topology_class(servers, chunk_size=None):
    """A Topology factory whose connections talk to `servers`."""
    return functools.partial(
        Topology, connection_class=mock_connection_class(servers, chunk_size)
    )


def connected(server, **options):
    """An open MockConnection to `server`."""
    conn = mock_connection_class(server)(server.address, PoolOptions(**options))
    return conn.open()


def _hi(mechanism, password, salt, iterations):
    digest = "sha256" if mechanism == "SCRAM-SHA-256" else "sha1"
    return hashlib.pbkdf2_hmac(digest, password, salt, iterations)


def _parse(payload):
    return dict(item.split(b"=", 1) for item in bytes(payload).split(b","))


def _xor(a, b):
    return bytes(x ^ y for x, y in zip(a, b))


class ScramServer:
    """Plays the server side of SCRAM and MONGODB-CR for one user.

    Knobs make the server misbehave: a low `iterations` count, a nonce
    that doesn't extend the client's, a wrong server signature, or
    reporting ``done`` with the final signature.
    """

    CR_NONCE = "2375531c32080ae8"

    def __init__(
        self,
        username,
        password,
        mechanisms=("SCRAM-SHA-256", "SCRAM-SHA-1", "MONGODB-CR"),
        iterations=4096,
        salt=b"mongowire-salt",
        bad_nonce=False,
        bad_signature=False,
        done_with_signature=False,
    ):
        self.username = username
        self.password = password
        self.mechanisms = mechanisms
        self.iterations = iterations
        self.salt = salt
        self.bad_nonce = bad_nonce
        self.bad_signature = bad_signature
        self.done_with_signature = done_with_signature
        self.authenticated = []
        self._state = None

    def install(self, server):
        server.commands["saslStart"] = self.sasl_start
        server.commands["saslContinue"] = self.sasl_continue
        server.commands["getnonce"] = self.getnonce
        server.commands["authenticate"] = self.authenticate
        return server

    def _password_bytes(self, mechanism):
        if mechanism == "SCRAM-SHA-256":
            return self.password.encode("utf-8")
        data = "%s:mongo:%s" % (self.username, self.password)
        return hashlib.md5(data.encode("utf-8")).hexdigest().encode("utf-8")

    @staticmethod
    def _failed(msg="Authentication failed."):
        return {"ok": 0, "errmsg": msg, "code": 18}

    def sasl_start(self, request):
        mechanism = request.spec["mechanism"]
        if mechanism not in self.mechanisms:
            return {
                "ok": 0,
                "errmsg": "Received authentication for mechanism %s which is not enabled"
                % (mechanism,),
                "code": 334,
            }
        payload = bytes(request.spec["payload"])
        first_bare = payload[3:]
        client = _parse(first_bare)
        if client[b"n"].decode("utf-8") != self.username:
            return self._failed()
        if self.bad_nonce:
            rnonce = b"not-your-nonce"
        else:
            rnonce = client[b"r"] + b"server-nonce"
        server_first = b"r=%s,s=%s,i=%d" % (
            rnonce,
            standard_b64encode(self.salt),
            self.iterations,
        )
        self._state = {
            "mechanism": mechanism,
            "first_bare": first_bare,
            "server_first": server_first,
            "step": 1,
        }
        return {
            "ok": 1,
            "conversationId": 1,
            "done": False,
            "payload": Binary(server_first),
        }

    def sasl_continue(self, request):
        state = self._state
        if state is None or request.spec.get("conversationId") != 1:
            return self._failed("No SASL session state found")
        if state["step"] == 2:
            self._state = None
            return {"ok": 1, "conversationId": 1, "done": True, "payload": Binary(b"")}

        mechanism = state["mechanism"]
        digestmod = hashlib.sha256 if mechanism == "SCRAM-SHA-256" else hashlib.sha1
        client_final = bytes(request.spec["payload"])
        without_proof, _, proof = client_final.rpartition(b",p=")
        salted = _hi(mechanism, self._password_bytes(mechanism), self.salt, self.iterations)
        client_key = hmac.HMAC(salted, b"Client Key", digestmod).digest()
        server_key = hmac.HMAC(salted, b"Server Key", digestmod).digest()
        stored_key = digestmod(client_key).digest()
        auth_msg = b",".join((state["first_bare"], state["server_first"], without_proof))
        client_sig = hmac.HMAC(stored_key, auth_msg, digestmod).digest()
        recovered = _xor(standard_b64decode(proof), client_sig)
        if digestmod(recovered).digest() != stored_key:
            self._state = None
            return self._failed()

        server_sig = hmac.HMAC(server_key, auth_msg, digestmod).digest()
        if self.bad_signature:
            server_sig = _xor(server_sig, b"\xff" * len(server_sig))
        self.authenticated.append(mechanism)
        state["step"] = 2
        done = self.done_with_signature
        if done:
            self._state = None
        return {
            "ok": 1,
            "conversationId": 1,
            "done": done,
            "payload": Binary(b"v=" + standard_b64encode(server_sig)),
        }

    def getnonce(self, request):
        if "MONGODB-CR" not in self.mechanisms:
            return {"ok": 0, "errmsg": "no such command: 'getnonce'", "code": 59}
        return {"ok": 1, "nonce": self.CR_NONCE}

    def authenticate(self, request):
        spec = request.spec
        inner = hashlib.md5(
            ("%s:mongo:%s" % (self.username, self.password)).encode("utf-8")
        ).hexdigest()
        expected = hashlib.md5(
            ("%s%s%s" % (self.CR_NONCE, self.username, inner)).encode("utf-8")
        ).hexdigest()
        if spec.get("user") != self.username or spec.get("key") != expected:
            return self._failed()
        self.authenticated.append("MONGODB-CR")
        return {"ok": 1}
