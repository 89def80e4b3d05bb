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

"""Authentication helpers.

Each mechanism raises :exc:`~mongowire.errors.OperationFailure` when the
server (or the client, checking the server) refuses the handshake.
:func:`authenticate` turns those refusals into a ``False`` return and tries
the next mechanism; transport errors are never caught here.
"""

import functools
import hashlib
import hmac
import os
from base64 import standard_b64decode, standard_b64encode
from collections import namedtuple
from typing import Callable, Mapping

from bson.binary import Binary
from bson.son import SON

from mongowire.common import MIN_SCRAM_ITERATIONS
from mongowire.errors import ConfigurationError, OperationFailure
from mongowire.logger import _CONNECTION_LOGGER, _ConnectionStatusMessage, _debug_log

MECHANISMS = ("SCRAM-SHA-256", "SCRAM-SHA-1", "MONGODB-CR")
"""The authentication mechanisms supported by mongowire, strongest first."""


MongoCredential = namedtuple("MongoCredential", ["source", "username", "password"])
"""A hashable namedtuple of values used for authentication."""


def _build_credentials_tuple(source, user, passwd):
    """Build and return a credentials tuple, or None if no user is given."""
    if not user:
        return None
    if not isinstance(user, str):
        raise TypeError("username must be an instance of str")
    if not passwd:
        raise ConfigurationError("A password is required.")
    if not isinstance(passwd, str):
        raise TypeError("password must be an instance of str")
    return MongoCredential(source or "admin", user, passwd)


def _xor(fir, sec):
    """XOR two byte strings together."""
    return b"".join([bytes([x ^ y]) for x, y in zip(fir, sec)])


def _parse_scram_response(response):
    """Split a scram response into key, value pairs."""
    try:
        return dict(item.split(b"=", 1) for item in bytes(response).split(b","))
    except (TypeError, ValueError):
        raise OperationFailure("Server returned a malformed SCRAM payload.")


class _ScramSession:
    """State for one SCRAM conversation. Discarded when it ends."""

    __slots__ = ("credentials", "mechanism", "nonce", "first_bare", "conversation_id")

    def __init__(self, credentials, mechanism):
        self.credentials = credentials
        self.mechanism = mechanism
        user = credentials.username.encode("utf-8").replace(b"=", b"=3D").replace(b",", b"=2C")
        self.nonce = standard_b64encode(os.urandom(32))
        self.first_bare = b"n=" + user + b",r=" + self.nonce
        self.conversation_id = None

    def start_command(self):
        return SON(
            [
                ("saslStart", 1),
                ("mechanism", self.mechanism),
                ("payload", Binary(b"n,," + self.first_bare)),
                ("autoAuthorize", 1),
            ]
        )

    def continue_command(self, payload):
        return SON(
            [
                ("saslContinue", 1),
                ("conversationId", self.conversation_id),
                ("payload", Binary(payload)),
            ]
        )


def _check_ok(res):
    if not res.get("ok"):
        raise OperationFailure(
            res.get("errmsg", "Authentication failed."), res.get("code"), res
        )
    return res


def _authenticate_scram(credentials, conn, mechanism):
    """Authenticate using SCRAM."""
    username = credentials.username
    if mechanism == "SCRAM-SHA-256":
        digest = "sha256"
        digestmod = hashlib.sha256
        data = credentials.password.encode("utf-8")
    else:
        digest = "sha1"
        digestmod = hashlib.sha1
        data = _password_digest(username, credentials.password).encode("utf-8")
    source = credentials.source

    # Make local
    _hmac = hmac.HMAC

    session = _ScramSession(credentials, mechanism)
    res = _check_ok(conn.command(source, session.start_command(), check=False))
    session.conversation_id = res.get("conversationId")

    server_first = bytes(res.get("payload", b""))
    parsed = _parse_scram_response(server_first)
    try:
        iterations = int(parsed[b"i"])
        salt = standard_b64decode(parsed[b"s"])
        rnonce = parsed[b"r"]
    except (KeyError, ValueError):
        raise OperationFailure("Server returned a malformed SCRAM payload.")
    if iterations < MIN_SCRAM_ITERATIONS:
        raise OperationFailure("Server returned an invalid iteration count.")
    if not rnonce.startswith(session.nonce):
        raise OperationFailure("Server returned an invalid nonce.")

    without_proof = b"c=biws,r=" + rnonce
    salted_pass = hashlib.pbkdf2_hmac(digest, data, salt, iterations)
    client_key = _hmac(salted_pass, b"Client Key", digestmod).digest()
    server_key = _hmac(salted_pass, b"Server Key", digestmod).digest()
    stored_key = digestmod(client_key).digest()
    auth_msg = b",".join((session.first_bare, server_first, without_proof))
    client_sig = _hmac(stored_key, auth_msg, digestmod).digest()
    client_proof = b"p=" + standard_b64encode(_xor(client_key, client_sig))
    client_final = b",".join((without_proof, client_proof))

    server_sig = standard_b64encode(_hmac(server_key, auth_msg, digestmod).digest())

    res = _check_ok(conn.command(source, session.continue_command(client_final), check=False))

    parsed = _parse_scram_response(res.get("payload", b""))
    if not hmac.compare_digest(parsed.get(b"v", b""), server_sig):
        raise OperationFailure("Server returned an invalid signature.")

    # A third empty challenge completes the conversation unless the server
    # already reported it done.
    if not res.get("done"):
        res = _check_ok(conn.command(source, session.continue_command(b""), check=False))
        if not res.get("done"):
            raise OperationFailure("SASL conversation failed to complete.")


def _password_digest(username, password):
    """Get a password digest to use for authentication."""
    if not isinstance(password, str):
        raise TypeError("password must be an instance of str")
    if len(password) == 0:
        raise ValueError("password can't be empty")
    if not isinstance(username, str):
        raise TypeError("username must be an instance of str")

    md5hash = hashlib.md5()
    data = "%s:mongo:%s" % (username, password)
    md5hash.update(data.encode("utf-8"))
    return md5hash.hexdigest()


def _auth_key(nonce, username, password):
    """Get an auth key to use for authentication."""
    digest = _password_digest(username, password)
    md5hash = hashlib.md5()
    data = "%s%s%s" % (nonce, username, digest)
    md5hash.update(data.encode("utf-8"))
    return md5hash.hexdigest()


def _authenticate_mongo_cr(credentials, conn):
    """Authenticate using MONGODB-CR."""
    source = credentials.source
    username = credentials.username
    password = credentials.password
    # Get a nonce
    response = _check_ok(conn.command(source, {"getnonce": 1}, check=False))
    nonce = response.get("nonce")
    if not nonce:
        raise OperationFailure("Server did not return a nonce.")
    key = _auth_key(nonce, username, password)

    # Actually authenticate
    query = SON([("authenticate", 1), ("user", username), ("nonce", nonce), ("key", key)])
    _check_ok(conn.command(source, query, check=False))


_AUTH_MAP: Mapping[str, Callable] = {
    "MONGODB-CR": _authenticate_mongo_cr,
    "SCRAM-SHA-1": functools.partial(_authenticate_scram, mechanism="SCRAM-SHA-1"),
    "SCRAM-SHA-256": functools.partial(_authenticate_scram, mechanism="SCRAM-SHA-256"),
}


def authenticate_mechanism(credentials, conn, mechanism):
    """Run one mechanism against `conn`. Returns True on success.

    A refused handshake returns False; transport errors are raised.
    """
    auth_func = _AUTH_MAP[mechanism]
    try:
        auth_func(credentials, conn)
    except OperationFailure as exc:
        _debug_log(
            _CONNECTION_LOGGER,
            message=_ConnectionStatusMessage.AUTH_FAILED,
            mechanism=mechanism,
            username=credentials.username,
            authSource=credentials.source,
            reason=str(exc),
            serverHost=conn.address[0],
            serverPort=conn.address[1],
        )
        return False
    return True


def authenticate(credentials, conn, mechanisms=MECHANISMS):
    """Authenticate conn, trying each mechanism strongest first.

    Returns True as soon as one mechanism succeeds and False once all of
    them have been refused.
    """
    for mechanism in mechanisms:
        if authenticate_mechanism(credentials, conn, mechanism):
            return True
    return False
