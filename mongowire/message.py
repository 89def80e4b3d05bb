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

"""Tools for creating and unpacking legacy wire protocol messages.

Request ids are not chosen here: the owning
:class:`~mongowire.network.Connection` assigns them when a message body is
framed with :func:`pack_message`.
"""
import collections
import struct
from typing import Any, Iterable, List, Mapping, Optional, Tuple

import bson
from bson.codec_options import CodecOptions
from bson.errors import InvalidBSON
from bson.int64 import Int64

from mongowire.errors import CursorError, CursorNotFound, InvalidOperation, ProtocolError

OP_REPLY = 1
OP_UPDATE = 2001
OP_INSERT = 2002
OP_QUERY = 2004
OP_GET_MORE = 2005
OP_DELETE = 2006
OP_KILL_CURSORS = 2007

HEADER_SIZE = 16
REPLY_HEADER_SIZE = 20

# Query flags.
QUERY_OPTIONS = {
    "tailable_cursor": 2,
    "secondary_okay": 4,
    "oplog_replay": 8,
    "no_timeout": 16,
    "await_data": 32,
    "exhaust": 64,
    "partial": 128,
}

_UNICODE_REPLACE_CODEC_OPTIONS: CodecOptions = CodecOptions(unicode_decode_error_handler="replace")

_ZERO_32 = b"\x00\x00\x00\x00"

_pack_header = struct.Struct("<iiii").pack
_UNPACK_HEADER = struct.Struct("<iiii").unpack
_pack_int = struct.Struct("<i").pack
_pack_long_long = struct.Struct("<q").pack


Response = collections.namedtuple(
    "Response", ["documents", "cursor_id", "starting_from", "number_returned"]
)
Response.__doc__ = """A decoded OP_REPLY.

``cursor_id`` is 0 once the server has no more results for the query.
"""


def pack_message(operation: int, data: bytes, request_id: int, response_to: int = 0) -> bytes:
    """Takes message data and adds a message header based on the operation.

    Returns the resultant message string.
    """
    return _pack_header(HEADER_SIZE + len(data), request_id, response_to, operation) + data


def unpack_header(data: bytes) -> Tuple[int, int, int, int]:
    """Unpack a 16 byte message header.

    Returns (length, request_id, response_to, op_code).
    """
    if len(data) != HEADER_SIZE:
        raise ProtocolError("Message header must be %d bytes, got %d" % (HEADER_SIZE, len(data)))
    return _UNPACK_HEADER(data)


def _encode(doc: Mapping[str, Any], opts: CodecOptions) -> bytes:
    return bson.encode(doc, False, opts)


def query(
    options: int,
    collection_name: str,
    num_to_skip: int,
    num_to_return: int,
    query: Mapping[str, Any],
    field_selector: Optional[Mapping[str, Any]] = None,
    opts: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS,
) -> bytes:
    """Get the body of an OP_QUERY message."""
    encoded = _encode(query, opts)
    if field_selector:
        efs = _encode(field_selector, opts)
    else:
        efs = b""
    return b"".join(
        [
            _pack_int(options),
            bson._make_c_string(collection_name),
            _pack_int(num_to_skip),
            _pack_int(num_to_return),
            encoded,
            efs,
        ]
    )


def get_more(collection_name: str, num_to_return: int, cursor_id: int) -> bytes:
    """Get the body of an OP_GET_MORE message."""
    return b"".join(
        [
            _ZERO_32,
            bson._make_c_string(collection_name),
            _pack_int(num_to_return),
            _pack_long_long(cursor_id),
        ]
    )


def insert(
    collection_name: str,
    docs: Iterable[Mapping[str, Any]],
    continue_on_error: bool = False,
    opts: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS,
) -> bytes:
    """Get the body of an OP_INSERT message."""
    encoded = [_encode(doc, opts) for doc in docs]
    if not encoded:
        raise InvalidOperation("cannot do an empty bulk insert")
    return b"".join(
        [
            _pack_int(1 if continue_on_error else 0),
            bson._make_c_string(collection_name),
        ]
        + encoded
    )


def update(
    collection_name: str,
    upsert: bool,
    multi: bool,
    spec: Mapping[str, Any],
    doc: Mapping[str, Any],
    opts: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS,
) -> bytes:
    """Get the body of an OP_UPDATE message."""
    flags = 0
    if upsert:
        flags += 1
    if multi:
        flags += 2
    return b"".join(
        [
            _ZERO_32,
            bson._make_c_string(collection_name),
            _pack_int(flags),
            _encode(spec, opts),
            _encode(doc, opts),
        ]
    )


def delete(
    collection_name: str,
    spec: Mapping[str, Any],
    single: bool = False,
    opts: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS,
) -> bytes:
    """Get the body of an OP_DELETE message."""
    return b"".join(
        [
            _ZERO_32,
            bson._make_c_string(collection_name),
            _pack_int(1 if single else 0),
            _encode(spec, opts),
        ]
    )


def kill_cursors(cursor_ids: List[int]) -> bytes:
    """Get the body of an OP_KILL_CURSORS message."""
    return b"".join(
        [_ZERO_32, _pack_int(len(cursor_ids))]
        + [_pack_long_long(cursor_id) for cursor_id in cursor_ids]
    )


def last_error_query(dbname: str, write_concern: Any) -> Optional[bytes]:
    """Get the body of the getLastError query that follows a write.

    Returns None when `write_concern` is unacknowledged, in which case no
    acknowledgement is requested.
    """
    if not write_concern.acknowledged:
        return None
    return query(
        QUERY_OPTIONS["secondary_okay"],
        dbname + ".$cmd",
        0,
        -1,
        write_concern.last_error_command(),
    )


class _OpReply:
    """A MongoDB OP_REPLY response message."""

    __slots__ = ("flags", "cursor_id", "starting_from", "number_returned", "documents")

    UNPACK_FROM = struct.Struct("<iqii").unpack_from
    OP_CODE = OP_REPLY

    def __init__(
        self, flags: int, cursor_id: int, starting_from: int, number_returned: int, documents: bytes
    ):
        self.flags = flags
        self.cursor_id = Int64(cursor_id)
        self.starting_from = starting_from
        self.number_returned = number_returned
        self.documents = documents

    def raw_response(self, cursor_id: Optional[int] = None) -> None:
        """Check the response header from the database, without decoding BSON.

        Can raise CursorNotFound or CursorError.

        :Parameters:
          - `cursor_id`: cursor_id we sent to get this response -
            used for raising an informative exception when we get cursor id not
            valid at server response
        """
        if self.flags & 1:
            # Shouldn't get this response if we aren't doing a getMore
            if cursor_id is None:
                raise ProtocolError("No cursor id for getMore operation")

            # OP_GET_MORE provides no document, fake one.
            msg = "Cursor not found, cursor id: %d" % (cursor_id,)
            errobj = {"ok": 0, "errmsg": msg, "code": 43}
            raise CursorNotFound(msg, 43, errobj)
        elif self.flags & 2:
            error_object = self._decode(self.documents, _UNICODE_REPLACE_CODEC_OPTIONS)
            error_object = error_object[0] if error_object else {}
            error_object.setdefault("ok", 0)
            raise CursorError(
                "database error: %s" % error_object.get("$err"),
                error_object.get("code"),
                error_object,
            )

    @staticmethod
    def _decode(data: bytes, codec_options: CodecOptions) -> List[dict]:
        try:
            return bson.decode_all(data, codec_options)
        except InvalidBSON as exc:
            raise ProtocolError("Invalid BSON in server reply: %s" % (exc,))

    def unpack_response(
        self,
        cursor_id: Optional[int] = None,
        codec_options: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS,
    ) -> List[dict]:
        """Unpack a response from the database and decode the BSON document(s).

        Check the response for errors and unpack, returning a list of
        documents.

        Can raise CursorNotFound, CursorError, or ProtocolError.
        """
        self.raw_response(cursor_id)
        docs = self._decode(self.documents, codec_options)
        if len(docs) != self.number_returned:
            raise ProtocolError(
                "Reply announced %d documents but carried %d" % (self.number_returned, len(docs))
            )
        return docs

    def response(
        self,
        cursor_id: Optional[int] = None,
        codec_options: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS,
    ) -> Response:
        """Unpack this reply into a :class:`Response`."""
        docs = self.unpack_response(cursor_id, codec_options)
        return Response(docs, int(self.cursor_id), self.starting_from, self.number_returned)

    @classmethod
    def unpack(cls, msg: bytes) -> "_OpReply":
        """Construct an _OpReply from raw bytes."""
        if len(msg) < REPLY_HEADER_SIZE:
            raise ProtocolError("OP_REPLY is too short: %d bytes" % (len(msg),))
        flags, cursor_id, starting_from, number_returned = cls.UNPACK_FROM(msg)

        documents = msg[REPLY_HEADER_SIZE:]
        return cls(flags, cursor_id, starting_from, number_returned, documents)
