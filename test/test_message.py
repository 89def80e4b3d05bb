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

"""Test the wire message builders and the OP_REPLY parser."""

import struct
import sys

sys.path[0:0] = [""]

import bson
from bson.son import SON

from mongowire import message
from mongowire.errors import CursorError, CursorNotFound, InvalidOperation, ProtocolError
from mongowire.write_concern import WriteConcern
from test import unittest
from test.utils import Reply, Request


def _reply_body(flags=0, cursor_id=0, starting_from=0, docs=(), number_returned=None):
    if number_returned is None:
        number_returned = len(docs)
    return struct.pack("<iqii", flags, cursor_id, starting_from, number_returned) + b"".join(
        bson.encode(d) for d in docs
    )


class TestHeader(unittest.TestCase):
    def test_pack_and_unpack_header(self):
        msg = message.pack_message(message.OP_QUERY, b"x" * 10, 42, 7)
        length, request_id, response_to, op_code = message.unpack_header(msg[:16])
        self.assertEqual(26, length)
        self.assertEqual(len(msg), length)
        self.assertEqual(42, request_id)
        self.assertEqual(7, response_to)
        self.assertEqual(message.OP_QUERY, op_code)

    def test_unpack_header_wrong_size(self):
        self.assertRaises(ProtocolError, message.unpack_header, b"\x00" * 15)


class TestBodies(unittest.TestCase):
    def test_query(self):
        body = message.query(4, "db.coll", 3, 5, {"a": 1}, {"b": 1})
        req = Request(message.OP_QUERY, 1, body)
        self.assertEqual(4, req.flags)
        self.assertEqual("db.coll", req.ns)
        self.assertEqual(3, req.num_to_skip)
        self.assertEqual(5, req.num_to_return)
        self.assertEqual({"a": 1}, req.spec)
        self.assertEqual({"b": 1}, req.fields)

    def test_query_without_fields(self):
        body = message.query(0, "db.coll", 0, -1, {})
        self.assertEqual(1, len(Request(message.OP_QUERY, 1, body).docs))

    def test_get_more(self):
        body = message.get_more("db.coll", 2, 123456789012)
        self.assertEqual(b"\x00\x00\x00\x00db.coll\x00", body[:12])
        self.assertEqual((2, 123456789012), struct.unpack("<iq", body[12:]))

    def test_kill_cursors(self):
        body = message.kill_cursors([5, 6])
        self.assertEqual((0, 2, 5, 6), struct.unpack("<iiqq", body))

    def test_insert(self):
        body = message.insert("db.coll", [{"a": 1}, {"a": 2}], continue_on_error=True)
        req = Request(message.OP_INSERT, 1, body)
        self.assertEqual(1, req.flags)
        self.assertEqual([{"a": 1}, {"a": 2}], req.docs)

    def test_empty_insert(self):
        self.assertRaises(InvalidOperation, message.insert, "db.coll", [])

    def test_update_flags(self):
        for upsert, multi, flags in [(False, False, 0), (True, False, 1), (True, True, 3)]:
            body = message.update("db.coll", upsert, multi, {"a": 1}, {"$set": {"b": 2}})
            req = Request(message.OP_UPDATE, 1, body)
            self.assertEqual(flags, req.flags)
            self.assertEqual([{"a": 1}, {"$set": {"b": 2}}], req.docs)

    def test_delete(self):
        req = Request(message.OP_DELETE, 1, message.delete("db.coll", {"a": 1}, single=True))
        self.assertEqual(1, req.flags)
        self.assertEqual({"a": 1}, req.spec)

    def test_last_error_query_defaults(self):
        body = message.last_error_query("db", WriteConcern())
        req = Request(message.OP_QUERY, 1, body)
        self.assertEqual("db.$cmd", req.ns)
        self.assertEqual(-1, req.num_to_return)
        self.assertEqual(
            SON([("getlasterror", 1), ("w", 1), ("j", False), ("wtimeout", 10000)]),
            req.spec,
        )
        self.assertEqual(["getlasterror", "w", "j", "wtimeout"], list(req.spec))

    def test_last_error_query_options(self):
        body = message.last_error_query("db", WriteConcern(w=2, wtimeout=5, fsync=True))
        spec = Request(message.OP_QUERY, 1, body).spec
        self.assertEqual(2, spec["w"])
        self.assertEqual(5, spec["wtimeout"])
        self.assertTrue(spec["fsync"])

    def test_last_error_query_unacknowledged(self):
        self.assertIsNone(message.last_error_query("db", WriteConcern(w=0)))


class TestOpReply(unittest.TestCase):
    def test_response(self):
        reply = message._OpReply.unpack(_reply_body(cursor_id=9, starting_from=2, docs=[{"a": 1}]))
        response = reply.response()
        self.assertEqual([{"a": 1}], response.documents)
        self.assertEqual(9, response.cursor_id)
        self.assertEqual(2, response.starting_from)
        self.assertEqual(1, response.number_returned)

    def test_cursor_not_found(self):
        reply = message._OpReply.unpack(_reply_body(flags=1))
        with self.assertRaises(CursorNotFound) as ctx:
            reply.response(cursor_id=9)
        self.assertEqual(43, ctx.exception.code)

    def test_query_failure(self):
        reply = message._OpReply.unpack(_reply_body(flags=2, docs=[{"$err": "bad query", "code": 2}]))
        with self.assertRaises(CursorError) as ctx:
            reply.response()
        self.assertNotIsInstance(ctx.exception, CursorNotFound)
        self.assertEqual(2, ctx.exception.code)
        self.assertEqual("bad query", ctx.exception.details["$err"])

    def test_number_returned_mismatch(self):
        reply = message._OpReply.unpack(_reply_body(docs=[{"a": 1}], number_returned=2))
        self.assertRaises(ProtocolError, reply.response)

    def test_invalid_bson(self):
        reply = message._OpReply.unpack(_reply_body() + b"\x05\x00\x00\x00\x01")
        self.assertRaises(ProtocolError, reply.response)

    def test_too_short(self):
        self.assertRaises(ProtocolError, message._OpReply.unpack, b"\x00" * 10)

    def test_reply_helper_matches_parser(self):
        raw = Reply([{"x": 1}], cursor_id=5).to_bytes(1, 2)
        length, _, response_to, op_code = message.unpack_header(raw[:16])
        self.assertEqual(len(raw), length)
        self.assertEqual(2, response_to)
        self.assertEqual(message.OP_REPLY, op_code)
        self.assertEqual(5, message._OpReply.unpack(raw[16:]).response().cursor_id)


if __name__ == "__main__":
    unittest.main()
