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

"""Cursor class to iterate over Mongo query results."""

from bson.son import SON

from mongowire import helpers
from mongowire.common import DEFAULT_BATCH_SIZE
from mongowire.errors import InvalidOperation
from mongowire.message import QUERY_OPTIONS


class Cursor:
    """A cursor / iterator over Mongo query results.

    Documents are fetched lazily, one batch per round trip, over the
    :class:`~mongowire.network.Connection` the cursor was created with.
    Fetched documents are kept in a buffer that only grows; the read
    position moves over that buffer and asks the server for more only when
    the next position isn't buffered yet.

    Iterating starts from the beginning of the buffer::

      for doc in db.find("things", {"x": 1}).limit(5).batch_size(2):
          print(doc)

    The explicit protocol (:meth:`valid`, :meth:`current`, :meth:`key`,
    :meth:`next`, :meth:`rewind`) is also available.

    :Parameters:
      - `conn`: the :class:`~mongowire.network.Connection` to query
      - `namespace`: full collection name, ``"<db>.<collection>"``
      - `spec` (optional): the query filter
      - `fields` (optional): a projection, as a dict or a list of field names
      - `timeout` (optional): seconds to wait for each reply, defaults to the
        connection's socket timeout
      - `lease` (optional): released (via its ``close()``) once this cursor
        no longer needs `conn`
      - `guard` (optional): an object whose ``active`` attribute turns false
        once `conn` belongs to someone else; the cursor stops using `conn`
        from then on
    """

    def __init__(
        self, conn, namespace, spec=None, fields=None, timeout=None, lease=None, guard=None
    ):
        self.__lease = None
        if "." not in namespace:
            raise InvalidOperation("namespace must be '<db>.<collection>', not %r" % (namespace,))
        self.__conn = conn
        self.__ns = namespace
        self.__spec = spec or {}
        self.__fields = helpers._fields_list_to_dict(fields) if fields else None
        self.__ordering = None
        self.__hint = None
        self.__snapshot = False
        self.__skip = 0
        self.__limit = 0
        self.__batch_size = DEFAULT_BATCH_SIZE
        self.__flags = QUERY_OPTIONS["secondary_okay"]
        if timeout is None:
            timeout = conn.opts.socket_timeout
        self.__timeout = timeout
        self.__lease = lease
        self.__guard = guard
        self.__released = False

        self.__data = []
        self.__position = -1
        self.__id = None
        self.__exhausted = False
        self.__started = False
        self.__killed = False

    def __del__(self):
        # Only a cursor that still owns its connection may use it here.
        if self.__lease is not None:
            self.__die()

    @property
    def namespace(self):
        """The full collection name this cursor queries."""
        return self.__ns

    @property
    def connection(self):
        """The :class:`~mongowire.network.Connection` this cursor reads from."""
        return self.__conn

    @property
    def alive(self):
        """Does this cursor have the potential to return more data?"""
        return not self.__killed and (not self.__started or not self.__exhausted)

    @property
    def cursor_id(self):
        """Returns the id of the cursor, None before the query is sent."""
        return self.__id

    def __check_okay_to_chain(self):
        """Check if it is okay to chain more options onto this cursor."""
        if self.__started:
            raise InvalidOperation("cannot set options after executing query")

    def __out_of_scope(self):
        return self.__guard is not None and not self.__guard.active

    def __connection(self):
        if self.__killed:
            raise InvalidOperation("cannot use a cursor after it has been closed")
        if self.__released:
            raise InvalidOperation("cursor has already returned its connection to the pool")
        if self.__out_of_scope():
            raise InvalidOperation("cannot use a cursor after its request() scope has exited")
        return self.__conn

    def __release(self):
        lease, self.__lease = self.__lease, None
        if lease is not None:
            self.__released = True
            lease.close()

    def __kill_server_cursor(self):
        """Kill the server cursor, if any, then give back the connection."""
        cursor_id, self.__id = self.__id, 0
        try:
            if (
                cursor_id
                and not self.__released
                and not self.__out_of_scope()
                and not self.__conn.closed
            ):
                self.__conn.kill_cursors([cursor_id])
        finally:
            self.__release()

    def __die(self):
        """Closes this cursor."""
        try:
            if not self.__killed:
                self.__kill_server_cursor()
        finally:
            self.__killed = True
            self.__release()

    def close(self):
        """Explicitly close / kill this cursor.

        Kills the server side cursor if it is still open and gives back the
        connection if this cursor owns it.
        """
        self.__die()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.__die()

    # Modifiers.

    def sort(self, key_or_list, direction=None):
        """Sorts this cursor's results.

        Takes either a single key and a direction, or a list of (key,
        direction) pairs, or a dict. Raises
        :class:`~mongowire.errors.InvalidOperation` if this cursor has
        already been used.
        """
        self.__check_okay_to_chain()
        keys = helpers._index_list(key_or_list, direction)
        self.__ordering = helpers._index_document(keys)
        return self

    def hint(self, index):
        """Adds a 'hint', telling Mongo the proper index to use for the query.

        `index` is an index name, or a list of (key, direction) pairs (or a
        dict) which is sent as the matching index name, e.g.
        ``[("a", 1), ("b", -1)]`` becomes ``"a_1_b_-1"``. If `index` is
        ``None`` any existing hint is cleared.
        """
        self.__check_okay_to_chain()
        if index is None or isinstance(index, str):
            self.__hint = index
        else:
            self.__hint = helpers._gen_index_name(helpers._index_list(index))
        return self

    def snapshot(self):
        """Use snapshot mode for the query."""
        self.__check_okay_to_chain()
        self.__snapshot = True
        return self

    def fields(self, fields):
        """Sets the projection for this query, as a dict or a list of names."""
        self.__check_okay_to_chain()
        self.__fields = helpers._fields_list_to_dict(fields) if fields else None
        return self

    def limit(self, limit):
        """Limits the number of results to be returned by this cursor.

        A limit of ``0`` is equivalent to no limit. A negative limit asks
        the server for a single batch of at most ``abs(limit)`` documents
        and closes the server cursor.
        """
        if not isinstance(limit, int):
            raise TypeError("limit must be an int")
        self.__check_okay_to_chain()
        self.__limit = limit
        return self

    def skip(self, skip):
        """Skips the first `skip` results of this cursor."""
        if not isinstance(skip, int):
            raise TypeError("skip must be an int")
        if skip < 0:
            raise ValueError("skip must be >= 0")
        self.__check_okay_to_chain()
        self.__skip = skip
        return self

    def batch_size(self, batch_size):
        """Limits the number of documents returned in one batch.

        A batch size of ``0`` lets the server choose. A negative batch size
        is passed through to the server unchanged.
        """
        if not isinstance(batch_size, int):
            raise TypeError("batch_size must be an int")
        self.__check_okay_to_chain()
        self.__batch_size = batch_size
        return self

    def timeout(self, seconds):
        """Sets how many seconds to wait for each reply from the server."""
        self.__timeout = seconds
        return self

    # Query execution.

    def __query_spec(self, explain=False):
        """Get the spec to use for a query."""
        operators = SON()
        if self.__ordering:
            operators["$orderby"] = self.__ordering
        if self.__hint:
            operators["$hint"] = self.__hint
        if self.__snapshot:
            operators["$snapshot"] = True
        if explain:
            operators["$explain"] = True
        if not operators:
            return self.__spec
        spec = SON([("$query", self.__spec)])
        spec.update(operators)
        return spec

    def _initial_request_size(self):
        """The number of documents to ask for with the first query."""
        limit, batch_size = self.__limit, self.__batch_size
        if limit < 0:
            return limit
        if batch_size < 0:
            return batch_size
        if limit == 0:
            return batch_size
        if batch_size == 0:
            return limit
        return min(limit, batch_size)

    def _next_request_size(self):
        """The number of documents to ask for with the next get more.

        Marks the cursor exhausted, and returns 0, once a positive limit
        has been reached.
        """
        current = len(self.__data)
        limit, batch_size = self.__limit, self.__batch_size
        if limit > 0:
            if current >= limit:
                self.__set_exhausted()
                return 0
            remaining = limit - current
            if batch_size > 0:
                return min(batch_size, remaining)
            return remaining
        return batch_size

    def __set_exhausted(self):
        self.__exhausted = True

    def __set_documents(self, response):
        if response.number_returned == 0:
            self.__set_exhausted()
        self.__data.extend(response.documents)
        if not self.__id:
            # Nothing left on the server.
            self.__release()

    def __send_query(self):
        conn = self.__connection()
        self.__started = True
        response = conn.query(
            self.__ns,
            self.__query_spec(),
            self.__skip,
            self._initial_request_size(),
            self.__fields,
            self.__flags,
            self.__timeout,
        )
        self.__id = response.cursor_id
        self.__set_documents(response)

    def __ensure_started(self):
        if not self.__started:
            self.__send_query()

    def __fetch_more_if_needed(self):
        if self.__position + 1 < len(self.__data):
            return

        if self.__id:
            size = self._next_request_size()
            if self.__exhausted:
                # Limit reached with documents left on the server.
                self.__kill_server_cursor()
                return
            response = self.__connection().get_more(self.__ns, size, self.__id, self.__timeout)
            self.__id = response.cursor_id
            self.__set_documents(response)
        else:
            self.__set_exhausted()

    # Iteration protocol.

    def current(self):
        """The document at the current position, or None."""
        self.__ensure_started()
        self.__fetch_more_if_needed()
        if 0 <= self.__position < len(self.__data):
            return self.__data[self.__position]
        return None

    def key(self):
        """The current document's ``_id`` as a string.

        Falls back to the position when the document has no ``_id``, and is
        None when there is no current document.
        """
        doc = self.current()
        if doc is None:
            return None
        if "_id" not in doc:
            return self.__position
        return str(doc["_id"])

    def next(self):
        """Advance to the next position, fetching a batch if needed."""
        self.__ensure_started()
        self.__fetch_more_if_needed()
        self.__position += 1

    def valid(self):
        """False once the end of the results has been reached."""
        self.__ensure_started()
        return not self.__exhausted

    def rewind(self):
        """Move back to the first buffered document.

        The query is not sent again and the buffer is kept: a rewound
        cursor replays what it already fetched, then keeps fetching from
        where the server cursor left off. Use :meth:`reset` to start over.
        """
        self.__position = 0
        self.__exhausted = False

    def reset(self):
        """Clear the cursor so the next access sends the query again."""
        self.__data = []
        self.__position = 0
        self.__id = None
        self.__exhausted = False
        self.__started = False

    def has_next(self):
        """Is there a document after the current position?"""
        self.__ensure_started()
        self.__fetch_more_if_needed()
        return self.__position + 1 < len(self.__data)

    def get_next(self):
        """Advance, then return the document at the new position."""
        self.next()
        return self.current()

    def __iter__(self):
        self.rewind()
        while self.valid():
            doc = self.current()
            if doc is None:
                return
            yield doc
            self.next()

    # Information.

    def count(self, found_only=False):
        """Counts the number of results for this query.

        With `found_only` the documents this cursor yields are counted
        locally; otherwise the server runs a ``count`` command for the
        query filter, ignoring anything already fetched.

        The ``count`` command needs this cursor's connection. Once the
        cursor has given it up (closed, drained with its own pooled
        connection, or outside the :meth:`~mongowire.mongo_client.MongoClient.request`
        scope it was created in) it raises
        :class:`~mongowire.errors.InvalidOperation`; `found_only` still works,
        and :meth:`~mongowire.mongo_client.MongoClient.count` runs the command
        on a fresh checkout.
        """
        if found_only:
            return sum(1 for _ in self)
        dbname, collname = self.__ns.split(".", 1)
        cmd = SON([("count", collname), ("query", self.__spec)])
        result = self.__connection().command(dbname, cmd, timeout=self.__timeout)
        return int(result.get("n", 0))

    def explain(self):
        """Returns an explain plan record for this cursor."""
        response = self.__connection().query(
            self.__ns,
            self.__query_spec(explain=True),
            self.__skip,
            self._initial_request_size(),
            self.__fields,
            self.__flags,
            self.__timeout,
        )
        return response.documents[0] if response.documents else None

    def info(self):
        """Gets the query, fields, limit, and skip for this cursor."""
        return {
            "ns": self.__ns,
            "limit": self.__limit,
            "batchSize": self.__batch_size,
            "skip": self.__skip,
            "flags": self.__flags,
            "query": self.__spec,
            "fields": self.__fields,
            "started_iterating": self.__started,
            "id": self.__id,
        }
