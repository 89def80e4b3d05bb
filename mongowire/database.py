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

"""Database level operations over one connection."""

from bson.objectid import ObjectId
from bson.son import SON

from mongowire import auth, message
from mongowire.cursor import Cursor
from mongowire.errors import InvalidOperation
from mongowire.write_concern import DEFAULT_WRITE_CONCERN


def _check_name(name):
    """Check if a database name is valid."""
    if not isinstance(name, str):
        raise TypeError("name must be an instance of str")
    if not name:
        raise InvalidOperation("database name cannot be the empty string")
    for invalid_char in [" ", ".", "$", "/", "\\", "\x00", '"']:
        if invalid_char in name:
            raise InvalidOperation("database names cannot contain the character %r" % invalid_char)


class Database:
    """A view of one database through a single
    :class:`~mongowire.network.Connection`.

    Instances are cheap; :class:`~mongowire.mongo_client.MongoClient`
    creates one per operation against the connection it checked out.

    :Parameters:
      - `conn`: the connection to run operations on
      - `name`: the database name
      - `write_concern` (optional): a
        :class:`~mongowire.write_concern.WriteConcern` for writes
      - `timeout` (optional): seconds to wait for each reply
    """

    def __init__(self, conn, name, write_concern=None, timeout=None):
        _check_name(name)
        self.__conn = conn
        self.__name = name
        self.__write_concern = write_concern or DEFAULT_WRITE_CONCERN
        self.__timeout = timeout

    @property
    def name(self):
        """The name of this database."""
        return self.__name

    @property
    def connection(self):
        return self.__conn

    def __str__(self):
        return self.__name

    def __repr__(self):
        return "Database(%r, %r)" % (self.__conn, self.__name)

    def _full_name(self, collection):
        if not collection or not isinstance(collection, str):
            raise InvalidOperation("collection name must be a non-empty string")
        return "%s.%s" % (self.__name, collection)

    def command(self, command, value=1, check=True, **kwargs):
        """Issue a MongoDB command.

        If `command` is a string then the command ``{command: value}``
        is sent, with any keyword arguments added to it. Otherwise
        `command` is sent as is.

        Raises :class:`~mongowire.errors.OperationFailure` if `check` is
        true and the server reports an error.
        """
        if isinstance(command, str):
            command = SON([(command, value)])
        if kwargs:
            command = SON(command)
            command.update(kwargs)
        return self.__conn.command(self.__name, command, check=check, timeout=self.__timeout)

    def find(self, collection, spec=None, fields=None, lease=None, guard=None):
        """Query `collection`, returning a lazy
        :class:`~mongowire.cursor.Cursor`.
        """
        return Cursor(
            self.__conn,
            self._full_name(collection),
            spec,
            fields,
            timeout=self.__timeout,
            lease=lease,
            guard=guard,
        )

    def find_one(self, collection, spec=None, fields=None):
        """Get a single document from `collection`, or None."""
        cursor = self.find(collection, spec, fields).limit(-1)
        try:
            for doc in cursor:
                return doc
            return None
        finally:
            cursor.close()

    def count(self, collection, spec=None):
        """The number of documents in `collection` matching `spec`."""
        return self.find(collection, spec).count()

    def _write_concern(self, write_concern):
        return write_concern or self.__write_concern

    def insert(self, collection, docs, continue_on_error=False, write_concern=None):
        """Insert one document or a list of documents.

        Documents without an ``_id`` get a new
        :class:`~bson.objectid.ObjectId`. Returns the getLastError reply,
        or None when the write concern is unacknowledged.
        """
        docs = [docs] if isinstance(docs, dict) else list(docs)
        if not docs:
            raise InvalidOperation("cannot insert an empty list of documents")
        for doc in docs:
            if "_id" not in doc:
                doc["_id"] = ObjectId()
        data = message.insert(
            self._full_name(collection), docs, continue_on_error, self.__conn.opts.codec_options
        )
        return self.__conn.write(
            message.OP_INSERT, data, self.__name, self._write_concern(write_concern), self.__timeout
        )

    def update(self, collection, spec, document, upsert=False, multi=False, write_concern=None):
        """Update the documents in `collection` matching `spec`.

        Returns the getLastError reply, or None when the write concern is
        unacknowledged.
        """
        data = message.update(
            self._full_name(collection),
            upsert,
            multi,
            spec,
            document,
            self.__conn.opts.codec_options,
        )
        return self.__conn.write(
            message.OP_UPDATE, data, self.__name, self._write_concern(write_concern), self.__timeout
        )

    def remove(self, collection, spec=None, single=False, write_concern=None):
        """Remove the documents in `collection` matching `spec`.

        Returns the getLastError reply, or None when the write concern is
        unacknowledged.
        """
        data = message.delete(
            self._full_name(collection), spec or {}, single, self.__conn.opts.codec_options
        )
        return self.__conn.write(
            message.OP_DELETE, data, self.__name, self._write_concern(write_concern), self.__timeout
        )

    def create_collection(self, name, **kwargs):
        """Create a new collection in this database.

        Options such as ``capped`` or ``size`` are passed as keyword
        arguments.
        """
        self._full_name(name)
        return self.command("create", name, **kwargs)

    def drop_collection(self, name):
        """Drop a collection."""
        self._full_name(name)
        return self.command("drop", name)

    def collection_names(self, include_system_collections=False):
        """Get a list of all the collection names in this database."""
        result = self.command("listCollections", nameOnly=True)
        names = [coll["name"] for coll in result.get("cursor", {}).get("firstBatch", [])]
        if not include_system_collections:
            names = [name for name in names if not name.startswith("system.")]
        return names

    def authenticate(self, name, password, source=None):
        """Authenticate this connection against `source` (this database by
        default).

        Returns True on success and False when every mechanism was refused.
        """
        credentials = auth._build_credentials_tuple(source or self.__name, name, password)
        if credentials is None:
            raise InvalidOperation("a user name is required to authenticate")
        return auth.authenticate(credentials, self.__conn)
