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

"""Tools for connecting to MongoDB.

To get a client backed by a pool of connections::

  >>> from mongowire.mongo_client import MongoClient
  >>> c = MongoClient({"url": "localhost:27017", "db": "test"})
  >>> c.insert("things", {"x": 1})
  >>> c.find_one("things")
  {'_id': ObjectId('...'), 'x': 1}

Every operation runs inside :meth:`MongoClient.request`. Nested calls made
from the same thread or task share one pooled topology, so a sequence of
operations sees the same server connection.
"""
from __future__ import annotations

import contextlib
import contextvars
import threading
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

from mongowire.database import Database
from mongowire.errors import ConfigurationError
from mongowire.pool import Pool
from mongowire.settings import ClientSettings
from mongowire.topology import Topology

# Pool name -> _RequestScope bound to the current context. The mapping is
# replaced, never mutated, so each context only ever sees its own bindings.
_BOUND_TOPOLOGIES: contextvars.ContextVar[Mapping[str, _RequestScope]] = contextvars.ContextVar(
    "mongowire_bound_topologies", default={}
)


class _RequestScope:
    """The topology bound by an outermost :meth:`MongoClient.request`.

    ``active`` turns false when the scope gives the topology back.
    """

    def __init__(self, topology: Topology) -> None:
        self.topology = topology
        self.active = True


class _ConnectionLease:
    """Returns one checked out topology to its pool, once."""

    def __init__(self, pool: Pool, topology: Topology) -> None:
        self._pool = pool
        self._topology: Optional[Topology] = topology

    @property
    def topology(self) -> Optional[Topology]:
        return self._topology

    def close(self) -> None:
        topology, self._topology = self._topology, None
        if topology is not None:
            self._pool.release(topology)


class MongoClient:
    """A client for one deployment, backed by a :class:`~mongowire.pool.Pool`.

    :Parameters:
      - `settings`: a :class:`~mongowire.settings.ClientSettings` or a
        configuration mapping accepted by
        :meth:`~mongowire.settings.ClientSettings.from_config`
      - `pool_name` (optional): contexts bind at most one topology per pool
        name
      - `pool_class` (optional): the pool implementation
      - `topology_class` (optional): called with the settings to create
        each pooled topology
    """

    def __init__(
        self,
        settings: Union[ClientSettings, Mapping[str, Any], None] = None,
        pool_name: str = "default",
        pool_class: Any = Pool,
        topology_class: Any = Topology,
    ) -> None:
        if settings is None:
            settings = ClientSettings()
        elif not isinstance(settings, ClientSettings):
            settings = ClientSettings.from_config(settings)
        self.__settings = settings
        self.__pool = pool_class(settings, topology_class=topology_class, name=pool_name)
        self.__pool.open()

    @property
    def settings(self) -> ClientSettings:
        return self.__settings

    @property
    def pool(self) -> Pool:
        return self.__pool

    def __repr__(self) -> str:
        return "MongoClient(%r)" % (self.__pool,)

    def __enter__(self) -> MongoClient:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the pool and every idle connection in it."""
        self.__pool.close()

    def _bound_scope(self) -> Optional[_RequestScope]:
        return _BOUND_TOPOLOGIES.get().get(self.__pool.name)

    def _bound_topology(self) -> Optional[Topology]:
        scope = self._bound_scope()
        return scope.topology if scope is not None else None

    @contextlib.contextmanager
    def request(self) -> Iterator[Topology]:
        """Bind a pooled topology to the current context.

        Nested scopes reuse the outermost binding. The outermost scope
        returns the topology to the pool when it exits, whether or not an
        error was raised::

          with client.request():
              client.insert("things", {"x": 1})
              client.find_one("things", {"x": 1})
        """
        bound = self._bound_topology()
        if bound is not None:
            yield bound
            return
        topology = self.__pool.checkout()
        scope = _RequestScope(topology)
        token = None
        try:
            current = _BOUND_TOPOLOGIES.get()
            token = _BOUND_TOPOLOGIES.set({**current, self.__pool.name: scope})
            yield topology
        finally:
            if token is not None:
                _BOUND_TOPOLOGIES.reset(token)
            scope.active = False
            self.__pool.release(topology)

    def _database(self, conn: Any, db: Optional[str]) -> Database:
        return Database(
            conn,
            db or self.__settings.database,
            write_concern=self.__settings.write_concern,
            timeout=self.__settings.socket_timeout,
        )

    def _execute(self, db: Optional[str], fn: Any) -> Any:
        with self.request() as topology:
            return topology.execute_with_retry(lambda conn: fn(self._database(conn, db)))

    def command(
        self,
        command: Union[str, Mapping[str, Any]],
        value: Any = 1,
        check: bool = True,
        db: Optional[str] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """Run a command on `db` (the configured database by default)."""
        return self._execute(db, lambda d: d.command(command, value, check, **kwargs))

    def find(
        self,
        collection: str,
        spec: Optional[Mapping[str, Any]] = None,
        fields: Any = None,
        db: Optional[str] = None,
    ) -> Any:
        """Query `collection`, returning a :class:`~mongowire.cursor.Cursor`.

        Inside :meth:`request` the cursor uses the bound connection, and
        only until that scope exits.
        Otherwise the cursor holds its own topology, which goes back to the
        pool when the cursor is closed or its server cursor is drained.
        """
        scope = self._bound_scope()
        if scope is not None:
            conn = scope.topology.get_active_connection()
            return self._database(conn, db).find(collection, spec, fields, guard=scope)
        lease = _ConnectionLease(self.__pool, self.__pool.checkout())
        try:
            conn = lease.topology.get_active_connection()
            return self._database(conn, db).find(collection, spec, fields, lease=lease)
        except BaseException:
            lease.close()
            raise

    def find_one(
        self,
        collection: str,
        spec: Optional[Mapping[str, Any]] = None,
        fields: Any = None,
        db: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Get a single document from `collection`, or None."""
        return self._execute(db, lambda d: d.find_one(collection, spec, fields))

    def count(
        self, collection: str, spec: Optional[Mapping[str, Any]] = None, db: Optional[str] = None
    ) -> int:
        """Count the documents in `collection` matching `spec`."""
        return self._execute(db, lambda d: d.count(collection, spec))

    def insert(self, collection: str, docs: Any, db: Optional[str] = None, **kwargs: Any) -> Any:
        """Insert a document or a list of documents into `collection`."""
        return self._execute(db, lambda d: d.insert(collection, docs, **kwargs))

    def update(
        self,
        collection: str,
        spec: Mapping[str, Any],
        document: Mapping[str, Any],
        db: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        """Update the documents in `collection` matching `spec`."""
        return self._execute(db, lambda d: d.update(collection, spec, document, **kwargs))

    def remove(
        self,
        collection: str,
        spec: Optional[Mapping[str, Any]] = None,
        db: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        """Remove the documents in `collection` matching `spec`."""
        return self._execute(db, lambda d: d.remove(collection, spec, **kwargs))

    def create_collection(self, name: str, db: Optional[str] = None, **kwargs: Any) -> Any:
        return self._execute(db, lambda d: d.create_collection(name, **kwargs))

    def drop_collection(self, name: str, db: Optional[str] = None) -> Any:
        return self._execute(db, lambda d: d.drop_collection(name))

    def collection_names(
        self, include_system_collections: bool = False, db: Optional[str] = None
    ) -> List[str]:
        return self._execute(db, lambda d: d.collection_names(include_system_collections))

    def authenticate(
        self, name: str, password: str, source: Optional[str] = None, db: Optional[str] = None
    ) -> bool:
        """Authenticate the bound connection. Returns False if refused.

        The result only lasts as long as that connection: a reconnect
        authenticates with the configured credentials again.
        """
        return self._execute(db, lambda d: d.authenticate(name, password, source))


class ClientFactory:
    """Creates and caches one :class:`MongoClient` per named configuration.

    :Parameters:
      - `configs`: a mapping of pool name to configuration mapping (or
        :class:`~mongowire.settings.ClientSettings`)
      - `kwargs`: passed to every :class:`MongoClient`
    """

    def __init__(self, configs: Mapping[str, Any], **kwargs: Any) -> None:
        self._configs = dict(configs)
        self._kwargs = kwargs
        self._clients: Dict[str, MongoClient] = {}
        self._lock = threading.Lock()

    def get(self, name: str = "default") -> MongoClient:
        """The client for the configuration called `name`."""
        with self._lock:
            client = self._clients.get(name)
            if client is None:
                if name not in self._configs:
                    raise ConfigurationError("No client configuration named %r" % (name,))
                client = MongoClient(self._configs[name], pool_name=name, **self._kwargs)
                self._clients[name] = client
            return client

    def close(self) -> None:
        """Close every client created so far."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()
