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

"""Select a server, own its connection, and reconnect when it fails."""

import random
import time

from bson.son import SON

from mongowire import auth
from mongowire.common import parse_host
from mongowire.errors import (
    ConfigurationError,
    ConnectionFailure,
    MongoWireError,
    ProtocolError,
)
from mongowire.logger import _TOPOLOGY_LOGGER, _debug_log, _TopologyStatusMessage
from mongowire.network import Connection


class Topology:
    """The connection to one deployment: a standalone server picked from
    the seed list, or the primary of a named replica set.

    A Topology owns at most one live :class:`~mongowire.network.Connection`
    at a time and is used by one caller at a time; the
    :class:`~mongowire.pool.Pool` hands whole Topology instances out.

    :Parameters:
      - `settings`: a :class:`~mongowire.settings.ClientSettings`
      - `connection_class` (optional): the class used to open connections
    """

    def __init__(self, settings, connection_class=Connection):
        self._settings = settings
        self._connection_class = connection_class
        self._connection = None
        self._primary = None
        self._errors = []
        self.last_use_time = time.monotonic()

    @property
    def settings(self):
        return self._settings

    @property
    def connection(self):
        """The active connection, refreshed after every successful reconnect."""
        return self._connection

    @property
    def primary(self):
        """The (host, port) this topology is connected to, or None."""
        return self._primary

    def connect(self):
        """Open the connection. Returns False if no server could be used."""
        return self.reconnect()

    def reconnect(self):
        """Drop the current connection and open a new one.

        Returns True on success. A failure to reach or select a server is
        reported as False; the reasons are logged.
        """
        self.close()
        self._errors = []
        _debug_log(
            _TOPOLOGY_LOGGER,
            message=_TopologyStatusMessage.RECONNECT,
            replicaSet=self._settings.replica_set_name,
        )
        if self._settings.replica_set_name:
            conn = self._connect_to_replica_set()
        else:
            conn = self._connect_to_first_available_host(self._settings.credentials)
        if conn is None:
            _debug_log(
                _TOPOLOGY_LOGGER,
                message=_TopologyStatusMessage.RECONNECT_FAILED,
                failure="; ".join(str(e) for e in self._errors) or "no hosts",
            )
            return False
        self._connection = conn
        self._primary = conn.address
        self.last_use_time = time.monotonic()
        _debug_log(
            _TOPOLOGY_LOGGER,
            message=_TopologyStatusMessage.PRIMARY_BOUND,
            serverHost=conn.address[0],
            serverPort=conn.address[1],
        )
        return True

    def close(self):
        """Close the active connection, if any."""
        conn, self._connection = self._connection, None
        self._primary = None
        if conn is not None:
            conn.close_socket()

    def check(self):
        """True if the active connection is open."""
        return self._connection is not None and not self._connection.closed

    def idle_time_seconds(self):
        """Seconds since this topology last completed an operation."""
        return time.monotonic() - self.last_use_time

    def get_active_connection(self):
        """Return the open connection, reconnecting first if needed.

        Raises :exc:`~mongowire.errors.ConnectionFailure` if no server can
        be reached.
        """
        if self.check():
            return self._connection
        return self._reconnect_or_raise()

    def _reconnect_or_raise(self):
        if not self.reconnect():
            msg = "Connection reconnect failed"
            if self._errors:
                msg += ": " + "; ".join(str(e) for e in self._errors)
            raise ConnectionFailure(msg)
        return self._connection

    def execute_with_retry(self, fn):
        """Call ``fn(connection)``, retrying once after a reconnect.

        Only connection and protocol errors are retried. If the retry fails
        too its error is raised and :attr:`last_use_time` is reset to 0 so
        the pool discards this topology.
        """
        conn = self.get_active_connection()
        try:
            result = fn(conn)
        except (ConnectionFailure, ProtocolError) as exc:
            _TOPOLOGY_LOGGER.warning(
                "Operation on %s:%d failed, reconnecting and retrying once: %s",
                conn.address[0],
                conn.address[1],
                exc,
            )
            try:
                result = fn(self._reconnect_or_raise())
            except MongoWireError as retry_exc:
                self.last_use_time = 0
                retry_exc._add_error_label("RetryFailed")
                raise
            except BaseException:
                self.last_use_time = 0
                raise
        self.last_use_time = time.monotonic()
        return result

    def _connect_to_host(self, address, credentials):
        """Open and authenticate a connection to `address`.

        Raises ConnectionFailure if the server can't be reached or refuses
        the credentials.
        """
        conn = self._connection_class(address, self._settings.pool_options)
        conn.open()
        if credentials is not None:
            try:
                authenticated = auth.authenticate(credentials, conn)
            except BaseException:
                conn.close_socket()
                raise
            if not authenticated:
                conn.close_socket()
                raise ConnectionFailure(
                    "%s:%d: authentication failed for user %r on %r"
                    % (address[0], address[1], credentials.username, credentials.source)
                )
        return conn

    def _connect_to_first_available_host(self, credentials):
        """Try the seeds in random order, returning the first connection
        that opens and authenticates, or None.
        """
        seeds = self._settings.seeds
        random.shuffle(seeds)
        for address in seeds:
            try:
                return self._connect_to_host(address, credentials)
            except (ConnectionFailure, ProtocolError) as exc:
                self._errors.append(exc)
        return None

    def _connect_to_replica_set(self):
        """Find the replica set primary and connect to it, or return None."""
        name = self._settings.replica_set_name
        aux = self._connect_to_first_available_host(self._settings.replica_credentials)
        if aux is None:
            return self._discovery_failed("no seed could be reached")
        try:
            try:
                response = aux.command("admin", SON([("isMaster", 1)]))
            except MongoWireError as exc:
                self._errors.append(exc)
                return self._discovery_failed("isMaster failed: %s" % (exc,))
        finally:
            aux.close_socket()

        set_name = response.get("setName")
        if set_name != name:
            return self._discovery_failed(
                "%s:%d is a member of %r, not %r" % (aux.address[0], aux.address[1], set_name, name)
            )

        primary = response.get("primary")
        members = list(response.get("hosts", [])) + list(response.get("passives", []))
        for host in members:
            if host != primary:
                continue
            try:
                address = parse_host(host)
            except ConfigurationError as exc:
                self._errors.append(exc)
                continue
            try:
                return self._connect_to_host(address, self._settings.credentials)
            except (ConnectionFailure, ProtocolError) as exc:
                self._errors.append(exc)
                return self._discovery_failed("could not connect to primary %s" % (host,))
        return self._discovery_failed("no primary found in %r" % (members,))

    def _discovery_failed(self, reason):
        self._errors.append(ConnectionFailure(reason))
        _debug_log(
            _TOPOLOGY_LOGGER,
            message=_TopologyStatusMessage.DISCOVERY_FAILED,
            replicaSet=self._settings.replica_set_name,
            failure=reason,
        )
        return None

    def __repr__(self):
        if self._primary is None:
            return "<Topology disconnected>"
        return "<Topology %s:%d>" % self._primary
