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

"""Represent the settings of a client and its connection pool."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple

from bson.codec_options import CodecOptions

from mongowire import common
from mongowire.auth import MongoCredential, _build_credentials_tuple
from mongowire.errors import ConfigurationError
from mongowire.write_concern import DEFAULT_WRITE_CONCERN, WriteConcern

_UNICODE_REPLACE_CODEC_OPTIONS: CodecOptions = CodecOptions(unicode_decode_error_handler="replace")

DEFAULT_CONFIG: Dict[str, Any] = {
    "url": "127.0.0.1:27017",
    "db": "admin",
    "username": "",
    "password": "",
    "auth_source": "",
    "replica_set": "",
    "replica_username": "",
    "replica_password": "",
    "replica_auth_source": "",
    "pool": {
        "min_connections": common.MIN_POOL_SIZE,
        "max_connections": common.MAX_POOL_SIZE,
        "connect_timeout": common.CONNECT_TIMEOUT,
        "wait_timeout": common.WAIT_QUEUE_TIMEOUT,
        "heartbeat": common.HEARTBEAT_FREQUENCY,
        "max_idle_time": common.MAX_IDLE_TIME_SEC,
    },
}
"""The shape of a client configuration mapping, with its defaults."""

_POOL_KEYS = frozenset(DEFAULT_CONFIG["pool"])
_CLIENT_KEYS = frozenset(DEFAULT_CONFIG) | {"socket_timeout", "write_concern"}


class PoolOptions:
    """Read only connection pool options for a MongoClient.

    Should not be instantiated directly by application developers. Access
    a client's pool options via :attr:`ClientSettings.pool_options`::

      pool_opts = client.settings.pool_options
      pool_opts.max_pool_size
      pool_opts.min_pool_size
    """

    __slots__ = (
        "__max_pool_size",
        "__min_pool_size",
        "__max_idle_time_seconds",
        "__connect_timeout",
        "__socket_timeout",
        "__wait_queue_timeout",
        "__heartbeat_frequency",
        "__codec_options",
    )

    def __init__(
        self,
        max_pool_size: int = common.MAX_POOL_SIZE,
        min_pool_size: int = common.MIN_POOL_SIZE,
        max_idle_time_seconds: float = common.MAX_IDLE_TIME_SEC,
        connect_timeout: float = common.CONNECT_TIMEOUT,
        socket_timeout: float = common.SOCKET_TIMEOUT,
        wait_queue_timeout: float = common.WAIT_QUEUE_TIMEOUT,
        heartbeat_frequency: float = common.HEARTBEAT_FREQUENCY,
        codec_options: CodecOptions = _UNICODE_REPLACE_CODEC_OPTIONS,
    ):
        self.__max_pool_size = max_pool_size
        self.__min_pool_size = min_pool_size
        self.__max_idle_time_seconds = max_idle_time_seconds
        self.__connect_timeout = connect_timeout
        self.__socket_timeout = socket_timeout
        self.__wait_queue_timeout = wait_queue_timeout
        self.__heartbeat_frequency = heartbeat_frequency
        self.__codec_options = codec_options
        if min_pool_size > max_pool_size:
            raise ConfigurationError(
                "min_connections (%d) cannot exceed max_connections (%d)"
                % (min_pool_size, max_pool_size)
            )

    @property
    def max_pool_size(self) -> int:
        """The maximum allowable number of concurrent connections to each
        connected server. Requests to a server will block if there are
        `maxPoolSize` outstanding connections to the requested server.
        """
        return self.__max_pool_size

    @property
    def min_pool_size(self) -> int:
        """The minimum required number of concurrent connections that the pool
        will maintain to each connected server.
        """
        return self.__min_pool_size

    @property
    def max_idle_time_seconds(self) -> float:
        """The maximum number of seconds that a connection can remain
        idle in the pool before being removed and replaced.
        """
        return self.__max_idle_time_seconds

    @property
    def connect_timeout(self) -> float:
        """How long a connection can take to be opened before timing out."""
        return self.__connect_timeout

    @property
    def socket_timeout(self) -> float:
        """How long a send or receive on a socket can take before timing out."""
        return self.__socket_timeout

    @property
    def wait_queue_timeout(self) -> float:
        """How long a thread will wait for a connection from the pool."""
        return self.__wait_queue_timeout

    @property
    def heartbeat_frequency(self) -> float:
        """Seconds between pool maintenance passes. Zero or negative disables
        the background reaper.
        """
        return self.__heartbeat_frequency

    @property
    def codec_options(self) -> CodecOptions:
        """The BSON codec options used to encode and decode documents."""
        return self.__codec_options


class ClientSettings:
    """Everything a client needs to reach, authenticate to, and pool
    connections for one deployment.
    """

    def __init__(
        self,
        seeds: Optional[List[Tuple[str, int]]] = None,
        database: str = "admin",
        credentials: Optional[MongoCredential] = None,
        replica_set_name: Optional[str] = None,
        replica_credentials: Optional[MongoCredential] = None,
        pool_options: Optional[PoolOptions] = None,
        write_concern: Optional[WriteConcern] = None,
    ):
        self._seeds = seeds or [("localhost", common.DEFAULT_PORT)]
        self._database = database
        self._credentials = credentials
        self._replica_set_name = replica_set_name or None
        self._replica_credentials = replica_credentials
        self._pool_options = pool_options or PoolOptions()
        self._write_concern = write_concern or DEFAULT_WRITE_CONCERN

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> ClientSettings:
        """Build settings from a configuration mapping shaped like
        :data:`DEFAULT_CONFIG`. Missing keys take their default values.
        """
        unknown = set(config) - _CLIENT_KEYS
        if unknown:
            raise ConfigurationError("Unknown option %s" % (", ".join(sorted(unknown)),))
        pool = dict(DEFAULT_CONFIG["pool"])
        pool_config = config.get("pool") or {}
        unknown = set(pool_config) - _POOL_KEYS
        if unknown:
            raise ConfigurationError("Unknown pool option %s" % (", ".join(sorted(unknown)),))
        pool.update(pool_config)

        def get(key: str) -> Any:
            return config.get(key, DEFAULT_CONFIG.get(key))

        database = common.validate_string("db", get("db") or "admin")
        username = common.validate_string("username", get("username") or "")
        password = common.validate_string("password", get("password") or "")
        auth_source = common.validate_string("auth_source", get("auth_source") or "")
        credentials = _build_credentials_tuple(auth_source or database, username, password)

        replica_set = common.validate_string("replica_set", get("replica_set") or "")
        replica_credentials = _build_credentials_tuple(
            common.validate_string("replica_auth_source", get("replica_auth_source") or "")
            or "admin",
            common.validate_string("replica_username", get("replica_username") or ""),
            common.validate_string("replica_password", get("replica_password") or ""),
        )

        socket_timeout = config.get("socket_timeout", common.SOCKET_TIMEOUT)
        pool_options = PoolOptions(
            max_pool_size=common.validate_positive_integer(
                "max_connections", pool["max_connections"]
            ),
            min_pool_size=common.validate_non_negative_integer(
                "min_connections", pool["min_connections"]
            ),
            max_idle_time_seconds=common.validate_positive_float(
                "max_idle_time", pool["max_idle_time"]
            ),
            connect_timeout=common.validate_positive_float(
                "connect_timeout", pool["connect_timeout"]
            ),
            socket_timeout=common.validate_positive_float("socket_timeout", socket_timeout),
            wait_queue_timeout=common.validate_positive_float(
                "wait_timeout", pool["wait_timeout"]
            ),
            heartbeat_frequency=common.validate_heartbeat("heartbeat", pool["heartbeat"]),
        )
        return cls(
            seeds=common.split_hosts(common.validate_string("url", get("url"))),
            database=database,
            credentials=credentials,
            replica_set_name=replica_set or None,
            replica_credentials=replica_credentials,
            pool_options=pool_options,
            write_concern=WriteConcern.from_mapping(config.get("write_concern")),
        )

    @property
    def seeds(self) -> List[Tuple[str, int]]:
        """The configured (host, port) pairs."""
        return list(self._seeds)

    @property
    def database(self) -> str:
        """The default database name."""
        return self._database

    @property
    def credentials(self) -> Optional[MongoCredential]:
        return self._credentials

    @property
    def replica_set_name(self) -> Optional[str]:
        return self._replica_set_name

    @property
    def replica_credentials(self) -> Optional[MongoCredential]:
        """Credentials for the replica set discovery connection.

        Falls back to :attr:`credentials` when none were configured.
        """
        return self._replica_credentials or self._credentials

    @property
    def pool_options(self) -> PoolOptions:
        return self._pool_options

    @property
    def socket_timeout(self) -> float:
        return self._pool_options.socket_timeout

    @property
    def write_concern(self) -> WriteConcern:
        return self._write_concern
