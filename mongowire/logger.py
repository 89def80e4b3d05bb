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

"""Structured DEBUG logging for commands, connections, and server selection.

Messages are rendered as JSON with :mod:`bson.json_util`, and only when
the logger is enabled for DEBUG. Document fields (``command``, ``reply``
and ``failure``) are themselves JSON strings, cut to
``MONGOWIRE_LOG_MAX_DOCUMENT_LENGTH`` characters (1000 by default).
"""
from __future__ import annotations

import enum
import logging
import os
from typing import Any, Dict, Mapping

from bson import UuidRepresentation, json_util
from bson.json_util import JSONOptions


class _CommandStatusMessage(str, enum.Enum):
    STARTED = "Command started"
    SUCCEEDED = "Command succeeded"
    FAILED = "Command failed"


class _ConnectionStatusMessage(str, enum.Enum):
    CONN_CREATED = "Connection created"
    CONN_CLOSED = "Connection closed"
    AUTH_FAILED = "Authentication mechanism failed"


class _TopologyStatusMessage(str, enum.Enum):
    RECONNECT = "Reconnecting"
    RECONNECT_FAILED = "Reconnect failed"
    PRIMARY_BOUND = "Primary bound"
    DISCOVERY_FAILED = "Replica set discovery failed"


_DEFAULT_DOCUMENT_LENGTH = 1000
_SENSITIVE_COMMANDS = frozenset(
    [
        "authenticate",
        "saslStart",
        "saslContinue",
        "getnonce",
        "createUser",
        "updateUser",
        "copydbgetnonce",
        "copydbsaslstart",
        "copydb",
    ]
)
# The only fields of a server error that are safe to log.
_REDACTED_FAILURE_FIELDS = ("code", "codeName", "errorLabels")
_DOCUMENT_NAMES = ("command", "reply", "failure")
_JSON_OPTIONS = JSONOptions(uuid_representation=UuidRepresentation.STANDARD)
_COMMAND_LOGGER = logging.getLogger("mongowire.command")
_CONNECTION_LOGGER = logging.getLogger("mongowire.connection")
_TOPOLOGY_LOGGER = logging.getLogger("mongowire.topology")


def _debug_log(logger: logging.Logger, **fields: Any) -> None:
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(LogMessage(**fields))


def _max_document_length() -> int:
    try:
        length = int(os.getenv("MONGOWIRE_LOG_MAX_DOCUMENT_LENGTH", _DEFAULT_DOCUMENT_LENGTH))
    except ValueError:
        return _DEFAULT_DOCUMENT_LENGTH
    if length < 0:
        return _DEFAULT_DOCUMENT_LENGTH
    return length


def _dumps(value: Any) -> str:
    return json_util.dumps(value, json_options=_JSON_OPTIONS, default=repr)


def _truncate(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[:length] + "..."


class LogMessage:
    """One structured log record, rendered lazily by ``str()``."""

    __slots__ = ["_fields"]

    def __init__(self, **fields: Any) -> None:
        duration = fields.get("durationMS")
        if duration is not None:
            fields["durationMS"] = duration.total_seconds() * 1000
        self._fields = fields

    def _render_document(self, name: str, doc: Mapping[str, Any], server_side: bool) -> str:
        if name == "failure":
            if server_side:
                doc = {k: v for k, v in doc.items() if k in _REDACTED_FAILURE_FIELDS}
        elif self._fields.get("commandName") in _SENSITIVE_COMMANDS:
            doc = {}
        return _truncate(_dumps(doc), _max_document_length())

    def __str__(self) -> str:
        fields: Dict[str, Any] = dict(self._fields)
        server_side = fields.pop("isServerSideError", False)
        for name in _DOCUMENT_NAMES:
            doc = fields.get(name)
            if doc:
                fields[name] = self._render_document(name, doc, server_side)
        return _dumps(fields)
