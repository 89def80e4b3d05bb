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

"""Exceptions raised by mongowire."""
from typing import Any, Iterable, Mapping, Optional, Sequence, Union


class MongoWireError(Exception):
    """Base class for all mongowire exceptions."""

    def __init__(self, message: str = "", error_labels: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self._message = message
        self._error_labels = set(error_labels or [])

    def has_error_label(self, label: str) -> bool:
        """Return True if this error contains the given label."""
        return label in self._error_labels

    def _add_error_label(self, label):
        """Add the given label to this error."""
        self._error_labels.add(label)

    def _remove_error_label(self, label):
        """Remove the given label from this error."""
        self._error_labels.discard(label)

    @property
    def timeout(self) -> bool:
        """True if this error was caused by a timeout."""
        return False


class ProtocolError(MongoWireError):
    """Raised for failures related to the wire protocol."""


class ProtocolDesyncError(ProtocolError):
    """Raised when a reply does not answer the request that was sent.

    The connection that produced it is closed before this is raised; it
    must be reconnected before it can be used again.

    Subclass of :exc:`~mongowire.errors.ProtocolError`.
    """

    def __init__(self, request_id: int, response_to: int) -> None:
        super().__init__(
            "Got response id %r but expected %r" % (response_to, request_id)
        )
        self.request_id = request_id
        self.response_to = response_to


class ConnectionFailure(MongoWireError):
    """Raised when a connection to the database cannot be made or is lost."""


class WaitQueueTimeoutError(ConnectionFailure):
    """Raised when an operation times out waiting to checkout a connection from the pool.

    Subclass of :exc:`~mongowire.errors.ConnectionFailure`.
    """

    @property
    def timeout(self) -> bool:
        return True


class AutoReconnect(ConnectionFailure):
    """Raised when a connection to the database is lost.

    The operation which caused it has not necessarily succeeded. The
    topology reconnects and retries the operation once before this
    reaches the caller.

    Subclass of :exc:`~mongowire.errors.ConnectionFailure`.
    """

    errors: Union[Mapping[str, Any], Sequence]
    details: Union[Mapping[str, Any], Sequence]

    def __init__(
        self, message: str = "", errors: Optional[Union[Mapping[str, Any], Sequence]] = None
    ) -> None:
        error_labels = None
        if errors is not None:
            if isinstance(errors, dict):
                error_labels = errors.get("errorLabels")
        super().__init__(message, error_labels)
        self.errors = self.details = errors or []


class NetworkTimeout(AutoReconnect):
    """An operation on an open connection exceeded the socket timeout.

    In the case of a write operation, you cannot know whether it succeeded
    or failed.

    Subclass of :exc:`~mongowire.errors.AutoReconnect`.
    """

    @property
    def timeout(self) -> bool:
        return True


def _format_detailed_error(message, details):
    if details is not None:
        message = "%s, full error: %s" % (message, details)
    return message


class ConfigurationError(MongoWireError):
    """Raised when something is incorrectly configured."""


class OperationFailure(MongoWireError):
    """Raised when a database operation fails."""

    def __init__(
        self,
        error: str,
        code: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        error_labels = None
        if details is not None:
            error_labels = details.get("errorLabels")
        super().__init__(_format_detailed_error(error, details), error_labels=error_labels)
        self.__code = code
        self.__details = details

    @property
    def code(self) -> Optional[int]:
        """The error code returned by the server, if any."""
        return self.__code

    @property
    def details(self) -> Optional[Mapping[str, Any]]:
        """The complete error document returned by the server."""
        return self.__details

    @property
    def timeout(self) -> bool:
        return self.__code in (50,)


class CursorError(OperationFailure):
    """Raised when the server flags a query reply as failed.

    The ``$err`` document sent back by the server is available as
    :attr:`details`.
    """


class CursorNotFound(CursorError):
    """Raised while iterating query results if the cursor is
    invalidated on the server.
    """


class WTimeoutError(OperationFailure):
    """Raised when a write times out (i.e. wtimeout expires) before
    replication completes.
    """

    @property
    def timeout(self) -> bool:
        return True


class DuplicateKeyError(OperationFailure):
    """Raised when an insert or update fails due to a duplicate key error."""


class InvalidOperation(MongoWireError):
    """Raised when a client attempts to perform an invalid operation."""
