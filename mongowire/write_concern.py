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

"""Tools for working with write concerns."""
from typing import Any, Dict, Mapping, Optional, Union

from bson.son import SON

from mongowire.common import GLE_J, GLE_W, GLE_WTIMEOUT
from mongowire.errors import ConfigurationError


class WriteConcern:
    """WriteConcern

    :Parameters:
        - `w`: (integer or string) Write operations will block until they
          have been replicated to the specified number or tagged set of
          servers. Passing w=0 **disables write acknowledgement**.
        - `wtimeout`: (integer) Used in conjunction with `w`. Specify a
          value in milliseconds to control how long to wait for write
          propagation to complete.
        - `j`: If ``True`` block until write operations have been
          committed to the journal.
        - `fsync`: If ``True`` the server will block until the write is
          flushed to disk.

    Options left unset fall back to ``w=1``, ``j=False`` and
    ``wtimeout=10000`` when the getLastError command is built.
    """

    __slots__ = ("__document", "__acknowledged")

    def __init__(
        self,
        w: Optional[Union[int, str]] = None,
        wtimeout: Optional[int] = None,
        j: Optional[bool] = None,
        fsync: Optional[bool] = None,
    ) -> None:
        self.__document: Dict[str, Any] = {}
        self.__acknowledged = True

        if wtimeout is not None:
            if not isinstance(wtimeout, int):
                raise TypeError("wtimeout must be an integer")
            if wtimeout < 0:
                raise ValueError("wtimeout cannot be less than 0")
            self.__document["wtimeout"] = wtimeout

        if j is not None:
            if not isinstance(j, bool):
                raise TypeError("j must be True or False")
            self.__document["j"] = j

        if fsync is not None:
            if not isinstance(fsync, bool):
                raise TypeError("fsync must be True or False")
            if j and fsync:
                raise ConfigurationError("Can't set both j and fsync at the same time")
            self.__document["fsync"] = fsync

        if w == 0 and j is True:
            raise ConfigurationError("Cannot set w to 0 and j to True")

        if w is not None:
            if isinstance(w, int):
                if w < 0:
                    raise ValueError("w cannot be less than 0")
                self.__acknowledged = w > 0 or bool(j)
            elif not isinstance(w, str):
                raise TypeError("w must be an integer or string")
            self.__document["w"] = w

    @classmethod
    def from_mapping(cls, options: Optional[Mapping[str, Any]]) -> "WriteConcern":
        """Build a WriteConcern from a mapping of option names to values."""
        options = dict(options or {})
        unknown = set(options) - {"w", "wtimeout", "j", "fsync"}
        if unknown:
            raise ConfigurationError(
                "%s is not a valid write concern option." % (", ".join(sorted(unknown)),)
            )
        return cls(**options)

    @property
    def document(self) -> Dict[str, Any]:
        """The document representation of this write concern.

        .. note::
          :class:`WriteConcern` is immutable. Mutating the value of
          :attr:`document` does not mutate this :class:`WriteConcern`.
        """
        return self.__document.copy()

    @property
    def acknowledged(self) -> bool:
        """If ``True`` write operations will wait for acknowledgement before
        returning.
        """
        return self.__acknowledged

    def last_error_command(self) -> SON:
        """The getLastError command sent after each acknowledged write."""
        cmd = SON([("getlasterror", 1)])
        cmd["w"] = self.__document.get("w", GLE_W)
        cmd["j"] = self.__document.get("j", GLE_J)
        cmd["wtimeout"] = self.__document.get("wtimeout", GLE_WTIMEOUT)
        if "fsync" in self.__document:
            cmd["fsync"] = self.__document["fsync"]
        return cmd

    def __repr__(self) -> str:
        return "WriteConcern(%s, acknowledged=%s)" % (
            ", ".join("%s=%s" % kvt for kvt in self.__document.items()),
            self.__acknowledged,
        )

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, WriteConcern):
            return self.__document == other.document
        return NotImplemented

    def __ne__(self, other: Any) -> bool:
        if isinstance(other, WriteConcern):
            return self.__document != other.document
        return NotImplemented


DEFAULT_WRITE_CONCERN = WriteConcern()
