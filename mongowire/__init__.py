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

"""Python client for MongoDB's legacy wire protocol."""

from mongowire._version import __version__, version, version_tuple  # noqa: F401
from mongowire.cursor import Cursor  # noqa: F401
from mongowire.database import Database  # noqa: F401
from mongowire.helpers import ASCENDING, DESCENDING  # noqa: F401
from mongowire.mongo_client import ClientFactory, MongoClient  # noqa: F401
from mongowire.network import Connection  # noqa: F401
from mongowire.pool import Pool  # noqa: F401
from mongowire.settings import ClientSettings, PoolOptions  # noqa: F401
from mongowire.topology import Topology  # noqa: F401
from mongowire.write_concern import WriteConcern  # noqa: F401
