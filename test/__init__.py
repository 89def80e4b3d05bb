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

"""Test suite for mongowire.

No MongoDB server is needed: the tests talk to the in-process
:class:`test.utils.MockServer`.
"""

import unittest

from mongowire.settings import ClientSettings, PoolOptions


class MongoWireTestCase(unittest.TestCase):
    def make_settings(self, seeds=None, **kwargs):
        """ClientSettings with short timeouts, pointing at `seeds`."""
        pool_kwargs = {
            key: kwargs.pop(key)
            for key in list(kwargs)
            if key
            in (
                "max_pool_size",
                "min_pool_size",
                "max_idle_time_seconds",
                "wait_queue_timeout",
                "heartbeat_frequency",
                "socket_timeout",
            )
        }
        pool_kwargs.setdefault("wait_queue_timeout", 0.5)
        return ClientSettings(
            seeds=seeds or [("localhost", 27017)],
            pool_options=PoolOptions(**pool_kwargs),
            **kwargs,
        )
