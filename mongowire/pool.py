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

"""A bounded pool of connected topologies."""

import collections
import contextlib
import threading
import time
import weakref

from mongowire.errors import ConnectionFailure, InvalidOperation, WaitQueueTimeoutError
from mongowire.logger import _CONNECTION_LOGGER
from mongowire.periodic_executor import PeriodicExecutor
from mongowire.topology import Topology

# Shortest wait between two maintenance passes.
_MIN_HEARTBEAT_INTERVAL = 0.5


def _cond_wait(condition, deadline):
    timeout = deadline - time.monotonic() if deadline else None
    return condition.wait(timeout)


class Pool:
    """Hands out connected :class:`~mongowire.topology.Topology` instances.

    At most ``max_connections`` topologies exist at once. Idle ones are
    reused most recently returned first; ones that perished (failed a
    retry, lost their connection, or sat idle longer than
    ``max_idle_time``) are closed instead.

    :Parameters:
      - `settings`: a :class:`~mongowire.settings.ClientSettings`
      - `topology_class` (optional): called with `settings` to create each
        topology
      - `name` (optional): the pool's name, used to bind checked out
        topologies to the calling context
    """

    def __init__(self, settings, topology_class=Topology, name="default"):
        self.settings = settings
        self.opts = settings.pool_options
        self.name = name
        self._topology_class = topology_class
        # LIFO pool. Topologies are claimed and returned on the left side,
        # stale ones are removed from the right side.
        self.topologies = collections.deque()
        self.lock = threading.Lock()
        self.size_cond = threading.Condition(self.lock)
        # Topologies checked out or being created.
        self.active_topologies = 0
        self.closed = False
        self._executor = None

    def open(self):
        """Start the background maintenance thread, if a heartbeat is set."""
        if self.closed:
            raise InvalidOperation("Cannot reopen a closed pool")
        interval = self.opts.heartbeat_frequency
        if interval > 0 and self._executor is None:
            self_ref = weakref.ref(self)

            def target():
                pool = self_ref()
                if pool is None or pool.closed:
                    return False
                pool.remove_stale_topologies()
                return True

            self._executor = PeriodicExecutor(
                interval=interval,
                min_interval=min(interval, _MIN_HEARTBEAT_INTERVAL),
                target=target,
                name="mongowire_pool_heartbeat_%s" % (self.name,),
            )
            self._executor.open()

    def close(self):
        """Stop maintenance and close every idle topology.

        Checked out topologies are closed when they are released.
        """
        with self.lock:
            self.closed = True
            topologies, self.topologies = self.topologies, collections.deque()
            self.size_cond.notify_all()
        if self._executor is not None:
            self._executor.close()
            self._executor = None
        for topology in topologies:
            topology.close()

    @property
    def size(self):
        """Idle plus checked out topologies."""
        with self.lock:
            return len(self.topologies) + self.active_topologies

    def _connect(self):
        """Create a topology and connect it, or raise ConnectionFailure."""
        topology = self._topology_class(self.settings)
        if not topology.connect():
            topology.close()
            raise ConnectionFailure("Could not connect to %s" % (self._describe(),))
        return topology

    def _describe(self):
        if self.settings.replica_set_name:
            return "replica set %r" % (self.settings.replica_set_name,)
        return ",".join("%s:%d" % seed for seed in self.settings.seeds)

    def checkout(self):
        """Get a connected topology, reusing an idle one when possible.

        Waits up to ``wait_timeout`` seconds for a free slot, then raises
        :exc:`~mongowire.errors.WaitQueueTimeoutError`. Raises
        :exc:`~mongowire.errors.ConnectionFailure` if a new topology can't
        connect.
        """
        if self.opts.wait_queue_timeout:
            deadline = time.monotonic() + self.opts.wait_queue_timeout
        else:
            deadline = None

        with self.size_cond:
            while True:
                if self.closed:
                    raise InvalidOperation("Attempted to check out from a closed pool")
                topology = self._pop_idle()
                if topology is not None:
                    self.active_topologies += 1
                    return topology
                if len(self.topologies) + self.active_topologies < self.opts.max_pool_size:
                    # Reserve the slot, connect outside the lock.
                    self.active_topologies += 1
                    break
                if not _cond_wait(self.size_cond, deadline):
                    # Timed out, notify the next thread to ensure a
                    # timeout doesn't consume the condition.
                    if self.topologies:
                        self.size_cond.notify()
                    self._raise_wait_queue_timeout()

        try:
            return self._connect()
        except BaseException:
            with self.size_cond:
                self.active_topologies -= 1
                self.size_cond.notify()
            raise

    def _pop_idle(self):
        """Pop idle topologies until a live one turns up. Must hold the lock."""
        while self.topologies:
            topology = self.topologies.popleft()
            if not self._perished(topology):
                return topology
            topology.close()
        return None

    def release(self, topology):
        """Give `topology` back to the pool, or close it if it perished."""
        with self.size_cond:
            self.active_topologies -= 1
            if self.closed or self._perished(topology):
                if not self.closed:
                    _CONNECTION_LOGGER.debug("Discarding perished topology %r", topology)
            else:
                self.topologies.appendleft(topology)
                topology = None
            self.size_cond.notify()
        if topology is not None:
            topology.close()

    @contextlib.contextmanager
    def get_topology(self):
        """Check a topology out for the duration of a with-statement::

            with pool.get_topology() as topology:
                topology.execute_with_retry(fn)
        """
        topology = self.checkout()
        try:
            yield topology
        finally:
            self.release(topology)

    def remove_stale_topologies(self):
        """Close idle topologies that perished, then connect new ones until
        the pool holds ``min_connections``.
        """
        with self.lock:
            if self.closed:
                return
            stale = [t for t in self.topologies if self._perished(t)]
            for topology in stale:
                self.topologies.remove(topology)
        for topology in stale:
            topology.close()

        while True:
            with self.size_cond:
                if self.closed:
                    return
                if len(self.topologies) + self.active_topologies >= self.opts.min_pool_size:
                    return
                self.active_topologies += 1
            try:
                topology = self._connect()
            except ConnectionFailure as exc:
                _CONNECTION_LOGGER.info("Could not fill pool %r: %s", self.name, exc)
                with self.size_cond:
                    self.active_topologies -= 1
                    self.size_cond.notify()
                return
            with self.size_cond:
                self.active_topologies -= 1
                if self.closed:
                    closing = topology
                else:
                    self.topologies.append(topology)
                    closing = None
                self.size_cond.notify()
            if closing is not None:
                closing.close()
                return

    def _perished(self, topology):
        """True if `topology` failed a retry, lost its connection, or has been
        idle longer than ``max_idle_time``.
        """
        if topology.last_use_time == 0:
            return True
        if not topology.check():
            return True
        max_idle = self.opts.max_idle_time_seconds
        return max_idle is not None and topology.idle_time_seconds() > max_idle

    def _raise_wait_queue_timeout(self):
        raise WaitQueueTimeoutError(
            "Timed out while checking out a topology from pool %r. "
            "max_connections: %s, wait_timeout: %s"
            % (self.name, self.opts.max_pool_size, self.opts.wait_queue_timeout)
        )

    def __repr__(self):
        return "<Pool %r idle=%d active=%d>" % (
            self.name,
            len(self.topologies),
            self.active_topologies,
        )

    def __del__(self):
        # Avoid ResourceWarnings. Don't take the lock in __del__.
        for topology in self.topologies:
            topology.close()
