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

"""Run a maintenance function on a background thread."""
from __future__ import annotations

import atexit
import threading
import weakref
from typing import Callable, Optional, Set


class PeriodicExecutor:
    def __init__(
        self,
        interval: float,
        min_interval: float,
        target: Callable[[], bool],
        name: Optional[str] = None,
    ) -> None:
        """Call `target` every `interval` seconds on a daemon thread.

        The first call happens after `min_interval` seconds. The executor
        stops when `target` returns a false value, raises, or :meth:`close`
        is called.

        :Parameters:
          - `interval`: seconds between calls to `target`
          - `min_interval`: seconds to wait before the first call
          - `target`: a function taking no arguments
          - `name`: a name for the thread
        """
        self._interval = interval
        self._min_interval = min_interval
        self._target = target
        self._name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __repr__(self) -> str:
        return "<%s(name=%s) object at 0x%x>" % (self.__class__.__name__, self._name, id(self))

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def open(self) -> None:
        """Start the thread. Calling it on a running executor does nothing."""
        if self.running:
            return
        self._stop.clear()
        thread = threading.Thread(target=self._run, name=self._name)
        thread.daemon = True
        self._thread = thread
        _register_executor(self)
        thread.start()

    def close(self) -> None:
        """Ask the thread to stop. It exits without waiting out the interval."""
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        delay = self._min_interval
        while not self._stop.wait(delay):
            try:
                if not self._target():
                    break
            except BaseException:
                self._stop.set()
                raise
            delay = self._interval


# Weak references to every started executor, so running threads can be
# stopped when the interpreter exits.
_EXECUTORS: Set[weakref.ReferenceType[PeriodicExecutor]] = set()


def _register_executor(executor: PeriodicExecutor) -> None:
    _EXECUTORS.add(weakref.ref(executor, _EXECUTORS.discard))


def _shutdown_executors() -> None:
    executors = [ref() for ref in list(_EXECUTORS)]
    for executor in executors:
        if executor is not None:
            executor.close()
    for executor in executors:
        if executor is not None:
            executor.join(1)


atexit.register(_shutdown_executors)
