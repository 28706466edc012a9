"""
Bounded connector pool.

Each resource owns one pool; a job checks a connector out for its whole run
and returns it afterwards, so a connector instance is never used by two jobs
at the same time.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Tuple

from ..exceptions import PoolExhaustedError
from ..models import ExternalResource, PoolConfig
from .base_connector import Connector

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[ExternalResource], Connector]


class ConnectorPool:
    """
    Pool of connector instances for one resource.

    Honors maxObjects (instances alive at once), maxIdle / minIdle (instances
    kept while idle), maxWait (seconds to block on checkout) and
    minEvictableIdleTimeMillis (idle age after which evict_idle disposes).
    """

    def __init__(self, resource: ExternalResource, factory: ConnectorFactory,
                 config: PoolConfig = None):
        self.resource = resource
        self.factory = factory
        self.config = config or resource.pool
        self._idle: List[Tuple[Connector, float]] = []
        self._active = 0
        self._closed = False
        self._cond = threading.Condition()

    @property
    def active_count(self) -> int:
        with self._cond:
            return self._active

    @property
    def idle_count(self) -> int:
        with self._cond:
            return len(self._idle)

    def _create(self) -> Connector:
        connector = self.factory(self.resource)
        logger.debug(f"Created connector for {self.resource.key}")
        return connector

    def acquire(self) -> Connector:
        """
        Check a connector out.

        Raises:
            PoolExhaustedError: if none becomes available within maxWait
        """
        deadline = time.monotonic() + self.config.max_wait
        with self._cond:
            while True:
                if self._closed:
                    raise PoolExhaustedError(f"Pool for {self.resource.key} is closed", self.resource.key)
                if self._idle:
                    connector, _ = self._idle.pop()
                    self._active += 1
                    return connector
                if self._active < self.config.max_objects:
                    self._active += 1
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PoolExhaustedError(
                        f"No connector available for {self.resource.key} within "
                        f"{self.config.max_wait}s (maxObjects={self.config.max_objects})",
                        self.resource.key,
                    )
                self._cond.wait(remaining)

        try:
            return self._create()
        except Exception:
            with self._cond:
                self._active -= 1
                self._cond.notify()
            raise

    def release(self, connector: Connector) -> None:
        """Return a connector; disposed or surplus instances are dropped."""
        to_dispose = None
        with self._cond:
            self._active -= 1
            if connector.disposed:
                pass
            elif self._closed or len(self._idle) >= self.config.max_idle:
                to_dispose = connector
            else:
                self._idle.append((connector, time.monotonic()))
            self._cond.notify()
        if to_dispose is not None:
            to_dispose.dispose()

    def invalidate(self, connector: Connector) -> None:
        """Dispose a checked-out connector instead of returning it to the pool."""
        connector.dispose()
        self.release(connector)

    @contextmanager
    def checkout(self) -> Iterator[Connector]:
        connector = self.acquire()
        try:
            yield connector
        finally:
            self.release(connector)

    def evict_idle(self) -> int:
        """Dispose instances idle longer than minEvictableIdleTimeMillis, keeping minIdle."""
        max_age = self.config.min_evictable_idle_time_millis / 1000.0
        now = time.monotonic()
        evicted = []
        with self._cond:
            keep = []
            for connector, since in self._idle:
                surplus = len(self._idle) - len(evicted) > self.config.min_idle
                if surplus and now - since >= max_age:
                    evicted.append(connector)
                else:
                    keep.append((connector, since))
            self._idle = keep
        for connector in evicted:
            connector.dispose()
        if evicted:
            logger.debug(f"Evicted {len(evicted)} idle connector(s) for {self.resource.key}")
        return len(evicted)

    def ensure_min_idle(self) -> None:
        """Pre-create instances until minIdle are idle, within maxObjects."""
        while True:
            with self._cond:
                if (self._closed or len(self._idle) >= self.config.min_idle
                        or self._active + len(self._idle) >= self.config.max_objects):
                    return
                self._active += 1
            try:
                connector = self._create()
            except Exception:
                with self._cond:
                    self._active -= 1
                    self._cond.notify()
                raise
            with self._cond:
                self._active -= 1
                self._idle.append((connector, time.monotonic()))
                self._cond.notify()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            idle, self._idle = self._idle, []
            self._cond.notify_all()
        for connector, _ in idle:
            connector.dispose()
        logger.debug(f"Closed connector pool for {self.resource.key}")

    def stats(self) -> Dict[str, int]:
        with self._cond:
            return {"active": self._active, "idle": len(self._idle),
                    "max_objects": self.config.max_objects}
