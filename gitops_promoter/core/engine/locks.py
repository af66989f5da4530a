"""
Per-environment mutual exclusion.

Promotions to different environments run in parallel; promotions to
the same environment are serialized for the whole plan+publish step.

Two layers:
    thread lock   one per environment name, for workers of this process
    file lock     ``fcntl.flock`` on ``<lock_dir>/<env>.lock``, for every
                  other promoter process (each CI job is its own process)

The file lock is only taken when a ``lock_dir`` is configured.
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from gitops_promoter.core.errors import EnvironmentBusy

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


class EnvironmentLocks:
    """One lock per environment name, optionally shared across processes."""

    def __init__(self, lock_dir: Path | None = None) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self.lock_dir = lock_dir

    def _get(self, environment: str) -> threading.Lock:
        with self._guard:
            if environment not in self._locks:
                self._locks[environment] = threading.Lock()
            return self._locks[environment]

    def locked(self, environment: str) -> bool:
        return self._get(environment).locked()

    @contextmanager
    def hold(self, environment: str, timeout: float | None = None) -> Iterator[None]:
        """Hold the environment's lock for the duration of the block.

        Args:
            environment: Environment name.
            timeout: Seconds to wait in total; None waits until the holder finishes.

        Raises:
            EnvironmentBusy: If the lock was not acquired within ``timeout``.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        lock = self._get(environment)
        if not lock.acquire(timeout=-1 if timeout is None else timeout):
            raise _busy(environment)
        try:
            fd = self._acquire_file(environment, deadline) if self.lock_dir is not None else None
            logger.debug("Lock acquired: %s", environment)
            try:
                yield
            finally:
                if fd is not None:
                    fcntl.flock(fd, fcntl.LOCK_UN)
                    os.close(fd)
        finally:
            lock.release()
            logger.debug("Lock released: %s", environment)

    def _acquire_file(self, environment: str, deadline: float | None) -> int:
        assert self.lock_dir is not None
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_dir / f"{environment}.lock"
        fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
        waited = False
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return fd
            except BlockingIOError:
                if deadline is not None and time.monotonic() >= deadline:
                    os.close(fd)
                    raise _busy(environment) from None
                if not waited:
                    logger.info("Waiting for another promoter process holding %s", path)
                    waited = True
                time.sleep(_POLL_INTERVAL)
            except OSError:
                os.close(fd)
                raise


def _busy(environment: str) -> EnvironmentBusy:
    return EnvironmentBusy(
        f"Another promotion to '{environment}' is still in progress",
        environment=environment,
    )
