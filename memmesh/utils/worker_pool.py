"""
Bounded background worker pool with retry and backoff.
"""

import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from .config import WorkerConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class WorkerPoolError(Exception):
    """Custom exception for worker pool errors."""
    pass


class WorkerPoolFullError(WorkerPoolError):
    """Raised when the pending-task bound is reached."""
    pass


class WorkerPool:
    """ThreadPoolExecutor wrapper with an explicit pending bound.

    ``submit`` never blocks: once ``max_pending`` tasks are queued or running
    it raises ``WorkerPoolFullError`` and the caller decides what to do.
    """

    def __init__(self, config: WorkerConfig, name: str = 'memmesh'):
        self.config = config
        self.name = name
        self._executor: Optional[ThreadPoolExecutor] = None
        self._slots = threading.BoundedSemaphore(max(1, config.max_pending))
        self._lock = threading.Lock()
        self._pending = 0

    @property
    def running(self) -> bool:
        return self._executor is not None

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def start(self) -> None:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=max(1, self.config.max_workers),
                                                    thread_name_prefix=f'{self.name}-worker')
                logger.info(f'Started worker pool {self.name} with {self.config.max_workers} workers')

    def stop(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)
            logger.info(f'Stopped worker pool {self.name}')

    def submit(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """
        Schedule ``func`` with retries.

        Returns:
            Future resolving to the function's result, or to its final exception

        Raises:
            WorkerPoolError: If the pool is not running
            WorkerPoolFullError: If the pending bound is reached
        """
        executor = self._executor
        if executor is None:
            raise WorkerPoolError(f'Worker pool {self.name} is not running')

        if not self._slots.acquire(blocking=False):
            raise WorkerPoolFullError(f'Worker pool {self.name} is full ({self.config.max_pending} pending)')

        with self._lock:
            self._pending += 1

        try:
            future = executor.submit(self._run_with_retry, func, *args, **kwargs)
        except RuntimeError as e:
            self._release()
            raise WorkerPoolError(f'Worker pool {self.name} rejected task: {e}')

        future.add_done_callback(lambda _: self._release())
        return future

    def _release(self) -> None:
        self._slots.release()
        with self._lock:
            self._pending -= 1

    def _run_with_retry(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        attempts = max(1, self.config.retry_attempts)
        name = getattr(func, '__name__', repr(func))

        for attempt in range(attempts):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                logger.warning(f'Task {name} attempt {attempt + 1}/{attempts} failed: {e}')

                if attempt < attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, self.config.retry_jitter)
                    time.sleep(delay)
                else:
                    logger.error(f'Task {name} failed after {attempts} attempts: {e}')
                    raise
