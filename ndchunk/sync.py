import atexit
import logging
import os
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Callable, List, Optional, Protocol, Sequence, TypeVar

from ndchunk.config import config

logger = logging.getLogger(__name__)

T = TypeVar("T")

_lock = Lock()
_executor: Optional[ThreadPoolExecutor] = None
_executor_workers: Optional[int] = None


class Synchronizer(Protocol):
    """Base class for synchronizers."""

    def __getitem__(self, item):
        # see subclasses
        ...


class ThreadSynchronizer(Synchronizer):
    """Provides synchronization using thread locks."""

    def __init__(self):
        self.mutex = Lock()
        self.locks = defaultdict(Lock)

    def __getitem__(self, item):
        with self.mutex:
            return self.locks[item]

    def __getstate__(self):
        return True

    def __setstate__(self, *args):
        # reinitialize from scratch
        self.__init__()


class ProcessSynchronizer(Synchronizer):
    """Provides synchronization using file locks via the
    `fasteners <https://fasteners.readthedocs.io/en/latest/api/inter_process/>`_
    package.

    Parameters
    ----------
    path : string
        Path to a directory on a file system that is shared by all processes.
        N.B., this should be a *different* path to where you store the array.

    """

    def __init__(self, path):
        self.path = path

    def __getitem__(self, item):
        import fasteners

        path = os.path.join(self.path, item)
        lock = fasteners.InterProcessLock(path)
        return lock

    # pickling and unpickling should be handled automatically


def max_workers() -> int:
    workers = config.get("threading.max_workers", 1)
    if workers is None:
        return os.cpu_count() or 1
    return int(workers)


def _get_executor(workers: int) -> ThreadPoolExecutor:
    """Return the shared thread pool, created on first use and recreated
    when the configured size changes."""
    global _executor, _executor_workers
    with _lock:
        if _executor is None or _executor_workers != workers:
            if _executor is not None:
                _executor.shutdown(wait=True)
            logger.debug("Creating ndchunk ThreadPoolExecutor with max_workers=%s", workers)
            _executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ndchunk_pool")
            _executor_workers = workers
        return _executor


def run_tasks(tasks: Sequence[Callable[[], T]]) -> List[T]:
    """Run independent tasks, on the shared pool when more than one worker is
    configured. Results come back in task order; the first failure is
    re-raised once every task has finished."""
    workers = max_workers()
    if workers <= 1 or len(tasks) <= 1:
        return [task() for task in tasks]
    futures = [_get_executor(workers).submit(task) for task in tasks]
    errors = [f.exception() for f in futures]
    for error in errors:
        if error is not None:
            raise error
    return [f.result() for f in futures]


def cleanup_resources() -> None:
    global _executor
    with _lock:
        if _executor is not None:
            _executor.shutdown(wait=True)
        _executor = None


atexit.register(cleanup_resources)
