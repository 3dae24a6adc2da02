"""A dedicated thread which owns the SQLite connection and runs jobs against it."""

from __future__ import annotations

import logging
import os
import queue
import sqlite3
import threading
from concurrent.futures import Future
from typing import Any, Callable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

DatabaseJob = Callable[[sqlite3.Connection], Any]

_STOP = object()


class DatabaseClosedError(RuntimeError):
    """The database worker has been closed and accepts no more jobs."""

    def __init__(self, message: str = "database worker is closed") -> None:
        super().__init__(message)


class DatabaseWorker:
    """Runs database jobs one at a time on a single thread.

    Every job is called with the same connection, which is opened in
    autocommit mode. Jobs are run in the order in which they were given.
    """

    def __init__(self, database: str | os.PathLike[str] = ":memory:") -> None:
        self._jobs: queue.SimpleQueue[Any] = queue.SimpleQueue()
        self._lock = threading.Lock()
        self._closed = False
        self._connection: sqlite3.Connection | None = None

        opened: Future[None] = Future()
        self._thread = threading.Thread(
            target=self._run,
            args=(os.fspath(database), opened),
            name="euterpe-database",
            daemon=True,
        )
        self._thread.start()
        try:
            opened.result()
        except Exception:
            self._closed = True
            self._thread.join()
            raise

    @property
    def closed(self) -> bool:
        """True once close() has been called."""
        return self._closed

    def _run(self, database: str, opened: Future[None]) -> None:
        try:
            connection = sqlite3.connect(database, isolation_level=None)
        except Exception as err:
            opened.set_exception(err)
            return

        self._connection = connection
        opened.set_result(None)
        try:
            while True:
                item = self._jobs.get()
                if item is _STOP:
                    break
                job, future = item
                if future is None:
                    try:
                        job(connection)
                    except Exception as err:
                        log.error("Error from db executable: %s", err)
                elif future.set_running_or_notify_cancel():
                    try:
                        result = job(connection)
                    except Exception as err:
                        future.set_exception(err)
                    else:
                        future.set_result(result)
        finally:
            self._connection = None
            connection.close()

    def _enqueue(self, item: Any) -> None:
        with self._lock:
            if self._closed:
                raise DatabaseClosedError()
            self._jobs.put(item)

    def submit(self, job: DatabaseJob) -> None:
        """Queue `job` without waiting for it. Its errors are only logged."""
        self._enqueue((job, None))

    def execute(self, job: Callable[[sqlite3.Connection], T]) -> T:
        """Run `job`, wait for it and return its result or raise its error."""
        if threading.current_thread() is self._thread and self._connection is not None:
            return job(self._connection)

        future: Future[T] = Future()
        self._enqueue((job, future))
        return future.result()

    def close(self) -> None:
        """Stop the worker after the jobs already queued and close the connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._jobs.put(_STOP)
        if threading.current_thread() is not self._thread:
            self._thread.join()

    def __enter__(self) -> DatabaseWorker:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()