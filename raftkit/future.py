"""Futures used to wait on the outcome of Raft operations."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable, Optional, Tuple

from raftkit.log import Log

_SHUTDOWN_POLL = 0.01


class RaftShutdownError(RuntimeError):
    """Raised or reported when an operation is cut short by shutdown."""

    def __init__(self, message: str = "raft is already shutdown") -> None:
        super().__init__(message)


@dataclass
class ErrorFuture:
    """A future that is already resolved with a fixed error."""

    err: Optional[BaseException] = None
    result: Any = None

    def error(self) -> Optional[BaseException]:
        return self.err

    def response(self) -> Any:
        """The fixed response carried by this future; None unless given."""
        return self.result

    def index(self) -> int:
        return 0


class DeferredFuture:
    """A future whose error is supplied later through :meth:`respond`.

    ``error`` blocks until a response arrives, or until the optional
    ``shutdown`` event is set, in which case a :class:`RaftShutdownError`
    is reported.
    """

    def __init__(self, shutdown: Optional[threading.Event] = None) -> None:
        self.shutdown = shutdown
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._err: Optional[BaseException] = None
        self._resolved = False
        self._responded = False

    def error(self) -> Optional[BaseException]:
        """Wait for the outcome and return the error, or None on success."""
        if self._resolved:
            return self._err
        if self.shutdown is None:
            self._done.wait()
        else:
            while not self._done.wait(_SHUTDOWN_POLL):
                if self.shutdown.is_set():
                    if self._done.is_set():
                        break
                    self._err = RaftShutdownError()
                    self._resolved = True
                    return self._err
        self._err = self._delivered
        self._resolved = True
        return self._err

    def respond(self, err: Optional[BaseException]) -> None:
        """Deliver the outcome; only the first call has any effect."""
        with self._lock:
            if self._responded:
                return
            self._delivered = err
            self._responded = True
        self._done.set()


class LogFuture(DeferredFuture):
    """Waits until a log entry has been committed."""

    def __init__(
        self,
        log: Optional[Log] = None,
        shutdown: Optional[threading.Event] = None,
    ) -> None:
        super().__init__(shutdown)
        self.log = log if log is not None else Log()
        self.result: Any = None
        self.dispatch: Optional[datetime] = None

    def response(self) -> Any:
        """The value returned by the state machine for this entry."""
        return self.result

    def index(self) -> int:
        return self.log.index


Opener = Callable[[], Tuple[Any, BinaryIO]]


class UserSnapshotFuture(DeferredFuture):
    """Waits for a user-triggered snapshot and gives access to it."""

    def __init__(
        self,
        opener: Optional[Opener] = None,
        shutdown: Optional[threading.Event] = None,
    ) -> None:
        super().__init__(shutdown)
        self.opener = opener

    def open(self) -> Tuple[Any, BinaryIO]:
        """Return the snapshot metadata and a reader; usable only once."""
        opener = self.opener
        if opener is None:
            raise RuntimeError("no snapshot available")
        # Invalidate the opener so it cannot be called a second time.
        self.opener = None
        return opener()


class VerifyFuture(DeferredFuture):
    """Collects votes confirming that this node is still the leader."""

    def __init__(
        self,
        notify: Optional[queue.Queue] = None,
        quorum_size: int = 0,
        shutdown: Optional[threading.Event] = None,
    ) -> None:
        super().__init__(shutdown)
        self.notify = notify
        self.quorum_size = quorum_size
        self.votes = 0
        self._vote_lock = threading.Lock()

    def vote(self, leader: bool) -> None:
        """Count one vote; notify once quorum is reached or leadership is denied."""
        with self._vote_lock:
            if self.notify is None:
                return
            if leader:
                self.votes += 1
                if self.votes < self.quorum_size:
                    return
            self.notify.put(self)
            self.notify = None


class ConfigurationsFuture(DeferredFuture):
    """Carries the latest configuration and its log index."""

    def __init__(
        self,
        latest: Any = None,
        latest_index: int = 0,
        shutdown: Optional[threading.Event] = None,
    ) -> None:
        super().__init__(shutdown)
        self.latest = latest
        self.latest_index = latest_index

    def configuration(self) -> Any:
        return self.latest

    def index(self) -> int:
        return self.latest_index


class AppendFuture(DeferredFuture):
    """Waits on a pipelined AppendEntries request."""

    def __init__(
        self,
        args: Any = None,
        resp: Any = None,
        start: Optional[datetime] = None,
        shutdown: Optional[threading.Event] = None,
    ) -> None:
        super().__init__(shutdown)
        self._start = start if start is not None else datetime.now(timezone.utc)
        self.args = args
        self.resp = resp

    def start(self) -> datetime:
        return self._start

    def request(self) -> Any:
        return self.args

    def response(self) -> Any:
        return self.resp