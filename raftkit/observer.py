"""Observers that receive notifications of events on a Raft node."""

from __future__ import annotations

import itertools
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

_observer_ids = itertools.count(1)
_observer_ids_lock = threading.Lock()


@dataclass
class Observation:
    """Sent to observers when an event occurs."""

    raft: Any
    data: Any


@dataclass
class LeaderObservation:
    """Data for a leadership change."""

    leader: str = ""
    leader_addr: str = ""
    leader_id: str = ""


@dataclass
class PeerObservation:
    """Data for a change of peers."""

    removed: bool
    peer: Any


@dataclass
class FailedHeartbeatObservation:
    """A node failed to heartbeat with the leader."""

    peer_id: str
    last_contact: Optional[datetime]


@dataclass
class ResumedHeartbeatObservation:
    """A node resumed heartbeating after failures."""

    peer_id: str


FilterFn = Callable[[Observation], bool]


class Observer:
    """Delivers matching observations to a queue."""

    def __init__(
        self,
        channel: Optional[queue.Queue],
        blocking: bool = False,
        filter_fn: Optional[FilterFn] = None,
    ) -> None:
        self.channel = channel
        self.blocking = blocking
        self.filter_fn = filter_fn
        with _observer_ids_lock:
            self.id = next(_observer_ids)
        self._counter_lock = threading.Lock()
        self._num_observed = 0
        self._num_dropped = 0

    def num_observed(self) -> int:
        with self._counter_lock:
            return self._num_observed

    def num_dropped(self) -> int:
        with self._counter_lock:
            return self._num_dropped

    def _deliver(self, observation: Observation) -> None:
        if self.filter_fn is not None and not self.filter_fn(observation):
            return
        if self.channel is None:
            return
        if self.blocking:
            self.channel.put(observation)
            delivered = True
        else:
            try:
                self.channel.put_nowait(observation)
                delivered = True
            except queue.Full:
                delivered = False
        with self._counter_lock:
            if delivered:
                self._num_observed += 1
            else:
                self._num_dropped += 1


class ObserverRegistry:
    """The set of observers registered on a Raft node."""

    def __init__(self, raft: Any = None) -> None:
        self.raft = raft
        self._lock = threading.Lock()
        self._observers: dict[int, Observer] = {}

    def register(self, observer: Observer) -> None:
        with self._lock:
            self._observers[observer.id] = observer

    def deregister(self, observer: Observer) -> None:
        with self._lock:
            self._observers.pop(observer.id, None)

    def observe(self, data: Any) -> None:
        """Send ``data`` to every registered observer."""
        with self._lock:
            observers = list(self._observers.values())
        for observer in observers:
            observer._deliver(Observation(raft=self.raft, data=data))