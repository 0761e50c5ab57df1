"""
Registry of in-flight sync runs.

Maps a sync_log id to a threading.Event used as the run's cancellation flag.
The cancel endpoint sets the flag from a request thread; the worker thread
polls it before each account and each message.

The orchestrator takes the registry as a constructor argument, so a shared
implementation (e.g. backed by Redis) can replace InMemorySyncRegistry when
the API runs in more than one process.
"""

import threading
from typing import Protocol


class SyncRegistry(Protocol):
    def register(self, run_id: str) -> threading.Event: ...

    def request_cancel(self, run_id: str) -> bool: ...

    def is_cancelled(self, run_id: str) -> bool: ...

    def unregister(self, run_id: str) -> None: ...

    def active_runs(self) -> list[str]: ...


class InMemorySyncRegistry:
    """Process-local registry guarded by a lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: dict[str, threading.Event] = {}

    def register(self, run_id: str) -> threading.Event:
        """
        Create the entry for run_id and return its cancellation flag.

        Registering an id that is already active returns the existing flag.
        """
        with self._lock:
            event = self._runs.get(run_id)
            if event is None:
                event = threading.Event()
                self._runs[run_id] = event
            return event

    def request_cancel(self, run_id: str) -> bool:
        """Set the flag. Returns False when no active run has this id."""
        with self._lock:
            event = self._runs.get(run_id)
        if event is None:
            return False
        event.set()
        return True

    def is_cancelled(self, run_id: str) -> bool:
        with self._lock:
            event = self._runs.get(run_id)
        return event is not None and event.is_set()

    def unregister(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)

    def active_runs(self) -> list[str]:
        with self._lock:
            return list(self._runs)


# Process-wide instance shared by the API and the worker threads
sync_registry = InMemorySyncRegistry()
