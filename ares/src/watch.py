from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

LOGGER = logging.getLogger(__name__)

ERROR = "ERROR"
CLOSED = "CLOSED"

# Called with a fresh Watch and the resourceVersion to resume from; ``None``
# means the stream's own starting point.
StreamFactory = Callable[[watch.Watch, str | None], Iterable[dict[str, Any]]]


def event_resource_version(event: Mapping[str, Any]) -> str | None:
    """Return the resourceVersion carried by a watch event, typed model or dict."""
    obj = event.get("object")
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata") or {}
        version = metadata.get("resourceVersion")
    else:
        version = getattr(getattr(obj, "metadata", None), "resource_version", None)
    return str(version) if version else None


class WatchMultiplexer:
    """Fan several watch streams into one FIFO queue.

    Each stream is consumed by its own pump thread which pushes
    ``(stream_name, event)`` pairs onto a shared queue, so the reader resumes
    on whichever stream produced an event first and an idle stream cannot
    delay the other.  Nothing is dropped; the queue is unbounded.

    Watches are opened with a server-side timeout, so a stream ends on its
    own periodically even when idle.  The pump then re-opens it from
    the last resourceVersion it saw until :meth:`stop` is called; this bounds
    how long a stopped pump can stay blocked on an idle connection.

    A pump that raises forwards ``{"type": "ERROR", "object": exc}``.  When
    a stream cannot be resumed because its resourceVersion expired (``410``)
    the pump forwards ``{"type": "CLOSED", "object": exc}``.  Both are left
    for the reader to interpret.
    """

    def __init__(
        self,
        poll_interval_seconds: float = 1.0,
        join_timeout_seconds: float = 5.0,
    ) -> None:
        self.poll_interval_seconds = poll_interval_seconds
        self.join_timeout_seconds = join_timeout_seconds
        self._factories: dict[str, StreamFactory] = {}
        self._events: queue.Queue[tuple[str, dict[str, Any]]] = queue.Queue()
        self._watchers: list[watch.Watch] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    def add_stream(self, name: str, factory: StreamFactory) -> None:
        if self._threads:
            raise RuntimeError("Cannot add streams after the multiplexer started")
        self._factories[name] = factory

    @property
    def stream_names(self) -> list[str]:
        return list(self._factories)

    def start(self) -> None:
        for name, factory in self._factories.items():
            thread = threading.Thread(
                target=self._pump,
                args=(name, factory),
                name=f"watch-{name}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def _register(self, watcher: watch.Watch) -> bool:
        with self._lock:
            if self._stopped.is_set():
                return False
            self._watchers.append(watcher)
            return True

    def _unregister(self, watcher: watch.Watch) -> None:
        watcher.stop()
        with self._lock:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

    def _pump(self, name: str, factory: StreamFactory) -> None:
        resource_version: str | None = None
        while not self._stopped.is_set():
            watcher = watch.Watch()
            if not self._register(watcher):
                return
            delivered = False
            try:
                for event in factory(watcher, resource_version):
                    if self._stopped.is_set():
                        return
                    resource_version = event_resource_version(event) or resource_version
                    delivered = True
                    self._events.put((name, event))
            except ApiException as exc:
                if not self._stopped.is_set():
                    event_type = CLOSED if exc.status == 410 else ERROR
                    self._events.put((name, {"type": event_type, "object": exc}))
                return
            except Exception as exc:
                if not self._stopped.is_set():
                    self._events.put((name, {"type": ERROR, "object": exc}))
                return
            finally:
                self._unregister(watcher)

            LOGGER.debug("Watch stream %s ended; resuming from %s", name, resource_version)
            if not delivered:
                self._stopped.wait(self.poll_interval_seconds)

    def next_event(self) -> tuple[str, dict[str, Any]] | None:
        """Block until any stream has an event; ``None`` once stopped."""
        while not self._stopped.is_set():
            try:
                return self._events.get(timeout=self.poll_interval_seconds)
            except queue.Empty:
                continue
        return None

    def stop(self) -> None:
        self._stopped.set()
        with self._lock:
            watchers = list(self._watchers)
        for watcher in watchers:
            watcher.stop()
        for thread in self._threads:
            if thread is threading.current_thread():
                continue
            thread.join(timeout=self.join_timeout_seconds)
            if thread.is_alive():
                LOGGER.debug("Watch pump %s still waiting on its connection", thread.name)

    def __enter__(self) -> WatchMultiplexer:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
