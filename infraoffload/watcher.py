"""Waiting for a resource to become available: a file or a gRPC server."""

from __future__ import annotations

import errno
import logging
import os
import queue
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


class WatcherError(Exception):
    """Raised when waiting for a resource fails."""


@dataclass(frozen=True)
class _Outcome:
    done: bool | None
    error: Exception | None


class Watcher(ABC):
    """Something that can be waited for with :func:`wait_for`.

    ``timeout`` is in seconds; zero or less waits forever.
    """

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        self._quit_event = threading.Event()
        self._outcomes: queue.Queue[_Outcome] = queue.Queue()

    @abstractmethod
    def initial_check(self) -> bool:
        """Return True if the resource is already available."""

    @abstractmethod
    def handle_events(self) -> None:
        """Watch until the resource appears, fails, or quit is requested."""

    def add_watched_resources(self) -> None:
        """Register whatever needs to be watched."""

    def quit(self) -> None:
        """Ask :meth:`handle_events` to stop."""
        self._quit_event.set()

    def close(self) -> None:
        """Release resources held by the watcher."""

    def _report(self, done: bool | None, error: Exception | None = None) -> None:
        self._outcomes.put(_Outcome(done, error))

    def _next_outcome(self, timeout: float | None = None) -> _Outcome | None:
        try:
            return self._outcomes.get(timeout=timeout)
        except queue.Empty:
            return None


class _CreatedHandler(FileSystemEventHandler):
    def __init__(self, sink: queue.Queue[str]) -> None:
        super().__init__()
        self._sink = sink

    def on_created(self, event: FileSystemEvent) -> None:
        self._sink.put(os.fsdecode(event.src_path))


class CalicoWatcher(Watcher):
    """Waits for the Calico configuration file to be created."""

    def __init__(
        self,
        timeout: float,
        config_path: str,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        super().__init__(timeout)
        self.config_path = config_path
        self._observer = observer_factory()
        self._events: queue.Queue[str] = queue.Queue()
        self._handler = _CreatedHandler(self._events)
        self._started = False

    def initial_check(self) -> bool:
        return os.path.exists(self.config_path)

    def handle_events(self) -> None:
        file_name = os.path.basename(self.config_path)
        while not self._quit_event.is_set():
            try:
                created = self._events.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._started and not self._observer.is_alive():
                    self._report(False, WatcherError("watcher error"))
                    return
                continue
            if file_name in created:
                self._report(True)
                return
        self._report(None, WatcherError("quit signal received"))

    def add_watched_resources(self) -> None:
        directory = os.path.dirname(self.config_path) or "."
        if not os.path.isdir(directory):
            raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), directory)
        self._observer.schedule(self._handler, directory, recursive=False)
        self._observer.start()
        self._started = True

    def close(self) -> None:
        if self._started:
            self._observer.stop()
            self._observer.join()
            self._started = False


class GrpcWatcher(Watcher):
    """Polls a gRPC server's health until it reports serving."""

    def __init__(
        self,
        timeout: float,
        sleep_duration: float,
        target: str,
        dial: Any,
        check_health: Callable[[str, Any], bool],
    ) -> None:
        super().__init__(timeout)
        self.sleep_duration = sleep_duration
        self.target = target
        self.dial = dial
        self.check_health = check_health

    def _probe(self) -> bool:
        try:
            return bool(self.check_health(self.target, self.dial))
        except Exception as exc:
            log.info("checkHealth returned error: %s", exc)
            return False

    def initial_check(self) -> bool:
        return self._probe()

    def handle_events(self) -> None:
        while not self._quit_event.is_set():
            if self._probe():
                self._report(True)
                return
            if self._quit_event.wait(self.sleep_duration):
                break
        self._report(None, WatcherError("quit signal received"))


def wait_for(watcher: Watcher) -> None:
    """Block until the watcher's resource is available; raise on failure or timeout."""
    try:
        if watcher.initial_check():
            return
        threading.Thread(
            target=watcher.handle_events, name="watcher-events", daemon=True
        ).start()
        try:
            watcher.add_watched_resources()
        except Exception as exc:
            watcher.quit()
            outcome = watcher._next_outcome()
            if outcome is not None and outcome.error is not None:
                raise WatcherError(f"{outcome.error}: {exc}") from exc
            raise
        _process_events(watcher)
    finally:
        try:
            watcher.close()
        except Exception:
            log.exception("failed to close watcher")


def _process_events(watcher: Watcher) -> None:
    if watcher.timeout > 0:
        outcome = watcher._next_outcome(watcher.timeout)
        if outcome is None:
            watcher.quit()
            raise WatcherError("timeout while waiting for the resource")
        if not outcome.done:
            raise WatcherError("error while waiting for the resource") from outcome.error
        return
    outcome = watcher._next_outcome()
    if outcome is None or not outcome.done:
        cause = outcome.error if outcome is not None else None
        raise WatcherError("error while waiting for the resource") from cause
    if outcome.error is not None:
        raise outcome.error