import threading
import time

import pytest
from watchdog.events import FileCreatedEvent
from watchdog.observers.polling import PollingObserver

from infraoffload.watcher import CalicoWatcher, GrpcWatcher, WatcherError, wait_for


class FakeObserver:
    def __init__(self, created=(), alive=True):
        self.created = list(created)
        self.alive = alive
        self.scheduled = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path))

    def start(self):
        self.started = True
        for handler, _ in self.scheduled:
            for name in self.created:
                handler.dispatch(FileCreatedEvent(name))

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        return None

    def is_alive(self):
        return self.started and self.alive and not self.stopped


class HealthProbe:
    def __init__(self, answers):
        self.answers = list(answers)
        self.calls = 0

    def __call__(self, target, dial):
        self.calls += 1
        if self.answers:
            answer = self.answers.pop(0)
        else:
            answer = True
        if isinstance(answer, Exception):
            raise answer
        return answer


def test_grpc_watcher_returns_when_initially_serving():
    probe = HealthProbe([True])
    wait_for(GrpcWatcher(1.0, 0.01, "localhost:1", None, probe))
    assert probe.calls == 1


def test_grpc_watcher_polls_until_serving():
    probe = HealthProbe([False, False, False, True])
    wait_for(GrpcWatcher(5.0, 0.01, "localhost:1", None, probe))
    assert probe.calls == 4


def test_grpc_watcher_tolerates_probe_errors():
    probe = HealthProbe([RuntimeError("down"), RuntimeError("down"), True])
    wait_for(GrpcWatcher(5.0, 0.01, "localhost:1", None, probe))
    assert probe.calls == 3


def test_grpc_watcher_waits_forever_without_timeout():
    probe = HealthProbe([False, False, True])
    wait_for(GrpcWatcher(0, 0.01, "localhost:1", None, probe))
    assert probe.calls == 3


def test_grpc_watcher_times_out():
    probe = HealthProbe([False] * 10000)
    with pytest.raises(WatcherError, match="timeout while waiting for the resource"):
        wait_for(GrpcWatcher(0.2, 0.01, "localhost:1", None, probe))


def test_grpc_watcher_passes_target_and_dial():
    seen = []
    dial = object()

    def probe(target, dial_func):
        seen.append((target, dial_func))
        return True

    wait_for(GrpcWatcher(1.0, 0.01, "localhost:9", dial, probe))
    assert seen == [("localhost:9", dial)]


def test_calico_watcher_existing_file_skips_observer(tmp_path):
    config = tmp_path / "10-calico.conflist"
    config.write_text("{}")
    fake = FakeObserver()
    wait_for(CalicoWatcher(1.0, str(config), lambda: fake))
    assert fake.started is False
    assert fake.scheduled == []


def test_calico_watcher_detects_created_file(tmp_path):
    config = tmp_path / "10-calico.conflist"
    fake = FakeObserver(created=[str(config)])
    wait_for(CalicoWatcher(5.0, str(config), lambda: fake))
    assert fake.scheduled[0][1] == str(tmp_path)
    assert fake.stopped is True


def test_calico_watcher_ignores_other_files(tmp_path):
    config = tmp_path / "10-calico.conflist"
    fake = FakeObserver(created=[str(tmp_path / "other.conf")])
    with pytest.raises(WatcherError, match="timeout while waiting for the resource"):
        wait_for(CalicoWatcher(0.3, str(config), lambda: fake))
    assert fake.stopped is True


def test_calico_watcher_reports_dead_observer(tmp_path):
    config = tmp_path / "10-calico.conflist"
    fake = FakeObserver(alive=False)
    with pytest.raises(WatcherError, match="error while waiting for the resource"):
        wait_for(CalicoWatcher(5.0, str(config), lambda: fake))


def test_calico_watcher_missing_directory(tmp_path):
    config = tmp_path / "missing" / "10-calico.conflist"
    fake = FakeObserver()
    with pytest.raises(WatcherError, match="quit signal received"):
        wait_for(CalicoWatcher(1.0, str(config), lambda: fake))
    assert fake.started is False


def test_calico_watcher_factory_error_propagates():
    def factory():
        raise OSError("no inotify")

    with pytest.raises(OSError, match="no inotify"):
        CalicoWatcher(1.0, "/tmp/x.conflist", factory)


def test_calico_watcher_with_polling_observer(tmp_path):
    config = tmp_path / "10-calico.conflist"

    def create_later():
        time.sleep(0.3)
        config.write_text("{}")

    writer = threading.Thread(target=create_later)
    writer.start()
    try:
        wait_for(CalicoWatcher(10.0, str(config), PollingObserver))
    finally:
        writer.join()
    assert config.exists()