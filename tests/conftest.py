import threading
import time

import pytest

from errors import CloseError, WriteError
from location_source import LocationSource
from telemetry import LocationSample


class FakeConnection:
    def __init__(self, host, port):
        self.host = host
        self.port = port
        self.closed = False


class FakeTransport:
    """Records every call; can block or fail on connect and fail sends."""

    def __init__(self, fail_with=None, block=None, failing_sends=0, close_error=False):
        self.fail_with = fail_with
        self.block = block
        self.failing_sends = failing_sends
        self.close_error = close_error
        self.connect_calls = []
        self.sent = []
        self.close_calls = 0
        self.sends_after_close = 0
        self.connections = []
        self._lock = threading.Lock()

    def connect(self, host, port):
        self.connect_calls.append((host, port))
        if self.block is not None:
            self.block.wait(5)
        if self.fail_with is not None:
            raise self.fail_with
        conn = FakeConnection(host, port)
        self.connections.append(conn)
        return conn

    def send(self, conn, record):
        with self._lock:
            if conn.closed:
                self.sends_after_close += 1
            if self.failing_sends:
                self.failing_sends -= 1
                raise WriteError("Broken pipe")
            self.sent.append(record)

    def close(self, conn):
        with self._lock:
            self.close_calls += 1
            if self.close_error or conn.closed:
                conn.closed = True
                raise CloseError("Socket didn't close")
            conn.closed = True


class RecordingListener:
    def __init__(self):
        self.transitions = []
        self.errors = []

    def on_state_change(self, session, old, new):
        self.transitions.append((old.value, new.value))

    def on_error(self, session, err):
        self.errors.append(err)


class PolledSource(LocationSource):
    """Provider flag that flips silently, so only the periodic tick can notice."""

    def __init__(self):
        super().__init__()
        self.enabled = True

    def is_provider_enabled(self):
        return self.enabled


def make_sample(i=0, label="Pixel"):
    return LocationSample(
        timestamp_ms=1490371509000 + i * 1000,
        source_identifier="192.168.1.23",
        device_label=label,
        latitude=49.2827 + i / 10000,
        longitude=-123.1207 - i / 10000,
    )


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def database(tmp_path):
    return str(tmp_path / "gps_data.db")
