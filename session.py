"""
Tracking session controller.

A Session owns the state machine for one connection attempt:

    IDLE -> CONNECTING -> ACTIVE -> STOPPED
                       -> FAILED

FAILED and STOPPED are terminal. A new Session is needed for every attempt.

start() returns as soon as the session is CONNECTING; the connect and the
provider monitoring run on a worker thread. Location samples may arrive on
any thread. A single lock serializes sends and state transitions, so no
record is written after the session leaves ACTIVE and the connection is
closed exactly once.
"""
import logging
import re
import threading
from collections import deque
from enum import Enum

import config
from errors import CloseError, InvalidConfig, WriteError
from telemetry import format_record
from transport import TcpTransport

logger = logging.getLogger(__name__)

MAX_PORT = 65535
_PORT_RE = re.compile(r'[0-9]+')


class SessionState(Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    ACTIVE = 'active'
    STOPPED = 'stopped'
    FAILED = 'failed'


TERMINAL_STATES = (SessionState.STOPPED, SessionState.FAILED)


class StopReason:
    USER = 'user'
    PROVIDER_DISABLED = 'provider_disabled'
    WRITE_ERRORS = 'write_errors'


def parse_endpoint(host, port):
    """Validate user input. Returns (host, port) or raises InvalidConfig."""
    host = str(host or '').strip()
    if not host:
        raise InvalidConfig("Invalid IP, please try again")

    if isinstance(port, int) and not isinstance(port, bool):
        value = port
    else:
        text = str(port if port is not None else '').strip()
        if not _PORT_RE.fullmatch(text):
            raise InvalidConfig("Invalid Port, please try again")
        value = int(text)

    if not 0 <= value <= MAX_PORT:
        raise InvalidConfig(f"Port must be between 0 and {MAX_PORT}")
    return host, value


class Session:
    def __init__(self, host, port, transport, location_source,
                 tick_interval=config.TICK_INTERVAL,
                 max_write_errors=config.MAX_WRITE_ERRORS,
                 listener=None):
        self.target_host = host
        self.target_port = port
        self.transport = transport
        self.location_source = location_source
        self.tick_interval = tick_interval
        self.max_write_errors = max_write_errors
        self.listener = listener

        self.state = SessionState.IDLE
        self.connection = None
        self.error = None
        self.stop_reason = None
        self.sent_count = 0
        self.write_errors = 0
        self.dropped_count = 0

        self._consecutive_write_errors = 0
        self._stop_requested = False
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._done = threading.Event()
        self._worker = None
        # Listener events, queued under _lock and delivered in order under _notify_lock.
        self._events = deque()
        self._notify_lock = threading.RLock()

    def __repr__(self):
        return f"<Session {self.target_host}:{self.target_port} {self.state.value}>"

    @property
    def is_terminal(self):
        return self.state in TERMINAL_STATES

    # --- Lifecycle ---

    def start(self):
        """Move to CONNECTING and connect in the background. Never blocks on the network."""
        with self._lock:
            if self.state is not SessionState.IDLE:
                raise RuntimeError(f"{self!r} has already been started")
            self._set_state(SessionState.CONNECTING)
        self._deliver_events()

        self._worker = threading.Thread(
            target=self._run,
            name=f"session-{self.target_host}:{self.target_port}",
            daemon=True,
        )
        self._worker.start()
        return self

    def _run(self):
        try:
            conn = self.transport.connect(self.target_host, self.target_port)
        except Exception as e:
            self.on_connect_failed(e)
            return
        self.on_connected(conn)

        # Timer-driven provider check; status-change callbacks also call tick().
        while not self._done.wait(self.tick_interval):
            self.tick()
        logger.debug(f"{self!r} worker finished")

    def on_connected(self, conn):
        with self._lock:
            if self.state is not SessionState.CONNECTING:
                logger.warning(f"Ignoring connection for {self!r}")
                stray = conn
            else:
                stray = None
                self.connection = conn
                self._set_state(SessionState.ACTIVE)
                self.location_source.subscribe(self.on_location_sample)
                self.location_source.add_status_listener(self._on_provider_status)
                stop_now = self._stop_requested
        if stray is not None:
            self._close(stray)
            return

        self._deliver_events()
        if stop_now:
            self._finish(StopReason.USER)
        else:
            # The provider may have been switched off while we were connecting.
            self.tick()

    def on_connect_failed(self, err):
        with self._lock:
            if self.state is not SessionState.CONNECTING:
                return
            self.error = err
            self._events.append(('error', err))
            self._set_state(SessionState.FAILED)
        logger.error(f"Connection to {self.target_host}:{self.target_port} failed: {err}")
        self._deliver_events()

    def on_location_sample(self, sample):
        """Send one sample if ACTIVE. Returns True when it was written."""
        try:
            record = format_record(sample)
        except ValueError as e:
            with self._lock:
                if self.state is not SessionState.ACTIVE:
                    return False
                self.dropped_count += 1
                self._events.append(('error', e))
            logger.warning(f"Dropping location that cannot be sent: {e}")
            self._deliver_events()
            return False

        fatal = False
        with self._lock:
            if self.state is not SessionState.ACTIVE:
                return False
            try:
                self.transport.send(self.connection, record)
            except WriteError as e:
                error = e
                self._events.append(('error', e))
                self.write_errors += 1
                self._consecutive_write_errors += 1
                fatal = bool(self.max_write_errors) and \
                    self._consecutive_write_errors >= self.max_write_errors
            else:
                self.sent_count += 1
                self._consecutive_write_errors = 0
                return True

        logger.error(f"Failed to send location to {self.target_host}:{self.target_port}: {error}")
        self._deliver_events()
        if fatal:
            logger.error(f"{self._consecutive_write_errors} consecutive write errors, stopping {self!r}")
            self._finish(StopReason.WRITE_ERRORS)
        return False

    def tick(self):
        """Stop the session if the location provider has been disabled."""
        if self.state is not SessionState.ACTIVE:
            return
        if not self.location_source.is_provider_enabled():
            logger.info("Location provider disabled, ending session")
            self._finish(StopReason.PROVIDER_DISABLED)

    def stop(self):
        """User-initiated stop. A stop while CONNECTING takes effect once connected."""
        with self._lock:
            if self.state in (SessionState.IDLE, SessionState.CONNECTING):
                self._stop_requested = True
                return
        self._finish(StopReason.USER)

    def wait_for_state(self, *states, timeout=None):
        with self._changed:
            return self._changed.wait_for(lambda: self.state in states, timeout)

    def join(self, timeout=None):
        if self._worker is not None:
            self._worker.join(timeout)

    def snapshot(self):
        with self._lock:
            return {
                'state': self.state.value,
                'host': self.target_host,
                'port': self.target_port,
                'sent': self.sent_count,
                'write_errors': self.write_errors,
                'dropped': self.dropped_count,
                'stop_reason': self.stop_reason,
                'error': str(self.error) if self.error else None,
            }

    # --- Internals ---

    def _on_provider_status(self, enabled):
        if not enabled:
            self.tick()

    def _finish(self, reason):
        with self._lock:
            if self.state is not SessionState.ACTIVE:
                return False
            self.stop_reason = reason
            self._set_state(SessionState.STOPPED)
            self.location_source.unsubscribe(self.on_location_sample)
            self.location_source.remove_status_listener(self._on_provider_status)
            self._close(self.connection)
        self._deliver_events()
        return True

    def _close(self, conn):
        try:
            self.transport.close(conn)
        except CloseError as e:
            logger.warning(f"Error closing connection: {e}")

    def _set_state(self, new):
        # Caller holds self._lock.
        old = self.state
        self.state = new
        logger.info(f"Session {self.target_host}:{self.target_port}: {old.value} -> {new.value}")
        if new in TERMINAL_STATES:
            self._done.set()
        self._events.append(('state', old, new))
        self._changed.notify_all()

    def _deliver_events(self):
        with self._notify_lock:
            while True:
                with self._lock:
                    if not self._events:
                        return
                    event = self._events.popleft()
                if self.listener is None:
                    continue
                try:
                    if event[0] == 'state':
                        self.listener.on_state_change(self, event[1], event[2])
                    else:
                        self.listener.on_error(self, event[1])
                except Exception:
                    logger.exception("Session listener failed")


def start_session(host, port, location_source, transport=None, **kwargs):
    """
    Validate (host, port) and start a new Session.

    Raises InvalidConfig before anything touches the network. Otherwise
    returns the session, already CONNECTING.
    """
    host, port = parse_endpoint(host, port)
    if transport is None:
        transport = TcpTransport(timeout=config.CONNECT_TIMEOUT)
    session = Session(host, port, transport, location_source, **kwargs)
    return session.start()
