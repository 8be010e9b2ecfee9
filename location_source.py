"""
Location providers that feed samples to a tracking session.

A source fans samples out to its subscribers and reports whether its
provider is enabled. Status listeners are told whenever that flag flips,
so a session can react without polling.
"""
import logging
import math
import random
import threading

import config
from telemetry import LocationSample, distance_m, now_ms

logger = logging.getLogger(__name__)

METRES_PER_DEGREE = 111320.0


class LocationSource:
    def __init__(self, provider_enabled=True):
        self._lock = threading.Lock()
        self._subscribers = []
        self._status_listeners = []
        self._provider_enabled = provider_enabled

    def subscribe(self, callback):
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    @property
    def subscriber_count(self):
        with self._lock:
            return len(self._subscribers)

    def is_provider_enabled(self):
        return self._provider_enabled

    def add_status_listener(self, callback):
        with self._lock:
            if callback not in self._status_listeners:
                self._status_listeners.append(callback)

    def remove_status_listener(self, callback):
        with self._lock:
            if callback in self._status_listeners:
                self._status_listeners.remove(callback)

    def _publish(self, sample):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(sample)

    def _set_provider_enabled(self, enabled):
        enabled = bool(enabled)
        with self._lock:
            if enabled == self._provider_enabled:
                return
            self._provider_enabled = enabled
            listeners = list(self._status_listeners)
        logger.info(f"Location provider {'enabled' if enabled else 'disabled'}")
        for callback in listeners:
            callback(enabled)


class ManualLocationSource(LocationSource):
    """Samples and provider status are pushed in by the caller."""

    def publish(self, sample):
        self._publish(sample)

    def set_provider_enabled(self, enabled):
        self._set_provider_enabled(enabled)


class SimulatedLocationSource(ManualLocationSource):
    """
    Random walk around a starting point, published from a background thread.

    Like a real provider's update request, a new point is only delivered
    once it is at least min_distance metres from the last delivered one.
    """

    def __init__(self, source_identifier, device_label,
                 latitude=config.START_LATITUDE, longitude=config.START_LONGITUDE,
                 interval=config.SAMPLE_INTERVAL, min_distance=config.MIN_DISTANCE,
                 max_step=50.0, seed=None):
        super().__init__()
        self.source_identifier = source_identifier
        self.device_label = device_label
        self.latitude = latitude
        self.longitude = longitude
        self.interval = interval
        self.min_distance = min_distance
        self.max_step = max_step
        self._last_published = None
        self._random = random.Random(seed)
        self._stop = threading.Event()
        self._thread = None

    def _walk(self):
        step = self._random.uniform(0, self.max_step)
        bearing = self._random.uniform(0, 2 * math.pi)
        self.latitude += step * math.cos(bearing) / METRES_PER_DEGREE
        self.longitude += step * math.sin(bearing) / (METRES_PER_DEGREE * math.cos(math.radians(self.latitude)))

    def step(self):
        """Advance the walk once. Returns the published sample, or None if filtered out."""
        self._walk()
        if not self.is_provider_enabled():
            return None
        if self._last_published is not None:
            last_lat, last_lon = self._last_published
            if distance_m(last_lat, last_lon, self.latitude, self.longitude) < self.min_distance:
                return None
        sample = LocationSample(
            timestamp_ms=now_ms(),
            source_identifier=self.source_identifier,
            device_label=self.device_label,
            latitude=round(self.latitude, 6),
            longitude=round(self.longitude, 6),
        )
        self._last_published = (self.latitude, self.longitude)
        self._publish(sample)
        return sample

    def _run(self):
        logger.info(f"Simulated location source started (every {self.interval}s)")
        while not self._stop.wait(self.interval):
            try:
                self.step()
            except Exception:
                logger.exception("Error publishing simulated location")
        logger.info("Simulated location source stopped")

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='simulated-location', daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None
