from conftest import make_sample, wait_until
from location_source import ManualLocationSource, SimulatedLocationSource
from telemetry import distance_m


def simulated(**kwargs):
    kwargs.setdefault("seed", 7)
    return SimulatedLocationSource("10.0.0.5", "Pixel", latitude=49.2827, longitude=-123.1207, **kwargs)


def test_publish_fans_out_to_subscribers():
    source = ManualLocationSource()
    first, second = [], []
    source.subscribe(first.append)
    source.subscribe(second.append)
    source.subscribe(first.append)  # duplicate subscription is ignored

    source.publish(make_sample(1))
    source.unsubscribe(second.append)
    source.publish(make_sample(2))

    assert first == [make_sample(1), make_sample(2)]
    assert second == [make_sample(1)]


def test_status_listeners_only_hear_changes():
    source = ManualLocationSource()
    seen = []
    source.add_status_listener(seen.append)

    source.set_provider_enabled(True)
    source.set_provider_enabled(False)
    source.set_provider_enabled(False)
    source.set_provider_enabled(True)
    source.remove_status_listener(seen.append)
    source.set_provider_enabled(False)

    assert seen == [False, True]
    assert source.is_provider_enabled() is False


def test_simulated_step_carries_identity():
    source = simulated(min_distance=0)
    received = []
    source.subscribe(received.append)

    sample = source.step()

    assert received == [sample]
    assert sample.source_identifier == "10.0.0.5"
    assert sample.device_label == "Pixel"
    assert distance_m(49.2827, -123.1207, sample.latitude, sample.longitude) <= 51


def test_simulated_source_filters_small_moves():
    source = simulated(min_distance=10_000, max_step=10)
    assert source.step() is not None
    assert all(source.step() is None for _ in range(20))


def test_simulated_source_is_silent_while_provider_disabled():
    source = simulated(min_distance=0)
    received = []
    source.subscribe(received.append)
    source.set_provider_enabled(False)

    assert source.step() is None
    assert received == []


def test_simulated_source_thread_publishes_until_stopped():
    source = simulated(min_distance=0, interval=0.01)
    received = []
    source.subscribe(received.append)

    source.start()
    assert wait_until(lambda: len(received) >= 3)
    source.stop()
    count = len(received)

    assert wait_until(lambda: len(received) == count, timeout=0.2)
    assert [s.timestamp_ms for s in received] == sorted(s.timestamp_ms for s in received)
