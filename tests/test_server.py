import json
import socket

import pytest

import server as receiver
import storage
from conftest import make_sample, wait_until
from location_source import ManualLocationSource
from session import SessionState, start_session
from telemetry import format_record
from transport import TcpTransport


@pytest.fixture
def collector(database):
    srv = receiver.ReceiverServer(host="127.0.0.1", port=0, database=database)
    srv.start()
    yield srv
    srv.shutdown()


def send_lines(port, lines):
    with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
        sock.sendall("".join(line + "\n" for line in lines).encode("utf-8"))


def test_collector_stores_records(collector, database):
    send_lines(collector.port, [format_record(make_sample(i)) for i in range(3)])

    assert wait_until(lambda: collector.received == 3)
    rows = storage.fetch_locations(database=database)
    assert [r["time"] for r in rows] == ["24/Mar/2017-16:05:11", "24/Mar/2017-16:05:10", "24/Mar/2017-16:05:09"]
    assert rows[-1] == {
        "ip": "192.168.1.23",
        "lat": 49.2827,
        "long": -123.1207,
        "name": "Pixel",
        "time": "24/Mar/2017-16:05:09",
    }


def test_collector_skips_malformed_lines(collector, database, caplog):
    send_lines(collector.port, ["hello", "", format_record(make_sample(0, label="Galaxy S7"))])

    assert wait_until(lambda: collector.received == 1)
    rows = storage.fetch_locations(database=database)
    assert [r["name"] for r in rows] == ["Galaxy S7"]
    assert wait_until(lambda: "Skipping malformed record" in caplog.text)


def test_collector_handles_several_clients(collector):
    for n in range(3):
        send_lines(collector.port, [format_record(make_sample(n))])
    assert wait_until(lambda: collector.received == 3)
    assert wait_until(lambda: collector.clients == [])


def test_session_streams_to_collector(collector, database):
    source = ManualLocationSource()
    session = start_session("127.0.0.1", str(collector.port), source,
                            transport=TcpTransport(timeout=5), tick_interval=0.05)
    assert session.wait_for_state(SessionState.ACTIVE, timeout=5)

    samples = [make_sample(i) for i in range(10)]
    for sample in samples:
        source.publish(sample)
    source.set_provider_enabled(False)

    assert session.state is SessionState.STOPPED
    assert session.connection.closed
    assert wait_until(lambda: collector.received == 10)
    rows = list(reversed(storage.fetch_locations(database=database)))
    assert [(r["lat"], r["long"]) for r in rows] == [(s.latitude, s.longitude) for s in samples]


def test_export_json_matches_web_map_shape(database, tmp_path):
    storage.initialize_database(database)
    storage.store_location(make_sample(0), peer="127.0.0.1:5000", database=database)
    storage.store_location(make_sample(1, label="Nexus 5X"), database=database)
    path = tmp_path / "gpsData.json"

    assert storage.export_json(str(path), database=database) == 2
    data = json.loads(path.read_text())
    assert [d["name"] for d in data] == ["Pixel", "Nexus 5X"]
    assert set(data[0]) == {"ip", "lat", "long", "name", "time"}


def test_collector_rewrites_json_file(database, tmp_path):
    path = tmp_path / "gpsData.json"
    srv = receiver.ReceiverServer(host="127.0.0.1", port=0, database=database, json_path=str(path))
    srv.start()
    try:
        send_lines(srv.port, [format_record(make_sample(0))])
        assert wait_until(lambda: srv.received == 1)
    finally:
        srv.shutdown()
    assert json.loads(path.read_text())[0]["ip"] == "192.168.1.23"


def test_collector_keeps_reading_when_json_export_fails(database, tmp_path, caplog):
    path = tmp_path / "missing" / "gpsData.json"
    srv = receiver.ReceiverServer(host="127.0.0.1", port=0, database=database, json_path=str(path))
    srv.start()
    try:
        send_lines(srv.port, [format_record(make_sample(i)) for i in range(3)])
        assert wait_until(lambda: srv.received == 3)
    finally:
        srv.shutdown()
    assert len(storage.fetch_locations(database=database)) == 3
    assert "Could not export" in caplog.text
    assert "Read from" not in caplog.text


def test_unstored_record_is_not_counted(database, monkeypatch):
    forwarded = []
    srv = receiver.ReceiverServer(host="127.0.0.1", port=0, database=database, on_sample=forwarded.append)
    monkeypatch.setattr(storage, "store_location", lambda sample, peer=None, database=None: None)

    assert srv.handle_line(format_record(make_sample(0)) + "\n", "127.0.0.1:5000") is None
    assert srv.received == 0
    assert forwarded == []


def test_fetch_locations_limit(database):
    storage.initialize_database(database)
    for i in range(5):
        storage.store_location(make_sample(i), database=database)
    rows = storage.fetch_locations(limit=2, database=database)
    assert [r["time"] for r in rows] == ["24/Mar/2017-16:05:13", "24/Mar/2017-16:05:12"]


@pytest.mark.parametrize("port", ["8080", "70000", "abc"])
def test_command_line_rejects_bad_ports(port):
    with pytest.raises(SystemExit):
        receiver.main([port])


def test_parse_port():
    assert receiver.parse_port("25150") == 25150
