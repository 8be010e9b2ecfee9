"""Location samples and their line-oriented wire encoding.

One record per line, fields separated by single spaces:

    <timestamp> <source ip> <device label> <latitude> <longitude>

The timestamp is UTC, formatted as ``dd/Mon/yyyy-HH:mm:ss`` with English
month abbreviations regardless of the process locale.
"""
import math
import re
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

MONTHS = ('Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun',
          'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec')
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
EARTH_RADIUS_M = 6371008.8
FIELD_COUNT = 5

_TIMESTAMP_RE = re.compile(r'^(\d{2})/([A-Z][a-z]{2})/(\d{4})-(\d{2}):(\d{2}):(\d{2})$')


@dataclass(frozen=True)
class LocationSample:
    timestamp_ms: int
    source_identifier: str
    device_label: str
    latitude: float
    longitude: float


def format_timestamp(timestamp_ms):
    """Format milliseconds since the epoch as ``24/Mar/2017-16:05:09`` (UTC)."""
    dt = EPOCH + timedelta(milliseconds=int(timestamp_ms))
    return (f"{dt.day:02d}/{MONTHS[dt.month - 1]}/{dt.year:04d}-"
            f"{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d}")


def parse_timestamp(text):
    """Inverse of format_timestamp, to whole-second precision."""
    match = _TIMESTAMP_RE.match(text)
    if not match or match.group(2) not in MONTHS:
        raise ValueError(f"Invalid timestamp: {text!r}")
    day, month, year, hour, minute, second = match.groups()
    dt = datetime(int(year), MONTHS.index(month) + 1, int(day),
                  int(hour), int(minute), int(second), tzinfo=timezone.utc)
    return int((dt - EPOCH) / timedelta(milliseconds=1))


def format_coordinate(value):
    return repr(float(value))


def format_record(sample):
    """Serialize a LocationSample to a TelemetryRecord, without the line terminator.

    Raises ValueError if a text field would break the one-record-per-line framing.
    """
    for field in (sample.source_identifier, sample.device_label):
        if '\r' in field or '\n' in field:
            raise ValueError(f"Line break in record field: {field!r}")
    return ' '.join([
        format_timestamp(sample.timestamp_ms),
        sample.source_identifier,
        sample.device_label,
        format_coordinate(sample.latitude),
        format_coordinate(sample.longitude),
    ])


def parse_record(line):
    """
    Parse one received TelemetryRecord back into a LocationSample.

    The device label is not escaped on the wire, so the coordinates are
    taken from the right and everything between the address and the
    coordinates is treated as the label.
    """
    parts = line.rstrip('\r\n').split(' ')
    if len(parts) < FIELD_COUNT:
        raise ValueError(f"Expected {FIELD_COUNT} fields, got {len(parts)}: {line!r}")
    try:
        latitude = float(parts[-2])
        longitude = float(parts[-1])
    except ValueError:
        raise ValueError(f"Invalid coordinates in record: {line!r}") from None
    return LocationSample(
        timestamp_ms=parse_timestamp(parts[0]),
        source_identifier=parts[1],
        device_label=' '.join(parts[2:-2]),
        latitude=latitude,
        longitude=longitude,
    )


def now_ms():
    return int((datetime.now(timezone.utc) - EPOCH) / timedelta(milliseconds=1))


def local_ip_address(target_host='8.8.8.8'):
    """Dotted-decimal address of the interface that routes to target_host."""
    probe = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # UDP connect sends nothing; it only selects a route.
        probe.connect((target_host, 9))
        return probe.getsockname()[0]
    except OSError:
        return '127.0.0.1'
    finally:
        probe.close()


def distance_m(lat1, lon1, lat2, lon2):
    """Great-circle distance in metres (haversine)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))
