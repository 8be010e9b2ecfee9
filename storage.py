import json
import logging
import sqlite3
from datetime import datetime

import config
from telemetry import format_timestamp

logger = logging.getLogger(__name__)


# --- Database Initialization ---
def connect_db(database=None):
    """Connect to the SQLite database."""
    conn = sqlite3.connect(database or config.DATABASE)
    conn.row_factory = sqlite3.Row  # access columns by name
    return conn


def initialize_database(database=None):
    """Create the locations table if it doesn't exist."""
    conn = connect_db(database)
    try:
        conn.execute('''
            CREATE TABLE IF NOT EXISTS locations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                received_at DATETIME NOT NULL,
                peer TEXT,
                ip TEXT NOT NULL,
                name TEXT NOT NULL,
                timestamp_ms INTEGER NOT NULL,
                lat REAL NOT NULL,
                long REAL NOT NULL
            )
        ''')
        conn.commit()
    finally:
        conn.close()


# --- Data Storage Functions ---
def store_location(sample, peer=None, database=None):
    """Store one received sample. Returns the new row id, or None on a DB error."""
    conn = None
    try:
        conn = connect_db(database)
        cursor = conn.execute('''
            INSERT INTO locations (received_at, peer, ip, name, timestamp_ms, lat, long)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (datetime.now().strftime('%Y-%m-%d %H:%M:%S'), peer,
              sample.source_identifier, sample.device_label,
              sample.timestamp_ms, sample.latitude, sample.longitude))
        conn.commit()
        return cursor.lastrowid
    except sqlite3.Error as e:
        logger.error(f"Location DB error: {e}")
        if conn:
            conn.rollback()
        return None
    finally:
        if conn:
            conn.close()


def row_to_dict(row):
    """Shape of one entry in the web map's gpsData.json."""
    return {
        'ip': row['ip'],
        'lat': row['lat'],
        'long': row['long'],
        'name': row['name'],
        'time': format_timestamp(row['timestamp_ms']),
    }


def fetch_locations(limit=None, database=None):
    """Most recent rows first."""
    conn = connect_db(database)
    try:
        query = 'SELECT * FROM locations ORDER BY id DESC'
        params = ()
        if limit is not None:
            query += ' LIMIT ?'
            params = (int(limit),)
        return [row_to_dict(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def export_json(path=None, database=None):
    """Write every stored location, oldest first, as a JSON array. Returns the row count."""
    rows = list(reversed(fetch_locations(database=database)))
    with open(path or config.GPS_JSON_PATH, 'w') as f:
        json.dump(rows, f, indent=1)
    logger.info(f"Exported {len(rows)} locations to {path or config.GPS_JSON_PATH}")
    return len(rows)
