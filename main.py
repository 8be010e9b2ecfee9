# main.py
"""
Headless tracker: connects to the configured collector and streams
simulated locations until the session ends or Ctrl+C is pressed.

Configuration comes from config.py (environment / .env), for example:
    TRACKER_HOST=192.168.1.39 TRACKER_PORT=25150 SAMPLE_INTERVAL=5 python main.py
"""
import logging
import sys

import config
from errors import InvalidConfig
from location_source import SimulatedLocationSource
from session import SessionState, start_session
from telemetry import local_ip_address

logger = logging.getLogger('tracker')

WAIT_SLICE = 1.0  # seconds; keeps Ctrl+C responsive while waiting


def run_tracker(host=config.TRACKER_HOST, port=config.TRACKER_PORT, location_source=None):
    """Run one session to completion. Returns the finished Session, or None on bad config."""
    if location_source is None:
        location_source = SimulatedLocationSource(
            source_identifier=config.SOURCE_IP or local_ip_address(host),
            device_label=config.DEVICE_LABEL,
        )

    logger.info(f"Target: {host}:{port}, device: {config.DEVICE_LABEL}")
    try:
        session = start_session(host, port, location_source)
    except InvalidConfig as e:
        logger.error(f"{e}")
        return None

    if hasattr(location_source, 'start'):
        location_source.start()
    try:
        while not session.wait_for_state(SessionState.STOPPED, SessionState.FAILED, timeout=WAIT_SLICE):
            pass
    except KeyboardInterrupt:
        logger.info("Ctrl+C detected. Stopping session.")
        session.stop()
        session.wait_for_state(SessionState.STOPPED, SessionState.FAILED, timeout=config.TICK_INTERVAL + 5)
    finally:
        if hasattr(location_source, 'stop'):
            location_source.stop()

    snapshot = session.snapshot()
    logger.info(f"Session {snapshot['state']}: sent {snapshot['sent']} locations, "
                f"{snapshot['write_errors']} write errors"
                + (f", reason: {snapshot['stop_reason']}" if snapshot['stop_reason'] else ''))
    return session


def main():
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    session = run_tracker()
    if session is None or session.state is SessionState.FAILED:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
