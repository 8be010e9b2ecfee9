import os
import socket

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _float_or_none(value):
    if value is None or value == '':
        return None
    return float(value)


# --- Tracker target ---
TRACKER_HOST = os.getenv('TRACKER_HOST', '127.0.0.1')
TRACKER_PORT = os.getenv('TRACKER_PORT', '25150')  # parsed by session.parse_endpoint

# --- Session ---
TICK_INTERVAL = float(os.getenv('TICK_INTERVAL', '1.0'))  # seconds between provider checks
CONNECT_TIMEOUT = _float_or_none(os.getenv('CONNECT_TIMEOUT'))  # None waits forever
MAX_WRITE_ERRORS = int(os.getenv('MAX_WRITE_ERRORS', '0'))  # 0 keeps going after any number

# --- Sample identity ---
DEVICE_LABEL = os.getenv('DEVICE_LABEL', socket.gethostname())
SOURCE_IP = os.getenv('SOURCE_IP')  # None: looked up from the route to the target

# --- Simulated location source ---
SAMPLE_INTERVAL = float(os.getenv('SAMPLE_INTERVAL', '30'))  # seconds
MIN_DISTANCE = float(os.getenv('MIN_DISTANCE', '20'))  # metres
START_LATITUDE = float(os.getenv('START_LATITUDE', '49.2827'))
START_LONGITUDE = float(os.getenv('START_LONGITUDE', '-123.1207'))

# --- Receiving server ---
RECEIVER_HOST = os.getenv('RECEIVER_HOST', '0.0.0.0')
RECEIVER_PORT = int(os.getenv('RECEIVER_PORT', '25150'))
MIN_RECEIVER_PORT = 20000
DATABASE = os.getenv('DATABASE', 'gps_data.db')
GPS_JSON_PATH = os.getenv('GPS_JSON_PATH', 'gpsData.json')

# --- Web panel ---
SOCKETIO_ASYNC_MODE = os.getenv('SOCKETIO_ASYNC_MODE', 'eventlet')
WEB_HOST = os.getenv('WEB_HOST', '0.0.0.0')
WEB_PORT = int(os.getenv('WEB_PORT', '5000'))
SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret')

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
