from flask import Flask, request, jsonify, current_app, abort
from flask_socketio import SocketIO
from datetime import datetime
import sqlite3
import threading
import logging

import config
import storage
from errors import InvalidConfig
from location_source import SimulatedLocationSource
from session import SessionState, start_session
from telemetry import local_ip_address

socketio = SocketIO()

TRUE_VALUES = ('1', 'true', 'yes', 'on')


class SessionBusy(Exception):
    pass


# --- Display sink: session events -> Socket.IO ---
class SocketIOListener:
    def __init__(self, sio):
        self.sio = sio

    def on_state_change(self, session, old, new):
        logging.debug(f"Emitting session_state {old.value} -> {new.value}")
        self.sio.emit('session_state', {
            'timestamp': datetime.now().strftime('%Y-%m-%d %H:%M:%S'),
            'old': old.value,
            'state': new.value,
            'host': session.target_host,
            'port': session.target_port,
            'stop_reason': session.stop_reason,
        })

    def on_error(self, session, err):
        self.sio.emit('session_error', {
            'timestamp': datetime.now().strftime('%Y-%m-%d %H:%M:%S'),
            'kind': type(err).__name__,
            'error': str(err),
        })


class Tracker:
    """Holds the operator's current session; a new one is created for every connect."""

    def __init__(self, location_source, transport=None, listener=None,
                 tick_interval=config.TICK_INTERVAL):
        self.location_source = location_source
        self.transport = transport
        self.listener = listener
        self.tick_interval = tick_interval
        self.session = None
        self._lock = threading.Lock()

    def connect(self, host, port):
        with self._lock:
            if self.session is not None and not self.session.is_terminal:
                raise SessionBusy(f"Already {self.session.state.value} to "
                                  f"{self.session.target_host}:{self.session.target_port}")
            self.session = start_session(
                host, port, self.location_source,
                transport=self.transport,
                listener=self.listener,
                tick_interval=self.tick_interval,
            )
            return self.session

    def disconnect(self):
        with self._lock:
            session = self.session
        if session is not None:
            session.stop()
        return session

    def status(self):
        with self._lock:
            session = self.session
        if session is None:
            return {'state': SessionState.IDLE.value}
        return session.snapshot()


def _param(name):
    data = request.get_json(silent=True)
    if data is None:
        return request.form.get(name)
    if not isinstance(data, dict):
        abort(400, description='Request body must be a JSON object')
    return data.get(name, request.form.get(name))


def create_app(location_source=None, transport=None, database=None,
               async_mode=config.SOCKETIO_ASYNC_MODE, tick_interval=config.TICK_INTERVAL):
    app = Flask(__name__)
    app.config['SECRET_KEY'] = config.SECRET_KEY
    app.config['DATABASE'] = database or config.DATABASE

    socketio.init_app(app, async_mode=async_mode)

    if location_source is None:
        location_source = SimulatedLocationSource(
            source_identifier=config.SOURCE_IP or local_ip_address(config.TRACKER_HOST),
            device_label=config.DEVICE_LABEL,
        )
    app.extensions['tracker'] = Tracker(location_source, transport=transport,
                                        listener=SocketIOListener(socketio),
                                        tick_interval=tick_interval)
    storage.initialize_database(app.config['DATABASE'])
    _register_routes(app)
    return app


def get_tracker():
    return current_app.extensions['tracker']


def _register_routes(app):
    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({'error': e.description}), 400

    @app.route('/health')
    def health():
        return jsonify({'status': 'RUNNING', 'session': get_tracker().status()['state']})

    @app.route('/connect', methods=['POST'])
    def connect():
        host = _param('host')
        port = _param('port')
        try:
            session = get_tracker().connect(host, port)
        except InvalidConfig as e:
            logging.warning(f"Rejected connect request host={host!r} port={port!r}: {e}")
            return jsonify({'error': str(e)}), 400
        except SessionBusy as e:
            return jsonify({'error': str(e)}), 409
        return jsonify(session.snapshot()), 202

    @app.route('/disconnect', methods=['POST'])
    def disconnect():
        session = get_tracker().disconnect()
        if session is None:
            return jsonify({'error': 'No session to stop'}), 404
        return jsonify(session.snapshot())

    @app.route('/status')
    def status():
        return jsonify(get_tracker().status())

    @app.route('/provider', methods=['POST'])
    def provider():
        value = _param('enabled')
        if value is None:
            return jsonify({'error': 'enabled parameter is required'}), 400
        enabled = str(value).lower() in TRUE_VALUES
        source = get_tracker().location_source
        if not hasattr(source, 'set_provider_enabled'):
            return jsonify({'error': 'Location provider cannot be toggled'}), 400
        source.set_provider_enabled(enabled)
        return jsonify({'enabled': source.is_provider_enabled()})

    @app.route('/locations')
    def locations():
        limit = request.args.get('limit', default=100, type=int)
        if limit is None or limit < 1:
            return jsonify({'error': 'limit must be a positive integer'}), 400
        try:
            rows = storage.fetch_locations(limit, database=current_app.config['DATABASE'])
        except sqlite3.Error as e:
            logging.error(f"Error fetching locations: {e}")
            return jsonify({'error': 'An unexpected error occurred while fetching data.'}), 500
        return jsonify({'locations': rows})


# --- SocketIO Events ---
@socketio.on('connect')
def handle_connect(auth=None):
    logging.debug(f'Client connected: {request.sid}')
    socketio.emit('status', get_tracker().status(), to=request.sid)


@socketio.on('disconnect')
def handle_disconnect(reason=None):
    logging.debug(f'Client disconnected: {request.sid}')


if __name__ == '__main__':
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    if config.SOCKETIO_ASYNC_MODE == 'eventlet':
        import eventlet
        eventlet.monkey_patch()

    app = create_app()
    app.extensions['tracker'].location_source.start()

    logging.info("Starting Flask-SocketIO server...")
    socketio.run(app, host=config.WEB_HOST, port=config.WEB_PORT, debug=False)
