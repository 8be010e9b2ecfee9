# server.py
"""
Collector for tracker telemetry.

Listens for tracker connections, reads newline-delimited telemetry records
from each client on its own thread and stores them in SQLite.
"""
import argparse
import logging
import socket
import sqlite3
import sys
import threading

import config
import storage
from telemetry import parse_record

logger = logging.getLogger(__name__)

BACKLOG = 5
MAX_PORT = 65535
ACCEPT_POLL = 0.5  # seconds; lets shutdown() stop the accept loop


class ReceiverServer:
    def __init__(self, host=config.RECEIVER_HOST, port=config.RECEIVER_PORT,
                 database=None, json_path=None, on_sample=None):
        self.host = host
        self.port = port
        self.database = database
        self.json_path = json_path
        self.on_sample = on_sample
        self.clients = []
        self.received = 0
        self.running = False
        self._socket = None
        self._thread = None
        self._lock = threading.Lock()

    def bind(self):
        storage.initialize_database(self.database)
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server.bind((self.host, self.port))
        server.listen(BACKLOG)
        server.settimeout(ACCEPT_POLL)
        self.port = server.getsockname()[1]
        self._socket = server
        self.running = True
        logger.info(f"TCP Server listening on {self.host}:{self.port}")

    def serve_forever(self):
        if self._socket is None:
            self.bind()
        while self.running:
            try:
                conn, addr = self._socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error(f"accept() failed: {e}")
                break
            conn.settimeout(None)
            threading.Thread(target=self.client_handler, args=(conn, addr), daemon=True).start()

    def start(self):
        """Bind and serve on a background thread. Returns the bound port."""
        self.bind()
        self._thread = threading.Thread(target=self.serve_forever, name='receiver', daemon=True)
        self._thread.start()
        return self.port

    def shutdown(self):
        self.running = False
        if self._socket is not None:
            self._socket.close()
        with self._lock:
            clients = list(self.clients)
        for conn in clients:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug(f"Client already disconnected: {e}")
        if self._thread is not None:
            self._thread.join(timeout=ACCEPT_POLL * 4)
        logger.info("TCP Server stopped")

    def client_handler(self, conn, addr):
        peer = f"{addr[0]}:{addr[1]}"
        logger.info(f"New client connected: {peer}")
        with self._lock:
            self.clients.append(conn)
        try:
            with conn.makefile('r', encoding='utf-8', errors='replace', newline='\n') as reader:
                for line in reader:
                    self.handle_line(line, peer)
        except OSError as e:
            logger.error(f"Read from {peer} failed: {e}")
        finally:
            with self._lock:
                self.clients.remove(conn)
            conn.close()
            logger.info(f"Client {peer} has disconnected")

    def handle_line(self, line, peer=None):
        if not line.strip():
            return None
        try:
            sample = parse_record(line)
        except ValueError as e:
            logger.warning(f"Skipping malformed record from {peer}: {e}")
            return None

        if storage.store_location(sample, peer=peer, database=self.database) is None:
            logger.error(f"Dropping record from {peer}: it could not be stored")
            return None
        if self.json_path:
            try:
                storage.export_json(self.json_path, database=self.database)
            except (OSError, sqlite3.Error) as e:
                logger.error(f"Could not export {self.json_path}: {e}")
        with self._lock:
            self.received += 1
        logger.debug(f"{peer}: {sample.device_label} at {sample.latitude}, {sample.longitude}")
        if self.on_sample is not None:
            self.on_sample(sample)
        return sample


def parse_port(text):
    port = int(text)
    if port < config.MIN_RECEIVER_PORT:
        raise argparse.ArgumentTypeError(f"Port must be above {config.MIN_RECEIVER_PORT:,}")
    if port > MAX_PORT:
        raise argparse.ArgumentTypeError(f"Port must be at most {MAX_PORT}")
    return port


def main(argv=None):
    parser = argparse.ArgumentParser(description="Collect tracker telemetry over TCP.")
    parser.add_argument('port', nargs='?', type=parse_port, default=config.RECEIVER_PORT)
    parser.add_argument('--host', default=config.RECEIVER_HOST)
    parser.add_argument('--database', default=config.DATABASE)
    parser.add_argument('--json', dest='json_path', default=None,
                        help="rewrite this JSON file after every received record")
    args = parser.parse_args(argv)

    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    server = ReceiverServer(args.host, args.port, database=args.database, json_path=args.json_path)
    try:
        server.bind()
    except OSError as e:
        logger.error(f"Could not listen on {args.host}:{args.port}: {e}")
        return 1
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Stopping server due to KeyboardInterrupt...")
    finally:
        server.shutdown()
    return 0


if __name__ == '__main__':
    sys.exit(main())
