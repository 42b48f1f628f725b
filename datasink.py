#!/usr/bin/env python3
"""
Universal Data Sink
===================

A UDP packet logger with some timestamping.

Listens on a control UDP port for the path of the file to write to, and on a
data UDP port for payloads. Every data packet is appended to the current file
as one line:

    <unixTimeNowInMs>,<raw packet data, no sanity check applied><LF>

The file is opened, written and closed for every packet.

Author: Auto-generated
License: MIT
"""

import os
import sys
import time
import socket
import logging
import pathlib
import threading
import configparser
from datetime import datetime
from typing import Optional, List, Any

import psutil


# Largest UDP payload, used for every read
MAX_DATAGRAM_SIZE = 65535

DEFAULT_FALLBACK_PATH = "if_you_see_this_file_then_configure_your_path_and_then_send_data.csv"

DEFAULTS = {
    'NETWORK': {
        'bind_address': '0.0.0.0',
        'control_port': '3430',
        'data_port': '3431',
        'receive_buffer': '0',
        'socket_timeout': '1.0',
    },
    'SINK': {
        'fallback_path': DEFAULT_FALLBACK_PATH,
        'stop_on_invalid_path': 'false',
    },
    'LOGGING': {
        'log_level': 'INFO',
        'log_to_file': 'false',
        'keep_logs': '5',
    },
}

if os.name == 'nt':
    INVALID_PATH_CHARS = frozenset('"<>|\0' + ''.join(chr(c) for c in range(1, 32)))
else:
    INVALID_PATH_CHARS = frozenset('\0')


class ConfigManager:
    """Manages configuration file loading and validation."""

    def __init__(self, config_file: str = "config.ini"):
        self.config_file = config_file
        self.config = configparser.ConfigParser()
        self.load_config()

    def load_config(self):
        """Load built-in defaults, then the configuration file if there is one."""
        self.config.read_dict(DEFAULTS)
        if os.path.exists(self.config_file):
            self.config.read(self.config_file)
        self.validate_config()

    def validate_config(self):
        """Validate configuration settings."""
        log_level = self.get('LOGGING', 'log_level', fallback='INFO')
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if log_level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {log_level}")

        control_port = self.getint('NETWORK', 'control_port')
        data_port = self.getint('NETWORK', 'data_port')
        for name, port in (('control_port', control_port), ('data_port', data_port)):
            if not (0 <= port <= 65535):
                raise ValueError(f"Invalid {name}: {port}")
        if control_port and control_port == data_port:
            raise ValueError(f"Control and data ports must differ, both are {control_port}")

        if self.getint('NETWORK', 'receive_buffer') < 0:
            raise ValueError("receive_buffer must not be negative")
        if self.getfloat('NETWORK', 'socket_timeout') <= 0:
            raise ValueError("socket_timeout must be positive")

    def get(self, section: str, key: str, fallback: Any = None) -> Any:
        """Get configuration value with fallback."""
        return self.config.get(section, key, fallback=fallback)

    def getint(self, section: str, key: str, fallback: int = 0) -> int:
        """Get integer configuration value with fallback."""
        return self.config.getint(section, key, fallback=fallback)

    def getfloat(self, section: str, key: str, fallback: float = 0.0) -> float:
        """Get float configuration value with fallback."""
        return self.config.getfloat(section, key, fallback=fallback)

    def getboolean(self, section: str, key: str, fallback: bool = False) -> bool:
        """Get boolean configuration value with fallback."""
        return self.config.getboolean(section, key, fallback=fallback)


class LogManager:
    """Manages logging configuration and log file rotation."""

    def __init__(self, config: ConfigManager, log_dir: str = "logs"):
        self.config = config
        self.log_dir = log_dir
        self.log_file = None
        self.setup_logging()

    def setup_logging(self):
        """Setup logging configuration."""
        log_level = getattr(logging, self.config.get('LOGGING', 'log_level', fallback='INFO').upper())
        handlers = [logging.StreamHandler()]

        if self.config.getboolean('LOGGING', 'log_to_file', fallback=False):
            if not os.path.exists(self.log_dir):
                os.makedirs(self.log_dir)
            self.cleanup_old_logs()
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.log_file = os.path.join(self.log_dir, f"datasink_{timestamp}.log")
            handlers.append(logging.FileHandler(self.log_file, encoding='utf-8'))

        logging.basicConfig(
            level=log_level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=handlers,
            force=True
        )

        self.logger = logging.getLogger(__name__)
        self.logger.debug("Logging initialized")

    def cleanup_old_logs(self):
        """Remove old log files so that, with the new one, only keep_logs remain."""
        keep_logs = self.config.getint('LOGGING', 'keep_logs', fallback=5)

        if not os.path.exists(self.log_dir):
            return

        log_files = []
        for file in os.listdir(self.log_dir):
            if file.startswith("datasink_") and file.endswith(".log"):
                log_files.append(os.path.join(self.log_dir, file))

        # Newest first
        log_files.sort(key=lambda x: os.path.getmtime(x), reverse=True)

        for old_file in log_files[max(keep_logs - 1, 0):]:
            try:
                os.remove(old_file)
                print(f"Removed old log file: {old_file}")
            except OSError as e:
                print(f"Error removing old log file {old_file}: {e}")


def unix_time_now_in_ms() -> str:
    """Tell the time. UTC milliseconds since the Unix epoch, as a decimal string."""
    return str(time.time_ns() // 1_000_000)


def is_valid_file_path(path: Optional[str]) -> bool:
    """
    Check that a string can be used as a file path.

    Only the shape of the path is checked. Whether it is writable, or whether
    its parent directory exists, shows up later when data is written.
    """
    if path is None or not path.strip():
        return False
    if any(ch in INVALID_PATH_CHARS for ch in path):
        return False
    try:
        pathlib.Path(path)
    except (TypeError, ValueError):
        return False
    return True


def decode_control_payload(payload: bytes) -> Optional[str]:
    """Decode a control packet into a path string, or None if it is not ASCII."""
    try:
        text = payload.decode('ascii')
    except UnicodeDecodeError:
        return None
    return text.rstrip('\r\n')


def find_port_owners(port: int) -> List[str]:
    """Describe the processes already bound to a UDP port."""
    owners = []
    try:
        connections = psutil.net_connections(kind='udp')
    except (psutil.AccessDenied, PermissionError):
        return owners

    for conn in connections:
        if not conn.laddr or conn.laddr.port != port:
            continue
        description = f"pid {conn.pid}" if conn.pid else "unknown process"
        if conn.pid:
            try:
                description += f" ({psutil.Process(conn.pid).name()})"
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                pass
        owners.append(description)
    return owners


class ActivePath:
    """The file path data packets are currently written to, shared between the listeners."""

    def __init__(self, initial: str):
        self._path = initial
        self._lock = threading.Lock()

    def get(self) -> str:
        with self._lock:
            return self._path

    def set(self, path: str) -> str:
        """Replace the path and return the previous one."""
        with self._lock:
            previous = self._path
            self._path = path
            return previous


def _open_udp_socket(host: str, port: int, timeout: float, socket_buffer: int = 0) -> socket.socket:
    """Bind a UDP socket. A socket_buffer of 0 keeps the OS default receive buffer."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    if socket_buffer:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, socket_buffer)
    sock.bind((host, port))
    sock.settimeout(timeout)
    return sock


class ControlListener:
    """Receives new destination file paths on the control port."""

    def __init__(self, active_path: ActivePath, host: str = '0.0.0.0', port: int = 3430,
                 data_port: int = 3431, timeout: float = 1.0, socket_buffer: int = 0,
                 stop_on_invalid_path: bool = False):
        self.logger = logging.getLogger(__name__)
        self.active_path = active_path
        self.host = host
        self.port = port
        self.data_port = data_port
        self.timeout = timeout
        self.socket_buffer = socket_buffer
        self.stop_on_invalid_path = stop_on_invalid_path

        # Used to detect whether the file path has changed
        self.last_path = active_path.get()
        self.socket = None
        self.running = False

    def start(self):
        """Bind the control socket."""
        self.socket = _open_udp_socket(self.host, self.port, self.timeout, self.socket_buffer)
        self.port = self.socket.getsockname()[1]
        self.running = True
        self.logger.debug(f"Control listener bound to {self.host}:{self.port}")

    def stop(self):
        """Stop the receive loop and close the socket."""
        self.running = False
        if self.socket:
            self.socket.close()
            self.socket = None

    def run(self):
        """Blocking receive loop. Returns when stopped, or on a bad path if stop_on_invalid_path is set."""
        while self.running:
            # stop() may clear self.socket from another thread
            sock = self.socket
            if sock is None:
                break
            try:
                payload, addr = sock.recvfrom(MAX_DATAGRAM_SIZE)
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    self.logger.error(f"Control socket error: {e}")
                    continue
                break

            self.logger.debug(f"Control packet of {len(payload)} bytes from {addr}")
            if not self.handle_packet(payload) and self.stop_on_invalid_path:
                self.logger.error("Control listener stopped; the file path can no longer be changed")
                self.running = False

    def handle_packet(self, payload: bytes) -> bool:
        """
        Apply one control packet.

        Args:
            payload: raw datagram, expected to be an ASCII file path

        Returns:
            True if the packet held a valid path, False if it was rejected
        """
        path = decode_control_payload(payload)
        if path is None or not is_valid_file_path(path):
            self.logger.error(f"The file path received seems invalid: {payload!r}")
            return False

        if path != self.last_path:
            self.last_path = path
            self.active_path.set(path)
            self.logger.info(f"Control port: {self.port}, data port {self.data_port}")
            self.logger.info(f"At timestamp {unix_time_now_in_ms()}, new data file path received: {path}")
            self.logger.info(f"From this point onwards, every data sent to UDP port {self.data_port} "
                             f"will be written into this file. Press Ctrl+C to terminate.")
        return True


class DataReceiver:
    """Appends every datagram from the data port to the active file."""

    def __init__(self, active_path: ActivePath, host: str = '0.0.0.0', port: int = 3431,
                 timeout: float = 1.0, socket_buffer: int = 0):
        self.logger = logging.getLogger(__name__)
        self.active_path = active_path
        self.host = host
        self.port = port
        self.timeout = timeout
        self.socket_buffer = socket_buffer

        self.packets_written = 0
        self.packets_dropped = 0
        self.socket = None
        self.running = False
        self.receive_thread = None

    def start(self):
        """Bind the data socket and start the receive thread."""
        self.socket = _open_udp_socket(self.host, self.port, self.timeout, self.socket_buffer)
        self.port = self.socket.getsockname()[1]
        self.running = True
        self.receive_thread = threading.Thread(target=self._receive_worker, daemon=True)
        self.receive_thread.start()
        self.logger.debug(f"Data receiver bound to {self.host}:{self.port}")

    def stop(self):
        """Stop the receive thread."""
        self.running = False
        if self.receive_thread and self.receive_thread.is_alive():
            self.receive_thread.join(timeout=self.timeout + 5.0)
            if self.receive_thread.is_alive():
                self.logger.warning("Data receive thread did not terminate cleanly")
        if self.socket:
            self.socket.close()
            self.socket = None

    def _receive_worker(self):
        """Receive, write, then receive again, one datagram at a time."""
        while self.running:
            try:
                payload, _ = self.socket.recvfrom(MAX_DATAGRAM_SIZE)
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    self.logger.error(f"Data socket error: {e}")
                    continue
                break
            self.handle_packet(payload)

    @staticmethod
    def format_record(payload: bytes, timestamp: Optional[str] = None) -> bytes:
        """Build one log line. The payload is copied verbatim, commas and newlines included."""
        if timestamp is None:
            timestamp = unix_time_now_in_ms()
        return timestamp.encode('ascii') + b',' + payload + b'\n'

    def handle_packet(self, payload: bytes) -> bool:
        """Append one datagram to the active file. On failure the datagram is discarded."""
        path = self.active_path.get()
        try:
            # Open, write, close for every packet to keep losses small on a crash
            with open(path, 'ab') as data_file:
                data_file.write(self.format_record(payload))
        except OSError as e:
            self.packets_dropped += 1
            self.logger.error(f"Could not write {len(payload)} bytes to {path}, packet discarded: {e}")
            return False

        self.packets_written += 1
        return True


class UniversalDataSink:
    """Main application class."""

    def __init__(self, config_file: str = "config.ini"):
        self.config = ConfigManager(config_file)
        self.log_manager = LogManager(self.config)
        self.logger = logging.getLogger(__name__)

        host = self.config.get('NETWORK', 'bind_address')
        timeout = self.config.getfloat('NETWORK', 'socket_timeout')
        socket_buffer = self.config.getint('NETWORK', 'receive_buffer')
        self.control_port = self.config.getint('NETWORK', 'control_port')
        self.data_port = self.config.getint('NETWORK', 'data_port')

        self.active_path = ActivePath(self.config.get('SINK', 'fallback_path'))
        self.data_receiver = DataReceiver(
            self.active_path, host=host, port=self.data_port,
            timeout=timeout, socket_buffer=socket_buffer
        )
        self.control_listener = ControlListener(
            self.active_path, host=host, port=self.control_port, data_port=self.data_port,
            timeout=timeout, socket_buffer=socket_buffer,
            stop_on_invalid_path=self.config.getboolean('SINK', 'stop_on_invalid_path')
        )
        self.host = host

    def check_ports(self):
        """Warn about other processes holding our ports; binding will fail for them."""
        for name, port in (('control', self.control_port), ('data', self.data_port)):
            if not port:
                continue
            owners = find_port_owners(port)
            if owners:
                self.logger.warning(f"UDP {name} port {port} is already in use by: {', '.join(owners)}")

    def start(self):
        """Start the data receiver, then run the control listener until stopped."""
        self.check_ports()
        self.data_receiver.start()
        self.control_listener.start()

        self.logger.info(f"Listening on {self.host}:{self.control_listener.port} for the file name, "
                         f"and {self.host}:{self.data_receiver.port} for data.")
        self.logger.info(f"Writing to {self.active_path.get()} until a file path is received.")

        self.control_listener.run()

        # The control loop may end on a bad path; data keeps going to the last good one
        while self.data_receiver.running:
            time.sleep(self.control_listener.timeout)

    def stop(self):
        """Stop the application."""
        self.control_listener.stop()
        self.data_receiver.stop()
        self.logger.info(f"Stopped; {self.data_receiver.packets_written} packets written, "
                         f"{self.data_receiver.packets_dropped} discarded")


def main():
    """Main entry point."""
    app = None
    try:
        app = UniversalDataSink()
        app.start()
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        print(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        if app:
            try:
                app.stop()
            except Exception as e:
                print(f"Error during shutdown: {e}")


if __name__ == "__main__":
    main()
