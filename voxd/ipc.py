"""
Status channel: newline-delimited JSON over a Unix stream socket.

The daemon runs a StatusServer; overlays and CLIs run a StatusClient.
The protocol is server -> client only:

    {"type": "hello", "protocolVersion": 1, "status": "idle", "timestamp": 1700000000000}
    {"type": "state", "status": "recording", "timestamp": 1700000000100}
    {"type": "state", "status": "idle", "lastTranscription": "Hello world.", ...}

Anything a client writes is read and discarded.
"""

import errno
import json
import os
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .errors import AppError, ErrorCode
from .types import DaemonStatus


PROTOCOL_VERSION = 1
PROBE_TIMEOUT_SECONDS = 1.0
ACCEPT_POLL_SECONDS = 1.0
SEND_TIMEOUT_SECONDS = 0.5
RECV_SIZE = 4096


class ProtocolError(ValueError):
    """A line on the wire is not a valid status message."""


@dataclass(frozen=True)
class Hello:
    protocol_version: int
    status: DaemonStatus
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class StateMessage:
    status: DaemonStatus
    last_transcription: Optional[str] = None
    error: Optional[str] = None
    timestamp: Optional[int] = None


IPCMessage = Union[Hello, StateMessage]


def now_ms() -> int:
    return int(time.time() * 1000)


def encode_message(message: IPCMessage) -> bytes:
    """Serialize one message as a single JSON line."""
    if isinstance(message, Hello):
        data = {
            "type": "hello",
            "protocolVersion": message.protocol_version,
            "status": message.status.value,
        }
    else:
        data = {"type": "state", "status": message.status.value}
        if message.last_transcription is not None:
            data["lastTranscription"] = message.last_transcription
        if message.error is not None:
            data["error"] = message.error

    if message.timestamp is not None:
        data["timestamp"] = message.timestamp

    return (json.dumps(data, ensure_ascii=False) + "\n").encode("utf-8")


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ProtocolError(f"Field {key!r} must be a string")
    return value


def decode_message(line: Union[str, bytes]) -> IPCMessage:
    """
    Parse one JSON line.

    Raises:
        ProtocolError: malformed JSON, unknown type or unknown status
    """
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Invalid UTF-8: {e}")

    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}")

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    try:
        status = DaemonStatus(data.get("status"))
    except ValueError:
        raise ProtocolError(f"Unknown status: {data.get('status')!r}")

    timestamp = data.get("timestamp")
    if timestamp is not None and not isinstance(timestamp, (int, float)):
        raise ProtocolError("Field 'timestamp' must be a number")
    if timestamp is not None:
        timestamp = int(timestamp)

    message_type = data.get("type")
    if message_type == "hello":
        version = data.get("protocolVersion")
        if not isinstance(version, int):
            raise ProtocolError("Hello is missing protocolVersion")
        return Hello(protocol_version=version, status=status, timestamp=timestamp)

    if message_type == "state":
        return StateMessage(
            status=status,
            last_transcription=_optional_str(data, "lastTranscription"),
            error=_optional_str(data, "error"),
            timestamp=timestamp,
        )

    raise ProtocolError(f"Unknown message type: {message_type!r}")


def _close_quietly(conn: socket.socket) -> None:
    """Shut down (wakes blocked readers) and close a connection."""
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    conn.close()


class StatusServer:
    """
    Broadcasts daemon status to every connected client.

    One accept thread plus one reader thread per client. Sends happen
    under a lock so each client sees hello first and states in order.
    A client that stops reading is dropped once a send times out.

    Usage:
        server = StatusServer(config.socket_path)
        server.start()
        server.broadcast_status(DaemonStatus.RECORDING)
        server.stop()
    """

    def __init__(
        self,
        socket_path: Path,
        probe_timeout: float = PROBE_TIMEOUT_SECONDS,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
    ):
        self.socket_path = Path(socket_path)
        self.probe_timeout = probe_timeout
        self.send_timeout = send_timeout

        self._lock = threading.Lock()
        self._clients: Dict[int, socket.socket] = {}
        self._next_client_id = 0
        self._status = DaemonStatus.IDLE

        self._server_socket: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._running = threading.Event()

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def start(self) -> None:
        """
        Bind the socket and start accepting clients.

        Raises:
            AppError: DAEMON_ALREADY_RUNNING if a live server answers on the
                path, SOCKET_IN_USE if binding fails
        """
        if self._probe_existing():
            raise AppError(
                ErrorCode.DAEMON_ALREADY_RUNNING,
                "Another daemon instance is already running",
                {"socket": str(self.socket_path)},
            )

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            server.bind(str(self.socket_path))
        except OSError as e:
            server.close()
            if e.errno == errno.EADDRINUSE:
                raise AppError(ErrorCode.SOCKET_IN_USE, "Socket address already in use", {"socket": str(self.socket_path)})
            raise

        os.chmod(self.socket_path, 0o600)
        server.listen(16)
        server.settimeout(ACCEPT_POLL_SECONDS)

        self._server_socket = server
        self._running.set()
        self._accept_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._accept_thread.start()
        print(f"[IPC] Listening on {self.socket_path}")

    def _probe_existing(self) -> bool:
        """True if a live server answers. A stale socket file is removed."""
        if not os.path.exists(self.socket_path):
            return False

        probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        probe.settimeout(self.probe_timeout)
        try:
            probe.connect(str(self.socket_path))
        except OSError as e:
            # Refused, missing or timed out: nobody is serving this path
            print(f"[IPC] Removing stale socket ({e.__class__.__name__})")
            self._remove_socket_file()
            return False
        finally:
            probe.close()

        return True

    def _remove_socket_file(self) -> None:
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            print(f"[IPC] Failed to remove socket file: {e}")

    def _accept_loop(self) -> None:
        while self._running.is_set():
            try:
                conn, _ = self._server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running.is_set():
                    print(f"[IPC] Accept error: {e}")
                break

            conn.settimeout(self.send_timeout)
            self._register(conn)

    def _register(self, conn: socket.socket) -> None:
        with self._lock:
            self._next_client_id += 1
            client_id = self._next_client_id
            hello = Hello(protocol_version=PROTOCOL_VERSION, status=self._status, timestamp=now_ms())
            try:
                conn.sendall(encode_message(hello))
            except OSError as e:
                print(f"[IPC] Client {client_id} dropped during hello: {e}")
                _close_quietly(conn)
                return
            self._clients[client_id] = conn

        print(f"[IPC] Client {client_id} connected")
        reader = threading.Thread(target=self._read_loop, args=(client_id, conn), daemon=True)
        reader.start()

    def _read_loop(self, client_id: int, conn: socket.socket) -> None:
        """Drain client input. Nothing is acted on; bad lines are logged."""
        buffer = b""
        try:
            while True:
                try:
                    data = conn.recv(RECV_SIZE)
                except socket.timeout:
                    # The timeout bounds sends; an idle client is fine
                    continue
                if not data:
                    break
                buffer += data
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if not line.strip():
                        continue
                    try:
                        json.loads(line)
                    except ValueError:
                        print(f"[IPC] Ignoring malformed input from client {client_id}")
        except OSError:
            pass
        finally:
            self._drop(client_id)

    def _drop(self, client_id: int) -> None:
        with self._lock:
            conn = self._clients.pop(client_id, None)
        if conn is not None:
            _close_quietly(conn)
            print(f"[IPC] Client {client_id} disconnected")

    def broadcast_status(
        self,
        status: DaemonStatus,
        last_transcription: Optional[str] = None,
        error: Optional[str] = None,
    ) -> int:
        """
        Send a state message to every client.

        Returns:
            Number of clients that received it
        """
        data = encode_message(StateMessage(
            status=status,
            last_transcription=last_transcription,
            error=error,
            timestamp=now_ms(),
        ))

        delivered = 0
        failed = []
        with self._lock:
            self._status = status
            for client_id, conn in self._clients.items():
                try:
                    conn.sendall(data)
                    delivered += 1
                except OSError as e:
                    # socket.timeout included: a full buffer means the client stalled
                    print(f"[IPC] Dropping client {client_id}: {e or 'send timed out'}")
                    failed.append(client_id)
            dropped = [self._clients.pop(client_id) for client_id in failed]

        for conn in dropped:
            _close_quietly(conn)
        return delivered

    def stop(self) -> None:
        """Close every client, stop accepting and remove the socket path."""
        self._running.clear()

        if self._server_socket is not None:
            self._server_socket.close()
            self._server_socket = None
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=ACCEPT_POLL_SECONDS * 2)
            self._accept_thread = None

        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for conn in clients:
            _close_quietly(conn)

        self._remove_socket_file()
        print("[IPC] Server stopped")


class ReconnectBackoff:
    """Exponential delays: 0.1, 0.2, 0.4 ... capped, for a bounded number of attempts."""

    def __init__(self, initial: float = 0.1, maximum: float = 5.0, max_attempts: int = 10):
        self.initial = initial
        self.maximum = maximum
        self.max_attempts = max_attempts
        self.attempts = 0

    def next_delay(self) -> Optional[float]:
        """Delay before the next attempt, or None once attempts are used up."""
        if self.attempts >= self.max_attempts:
            return None
        delay = min(self.initial * (2 ** self.attempts), self.maximum)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


class StatusClient:
    """
    Follows daemon status, reconnecting with backoff.

    Callbacks (all optional, invoked from the client thread):
        on_message(msg)                 every decoded message
        on_status_change(status)        when the status differs from the last one
        on_connection_change(state)     "connecting" | "connected" | "disconnected"
        on_daemon_not_running()         connect refused or socket missing
        on_unavailable()                gave up reconnecting
    """

    def __init__(
        self,
        socket_path: Path,
        backoff: Optional[ReconnectBackoff] = None,
        connect_timeout: float = PROBE_TIMEOUT_SECONDS,
    ):
        self.socket_path = Path(socket_path)
        self.backoff = backoff or ReconnectBackoff()
        self.connect_timeout = connect_timeout

        self.on_message: Optional[Callable[[IPCMessage], None]] = None
        self.on_status_change: Optional[Callable[[DaemonStatus], None]] = None
        self.on_connection_change: Optional[Callable[[str], None]] = None
        self.on_daemon_not_running: Optional[Callable[[], None]] = None
        self.on_unavailable: Optional[Callable[[], None]] = None

        self.status: Optional[DaemonStatus] = None
        self.connection_state = "disconnected"

        self._stopping = threading.Event()
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stopping.set()
        sock = self._sock
        if sock is not None:
            _close_quietly(sock)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the client thread ends. True if it did."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._set_connection("connecting")
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(self.connect_timeout)
            try:
                sock.connect(str(self.socket_path))
            except (ConnectionRefusedError, FileNotFoundError):
                sock.close()
                self._call(self.on_daemon_not_running)
            except OSError as e:
                sock.close()
                print(f"[IPC] Connection error: {e}")
            else:
                sock.settimeout(None)
                self.backoff.reset()
                self._set_connection("connected")
                self._read(sock)

            self._set_connection("disconnected")
            if self._stopping.is_set():
                break

            delay = self.backoff.next_delay()
            if delay is None:
                print(f"[IPC] Daemon unavailable after {self.backoff.max_attempts} attempts")
                self._call(self.on_unavailable)
                break
            self._stopping.wait(delay)

    def _read(self, sock: socket.socket) -> None:
        self._sock = sock
        buffer = b""
        try:
            while not self._stopping.is_set():
                data = sock.recv(RECV_SIZE)
                if not data:
                    break
                buffer += data
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if line.strip():
                        self._handle_line(line)
        except OSError as e:
            if not self._stopping.is_set():
                print(f"[IPC] Connection lost: {e}")
        finally:
            self._sock = None
            _close_quietly(sock)

    def _handle_line(self, line: bytes) -> None:
        try:
            message = decode_message(line)
        except ProtocolError as e:
            print(f"[IPC] Ignoring bad message: {e}")
            return

        previous = self.status
        self.status = message.status
        self._call(self.on_message, message)
        if message.status != previous:
            self._call(self.on_status_change, message.status)

    def _set_connection(self, state: str) -> None:
        if state == self.connection_state:
            return
        self.connection_state = state
        self._call(self.on_connection_change, state)

    def _call(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            print(f"[IPC] Client callback error: {e}")
