"""Local port-forward tunnels into pods."""

import queue
import select
import socket
import threading
import time
from enum import Enum
from typing import List, Optional

from cnvrgctl.errors import TransportError
from cnvrgctl.errors_catalog import actionable_error
from cnvrgctl.models import ExecTarget


class TunnelState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


class Tunnel:
    """Forwards connections on an ephemeral local port to a port inside a pod.

    The accept loop runs on a background thread. It reports back through two
    signals only: ``ready`` (an event set once the first forward session is
    negotiated and the local port is bound) and ``errors`` (a one-slot queue
    receiving the exception that moved the tunnel to ``failed``).

    States move ``starting -> ready | failed`` and ``ready -> closed``. The
    owner must call ``close()`` exactly once in its own flow; further calls,
    and calls after a failure, are no-ops.
    """

    LOCAL_HOST = "127.0.0.1"
    ACCEPT_POLL_SECONDS = 0.2
    RELAY_POLL_SECONDS = 0.2
    BUFFER_SIZE = 64 * 1024
    JOIN_TIMEOUT_SECONDS = 5.0

    def __init__(self, cluster, target: ExecTarget, remote_port: int, logger):
        self.cluster = cluster
        self.target = target
        self.remote_port = remote_port
        self.logger = logger

        self.local_port: Optional[int] = None
        self.state = TunnelState.STARTING
        self.error: Optional[BaseException] = None
        self.ready = threading.Event()
        self.errors: "queue.Queue[BaseException]" = queue.Queue(maxsize=1)

        self._stop = threading.Event()
        self._closed = False
        self._lock = threading.Lock()
        self._listener: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._relays: List[threading.Thread] = []

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def open(self) -> "Tunnel":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(
            target=self._serve,
            name=f"tunnel-{self.target.pod_name}-{self.remote_port}",
            daemon=True,
        )
        self._thread.start()
        return self

    def wait_until_ready(self, timeout: float) -> int:
        """Blocks until the tunnel is ready and returns the local port.

        Raises ``TransportError`` if the background task failed or the tunnel
        did not become ready within ``timeout`` seconds.
        """
        deadline = time.monotonic() + timeout
        while True:
            if self.error is None:
                try:
                    self.error = self.errors.get(timeout=0.05)
                except queue.Empty:
                    pass

            if self.error is not None:
                raise TransportError(
                    f"Port-forward to {self.target}:{self.remote_port} failed: {self.error}"
                ) from self.error

            if self.ready.is_set():
                return self.local_port

            if self.state == TunnelState.CLOSED:
                raise TransportError(f"Port-forward to {self.target}:{self.remote_port} was closed.")

            if time.monotonic() >= deadline:
                raise TransportError(
                    actionable_error(
                        "tunnel_not_ready",
                        pod=self.target,
                        port=self.remote_port,
                        timeout=timeout,
                    )
                )

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self.state != TunnelState.FAILED:
                self.state = TunnelState.CLOSED
            self._stop.set()
            listener, self._listener = self._listener, None

        if listener is not None:
            try:
                listener.close()
            except OSError:
                pass

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(self.JOIN_TIMEOUT_SECONDS)
        for relay in list(self._relays):
            relay.join(self.JOIN_TIMEOUT_SECONDS)

        self.logger.debug("Tunnel to %s:%s closed (%s).", self.target, self.remote_port, self.state.value)

    def _fail(self, exc: BaseException):
        with self._lock:
            if self.state == TunnelState.STARTING:
                self.state = TunnelState.FAILED
        try:
            self.errors.put_nowait(exc)
        except queue.Full:
            pass
        self.logger.debug("Tunnel to %s:%s failed: %s", self.target, self.remote_port, exc)

    def _serve(self):
        listener = None
        try:
            session = self.cluster.open_port_forward(self.target, self.remote_port)
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            listener.bind((self.LOCAL_HOST, 0))
            listener.listen()
            listener.settimeout(self.ACCEPT_POLL_SECONDS)
        except Exception as exc:
            if listener is not None:
                listener.close()
            self._fail(exc)
            return

        with self._lock:
            if self.state != TunnelState.STARTING:
                listener.close()
                return
            self._listener = listener
            self.local_port = listener.getsockname()[1]
            self.state = TunnelState.READY
        self.ready.set()
        self.logger.info(
            "Forwarding %s:%s -> %s:%s", self.LOCAL_HOST, self.local_port, self.target, self.remote_port
        )

        while not self._stop.is_set():
            try:
                connection, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break

            try:
                if session is None:
                    session = self.cluster.open_port_forward(self.target, self.remote_port)
                remote = session.socket(self.remote_port)
            except Exception as exc:
                self.logger.warning("Could not forward connection to %s: %s", self.target, exc)
                connection.close()
                session = None
                continue

            relay = threading.Thread(
                target=self._relay,
                args=(connection, remote),
                name=f"tunnel-relay-{self.local_port}",
                daemon=True,
            )
            self._relays.append(relay)
            relay.start()
            session = None

    def _relay(self, local: socket.socket, remote):
        peers = {local: remote, remote: local}
        try:
            while not self._stop.is_set():
                readable, _, _ = select.select(list(peers), [], [], self.RELAY_POLL_SECONDS)
                for sock in readable:
                    data = sock.recv(self.BUFFER_SIZE)
                    if not data:
                        return
                    peers[sock].sendall(data)
        except OSError as exc:
            self.logger.debug("Tunnel relay ended: %s", exc)
        finally:
            for sock in (local, remote):
                try:
                    sock.close()
                except OSError:
                    pass
