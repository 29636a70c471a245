"""Background reader that turns a datagram socket into a queue of messages."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import Optional

BUFFER_SIZE = 1500
READ_TIMEOUT = 2.0
QUEUE_SIZE = 50


@dataclass
class ReceivedMessage:
    """One datagram read from a socket, or the error raised while reading."""

    n: Optional[int] = None
    peer: Optional[str] = None
    msg: bytes = b""
    err: Optional[BaseException] = None


def _peer_host(peer) -> str:
    if isinstance(peer, tuple) and peer:
        return str(peer[0]).split("%", 1)[0]
    return str(peer)


def _strip_ipv4_header(data: bytes) -> bytes:
    if len(data) < 20:
        return data
    length = (data[0] & 0x0F) << 2
    if length < 20 or length > len(data):
        return data
    if data[0] >> 4 != 4:
        return data
    return data[length:]


class PacketListener:
    """Reads datagrams from ``conn`` on a daemon thread and queues them.

    With ``strip_ipv4_header`` set, a leading IPv4 header is removed from every
    datagram, as raw IPv4 sockets deliver it along with the payload.
    """

    def __init__(
        self,
        conn,
        *,
        strip_ipv4_header: bool = False,
        read_timeout: float = READ_TIMEOUT,
        queue_size: int = QUEUE_SIZE,
    ) -> None:
        self.conn = conn
        self.messages: queue.Queue[ReceivedMessage] = queue.Queue(maxsize=queue_size)
        self.strip_ipv4_header = strip_ipv4_header
        self.read_timeout = read_timeout
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        """Whether the reader thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start reading in the background; a second call does nothing."""
        if self._thread is not None:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="packet-listener", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop reading and wait for the reader thread to finish."""
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=self.read_timeout + 1.0)

    def get(self, timeout: Optional[float] = None) -> Optional[ReceivedMessage]:
        """Return the next queued message, or None when none arrives within ``timeout``."""
        try:
            return self.messages.get(timeout=timeout)
        except queue.Empty:
            return None

    def __enter__(self) -> "PacketListener":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def _run(self) -> None:
        while not self._stopped.is_set():
            try:
                self.conn.settimeout(self.read_timeout)
                data, peer = self.conn.recvfrom(BUFFER_SIZE)
            except OSError as exc:
                if self._stopped.is_set():
                    break
                item = ReceivedMessage(err=exc)
            else:
                if self.strip_ipv4_header:
                    data = _strip_ipv4_header(data)
                item = ReceivedMessage(n=len(data), peer=_peer_host(peer), msg=bytes(data))
            self._put(item)

    def _put(self, item: ReceivedMessage) -> None:
        while not self._stopped.is_set():
            try:
                self.messages.put(item, timeout=0.2)
                return
            except queue.Full:
                continue