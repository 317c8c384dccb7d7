import socket
import time
import logging
from typing import Dict, List, Optional, Tuple

from lanbeacon.config import DEFAULT_DISCOVERY_PORT
from lanbeacon.errors import BindError, DecodeError, DiscoveryTimeout, SendError
from lanbeacon.services import codec
from lanbeacon.services.keys import validate_key
from lanbeacon.services.network import LIMITED_BROADCAST

logger = logging.getLogger("discovery.client")


class DiscoveryClient:
    """
    Finds a server announcing itself with the expected shared key.

    ``listen`` waits passively for broadcast announcements on the discovery
    port. ``request`` broadcasts a DiscoveryRequest from an ephemeral port and
    waits for a unicast reply there. Datagrams that fail to decode, carry a
    different key or (when ``service`` is set) a different service name are
    ignored; only the timeout ends an unsuccessful wait.
    """

    def __init__(self, expected_key: str, port: int = DEFAULT_DISCOVERY_PORT,
                 broadcast_address: str = LIMITED_BROADCAST, bind_address: str = "0.0.0.0",
                 service: Optional[str] = None):
        self.expected_key = expected_key
        self.port = port
        self.broadcast_address = broadcast_address
        self.bind_address = bind_address
        self.service = service

    def _open(self, port: int) -> socket.socket:
        address = (self.bind_address, port)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind(address)
        except OSError as e:
            sock.close()
            raise BindError(address, e)
        return sock

    def _accept(self, data: bytes, addr) -> Optional[codec.Announcement]:
        try:
            message = codec.decode_message(data)
        except DecodeError as e:
            logger.debug(f"Ignoring undecodable datagram from {addr[0]}:{addr[1]}: {e}")
            return None

        if not isinstance(message, codec.Announcement):
            return None
        if not validate_key(message.key, self.expected_key):
            logger.debug(f"Ignoring announcement from {addr[0]}:{addr[1]} with a different key")
            return None
        if self.service is not None and message.service != self.service:
            logger.debug(f"Ignoring announcement for service {message.service!r}")
            return None
        return message

    def _wait(self, sock: socket.socket, timeout: float, collect: bool = False) -> List[codec.Announcement]:
        deadline = time.monotonic() + timeout
        found: Dict[Tuple[str, int], codec.Announcement] = {}

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            sock.settimeout(remaining)
            try:
                data, addr = sock.recvfrom(codec.RECV_BUFFER_SIZE)
            except socket.timeout:
                break
            except (ConnectionResetError, ConnectionRefusedError):
                continue

            announcement = self._accept(data, addr)
            if announcement is None:
                continue

            if not collect:
                return [announcement]
            if announcement.address in found:
                logger.debug(f"Duplicate response from {announcement.ip}:{announcement.port}")
                continue
            found[announcement.address] = announcement
            logger.info(f"Server discovered: {announcement.service} at {announcement.ip}:{announcement.port}")

        return list(found.values())

    def _send_request(self, sock: socket.socket):
        target = (self.broadcast_address, self.port)
        try:
            sock.sendto(codec.encode_request(), target)
        except OSError as e:
            raise SendError(f"Failed to send discovery request to {target[0]}:{target[1]}: {e}")
        logger.debug(f"Sent discovery request to {target[0]}:{target[1]}")

    def listen(self, timeout: Optional[float] = None) -> Tuple[str, int]:
        """Wait for a matching broadcast announcement. ``None`` waits forever."""
        sock = self._open(self.port)
        try:
            if timeout is None:
                while True:
                    found = self._wait(sock, 3600.0)
                    if found:
                        return found[0].address
            found = self._wait(sock, timeout)
        finally:
            sock.close()
        if not found:
            raise DiscoveryTimeout(timeout)
        return found[0].address

    def request(self, timeout: float = 5.0) -> Tuple[str, int]:
        """Broadcast a discovery request and wait for a matching reply."""
        sock = self._open(0)
        try:
            self._send_request(sock)
            found = self._wait(sock, timeout)
        finally:
            sock.close()
        if not found:
            raise DiscoveryTimeout(timeout)
        return found[0].address

    def discover(self, timeout: Optional[float] = 5.0, active: bool = False) -> Tuple[str, int]:
        if active:
            return self.request(5.0 if timeout is None else timeout)
        return self.listen(timeout)

    def discover_all(self, timeout: float = 5.0, active: bool = True) -> List[codec.Announcement]:
        """Every distinct matching server seen within ``timeout``, possibly none."""
        sock = self._open(0 if active else self.port)
        try:
            if active:
                self._send_request(sock)
            return self._wait(sock, timeout, collect=True)
        finally:
            sock.close()


def discover(expected_key: str, timeout: Optional[float] = 5.0, port: int = DEFAULT_DISCOVERY_PORT,
             active: bool = False, broadcast_address: str = LIMITED_BROADCAST) -> Tuple[str, int]:
    client = DiscoveryClient(expected_key, port=port, broadcast_address=broadcast_address)
    return client.discover(timeout=timeout, active=active)
