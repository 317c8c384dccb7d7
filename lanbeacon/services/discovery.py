import socket
import time
import threading
import logging
from enum import Enum
from typing import Callable, Optional

from pydantic import ValidationError

from lanbeacon.config import Limited, Periodic, SessionConfig
from lanbeacon.errors import BindError, ConfigError, DecodeError, SendError
from lanbeacon.services import codec, network

logger = logging.getLogger("discovery")

# Upper bound on how long the loop goes without checking the stop event
POLL_INTERVAL = 0.25


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class BroadcastScheduler:
    """
    Announces this server on the local network.

    Periodic and Limited modes broadcast an announcement on a fixed cadence.
    OnRequest mode (or any mode with ``respond_to_requests``) listens on the
    discovery port and answers each DiscoveryRequest with a unicast reply.

    Address resolution and socket binding happen in ``start()`` so their
    failures reach the caller; the loop itself runs on a daemon thread and
    never raises.
    """

    def __init__(self, config: SessionConfig, stop_event: Optional[threading.Event] = None,
                 resolver: Callable[[], network.InterfaceAddress] = network.resolve_local_interface):
        self.config = config
        self.mode = config.mode
        self.state = SchedulerState.IDLE
        self.resolver = resolver
        self._stop = stop_event or threading.Event()
        self._thread = None
        self._send_sock = None
        self._recv_sock = None
        self._lock = threading.Lock()

        self.announcement = None
        self.payload = b""
        self.broadcast_target = None

        self.broadcasts_sent = 0
        self.replies_sent = 0
        self.send_failures = 0
        self.decode_failures = 0

    @property
    def is_running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    def start(self):
        with self._lock:
            if self.state == SchedulerState.RUNNING:
                logger.warning("Discovery scheduler already running")
                return
            if self.state == SchedulerState.STOPPED:
                raise RuntimeError("A stopped scheduler cannot be restarted; create a new one")

            self._prepare_announcement()
            self._open_sockets()

            self.state = SchedulerState.RUNNING
            self._thread = threading.Thread(target=self._run, name="discovery-scheduler", daemon=True)
            self._thread.start()

        logger.info(
            f"Discovery scheduler started ({self.mode.kind}) announcing "
            f"{self.announcement.ip}:{self.announcement.port} on UDP port {self.config.port}"
        )

    def stop(self, timeout: float = 2.0):
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        with self._lock:
            self._close_sockets()
            if self.state != SchedulerState.STOPPED:
                self.state = SchedulerState.STOPPED
                logger.info("Discovery scheduler stopped")

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop to finish. Returns True if it has."""
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "mode": self.mode.model_dump(),
            "service": self.config.service_name,
            "port": self.config.port,
            "advertised": (
                {"ip": self.announcement.ip, "port": self.announcement.port}
                if self.announcement else None
            ),
            "broadcast_target": self.broadcast_target,
            "broadcasts_sent": self.broadcasts_sent,
            "replies_sent": self.replies_sent,
            "send_failures": self.send_failures,
            "decode_failures": self.decode_failures,
        }

    # Setup

    def _prepare_announcement(self):
        cfg = self.config
        itf = None
        if cfg.advertise_ip:
            ip = cfg.advertise_ip
        else:
            # NoInterfaceError propagates: there is nothing useful to announce
            itf = self.resolver()
            ip = itf.ip

        if cfg.broadcast_address:
            self.broadcast_target = cfg.broadcast_address
        elif itf is not None:
            self.broadcast_target = itf.broadcast_target
        else:
            self.broadcast_target = network.LIMITED_BROADCAST

        try:
            self.announcement = codec.Announcement(
                service=cfg.service_name,
                ip=ip,
                port=cfg.advertise_port,
                key=cfg.shared_key,
                version=cfg.version,
                capabilities=cfg.capabilities,
            )
        except ValidationError as e:
            raise ConfigError(f"Cannot build announcement for {ip}:{cfg.advertise_port}: {e}")
        # Address is cached for the lifetime of the scheduler
        self.payload = codec.encode(self.announcement)

    def _open_sockets(self):
        cfg = self.config
        try:
            if cfg.broadcasts:
                address = (cfg.bind_address, 0)
                self._send_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                self._send_sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                self._send_sock.settimeout(1.0)
                self._send_sock.bind(address)

            if cfg.listens:
                address = (cfg.bind_address, cfg.port)
                self._recv_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                self._recv_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                self._recv_sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                self._recv_sock.bind(address)
                logger.info(f"Listening for discovery requests on {cfg.bind_address}:{cfg.port}")
        except OSError as e:
            self._close_sockets()
            raise BindError(address, e)

    def _close_sockets(self):
        for sock in (self._send_sock, self._recv_sock):
            if sock is not None:
                try:
                    sock.close()
                except OSError:
                    pass
        self._send_sock = None
        self._recv_sock = None

    # Loop

    def _run(self):
        broadcasting = self.config.broadcasts
        interval = getattr(self.mode, "interval", None)
        remaining = self.mode.count if isinstance(self.mode, Limited) else None
        next_tick = time.monotonic()

        try:
            while not self._stop.is_set():
                if broadcasting and time.monotonic() >= next_tick:
                    self._broadcast()
                    if remaining is not None:
                        remaining -= 1
                        if remaining == 0:
                            logger.info(f"Finished announcing after {self.mode.count} broadcasts")
                            broadcasting = False
                            if self._recv_sock is None:
                                break
                    next_tick += interval
                    now = time.monotonic()
                    if next_tick <= now:
                        # Missed ticks are skipped, never sent back to back
                        next_tick = now + interval

                if broadcasting:
                    wait = max(0.0, next_tick - time.monotonic())
                else:
                    wait = POLL_INTERVAL

                if self._recv_sock is not None:
                    self._receive(min(wait, POLL_INTERVAL))
                else:
                    self._stop.wait(min(wait, POLL_INTERVAL))
        except Exception:
            logger.exception("Discovery scheduler loop failed")
        finally:
            with self._lock:
                self._close_sockets()
                self.state = SchedulerState.STOPPED

    def _send(self, sock, data: bytes, addr):
        try:
            sock.sendto(data, addr)
        except OSError as e:
            raise SendError(f"Failed to send to {addr[0]}:{addr[1]}: {e}")

    def _broadcast(self):
        target = (self.broadcast_target, self.config.port)
        try:
            self._send(self._send_sock, self.payload, target)
        except SendError as e:
            self.send_failures += 1
            logger.warning(str(e))
            return
        self.broadcasts_sent += 1
        if isinstance(self.mode, Limited):
            logger.info(
                f"Announced server at {self.announcement.ip}:{self.announcement.port} "
                f"({self.broadcasts_sent}/{self.mode.count})"
            )
        else:
            logger.debug(f"Announced server at {self.announcement.ip}:{self.announcement.port}")

    def _receive(self, timeout: float):
        sock = self._recv_sock
        sock.settimeout(max(timeout, 0.001))
        try:
            data, addr = sock.recvfrom(codec.RECV_BUFFER_SIZE)
        except socket.timeout:
            return
        except (ConnectionResetError, ConnectionRefusedError):
            # ICMP errors from earlier replies surface here on some platforms
            return
        except OSError as e:
            if self._stop.is_set():
                return
            logger.warning(f"Error receiving discovery request: {e}")
            self._stop.wait(POLL_INTERVAL)
            return

        try:
            message = codec.decode_message(data)
        except DecodeError as e:
            self.decode_failures += 1
            logger.debug(f"Discarding datagram from {addr[0]}:{addr[1]}: {e}")
            return

        if not isinstance(message, codec.DiscoveryRequest):
            logger.debug(f"Ignoring announcement from {addr[0]}:{addr[1]}")
            return

        logger.info(f"Received discovery request from {addr[0]}:{addr[1]}")
        try:
            self._send(sock, self.payload, addr)
        except SendError as e:
            self.send_failures += 1
            logger.warning(str(e))
            return
        self.replies_sent += 1


def start_discovery_service(config: SessionConfig, stop_event: Optional[threading.Event] = None) -> BroadcastScheduler:
    """Create and start a scheduler for ``config``; returns the running handle."""
    scheduler = BroadcastScheduler(config, stop_event=stop_event)
    scheduler.start()
    return scheduler


def announce_server(config: SessionConfig, interval: float = 30.0,
                    stop_event: Optional[threading.Event] = None) -> BroadcastScheduler:
    """Broadcast ``config``'s announcement every ``interval`` seconds until stopped."""
    return start_discovery_service(config.model_copy(update={"mode": Periodic(interval=interval)}), stop_event)
