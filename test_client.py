"""
Tests for the discovery client, passive and active, against real sockets on
the loopback interface.
"""
import os
import sys
import time
import socket
import threading

import pytest

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from lanbeacon.config import OnRequest, Periodic, SessionConfig
from lanbeacon.errors import BindError, DiscoveryTimeout
from lanbeacon.services import client as discovery_client
from lanbeacon.services.client import DiscoveryClient
from lanbeacon.services.discovery import BroadcastScheduler


def free_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def send_later(port, payloads, delay=0.2):
    """Send raw payloads to the loopback port after ``delay`` seconds."""
    def run():
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            for p in payloads:
                s.sendto(p, ("127.0.0.1", port))
                time.sleep(0.02)
        finally:
            s.close()
    t = threading.Timer(delay, run)
    t.start()
    return t


def server_config(port, mode, key="SECRETKEY123"):
    return SessionConfig(
        shared_key=key,
        service_name="x",
        mode=mode,
        port=port,
        advertise_port=3000,
        advertise_ip="127.0.0.1",
        broadcast_address="127.0.0.1",
    )


def test_listen_accepts_matching_announcement():
    print("Testing passive discovery...")
    port = free_port()
    t = send_later(port, [b'{"service":"x","ip":"10.0.0.5","port":3000,"key":"SECRETKEY123"}'])
    try:
        result = DiscoveryClient("SECRETKEY123", port=port).listen(timeout=3.0)
    finally:
        t.join()
    assert result == ("10.0.0.5", 3000)
    print(f"   ✅ Discovered {result}")


def test_listen_ignores_noise_before_match():
    port = free_port()
    t = send_later(port, [
        b"\xff\xfe garbage",
        b'{"service":"x","ip":"10.0.0.5"}',
        b'{"service":"x","ip":"10.0.0.6","port":4000,"key":"WRONG"}',
        b"DISCOVER",
        b'{"service":"x","ip":"10.0.0.7","port":5000,"key":"SECRETKEY123"}',
    ])
    try:
        result = DiscoveryClient("SECRETKEY123", port=port).listen(timeout=3.0)
    finally:
        t.join()
    assert result == ("10.0.0.7", 5000)


def test_listen_survives_unencodable_key():
    print("Testing announcement with a lone surrogate key...")
    port = free_port()
    t = send_later(port, [
        b'{"service":"x","ip":"10.0.0.5","port":3000,"key":"\\ud800"}',
        b'{"service":"x","ip":"10.0.0.6","port":3000,"key":"K"}',
    ])
    try:
        result = DiscoveryClient("K", port=port).listen(timeout=2.0)
    finally:
        t.join()
    assert result == ("10.0.0.6", 3000)
    print("   ✅ Bad key ignored, valid server found")


def test_key_mismatch_times_out():
    print("Testing key mismatch...")
    port = free_port()
    scheduler = BroadcastScheduler(server_config(port, Periodic(interval=0.1), key="B"))
    scheduler.start()
    try:
        with pytest.raises(DiscoveryTimeout):
            DiscoveryClient("A", port=port).listen(timeout=0.8)
        assert scheduler.broadcasts_sent > 0
    finally:
        scheduler.stop()
    print("   ✅ Wrong key looks the same as no server")


def test_listen_finds_periodic_server():
    port = free_port()
    scheduler = BroadcastScheduler(server_config(port, Periodic(interval=0.1)))
    scheduler.start()
    try:
        assert DiscoveryClient("SECRETKEY123", port=port).listen(timeout=3.0) == ("127.0.0.1", 3000)
    finally:
        scheduler.stop()


def test_active_request_to_on_request_server():
    print("Testing active discovery...")
    port = free_port()
    scheduler = BroadcastScheduler(server_config(port, OnRequest()))
    scheduler.start()
    try:
        client = DiscoveryClient("SECRETKEY123", port=port, broadcast_address="127.0.0.1")
        assert client.request(timeout=5.0) == ("127.0.0.1", 3000)
        assert client.discover(timeout=5.0, active=True) == ("127.0.0.1", 3000)
    finally:
        scheduler.stop()
    assert scheduler.replies_sent == 2
    print("   ✅ Server answered both requests")


def test_active_request_without_server_times_out():
    port = free_port()
    client = DiscoveryClient("SECRETKEY123", port=port, broadcast_address="127.0.0.1")
    start = time.monotonic()
    with pytest.raises(DiscoveryTimeout) as info:
        client.request(timeout=0.5)
    assert info.value.timeout == 0.5
    assert time.monotonic() - start < 3.0


def test_active_request_with_wrong_key_times_out():
    port = free_port()
    scheduler = BroadcastScheduler(server_config(port, OnRequest(), key="B"))
    scheduler.start()
    try:
        with pytest.raises(DiscoveryTimeout):
            DiscoveryClient("A", port=port, broadcast_address="127.0.0.1").request(timeout=0.5)
        assert scheduler.replies_sent == 1
    finally:
        scheduler.stop()


def test_module_level_discover():
    port = free_port()
    scheduler = BroadcastScheduler(server_config(port, OnRequest()))
    scheduler.start()
    try:
        result = discovery_client.discover("SECRETKEY123", timeout=5.0, port=port, active=True,
                                           broadcast_address="127.0.0.1")
    finally:
        scheduler.stop()
    assert result == ("127.0.0.1", 3000)


def test_discover_all_deduplicates():
    port = free_port()
    t = send_later(port, [
        b'{"service":"rustlm-production","ip":"10.0.0.5","port":3000,"key":"K"}',
        b'{"service":"rustlm-production","ip":"10.0.0.5","port":3000,"key":"K"}',
        b'{"service":"rustlm-staging","ip":"10.0.0.6","port":3000,"key":"K"}',
        b'{"service":"rustlm-staging","ip":"10.0.0.9","port":3000,"key":"other"}',
    ])
    try:
        servers = DiscoveryClient("K", port=port).discover_all(timeout=1.0, active=False)
    finally:
        t.join()
    assert sorted(s.address for s in servers) == [("10.0.0.5", 3000), ("10.0.0.6", 3000)]


def test_discover_all_empty_is_not_an_error():
    port = free_port()
    client = DiscoveryClient("K", port=port, broadcast_address="127.0.0.1")
    assert client.discover_all(timeout=0.3) == []


def test_service_filter():
    port = free_port()
    t = send_later(port, [
        b'{"service":"rustlm-staging","ip":"10.0.0.6","port":3000,"key":"K"}',
        b'{"service":"rustlm-production","ip":"10.0.0.5","port":3001,"key":"K"}',
    ])
    try:
        result = DiscoveryClient("K", port=port, service="rustlm-production").listen(timeout=3.0)
    finally:
        t.join()
    assert result == ("10.0.0.5", 3001)


def test_listen_bind_failure():
    port = free_port()
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("0.0.0.0", port))
    try:
        with pytest.raises(BindError):
            DiscoveryClient("K", port=port).listen(timeout=0.1)
    finally:
        blocker.close()


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
