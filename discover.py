"""
Find a LAN Beacon server on the local network.

    python discover.py --key SECRETKEY123            # wait for a broadcast
    python discover.py --key SECRETKEY123 --active   # ask servers to reply
    python discover.py --key SECRETKEY123 --all      # list every server that answers
"""
import argparse
import logging
import os
import sys

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from lanbeacon.config import DEFAULT_DISCOVERY_PORT, DEMO_SHARED_KEY
from lanbeacon.errors import DiscoveryTimeout, LanBeaconError
from lanbeacon.services.client import DiscoveryClient
from lanbeacon.services.network import LIMITED_BROADCAST


def main(argv=None):
    parser = argparse.ArgumentParser(description="Discover LAN Beacon servers over UDP broadcast")
    parser.add_argument("--key", default=os.environ.get("DISCOVERY_SHARED_KEY", DEMO_SHARED_KEY))
    parser.add_argument("--port", type=int, default=DEFAULT_DISCOVERY_PORT)
    parser.add_argument("--timeout", type=float, default=5.0)
    parser.add_argument("--broadcast", default=LIMITED_BROADCAST)
    parser.add_argument("--service", default=None, help="only accept this service name")
    parser.add_argument("--active", action="store_true", help="send a discovery request instead of waiting")
    parser.add_argument("--all", action="store_true", help="collect every server that answers")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=logging.DEBUG if args.verbose else logging.WARNING,
    )

    client = DiscoveryClient(args.key, port=args.port, broadcast_address=args.broadcast, service=args.service)

    try:
        if args.all:
            servers = client.discover_all(timeout=args.timeout, active=True)
            if not servers:
                print("No servers found. Make sure the key matches and UDP port "
                      f"{args.port} is not blocked.")
                return 1
            by_service = {}
            for s in servers:
                by_service.setdefault(s.service, []).append(s)
            for name, group in sorted(by_service.items()):
                print(f"{name} ({len(group)} server{'' if len(group) == 1 else 's'})")
                for i, s in enumerate(group, 1):
                    print(f"   {i}. http://{s.ip}:{s.port}")
            return 0

        print("Sending discovery request..." if args.active else f"Listening for broadcasts on port {args.port}...")
        ip, port = client.discover(timeout=args.timeout, active=args.active)
    except DiscoveryTimeout:
        print(f"No server found within {args.timeout}s.")
        return 1
    except LanBeaconError as e:
        print(f"Discovery failed: {e}")
        return 1

    print(f"Found server: http://{ip}:{port}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
