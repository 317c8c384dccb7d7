import ipaddress
import logging
import socket
from typing import List, NamedTuple, Optional

import psutil

from lanbeacon.errors import NoInterfaceError, ResolutionError

logger = logging.getLogger("network")

LIMITED_BROADCAST = "255.255.255.255"

# Interfaces that never lead to other hosts on the LAN
SKIPPED_PREFIXES = ("lo", "docker")


class InterfaceAddress(NamedTuple):
    name: str
    ip: str
    netmask: Optional[str]
    broadcast: Optional[str]

    @property
    def broadcast_target(self) -> str:
        return broadcast_address_for(self.ip, self.netmask)


def _usable(ip: str) -> bool:
    try:
        addr = ipaddress.IPv4Address(ip)
    except ValueError:
        return False
    return not (addr.is_loopback or addr.is_multicast or addr.is_link_local or addr.is_unspecified)


def list_ipv4_interfaces() -> List[InterfaceAddress]:
    """All IPv4 addresses on interfaces that are up, in the order the OS reports them."""
    try:
        stats = psutil.net_if_stats()
    except OSError as e:
        logger.warning(f"Could not read interface stats: {e}")
        stats = {}

    found = []
    for name, addrs in psutil.net_if_addrs().items():
        st = stats.get(name)
        if st is not None and not st.isup:
            continue
        for a in addrs:
            if a.family != socket.AF_INET:
                continue
            found.append(InterfaceAddress(name, a.address, a.netmask, a.broadcast))
    return found


def resolve_local_interface() -> InterfaceAddress:
    """First non-loopback IPv4 interface address.

    Multi-homed hosts may get an interface other than the one clients can
    reach; the first match is used regardless.
    """
    for itf in list_ipv4_interfaces():
        if itf.name.startswith(SKIPPED_PREFIXES):
            continue
        if _usable(itf.ip):
            logger.debug(f"Using interface {itf.name} ({itf.ip}/{itf.netmask})")
            return itf
    raise NoInterfaceError("No non-loopback IPv4 interface is up")


def resolve_local_ipv4() -> str:
    return resolve_local_interface().ip


def broadcast_address_for(local_ip: str, subnet_mask: Optional[str]) -> str:
    """Directed broadcast address of the subnet ``local_ip`` lives on.

    Falls back to the limited broadcast when the mask is unknown or the
    subnet has no broadcast address of its own (/31 and /32).
    """
    if not subnet_mask:
        return LIMITED_BROADCAST
    try:
        network = ipaddress.IPv4Network(f"{local_ip}/{subnet_mask}", strict=False)
    except ValueError as e:
        raise ResolutionError(f"Invalid address or mask {local_ip}/{subnet_mask}: {e}")
    if network.prefixlen >= 31:
        return LIMITED_BROADCAST
    return str(network.broadcast_address)
