# site_network.py
# -*- coding: utf-8 -*-
"""Discovers the host's LAN addresses for certificate SANs and the startup banner."""
import socket
import logging
import ipaddress
from typing import List

try:
    import netifaces
except ImportError:
    netifaces = None  # optional; falls back to the routed address

_logger = logging.getLogger("site_anywhere.network")


def _usable(addr: str) -> bool:
    try:
        ip = ipaddress.ip_address(addr.split("%", 1)[0])
    except ValueError:
        return False
    return not (ip.is_loopback or ip.is_link_local or ip.is_unspecified or ip.is_multicast)


def _sort_key(addr: str):
    # 192.x LAN addresses first, then IPv4 before IPv6
    return (not addr.startswith("192."), ":" in addr, addr)


def _netifaces_addresses() -> List[str]:
    found = []
    for interface in netifaces.interfaces():
        addresses = netifaces.ifaddresses(interface)
        for family in (netifaces.AF_INET, netifaces.AF_INET6):
            for addr_info in addresses.get(family, []):
                ip = addr_info.get("addr", "")
                if _usable(ip):
                    found.append(ip)
    return found


def get_routed_ip() -> str:
    """The address used for outbound traffic, found without sending anything."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("8.8.8.8", 80))
        return s.getsockname()[0]
    finally:
        s.close()


def all_ip_addresses() -> List[str]:
    """Non-loopback IPv4/IPv6 addresses of this host, or ["127.0.0.1"] if none are found."""
    found: List[str] = []
    if netifaces is not None:
        try:
            found = _netifaces_addresses()
        except (OSError, ValueError) as e:
            _logger.warning(f"Error using netifaces: {e}")

    if not found:
        try:
            ip = get_routed_ip()
            if _usable(ip):
                found = [ip]
        except OSError as e:
            _logger.warning(f"Error getting IP: {e}")

    unique = sorted(set(found), key=_sort_key)
    return unique or ["127.0.0.1"]
