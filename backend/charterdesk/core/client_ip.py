"""Client IP detection for requests behind reverse proxies.

X-Forwarded-For is client-controlled. It is only honored when the direct
peer is listed in TRUSTED_PROXY_IPS; the per-IP rate limits on the action
link endpoints depend on this.

Usage:
    from charterdesk.core.client_ip import get_client_ip

    client_ip = get_client_ip(request)
"""

import ipaddress
import logging
from functools import lru_cache

from fastapi import Request

from charterdesk.core.config import settings

logger = logging.getLogger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@lru_cache(maxsize=1)
def _get_trusted_proxy_networks() -> tuple[IPNetwork, ...]:
    """Parse and cache TRUSTED_PROXY_IPS (comma-separated IPs or CIDRs)."""
    networks = []

    for entry in (settings.TRUSTED_PROXY_IPS or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            # A bare address becomes a /32 or /128 network
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError as e:
            logger.warning("Invalid trusted proxy IP/network '%s': %s", entry, e)

    return tuple(networks)


def _is_trusted_proxy(ip_str: str) -> bool:
    try:
        ip_addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip_addr in network for network in _get_trusted_proxy_networks())


def _is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str:
    """
    Get the real client IP address from a request.

    Algorithm:
    1. Take the direct peer address (request.client.host)
    2. If the peer is not a trusted proxy, that is the client
    3. Otherwise walk X-Forwarded-For right to left and return the first
       address that is not itself a trusted proxy
    4. Fall back to X-Real-IP, then to the peer address

    Returns:
        Client IP address string, or "unknown" if it cannot be determined
    """
    direct_ip = request.client.host if request.client else None

    if not direct_ip:
        return "unknown"

    if not _is_trusted_proxy(direct_ip):
        return direct_ip

    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        hops = [hop.strip() for hop in x_forwarded_for.split(",") if hop.strip()]

        for hop in reversed(hops):
            if not _is_valid_ip(hop):
                logger.warning("Invalid IP in X-Forwarded-For: %s", hop)
                continue
            if not _is_trusted_proxy(hop):
                return hop

        # Every hop is a trusted proxy; the leftmost is the origin
        if hops and _is_valid_ip(hops[0]):
            return hops[0]

    x_real_ip = (request.headers.get("X-Real-IP") or "").strip()
    if x_real_ip:
        if _is_valid_ip(x_real_ip):
            return x_real_ip
        logger.warning("Invalid X-Real-IP header: %s", x_real_ip)

    return direct_ip


def clear_trusted_proxy_cache() -> None:
    """Clear the cached trusted proxy networks (tests change the setting)."""
    _get_trusted_proxy_networks.cache_clear()
