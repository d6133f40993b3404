"""
Source IP allowlisting for the Stripe webhook, checked before signatures.

Runs before the body is read, so an untrusted origin costs nothing beyond a
header lookup. Only enforced in production; every other environment passes.
"""
import ipaddress
import logging
from functools import lru_cache
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def get_client_ip(request) -> Optional[str]:
    """
    Resolve the originating client IP.
    Behind the reverse proxy the socket peer is the proxy, so X-Real-IP and the
    first X-Forwarded-For hop take precedence.
    """
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    if request.client and request.client.host:
        return request.client.host
    return None


@lru_cache(maxsize=16)
def _parse_networks(ranges: tuple[str, ...]) -> tuple:
    networks = []
    for cidr in ranges:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.error("Ignoring invalid CIDR in Stripe IP allowlist: %s", cidr)
    return tuple(networks)


def ip_in_ranges(ip: str, ranges: Iterable[str]) -> bool:
    """Return True if ip falls inside any of the CIDR ranges."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr in network for network in _parse_networks(tuple(ranges)))


def is_trusted_source(client_ip: Optional[str], settings) -> bool:
    """
    Check a request origin against the configured Stripe ranges.
    Bypassed outside production. In production an unknown origin is denied.
    """
    if not settings.is_production:
        return True

    if not client_ip:
        logger.warning("Could not determine client IP for Stripe webhook")
        return False

    return ip_in_ranges(client_ip, settings.stripe_ip_range_list)
