"""Client identity for rate limiting.

X-Forwarded-For and X-Real-IP are only trusted when the direct peer is a
configured trusted proxy. A client talking to the service directly cannot
spoof its identity by sending those headers.
"""

import ipaddress
from typing import Iterable, Optional

from starlette.requests import Request

from intake.app.core.config import IPNetwork

UNKNOWN_CLIENT = "unknown"


def is_trusted_proxy(ip: str, trusted_proxies: Iterable[IPNetwork]) -> bool:
    """Check whether ip belongs to one of the trusted proxy networks."""
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(parsed in network for network in trusted_proxies)


def resolve_client_ip(
    peer_ip: Optional[str],
    forwarded_for: Optional[str],
    real_ip: Optional[str],
    trusted_proxies: Iterable[IPNetwork],
) -> str:
    """Pick the identity for a request.

    Args:
        peer_ip: Address of the direct TCP peer
        forwarded_for: Raw X-Forwarded-For header value
        real_ip: Raw X-Real-IP header value
        trusted_proxies: Networks whose forwarding headers are honoured

    Returns:
        The left-most forwarded address when the peer is a trusted proxy,
        otherwise the peer address itself
    """
    peer_ip = (peer_ip or "").strip()
    if peer_ip and is_trusted_proxy(peer_ip, trusted_proxies):
        if forwarded_for:
            first = forwarded_for.split(",", 1)[0].strip()
            if first:
                return first
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return peer_ip or UNKNOWN_CLIENT


def get_client_ip(request: Request, trusted_proxies: Iterable[IPNetwork]) -> str:
    peer_ip = request.client.host if request.client else None
    return resolve_client_ip(
        peer_ip,
        request.headers.get("X-Forwarded-For"),
        request.headers.get("X-Real-IP"),
        list(trusted_proxies),
    )
