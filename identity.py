from typing import Mapping, Optional, Tuple

from errors import IdentityUnresolvable
from validation import is_public_ip, is_valid_ip, strip_port


# =========================
# Client IP sources, highest trust first
# =========================

IP_HEADERS: Tuple[str, ...] = (
    "cf-connecting-ip",         # Cloudflare
    "client-ip",                # proxy
    "x-forwarded-for",          # load balancer / proxy
    "x-forwarded",              # proxy
    "x-cluster-client-ip",      # cluster
    "forwarded-for",            # proxy
    "forwarded",                # proxy
)


def _candidates(value: str):
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        # RFC 7239 style: for=1.2.3.4;proto=https
        if "=" in part:
            for pair in part.split(";"):
                name, _, raw = pair.strip().partition("=")
                if name.strip().lower() == "for":
                    yield strip_port(raw.strip().strip('"'))
            continue
        yield strip_port(part)


def resolve_client_ip(
    headers: Mapping[str, str],
    peer_address: Optional[str],
) -> Optional[str]:
    """
    Return the first acceptable client IP, or None.

    Forwarded headers only yield public addresses because clients can
    set them; the raw peer address may be private (dev, internal LB).
    """
    lowered = {k.lower(): v for k, v in headers.items()}

    for header in IP_HEADERS:
        value = lowered.get(header)
        if not value:
            continue
        for candidate in _candidates(value):
            if is_public_ip(candidate):
                return candidate

    if peer_address:
        for candidate in _candidates(peer_address):
            if is_valid_ip(candidate):
                return candidate

    return None


def require_client_ip(
    headers: Mapping[str, str],
    peer_address: Optional[str],
) -> str:
    ip = resolve_client_ip(headers, peer_address)
    if ip is None:
        raise IdentityUnresolvable("No request header yields a usable client IP")
    return ip
