import ipaddress
import re
from typing import Iterable, List, Optional

from pydantic import EmailStr, TypeAdapter, ValidationError


# =========================
# Limits
# =========================

MAX_USER_AGENT_LENGTH = 500
UNKNOWN_USER_AGENT = "unknown"

_PORT_SUFFIX = re.compile(r":\d+$")
_LIST_SEPARATORS = re.compile(r"[\s,;]+")

_email_adapter = TypeAdapter(EmailStr)


# =========================
# IP helpers
# =========================

def parse_ip(value: Optional[str]):
    """
    Return an ip_address object, or None when the value is not an IP literal.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


def is_valid_ip(value: Optional[str]) -> bool:
    return parse_ip(value) is not None


def is_public_ip(value: Optional[str]) -> bool:
    """
    Valid and outside private / reserved / loopback / link-local ranges.
    """
    ip = parse_ip(value)
    if ip is None:
        return False
    return ip.is_global and not ip.is_multicast


def strip_port(candidate: str) -> str:
    """
    Drop a trailing ":<port>" suffix.

    Bare IPv6 literals end in hex groups and are left alone; bracketed
    forms like "[2001:db8::1]:443" lose both the port and the brackets.
    """
    candidate = candidate.strip()
    if candidate.startswith("["):
        end = candidate.find("]")
        return candidate[1:end] if end != -1 else candidate
    if candidate.count(":") == 1:
        return _PORT_SUFFIX.sub("", candidate)
    return candidate


# =========================
# Event field coercion
# =========================

def sanitize_user_agent(user_agent: Optional[str]) -> str:
    if not isinstance(user_agent, str):
        return UNKNOWN_USER_AGENT
    user_agent = "".join(ch for ch in user_agent if ch.isprintable()).strip()
    if not user_agent:
        return UNKNOWN_USER_AGENT
    return user_agent[:MAX_USER_AGENT_LENGTH]


def coerce_count(value) -> int:
    try:
        count = abs(int(value))
    except (TypeError, ValueError):
        return 1
    return max(1, count)


# =========================
# List helpers
# =========================

def split_list(raw: Optional[str]) -> List[str]:
    """
    Split a comma / semicolon / whitespace separated setting.
    """
    if not raw:
        return []
    return [item for item in _LIST_SEPARATORS.split(raw) if item]


def split_lines(raw: Optional[str]) -> List[str]:
    """
    Split a newline or comma separated setting, keeping inner spaces
    (bot names such as "Yahoo! Slurp" contain them).
    """
    if not raw:
        return []
    parts = re.split(r"[\n,]+", raw)
    return [part.strip() for part in parts if part.strip()]


def is_valid_email(value: str) -> bool:
    try:
        _email_adapter.validate_python(value)
    except ValidationError:
        return False
    return True


def valid_emails(addresses: Iterable[str]) -> List[str]:
    return [a.strip() for a in addresses if a and is_valid_email(a.strip())]
