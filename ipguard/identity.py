from __future__ import annotations

from typing import Optional, Sequence, Union

from starlette.requests import HTTPConnection

UNKNOWN_CLIENT = "unknown"
USER_PREFIX = "user:"
IP_PREFIX = "ip:"

ForwardedFor = Union[str, Sequence[str], None]


def user_key(user_id: str) -> str:
    return f"{USER_PREFIX}{user_id}"


def _first_forwarded(value: ForwardedFor) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        value = value[0] if value else ""
    return value.split(",", 1)[0].strip()


def resolve_client_key(
    forwarded_for: ForwardedFor = None,
    peer_host: Optional[str] = None,
    user_id: Optional[str] = None,
) -> str:
    """Derive the tracking key for a caller. Never raises.

    The first X-Forwarded-For hop wins over the peer address, since requests
    normally arrive through a proxy. Addresses are not validated.
    """
    if user_id:
        return user_key(user_id)

    ip = _first_forwarded(forwarded_for) or (peer_host or "").strip()
    if not ip:
        return UNKNOWN_CLIENT
    if ip.startswith(USER_PREFIX):
        # Keep spoofed header values out of the user namespace.
        return f"{IP_PREFIX}{ip}"
    return ip


def client_key_from_request(connection: HTTPConnection, trust_forwarded: bool = True) -> str:
    forwarded = connection.headers.getlist("x-forwarded-for") if trust_forwarded else None
    peer = connection.client.host if connection.client else None
    return resolve_client_key(forwarded or None, peer)
