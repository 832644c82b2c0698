"""Request utility functions for handling common request operations."""

import ipaddress
import logging

from fastapi import Request

from app.core.config import settings

logger = logging.getLogger(__name__)


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request) -> str:
    """Get the client IP address from a request.

    X-Forwarded-For and X-Real-IP are only honoured when the direct peer is
    listed in TRUSTED_PROXY_IPS; otherwise they can be spoofed to dodge rate
    limiting or poison session records.

    Returns "unknown" when the ASGI server does not expose a peer address.
    """
    direct_ip = request.client.host if request.client else None
    trusted = set(settings.trusted_proxy_ips)

    if trusted and direct_ip in trusted:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()
            if _is_valid_ip(client_ip):
                return client_ip
            logger.warning(f"Invalid IP in X-Forwarded-For header: {client_ip}")

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid X-Real-IP: {real_ip}")

    return direct_ip or "unknown"


def get_user_agent(request: Request) -> str:
    """Return the User-Agent header, truncated for storage."""
    return request.headers.get("User-Agent", "")[:512]
