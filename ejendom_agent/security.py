"""
Security Utilities
==================
Outbound URL validation for the website scraper. Company websites come from
registry data and search results, so every URL (and every redirect hop) is
checked before it is fetched.
"""

import ipaddress
import logging
import socket
from typing import Optional
from urllib.parse import urlparse

log = logging.getLogger("ejendom.security")

_ALLOWED_SCHEMES = {"http", "https"}

_METADATA_HOSTS = {
    "169.254.169.254",  # AWS, GCP, Azure
    "metadata.google.internal",
    "metadata.google",
    "100.100.100.200",  # Alibaba
}

_LOCAL_NAMES = ("localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback")

# Well-known internal service ports
_BLOCKED_PORTS = {22, 23, 25, 2379, 3306, 5432, 6379, 9200, 11211, 27017}


def _is_dangerous_addr(addr) -> bool:
    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_reserved
        or addr.is_multicast
    )


def _is_private_host(hostname: str, resolve: bool = True) -> bool:
    """True for local names, private IP literals, and names resolving to private IPs."""
    if hostname.lower() in _LOCAL_NAMES:
        return True

    try:
        return _is_dangerous_addr(ipaddress.ip_address(hostname))
    except ValueError:
        pass

    if not resolve:
        return False

    try:
        results = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror:
        return False
    for _, _, _, _, sockaddr in results:
        try:
            addr = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if _is_dangerous_addr(addr):
            log.warning(f"DNS rebinding blocked: {hostname} resolves to private IP {sockaddr[0]}")
            return True
    return False


def validate_url(url: str, allow_private: bool = False, resolve: bool = True) -> Optional[str]:
    """Validate a URL for safe outbound requests.

    Returns an error string if the URL is unsafe, None if OK.
    """
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return f"Invalid URL: {url}"

    scheme = (parsed.scheme or "").lower()
    if scheme not in _ALLOWED_SCHEMES:
        return f"URL scheme '{scheme}' is not allowed. Use http:// or https://."

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return "URL has no hostname."

    if hostname in _METADATA_HOSTS:
        return f"Access to cloud metadata endpoint '{hostname}' is blocked."

    if not allow_private and _is_private_host(hostname, resolve=resolve):
        return f"Access to private/local address '{hostname}' is blocked."

    if port and not allow_private and port in _BLOCKED_PORTS:
        return f"Access to port {port} is blocked (common internal service port)."

    return None
