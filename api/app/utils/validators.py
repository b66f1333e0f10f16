"""
Input Validators

Target URL validation for SSRF protection. Every URL the scanner is about to
open passes through TargetValidator first; a URL either comes back in
canonical form or the call raises URLValidationError with a typed reason.
"""

import enum
import ipaddress
import logging
import re
import socket
from typing import Callable, Iterable, List, Optional, Union
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Resolver = Callable[[str], Iterable[str]]


class TargetRejection(enum.Enum):
    """Why a target URL was refused."""
    EMPTY = "empty"
    TOO_LONG = "too_long"
    INVALID_FORMAT = "invalid_format"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    USERINFO_NOT_ALLOWED = "userinfo_not_allowed"
    INVALID_PORT = "invalid_port"
    INVALID_HOSTNAME = "invalid_hostname"
    BLOCKED_HOSTNAME = "blocked_hostname"
    BLOCKED_ADDRESS = "blocked_address"
    DNS_RESOLUTION_FAILED = "dns_resolution_failed"


class URLValidationError(Exception):
    """Raised when URL validation fails."""

    def __init__(self, reason: TargetRejection, message: str):
        self.reason = reason
        self.message = message
        super().__init__(message)


# Non-public IPv4 ranges
BLOCKED_IPV4_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),          # "This" network
    ipaddress.ip_network("10.0.0.0/8"),         # Private Class A
    ipaddress.ip_network("100.64.0.0/10"),      # Shared address space (CGN)
    ipaddress.ip_network("127.0.0.0/8"),        # Loopback
    ipaddress.ip_network("169.254.0.0/16"),     # Link-local (cloud metadata)
    ipaddress.ip_network("172.16.0.0/12"),      # Private Class B
    ipaddress.ip_network("192.0.0.0/24"),       # IETF Protocol Assignments
    ipaddress.ip_network("192.0.2.0/24"),       # TEST-NET-1
    ipaddress.ip_network("192.88.99.0/24"),     # 6to4 relay anycast
    ipaddress.ip_network("192.168.0.0/16"),     # Private Class C
    ipaddress.ip_network("198.18.0.0/15"),      # Benchmarking
    ipaddress.ip_network("198.51.100.0/24"),    # TEST-NET-2
    ipaddress.ip_network("203.0.113.0/24"),     # TEST-NET-3
    ipaddress.ip_network("224.0.0.0/4"),        # Multicast
    ipaddress.ip_network("240.0.0.0/4"),        # Reserved, includes broadcast
]

# Non-public IPv6 ranges. IPv4-mapped, 6to4 and NAT64 forms are unwrapped
# and judged by their embedded IPv4 address instead.
BLOCKED_IPV6_NETWORKS = [
    ipaddress.ip_network("::/96"),              # Unspecified, loopback, IPv4-compatible
    ipaddress.ip_network("100::/64"),           # Discard prefix
    ipaddress.ip_network("2001::/32"),          # Teredo
    ipaddress.ip_network("2001:2::/48"),        # Benchmarking
    ipaddress.ip_network("2001:db8::/32"),      # Documentation
    ipaddress.ip_network("fc00::/7"),           # Unique local
    ipaddress.ip_network("fe80::/10"),          # Link-local
    ipaddress.ip_network("fec0::/10"),          # Site-local (deprecated)
    ipaddress.ip_network("ff00::/8"),           # Multicast
]

NAT64_NETWORK = ipaddress.ip_network("64:ff9b::/96")

# Blocked hostnames
BLOCKED_HOSTNAMES = frozenset([
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "broadcasthost",
    "metadata",
    "metadata.google.internal",     # GCP metadata
    "metadata.google.com",
    "metadata.azure.com",
    "instance-data",                # AWS metadata hostname
    "instance-data.ec2.internal",
])

RESERVED_SUFFIXES = (
    ".localhost",
    ".local",
    ".internal",
    ".localdomain",
    ".home.arpa",
    ".lan",
    ".intranet",
    ".corp",
)

# Allowed URL schemes
ALLOWED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}

# Maximum URL length
MAX_URL_LENGTH = 2048

_SCHEME_PREFIX = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_HOST_LABEL = re.compile(r"^(?!-)[a-z0-9_-]{1,63}(?<!-)$")
# Numeric forms browsers still read as IPv4 (e.g. 2130706433, 0x7f.1, 127.1)
_LEGACY_IPV4 = re.compile(r"^(0x[0-9a-f]+|[0-9]+)(\.(0x[0-9a-f]*|[0-9]+)){0,3}$")


def system_resolver(hostname: str) -> List[str]:
    """Resolve every address of a hostname through the OS resolver."""
    results = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    return [info[4][0] for info in results]


def is_blocked_address(ip: IPAddress) -> bool:
    """Return True for any address that is not publicly routable."""
    if isinstance(ip, ipaddress.IPv6Address):
        embedded = _embedded_ipv4(ip)
        if embedded is not None:
            return is_blocked_address(embedded)
        return any(ip in network for network in BLOCKED_IPV6_NETWORKS)
    return any(ip in network for network in BLOCKED_IPV4_NETWORKS)


def _embedded_ipv4(ip: ipaddress.IPv6Address) -> Optional[ipaddress.IPv4Address]:
    if ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    if ip.sixtofour is not None:
        return ip.sixtofour
    if ip in NAT64_NETWORK:
        return ipaddress.IPv4Address(int(ip) & 0xFFFFFFFF)
    return None


def _parse_ip_literal(hostname: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        pass
    if _LEGACY_IPV4.match(hostname):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(hostname))
        except OSError:
            return None
    return None


def normalize_url_for_compare(url: str) -> str:
    """Comparison key for target URLs: lower-cased, trailing slashes removed."""
    return url.strip().lower().rstrip("/")


class TargetValidator:
    """
    Validates scan targets.

    The resolver is injectable so tests can pin DNS answers; it receives a
    hostname and returns address strings, raising OSError on failure.
    """

    def __init__(self, resolver: Optional[Resolver] = None):
        self.resolver = resolver or system_resolver

    def validate(self, raw: Optional[str]) -> str:
        """Return the canonical URL for raw, or raise URLValidationError."""
        url = (raw or "").strip()
        if not url:
            raise URLValidationError(TargetRejection.EMPTY, "URL is required")

        if len(url) > MAX_URL_LENGTH:
            raise URLValidationError(
                TargetRejection.TOO_LONG,
                f"URL exceeds maximum length of {MAX_URL_LENGTH} characters",
            )

        if any(ch.isspace() or ord(ch) < 32 or ch == "\\" for ch in url):
            raise URLValidationError(
                TargetRejection.INVALID_FORMAT, "URL contains illegal characters"
            )

        if not _SCHEME_PREFIX.match(url):
            url = f"http://{url}"

        try:
            parts = urlsplit(url)
        except ValueError as e:
            raise URLValidationError(TargetRejection.INVALID_FORMAT, f"Invalid URL format: {e}")

        scheme = parts.scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            raise URLValidationError(
                TargetRejection.UNSUPPORTED_SCHEME,
                f"Invalid URL scheme '{parts.scheme}'. Only HTTP and HTTPS are allowed.",
            )

        if "@" in parts.netloc:
            raise URLValidationError(
                TargetRejection.USERINFO_NOT_ALLOWED,
                "URLs with embedded credentials are not allowed",
            )

        try:
            port = parts.port
        except ValueError:
            raise URLValidationError(TargetRejection.INVALID_PORT, "URL has an invalid port")
        if port == 0:
            raise URLValidationError(TargetRejection.INVALID_PORT, "URL has an invalid port")

        hostname = (parts.hostname or "").lower().rstrip(".")
        if not hostname:
            raise URLValidationError(
                TargetRejection.INVALID_HOSTNAME, "URL must include a valid hostname"
            )

        literal = _parse_ip_literal(hostname)
        if literal is not None:
            self._check_address(hostname, literal)
            host_for_url = f"[{literal.compressed}]" if literal.version == 6 else str(literal)
        else:
            hostname = self._check_hostname(hostname)
            self._check_resolved(hostname)
            host_for_url = hostname

        netloc = host_for_url
        if port is not None and port != DEFAULT_PORTS[scheme]:
            netloc = f"{host_for_url}:{port}"

        canonical = f"{scheme}://{netloc}{parts.path or '/'}"
        if parts.query:
            canonical += f"?{parts.query}"
        return canonical

    def _check_hostname(self, hostname: str) -> str:
        try:
            ascii_host = hostname.encode("idna").decode("ascii")
        except UnicodeError:
            raise URLValidationError(
                TargetRejection.INVALID_HOSTNAME, f"Hostname '{hostname}' is not valid"
            )

        if ascii_host in BLOCKED_HOSTNAMES or ascii_host.endswith(RESERVED_SUFFIXES):
            raise URLValidationError(
                TargetRejection.BLOCKED_HOSTNAME,
                f"Hostname '{hostname}' is not allowed for security reasons",
            )

        labels = ascii_host.split(".")
        if len(labels) < 2 or not all(_HOST_LABEL.match(label) for label in labels):
            raise URLValidationError(
                TargetRejection.INVALID_HOSTNAME, f"Hostname '{hostname}' is not valid"
            )
        return ascii_host

    def _check_resolved(self, hostname: str) -> None:
        try:
            addresses = list(self.resolver(hostname))
        except (OSError, UnicodeError) as e:
            logger.info(f"DNS resolution failed for {hostname}: {e}")
            raise URLValidationError(
                TargetRejection.DNS_RESOLUTION_FAILED,
                f"Unable to resolve hostname '{hostname}'. Please check the URL.",
            )

        if not addresses:
            raise URLValidationError(
                TargetRejection.DNS_RESOLUTION_FAILED,
                f"Hostname '{hostname}' did not resolve to any address",
            )

        for address in addresses:
            try:
                ip = ipaddress.ip_address(address.split("%", 1)[0])
            except ValueError:
                raise URLValidationError(
                    TargetRejection.DNS_RESOLUTION_FAILED,
                    f"Hostname '{hostname}' resolved to an invalid address",
                )
            if is_blocked_address(ip):
                logger.warning(f"SSRF attempt blocked: {hostname} resolves to {ip}")
                raise URLValidationError(
                    TargetRejection.BLOCKED_ADDRESS,
                    "The hostname resolves to a private/internal address which is not allowed",
                )

    def _check_address(self, hostname: str, ip: IPAddress) -> None:
        if is_blocked_address(ip):
            logger.warning(f"SSRF attempt blocked: literal address {hostname}")
            raise URLValidationError(
                TargetRejection.BLOCKED_ADDRESS,
                "Scanning private/internal IP addresses is not allowed",
            )


def validate_target_url(raw: Optional[str], resolver: Optional[Resolver] = None) -> str:
    """
    Validate and canonicalize a scan target.

    Raises:
        URLValidationError: If the URL is invalid or blocked
    """
    return TargetValidator(resolver).validate(raw)
