"""
Error taxonomy for certificate probing.

Transport failures are mapped onto a small set of categories so operators can
tell "this domain is down" apart from "this domain rejects our TLS client".
"""

import asyncio
import errno
import socket
import ssl
from enum import Enum
from typing import Optional

import httpx


class ErrorCategory(str, Enum):
    DNS = "dns"
    REFUSED = "refused"
    TIMEOUT = "timeout"
    HANDSHAKE = "handshake"
    RESET = "reset"
    UNREACHABLE = "unreachable"
    DATA = "data"
    UNKNOWN = "unknown"


# Categories that say something about network reachability of the host
REACHABILITY_CATEGORIES = {
    ErrorCategory.DNS,
    ErrorCategory.REFUSED,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RESET,
    ErrorCategory.UNREACHABLE,
}


class ProbeError(Exception):
    """A probe strategy failed; the resolver tries the next one."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.message = message
        self.category = category

    def __str__(self) -> str:
        return self.message


class CertificateDataError(ProbeError):
    """Probe completed but produced no parseable expiry."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.DATA)


class InvalidDomainError(ValueError):
    """Domain failed syntactic validation; no network I/O is attempted."""


class SchedulerError(Exception):
    """Schedule configuration could not be applied."""


def _cause_chain(exc: BaseException):
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify_transport_error(exc: BaseException) -> ProbeError:
    """
    Map a low-level transport exception onto an operator-readable ProbeError.

    The cause chain is walked so wrapped errors (for example httpx.ConnectError
    around a ConnectionRefusedError) land in the right bucket.

    Args:
        exc: Exception raised by a socket, TLS or HTTP operation

    Returns:
        ProbeError carrying category and message
    """
    if isinstance(exc, ProbeError):
        return exc

    for error in _cause_chain(exc):
        if isinstance(error, socket.gaierror):
            return ProbeError(
                "DNS resolution failed, check that the domain name is correct",
                ErrorCategory.DNS,
            )
        if isinstance(error, ConnectionRefusedError):
            return ProbeError(
                "Connection refused, check the domain and port", ErrorCategory.REFUSED
            )
        if isinstance(
            error, (asyncio.TimeoutError, TimeoutError, socket.timeout, httpx.TimeoutException)
        ):
            return ProbeError(
                "Connection timed out, check network connectivity", ErrorCategory.TIMEOUT
            )
        if isinstance(error, ConnectionResetError):
            return ProbeError(
                "Connection reset by server, possibly a server configuration issue",
                ErrorCategory.RESET,
            )
        if isinstance(error, ssl.SSLError):
            return ProbeError(
                "TLS handshake failed, the server may not support this protocol version "
                f"or cipher suite ({error})",
                ErrorCategory.HANDSHAKE,
            )
        if isinstance(error, OSError) and error.errno == errno.ENETUNREACH:
            return ProbeError(
                "Network unreachable, check network connectivity", ErrorCategory.UNREACHABLE
            )
        if isinstance(error, OSError) and error.errno == errno.EHOSTUNREACH:
            return ProbeError(
                "Host unreachable, check the domain and network", ErrorCategory.UNREACHABLE
            )

    code = getattr(exc, "errno", None)
    return ProbeError(
        f"Connection failed: {exc or type(exc).__name__} (error code: {code or 'unknown'})",
        ErrorCategory.UNKNOWN,
    )
