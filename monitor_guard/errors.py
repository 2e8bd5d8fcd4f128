from __future__ import annotations

import asyncio
import errno
import ssl
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    DNS = "dns"
    SSL = "ssl"
    HTTP_STATUS = "http_status"
    STRING_NOT_FOUND = "string_not_found"
    UNKNOWN = "unknown"


# Ordered: the first matching needle wins.
_TEXT_RULES: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("timed out", "timeout"), ErrorKind.TIMEOUT),
    (("connection refused",), ErrorKind.CONNECTION_REFUSED),
    (
        (
            "could not resolve",
            "name or service not known",
            "nodename nor servname",
            "temporary failure in name resolution",
            "getaddrinfo failed",
        ),
        ErrorKind.DNS,
    ),
    (("ssl", "certificate"), ErrorKind.SSL),
)

_REFUSED_ERRNOS = {errno.ECONNREFUSED, errno.ETIMEDOUT, 110, 111}


def classify_error_text(text: str | None) -> ErrorKind:
    msg = str(text or "").lower()
    for needles, kind in _TEXT_RULES:
        if any(n in msg for n in needles):
            return kind
    return ErrorKind.UNKNOWN


def _exception_text(exc: BaseException) -> str:
    parts = [f"{type(exc).__name__}: {exc}"]
    cause = exc.__cause__ or exc.__context__
    depth = 0
    while cause is not None and depth < 5:
        parts.append(f"{type(cause).__name__}: {cause}")
        cause = cause.__cause__ or cause.__context__
        depth += 1
    return " | ".join(parts)


def classify_error(exc: BaseException | str | None) -> ErrorKind:
    """
    Map a transport failure to an ErrorKind.

    Known httpx/ssl exception classes are mapped directly; everything else falls
    back to substring heuristics over the lower-cased error text (including the
    chained causes, where httpx keeps the OS-level message).
    """
    if exc is None or isinstance(exc, str):
        return classify_error_text(exc)

    if isinstance(exc, (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ssl.SSLError):
        return ErrorKind.SSL
    if isinstance(exc, ConnectionRefusedError):
        return ErrorKind.CONNECTION_REFUSED
    if isinstance(exc, httpx.TooManyRedirects):
        return ErrorKind.UNKNOWN

    return classify_error_text(_exception_text(exc))


def classify_connect_errno(err_no: int | None) -> ErrorKind:
    """Raw TCP connect failures: refused when the OS says so (110/111), otherwise timeout."""
    if err_no is not None and int(err_no) in _REFUSED_ERRNOS:
        return ErrorKind.CONNECTION_REFUSED
    return ErrorKind.TIMEOUT


_REFUSED_CONNECT_TEXT = ("[errno 111]", "[errno 110]", "refused")


def classify_connect_error(exc: BaseException) -> ErrorKind:
    """
    Classify an exception raised by a raw TCP connect.

    When a host resolves to several addresses, asyncio folds the per-address
    failures into one OSError without an errno ("Multiple exceptions: ..."), so
    the message text is checked before falling back to timeout.
    """
    err_no = getattr(exc, "errno", None)
    if err_no is not None:
        return classify_connect_errno(err_no)
    msg = str(exc).lower()
    if any(n in msg for n in _REFUSED_CONNECT_TEXT):
        return ErrorKind.CONNECTION_REFUSED
    return ErrorKind.TIMEOUT
