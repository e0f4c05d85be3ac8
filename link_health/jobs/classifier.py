"""Decision logic that turns a probe outcome into a link health classification.

Nothing here touches the network or the database. The probe module performs the
request and hands the outcome to :func:`classify_response` or
:func:`classify_transport_error`, so every rule below can be exercised with
recorded fixtures.

Status detectors run in list order and the first match wins, which is what makes
a parking page reached through a redirect chain ``parked`` rather than
``redirected``.
"""

from __future__ import annotations

import errno
import re
import socket
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from link_health.core.urls import urls_equivalent

HealthStatus = Literal["valid", "redirected", "parked", "expired", "unreachable", "unknown"]

VALID_STATUSES = frozenset({"valid", "redirected"})
BROKEN_STATUSES = frozenset({"parked", "expired", "unreachable"})

PARKED_DOMAIN_KEYWORDS = (
    "buy this domain",
    "domain for sale",
    "this domain is for sale",
    "domain parking",
    "parked domain",
    "godaddy",
    "sedo",
    "afternic",
    "dan.com",
    "hugedomains",
    "domain expired",
    "expired domain",
    "is available",
    "acquire this domain",
)
PASSWORD_FIELD_MARKERS = ('type="password"', "type='password'", 'name="password"')
LOGIN_WALL_MAX_LENGTH = 5000
PAGE_TITLE_MAX_LENGTH = 200

_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)

_DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "name resolution",
)
_CONNECTION_REFUSED_MARKERS = ("connection refused", "actively refused", "econnrefused")


@dataclass(slots=True)
class ClassificationResult:
    url: str
    health_status: HealthStatus = "unknown"
    confidence: float = 0.0
    http_status: int | None = None
    canonical_url: str | None = None
    redirect_chain: list[str] = field(default_factory=list)
    is_parked_domain: bool = False
    is_expired: bool = False
    has_login_only: bool = False
    content_length: int | None = None
    page_title: str | None = None
    error_message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class PageSnapshot:
    """A 2xx response as seen by the status detectors."""

    requested_url: str
    final_url: str
    body: str

    @property
    def lowered_body(self) -> str:
        return self.body.lower()


@dataclass(frozen=True, slots=True)
class StatusDetector:
    name: str
    matches: Callable[[PageSnapshot], bool]
    health_status: HealthStatus
    confidence: float


def is_parked_page(page: PageSnapshot) -> bool:
    text = page.lowered_body
    return any(keyword in text for keyword in PARKED_DOMAIN_KEYWORDS)


def is_redirected(page: PageSnapshot) -> bool:
    return not urls_equivalent(page.final_url, page.requested_url)


def has_login_wall(page: PageSnapshot) -> bool:
    text = page.lowered_body
    has_password_field = any(marker in text for marker in PASSWORD_FIELD_MARKERS)
    return has_password_field and len(page.body) < LOGIN_WALL_MAX_LENGTH


STATUS_DETECTORS: tuple[StatusDetector, ...] = (
    StatusDetector(name="parked", matches=is_parked_page, health_status="parked", confidence=0.9),
    StatusDetector(name="redirected", matches=is_redirected, health_status="redirected", confidence=0.85),
)
FALLBACK_STATUS: tuple[HealthStatus, float] = ("valid", 0.95)


def extract_page_title(body: str) -> str | None:
    match = _TITLE_RE.search(body)
    if not match:
        return None
    return match.group(1).strip()[:PAGE_TITLE_MAX_LENGTH]


def empty_url_result(raw_url: str | None) -> ClassificationResult:
    return ClassificationResult(url=raw_url or "", error_message="Empty URL")


def classify_response(
    *,
    url: str,
    requested_url: str,
    status_code: int,
    final_url: str,
    body: str = "",
    redirect_chain: list[str] | None = None,
    detectors: tuple[StatusDetector, ...] = STATUS_DETECTORS,
) -> ClassificationResult:
    result = ClassificationResult(
        url=url,
        http_status=status_code,
        canonical_url=final_url,
        redirect_chain=list(redirect_chain or []),
    )

    if 200 <= status_code < 300:
        page = PageSnapshot(requested_url=requested_url, final_url=final_url, body=body)
        result.content_length = len(body)
        result.page_title = extract_page_title(body)
        result.is_parked_domain = is_parked_page(page)
        result.has_login_only = has_login_wall(page)
        result.health_status, result.confidence = _first_matching_status(page, detectors)
    elif 400 <= status_code < 500:
        result.health_status = "unreachable"
        result.confidence = 0.9
        result.error_message = f"HTTP {status_code}"
    elif status_code >= 500:
        result.health_status = "unreachable"
        result.confidence = 0.7
        result.error_message = f"Server error {status_code}"
    else:
        result.error_message = f"Unexpected status {status_code}"
    return result


def classify_transport_error(*, url: str, error: BaseException, timed_out: bool = False) -> ClassificationResult:
    result = ClassificationResult(url=url, health_status="unreachable")
    if timed_out:
        result.confidence = 0.8
        result.error_message = "Request timeout"
    elif is_name_resolution_failure(error):
        result.health_status = "expired"
        result.is_expired = True
        result.confidence = 0.95
        result.error_message = "DNS resolution failed"
    elif is_connection_refused(error):
        result.confidence = 0.9
        result.error_message = "Connection refused"
    else:
        result.confidence = 0.7
        result.error_message = str(error) or type(error).__name__
    return result


def is_name_resolution_failure(error: BaseException) -> bool:
    for cause in _exception_chain(error):
        if isinstance(cause, socket.gaierror):
            return True
        if any(marker in str(cause).lower() for marker in _DNS_FAILURE_MARKERS):
            return True
    return False


def is_connection_refused(error: BaseException) -> bool:
    for cause in _exception_chain(error):
        if isinstance(cause, ConnectionRefusedError):
            return True
        if isinstance(cause, OSError) and cause.errno == errno.ECONNREFUSED:
            return True
        if any(marker in str(cause).lower() for marker in _CONNECTION_REFUSED_MARKERS):
            return True
    return False


def is_broken(health_status: str) -> bool:
    return health_status in BROKEN_STATUSES


def is_reachable(health_status: str) -> bool:
    return health_status in VALID_STATUSES


def _first_matching_status(
    page: PageSnapshot,
    detectors: tuple[StatusDetector, ...],
) -> tuple[HealthStatus, float]:
    for detector in detectors:
        if detector.matches(page):
            return detector.health_status, detector.confidence
    return FALLBACK_STATUS


def _exception_chain(error: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = error
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain
