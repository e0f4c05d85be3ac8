from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

from link_health.core.config import Settings
from link_health.core.urls import normalize_target_url
from link_health.jobs.classifier import (
    ClassificationResult,
    classify_response,
    classify_transport_error,
    empty_url_result,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 8.0
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_MAX_BODY_BYTES = 2 * 1024 * 1024
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; URLHealthBot/1.0)"
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


@dataclass(frozen=True, slots=True)
class ProbeOptions:
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    user_agent: str = DEFAULT_USER_AGENT
    accept: str = DEFAULT_ACCEPT

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProbeOptions":
        return cls(
            timeout_seconds=settings.probe_timeout_seconds,
            max_redirects=max(0, settings.probe_max_redirects),
            max_body_bytes=max(1, settings.probe_max_body_bytes),
            user_agent=settings.probe_user_agent,
            accept=settings.probe_accept,
        )

    @property
    def headers(self) -> dict[str, str]:
        return {"User-Agent": self.user_agent, "Accept": self.accept}


@dataclass(slots=True)
class FetchedPage:
    status_code: int
    request_url: str
    final_url: str
    visited_urls: list[str]
    body: str


async def classify(
    raw_url: str | None,
    *,
    client: httpx.AsyncClient | None = None,
    options: ProbeOptions | None = None,
) -> ClassificationResult:
    """Probe ``raw_url`` once and classify the outcome. Never raises.

    The whole exchange, redirects and body read included, is bounded by
    ``options.timeout_seconds``. A caller-supplied client keeps its own redirect
    limit; its cookie jar is cleared before the request.
    """
    if raw_url is None or not raw_url.strip():
        return empty_url_result(raw_url)

    probe_options = options or ProbeOptions()
    requested_url = normalize_target_url(raw_url)

    try:
        if client is not None:
            client.cookies.clear()
            page = await asyncio.wait_for(
                _fetch(client, requested_url, probe_options),
                timeout=probe_options.timeout_seconds,
            )
        else:
            async with httpx.AsyncClient(
                timeout=probe_options.timeout_seconds,
                follow_redirects=True,
                max_redirects=probe_options.max_redirects,
            ) as temp_client:
                page = await asyncio.wait_for(
                    _fetch(temp_client, requested_url, probe_options),
                    timeout=probe_options.timeout_seconds,
                )
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        return classify_transport_error(url=raw_url, error=exc, timed_out=True)
    except (httpx.HTTPError, httpx.InvalidURL, OSError) as exc:
        return classify_transport_error(url=raw_url, error=exc)
    except Exception as exc:
        logger.exception("url probe failed unexpectedly url=%s", requested_url)
        return ClassificationResult(url=raw_url, error_message=str(exc) or "Validation failed")

    redirect_chain = [*page.visited_urls, page.final_url] if page.visited_urls else []
    return classify_response(
        url=raw_url,
        requested_url=page.request_url,
        status_code=page.status_code,
        final_url=page.final_url,
        body=page.body,
        redirect_chain=redirect_chain,
    )


async def _fetch(client: httpx.AsyncClient, url: str, options: ProbeOptions) -> FetchedPage:
    async with client.stream("GET", url, headers=options.headers, follow_redirects=True) as response:
        raw_body = b""
        if 200 <= response.status_code < 300:
            raw_body = await _read_bounded(response, options.max_body_bytes)
        first_hop = response.history[0] if response.history else response
        return FetchedPage(
            status_code=int(response.status_code),
            # as sent on the wire: IDNA host, percent-escaped path
            request_url=str(first_hop.request.url),
            final_url=str(response.url),
            visited_urls=[str(previous.url) for previous in response.history],
            body=_decode(raw_body, response.encoding),
        )


async def _read_bounded(response: httpx.Response, limit: int) -> bytes:
    chunks: list[bytes] = []
    size = 0
    async for chunk in response.aiter_bytes():
        remaining = limit - size
        chunks.append(chunk[:remaining])
        size += min(len(chunk), remaining)
        if size >= limit:
            break
    return b"".join(chunks)


def _decode(raw_body: bytes, encoding: str | None) -> str:
    try:
        return raw_body.decode(encoding or "utf-8", errors="replace")
    except LookupError:
        return raw_body.decode("utf-8", errors="replace")
