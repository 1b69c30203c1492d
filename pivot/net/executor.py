"""
pivot/net/executor.py
Probe executor: replays a mutated request against the target and reduces
the response to a fingerprint.

All outbound traffic of the engine goes through a ProbeExecutor. The HTTP
implementation wraps ``httpx.AsyncClient``; tests substitute a fake that
returns canned fingerprints.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple
from urllib.parse import quote

import httpx

from ..base.config import PivotConfig, get_config
from ..base.errors import BaselineCaptureFailedError, ErrorCode, ProbeExecutionError
from ..contracts.enums import InjectionPoint
from ..contracts.models import (
    PAYLOAD_PLACEHOLDER,
    BaselineStatistics,
    RequestDirectives,
    RequestOptions,
    ResponseFingerprint,
)
from ..diff.statistics import compute_statistics

logger = logging.getLogger(__name__)


# Headers that differ on every response and would make every delta non-empty
VOLATILE_HEADERS = frozenset({
    "date",
    "age",
    "expires",
    "last-modified",
    "x-request-id",
    "x-amzn-requestid",
    "x-amz-cf-id",
    "cf-ray",
    "server-timing",
    "x-runtime",
    "report-to",
    "nel",
})

SQL_ERROR_RE = re.compile(
    r"sql syntax|mysql_fetch|mysqli?_|ORA-\d{5}|PostgreSQL.*ERROR|SQLite.*error|SQLSTATE|unclosed quotation mark",
    re.IGNORECASE,
)
TEMPLATE_ERROR_RE = re.compile(
    r"TemplateSyntaxError|jinja2\.exceptions|Smarty Error|freemarker\.core|Twig_Error|UndefinedError",
    re.IGNORECASE,
)
WAF_HINT_RE = re.compile(r"blocked|denied|forbidden|waf|firewall", re.IGNORECASE)


def detect_error_class(status_code: int, body: str) -> Optional[str]:
    """Map a response to the error class label used across the engine."""
    if SQL_ERROR_RE.search(body):
        return "SQL_ERROR"
    if TEMPLATE_ERROR_RE.search(body):
        return "TEMPLATE_ERROR"
    if status_code == 403 and WAF_HINT_RE.search(body):
        return "WAF_BLOCK"
    if status_code == 429:
        return "RATE_LIMIT"
    if status_code in (401, 407):
        return "AUTH_FAILURE"
    if status_code >= 500:
        return f"SERVER_ERROR_{status_code}"
    if status_code >= 400:
        return f"CLIENT_ERROR_{status_code}"
    if 300 <= status_code < 400:
        return "REDIRECT"
    return None


def fingerprint_response(
    response: httpx.Response,
    response_time_ms: List[float],
    sample_chars: int = 2000,
) -> ResponseFingerprint:
    body = response.content
    text = response.text
    headers = {
        name.lower(): value
        for name, value in response.headers.items()
        if name.lower() not in VOLATILE_HEADERS
    }
    return ResponseFingerprint(
        status_code=response.status_code,
        body_hash=hashlib.sha256(body).hexdigest(),
        body_length=len(body),
        response_time_ms=[round(t, 3) for t in response_time_ms],
        headers=headers,
        error_class=detect_error_class(response.status_code, text),
        raw_body_sample=text[:sample_chars],
    )


async def _chunked(content: bytes, size: int) -> AsyncIterator[bytes]:
    for start in range(0, len(content), size):
        yield content[start:start + size]


def build_request(
    target_url: str,
    options: RequestOptions,
    payload: Optional[str],
    directives: Optional[RequestDirectives] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build ``httpx.AsyncClient.request`` kwargs for one probe.

    A ``None`` payload means a clean (baseline) request: nothing is injected
    and a ``{{payload}}`` placeholder in the body is blanked.
    """
    directives = directives or RequestDirectives()

    method = (directives.method or options.method).upper()
    headers: Dict[str, str] = {}
    if user_agent:
        headers["User-Agent"] = user_agent
    headers.update(options.headers)
    headers.update(directives.headers)
    if directives.content_type:
        headers["Content-Type"] = directives.content_type

    url = target_url
    params: Optional[Dict[str, str]] = None
    body = options.body
    if body is not None and PAYLOAD_PLACEHOLDER in body:
        body = body.replace(PAYLOAD_PLACEHOLDER, payload or "")
        payload_in_body = payload is not None
    else:
        payload_in_body = False

    point = directives.injection_point or options.injection_point
    if payload is not None and not payload_in_body:
        if point == InjectionPoint.QUERY:
            params = {options.param_name: payload}
        elif point == InjectionPoint.RAW_QUERY:
            url = f"{url}{'&' if '?' in url else '?'}{payload}"
        elif point == InjectionPoint.HEADER:
            headers[options.param_name] = payload
        elif point == InjectionPoint.PATH:
            placeholder = "{" + options.param_name + "}"
            encoded = quote(payload, safe="")
            if placeholder in url:
                url = url.replace(placeholder, encoded)
            else:
                url = f"{url.rstrip('/')}/{encoded}"
        elif point == InjectionPoint.BODY:
            body = _frame_body(payload, options, headers, already_framed=bool(directives.content_type))

    kwargs: Dict[str, Any] = {"method": method, "url": url, "headers": headers}
    if params:
        kwargs["params"] = params
    if body is not None:
        content = body.encode("utf-8")
        if directives.chunk_size:
            kwargs["content"] = _chunked(content, directives.chunk_size)
        else:
            kwargs["content"] = content
    return kwargs


def _frame_body(payload: str, options: RequestOptions, headers: Dict[str, str], already_framed: bool) -> str:
    if already_framed:
        return payload
    content_type = next((v for k, v in headers.items() if k.lower() == "content-type"), "")
    if "json" in content_type.lower():
        return json.dumps({options.param_name: payload})
    if not content_type:
        headers["Content-Type"] = "application/x-www-form-urlencoded"
    return f"{options.param_name}={quote(payload, safe='')}"


class ProbeExecutor(Protocol):
    async def execute(
        self,
        target_url: str,
        options: RequestOptions,
        payload: Optional[str],
        directives: Optional[RequestDirectives] = None,
    ) -> ResponseFingerprint: ...

    async def capture_baseline(
        self,
        target_url: str,
        options: RequestOptions,
        sample_count: Optional[int] = None,
    ) -> Tuple[List[ResponseFingerprint], BaselineStatistics]: ...


class HttpProbeExecutor:
    """
    Probe executor on top of ``httpx.AsyncClient``.

    Transport failures and timeouts raise ProbeExecutionError; cancellation
    propagates untouched so callers can abort an engagement mid-probe.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[PivotConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        cfg = config or get_config()
        self.probe_config = cfg.probe
        self.baseline_config = cfg.baseline
        self._sleep = sleep
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            verify=cfg.probe.verify_tls,
            timeout=cfg.probe.timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "HttpProbeExecutor":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def execute(
        self,
        target_url: str,
        options: RequestOptions,
        payload: Optional[str],
        directives: Optional[RequestDirectives] = None,
    ) -> ResponseFingerprint:
        directives = directives or RequestDirectives()
        if directives.delay_seconds:
            await self._sleep(directives.delay_seconds)

        if directives.concurrency == 1:
            response, elapsed = await self._send(target_url, options, payload, directives)
            return fingerprint_response(response, [elapsed], self.probe_config.body_sample_chars)

        results = await asyncio.gather(
            *(self._send(target_url, options, payload, directives) for _ in range(directives.concurrency)),
            return_exceptions=True,
        )
        succeeded = [r for r in results if not isinstance(r, BaseException)]
        if not succeeded:
            failure = next((r for r in results if isinstance(r, ProbeExecutionError)), None)
            raise failure or ProbeExecutionError(message=f"All {directives.concurrency} concurrent probes failed")

        # First response is the fingerprint; every response contributes a timing sample
        response, _ = succeeded[0]
        timings = [elapsed for _, elapsed in succeeded]
        return fingerprint_response(response, timings, self.probe_config.body_sample_chars)

    async def _send(
        self,
        target_url: str,
        options: RequestOptions,
        payload: Optional[str],
        directives: RequestDirectives,
    ) -> Tuple[httpx.Response, float]:
        kwargs = build_request(target_url, options, payload, directives, self.probe_config.user_agent)
        timeout = options.timeout_seconds or self.probe_config.timeout_seconds
        details = {"target_url": target_url, "method": kwargs["method"]}

        start = time.perf_counter()
        try:
            response = await self.client.request(
                timeout=timeout,
                follow_redirects=options.follow_redirects,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise ProbeExecutionError(
                ErrorCode.PROBE_TIMEOUT, f"Probe timed out after {timeout}s", details
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeEncodeError) as e:
            raise ProbeExecutionError(
                ErrorCode.PROBE_TRANSPORT_FAILED, f"{type(e).__name__}: {e}", details
            ) from e
        elapsed_ms = (time.perf_counter() - start) * 1000
        return response, elapsed_ms

    async def capture_baseline(
        self,
        target_url: str,
        options: RequestOptions,
        sample_count: Optional[int] = None,
    ) -> Tuple[List[ResponseFingerprint], BaselineStatistics]:
        count = sample_count or self.baseline_config.sample_count
        delay = self.baseline_config.request_delay_seconds
        fingerprints: List[ResponseFingerprint] = []

        for index in range(count):
            if index and delay:
                await self._sleep(delay)
            try:
                fingerprints.append(await self.execute(target_url, options, None))
            except ProbeExecutionError as e:
                logger.warning(f"[Baseline] Sample {index + 1}/{count} failed for {target_url}: {e}")

        if not fingerprints:
            raise BaselineCaptureFailedError(
                message=f"No baseline sample succeeded for {target_url}",
                details={"target_url": target_url, "attempts": count},
            )

        logger.info(f"[Baseline] Captured {len(fingerprints)}/{count} samples for {target_url}")
        return fingerprints, compute_statistics(fingerprints)


__all__ = [
    "VOLATILE_HEADERS",
    "HttpProbeExecutor",
    "ProbeExecutor",
    "build_request",
    "detect_error_class",
    "fingerprint_response",
]
