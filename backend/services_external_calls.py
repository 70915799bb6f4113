"""
Shared plumbing for outbound calls: typed failures, timeouts and an httpx
JSON request helper with retries/backoff/rate-limit handling.

Every outbound call goes through `with_timeout`, so a slow provider surfaces
as ExternalCallTimeout rather than being confused with an empty answer.
"""
from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Dict, Optional, TypeVar

import httpx

logger = logging.getLogger("constellations")

T = TypeVar("T")

DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
HTTP_MAX_ATTEMPTS = 3
HTTP_BACKOFF_BASE_SECONDS = 0.3
HTTP_BACKOFF_CAP_SECONDS = 4.0
RETRYABLE_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}


class ExternalCallError(Exception):
    """An outbound call failed (transport error, bad status, unusable payload)."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class ExternalCallTimeout(ExternalCallError):
    """An outbound call did not answer in time. Distinct from an empty result."""

    def __init__(self, service: str, seconds: float):
        super().__init__(service, f"timed out after {seconds:g}s")
        self.seconds = seconds


async def with_timeout(awaitable: Awaitable[T], seconds: float, service: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        logger.warning(f"[external] {service} timed out after {seconds:g}s")
        raise ExternalCallTimeout(service, seconds) from e


def _parse_retry_after_seconds(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        dt = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())


def _compute_retry_delay_seconds(attempt: int, *, retry_after: Optional[float] = None) -> float:
    if retry_after is not None:
        return min(HTTP_BACKOFF_CAP_SECONDS, max(0.0, retry_after))
    exp = HTTP_BACKOFF_BASE_SECONDS * (2 ** max(0, attempt - 1))
    jitter = random.uniform(0.0, 0.25)
    return min(HTTP_BACKOFF_CAP_SECONDS, exp + jitter)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str,
    json_body: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
    max_attempts: int = HTTP_MAX_ATTEMPTS,
) -> Any:
    """
    JSON request with retries on network errors and retryable statuses (including 429).

    Raises ExternalCallError once attempts are exhausted or on a non-retryable
    status; httpx timeouts become ExternalCallTimeout.
    """
    attempts = max(1, int(max_attempts))
    method_upper = (method or "GET").upper()

    for attempt in range(1, attempts + 1):
        try:
            resp = await client.request(method_upper, url, json=json_body, params=params)
        except httpx.TimeoutException as e:
            if attempt >= attempts:
                raise ExternalCallTimeout(service, client.timeout.read or 0.0) from e
            delay_s = _compute_retry_delay_seconds(attempt)
            logger.warning(
                "%s HTTP timeout on %s %s (attempt %s/%s). Retrying in %.2fs",
                service, method_upper, url, attempt, attempts, delay_s,
            )
            await asyncio.sleep(delay_s)
            continue
        except httpx.RequestError as e:
            if attempt >= attempts:
                raise ExternalCallError(service, f"network error: {e}") from e
            delay_s = _compute_retry_delay_seconds(attempt)
            logger.warning(
                "%s HTTP network error on %s %s (attempt %s/%s): %s. Retrying in %.2fs",
                service, method_upper, url, attempt, attempts, e, delay_s,
            )
            await asyncio.sleep(delay_s)
            continue

        if resp.status_code >= 400:
            if resp.status_code in RETRYABLE_STATUS_CODES and attempt < attempts:
                retry_after = _parse_retry_after_seconds(resp.headers.get("Retry-After"))
                delay_s = _compute_retry_delay_seconds(attempt, retry_after=retry_after)
                logger.warning(
                    "%s HTTP %s %s returned %s (attempt %s/%s). Retrying in %.2fs. body=%r",
                    service, method_upper, url, resp.status_code, attempt, attempts,
                    delay_s, (resp.text or "")[:300],
                )
                await asyncio.sleep(delay_s)
                continue
            raise ExternalCallError(
                service, f"HTTP {resp.status_code} from {method_upper} {url}", status_code=resp.status_code
            )

        try:
            return resp.json()
        except ValueError as e:
            raise ExternalCallError(service, f"invalid JSON from {method_upper} {url}") from e

    raise ExternalCallError(service, f"request failed unexpectedly: {method_upper} {url}")
