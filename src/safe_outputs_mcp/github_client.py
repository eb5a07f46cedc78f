"""GitHub REST client and the HTTP transport shared with the GraphQL client.

Every call goes to an https host with redirects disabled and a finite timeout.
Reads are retried on rate limiting, server errors and transport failures.
Mutations are sent exactly once: a retried write can duplicate its effect.
"""

from __future__ import annotations

import asyncio
import json
from typing import Awaitable, Callable

import httpx

from .config import LimitsConfig
from .errors import SafeError, github_auth_forbidden

TokenProvider = Callable[[], Awaitable[str]]

_IDEMPOTENT_METHODS = frozenset({"GET", "HEAD"})


def api_headers(token: str) -> dict[str, str]:
    """Headers sent on every GitHub API request."""
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }


def compute_backoff_s(limits: LimitsConfig, attempt_index: int) -> float:
    """Backoff before retry `attempt_index` (1 for the first retry)."""
    base = min(limits.max_backoff_s, 0.5 * (2 ** (attempt_index - 1)))
    # deterministic "jitter" component to avoid strict thundering herds without randomness
    jitter = min(0.05, 0.01 * attempt_index)
    return min(limits.max_backoff_s, base + jitter)


def is_retryable_status(status_code: int) -> bool:
    """Rate limiting and server errors."""
    return status_code == 429 or 500 <= status_code <= 599


def is_auth_failure(status_code: int, hint: str | None) -> bool:
    """401, or 403 that is not a (secondary) rate limit."""
    if status_code == 401:
        return True
    if status_code == 403:
        return not (hint and "rate limit" in hint.lower())
    return False


def error_hint(resp: httpx.Response) -> str | None:
    """Extract GitHub's own error message from a failed response."""
    try:
        payload = resp.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return payload["message"]
    return None


def validate_api_base_url(api_base_url: str) -> str:
    """Normalize the API base URL, refusing anything that is not https."""
    url = api_base_url.rstrip("/")
    if not url.startswith("https://"):
        raise SafeError(code="Config", message="GitHub API URL must use https")
    return url


async def send_with_retries(
    *,
    method: str,
    url: str,
    token: str,
    limits: LimitsConfig,
    max_attempts: int,
    transport: httpx.AsyncBaseTransport | None = None,
    json_body: object | None = None,
    params: dict[str, str] | None = None,
    failure_message: str = "GitHub request failed",
) -> httpx.Response:
    """Send one logical request and return the first response below 400.

    Raises:
        SafeError: `Forbidden` for auth failures, `GitHub` for other error
            statuses (hint is GitHub's message or `HTTP <status>`), `Network`
            for transport errors.
    """
    timeout = httpx.Timeout(
        timeout=limits.total_timeout_s,
        connect=limits.connect_timeout_s,
        read=limits.read_timeout_s,
    )
    async with httpx.AsyncClient(follow_redirects=False, timeout=timeout, transport=transport) as client:
        for attempt in range(1, max_attempts + 1):
            can_retry = attempt < max_attempts
            try:
                resp = await client.request(method, url, headers=api_headers(token), json=json_body, params=params)
            except httpx.TransportError as exc:
                if can_retry:
                    await asyncio.sleep(compute_backoff_s(limits, attempt))
                    continue
                raise SafeError(code="Network", message="Network request failed") from exc

            if resp.status_code < 400:
                return resp

            hint = error_hint(resp)
            if is_auth_failure(resp.status_code, hint):
                raise github_auth_forbidden(status_code=resp.status_code, detail=hint)
            if can_retry and is_retryable_status(resp.status_code):
                await asyncio.sleep(compute_backoff_s(limits, attempt))
                continue
            raise SafeError(
                code="GitHub",
                message=failure_message,
                hint=hint or f"HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

    raise SafeError(code="Network", message="Network request failed")


class GitHubClient:
    """Minimal GitHub REST client."""

    def __init__(
        self,
        *,
        token_provider: TokenProvider,
        limits: LimitsConfig,
        api_base_url: str = "https://api.github.com",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Create a GitHub REST client.

        Args:
            token_provider: Async callable that returns a token.
            limits: Timeouts/retry limits.
            api_base_url: https base URL of the REST API.
            transport: Optional httpx transport for tests.
        """
        self._token_provider = token_provider
        self._limits = limits
        self._api_base_url = validate_api_base_url(api_base_url)
        self._transport = transport

    def _max_attempts(self, method: str) -> int:
        if method.upper() in _IDEMPOTENT_METHODS:
            return max(1, self._limits.max_attempts)
        return 1

    async def request_json(
        self,
        *,
        method: str,
        path: str,
        json_body: dict | None = None,
        params: dict[str, str] | None = None,
    ) -> object:
        """Make a request and return decoded JSON (None for empty responses).

        GitHub APIs may return either an object (dict) or an array (list).
        """
        resp = await send_with_retries(
            method=method,
            url=f"{self._api_base_url}{path}",
            token=await self._token_provider(),
            limits=self._limits,
            max_attempts=self._max_attempts(method),
            transport=self._transport,
            json_body=json_body,
            params=params,
        )
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except json.JSONDecodeError as exc:
            raise SafeError(code="GitHub", message="GitHub returned invalid JSON") from exc
