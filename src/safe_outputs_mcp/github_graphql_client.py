"""GitHub GraphQL client.

Used only for fixed query/mutation documents defined in `github_api`. Shares
the REST client's transport, so queries are retried and mutations are not.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx

from .config import LimitsConfig
from .errors import SafeError
from .github_client import TokenProvider, send_with_retries, validate_api_base_url


@dataclass(frozen=True, slots=True)
class GraphQLResult:
    """Parsed GraphQL response."""

    data: dict[str, Any]


def is_mutation(document: str) -> bool:
    """Return True if the GraphQL document is a mutation."""
    return document.lstrip().lower().startswith("mutation")


def graphql_url(api_base_url: str) -> str:
    """GraphQL endpoint for a REST base URL (GHES serves it under /api/graphql)."""
    if api_base_url.endswith("/api/v3"):
        return api_base_url[: -len("/v3")] + "/graphql"
    return f"{api_base_url}/graphql"


def parse_graphql_payload(payload: object) -> GraphQLResult:
    """Return `data`, or raise with the first GraphQL error message as the hint.

    GraphQL reports most failures with HTTP 200 and an `errors` array.
    """
    if not isinstance(payload, dict):
        raise SafeError(code="GitHub", message="GitHub returned invalid JSON")
    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        hint = first.get("message") if isinstance(first, dict) and isinstance(first.get("message"), str) else None
        raise SafeError(code="GitHub", message="GitHub GraphQL request failed", hint=hint)
    data = payload.get("data")
    if not isinstance(data, dict):
        raise SafeError(code="GitHub", message="GitHub GraphQL returned no data")
    return GraphQLResult(data=data)


class GitHubGraphQLClient:
    """Minimal GitHub GraphQL client (POST /graphql only)."""

    def __init__(
        self,
        *,
        token_provider: TokenProvider,
        limits: LimitsConfig,
        api_base_url: str = "https://api.github.com",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._limits = limits
        self._url = graphql_url(validate_api_base_url(api_base_url))
        self._transport = transport

    async def execute(
        self,
        *,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> GraphQLResult:
        """Execute a fixed GraphQL query/mutation and return parsed data."""
        if not isinstance(query, str) or not query.strip():
            raise SafeError(code="Internal", message="GraphQL query is missing")

        resp = await send_with_retries(
            method="POST",
            url=self._url,
            token=await self._token_provider(),
            limits=self._limits,
            max_attempts=1 if is_mutation(query) else max(1, self._limits.max_attempts),
            transport=self._transport,
            json_body={"query": query, "variables": variables or {}},
            failure_message="GitHub GraphQL request failed",
        )
        try:
            payload = resp.json()
        except json.JSONDecodeError as exc:
            raise SafeError(code="GitHub", message="GitHub returned invalid JSON") from exc
        return parse_graphql_payload(payload)
