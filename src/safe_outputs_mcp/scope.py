"""Scope resolution for project-scoped actions.

A request-level `project` always wins over the configured default: it names a
different board explicitly and is checked against the same credential.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlparse

from .errors import ValidationError

_PROJECT_PATH_RE = re.compile(r"^/(orgs|users)/([A-Za-z0-9][A-Za-z0-9-]*)/projects/(\d+)/?$")


@dataclass(frozen=True, slots=True)
class ProjectRef:
    """A GitHub Projects (v2) board identified by owner and number."""

    url: str
    owner_kind: str
    owner_login: str
    number: int

    @property
    def is_org(self) -> bool:
        return self.owner_kind == "orgs"


def parse_project_url(url: str) -> ProjectRef:
    """Parse `https://github.com/orgs/<org>/projects/<n>` (or `/users/<login>/...`).

    Raises:
        ValidationError: If the value is not a project URL.
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Project URL is empty")
    candidate = url.strip()
    parsed = urlparse(candidate)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValidationError(
            f"Invalid project URL: {candidate}",
            hint="Expected https://github.com/orgs/<org>/projects/<number>",
        )
    match = _PROJECT_PATH_RE.match(parsed.path)
    if match is None:
        raise ValidationError(
            f"Invalid project URL: {candidate}",
            hint="Expected https://github.com/orgs/<org>/projects/<number>",
        )
    number = int(match.group(3))
    if number < 1:
        raise ValidationError(f"Invalid project number in URL: {candidate}")
    return ProjectRef(url=candidate, owner_kind=match.group(1), owner_login=match.group(2), number=number)


def resolve_project_scope(request_project: str | None, default_project: str | None) -> ProjectRef:
    """Return the effective project: explicit request value, else configured default.

    Raises:
        ValidationError: If neither is present or the winning value is malformed.
    """
    if request_project is not None and request_project.strip():
        return parse_project_url(request_project)
    if default_project is not None and default_project.strip():
        return parse_project_url(default_project)
    raise ValidationError(
        "No project specified",
        hint="Provide a 'project' URL or configure a default project for this output type",
    )
