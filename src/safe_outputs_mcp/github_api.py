"""GitHub operations used by the handlers.

This is the injected external capability: handlers only ever talk to GitHub
through these methods, and tests substitute an in-memory double with the same
surface. Responses are reduced to the fields the handlers need and checked for
shape so unexpected payloads surface as safe errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import quote

from .errors import SafeError
from .github_client import GitHubClient
from .github_graphql_client import GitHubGraphQLClient
from .scope import ProjectRef

# REST list endpoints are read 100 items at a time, at most 10 pages (the
# search API stops returning results after 1000 anyway).
_PER_PAGE = 100
_MAX_PAGES = 10

_PROJECT_FIELDS_SELECTION = """
      id
      title
      url
      fields(first: 100) {
        nodes {
          __typename
          ... on ProjectV2FieldCommon { id name dataType }
          ... on ProjectV2SingleSelectField { options { id name } }
        }
      }
      views(first: 50) {
        nodes { name layout }
      }
""".strip()

_QUERY_ORG_PROJECT = (
    "query($login: String!, $number: Int!) {\n"
    "  owner: organization(login: $login) {\n"
    "    projectV2(number: $number) {\n"
    f"      {_PROJECT_FIELDS_SELECTION}\n"
    "    }\n"
    "  }\n"
    "}"
)

_QUERY_USER_PROJECT = (
    "query($login: String!, $number: Int!) {\n"
    "  owner: user(login: $login) {\n"
    "    projectV2(number: $number) {\n"
    f"      {_PROJECT_FIELDS_SELECTION}\n"
    "    }\n"
    "  }\n"
    "}"
)

_MUTATION_ADD_PROJECT_ITEM = """
mutation($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemById(input: { projectId: $projectId, contentId: $contentId }) {
    item { id }
  }
}
""".strip()

_MUTATION_ADD_DRAFT_ISSUE = """
mutation($projectId: ID!, $title: String!, $body: String) {
  addProjectV2DraftIssue(input: { projectId: $projectId, title: $title, body: $body }) {
    projectItem { id }
  }
}
""".strip()

_MUTATION_SET_FIELD_VALUE = """
mutation($projectId: ID!, $itemId: ID!, $fieldId: ID!, $value: ProjectV2FieldValue!) {
  updateProjectV2ItemFieldValue(
    input: { projectId: $projectId, itemId: $itemId, fieldId: $fieldId, value: $value }
  ) {
    projectV2Item { id }
  }
}
""".strip()

_MUTATION_CREATE_STATUS_UPDATE = """
mutation($projectId: ID!, $body: String!, $status: ProjectV2StatusUpdateStatus!, $startDate: Date, $targetDate: Date) {
  createProjectV2StatusUpdate(
    input: { projectId: $projectId, body: $body, status: $status, startDate: $startDate, targetDate: $targetDate }
  ) {
    statusUpdate { id }
  }
}
""".strip()

_MUTATION_MINIMIZE_COMMENT = """
mutation($subjectId: ID!) {
  minimizeComment(input: { subjectId: $subjectId, classifier: OUTDATED }) {
    minimizedComment { isMinimized }
  }
}
""".strip()

_DATA_TYPES = {
    "SINGLE_SELECT": "single_select",
    "TEXT": "text",
    "NUMBER": "number",
    "DATE": "date",
    "ITERATION": "iteration",
}


@dataclass(frozen=True, slots=True)
class ProjectField:
    """A project custom field and, for single-select fields, its options by name."""

    field_id: str
    name: str
    data_type: str
    options: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ProjectInfo:
    """A resolved project board."""

    project_id: str
    title: str
    url: str
    fields: tuple[ProjectField, ...] = ()
    views: tuple[tuple[str, str], ...] = ()

    def find_field(self, name: str) -> ProjectField | None:
        """Case-insensitive lookup by field name."""
        wanted = name.strip().lower()
        for f in self.fields:
            if f.name.lower() == wanted:
                return f
        return None


def _label_names(raw: object) -> list[str]:
    names: list[str] = []
    if not isinstance(raw, list):
        return names
    for item in raw:
        if isinstance(item, dict) and isinstance(item.get("name"), str):
            names.append(item["name"])
        elif isinstance(item, str):
            names.append(item)
    return names


def _issue_like(data: object, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise SafeError(code="GitHub", message=f"Unexpected {what} response")
    number = data.get("number")
    state = data.get("state")
    if not isinstance(number, int) or not isinstance(state, str):
        raise SafeError(code="GitHub", message=f"Unexpected {what} response")
    return {
        "number": number,
        "id": data.get("id"),
        "node_id": data.get("node_id"),
        "title": data.get("title") if isinstance(data.get("title"), str) else "",
        "state": state,
        "labels": _label_names(data.get("labels")),
        "url": data.get("html_url"),
        "body": data.get("body") if isinstance(data.get("body"), str) else "",
    }



def _search_items(data: object) -> list[Any]:
    items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise SafeError(code="GitHub", message="Unexpected search response")
    return items


def _comment_list(data: object) -> list[Any]:
    if not isinstance(data, list):
        raise SafeError(code="GitHub", message="Unexpected comments response")
    return data

def _parse_project_fields(nodes: object) -> tuple[ProjectField, ...]:
    out: list[ProjectField] = []
    if not isinstance(nodes, list):
        return ()
    for node in nodes:
        if not isinstance(node, dict):
            continue
        field_id = node.get("id")
        name = node.get("name")
        if not isinstance(field_id, str) or not isinstance(name, str):
            continue
        data_type = _DATA_TYPES.get(str(node.get("dataType") or ""), "unknown")
        if node.get("__typename") == "ProjectV2SingleSelectField":
            data_type = "single_select"
        options: dict[str, str] = {}
        raw_options = node.get("options")
        if isinstance(raw_options, list):
            for o in raw_options:
                if isinstance(o, dict) and isinstance(o.get("id"), str) and isinstance(o.get("name"), str):
                    options[o["name"]] = o["id"]
        out.append(ProjectField(field_id=field_id, name=name, data_type=data_type, options=options))
    return tuple(out)


def _parse_project_views(conn: object) -> tuple[tuple[str, str], ...]:
    """(name, layout) pairs, layout lowercased without the _LAYOUT suffix."""
    nodes = conn.get("nodes") if isinstance(conn, dict) else None
    if not isinstance(nodes, list):
        return ()
    out: list[tuple[str, str]] = []
    for node in nodes:
        if isinstance(node, dict) and isinstance(node.get("name"), str):
            layout = str(node.get("layout") or "TABLE_LAYOUT").lower().removesuffix("_layout")
            out.append((node["name"], layout))
    return tuple(out)


class GitHubApi:
    """Typed GitHub operations over the REST and GraphQL clients."""

    def __init__(self, *, rest: GitHubClient, graphql: GitHubGraphQLClient) -> None:
        self._rest = rest
        self._graphql = graphql

    async def _rest_call(self, method: str, path: str, json_body: dict | None = None, params: dict[str, str] | None = None) -> object:
        return await self._rest.request_json(
            method=method,
            path=path,
            json_body=json_body,
            params=params,
        )

    async def _rest_pages(
        self, path: str, extract: Callable[[object], list[Any]], params: dict[str, str] | None = None
    ) -> list[Any]:
        """GET every page of a list endpoint until a short page comes back."""
        out: list[Any] = []
        for page in range(1, _MAX_PAGES + 1):
            data = await self._rest_call("GET", path, params={**(params or {}), "per_page": str(_PER_PAGE), "page": str(page)})
            batch = extract(data)
            out.extend(batch)
            if len(batch) < _PER_PAGE:
                break
        return out

    # Issues and pull requests

    async def get_issue(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        data = await self._rest_call("GET", f"/repos/{owner}/{repo}/issues/{number}")
        return _issue_like(data, "issue")

    async def get_pull_request(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        data = await self._rest_call("GET", f"/repos/{owner}/{repo}/pulls/{number}")
        return _issue_like(data, "pull request")

    async def close_issue(self, owner: str, repo: str, number: int, *, state_reason: str = "completed") -> dict[str, Any]:
        data = await self._rest_call(
            "PATCH",
            f"/repos/{owner}/{repo}/issues/{number}",
            json_body={"state": "closed", "state_reason": state_reason},
        )
        return _issue_like(data, "issue")

    async def close_pull_request(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        data = await self._rest_call("PATCH", f"/repos/{owner}/{repo}/pulls/{number}", json_body={"state": "closed"})
        return _issue_like(data, "pull request")

    async def create_issue(self, owner: str, repo: str, *, title: str, body: str, labels: list[str]) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels
        data = await self._rest_call("POST", f"/repos/{owner}/{repo}/issues", json_body=payload)
        return _issue_like(data, "issue")

    async def search_open_issues(self, owner: str, repo: str, *, text: str) -> list[dict[str, Any]]:
        """Open issues in the repository whose body contains `text`."""
        query = f'repo:{owner}/{repo} is:issue is:open in:body "{text}"'
        items = await self._rest_pages("/search/issues", _search_items, params={"q": query})
        return [_issue_like(item, "issue") for item in items]

    async def add_sub_issue(self, owner: str, repo: str, parent_number: int, sub_issue_id: int) -> None:
        await self._rest_call(
            "POST",
            f"/repos/{owner}/{repo}/issues/{parent_number}/sub_issues",
            json_body={"sub_issue_id": sub_issue_id},
        )

    async def create_pull_request(
        self, owner: str, repo: str, *, title: str, body: str, head: str, base: str, draft: bool
    ) -> dict[str, Any]:
        data = await self._rest_call(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json_body={"title": title, "body": body, "head": head, "base": base, "draft": draft},
        )
        return _issue_like(data, "pull request")

    async def get_default_branch(self, owner: str, repo: str) -> str:
        data = await self._rest_call("GET", f"/repos/{owner}/{repo}")
        branch = data.get("default_branch") if isinstance(data, dict) else None
        if not isinstance(branch, str):
            raise SafeError(code="GitHub", message="Unexpected repository response")
        return branch

    # Comments

    async def create_comment(self, owner: str, repo: str, number: int, body: str) -> dict[str, Any]:
        data = await self._rest_call("POST", f"/repos/{owner}/{repo}/issues/{number}/comments", json_body={"body": body})
        if not isinstance(data, dict) or not isinstance(data.get("id"), int):
            raise SafeError(code="GitHub", message="Unexpected comment response")
        return {"id": data["id"], "node_id": data.get("node_id"), "url": data.get("html_url")}

    async def list_comments(self, owner: str, repo: str, number: int) -> list[dict[str, Any]]:
        data = await self._rest_pages(f"/repos/{owner}/{repo}/issues/{number}/comments", _comment_list)
        out: list[dict[str, Any]] = []
        for c in data:
            if isinstance(c, dict) and isinstance(c.get("id"), int):
                out.append({"id": c["id"], "node_id": c.get("node_id"), "body": c.get("body") or ""})
        return out

    async def minimize_comment(self, node_id: str) -> None:
        await self._graphql.execute(query=_MUTATION_MINIMIZE_COMMENT, variables={"subjectId": node_id})

    # Labels

    async def add_labels(self, owner: str, repo: str, number: int, labels: list[str]) -> list[str]:
        data = await self._rest_call("POST", f"/repos/{owner}/{repo}/issues/{number}/labels", json_body={"labels": labels})
        return _label_names(data)

    async def remove_label(self, owner: str, repo: str, number: int, label: str) -> bool:
        """Remove a label; return False if it was not present."""
        try:
            await self._rest_call("DELETE", f"/repos/{owner}/{repo}/issues/{number}/labels/{quote(label, safe='')}")
        except SafeError as err:
            if err.status_code == 404:
                return False
            raise
        return True

    # Projects (v2)

    async def get_project(self, ref: ProjectRef) -> ProjectInfo:
        result = await self._graphql.execute(
            query=_QUERY_ORG_PROJECT if ref.is_org else _QUERY_USER_PROJECT,
            variables={"login": ref.owner_login, "number": ref.number},
        )
        owner = result.data.get("owner")
        project = owner.get("projectV2") if isinstance(owner, dict) else None
        if not isinstance(project, dict):
            raise SafeError(code="GitHub", message="Project not found", hint=f"Project not found: {ref.url}")
        project_id = project.get("id")
        if not isinstance(project_id, str):
            raise SafeError(code="GitHub", message="Unexpected project response")
        fields_conn = project.get("fields")
        return ProjectInfo(
            project_id=project_id,
            title=project.get("title") if isinstance(project.get("title"), str) else "",
            url=project.get("url") if isinstance(project.get("url"), str) else ref.url,
            fields=_parse_project_fields(fields_conn.get("nodes") if isinstance(fields_conn, dict) else None),
            views=_parse_project_views(project.get("views")),
        )

    async def get_content_node_id(self, owner: str, repo: str, number: int) -> str:
        """Node id of an issue or pull request (the issues endpoint serves both)."""
        data = await self._rest_call("GET", f"/repos/{owner}/{repo}/issues/{number}")
        node_id = data.get("node_id") if isinstance(data, dict) else None
        if not isinstance(node_id, str):
            raise SafeError(code="GitHub", message="Unexpected issue response")
        return node_id

    async def add_project_item(self, project_id: str, content_id: str) -> str:
        result = await self._graphql.execute(
            query=_MUTATION_ADD_PROJECT_ITEM,
            variables={"projectId": project_id, "contentId": content_id},
        )
        payload = result.data.get("addProjectV2ItemById")
        item = payload.get("item") if isinstance(payload, dict) else None
        item_id = item.get("id") if isinstance(item, dict) else None
        if not isinstance(item_id, str):
            raise SafeError(code="GitHub", message="Unexpected add-to-project response")
        return item_id

    async def add_project_draft_issue(self, project_id: str, *, title: str, body: str | None) -> str:
        result = await self._graphql.execute(
            query=_MUTATION_ADD_DRAFT_ISSUE,
            variables={"projectId": project_id, "title": title, "body": body},
        )
        payload = result.data.get("addProjectV2DraftIssue")
        item = payload.get("projectItem") if isinstance(payload, dict) else None
        item_id = item.get("id") if isinstance(item, dict) else None
        if not isinstance(item_id, str):
            raise SafeError(code="GitHub", message="Unexpected draft issue response")
        return item_id

    async def set_project_field_value(self, project_id: str, item_id: str, field_id: str, value: dict[str, Any]) -> None:
        await self._graphql.execute(
            query=_MUTATION_SET_FIELD_VALUE,
            variables={"projectId": project_id, "itemId": item_id, "fieldId": field_id, "value": value},
        )

    async def create_project_status_update(
        self,
        project_id: str,
        *,
        body: str,
        status: str,
        start_date: str | None,
        target_date: str | None,
    ) -> str:
        result = await self._graphql.execute(
            query=_MUTATION_CREATE_STATUS_UPDATE,
            variables={
                "projectId": project_id,
                "body": body,
                "status": status,
                "startDate": start_date,
                "targetDate": target_date,
            },
        )
        payload = result.data.get("createProjectV2StatusUpdate")
        update = payload.get("statusUpdate") if isinstance(payload, dict) else None
        update_id = update.get("id") if isinstance(update, dict) else None
        if not isinstance(update_id, str):
            raise SafeError(code="GitHub", message="Unexpected status update response")
        return update_id
