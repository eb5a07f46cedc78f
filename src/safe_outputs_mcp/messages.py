"""Message templates for footers, fallback comments, and run status lines.

Templates use `{placeholder}` syntax. Unknown placeholders are left untouched
so a typo in the workflow configuration never fails a request.
"""

from __future__ import annotations

import re

from .config import MessagesConfig
from .context import RunContext

DEFAULT_FOOTER = "> AI generated by [{workflow_name}]({run_url})"
DEFAULT_RUN_STARTED = "{workflow_name} started processing safe outputs for {repository}"
DEFAULT_RUN_SUCCESS = "{workflow_name} completed: {accepted} accepted, {rejected} rejected"
DEFAULT_RUN_FAILURE = "{workflow_name} failed: {accepted} accepted, {rejected} rejected"

_PLACEHOLDER_RE = re.compile(r"\{([a-z_][a-z0-9_]*)\}")


def workflow_marker(context: RunContext) -> str:
    """Hidden marker identifying content created by this workflow."""
    name = context.workflow_name or "safe-outputs"
    return f"<!-- safe-outputs-workflow: {name} -->"


def template_values(context: RunContext, **extra: object) -> dict[str, str]:
    """Placeholder values available to every template."""
    values = {
        "workflow_name": context.workflow_name or "workflow",
        "run_url": context.run_url or "",
        "run_id": context.run_id or "",
        "repository": context.repository,
        "owner": context.owner,
        "repo": context.repo,
    }
    for key, value in extra.items():
        values[key] = "" if value is None else str(value)
    return values


def render_template(template: str, values: dict[str, str]) -> str:
    """Substitute `{name}` placeholders present in `values`."""
    return _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def render_footer(messages: MessagesConfig, context: RunContext) -> str:
    """Footer appended to every body this layer writes."""
    template = messages.footer if messages.footer is not None else DEFAULT_FOOTER
    return render_template(template, template_values(context))


def with_footer(body: str, messages: MessagesConfig, context: RunContext) -> str:
    """Append the rendered footer and the workflow marker to a body."""
    footer = render_footer(messages, context)
    parts = [body.rstrip()]
    if footer.strip():
        parts.append(footer)
    parts.append(workflow_marker(context))
    return "\n\n".join(parts)


def render_run_message(
    messages: MessagesConfig,
    context: RunContext,
    *,
    phase: str,
    accepted: int = 0,
    rejected: int = 0,
) -> str:
    """Render the run-started / run-success / run-failure line."""
    if phase == "started":
        template = messages.run_started or DEFAULT_RUN_STARTED
    elif phase == "success":
        template = messages.run_success or DEFAULT_RUN_SUCCESS
    elif phase == "failure":
        template = messages.run_failure or DEFAULT_RUN_FAILURE
    else:
        raise ValueError(f"Unknown run phase: {phase}")
    return render_template(template, template_values(context, accepted=accepted, rejected=rejected))
