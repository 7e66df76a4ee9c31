"""
Shared predicates used by the rule modules.
"""

import re
from typing import Any, Iterable

from pipeaudit.model import Pipeline, Platform

# GitHub ${{ ... }} expressions
GITHUB_EXPRESSION_PATTERN = re.compile(r"\$\{\{.*?\}\}", re.DOTALL)

# GitLab $VAR / ${VAR} / %VAR% variables
GITLAB_VARIABLE_PATTERN = re.compile(r"\$\{?[A-Za-z_][A-Za-z0-9_]*\}?|%[A-Za-z_][A-Za-z0-9_]*%")

# Events whose payload a pull request author controls.
UNTRUSTED_EVENTS = frozenset({
    "pull_request",
    "pull_request_target",
    "workflow_run",
    "issue_comment",
    "merge_request_event",
})

# Events that run with the base repository's secrets and write token.
PRIVILEGED_PR_EVENTS = frozenset({
    "pull_request_target",
    "workflow_run",
    "issue_comment",
})


def is_empty(value: Any) -> bool:
    """True for None and for zero-length collections alike."""
    if value is None:
        return True
    try:
        return len(value) == 0
    except TypeError:
        return False


def has_expression(value: Any) -> bool:
    """True if the value contains a GitHub expression or a GitLab variable."""
    if not isinstance(value, str):
        return False
    return bool(GITHUB_EXPRESSION_PATTERN.search(value) or GITLAB_VARIABLE_PATTERN.search(value))


def expressions_in(text: Any, platform: Platform) -> list[str]:
    if not isinstance(text, str):
        return []
    if platform == Platform.GITLAB:
        return GITLAB_VARIABLE_PATTERN.findall(text)
    return GITHUB_EXPRESSION_PATTERN.findall(text)


def has_any_event(pipeline: Pipeline, events: Iterable[str]) -> bool:
    """Case-insensitive exact match of trigger event names, scoping ignored."""
    if is_empty(pipeline.triggers):
        return False
    wanted = {e.lower() for e in events}
    return any(t.event.lower() in wanted for t in pipeline.triggers)


def filter_by_events(pipelines: Iterable[Pipeline], events: Iterable[str]) -> list[Pipeline]:
    """Pipelines triggered by at least one of the given events."""
    events = list(events)
    return [p for p in pipelines if has_any_event(p, events)]


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().strip("'\"").lower() in ("true", "1", "yes")
