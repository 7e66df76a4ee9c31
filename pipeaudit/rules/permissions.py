"""
Rule: Detect default token permissions on privileged pull request events.

pull_request_target, workflow_run and issue_comment run with the base
repository's token. Without an explicit 'permissions' block, that token
gets the repository default, which is often read-write on every scope.
"""

from pipeaudit.model import Pipeline, Platform
from pipeaudit.rules.engine import Finding, make_finding, register_rule
from pipeaudit.rules.helpers import PRIVILEGED_PR_EVENTS, has_any_event

RULE_ID = "default_permissions_on_risky_events"


@register_rule(RULE_ID)
def check_permissions(pipeline: Pipeline) -> list[Finding]:
    if pipeline.platform != Platform.GITHUB or pipeline.permissions is not None:
        return []
    if not has_any_event(pipeline, PRIVILEGED_PR_EVENTS):
        return []

    events = ", ".join(sorted({e.lower() for e in pipeline.events} & PRIVILEGED_PR_EVENTS))
    findings = []
    for job in pipeline.ordered_jobs():
        if job.permissions is not None or job.uses:
            continue
        findings.append(make_finding(
            RULE_ID,
            f"Job '{job.name}' uses default permissions on a risky event",
            (
                f"The workflow is triggered by {events} "
                f"and neither the workflow nor job '{job.name}' declares 'permissions'. "
                f"Set them to the minimum the job needs."
            ),
            pipeline,
            job=job,
        ))
    return findings
