"""
Rule: Detect runner debug logging left enabled.

Debug logging prints environment details and command output that are
otherwise masked, which can leak secrets into build logs.
"""

from typing import Any

from pipeaudit.model import Pipeline
from pipeaudit.rules.engine import Finding, make_finding, register_rule
from pipeaudit.rules.helpers import is_truthy

RULE_ID = "debug_enabled"

DEBUG_VARIABLES = frozenset({
    "ACTIONS_RUNNER_DEBUG",
    "ACTIONS_STEP_DEBUG",
    "CI_DEBUG_TRACE",
    "CI_DEBUG_SERVICES",
})


def _enabled(env: dict[str, Any]) -> list[str]:
    return sorted(k for k, v in env.items() if k in DEBUG_VARIABLES and is_truthy(v))


def _finding(pipeline: Pipeline, variables: list[str], **location: Any) -> Finding:
    return make_finding(
        RULE_ID,
        "Debug logging enabled",
        f"{', '.join(variables)} turns on verbose runner logs that may expose secrets.",
        pipeline,
        variables=",".join(variables),
        **location,
    )


@register_rule(RULE_ID)
def check_debug_enabled(pipeline: Pipeline) -> list[Finding]:
    findings = []
    variables = _enabled(pipeline.env)
    if variables:
        findings.append(_finding(pipeline, variables))

    for job in pipeline.ordered_jobs():
        variables = _enabled(job.env)
        if variables:
            findings.append(_finding(pipeline, variables, job=job))
        for step in job.steps:
            variables = _enabled(step.env)
            if variables:
                findings.append(_finding(pipeline, variables, job=job, step=step))
    return findings
